# =============================================================================
# IMAP Module
# =============================================================================
# The mailbox synchronization engine:
#   - Session management on top of aioimaplib (TLS + login)
#   - Folder relocation (COPY, STORE \Deleted, EXPUNGE)
#   - The per-message intake pipeline
#   - IDLE waiting between passes
#   - The sync loop that ties them together
# =============================================================================

from mailshuttle.imap.session import (
    MailSession,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    FetchError,
    IdleError,
    open_session,
)
from mailshuttle.imap.relocate import (
    RelocationError,
    RelocationStep,
    relocate,
)
from mailshuttle.imap.intake import (
    IntakeOutcome,
    IntakePipeline,
)
from mailshuttle.imap.idle import (
    IdleEvent,
    IdleState,
    IdleWait,
)
from mailshuttle.imap.loop import (
    LoopCrashed,
    SyncLoop,
)

__all__ = [
    # Session
    "MailSession",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "FetchError",
    "IdleError",
    "open_session",
    # Relocation
    "RelocationError",
    "RelocationStep",
    "relocate",
    # Intake
    "IntakeOutcome",
    "IntakePipeline",
    # IDLE
    "IdleEvent",
    "IdleState",
    "IdleWait",
    # Loop
    "LoopCrashed",
    "SyncLoop",
]
