# =============================================================================
# mailshuttle Core Module
# =============================================================================
# Plain dataclasses shared by every layer. No I/O and no third-party
# imports, so they can be imported anywhere without circular dependencies.
# =============================================================================

from mailshuttle.core.folder import MailboxView
from mailshuttle.core.message import (
    MessageBody,
    MessageFlags,
    MessageMeta,
    MessageRef,
    format_uid_set,
)

__all__ = [
    "MailboxView",
    "MessageBody",
    "MessageFlags",
    "MessageMeta",
    "MessageRef",
    "format_uid_set",
]
