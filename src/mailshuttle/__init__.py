# =============================================================================
# mailshuttle: IDLE-driven IMAP inbox drain
# =============================================================================
#
# mailshuttle watches one IMAP folder and treats it as a staging area:
# every message that arrives is handed to an importer and then moved out,
# either to a "moved" folder (imported) or to a "quarantine" folder
# (too big, or the importer refused it).
#
# Features:
#   - IMAP IDLE push with a bounded fallback timeout
#   - Resumable copy / flag / expunge relocation, no local state
#   - Size gate and quarantine with SMTP alerts
#   - Watchdog-supervised restarts
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailshuttle"

# Main entry point - this is what gets called by the 'mailshuttle' command
from mailshuttle.app import main

__all__ = ["main", "__version__", "__app_name__"]
