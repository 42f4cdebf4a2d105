# =============================================================================
# Mailbox View
# =============================================================================
# Snapshot of the selected folder taken from the SELECT response.
#
# The view goes stale as soon as a message is moved out or a new one
# arrives; the only way to refresh it is to select the folder again.
# =============================================================================

from dataclasses import dataclass


@dataclass(frozen=True)
class MailboxView:
    """
    Folder metadata at selection time.

    Attributes:
        name: Selected folder name.
        exists: Number of messages in the folder (EXISTS).
        uidvalidity: UIDVALIDITY of the folder. UIDs obtained under one
                     value are meaningless under another.
        uidnext: Predicted next UID, if the server reported one.
    """
    name: str
    exists: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None
