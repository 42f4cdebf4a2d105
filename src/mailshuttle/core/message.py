# =============================================================================
# Message Model
# =============================================================================
# Transient views of a single message in the selected folder:
#   - MessageRef:  the server-assigned identifier (an IMAP UID)
#   - MessageMeta: envelope subject, Message-ID, flags and size
#   - MessageBody: the full raw RFC822 bytes
#
# None of these are cached across loop iterations. A MessageRef is only
# meaningful for the folder selection it was obtained in; once the folder
# is re-selected (or UIDVALIDITY changes) it must be looked up again.
# =============================================================================

from dataclasses import dataclass
from enum import IntFlag


class MessageFlags(IntFlag):
    """
    IMAP system flags the sync engine reads, stored as a bitmask.

    Only \\Deleted matters: a message that already carries it was most
    likely copied and flagged by an earlier relocation whose expunge never
    completed.
    """
    NONE = 0            # No flags of interest
    DELETED = 1 << 0    # \\Deleted

    @classmethod
    def parse(cls, flags_str: str) -> "MessageFlags":
        """Convert an IMAP FLAGS list (without the parentheses) to MessageFlags."""
        result = cls.NONE

        if "\\DELETED" in flags_str.upper():
            result |= cls.DELETED

        return result


@dataclass(frozen=True, order=True)
class MessageRef:
    """
    Opaque identifier for one message in the currently selected folder.

    Attributes:
        uid: IMAP UID of the message.
    """
    uid: int

    def __str__(self) -> str:
        return str(self.uid)


def format_uid_set(refs: "list[MessageRef]") -> str:
    """Render refs as an IMAP UID set, e.g. "4,7,9"."""
    return ",".join(str(ref.uid) for ref in refs)


@dataclass
class MessageMeta:
    """
    Lightweight metadata for one message (FLAGS, RFC822.SIZE, ENVELOPE).

    Attributes:
        ref: The message this metadata belongs to.
        subject: Decoded envelope subject ("" if the envelope has none).
        message_id: Envelope Message-ID ("" if missing).
        flags: Current IMAP flags.
        size: Server-reported RFC822.SIZE in bytes. Some servers (notably
              Exchange) report the decoded size here, not the wire size.
    """
    ref: MessageRef
    subject: str = ""
    message_id: str = ""
    flags: MessageFlags = MessageFlags.NONE
    size: int = 0

    @property
    def is_deleted(self) -> bool:
        """True if the message is already flagged \\Deleted."""
        return bool(self.flags & MessageFlags.DELETED)


@dataclass
class MessageBody:
    """
    The full raw content of one message.

    Held only for the duration of one intake attempt.
    """
    ref: MessageRef
    raw: bytes

    def __len__(self) -> int:
        return len(self.raw)
