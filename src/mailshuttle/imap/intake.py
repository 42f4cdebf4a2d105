# =============================================================================
# Message Intake Pipeline
# =============================================================================
# Handles exactly one pending message:
#
#   1. fetch metadata (flags, size, envelope)
#   2. resume an interrupted relocation if the message is already \Deleted
#   3. size gate: too big -> alert + quarantine
#   4. fetch the raw body
#   5. import: failure -> alert + quarantine
#   6. success -> move to the "moved" folder
#
# Every branch that completes ends in a relocation, so a processed message
# never lingers in the watched folder. Quarantining is a successful outcome;
# only fetch failures and relocation failures are raised to the caller.
#
# Step 2 trusts the \Deleted flag alone. A message another client flagged
# \Deleted in the watched folder is expunged without ever being imported,
# so its Message-ID and subject are logged at warning level first.
# =============================================================================

import logging
from enum import Enum, auto

from mailshuttle.config import ImapConfig
from mailshuttle.core import MessageMeta, MessageRef
from mailshuttle.importer import Importer, ImportFailure
from mailshuttle.imap.relocate import RelocationStep, relocate
from mailshuttle.imap.session import MailSession
from mailshuttle.notify import Notifier, NotifyError

logger = logging.getLogger(__name__)


class IntakeOutcome(Enum):
    """How a message left the watched folder."""
    MOVED = auto()                  # Imported and moved to the moved folder
    QUARANTINED_SIZE = auto()       # Over max_email_size, never imported
    QUARANTINED_IMPORT = auto()     # Importer rejected it
    RESUMED = auto()                # Finished an earlier, interrupted move


class IntakePipeline:
    """
    Runs the fetch -> gate -> import -> relocate sequence for one message.

    Usage:
        >>> pipeline = IntakePipeline(config.imap, importer, notifier)
        >>> outcome = await pipeline.intake(session, ref)

    Attributes:
        config: Folder names and the size limit.
        importer: Destination for accepted messages.
        notifier: Sink for quarantine alerts.
    """

    def __init__(
        self,
        config: ImapConfig,
        importer: Importer,
        notifier: Notifier,
    ) -> None:
        self.config = config
        self.importer = importer
        self.notifier = notifier

    async def intake(self, session: MailSession, ref: MessageRef) -> IntakeOutcome:
        """
        Process one message of the selected folder.

        Args:
            session: Session with the watched folder selected.
            ref: The message to process.

        Returns:
            Which terminal branch the message took.

        Raises:
            FetchError: If metadata or body could not be fetched.
            RelocationError: If the final move failed part-way.
        """
        meta = await session.fetch_meta(ref)
        logger.info(
            f"UID {ref}: size={meta.size}, id={meta.message_id}, subject={meta.subject!r}"
        )

        # Copied and flagged by an earlier pass whose expunge failed. The
        # copy already exists in its target folder, so only finish the move.
        if meta.is_deleted:
            logger.warning(
                f"UID {ref}: already flagged deleted, expunging without import: "
                f"id={meta.message_id}, subject={meta.subject!r}"
            )
            await relocate(
                session,
                [ref],
                "",
                resume_from=RelocationStep.FLAGGED,
            )
            return IntakeOutcome.RESUMED

        if meta.size > self.config.max_email_size:
            logger.warning(f"UID {ref}: message too big ({meta.size}), quarantining")
            await self._alert(
                meta,
                f"Message too big: {meta.size}\nsubject={meta.subject}",
            )
            await relocate(session, [ref], self.config.folder_quarantine)
            return IntakeOutcome.QUARANTINED_SIZE

        body = await session.fetch_body(ref)

        try:
            await self.importer.import_message(body.raw)
        except ImportFailure as e:
            logger.warning(f"UID {ref}: import failed, quarantining: {e}")
            await self._alert(
                meta,
                f"Import error: {e}\nsubject={meta.subject}",
            )
            await relocate(session, [ref], self.config.folder_quarantine)
            return IntakeOutcome.QUARANTINED_IMPORT

        await relocate(session, [ref], self.config.folder_moved)
        return IntakeOutcome.MOVED

    async def _alert(self, meta: MessageMeta, body: str) -> None:
        """Send a quarantine alert; a failed alert is logged and dropped."""
        subject = f"Moving message to quarantine mid={meta.message_id}"
        try:
            await self.notifier.send(subject, body)
        except NotifyError as e:
            logger.error(f"UID {meta.ref}: could not send alert: {e}")
