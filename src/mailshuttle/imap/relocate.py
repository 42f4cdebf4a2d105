# =============================================================================
# Folder Relocation
# =============================================================================
# Moves messages out of the selected folder with three ordered commands:
#
#   PENDING --COPY--> COPIED --STORE +FLAGS (\Deleted)--> FLAGGED --EXPUNGE--> EXPUNGED
#
# This is the only way a message ever leaves the watched folder, so a
# completed EXPUNGE is the commit point for "processed".
#
# None of the steps is atomic with the others. A failure leaves the message
# in a well-defined intermediate state:
#   - copy failed:    nothing changed, safe to redo from PENDING
#   - flag failed:    message is in both folders, redo copies it again
#   - expunge failed: message is in both folders and flagged \Deleted;
#                     resume from FLAGGED (expunge only)
# Duplicates in the target folder are acceptable; losing a message is not.
# =============================================================================

import logging
from enum import Enum

from mailshuttle.core import MessageRef, format_uid_set
from mailshuttle.imap.session import IMAPError, MailSession

logger = logging.getLogger(__name__)


class RelocationStep(Enum):
    """How far a relocation has progressed. Values are in execution order."""
    PENDING = 0     # Nothing done yet
    COPIED = 1      # Duplicated into the target folder
    FLAGGED = 2     # Source copy marked \Deleted
    EXPUNGED = 3    # Source copy gone; relocation complete


async def relocate(
    session: MailSession,
    refs: list[MessageRef],
    target_folder: str,
    *,
    resume_from: RelocationStep = RelocationStep.PENDING,
) -> RelocationStep:
    """
    Move refs from the selected folder into target_folder.

    Args:
        session: Session with the source folder selected.
        refs: Messages to move. An empty list is a no-op.
        target_folder: Destination folder name. Only used by the copy step,
                       so it may be "" when resuming from FLAGGED.
        resume_from: The state already reached by an earlier attempt.
                     Steps up to and including it are skipped.

    Returns:
        RelocationStep.EXPUNGED once the move is complete.

    Raises:
        RelocationError: Naming the step that failed. Later steps did not run.
    """
    if not refs:
        return RelocationStep.EXPUNGED

    uid_set = format_uid_set(refs)
    state = resume_from

    if state is RelocationStep.PENDING:
        logger.debug(f"Relocate {uid_set}: copy to {target_folder}")
        try:
            await session.copy(refs, target_folder)
        except IMAPError as e:
            raise RelocationError(RelocationStep.COPIED, target_folder, refs, e) from e
        state = RelocationStep.COPIED

    if state is RelocationStep.COPIED:
        logger.debug(f"Relocate {uid_set}: mark deleted")
        try:
            await session.add_flags(refs, ["\\Deleted"])
        except IMAPError as e:
            raise RelocationError(RelocationStep.FLAGGED, target_folder, refs, e) from e
        state = RelocationStep.FLAGGED

    if state is RelocationStep.FLAGGED:
        logger.debug(f"Relocate {uid_set}: expunge")
        try:
            await session.expunge()
        except IMAPError as e:
            raise RelocationError(RelocationStep.EXPUNGED, target_folder, refs, e) from e
        state = RelocationStep.EXPUNGED

    logger.info(f"Moved UID {uid_set} to {target_folder or 'its earlier target'}")
    return state


# Command that moves a relocation into each state
_OPERATIONS = {
    RelocationStep.COPIED: "copy",
    RelocationStep.FLAGGED: "flag",
    RelocationStep.EXPUNGED: "expunge",
}


class RelocationError(IMAPError):
    """
    A relocation step failed.

    Attributes:
        step: The state the failed command would have reached
              (COPIED means the copy failed, and so on).
        operation: The failed command: "copy", "flag" or "expunge".
        target: Destination folder of the aborted move.
        refs: Messages being moved.
        reached: The last step that did complete.
    """

    def __init__(
        self,
        step: RelocationStep,
        target: str,
        refs: list[MessageRef],
        cause: Exception,
    ) -> None:
        super().__init__(
            f"Relocation of UID {format_uid_set(refs)} to {target} "
            f"failed during {_OPERATIONS[step]}: {cause}"
        )
        self.step = step
        self.target = target
        self.refs = list(refs)

    @property
    def operation(self) -> str:
        return _OPERATIONS[self.step]

    @property
    def reached(self) -> RelocationStep:
        return RelocationStep(self.step.value - 1)
