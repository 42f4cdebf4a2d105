# =============================================================================
# Synchronization Loop
# =============================================================================
# The top-level driver. Each pass:
#   1. make sure a session is open and the watched folder is selected
#   2. search for pending messages
#   3. run the intake pipeline over each one (errors are logged, not fatal)
#   4. idle until new activity or the idle timeout
#   5. send a liveness pulse to the watchdog
#
# A relocation that failed part-way makes the next pass start on a fresh
# session; that pass finds the message again and finishes the move.
#
# The loop never returns while things work. It returns the error that ended
# it: a failed (re)connect, a session-level protocol failure, an IDLE
# failure, or any unexpected exception, wrapped in LoopCrashed. Whoever
# called run() decides whether to start it again.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, Callable

from mailshuttle.config import ImapConfig
from mailshuttle.imap.idle import IdleWait
from mailshuttle.imap.intake import IntakePipeline
from mailshuttle.imap.relocate import RelocationError
from mailshuttle.imap.session import (
    FetchError,
    IMAPError,
    MailSession,
    open_session,
)

logger = logging.getLogger(__name__)

# Opens an authenticated session for one loop run
SessionFactory = Callable[[ImapConfig], Awaitable[MailSession]]


class SyncLoop:
    """
    Drains the watched folder forever, idling between passes.

    Usage:
        >>> watchdog = asyncio.Queue(maxsize=1)
        >>> loop = SyncLoop(config.imap, pipeline)
        >>> error = await loop.run(watchdog)

    Attributes:
        config: IMAP settings (folder, search criteria, idle timeout).
        pipeline: Intake pipeline applied to each pending message.
        passes: Number of completed passes (each followed by a pulse).
    """

    def __init__(
        self,
        config: ImapConfig,
        pipeline: IntakePipeline,
        session_factory: SessionFactory = open_session,
    ) -> None:
        self.config = config
        self.pipeline = pipeline
        self.passes = 0
        self._session_factory = session_factory
        self._session: MailSession | None = None

    async def run(self, watchdog: asyncio.Queue) -> Exception:
        """
        Run passes until something unrecoverable happens.

        Args:
            watchdog: Receives None after every completed pass. Pulses are
                      dropped if nobody drained the previous one.

        Returns:
            The error that ended the loop.
        """
        try:
            while True:
                session = await self._ensure_session()
                in_transit = await self._drain(session)

                await IdleWait(session, self.config.idle_timeout).wait()

                # Relocation failed part-way: start the next pass on a fresh
                # session, which picks the messages up again.
                if in_transit:
                    logger.info("Reopening session to resume messages left in transit")
                    await self._drop_session()

                self.passes += 1
                self._pulse(watchdog)
        except IMAPError as e:
            logger.error(f"Sync loop stopped: {e}")
            return e
        except Exception as e:
            logger.exception("Recovering from unexpected error in sync loop")
            return LoopCrashed(f"Sync loop crashed: {e!r}", e)
        finally:
            await self._drop_session()

    async def _drain(self, session: MailSession) -> bool:
        """
        Process every pending message once.

        Returns:
            True if some relocation failed part-way.
        """
        in_transit = False
        view = await session.select(self.config.folder)
        refs = await session.search(self.config.search_criteria)
        logger.info(f"{view.name}: {view.exists} messages, {len(refs)} pending")

        for ref in refs:
            try:
                outcome = await self.pipeline.intake(session, ref)
            except FetchError as e:
                logger.error(f"Skipping message: {e}")
                continue
            except RelocationError as e:
                logger.error(f"Message left in transit: {e}")
                in_transit = True
                continue
            logger.info(f"UID {ref}: {outcome.name.lower()}")

        return in_transit

    async def _ensure_session(self) -> MailSession:
        if self._session is None or not self._session.is_connected:
            await self._drop_session()
            self._session = await self._session_factory(self.config)
        return self._session

    async def _drop_session(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.logout()

    def _pulse(self, watchdog: asyncio.Queue) -> None:
        try:
            watchdog.put_nowait(None)
        except asyncio.QueueFull:
            logger.debug("Watchdog pulse dropped, previous one not yet consumed")


class LoopCrashed(IMAPError):
    """An unexpected exception escaped one pass of the sync loop."""

    def __init__(self, message: str, cause: Exception) -> None:
        super().__init__(message)
        self.cause = cause
