# =============================================================================
# Idle Wait
# =============================================================================
# Blocks the sync loop in IMAP IDLE until there is something to do.
#
# Three things race while idling:
#   - a server push (EXISTS, EXPUNGE, FETCH ...)    -> ask IDLE to stop
#   - the idle timeout                              -> ask IDLE to stop
#   - the IDLE command completing                   -> done
#
# Only the IDLE command completing ends the wait. Asking it to stop (sending
# DONE) happens at most once, whichever of the first two branches fires
# first. The push subscription is always torn down on exit; a dangling
# wait_server_push() would swallow responses meant for the next command.
#
#   IDLE --push--> NOTIFIED_STOP --+
#   IDLE --timer-> TIMED_OUT ------+--> IDLE command completes -> return
#   IDLE --IDLE command fails--------> ERRORED -> raise IdleError
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum, auto

from mailshuttle.imap.session import IDLE_FALLBACK, IdleError, MailSession

logger = logging.getLogger(__name__)


class IdleState(Enum):
    """Where the idle wait is, or how it ended."""
    IDLE = auto()           # Waiting, no stop requested yet
    NOTIFIED_STOP = auto()  # Server pushed a change; stop requested
    TIMED_OUT = auto()      # Idle timeout elapsed; stop requested
    ERRORED = auto()        # The IDLE command failed


@dataclass
class IdleEvent:
    """A parsed server push received during IDLE."""
    folder_name: str
    event_type: str  # "new_mail", "expunge", "flags", "fallback", "unknown"
    message_count: int | None = None  # For EXISTS events


class IdleWait:
    """
    One IDLE wait on the session's selected folder.

    Usage:
        >>> state = await IdleWait(session, timeout=300).wait()

    Attributes:
        session: Session with the watched folder selected.
        timeout: Seconds to wait without activity before giving up.
        state: Current state; final once wait() returns or raises.
        events: Pushes received during this wait.
    """

    def __init__(self, session: MailSession, timeout: float) -> None:
        self.session = session
        self.timeout = timeout
        self.state = IdleState.IDLE
        self.events: list[IdleEvent] = []
        self._stop_requested = False

    async def wait(self) -> IdleState:
        """
        Idle until a push or the timeout, then leave IDLE cleanly.

        Returns:
            NOTIFIED_STOP or TIMED_OUT, whichever stopped the wait.

        Raises:
            IdleError: If entering or running IDLE failed.
        """
        folder = self.session.selected.name if self.session.selected else "?"
        logger.debug(f"Waiting for IDLE events on {folder} (timeout {self.timeout}s)")

        # Without IDLE the next pass's SEARCH is the only way to notice mail
        if not self.session.supports_idle():
            logger.debug("Server does not support IDLE, polling instead")
            await asyncio.sleep(self.timeout)
            self.state = IdleState.TIMED_OUT
            return self.state

        try:
            idle_task = await self.session.idle_start(fallback=self.timeout)
        except IdleError:
            self.state = IdleState.ERRORED
            raise

        push_task = asyncio.ensure_future(self.session.wait_server_push())
        timer = asyncio.ensure_future(asyncio.sleep(self.timeout))
        watchers = {idle_task, push_task, timer}

        try:
            while True:
                done, _ = await asyncio.wait(
                    watchers, return_when=asyncio.FIRST_COMPLETED
                )

                if idle_task in done:
                    return self._finish(idle_task)

                if push_task in done:
                    watchers.discard(push_task)
                    if self._on_push(folder, push_task):
                        self._request_stop(IdleState.NOTIFIED_STOP)
                    if not self._stop_requested:
                        push_task = asyncio.ensure_future(
                            self.session.wait_server_push()
                        )
                        watchers.add(push_task)

                if timer in done:
                    watchers.discard(timer)
                    logger.debug("IDLE stopped by timeout")
                    self._request_stop(IdleState.TIMED_OUT)
        finally:
            # Unsubscribe from pushes on every exit path
            for task in (push_task, timer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(push_task, timer, return_exceptions=True)

            if not idle_task.done():
                self._request_stop(self.state)
                idle_task.cancel()
                await asyncio.gather(idle_task, return_exceptions=True)

    def _request_stop(self, reason: IdleState) -> None:
        """Send DONE once; later requests are no-ops."""
        if self._stop_requested:
            return
        self._stop_requested = True
        self.state = reason
        self.session.idle_done()

    def _finish(self, idle_task: asyncio.Future) -> IdleState:
        try:
            idle_task.result()
        except IdleError:
            self.state = IdleState.ERRORED
            raise
        except Exception as e:
            self.state = IdleState.ERRORED
            raise IdleError(f"IDLE failed: {e}") from e

        # The server ended IDLE on its own (no DONE sent): treat it like a push
        if self.state is IdleState.IDLE:
            self.state = IdleState.NOTIFIED_STOP

        logger.debug(f"IDLE done: {self.state.name}")
        return self.state

    def _on_push(self, folder: str, push_task: asyncio.Future) -> bool:
        """
        Record a finished push wait.

        Returns:
            True if it should stop IDLE.
        """
        try:
            lines = push_task.result()
        except asyncio.TimeoutError:
            logger.debug("IDLE push wait timed out")
            return True
        except Exception as e:
            logger.warning(f"IDLE push wait failed: {e}")
            return True

        if lines == IDLE_FALLBACK:
            self.events.append(IdleEvent(folder_name=folder, event_type="fallback"))
            logger.debug("IDLE fallback timer fired")
            return True

        for line in lines:
            event = self._parse_notification(folder, line)
            if event:
                self.events.append(event)
        return bool(lines)

    def _parse_notification(self, folder_name: str, notification: str) -> IdleEvent | None:
        """
        Parse an IMAP IDLE notification into an event.

        Common notifications (aioimaplib strips the leading *):
            - "N EXISTS" - N messages now exist (new mail if N increased)
            - "N EXPUNGE" - Message N was deleted
            - "N FETCH (FLAGS ...)" - Flags changed on message N
        """
        notification = notification.strip()

        # aioimaplib may or may not include the leading *
        if notification.startswith("*"):
            notification = notification[1:].strip()

        match = re.match(r"(\d+)\s+EXISTS", notification, re.IGNORECASE)
        if match:
            count = int(match.group(1))
            logger.info(f"IDLE: {folder_name} now has {count} messages")
            return IdleEvent(folder_name, "new_mail", message_count=count)

        if re.match(r"(\d+)\s+EXPUNGE", notification, re.IGNORECASE):
            logger.debug(f"IDLE: {folder_name} message expunged")
            return IdleEvent(folder_name, "expunge")

        if "FETCH" in notification.upper():
            logger.debug(f"IDLE: {folder_name} flags changed")
            return IdleEvent(folder_name, "flags")

        logger.debug(f"IDLE: unknown notification on {folder_name}: {notification}")
        return IdleEvent(folder_name, "unknown")
