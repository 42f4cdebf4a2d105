# =============================================================================
# mailshuttle Application
# =============================================================================
# Process-level wiring around the sync loop:
#   - Command-line parsing and logging setup
#   - Building the importer, notifier and pipeline from one Config
#   - The supervisor: restarts the sync loop when it returns an error, and
#     restarts it when its watchdog pulses stop arriving
#   - A connection check that lists the server's folders
# =============================================================================

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from mailshuttle import __version__, __app_name__
from mailshuttle.config import Config, ConfigError, print_paths
from mailshuttle.importer import ImapAppendImporter, Importer
from mailshuttle.imap import IMAPError, IntakePipeline, SyncLoop, open_session
from mailshuttle.imap.loop import SessionFactory
from mailshuttle.notify import Notifier, make_notifier

logger = logging.getLogger(__name__)


# =============================================================================
# Supervisor
# =============================================================================

class Supervisor:
    """
    Keeps the sync loop running.

    A loop that returns an error, or that stops pulsing its watchdog for
    longer than the liveness window, is torn down and started again after
    the reconnect delay.

    Usage:
        >>> exit_code = await Supervisor(config).run_forever()

    Attributes:
        config: Full application configuration.
        restarts: Number of restarts so far.
        last_error: The error that ended the most recent loop, if any.
    """

    def __init__(
        self,
        config: Config,
        *,
        importer: Importer | None = None,
        notifier: Notifier | None = None,
        session_factory: SessionFactory = open_session,
    ) -> None:
        self.config = config
        self.importer = importer or ImapAppendImporter(config.importer)
        self.notifier = notifier or make_notifier(config.notify)
        self.session_factory = session_factory
        self.restarts = 0
        self.last_error: Exception | None = None

    async def run_forever(self) -> int:
        """
        Run, restart on failure, and give up after max_restarts (if set).

        Returns:
            Process exit code (only returned when giving up).
        """
        max_restarts = self.config.watchdog.max_restarts
        delay = self.config.watchdog.reconnect_delay

        try:
            while True:
                self.last_error = await self.run_once()
                self.restarts += 1

                if max_restarts and self.restarts >= max_restarts:
                    logger.error(
                        f"Giving up after {self.restarts} restarts, last error: {self.last_error}"
                    )
                    return 1

                logger.info(f"Restarting sync loop in {delay}s (restart #{self.restarts})")
                await asyncio.sleep(delay)
        finally:
            await self.importer.close()

    async def run_once(self) -> Exception:
        """
        Run one sync loop under the watchdog until it ends.

        Returns:
            The loop's error, or WatchdogTimeout if it stopped pulsing.
        """
        pipeline = IntakePipeline(self.config.imap, self.importer, self.notifier)
        sync = SyncLoop(self.config.imap, pipeline, self.session_factory)
        watchdog: asyncio.Queue = asyncio.Queue(maxsize=1)

        loop_task = asyncio.create_task(sync.run(watchdog), name="sync-loop")
        monitor_task = asyncio.create_task(self._monitor(watchdog), name="watchdog")

        try:
            done, _ = await asyncio.wait(
                {loop_task, monitor_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if loop_task.done():
                monitor_task.cancel()
            else:
                loop_task.cancel()
            await asyncio.gather(loop_task, monitor_task, return_exceptions=True)

        if loop_task in done:
            return loop_task.result()

        error = monitor_task.result()
        logger.error(f"{error}, restarting sync loop")
        return error

    async def _monitor(self, watchdog: asyncio.Queue) -> "WatchdogTimeout":
        """Consume pulses; return once one is overdue."""
        window = self.config.liveness_window
        while True:
            try:
                await asyncio.wait_for(watchdog.get(), timeout=window)
            except asyncio.TimeoutError:
                return WatchdogTimeout(f"No liveness signal for {window}s")
            logger.debug("Watchdog pulse received")


class WatchdogTimeout(Exception):
    """The sync loop stopped sending liveness pulses."""
    pass


# =============================================================================
# Connection Check
# =============================================================================

async def check_connection(config: Config) -> int:
    """
    Log in to the watched server and print its folders.

    Returns:
        0 on success, 1 if connecting or listing failed.
    """
    try:
        session = await open_session(config.imap)
    except IMAPError as e:
        print(f"Connection failed: {e}", file=sys.stderr)
        return 1

    async with session:
        try:
            folders = await session.list_folders()
        except IMAPError as e:
            print(f"Listing folders failed: {e}", file=sys.stderr)
            return 1

    for name in folders:
        print(f"Mailbox {name}")

    # The three folders the loop relies on must exist
    missing = [
        name
        for name in (
            config.imap.folder,
            config.imap.folder_moved,
            config.imap.folder_quarantine,
        )
        if name not in folders
    ]
    for name in missing:
        print(f"Warning: configured folder '{name}' does not exist", file=sys.stderr)
    return 0


# =============================================================================
# CLI Entry Point
# =============================================================================

def setup_logging(debug: bool = False) -> None:
    """Configure root logging for a long-running process."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # aioimaplib logs every protocol line at DEBUG
    if not debug:
        logging.getLogger("aioimaplib").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailshuttle: drain an IMAP inbox into an importer, IDLE-driven",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a default config file and exit",
    )

    parser.add_argument(
        "--check",
        action="store_true",
        help="Log in, list the server's folders and exit",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailshuttle.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return 0

    if args.init_config:
        path = args.config or Config.config_file_path()
        if path.exists():
            print(f"Config file already exists: {path}", file=sys.stderr)
            return 1
        print(f"Wrote {Config().save(path)}")
        return 0

    setup_logging(args.debug)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        if args.check:
            return asyncio.run(check_connection(config))
        return asyncio.run(Supervisor(config).run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
