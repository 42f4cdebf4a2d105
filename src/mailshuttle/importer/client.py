# =============================================================================
# Message Importer
# =============================================================================
# Hands accepted messages to their final destination.
#
# The sync engine only knows the Importer protocol: raw bytes in, return
# on success, ImportFailure on rejection. A failure is never retried; the
# message goes straight to quarantine.
#
# ImapAppendImporter uploads the raw message with IMAP APPEND into another
# account (Gmail, Fastmail, ...), which keeps the original headers and
# Date intact, unlike re-sending it over SMTP.
# =============================================================================

import asyncio
import logging
from typing import Protocol

import keyring
from aioimaplib import aioimaplib

from mailshuttle.config import ImporterConfig

logger = logging.getLogger(__name__)


class Importer(Protocol):
    """Anything that can take ownership of a raw RFC822 message."""

    async def import_message(self, raw: bytes) -> None:
        """
        Import one message.

        Raises:
            ImportFailure: If the destination rejected the message.
        """
        ...

    async def close(self) -> None:
        ...


class ImapAppendImporter:
    """
    Imports messages by APPENDing them to a destination IMAP mailbox.

    The destination connection is opened lazily and reused across
    messages. Any failure drops it, so the next import reconnects.

    Usage:
        >>> importer = ImapAppendImporter(config.importer)
        >>> await importer.import_message(raw)
        >>> await importer.close()
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 60

    def __init__(self, config: ImporterConfig) -> None:
        self.config = config
        self._client: aioimaplib.IMAP4_SSL | None = None

    async def _connect(self) -> aioimaplib.IMAP4_SSL:
        if self._client is not None:
            return self._client

        logger.info(f"Connecting importer to {self.config.host}:{self.config.port}")

        password = self.config.password or keyring.get_password(
            self.config.keyring_service,
            self.config.user,
        )
        if not password:
            raise ImportFailure(
                f"No password configured for importer account {self.config.user}. "
                f"Set it with: keyring set {self.config.keyring_service} {self.config.user}"
            )

        client = aioimaplib.IMAP4_SSL(
            host=self.config.host,
            port=self.config.port,
            timeout=self.TIMEOUT,
        )
        await client.wait_hello_from_server()

        response = await client.login(self.config.user, password)
        if response.result != "OK":
            raise ImportFailure(
                f"Importer authentication failed for {self.config.user}: {response.lines}"
            )

        self._client = client
        return client

    async def import_message(self, raw: bytes) -> None:
        """
        APPEND raw to the configured destination folder.

        Raises:
            ImportFailure: On connection, authentication or APPEND failure.
        """
        flags = " ".join(self.config.flags) or None

        try:
            client = await self._connect()
            response = await client.append(
                raw,
                mailbox=self.config.folder,
                flags=flags,
            )
        except ImportFailure:
            await self.close()
            raise
        except aioimaplib.CommandTimeout as e:
            await self.close()
            raise ImportFailure(f"APPEND timed out after {self.TIMEOUT}s") from e
        except (asyncio.TimeoutError, OSError, aioimaplib.Abort) as e:
            await self.close()
            raise ImportFailure(f"Importer connection failed: {e}") from e

        if response.result != "OK":
            raise ImportFailure(f"APPEND rejected: {response.lines}")

        logger.debug(f"Appended {len(raw)} bytes to {self.config.folder}")

    async def close(self) -> None:
        """Log out of the destination, if connected."""
        if self._client is None:
            return

        client, self._client = self._client, None
        try:
            await asyncio.wait_for(client.logout(), timeout=5.0)
        except Exception as e:
            logger.warning(f"Error during importer logout: {e}")


# =============================================================================
# Exceptions
# =============================================================================

class ImportFailure(Exception):
    """Raised when the destination refuses or cannot take a message."""
    pass
