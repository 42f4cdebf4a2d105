# =============================================================================
# IMAP Session
# =============================================================================
# One authenticated, stateful IMAP connection, wrapping aioimaplib.
#
# Key responsibilities:
#   - Opening the TLS connection and logging in (open_session)
#   - Selecting the watched folder and searching for pending messages
#   - Fetching message metadata and raw bodies by UID
#   - The three relocation primitives: UID COPY, UID STORE, EXPUNGE
#   - IDLE start/stop and access to server pushes
#
# Design notes:
#   - A session is exclusively owned by the sync loop and is never repaired:
#     on a fatal error it is logged out and a new one is opened.
#   - The socket timeout is twice the idle budget, so a stalled IDLE can
#     never hang past the point where the loop expected to wake up.
#   - Every remote call is a direct awaited request/response with a
#     timeout; no per-request task or queue is needed.
# =============================================================================

import asyncio
import email.header
import logging
import re

import keyring
from aioimaplib import aioimaplib

from mailshuttle.config import ImapConfig
from mailshuttle.core import (
    MailboxView,
    MessageBody,
    MessageFlags,
    MessageMeta,
    MessageRef,
    format_uid_set,
)

# Set up logging for this module
logger = logging.getLogger(__name__)

# Items for the cheap first fetch: no body transfer
META_ITEMS = "(FLAGS RFC822.SIZE ENVELOPE)"

# Full raw message. PEEK keeps the server from setting \Seen.
BODY_ITEMS = "(BODY.PEEK[])"

_LITERAL_RE = re.compile(rb"\{(\d+)\}\s*$")


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    Folder names with spaces or special characters must be quoted.
    Internal quotes and backslashes are escaped.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _as_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


# What wait_server_push returns when aioimaplib's IDLE fallback timer fires
IDLE_FALLBACK = [_as_text(line) for line in aioimaplib.STOP_WAIT_SERVER_PUSH]


class MailSession:
    """
    An open IMAP session bound to at most one selected folder.

    Usage:
        >>> session = await open_session(config.imap)
        >>> view = await session.select("INBOX")
        >>> refs = await session.search("ALL")
        >>> meta = await session.fetch_meta(refs[0])
        >>> await session.logout()

    Sessions also work as async context managers and log out on exit.

    Attributes:
        config: IMAP settings this session was opened with.
        selected: View of the currently selected folder, if any.
    """

    def __init__(self, config: ImapConfig) -> None:
        self.config = config
        self.selected: MailboxView | None = None
        self._client: aioimaplib.IMAP4_SSL | None = None

    @property
    def is_connected(self) -> bool:
        """True while the session holds a live client."""
        return self._client is not None

    @property
    def timeout(self) -> float:
        """Upper bound for any single protocol round trip."""
        return self.config.connection_timeout

    async def __aenter__(self) -> "MailSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.logout()

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Dial the server over TLS and authenticate.

        Raises:
            IMAPConnectionError: If unable to reach the server.
            IMAPAuthenticationError: If login is rejected or no password
                                     is available.
        """
        logger.info(f"Connecting to {self.config.host}:{self.config.port}")

        try:
            self._client = aioimaplib.IMAP4_SSL(
                host=self.config.host,
                port=self.config.port,
                timeout=self.timeout,
            )
            await self._client.wait_hello_from_server()
        except asyncio.TimeoutError as e:
            self._client = None
            raise IMAPConnectionError(
                f"Connection timed out to {self.config.host}:{self.config.port}"
            ) from e
        except OSError as e:
            self._client = None
            raise IMAPConnectionError(
                f"Failed to connect to {self.config.host}:{self.config.port}: {e}"
            ) from e

        try:
            await self._authenticate()
        except Exception:
            await self.logout()
            raise

        logger.info(f"Logged in to {self.config.host} as {self.config.user}")

    async def _authenticate(self) -> None:
        """
        Log in with the configured password, or the keyring one.

        Raises:
            IMAPAuthenticationError: If login fails or password not found.
        """
        password = self.config.password or keyring.get_password(
            self.config.keyring_service,
            self.config.user,
        )

        if not password:
            raise IMAPAuthenticationError(
                f"No password configured for {self.config.user}. "
                f"Set it with: keyring set {self.config.keyring_service} {self.config.user}"
            )

        logger.debug(f"Authenticating as {self.config.user}")
        response = await self._call("LOGIN", self._client.login(self.config.user, password))

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.config.user}: {response.lines}"
            )

    async def logout(self) -> None:
        """
        Send LOGOUT and drop the connection.

        Safe to call more than once; errors are logged, not raised, since
        this runs on every exit path including after a fatal error.
        """
        if self._client is None:
            return

        client, self._client = self._client, None
        self.selected = None
        try:
            logger.debug("Sending LOGOUT")
            await asyncio.wait_for(client.logout(), timeout=5.0)
        except Exception as e:
            logger.warning(f"Error during logout: {e}")

    def _require_client(self) -> aioimaplib.IMAP4_SSL:
        if self._client is None:
            raise IMAPConnectionError("Session is not connected")
        return self._client

    async def _call(self, what: str, coro):
        """Await one protocol command, mapping transport failures."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            raise IMAPConnectionError(f"{what} timed out after {self.timeout}s") from e
        except (OSError, aioimaplib.Abort) as e:
            raise IMAPConnectionError(f"{what} failed: {e}") from e

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[str]:
        """Return the names of all mailboxes on the server."""
        client = self._require_client()
        response = await self._call("LIST", client.list('""', "*"))

        if response.result != "OK":
            raise IMAPError(f"Failed to list folders: {response.lines}")

        folders = []
        for line in response.lines:
            line = _as_text(line)
            # Format: (flags) "delimiter" "name"
            match = re.match(r'\(([^)]*)\)\s+(?:"[^"]*"|NIL)\s+(.+)', line)
            if match:
                folders.append(match.group(2).strip().strip('"'))
        return folders

    async def select(self, folder_name: str) -> MailboxView:
        """
        Select a folder read-write and return a fresh view of it.

        Raises:
            IMAPError: If the server rejects the selection.
        """
        client = self._require_client()
        logger.debug(f"Selecting folder: {folder_name}")

        response = await self._call(
            "SELECT", client.select(_quote_folder_name(folder_name))
        )
        if response.result != "OK":
            raise IMAPError(f"Failed to select folder '{folder_name}': {response.lines}")

        self.selected = self._parse_select_response(folder_name, response.lines)
        logger.debug(f"Selected {self.selected}")
        return self.selected

    def _parse_select_response(self, folder_name: str, lines) -> MailboxView:
        """Parse SELECT response lines into a MailboxView."""
        status: dict[str, int] = {}

        for line in lines:
            line = _as_text(line)

            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                status["EXISTS"] = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDVALIDITY"] = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                status["UIDNEXT"] = int(match.group(1))

        return MailboxView(
            name=folder_name,
            exists=status.get("EXISTS", 0),
            uidvalidity=status.get("UIDVALIDITY"),
            uidnext=status.get("UIDNEXT"),
        )

    async def search(self, criteria: str) -> list[MessageRef]:
        """
        UID SEARCH the selected folder.

        Args:
            criteria: Raw IMAP search criteria, e.g. "ALL" or "UNSEEN".

        Returns:
            Matching refs in the order the server listed them.
        """
        client = self._require_client()
        response = await self._call(
            "SEARCH", client.uid_search(criteria, charset=None)
        )

        if response.result != "OK":
            raise IMAPError(f"Search '{criteria}' failed: {response.lines}")

        # The result line is "1 2 3" (or "SEARCH 1 2 3" depending on the
        # library version); the completion line never parses as UIDs.
        refs = []
        for line in response.lines:
            tokens = _as_text(line).split()
            if tokens and tokens[0].upper() == "SEARCH":
                tokens = tokens[1:]
            if tokens and all(t.isdigit() for t in tokens):
                refs.extend(MessageRef(int(t)) for t in tokens)

        logger.debug(f"Search '{criteria}' matched {len(refs)} messages")
        return refs

    # =========================================================================
    # Message Fetching
    # =========================================================================

    async def fetch_meta(self, ref: MessageRef) -> MessageMeta:
        """
        Fetch flags, size and envelope for one message.

        Raises:
            FetchError: If the server returns nothing usable for this UID.
        """
        client = self._require_client()
        response = await self._call(
            "FETCH", client.uid("FETCH", str(ref.uid), META_ITEMS)
        )

        if response.result != "OK":
            raise FetchError(ref, f"metadata fetch failed: {response.lines}")

        text = self._join_literals(response.lines)
        if "ENVELOPE" not in text.upper():
            raise FetchError(ref, "no envelope returned")

        meta = MessageMeta(ref=ref)

        flags_match = re.search(r"FLAGS\s*\(([^)]*)\)", text, re.IGNORECASE)
        if flags_match:
            meta.flags = MessageFlags.parse(flags_match.group(1))

        size_match = re.search(r"RFC822\.SIZE\s+(\d+)", text, re.IGNORECASE)
        if not size_match:
            raise FetchError(ref, "no RFC822.SIZE returned")
        meta.size = int(size_match.group(1))

        envelope_match = re.search(r"ENVELOPE\s*\((.+)\)", text, re.IGNORECASE)
        if envelope_match:
            parts = self._tokenize_envelope(envelope_match.group(1))
            if len(parts) >= 2:
                meta.subject = self._decode_header(self._clean_envelope_string(parts[1]))
            if len(parts) >= 10:
                meta.message_id = self._clean_envelope_string(parts[9])

        return meta

    def _join_literals(self, lines) -> str:
        """
        Flatten a FETCH response into one line of text.

        Envelope strings containing quotes or 8-bit data arrive as IMAP
        literals: the text line ends with {N} and the next item holds the
        N raw bytes. Those are inlined as quoted strings.
        """
        text = ""
        pending_literal = False
        for item in lines:
            if pending_literal:
                value = _as_text(item).replace("\\", "\\\\").replace('"', '\\"')
                text = re.sub(r"\{\d+\}\s*$", lambda _: f'"{value}"', text)
                pending_literal = False
                continue

            line = _as_text(item)
            text = f"{text} {line.strip()}" if text else line.strip()
            if re.search(r"\{\d+\}\s*$", line):
                pending_literal = True
        return text

    def _tokenize_envelope(self, s: str) -> list[str]:
        """Split an ENVELOPE body into its top-level fields."""
        tokens = []
        current = ""
        depth = 0
        in_quote = False
        escaped = False

        for char in s:
            if escaped:
                current += char
                escaped = False
            elif char == "\\" and in_quote:
                current += char
                escaped = True
            elif char == '"' and depth == 0:
                in_quote = not in_quote
                current += char
            elif char == "(" and not in_quote:
                depth += 1
                current += char
            elif char == ")" and not in_quote:
                if depth == 0:
                    # Closing paren of the ENVELOPE itself
                    break
                depth -= 1
                current += char
            elif char == " " and depth == 0 and not in_quote:
                if current:
                    tokens.append(current)
                    current = ""
            else:
                current += char

        if current:
            tokens.append(current)

        return tokens

    def _clean_envelope_string(self, s: str) -> str:
        """Strip quotes from an envelope string; NIL becomes ""."""
        if not s or s.upper() == "NIL":
            return ""
        if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
            s = s[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        return s

    def _decode_header(self, value: str) -> str:
        """Decode an RFC 2047 encoded header value."""
        if not value:
            return ""
        try:
            result = ""
            for part, charset in email.header.decode_header(value):
                if isinstance(part, bytes):
                    result += part.decode(charset or "utf-8", errors="replace")
                else:
                    result += part
            return result
        except (LookupError, ValueError):
            return value

    async def fetch_body(self, ref: MessageRef) -> MessageBody:
        """
        Fetch the full raw message.

        Raises:
            FetchError: If no body literal is returned, or its length does
                        not match the length the server declared.
        """
        client = self._require_client()
        response = await self._call(
            "FETCH", client.uid("FETCH", str(ref.uid), BODY_ITEMS)
        )

        if response.result != "OK":
            raise FetchError(ref, f"body fetch failed: {response.lines}")

        lines = list(response.lines)
        for i, item in enumerate(lines[:-1]):
            if not isinstance(item, (bytes, bytearray, str)):
                continue
            head = item if isinstance(item, (bytes, bytearray)) else item.encode()
            match = _LITERAL_RE.search(bytes(head))
            if not match or b"FETCH" not in bytes(head).upper():
                continue

            declared = int(match.group(1))
            raw = lines[i + 1]
            if isinstance(raw, str):
                raw = raw.encode("utf-8")
            raw = bytes(raw)

            if len(raw) != declared:
                raise FetchError(
                    ref, f"read wrong: declared={declared} and read={len(raw)}"
                )
            return MessageBody(ref=ref, raw=raw)

        raise FetchError(ref, "server didn't return message body")

    # =========================================================================
    # Relocation Primitives
    # =========================================================================

    async def copy(self, refs: list[MessageRef], folder_name: str) -> None:
        """UID COPY refs into folder_name."""
        client = self._require_client()
        response = await self._call(
            "COPY",
            client.uid("COPY", format_uid_set(refs), _quote_folder_name(folder_name)),
        )
        if response.result != "OK":
            raise IMAPError(f"Copy failed: {response.lines}")

    async def add_flags(self, refs: list[MessageRef], flags: list[str]) -> None:
        """Add flags to refs (additive +FLAGS store)."""
        client = self._require_client()
        command = f"+FLAGS ({' '.join(flags)})"
        logger.debug(f"Setting flags on {format_uid_set(refs)}: {command}")

        response = await self._call(
            "STORE", client.uid("STORE", format_uid_set(refs), command)
        )
        if response.result != "OK":
            raise IMAPError(f"Failed to set flags: {response.lines}")

    async def expunge(self) -> None:
        """Expunge every \\Deleted message in the selected folder."""
        client = self._require_client()
        response = await self._call("EXPUNGE", client.expunge())
        if response.result != "OK":
            raise IMAPError(f"Expunge failed: {response.lines}")

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def supports_idle(self) -> bool:
        """Check if the server advertised the IDLE capability."""
        if not self._client:
            return False
        return self._client.has_capability("IDLE")

    async def idle_start(self, fallback: float) -> asyncio.Task:
        """
        Enter IDLE on the selected folder.

        Args:
            fallback: Seconds after which aioimaplib pushes its own stop
                      marker into the notification queue.

        Returns:
            A task that completes when the server ends the IDLE command.
            It raises IdleError if the server answers anything but OK.
        """
        client = self._require_client()
        logger.debug(f"Entering IDLE on {self.selected.name if self.selected else '?'}")

        try:
            waiter = await client.idle_start(timeout=fallback)
        except (asyncio.TimeoutError, OSError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
            raise IdleError(f"Could not enter IDLE: {e}") from e

        return asyncio.ensure_future(self._finish_idle(waiter))

    async def _finish_idle(self, waiter) -> None:
        response = await waiter
        if response.result != "OK":
            raise IdleError(f"IDLE ended with {response.result}: {response.lines}")

    async def wait_server_push(self) -> list[str]:
        """
        Wait for the next batch of untagged responses pushed during IDLE.

        Returns:
            The pushed lines as text, e.g. ["3 EXISTS"].
        """
        client = self._require_client()
        lines = await client.wait_server_push(timeout=self.timeout)
        return [_as_text(line) for line in lines or []]

    def idle_done(self) -> None:
        """Send DONE to end IDLE. Does not wait for the server's answer."""
        if self._client is not None and self._client.has_pending_idle():
            self._client.idle_done()


async def open_session(config: ImapConfig) -> MailSession:
    """
    Open and authenticate a new session.

    The caller owns the result and must call logout() on every exit path.

    Raises:
        IMAPConnectionError: If the server cannot be reached.
        IMAPAuthenticationError: If the credentials are rejected.
    """
    session = MailSession(config)
    await session.connect()
    return session


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to reach the server or the connection drops."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass


class FetchError(IMAPError):
    """Raised when a metadata or body fetch returns nothing usable."""

    def __init__(self, ref: MessageRef, reason: str) -> None:
        super().__init__(f"UID {ref.uid}: {reason}")
        self.ref = ref
        self.reason = reason


class IdleError(IMAPError):
    """Raised when the IDLE long-poll itself fails."""
    pass
