# =============================================================================
# IMAP Session Tests
# =============================================================================
# Runs MailSession against a scripted stand-in for aioimaplib.IMAP4_SSL.
# =============================================================================

import asyncio
from collections import namedtuple

import pytest
import pytest_asyncio

from mailshuttle.core import MessageFlags, MessageRef
from mailshuttle.imap import (
    FetchError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    MailSession,
    open_session,
)
from mailshuttle.imap import session as session_module

Response = namedtuple("Response", "result lines")

OK = Response("OK", [b"Completed"])


class ScriptedClient:
    """Answers each command with a canned Response and records the call."""

    def __init__(self, host, port, timeout):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        self.responses = {}
        self.logged_out = False
        self.pending_idle = False
        self.done_sent = 0

    def _answer(self, name, *args):
        self.calls.append((name, *args))
        return self.responses.get(name, OK)

    async def wait_hello_from_server(self):
        pass

    async def login(self, user, password):
        return self._answer("LOGIN", user, password)

    async def logout(self):
        self.logged_out = True
        return OK

    async def select(self, mailbox):
        return self._answer("SELECT", mailbox)

    async def uid_search(self, criteria, charset=None):
        return self._answer("SEARCH", criteria)

    async def uid(self, command, *args):
        return self._answer(command, *args)

    async def expunge(self):
        return self._answer("EXPUNGE")

    async def list(self, reference, pattern):
        return self._answer("LIST", reference, pattern)

    def has_capability(self, capability):
        return capability == "IDLE"

    def has_pending_idle(self):
        return self.pending_idle

    def idle_done(self):
        self.done_sent += 1


@pytest.fixture
def client(monkeypatch):
    """Patch IMAP4_SSL; the created client is exposed as holder.client."""
    holder = type("Holder", (), {})()
    holder.client = None

    def factory(host, port, timeout):
        holder.client = ScriptedClient(host, port, timeout)
        holder.client.responses.update(holder.responses)
        return holder.client

    holder.responses = {}
    monkeypatch.setattr(session_module.aioimaplib, "IMAP4_SSL", factory)
    return holder


@pytest_asyncio.fixture
async def connected(client, imap_config):
    session = await open_session(imap_config)
    yield session
    await session.logout()


# =============================================================================
# Connection
# =============================================================================

@pytest.mark.asyncio
async def test_connect_uses_twice_the_idle_timeout(client, imap_config):
    session = await open_session(imap_config)

    assert session.is_connected
    assert client.client.host == "imap.example.com"
    assert client.client.port == 993
    assert client.client.timeout == pytest.approx(0.1)
    assert client.client.calls[0] == ("LOGIN", "drain@example.com", "secret")


@pytest.mark.asyncio
async def test_rejected_login_logs_out(client, imap_config):
    client.responses["LOGIN"] = Response("NO", [b"Invalid credentials"])

    with pytest.raises(IMAPAuthenticationError):
        await open_session(imap_config)

    assert client.client.logged_out


@pytest.mark.asyncio
async def test_unreachable_server(monkeypatch, imap_config):
    def refuse(host, port, timeout):
        raise OSError("Connection refused")

    monkeypatch.setattr(session_module.aioimaplib, "IMAP4_SSL", refuse)

    with pytest.raises(IMAPConnectionError):
        await open_session(imap_config)


@pytest.mark.asyncio
async def test_password_from_keyring(client, imap_config, monkeypatch):
    imap_config.password = ""
    monkeypatch.setattr(
        session_module.keyring, "get_password", lambda service, user: "from-keyring"
    )

    await open_session(imap_config)

    assert client.client.calls[0] == ("LOGIN", "drain@example.com", "from-keyring")


@pytest.mark.asyncio
async def test_missing_password(client, imap_config, monkeypatch):
    imap_config.password = ""
    monkeypatch.setattr(session_module.keyring, "get_password", lambda service, user: None)

    with pytest.raises(IMAPAuthenticationError, match="keyring set mailshuttle:imap"):
        await open_session(imap_config)


@pytest.mark.asyncio
async def test_logout_is_idempotent(connected, client):
    await connected.logout()
    await connected.logout()

    assert not connected.is_connected
    assert client.client.logged_out


@pytest.mark.asyncio
async def test_calls_after_logout_fail(connected):
    await connected.logout()

    with pytest.raises(IMAPConnectionError):
        await connected.select("INBOX")


@pytest.mark.asyncio
async def test_slow_command_times_out(connected, client):
    async def stall(mailbox):
        await asyncio.sleep(1)

    client.client.select = stall

    with pytest.raises(IMAPConnectionError, match="timed out"):
        await connected.select("INBOX")


@pytest.mark.asyncio
async def test_command_timeout_becomes_connection_error(connected, client):
    async def expire(command, *args):
        raise session_module.aioimaplib.CommandTimeout(command)

    client.client.uid = expire

    with pytest.raises(IMAPConnectionError, match="timed out"):
        await connected.fetch_meta(MessageRef(7))


# =============================================================================
# Folders and Search
# =============================================================================

@pytest.mark.asyncio
async def test_select_parses_status(connected, client):
    client.client.responses["SELECT"] = Response("OK", [
        b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
        b"3 EXISTS",
        b"0 RECENT",
        b"OK [UIDVALIDITY 42] UIDs valid",
        b"OK [UIDNEXT 10] Predicted next UID",
        b"[READ-WRITE] Select completed.",
    ])

    view = await connected.select("INBOX")

    assert view.name == "INBOX"
    assert view.exists == 3
    assert view.uidvalidity == 42
    assert view.uidnext == 10
    assert connected.selected == view


@pytest.mark.asyncio
async def test_select_quotes_names_with_spaces(connected, client):
    await connected.select("Sent Items")

    assert client.client.calls[-1] == ("SELECT", '"Sent Items"')


@pytest.mark.asyncio
async def test_select_rejected(connected, client):
    client.client.responses["SELECT"] = Response("NO", [b"Mailbox doesn't exist"])

    with pytest.raises(IMAPError, match="Failed to select"):
        await connected.select("Nope")


@pytest.mark.asyncio
async def test_search_returns_uids(connected, client):
    client.client.responses["SEARCH"] = Response("OK", [b"1 4 9", b"Search completed"])

    refs = await connected.search("ALL")

    assert refs == [MessageRef(1), MessageRef(4), MessageRef(9)]
    assert client.client.calls[-1] == ("SEARCH", "ALL")


@pytest.mark.asyncio
async def test_search_with_prefix_and_no_results(connected, client):
    client.client.responses["SEARCH"] = Response("OK", [b"SEARCH", b"Search completed"])

    assert await connected.search("UNSEEN") == []


@pytest.mark.asyncio
async def test_list_folders(connected, client):
    client.client.responses["LIST"] = Response("OK", [
        b'(\\HasNoChildren) "/" "INBOX"',
        b'(\\HasNoChildren) "/" "Sent Items"',
        b'(\\Noselect \\HasChildren) "/" Archive',
        b"List completed",
    ])

    assert await connected.list_folders() == ["INBOX", "Sent Items", "Archive"]


# =============================================================================
# Fetching
# =============================================================================

ENVELOPE_LINE = (
    b'1 FETCH (UID 7 FLAGS (\\Seen \\Deleted) RFC822.SIZE 2048 ENVELOPE '
    b'("Mon, 1 Jan 2024 10:00:00 +0000" "=?utf-8?q?Caf=C3=A9?=" '
    b'((NIL NIL "a" "x.com")) ((NIL NIL "a" "x.com")) ((NIL NIL "a" "x.com")) '
    b'((NIL NIL "b" "y.com")) NIL NIL NIL "<id@x.com>"))'
)


@pytest.mark.asyncio
async def test_fetch_meta(connected, client):
    client.client.responses["FETCH"] = Response("OK", [ENVELOPE_LINE, b"Fetch completed"])

    meta = await connected.fetch_meta(MessageRef(7))

    assert meta.size == 2048
    assert meta.subject == "Café"
    assert meta.message_id == "<id@x.com>"
    assert meta.flags == MessageFlags.DELETED
    assert meta.is_deleted
    assert client.client.calls[-1] == ("FETCH", "7", "(FLAGS RFC822.SIZE ENVELOPE)")


@pytest.mark.asyncio
async def test_fetch_meta_with_literal_subject(connected, client):
    client.client.responses["FETCH"] = Response("OK", [
        b"1 FETCH (UID 7 RFC822.SIZE 10 FLAGS () ENVELOPE (NIL {11}",
        bytearray(b'Hello "you"'),
        b' NIL NIL NIL NIL NIL NIL NIL "<m@x>"))',
        b"Fetch completed",
    ])

    meta = await connected.fetch_meta(MessageRef(7))

    assert meta.subject == 'Hello "you"'
    assert meta.message_id == "<m@x>"
    assert meta.flags == MessageFlags.NONE
    assert not meta.is_deleted


@pytest.mark.asyncio
async def test_fetch_meta_without_envelope(connected, client):
    client.client.responses["FETCH"] = Response("OK", [
        b"1 FETCH (UID 7 FLAGS ())",
        b"Fetch completed",
    ])

    with pytest.raises(FetchError, match="no envelope returned"):
        await connected.fetch_meta(MessageRef(7))


@pytest.mark.asyncio
async def test_fetch_body(connected, client):
    client.client.responses["FETCH"] = Response("OK", [
        b"1 FETCH (UID 7 BODY[] {5}",
        bytearray(b"hello"),
        b")",
        b"Fetch completed",
    ])

    body = await connected.fetch_body(MessageRef(7))

    assert body.raw == b"hello"
    assert len(body) == 5
    assert client.client.calls[-1] == ("FETCH", "7", "(BODY.PEEK[])")


@pytest.mark.asyncio
async def test_fetch_body_length_mismatch(connected, client):
    client.client.responses["FETCH"] = Response("OK", [
        b"1 FETCH (UID 7 BODY[] {9}",
        bytearray(b"hello"),
        b")",
        b"Fetch completed",
    ])

    with pytest.raises(FetchError, match="declared=9 and read=5"):
        await connected.fetch_body(MessageRef(7))


@pytest.mark.asyncio
async def test_fetch_body_missing(connected, client):
    client.client.responses["FETCH"] = Response("OK", [b"Fetch completed"])

    with pytest.raises(FetchError, match="didn't return message body"):
        await connected.fetch_body(MessageRef(7))


# =============================================================================
# Relocation Primitives and IDLE
# =============================================================================

@pytest.mark.asyncio
async def test_relocation_commands(connected, client):
    refs = [MessageRef(4), MessageRef(7)]

    await connected.copy(refs, "Moved Items")
    await connected.add_flags(refs, ["\\Deleted"])
    await connected.expunge()

    assert client.client.calls[-3:] == [
        ("COPY", "4,7", '"Moved Items"'),
        ("STORE", "4,7", "+FLAGS (\\Deleted)"),
        ("EXPUNGE",),
    ]


@pytest.mark.asyncio
async def test_copy_rejected(connected, client):
    client.client.responses["COPY"] = Response("NO", [b"[TRYCREATE] No such mailbox"])

    with pytest.raises(IMAPError, match="Copy failed"):
        await connected.copy([MessageRef(4)], "Missing")


@pytest.mark.asyncio
async def test_idle_done_only_when_idling(connected, client):
    assert connected.supports_idle()

    connected.idle_done()
    assert client.client.done_sent == 0

    client.client.pending_idle = True
    connected.idle_done()
    assert client.client.done_sent == 1


def test_session_starts_disconnected(imap_config):
    session = MailSession(imap_config)

    assert not session.is_connected
    assert not session.supports_idle()
    assert session.timeout == pytest.approx(0.1)
