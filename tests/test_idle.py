# =============================================================================
# IDLE Wait Tests
# =============================================================================

import asyncio

import pytest

from mailshuttle.imap import IdleError, IdleState, IdleWait
from mailshuttle.imap.session import IDLE_FALLBACK


async def _select(session):
    await session.select("INBOX")
    return session


@pytest.mark.asyncio
async def test_timeout_stops_idle(server, session):
    await _select(session)

    state = await IdleWait(session, timeout=0.02).wait()

    assert state is IdleState.TIMED_OUT
    assert session.idle_done_calls == 1
    assert server.push_waiters == 0


@pytest.mark.asyncio
async def test_push_stops_idle(server, session):
    await _select(session)
    server.push(["3 EXISTS"])

    wait = IdleWait(session, timeout=5)
    state = await wait.wait()

    assert state is IdleState.NOTIFIED_STOP
    assert session.idle_done_calls == 1
    assert wait.events[0].event_type == "new_mail"
    assert wait.events[0].message_count == 3
    assert server.push_waiters == 0


@pytest.mark.asyncio
async def test_push_and_timeout_send_done_once(server, session):
    await _select(session)
    server.idle_finish_delay = 0.05
    server.push(["1 EXPUNGE"])

    wait = IdleWait(session, timeout=0.01)
    state = await wait.wait()

    assert state is IdleState.NOTIFIED_STOP
    assert session.idle_done_calls == 1


@pytest.mark.asyncio
async def test_empty_push_keeps_idling(server, session):
    await _select(session)
    server.push([])

    state = await IdleWait(session, timeout=0.05).wait()

    assert state is IdleState.TIMED_OUT
    assert session.idle_done_calls == 1


@pytest.mark.asyncio
async def test_fallback_marker_stops_idle(server, session):
    await _select(session)
    server.push(list(IDLE_FALLBACK))

    wait = IdleWait(session, timeout=5)
    state = await wait.wait()

    assert state is IdleState.NOTIFIED_STOP
    assert wait.events[0].event_type == "fallback"


@pytest.mark.asyncio
async def test_idle_start_failure_raises(server, session):
    await _select(session)
    server.idle_fail_after = 0

    wait = IdleWait(session, timeout=5)
    with pytest.raises(IdleError):
        await wait.wait()

    assert wait.state is IdleState.ERRORED


@pytest.mark.asyncio
async def test_idle_command_failure_raises(server, session):
    await _select(session)
    server.idle_result_error = True

    wait = IdleWait(session, timeout=0.01)
    with pytest.raises(IdleError):
        await wait.wait()

    assert wait.state is IdleState.ERRORED
    assert server.push_waiters == 0


@pytest.mark.asyncio
async def test_without_idle_support_sleeps(server, session):
    await _select(session)
    server.idle_supported = False

    state = await IdleWait(session, timeout=0.01).wait()

    assert state is IdleState.TIMED_OUT
    assert server.idle_starts == 0


@pytest.mark.asyncio
async def test_cancelled_wait_leaves_idle(server, session):
    await _select(session)

    task = asyncio.create_task(IdleWait(session, timeout=5).wait())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.idle_done_calls == 1
    assert server.push_waiters == 0


def test_parse_notifications(session):
    wait = IdleWait(session, timeout=1)

    assert wait._parse_notification("INBOX", "* 12 EXISTS").message_count == 12
    assert wait._parse_notification("INBOX", "4 EXPUNGE").event_type == "expunge"
    assert wait._parse_notification("INBOX", "2 FETCH (FLAGS (\\Seen))").event_type == "flags"
    assert wait._parse_notification("INBOX", "OK Still here").event_type == "unknown"
