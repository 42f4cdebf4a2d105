# =============================================================================
# Intake Pipeline Tests
# =============================================================================

import logging

import pytest

from fakes import FakeMessage, RecordingNotifier, rejecting_importer
from mailshuttle.imap import (
    FetchError,
    IntakeOutcome,
    IntakePipeline,
    RelocationError,
    RelocationStep,
)


@pytest.mark.asyncio
async def test_accepted_message_is_imported_and_moved(server, session, pipeline, importer, notifier):
    ref = server.add("INBOX", FakeMessage(raw=b"Subject: hi\r\n\r\nbody"))
    await session.select("INBOX")

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.MOVED
    assert importer.imported == [b"Subject: hi\r\n\r\nbody"]
    assert server.folders["INBOX"] == {}
    assert server.raws("Moved") == [b"Subject: hi\r\n\r\nbody"]
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_oversized_message_is_quarantined_without_body_fetch(server, session, pipeline, importer, notifier):
    ref = server.add(
        "INBOX",
        FakeMessage(raw=b"x", size=5000, subject="Big one", message_id="<big@x>"),
    )
    await session.select("INBOX")

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.QUARANTINED_SIZE
    assert importer.imported == []
    assert f"FETCH BODY {ref}" not in server.commands
    assert server.raws("Quarantine") == [b"x"]
    assert server.folders["INBOX"] == {}

    subject, body = notifier.sent[0]
    assert subject == "Moving message to quarantine mid=<big@x>"
    assert "Message too big: 5000" in body
    assert "subject=Big one" in body


@pytest.mark.asyncio
async def test_size_limit_is_inclusive(server, session, pipeline, importer):
    ref = server.add("INBOX", FakeMessage(raw=b"x", size=1000))
    await session.select("INBOX")

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.MOVED
    assert importer.imported == [b"x"]


@pytest.mark.asyncio
async def test_rejected_import_is_quarantined(server, session, imap_config, notifier):
    pipeline = IntakePipeline(imap_config, rejecting_importer("quota exceeded"), notifier)
    ref = server.add("INBOX", FakeMessage(raw=b"msg", message_id="<r@x>"))
    await session.select("INBOX")

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.QUARANTINED_IMPORT
    assert server.raws("Quarantine") == [b"msg"]
    assert server.raws("Moved") == []

    subject, body = notifier.sent[0]
    assert subject == "Moving message to quarantine mid=<r@x>"
    assert body.startswith("Import error: quota exceeded")


@pytest.mark.asyncio
async def test_failed_alert_does_not_block_quarantine(server, session, imap_config, importer):
    pipeline = IntakePipeline(imap_config, importer, RecordingNotifier(fail=True))
    ref = server.add("INBOX", FakeMessage(raw=b"x", size=5000))
    await session.select("INBOX")

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.QUARANTINED_SIZE
    assert server.raws("Quarantine") == [b"x"]


@pytest.mark.asyncio
async def test_meta_fetch_failure_raises(server, session, pipeline, importer):
    ref = server.add("INBOX", FakeMessage(raw=b"x"))
    server.fail_meta.add(ref.uid)
    await session.select("INBOX")

    with pytest.raises(FetchError):
        await pipeline.intake(session, ref)

    assert importer.imported == []
    assert ref.uid in server.folders["INBOX"]


@pytest.mark.asyncio
async def test_body_fetch_failure_raises_without_import(server, session, pipeline, importer):
    ref = server.add("INBOX", FakeMessage(raw=b"x"))
    server.fail_body.add(ref.uid)
    await session.select("INBOX")

    with pytest.raises(FetchError) as excinfo:
        await pipeline.intake(session, ref)

    assert excinfo.value.ref == ref
    assert importer.imported == []
    assert ref.uid in server.folders["INBOX"]


@pytest.mark.asyncio
async def test_already_deleted_message_only_gets_expunged(server, session, pipeline, importer):
    ref = server.add("INBOX", FakeMessage(raw=b"x", flags={"\\Deleted"}))
    await session.select("INBOX")
    server.commands.clear()

    outcome = await pipeline.intake(session, ref)

    assert outcome is IntakeOutcome.RESUMED
    assert importer.imported == []
    assert server.commands == [f"FETCH META {ref}", "EXPUNGE"]
    assert server.folders["INBOX"] == {}


@pytest.mark.asyncio
async def test_deleted_message_identity_logged_before_expunge(server, session, pipeline, caplog):
    message = FakeMessage(raw=b"x", message_id="<flagged@x>", subject="Keep me", flags={"\\Deleted"})
    ref = server.add("INBOX", message)
    await session.select("INBOX")

    with caplog.at_level(logging.WARNING, logger="mailshuttle.imap.intake"):
        await pipeline.intake(session, ref)

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("<flagged@x>" in w and "Keep me" in w for w in warnings)
    assert server.folders["INBOX"] == {}


@pytest.mark.asyncio
async def test_relocation_failure_propagates(server, session, pipeline, importer):
    ref = server.add("INBOX", FakeMessage(raw=b"x"))
    await session.select("INBOX")
    server.fail_expunge = 1

    with pytest.raises(RelocationError) as excinfo:
        await pipeline.intake(session, ref)

    assert excinfo.value.reached is RelocationStep.FLAGGED
    assert importer.imported == [b"x"]
