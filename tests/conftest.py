# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailshuttle test suite.
# =============================================================================

import tempfile
from pathlib import Path

import pytest

from fakes import FakeMailServer, FakeSession, RecordingImporter, RecordingNotifier
from mailshuttle.config import Config, ImapConfig, ImporterConfig, NotifyConfig
from mailshuttle.imap import IntakePipeline


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def imap_config():
    """IMAP settings with a small size limit and a short idle timeout."""
    return ImapConfig(
        host="imap.example.com",
        user="drain@example.com",
        password="secret",
        max_email_size=1000,
        idle_timeout=0.05,
    )


@pytest.fixture
def full_config(imap_config):
    """A Config that passes validation."""
    return Config(
        imap=imap_config,
        importer=ImporterConfig(
            host="imap.gmail.com",
            user="archive@example.com",
            password="secret",
        ),
        notify=NotifyConfig(
            smtp_host="smtp.example.com",
            sender="mailshuttle@example.com",
            recipients=["ops@example.com"],
        ),
    )


@pytest.fixture
def server():
    """An in-memory IMAP server with INBOX, Moved and Quarantine."""
    return FakeMailServer()


@pytest.fixture
def session(server, imap_config):
    """A session on the fake server; select a folder before using it."""
    return FakeSession(server, imap_config)


@pytest.fixture
def importer():
    return RecordingImporter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pipeline(imap_config, importer, notifier):
    return IntakePipeline(imap_config, importer, notifier)
