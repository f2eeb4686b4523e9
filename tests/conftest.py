"""Test environment: settings must be in place before app.config is imported."""

import os
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

_TMP_DIR = tempfile.mkdtemp(prefix="reinforcement-tests-")

os.environ.setdefault("JWT_SECRET", "test-secret-for-the-reinforcement-suite-0123456789")
os.environ["DATABASE_PATH"] = str(Path(_TMP_DIR) / "api.db")
os.environ["DATABASE_URL"] = ""
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"


@pytest.fixture
def auto_sessions():
    """Register the session auto-scheduling hook for the duration of a test."""
    from app.services import reinforcement_sessions

    reinforcement_sessions.install()
    yield
    reinforcement_sessions.uninstall()


@pytest.fixture
def recorded_notices():
    """Capture session notices instead of logging them."""
    from app.services import notifications

    notices = []

    class _Recorder(notifications.SessionNotifier):
        async def session_created(self, notice):
            notices.append(notice)

    previous = notifications.set_notifier(_Recorder())
    yield notices
    notifications.set_notifier(previous)
