import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from datetime import datetime, timezone

import pytest

from nurture.config import refresh_settings
from nurture.datastore import Repository, reset_state
from nurture.inbound_webhook import IDEM
from nurture.sender import SendResult
from nurture.errors import TransportError


@pytest.fixture(autouse=True)
def _reset_datastore():
    for key in [
        "AIRTABLE_API_KEY",
        "AIRTABLE_BASE_ID",
        "TELNYX_API_KEY",
        "TELNYX_FROM_NUMBER",
        "TELNYX_US_NUMBER",
        "TRANSPORT_DRY_RUN",
        "CRON_TOKEN",
        "NURTURE_SECRET",
        "WEBHOOK_TOKEN",
        "AGENT_ALERT_NUMBER",
        "AGENT_NAME",
        "NURTURE_TZ",
        "SWEEP_BATCH_SIZE",
    ]:
        os.environ.pop(key, None)
    os.environ["NURTURE_FORCE_IN_MEMORY"] = "1"
    refresh_settings()
    reset_state()
    IDEM.clear()
    yield
    refresh_settings()


@pytest.fixture
def repo():
    return Repository()


@pytest.fixture
def now():
    # Monday 10:00 America/Chicago
    return datetime(2025, 1, 6, 16, 0, tzinfo=timezone.utc)


class FakeTransport:
    def __init__(self):
        self.sent = []

    def send(self, to, text):
        self.sent.append((to, text))
        return SendResult(f"msg-{len(self.sent)}", "queued")


class FailingTransport:
    def __init__(self, status_code=500):
        self.status_code = status_code
        self.calls = 0

    def send(self, to, text):
        self.calls += 1
        raise TransportError(f"Telnyx HTTP {self.status_code}", status_code=self.status_code, body={"errors": []})


@pytest.fixture
def transport():
    return FakeTransport()
