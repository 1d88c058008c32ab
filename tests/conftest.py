"""
Shared pytest fixtures.

Every test gets its own sqlite file under tmp_path, a fixed clock and an
environment with no Neynar credentials leaking in from the host.
"""

from datetime import datetime, timezone

import pytest

from models import Race, to_iso
from storage import Storage

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

ENV_VARS = (
    "FARCASTER_API_KEY", "NEYNAR_API_KEY",
    "FARCASTER_SIGNER_UUID", "FARCASTER_NEYNAR_SIGNER_UUID", "NEYNAR_SIGNER_UUID",
    "FARCASTER_CLIENT_ID", "NEYNAR_CLIENT_ID",
    "FARCASTER_DEFAULT_CHANNEL_ID", "NEYNAR_DEFAULT_CHANNEL_ID",
    "FARCASTER_DRY_RUN", "NEYNAR_DRY_RUN",
    "CRON_SECRET", "ADMIN_TOKEN", "APP_URL", "CASTQUEUE_DB",
)


class Clock:
    """Callable clock that tests can move forward."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Records requests instead of sending them."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return FakeResponse(200, {"success": True})


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def neynar_env(monkeypatch):
    monkeypatch.setenv("FARCASTER_API_KEY", "test-key")
    monkeypatch.setenv("FARCASTER_SIGNER_UUID", "signer-123")
    monkeypatch.setenv("FARCASTER_CLIENT_ID", "client-abc")
    monkeypatch.setenv("APP_URL", "https://example.test/app")


@pytest.fixture
def db(tmp_path):
    storage = Storage(str(tmp_path / "castqueue.db"))
    yield storage
    storage.close()


@pytest.fixture
def clock():
    return Clock()


def add_race(db, race_id="r1", name="Monaco Grand Prix", lock_time=NOW, status="upcoming",
             race_date=None, circuit="Monte Carlo", season=2025, round=8):
    db.upsert_race(Race(
        id=race_id,
        name=name,
        lock_time=to_iso(lock_time),
        status=status,
        circuit=circuit,
        race_date=to_iso(race_date) if race_date else None,
        season=season,
        round=round,
    ))
    return db.get_race(race_id)
