"""
Shared fixtures: a controllable clock, a seeded user table and fully wired
services.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from vaultgate.auth.database import UserDatabase
from vaultgate.config import Settings
from vaultgate.services import build_services


TEST_SECRET = "test-secret-0123456789abcdef-0123456789"

# username -> role
SEED_USERS = {
    "olivia": "owner",
    "oscar": "owner",
    "mona": "moderator",
    "mike": "moderator",
    "paul": "pro",
    "mary": "member",
}


def password_for(username: str) -> str:
    return f"pw-{username}"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTransport:
    """Stands in for a websockets connection."""

    def __init__(self):
        self.sent = []
        self.closed = None

    async def send(self, message: str) -> None:
        if self.closed is not None:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def events(self, event_type: str):
        return [event for event in self.sent if event.get("type") == event_type]

    def last(self, event_type: str):
        events = self.events(event_type)
        return events[-1] if events else None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(secret=TEST_SECRET, db_path=tmp_path / "users.db")


@pytest.fixture
def users(settings):
    db = UserDatabase(settings.db_path, bcrypt_rounds=4)
    for username, role in SEED_USERS.items():
        db.create_user(username, password_for(username), role)
    return db


@pytest.fixture
def services(settings, users, clock):
    return build_services(settings, users=users, clock=clock)


@pytest.fixture
def login(services):
    """Log a seeded user in and return the credential."""
    def _login(username: str, version: str = "1.0"):
        return services.credentials.issue(username, password_for(username), version)
    return _login
