"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any application import, so the
cached settings and the module-level engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_stampbot.db")
os.environ.setdefault("SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from stampbot.config import Settings, get_settings
get_settings.cache_clear()

from stampbot.probe import ProbeResult
from stampbot.storage import Base, SessionLocal, engine, init_db


TEST_SIGNING_SECRET = os.environ["SIGNING_SECRET"]


class StaticProbe:
    """Probe double answering with a fixed status and latency."""

    def __init__(self, status_code: int = 200, latency_ms: int = 42):
        self.status_code = status_code
        self.latency_ms = latency_ms
        self.calls = []

    async def __call__(self, url: str) -> ProbeResult:
        self.calls.append(url)
        return ProbeResult(status_code=self.status_code, latency_ms=self.latency_ms)


class FailingProbe:
    """Probe double whose transport always fails."""

    async def __call__(self, url: str) -> ProbeResult:
        raise ConnectionError("connection refused")


class RecordingNotifier:
    """Notifier double that keeps deliveries and can fail for chosen identities."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    async def send(self, identity: str, text: str) -> None:
        if identity in self.fail_for:
            raise RuntimeError(f"delivery to {identity} failed")
        self.sent.append((identity, text))


@pytest.fixture(scope="function")
def db():
    """Database session on freshly created tables."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        SIGNING_SECRET=TEST_SIGNING_SECRET,
        UNSUBSCRIBE_BASE_URL="https://stamp-bot.example.com",
        DAILY_MESSAGE_LIMIT=1000,
    )
