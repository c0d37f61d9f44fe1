"""Pytest configuration and fixtures."""

import asyncio
import dataclasses
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

# Keep test logs out of the working tree; must happen before config is imported
os.environ.setdefault("REMINDER_LOG_DIR", tempfile.mkdtemp(prefix="reminder_logs_"))

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from domains.onboarding.circuit_breaker import CircuitBreaker
from domains.onboarding.errors import StoreUnavailableError
from domains.onboarding.evaluator import OnboardingRecord, is_terminal, load_thresholds
from domains.onboarding.record_store import SqliteRecordStore
from domains.onboarding.scheduler import ReminderScheduler

T0 = datetime(2026, 10, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for the scheduler."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, **offset) -> None:
        self.now = T0 + timedelta(**offset)


class FakeStore:
    """In-memory record store with switchable failures."""

    def __init__(self, records=()):
        self.records = {r.id: r for r in records}
        self.marked = []
        self.fail_fetch = False
        self.fail_mark = set()
        self.duplicate_rows = False

    def add(self, record: OnboardingRecord) -> None:
        self.records[record.id] = record

    async def fetch_active_records(self):
        if self.fail_fetch:
            raise StoreUnavailableError("database offline")
        # Copies, like rows fresh from a database
        rows = [dataclasses.replace(r) for r in self.records.values() if not is_terminal(r)]
        if self.duplicate_rows:
            rows = rows + [dataclasses.replace(r) for r in rows]
        return rows

    async def mark_reminder_sent(self, record_id, threshold_id):
        if threshold_id in self.fail_mark:
            return False
        record = self.records[record_id]
        record.reminders_sent = record.reminders_sent | {threshold_id}
        self.marked.append((record_id, threshold_id))
        return True


class FakeSender:
    """Records sends; fails for destinations or threshold ids in ``fail_for``."""

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.fail_for = set()
        self.raise_for = set()
        self.delay = 0.0

    async def send(self, destination, threshold_id, params):
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if destination in self.raise_for:
            raise RuntimeError("connection reset by peer")
        if destination in self.fail_for or threshold_id in self.fail_for:
            return False
        self.sent.append((destination, threshold_id, params))
        return True


def make_record(record_id="client-1", created_at=T0, destination=None, **kwargs) -> OnboardingRecord:
    """Onboarding record with sensible defaults."""
    return OnboardingRecord(
        id=record_id,
        created_at=created_at,
        credit_report_completed=kwargs.pop("credit_report_completed", False),
        documents_signed=kwargs.pop("documents_signed", False),
        destination=destination if destination is not None else f"{record_id}@example.com",
        **kwargs,
    )


@pytest.fixture
def thresholds():
    return load_thresholds("24h,3d,7d")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def make_scheduler(fake_store, fake_sender, thresholds, clock):
    """Factory for schedulers wired to the fakes (never started unless a test does)."""

    def _make(**kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("circuit", CircuitBreaker(failure_threshold=100, recovery_timeout=60, name="test"))
        kwargs.setdefault("cycle_budget", 5)
        kwargs.setdefault("stop_timeout", 5)
        return ReminderScheduler(
            kwargs.pop("store", fake_store),
            kwargs.pop("sender", fake_sender),
            kwargs.pop("thresholds", thresholds),
            **kwargs,
        )

    return _make


@pytest.fixture
def temp_store(tmp_path, thresholds):
    """SQLite record store in a fresh temp file for each test."""
    store = SqliteRecordStore(str(tmp_path / "records.db"), threshold_ids=[t.id for t in thresholds])
    yield store
    store.close()


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx client."""
    with patch('httpx.AsyncClient') as mock:
        client = AsyncMock()
        mock.return_value.__aenter__.return_value = client
        yield client
