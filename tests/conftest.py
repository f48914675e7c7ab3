"""Shared fixtures"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Tuple

import pytest

from src.services.audit_entry import create_audit_entry
from src.services.persistence import InMemoryAuditStore


class FixedClock:
    """Controllable clock returning an aware UTC datetime"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingErrorReporter:
    """Collects reported errors instead of logging them"""

    def __init__(self):
        self.reports: List[Tuple[BaseException, str, dict]] = []

    def report(self, error: BaseException, context: str, **details: Any) -> None:
        self.reports.append((error, context, details))

    @property
    def errors(self) -> List[BaseException]:
        return [error for error, _, _ in self.reports]


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryAuditStore()


@pytest.fixture
def reporter():
    return RecordingErrorReporter()


@pytest.fixture
def seed_events(store, clock):
    """Write audit rows stamped with the clock's current time"""
    async def _seed(count: int, **request) -> None:
        records = [create_audit_entry(request, clock=clock).to_record() for _ in range(count)]
        await store.insert_audit_entries(records)

    return _seed


@pytest.fixture
def seed_scans(seed_events):
    """Write successful scan creations for an identity"""
    async def _seed(identity: str, count: int = 1) -> None:
        await seed_events(count, user_id=identity, action="create", resource_type="scan")

    return _seed