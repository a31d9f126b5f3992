"""Shared fixtures for the calmirror test suite.

Everything runs against the in-memory doubles in ``tests/fakes.py``; no test
needs a database or network access.
"""

from __future__ import annotations

import pytest

from calmirror.sync.engine import SyncEngine
from tests.fakes import (
    FakeProvider,
    FixedClock,
    InMemorySyncStore,
    RecordingSleep,
    make_account,
    make_calendar,
)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def engine(store, provider, clock) -> SyncEngine:
    return SyncEngine(store, provider, clock=clock)


@pytest.fixture
def two_calendars(store):
    """One user with two Google accounts and one active calendar on each.

    Returns ``(source, target)`` as ``CalendarWithAccount``-like tuples of
    ``(calendar, account)``.
    """
    account_1 = store.add_account(make_account("acc-1"))
    account_2 = store.add_account(make_account("acc-2"))
    calendar_1 = store.add_calendar(make_calendar("cal-1", account_id="acc-1"))
    calendar_2 = store.add_calendar(make_calendar("cal-2", account_id="acc-2"))
    return (calendar_1, account_1), (calendar_2, account_2)
