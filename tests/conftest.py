from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from calldesk.business_hours import BusinessHours
from calldesk.functions import FunctionCallHandler
from calldesk.records import Company
from calldesk.scheduler import SlotAllocator
from calldesk.store import (
    InMemoryAppointmentStore,
    InMemoryCallRecordStore,
    InMemoryCompanyStore,
    InMemoryLeadStore,
    StoreUnavailableError,
)
from calldesk.tracker import CallTracker

CHICAGO = ZoneInfo("America/Chicago")


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyCallRecordStore(InMemoryCallRecordStore):
    """Call-record store that can be switched off to simulate an outage."""

    def __init__(self):
        super().__init__()
        self.down = False

    async def create(self, record):
        if self.down:
            raise StoreUnavailableError("call_records offline")
        return await super().create(record)

    async def update(self, record_id, **changes):
        if self.down:
            raise StoreUnavailableError("call_records offline")
        return await super().update(record_id, **changes)


def local(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=CHICAGO)


@pytest.fixture
def clock():
    # Tuesday morning, inside default business hours
    return FakeClock(local(2026, 10, 20, 10, 15))


@pytest.fixture
def hours():
    return BusinessHours()


@pytest.fixture
def company(hours):
    return Company(id="co_1", name="ACE Cooling", phone_number="+15125550000", business_hours=hours)


@pytest.fixture
def companies(company):
    return InMemoryCompanyStore([company])


@pytest.fixture
def appointments():
    return InMemoryAppointmentStore()


@pytest.fixture
def call_records():
    return FlakyCallRecordStore()


@pytest.fixture
def leads():
    return InMemoryLeadStore()


@pytest.fixture
def notifier():
    sink = AsyncMock()
    sink.send_sms.return_value = {"success": True}
    sink.send_emergency_alert.return_value = {"success": True}
    return sink


@pytest.fixture
def allocator(appointments, companies, clock):
    return SlotAllocator(appointments, companies, clock=clock)


@pytest.fixture
def tracker(companies, call_records, leads, notifier, clock):
    return CallTracker(
        companies=companies,
        call_records=call_records,
        leads=leads,
        notifier=notifier,
        clock=clock,
        grace_seconds=300,
    )


@pytest.fixture
def handler(allocator, companies, tracker, notifier, clock):
    return FunctionCallHandler(
        scheduler=allocator,
        companies=companies,
        tracker=tracker,
        notifier=notifier,
        clock=clock,
    )
