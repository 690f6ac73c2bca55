"""Record store contracts and their in-memory implementations.

The engine only needs create / read / update-by-id plus one range query for
appointments. Production deployments put a database behind these protocols;
the in-memory versions back tests and single-process deployments.
"""

import dataclasses
from datetime import datetime
from typing import Protocol

from calldesk.records import Appointment, CallRecord, Company, Lead


class StoreUnavailableError(Exception):
    """The backing store could not be reached. Webhook senders should retry."""


class RecordNotFoundError(KeyError):
    pass


class AppointmentStore(Protocol):
    async def create(self, appointment: Appointment) -> Appointment: ...

    async def get(self, appointment_id: str) -> Appointment | None: ...

    async def update(self, appointment_id: str, **changes) -> Appointment: ...

    async def active_in_range(self, company_id: str, start: datetime, end: datetime) -> list[Appointment]:
        """Active appointments for a company whose start falls in [start, end), ordered by start."""
        ...

    async def list_for_company(self, company_id: str, limit: int = 50) -> list[Appointment]: ...


class CallRecordStore(Protocol):
    async def create(self, record: CallRecord) -> CallRecord: ...

    async def get(self, record_id: str) -> CallRecord | None: ...

    async def update(self, record_id: str, **changes) -> CallRecord: ...

    async def list_since(self, company_id: str, since: datetime) -> list[CallRecord]: ...


class LeadStore(Protocol):
    async def create(self, lead: Lead) -> Lead: ...

    async def list_for_company(self, company_id: str) -> list[Lead]: ...


class CompanyStore(Protocol):
    async def get(self, company_id: str) -> Company | None: ...


def _apply(record, changes: dict):
    unknown = set(changes) - {f.name for f in dataclasses.fields(record)}
    if unknown:
        raise ValueError(f"Unknown fields for {type(record).__name__}: {sorted(unknown)}")
    for name, value in changes.items():
        setattr(record, name, value)
    return record


class InMemoryAppointmentStore:
    def __init__(self) -> None:
        self._by_id: dict[str, Appointment] = {}

    async def create(self, appointment: Appointment) -> Appointment:
        self._by_id[appointment.id] = appointment
        return appointment

    async def get(self, appointment_id: str) -> Appointment | None:
        return self._by_id.get(appointment_id)

    async def update(self, appointment_id: str, **changes) -> Appointment:
        appointment = self._by_id.get(appointment_id)
        if appointment is None:
            raise RecordNotFoundError(appointment_id)
        return _apply(appointment, changes)

    async def active_in_range(self, company_id: str, start: datetime, end: datetime) -> list[Appointment]:
        found = [
            appt for appt in self._by_id.values()
            if appt.company_id == company_id
            and appt.is_active
            and start <= appt.scheduled_date < end
        ]
        return sorted(found, key=lambda appt: appt.scheduled_date)

    async def list_for_company(self, company_id: str, limit: int = 50) -> list[Appointment]:
        found = [appt for appt in self._by_id.values() if appt.company_id == company_id]
        return sorted(found, key=lambda appt: appt.scheduled_date)[:limit]


class InMemoryCallRecordStore:
    def __init__(self) -> None:
        self._by_id: dict[str, CallRecord] = {}

    async def create(self, record: CallRecord) -> CallRecord:
        self._by_id[record.id] = record
        return record

    async def get(self, record_id: str) -> CallRecord | None:
        return self._by_id.get(record_id)

    async def update(self, record_id: str, **changes) -> CallRecord:
        record = self._by_id.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return _apply(record, changes)

    async def list_since(self, company_id: str, since: datetime) -> list[CallRecord]:
        return [
            record for record in self._by_id.values()
            if record.company_id == company_id and record.created_at >= since
        ]


class InMemoryLeadStore:
    def __init__(self) -> None:
        self._by_id: dict[str, Lead] = {}

    async def create(self, lead: Lead) -> Lead:
        self._by_id[lead.id] = lead
        return lead

    async def list_for_company(self, company_id: str) -> list[Lead]:
        found = [lead for lead in self._by_id.values() if lead.company_id == company_id]
        return sorted(found, key=lambda lead: lead.created_at, reverse=True)


class InMemoryCompanyStore:
    def __init__(self, companies: list[Company] | None = None) -> None:
        self._by_id: dict[str, Company] = {c.id: c for c in companies or []}

    def add(self, company: Company) -> None:
        self._by_id[company.id] = company

    async def get(self, company_id: str) -> Company | None:
        return self._by_id.get(company_id)
