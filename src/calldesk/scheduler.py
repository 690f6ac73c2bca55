import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import Callable

from calldesk.business_hours import BusinessHours
from calldesk.records import Appointment, AppointmentStatus
from calldesk.states import Priority
from calldesk.store import AppointmentStore, CompanyStore, RecordNotFoundError

logger = logging.getLogger(__name__)

SLOT_INTERVAL_MINUTES = 30
DEFAULT_DURATION_MINUTES = 60
EMERGENCY_DURATION_MINUTES = 120
SEARCH_HORIZON_DAYS = 14
ALTERNATIVES_HORIZON_DAYS = 7
FALLBACK_HOUR = 9

# Appointments that start this long before a window can still run into it.
APPOINTMENT_LOOKBACK = timedelta(hours=24)


class SlotStatus(Enum):
    AVAILABLE = "available"
    EMERGENCY = "emergency"
    FALLBACK = "fallback"
    ALTERNATIVES = "alternatives"
    NONE = "none"


@dataclass(frozen=True)
class AppointmentRequest:
    company_id: str
    priority: Priority = Priority.MEDIUM
    duration: int | None = None
    preferred_date: date | None = None
    preferred_start: datetime | None = None

    @property
    def minutes(self) -> int:
        if self.duration:
            return self.duration
        if self.priority == Priority.EMERGENCY:
            return EMERGENCY_DURATION_MINUTES
        return DEFAULT_DURATION_MINUTES


@dataclass(frozen=True)
class SlotDecision:
    status: SlotStatus
    start: datetime | None = None
    alternatives: tuple[datetime, ...] = ()

    @property
    def is_fallback(self) -> bool:
        """True when the search horizon was exhausted and a far-future slot was chosen."""
        return self.status == SlotStatus.FALLBACK


@dataclass
class Booking:
    appointment: Appointment
    decision: SlotDecision


class SlotConflictError(Exception):
    def __init__(self, start: datetime, conflicts: list[Appointment]):
        self.start = start
        self.conflicts = conflicts
        ids = ", ".join(appt.id for appt in conflicts)
        super().__init__(f"Slot at {start.isoformat()} conflicts with appointment(s) {ids}")


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap, spelled as the three cases dispatchers reason about."""
    starts_inside = other_start <= start < other_end
    ends_inside = other_start < end <= other_end
    contains = start <= other_start and end >= other_end
    return starts_inside or ends_inside or contains


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _ceil_to_interval(moment: datetime, minutes: int) -> datetime:
    base = moment.replace(second=0, microsecond=0)
    if base < moment:
        base += timedelta(minutes=1)
    remainder = (base.hour * 60 + base.minute) % minutes
    if remainder:
        base += timedelta(minutes=minutes - remainder)
    return base


class SlotAllocator:
    """Finds and reserves appointment slots for a company.

    Availability queries read the store directly. Anything that writes an
    appointment runs under that company's lock so the conflict check and the
    insert cannot interleave with another booking.
    """

    def __init__(
        self,
        appointments: AppointmentStore,
        companies: CompanyStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
        slot_interval: int = SLOT_INTERVAL_MINUTES,
        horizon_days: int = SEARCH_HORIZON_DAYS,
        alternatives_horizon_days: int = ALTERNATIVES_HORIZON_DAYS,
        default_hours: BusinessHours | None = None,
    ):
        self.appointments = appointments
        self.companies = companies
        self.clock = clock
        self.slot_interval = slot_interval
        self.horizon_days = horizon_days
        self.alternatives_horizon_days = alternatives_horizon_days
        self.default_hours = default_hours or BusinessHours()
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, company_id: str) -> asyncio.Lock:
        lock = self._locks.get(company_id)
        if lock is None:
            lock = self._locks[company_id] = asyncio.Lock()
        return lock

    async def business_hours(self, company_id: str) -> BusinessHours:
        if self.companies is not None:
            company = await self.companies.get(company_id)
            if company is not None:
                return company.business_hours
        return self.default_hours

    def now(self, hours: BusinessHours) -> datetime:
        return hours.localize(self.clock())

    # ── Availability (unserialized reads) ──

    async def _active_between(self, company_id: str, start: datetime, end: datetime) -> list[Appointment]:
        return await self.appointments.active_in_range(company_id, start - APPOINTMENT_LOOKBACK, end)

    def _free_starts(
        self,
        window_start: datetime,
        window_end: datetime,
        duration: int,
        existing: list[Appointment],
        not_before: datetime,
    ) -> list[datetime]:
        length = timedelta(minutes=duration)
        step = timedelta(minutes=self.slot_interval)
        slots = []
        candidate = window_start
        while candidate < window_end:
            if candidate >= not_before:
                candidate_end = candidate + length
                clash = any(
                    overlaps(candidate, candidate_end, appt.scheduled_date, appt.end)
                    for appt in existing
                )
                if not clash:
                    slots.append(candidate)
            candidate += step
        return slots

    async def available_slots(
        self,
        company_id: str,
        day: date,
        duration: int = DEFAULT_DURATION_MINUTES,
        hours: BusinessHours | None = None,
    ) -> list[datetime]:
        """Free start times on one day, in order. Closed days and past times yield nothing."""
        hours = hours or await self.business_hours(company_id)
        window = hours.window(day)
        if window is None:
            return []
        window_start, window_end = window
        existing = await self._active_between(
            company_id, window_start, window_end + timedelta(minutes=duration)
        )
        return self._free_starts(window_start, window_end, duration, existing, self.now(hours))

    async def conflicts(self, company_id: str, start: datetime, duration: int) -> list[Appointment]:
        end = start + timedelta(minutes=duration)
        existing = await self._active_between(company_id, start, end)
        return [appt for appt in existing if overlaps(start, end, appt.scheduled_date, appt.end)]

    async def _emergency_slot(self, company_id: str, now: datetime, duration: int) -> datetime | None:
        # Emergency service runs 24/7: search the rest of today regardless of opening hours.
        duration = max(duration, EMERGENCY_DURATION_MINUTES)
        window_start = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        window_end = datetime.combine(now.date() + timedelta(days=1), time(0), tzinfo=now.tzinfo)
        if window_start >= window_end:
            return None
        existing = await self._active_between(
            company_id, window_start, window_end + timedelta(minutes=duration)
        )
        slots = self._free_starts(window_start, window_end, duration, existing, now)
        return slots[0] if slots else None

    async def _fallback_slot(self, company_id: str, now: datetime, duration: int) -> datetime:
        candidate = datetime.combine(
            now.date() + timedelta(days=self.horizon_days), time(FALLBACK_HOUR), tzinfo=now.tzinfo
        )
        # The fallback instant itself may be taken; move past whatever occupies it.
        while True:
            clashes = await self.conflicts(company_id, candidate, duration)
            if not clashes:
                return candidate
            latest_end = max(appt.end for appt in clashes)
            candidate = _ceil_to_interval(latest_end, self.slot_interval)

    async def next_available(
        self,
        company_id: str,
        priority: Priority = Priority.MEDIUM,
        duration: int | None = None,
    ) -> SlotDecision:
        hours = await self.business_hours(company_id)
        now = self.now(hours)
        minutes = duration or DEFAULT_DURATION_MINUTES

        if priority == Priority.EMERGENCY:
            slot = await self._emergency_slot(company_id, now, minutes)
            if slot is not None:
                return SlotDecision(SlotStatus.EMERGENCY, start=slot)
            logger.info("No same-day emergency capacity for company %s, using standard search", company_id)

        for days_ahead in range(self.horizon_days):
            slots = await self.available_slots(
                company_id, now.date() + timedelta(days=days_ahead), minutes, hours=hours
            )
            if slots:
                return SlotDecision(SlotStatus.AVAILABLE, start=slots[0])

        fallback = await self._fallback_slot(company_id, now, minutes)
        logger.warning(
            "No capacity within %d days for company %s; falling back to %s",
            self.horizon_days, company_id, fallback.isoformat(),
        )
        return SlotDecision(SlotStatus.FALLBACK, start=fallback)

    async def alternatives(
        self,
        company_id: str,
        preferred_date: date,
        count: int = 3,
        duration: int = DEFAULT_DURATION_MINUTES,
    ) -> list[datetime]:
        """Earliest free slot on each of the days after a fully booked preferred date."""
        hours = await self.business_hours(company_id)
        found: list[datetime] = []
        for offset in range(1, self.alternatives_horizon_days + 1):
            if len(found) >= count:
                break
            slots = await self.available_slots(
                company_id, preferred_date + timedelta(days=offset), duration, hours=hours
            )
            if slots:
                found.append(slots[0])
        return found

    async def check_availability(
        self,
        company_id: str,
        preferred_date: date,
        duration: int = DEFAULT_DURATION_MINUTES,
        count: int = 3,
    ) -> SlotDecision:
        slots = await self.available_slots(company_id, preferred_date, duration)
        if slots:
            return SlotDecision(SlotStatus.AVAILABLE, start=slots[0], alternatives=tuple(slots[:count]))
        alternatives = await self.alternatives(company_id, preferred_date, count, duration)
        if alternatives:
            return SlotDecision(SlotStatus.ALTERNATIVES, alternatives=tuple(alternatives))
        return SlotDecision(SlotStatus.NONE)

    # ── Writes (serialized per company) ──

    async def reserve(self, company_id: str, start: datetime, duration: int, **fields) -> Appointment:
        """Insert an appointment at exactly ``start`` or raise SlotConflictError."""
        async with self.lock_for(company_id):
            clashes = await self.conflicts(company_id, start, duration)
            if clashes:
                raise SlotConflictError(start, clashes)
            appointment = Appointment(
                company_id=company_id,
                scheduled_date=start,
                estimated_duration=duration,
                **fields,
            )
            return await self.appointments.create(appointment)

    async def book(self, request: AppointmentRequest, **fields) -> Booking:
        """Pick a slot for the request and insert it atomically.

        A free preferred start is honoured; otherwise the next available slot
        for the request's priority is used, including the far-future fallback.
        """
        minutes = request.minutes
        async with self.lock_for(request.company_id):
            decision = None
            if request.preferred_start is not None and request.preferred_start >= self.clock():
                clashes = await self.conflicts(request.company_id, request.preferred_start, minutes)
                if not clashes:
                    decision = SlotDecision(SlotStatus.AVAILABLE, start=request.preferred_start)
            if decision is None:
                decision = await self.next_available(request.company_id, request.priority, minutes)
            clashes = await self.conflicts(request.company_id, decision.start, minutes)
            if clashes:
                raise SlotConflictError(decision.start, clashes)
            appointment = Appointment(
                company_id=request.company_id,
                scheduled_date=decision.start,
                estimated_duration=minutes,
                priority=request.priority,
                **fields,
            )
            await self.appointments.create(appointment)

        logger.info(
            "Booked appointment %s for company %s at %s (%s)",
            appointment.id, request.company_id, decision.start.isoformat(), decision.status.value,
        )
        return Booking(appointment=appointment, decision=decision)

    async def reschedule(self, appointment_id: str, new_start: datetime) -> Appointment:
        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            raise RecordNotFoundError(appointment_id)
        async with self.lock_for(appointment.company_id):
            clashes = [
                appt for appt in await self.conflicts(
                    appointment.company_id, new_start, appointment.estimated_duration
                )
                if appt.id != appointment_id
            ]
            if clashes:
                raise SlotConflictError(new_start, clashes)
            return await self.appointments.update(appointment_id, scheduled_date=new_start)

    async def cancel(self, appointment_id: str, reason: str | None = None) -> Appointment:
        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            raise RecordNotFoundError(appointment_id)
        suffix = f" - CANCELLED: {reason}" if reason else " - CANCELLED"
        return await self.appointments.update(
            appointment_id,
            status=AppointmentStatus.CANCELLED,
            notes=appointment.notes + suffix,
        )


def confirmation_text(appointment: Appointment, hours: BusinessHours | None = None) -> str:
    when = appointment.scheduled_date
    if hours is not None:
        when = hours.localize(when)
    lines = [
        "Appointment Confirmed!",
        "",
        f"Customer: {appointment.customer_name}",
        f"Phone: {appointment.customer_phone}",
        f"Service: {appointment.service_type}",
        f"Date & Time: {when:%A, %B} {when.day}, {when.year} at {when:%I:%M %p}",
        f"Address: {appointment.address}",
        f"Duration: {appointment.estimated_duration} minutes",
        f"Priority: {appointment.priority.value.upper()}",
    ]
    if appointment.notes:
        lines += ["", f"Notes: {appointment.notes}"]
    lines += ["", "We'll call 30 minutes before arrival."]
    return "\n".join(lines)
