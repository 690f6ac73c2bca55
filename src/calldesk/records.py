from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import uuid4

from calldesk.business_hours import BusinessHours
from calldesk.states import CallType, Priority


def new_id() -> str:
    return str(uuid4())


class AppointmentStatus(Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self not in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


class LeadStatus(Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"


@dataclass(frozen=True)
class ServiceCatalogEntry:
    id: str
    name: str
    min_price: int
    max_price: int
    emergency_multiplier: float = 1.5


@dataclass
class Company:
    id: str
    name: str
    phone_number: str = ""
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    catalog: dict[str, ServiceCatalogEntry] | None = None
    after_hours_multiplier: float = 1.25


@dataclass
class Appointment:
    company_id: str
    customer_name: str
    customer_phone: str
    scheduled_date: datetime
    estimated_duration: int = 60
    address: str = ""
    service_type: str = "General HVAC Service"
    customer_email: str | None = None
    notes: str = ""
    priority: Priority = Priority.MEDIUM
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def end(self) -> datetime:
        return self.scheduled_date + timedelta(minutes=self.estimated_duration)

    @property
    def is_active(self) -> bool:
        return self.status.is_active


@dataclass
class CallRecord:
    id: str
    company_id: str
    customer_phone: str
    call_type: CallType = CallType.GENERAL_INQUIRY
    is_emergency: bool = False
    summary: str = ""
    transcript: str = ""
    duration: int = 0
    customer_name: str | None = None
    telephony_call_id: str | None = None
    assistant_call_id: str | None = None
    appointment_id: str | None = None
    lead_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Lead:
    company_id: str
    customer_name: str
    customer_phone: str
    service_interest: list[str] = field(default_factory=list)
    notes: str = ""
    customer_email: str | None = None
    source: str = "phone_call"
    status: LeadStatus = LeadStatus.NEW
    call_record_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
