from dataclasses import dataclass, field
from datetime import datetime

from calldesk.states import CallState, CallType, Sentiment
from calldesk.transcript import to_plain_text


@dataclass
class CallSession:
    call_id: str
    company_id: str
    started_at: datetime
    customer_phone: str = ""
    called_number: str = ""
    state: CallState = CallState.RINGING

    # Provider correlation
    telephony_call_id: str | None = None
    assistant_call_id: str | None = None

    # Derived from transcript fragments
    transcript_log: list = field(default_factory=list)
    is_emergency: bool = False
    sentiment: Sentiment = Sentiment.NEUTRAL
    call_type: CallType = CallType.GENERAL_INQUIRY
    service_types: list = field(default_factory=list)
    customer_name: str | None = None

    # Outcome
    appointment_id: str | None = None
    call_record_id: str | None = None
    lead_id: str | None = None
    ended_at: datetime | None = None
    emergency_alerted: bool = False

    @property
    def transcript(self) -> str:
        return to_plain_text(self.transcript_log)

    def duration(self, now: datetime) -> int:
        """Whole seconds since start; frozen once the call has ended."""
        end = self.ended_at or now
        return max(0, int((end - self.started_at).total_seconds()))

    def mark_emergency(self) -> bool:
        """Set the emergency flag. Returns True only on the false -> true flip."""
        if self.is_emergency:
            return False
        self.is_emergency = True
        self.call_type = CallType.EMERGENCY
        return True

    def add_service_types(self, service_types: list[str]) -> None:
        for service in service_types:
            if service not in self.service_types:
                self.service_types.append(service)

    def close(self, now: datetime) -> None:
        self.state = CallState.ENDING
        if self.ended_at is None:
            self.ended_at = now

    def to_dict(self, now: datetime) -> dict:
        """Dashboard view of the call."""
        return {
            "callId": self.call_id,
            "companyId": self.company_id,
            "customerPhone": self.customer_phone,
            "status": self.state.value,
            "isEmergency": self.is_emergency,
            "callType": self.call_type.value,
            "sentiment": self.sentiment.value,
            "serviceTypes": list(self.service_types),
            "startTime": self.started_at.isoformat(),
            "duration": self.duration(now),
            "transcript": self.transcript,
            "appointmentId": self.appointment_id,
        }
