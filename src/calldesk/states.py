from enum import Enum

LIVE_STATES = {"answered", "in_progress"}
TERMINAL_STATES = {"ending"}

# Position of each state in the call lifecycle. Events may only move a call forward.
_LIFECYCLE_ORDER = ["ringing", "answered", "in_progress", "ending"]


class CallState(Enum):
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_PROGRESS = "in_progress"
    ENDING = "ending"

    @property
    def rank(self) -> int:
        return _LIFECYCLE_ORDER.index(self.value)

    @property
    def is_live(self) -> bool:
        """Answered or talking; these calls get periodic duration ticks."""
        return self.value in LIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATES

    def can_advance_to(self, other: "CallState") -> bool:
        return other.rank > self.rank


class CallType(Enum):
    EMERGENCY = "emergency"
    SERVICE_REQUEST = "service_request"
    APPOINTMENT_BOOKING = "appointment_booking"
    GENERAL_INQUIRY = "general_inquiry"
    PRICE_ESTIMATE = "price_estimate"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class Sentiment(Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
