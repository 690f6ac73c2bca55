"""Inbound call events, decoded once at the webhook boundary.

Three payload shapes are accepted and all come out as the same small set of
frozen dataclasses:

* canonical: ``{"type": "call.initiated", "callId", "companyId", "from", "to", "timestamp"}``,
  ``{"callId", "role", "text", "timestamp"}`` and ``{"callId", "functionName", "parameters"}``
* telephony carrier: ``{"data": {"event_type", "payload": {"call_control_id", "from", "to"}}}``
  with the company id passed separately (it travels in the webhook query string)
* voice assistant: ``{"type", "call": {"id", "metadata": {"companyId"}}, "message", "functionCall"}``
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from calldesk.states import CallState
from calldesk.transcript import normalize_role

logger = logging.getLogger(__name__)

LIFECYCLE_TYPES = {
    "call.initiated": CallState.RINGING,
    "call.answered": CallState.ANSWERED,
    "call-start": CallState.IN_PROGRESS,
    "call.hangup": CallState.ENDING,
    "call-end": CallState.ENDING,
}

FUNCTION_NAMES = ("book_appointment", "get_pricing", "check_availability", "escalate_to_human")

SOURCE_TELEPHONY = "telephony"
SOURCE_ASSISTANT = "assistant"


class MalformedEventError(ValueError):
    """Payload could not be decoded into a known event. Acknowledge and drop."""


@dataclass(frozen=True)
class LifecycleEvent:
    type: str
    call_id: str
    company_id: str | None = None
    from_number: str = ""
    to_number: str = ""
    timestamp: datetime | None = None
    source: str = SOURCE_TELEPHONY
    # Id of the same call as known to the other provider, when the payload carries it.
    linked_call_id: str | None = None

    @property
    def target_state(self) -> CallState:
        return LIFECYCLE_TYPES[self.type]

    @property
    def is_terminal(self) -> bool:
        return self.target_state.is_terminal


@dataclass(frozen=True)
class TranscriptEvent:
    call_id: str
    role: str
    text: str
    company_id: str | None = None
    timestamp: datetime | None = None

    @property
    def from_caller(self) -> bool:
        return self.role == "user"


@dataclass(frozen=True)
class FunctionCallEvent:
    call_id: str
    name: str
    parameters: dict = field(default_factory=dict)
    company_id: str | None = None


CallEvent = LifecycleEvent | TranscriptEvent | FunctionCallEvent


def parse_timestamp(value) -> datetime | None:
    """Accept ISO-8601 strings (a trailing Z included) or epoch seconds/milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedEventError(f"Bad timestamp: {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise MalformedEventError(f"Bad timestamp: {value!r}")


def _require(value, name: str) -> str:
    if not value or not isinstance(value, str):
        raise MalformedEventError(f"Missing {name}")
    return value


def _parameters(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEventError("Function parameters are not valid JSON") from e
    if not isinstance(raw, dict):
        raise MalformedEventError("Function parameters must be an object")
    return raw


def _decode_canonical(body: dict, company_id: str | None) -> CallEvent:
    call_id = _require(body.get("callId"), "callId")
    company = body.get("companyId") or company_id

    if "functionName" in body:
        name = _require(body.get("functionName"), "functionName")
        return FunctionCallEvent(
            call_id=call_id,
            name=name,
            parameters=_parameters(body.get("parameters")),
            company_id=company,
        )

    event_type = body.get("type")
    if event_type in LIFECYCLE_TYPES:
        return LifecycleEvent(
            type=event_type,
            call_id=call_id,
            company_id=company,
            from_number=body.get("from") or "",
            to_number=body.get("to") or "",
            timestamp=parse_timestamp(body.get("timestamp")),
            source=SOURCE_ASSISTANT if event_type.startswith("call-") else SOURCE_TELEPHONY,
        )

    if "text" in body and "role" in body:
        return TranscriptEvent(
            call_id=call_id,
            role=normalize_role(body["role"]),
            text=body.get("text") or "",
            company_id=company,
            timestamp=parse_timestamp(body.get("timestamp")),
        )

    raise MalformedEventError(f"Unknown event type: {event_type!r}")


def _decode_telephony(body: dict, company_id: str | None) -> LifecycleEvent:
    data = body["data"]
    event_type = data.get("event_type")
    if event_type not in LIFECYCLE_TYPES:
        raise MalformedEventError(f"Unhandled telephony event: {event_type!r}")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise MalformedEventError("Telephony payload must be an object")
    return LifecycleEvent(
        type=event_type,
        call_id=_require(payload.get("call_control_id"), "call_control_id"),
        company_id=company_id,
        from_number=payload.get("from") or "",
        to_number=payload.get("to") or "",
        timestamp=parse_timestamp(data.get("occurred_at")),
        source=SOURCE_TELEPHONY,
    )


def _decode_assistant(body: dict, company_id: str | None) -> CallEvent:
    call = body.get("call")
    if not isinstance(call, dict):
        raise MalformedEventError("Missing call object")
    call_id = _require(call.get("id"), "call.id")
    metadata = call.get("metadata") or {}
    company = metadata.get("companyId") or call.get("companyId") or company_id
    event_type = body.get("type")

    if event_type in ("call-start", "call-end"):
        customer = call.get("customer") or {}
        return LifecycleEvent(
            type=event_type,
            call_id=call_id,
            company_id=company,
            from_number=customer.get("number") or "",
            timestamp=parse_timestamp(call.get("startedAt") if event_type == "call-start" else call.get("endedAt")),
            source=SOURCE_ASSISTANT,
            linked_call_id=metadata.get("telephonyCallId") or metadata.get("twilioCallSid"),
        )

    if event_type == "message":
        message = body.get("message")
        if not isinstance(message, dict):
            raise MalformedEventError("Missing message object")
        return TranscriptEvent(
            call_id=call_id,
            role=normalize_role(message.get("role", "")),
            text=message.get("content") or "",
            company_id=company,
            timestamp=parse_timestamp(message.get("time")),
        )

    if event_type == "function-call":
        function_call = body.get("functionCall")
        if not isinstance(function_call, dict):
            raise MalformedEventError("Missing functionCall object")
        return FunctionCallEvent(
            call_id=call_id,
            name=_require(function_call.get("name"), "functionCall.name"),
            parameters=_parameters(function_call.get("parameters")),
            company_id=company,
        )

    raise MalformedEventError(f"Unknown assistant webhook type: {event_type!r}")


def decode_event(body, company_id: str | None = None) -> CallEvent:
    """Decode any accepted payload shape into an event, or raise MalformedEventError."""
    if not isinstance(body, dict):
        raise MalformedEventError("Event body must be a JSON object")
    if isinstance(body.get("data"), dict):
        return _decode_telephony(body, company_id)
    if "call" in body:
        return _decode_assistant(body, company_id)
    return _decode_canonical(body, company_id)
