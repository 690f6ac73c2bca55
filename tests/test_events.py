from datetime import UTC, datetime

import pytest

from calldesk.events import (
    FunctionCallEvent,
    LifecycleEvent,
    MalformedEventError,
    TranscriptEvent,
    decode_event,
    parse_timestamp,
)
from calldesk.states import CallState


class TestCanonical:
    def test_lifecycle(self):
        event = decode_event({
            "type": "call.initiated",
            "callId": "call_1",
            "companyId": "co_1",
            "from": "+15125551234",
            "to": "+15125550000",
            "timestamp": "2026-10-20T15:15:00Z",
        })
        assert isinstance(event, LifecycleEvent)
        assert event.target_state == CallState.RINGING
        assert event.company_id == "co_1"
        assert event.from_number == "+15125551234"
        assert event.timestamp == datetime(2026, 10, 20, 15, 15, tzinfo=UTC)
        assert not event.is_terminal

    def test_terminal(self):
        event = decode_event({"type": "call.hangup", "callId": "call_1"})
        assert event.is_terminal

    def test_transcript(self):
        event = decode_event({"callId": "call_1", "role": "customer", "text": "No heat", "timestamp": 1792509300})
        assert isinstance(event, TranscriptEvent)
        assert event.from_caller
        assert event.text == "No heat"

    def test_function_call(self):
        event = decode_event({"callId": "call_1", "functionName": "get_pricing", "parameters": {"serviceDescription": "furnace"}})
        assert isinstance(event, FunctionCallEvent)
        assert event.name == "get_pricing"
        assert event.parameters == {"serviceDescription": "furnace"}

    def test_function_parameters_as_json_string(self):
        event = decode_event({"callId": "call_1", "functionName": "get_pricing", "parameters": '{"serviceDescription": "ac"}'})
        assert event.parameters == {"serviceDescription": "ac"}

    def test_query_company_used_when_body_has_none(self):
        event = decode_event({"type": "call.answered", "callId": "call_1"}, company_id="co_9")
        assert event.company_id == "co_9"


class TestTelephony:
    def test_call_initiated(self):
        body = {"data": {"event_type": "call.initiated", "payload": {
            "call_control_id": "v3:abc", "from": "+15125551234", "to": "+15125550000",
        }}}
        event = decode_event(body, company_id="co_1")
        assert isinstance(event, LifecycleEvent)
        assert event.call_id == "v3:abc"
        assert event.company_id == "co_1"
        assert event.source == "telephony"

    def test_unhandled_event_type(self):
        with pytest.raises(MalformedEventError):
            decode_event({"data": {"event_type": "call.bridged", "payload": {"call_control_id": "x"}}})

    def test_missing_call_id(self):
        with pytest.raises(MalformedEventError):
            decode_event({"data": {"event_type": "call.hangup", "payload": {}}})


class TestAssistant:
    def test_call_start(self):
        body = {"type": "call-start", "call": {
            "id": "vapi_1",
            "metadata": {"companyId": "co_1", "telephonyCallId": "v3:abc"},
            "customer": {"number": "+15125551234"},
        }}
        event = decode_event(body)
        assert event.target_state == CallState.IN_PROGRESS
        assert event.company_id == "co_1"
        assert event.linked_call_id == "v3:abc"
        assert event.source == "assistant"

    def test_message(self):
        body = {"type": "message", "call": {"id": "vapi_1"}, "message": {"role": "user", "content": "Water everywhere"}}
        event = decode_event(body)
        assert isinstance(event, TranscriptEvent)
        assert event.role == "user"
        assert event.text == "Water everywhere"

    def test_function_call(self):
        body = {
            "type": "function-call",
            "call": {"id": "vapi_1", "metadata": {"companyId": "co_1"}},
            "functionCall": {"name": "book_appointment", "parameters": {"customerName": "Jonas"}},
        }
        event = decode_event(body)
        assert isinstance(event, FunctionCallEvent)
        assert event.company_id == "co_1"

    def test_unknown_type(self):
        with pytest.raises(MalformedEventError):
            decode_event({"type": "hang", "call": {"id": "vapi_1"}})


class TestMalformed:
    @pytest.mark.parametrize("body", [
        None,
        [],
        {},
        {"type": "call.initiated"},
        {"type": "bogus", "callId": "c"},
        {"callId": "c", "functionName": "get_pricing", "parameters": "not json"},
        {"type": "call.initiated", "callId": "c", "timestamp": "yesterday"},
    ])
    def test_rejected(self, body):
        with pytest.raises(MalformedEventError):
            decode_event(body)


class TestParseTimestamp:
    def test_epoch_millis(self):
        assert parse_timestamp(1792509300000) == parse_timestamp(1792509300)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2026-10-20T15:15:00") == datetime(2026, 10, 20, 15, 15, tzinfo=UTC)

    def test_missing(self):
        assert parse_timestamp(None) is None
