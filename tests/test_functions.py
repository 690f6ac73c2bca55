from datetime import date
from unittest.mock import AsyncMock

import pytest

from calldesk.events import FunctionCallEvent, LifecycleEvent
from calldesk.functions import (
    AVAILABILITY_NO_COMPANY,
    BOOKING_FAILED,
    BOOKING_NO_COMPANY,
    ESCALATION,
    TRANSFER_TO_HUMAN,
    UnknownFunctionError,
    parse_preferred_date,
)
from calldesk.records import Appointment
from calldesk.store import StoreUnavailableError
from conftest import local


def call(name, company_id="co_1", call_id="call_1", **parameters):
    return FunctionCallEvent(call_id=call_id, name=name, parameters=parameters, company_id=company_id)


async def start_call(tracker, call_id="call_1"):
    await tracker.handle(LifecycleEvent(
        type="call-start",
        call_id=call_id,
        company_id="co_1",
        from_number="+15125551234",
        source="assistant",
    ))


class TestBookAppointment:
    @pytest.mark.asyncio
    async def test_books_next_slot_and_confirms(self, handler, tracker, notifier, call_records):
        await start_call(tracker)
        result = await handler.handle(call(
            "book_appointment",
            customerName="Jonas",
            customerPhone="+15125551234",
            address="4210 South Lamar Blvd",
            serviceDescription="thermostat swap",
        ))
        await tracker.drain()

        assert "Appointment Confirmed!" in result.result
        assert "Tuesday, October 20, 2026 at 10:30 AM" in result.result
        assert "emergency" not in result.result
        assert result.action is None

        session = tracker.get("call_1")
        assert session.appointment_id is not None
        assert session.customer_name == "Jonas"
        record = await call_records.get(session.call_record_id)
        assert record.appointment_id == session.appointment_id

        notifier.send_sms.assert_awaited_once()
        to, from_number, text = notifier.send_sms.await_args.args
        assert (to, from_number) == ("+15125551234", "+15125550000")
        assert text.startswith("Hi Jonas! Your HVAC appointment is confirmed for 10/20/2026 at 10:30 AM.")

    @pytest.mark.asyncio
    async def test_emergency_booking(self, handler, tracker, notifier, appointments):
        result = await handler.handle(call(
            "book_appointment",
            customerName="Maria",
            customerPhone="+15125559876",
            serviceDescription="water heater leaking all over",
        ))
        await tracker.drain()

        assert result.result.endswith("This is treated as an emergency - we'll be there as soon as possible.")
        booked = await appointments.list_for_company("co_1")
        assert booked[0].scheduled_date == local(2026, 10, 20, 11)
        assert booked[0].estimated_duration == 120
        assert notifier.send_sms.await_count == 2
        assert "EMERGENCY SERVICE ALERT" in notifier.send_sms.await_args_list[1].args[2]

    @pytest.mark.asyncio
    async def test_falls_back_to_caller_phone(self, handler, tracker, appointments):
        await start_call(tracker)
        await handler.handle(call("book_appointment", customerName="Jonas"))
        await tracker.drain()
        booked = await appointments.list_for_company("co_1")
        assert booked[0].customer_phone == "+15125551234"

    @pytest.mark.asyncio
    async def test_company_resolved_from_tracked_call(self, handler, tracker, appointments):
        await start_call(tracker)
        await handler.handle(call("book_appointment", company_id=None, customerName="Jonas"))
        await tracker.drain()
        assert len(await appointments.list_for_company("co_1")) == 1

    @pytest.mark.asyncio
    async def test_unknown_company(self, handler):
        result = await handler.handle(call("book_appointment", company_id="co_missing"))
        assert result.result == BOOKING_NO_COMPANY

    @pytest.mark.asyncio
    async def test_store_failure_returns_fallback(self, handler, allocator):
        allocator.book = AsyncMock(side_effect=StoreUnavailableError("appointments offline"))
        result = await handler.handle(call("book_appointment", customerName="Jonas", customerPhone="+1"))
        assert result.result == BOOKING_FAILED


class TestGetPricing:
    @pytest.mark.asyncio
    async def test_business_hours_price(self, handler):
        result = await handler.handle(call("get_pricing", serviceDescription="furnace repair"))
        assert result.result.startswith("For heating service, our typical range is $150-$800.")

    @pytest.mark.asyncio
    async def test_after_hours_price(self, handler, clock):
        clock.now = local(2026, 10, 20, 18)
        result = await handler.handle(call("get_pricing", serviceDescription="furnace repair"))
        assert "$188-$1000 (after-hours rates apply)" in result.result

    @pytest.mark.asyncio
    async def test_emergency_price(self, handler):
        result = await handler.handle(call("get_pricing", serviceDescription="pipe burst in the boiler room"))
        assert "$225-$1200 (emergency service rates apply)" in result.result


class TestCheckAvailability:
    @pytest.mark.asyncio
    async def test_open_date_lists_times(self, handler):
        result = await handler.handle(call("check_availability", preferredDate="2026-10-21"))
        assert result.result == (
            "Great! We have availability on 10/21/2026 at these times: "
            "08:00 AM, 08:30 AM, 09:00 AM. Which works best for you?"
        )

    @pytest.mark.asyncio
    async def test_full_date_offers_alternatives(self, handler, appointments):
        for hour in range(8, 17):
            await appointments.create(Appointment(
                company_id="co_1", customer_name="X", customer_phone="+1",
                scheduled_date=local(2026, 10, 21, hour),
            ))
        result = await handler.handle(call("check_availability", preferredDate="2026-10-21"))
        assert result.result == (
            "That date is fully booked, but I have openings on: "
            "Thu, Oct 22, Fri, Oct 23, Sat, Oct 24. Would any of these work for you?"
        )

    @pytest.mark.asyncio
    async def test_emergency(self, handler):
        result = await handler.handle(call("check_availability", isEmergency=True, preferredDate="2026-10-21"))
        assert "Emergency service is available 24/7." in result.result

    @pytest.mark.asyncio
    async def test_without_date(self, handler):
        result = await handler.handle(call("check_availability"))
        assert "currently open" in result.result

    @pytest.mark.asyncio
    async def test_unknown_company(self, handler):
        result = await handler.handle(call("check_availability", company_id="co_missing"))
        assert result.result == AVAILABILITY_NO_COMPANY


class TestEscalation:
    @pytest.mark.asyncio
    async def test_transfer_action(self, handler, tracker):
        await start_call(tracker)
        result = await handler.handle(call("escalate_to_human"))
        assert result.to_dict() == {"result": ESCALATION, "action": TRANSFER_TO_HUMAN}
        assert tracker.get("call_1").transcript_log[-1]["name"] == "escalate_to_human"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_function(self, handler):
        with pytest.raises(UnknownFunctionError):
            await handler.handle(call("order_pizza"))

    def test_parse_preferred_date(self):
        assert parse_preferred_date("2026-10-21T09:00:00Z") == date(2026, 10, 21)
        assert parse_preferred_date("someday") is None
