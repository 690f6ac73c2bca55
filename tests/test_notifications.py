import json

import httpx
import pytest
import respx

from calldesk.notifications import (
    CircuitBreaker,
    NotificationClient,
    appointment_confirmation_sms,
    emergency_alert_text,
    notify_emergency,
)
from calldesk.records import Appointment
from conftest import FakeClock, local

SMS_URL = "https://notify.example.com/sms"
ALERTS_URL = "https://notify.example.com/alerts"


@pytest.fixture
def client():
    return NotificationClient(
        sms_url=SMS_URL,
        alerts_url=ALERTS_URL,
        webhook_secret="test-secret-123",
        retry_delay=0,
    )


class TestSendSms:
    @respx.mock
    @pytest.mark.asyncio
    async def test_posts_message(self, client):
        route = respx.post(SMS_URL).mock(return_value=httpx.Response(200, json={"success": True, "id": "msg_1"}))
        result = await client.send_sms("+15125551234", "+15125550000", "Hello")
        assert result["success"] is True
        request = route.calls[0].request
        assert request.headers["X-Webhook-Secret"] == "test-secret-123"
        assert json.loads(request.content) == {"to": "+15125551234", "from": "+15125550000", "text": "Hello"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self, client):
        route = respx.post(SMS_URL).mock(side_effect=[httpx.Response(502), httpx.Response(200, json={"success": True})])
        result = await client.send_sms("+1", "+2", "Hello")
        assert result["success"] is True
        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_failure_after_retry_is_returned_not_raised(self, client):
        route = respx.post(SMS_URL).mock(return_value=httpx.Response(500))
        result = await client.send_sms("+1", "+2", "Hello")
        assert result["success"] is False
        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_error(self, client):
        respx.post(SMS_URL).mock(side_effect=httpx.ConnectError("refused"))
        result = await client.send_sms("+1", "+2", "Hello")
        assert result["success"] is False

    @respx.mock
    @pytest.mark.asyncio
    async def test_empty_body_counts_as_success(self, client):
        respx.post(SMS_URL).mock(return_value=httpx.Response(204))
        assert (await client.send_sms("+1", "+2", "Hello"))["success"] is True


class TestCircuitBreakerIntegration:
    @respx.mock
    @pytest.mark.asyncio
    async def test_open_circuit_skips_calls(self):
        client = NotificationClient(
            sms_url=SMS_URL,
            alerts_url=ALERTS_URL,
            webhook_secret="s",
            retry_delay=0,
            breaker=CircuitBreaker(failure_threshold=2, label="notifications"),
        )
        route = respx.post(ALERTS_URL).mock(return_value=httpx.Response(500))
        await client.send_emergency_alert({"call_id": "a"})
        await client.send_emergency_alert({"call_id": "b"})
        assert route.call_count == 4

        result = await client.send_emergency_alert({"call_id": "c"})
        assert result == {"success": False, "error": "circuit open"}
        assert route.call_count == 4


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.should_try()
        breaker.record_failure()
        assert not breaker.should_try()
        assert breaker.is_open

    def test_half_open_after_cooldown(self):
        ticks = FakeClock(100.0)
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60, clock=ticks)
        breaker.record_failure()
        assert not breaker.should_try()
        ticks.now = 161.0
        assert breaker.should_try()

    def test_failed_trial_call_restarts_cooldown(self):
        ticks = FakeClock(100.0)
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60, clock=ticks)
        breaker.record_failure()
        ticks.now = 161.0
        breaker.record_failure()
        assert not breaker.should_try()

    def test_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.should_try()


class TestMessages:
    def test_emergency_alert_text(self):
        assert emergency_alert_text("ACE Cooling", "2 hours") == (
            "EMERGENCY SERVICE ALERT: ACE Cooling has received your emergency call. "
            "A technician will be dispatched within 2 hours. We'll call with updates. Stay safe!"
        )

    def test_appointment_confirmation(self, hours):
        appt = Appointment(
            company_id="co_1",
            customer_name="Jonas",
            customer_phone="+15125551234",
            scheduled_date=local(2026, 10, 21, 14, 30),
            address="4210 South Lamar Blvd",
            service_type="AC Repair",
        )
        assert appointment_confirmation_sms(appt, hours) == (
            "Hi Jonas! Your HVAC appointment is confirmed for 10/21/2026 at 02:30 PM. "
            "Address: 4210 South Lamar Blvd. Service: AC Repair. We'll call 30 minutes before arrival."
        )


class TestNotifyEmergency:
    @pytest.mark.asyncio
    async def test_alerts_dispatcher_and_texts_caller(self, notifier):
        await notify_emergency(
            notifier,
            company_id="co_1",
            company_name="ACE Cooling",
            company_phone="+15125550000",
            call_id="call_1",
            customer_phone="+15125551234",
            matched_keyword="gas smell",
            transcript="Customer: gas smell",
        )
        payload = notifier.send_emergency_alert.await_args.args[0]
        assert payload["matched_keyword"] == "gas smell"
        assert payload["company_name"] == "ACE Cooling"
        notifier.send_sms.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_caller_gets_no_text(self, notifier):
        await notify_emergency(
            notifier,
            company_id="co_1",
            company_name="ACE Cooling",
            company_phone="+15125550000",
            call_id="call_1",
            customer_phone="",
            matched_keyword="flooding",
            transcript="",
        )
        assert notifier.send_emergency_alert.await_args.args[0]["customer_phone"] == "unknown"
        notifier.send_sms.assert_not_awaited()
