import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import httpx

from calldesk.business_hours import BusinessHours
from calldesk.records import Appointment

logger = logging.getLogger(__name__)

DEFAULT_EMERGENCY_ETA = "2 hours"


class NotificationSink(Protocol):
    async def send_sms(self, to: str, from_number: str, message: str) -> dict: ...

    async def send_emergency_alert(self, payload: dict) -> dict: ...


@dataclass
class CircuitBreaker:
    """Closed -> open (after N consecutive failures) -> half-open (after cooldown)."""

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    label: str = "service"
    clock: Callable[[], float] = time.monotonic

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.should_try()

    def should_try(self) -> bool:
        if self._consecutive_failures < self.failure_threshold:
            return True
        # open; a single trial call goes through once the cooldown has elapsed
        return self._opened_at is not None and (self.clock() - self._opened_at) >= self.cooldown_seconds

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        if self._opened_at is None:
            logger.warning(
                "Circuit breaker OPENED for %s after %d consecutive failures, skipping for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )
        # a failed half-open trial call restarts the cooldown
        self._opened_at = self.clock()


class NotificationClient:
    """HTTP client for the SMS relay and the dispatcher alert endpoint.

    Retries once with a short backoff and stops calling an endpoint for a
    cooldown after repeated failures. Never raises: failures come back as
    ``{"success": False, "error": ...}`` and are logged here.
    """

    def __init__(
        self,
        *,
        sms_url: str,
        alerts_url: str,
        webhook_secret: str,
        timeout: float = 15.0,
        retry_delay: float = 2.0,
        breaker: CircuitBreaker | None = None,
    ):
        self.sms_url = sms_url
        self.alerts_url = alerts_url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.breaker = breaker or CircuitBreaker(label="notifications")

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Webhook-Secret": self.secret,
        }

    async def _post_with_retry(self, url: str, payload: dict, label: str) -> dict:
        """POST with one retry after ``retry_delay`` seconds on failure."""
        if not self.breaker.should_try():
            logger.warning("%s skipped: circuit open", label)
            return {"success": False, "error": "circuit open"}

        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    self.breaker.record_success()
                    return resp.json() if resp.content else {"success": True}
            except (httpx.HTTPError, ValueError) as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %.0fs: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    self.breaker.record_failure()
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def send_sms(self, to: str, from_number: str, message: str) -> dict:
        return await self._post_with_retry(
            self.sms_url,
            {"to": to, "from": from_number, "text": message},
            "SMS",
        )

    async def send_emergency_alert(self, payload: dict) -> dict:
        return await self._post_with_retry(self.alerts_url, payload, "Emergency alert")


def emergency_alert_text(company_name: str, eta: str = DEFAULT_EMERGENCY_ETA) -> str:
    return (
        f"EMERGENCY SERVICE ALERT: {company_name} has received your emergency call. "
        f"A technician will be dispatched within {eta}. We'll call with updates. Stay safe!"
    )


def appointment_confirmation_sms(appointment: Appointment, hours: BusinessHours | None = None) -> str:
    when = appointment.scheduled_date
    if hours is not None:
        when = hours.localize(when)
    return (
        f"Hi {appointment.customer_name}! Your HVAC appointment is confirmed for "
        f"{when.month}/{when.day}/{when.year} at {when:%I:%M %p}. "
        f"Address: {appointment.address}. Service: {appointment.service_type}. "
        "We'll call 30 minutes before arrival."
    )


def emergency_alert_payload(
    *,
    company_id: str,
    company_name: str,
    call_id: str,
    customer_phone: str,
    matched_keyword: str | None,
    transcript: str,
) -> dict:
    """Body posted to the dispatcher alert endpoint."""
    return {
        "company_id": company_id,
        "company_name": company_name,
        "call_id": call_id,
        "customer_phone": customer_phone or "unknown",
        "matched_keyword": matched_keyword,
        "transcript": transcript,
    }


async def notify_emergency(
    sink: NotificationSink,
    *,
    company_id: str,
    company_name: str,
    company_phone: str,
    call_id: str,
    customer_phone: str,
    matched_keyword: str | None,
    transcript: str,
    eta: str = DEFAULT_EMERGENCY_ETA,
) -> None:
    """Alert the dispatcher and, when the caller's number is known, text the caller."""
    await sink.send_emergency_alert(emergency_alert_payload(
        company_id=company_id,
        company_name=company_name,
        call_id=call_id,
        customer_phone=customer_phone,
        matched_keyword=matched_keyword,
        transcript=transcript,
    ))
    if customer_phone:
        await sink.send_sms(customer_phone, company_phone, emergency_alert_text(company_name, eta))
    logger.info("EMERGENCY DETECTED: company %s, call %s", company_name, call_id)
