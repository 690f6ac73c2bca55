"""Voice-assistant function calls.

Each function returns a sentence the assistant can read to the caller. Errors
never reach the assistant as exceptions: they are logged and replaced by a
fallback sentence that keeps the conversation going.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Callable

from calldesk.business_hours import is_after_hours
from calldesk.classification import IntentClassifier, availability_message
from calldesk.events import FunctionCallEvent
from calldesk.notifications import (
    DEFAULT_EMERGENCY_ETA,
    NotificationSink,
    appointment_confirmation_sms,
    emergency_alert_text,
)
from calldesk.records import Company
from calldesk.scheduler import AppointmentRequest, SlotAllocator, SlotStatus, confirmation_text
from calldesk.states import Priority
from calldesk.store import CompanyStore
from calldesk.tracker import CallTracker

logger = logging.getLogger(__name__)

TRANSFER_TO_HUMAN = "transfer_to_human"

BOOKING_NO_COMPANY = "I'm sorry, there was an error accessing company information. Please try again."
BOOKING_FAILED = (
    "I apologize, but there was an error scheduling your appointment. "
    "Let me transfer you to our dispatcher who can help immediately."
)
BOOKING_EMERGENCY_SUFFIX = " This is treated as an emergency - we'll be there as soon as possible."

PRICING_NO_COMPANY = "I'm sorry, I can't access pricing information right now. Please call back later."
PRICING_FAILED = (
    "I can provide general pricing, but specific quotes depend on the situation. "
    "Our service call fee starts at $75-125, which is waived if we perform the work. "
    "Would you like to schedule an appointment for an accurate estimate?"
)

AVAILABILITY_NO_COMPANY = "I'm sorry, I can't check availability right now. Please try calling back."
AVAILABILITY_FAILED = (
    "Let me check our schedule... We typically have same-day availability for emergencies "
    "and next-day service for regular appointments."
)
AVAILABILITY_NONE = (
    "That date is fully booked and I don't see openings in the following week. "
    "Would you like our dispatcher to call you back with the first opening?"
)

ESCALATION = (
    "I understand you'd like to speak with someone directly. I'm connecting you with "
    "our dispatch team now. Please hold for just a moment."
)


class UnknownFunctionError(ValueError):
    pass


@dataclass(frozen=True)
class FunctionResult:
    result: str
    action: str | None = None

    def to_dict(self) -> dict:
        body = {"result": self.result}
        if self.action:
            body["action"] = self.action
        return body


def _utc_now() -> datetime:
    return datetime.now(UTC)


def parse_preferred_date(value) -> date | None:
    if not value:
        return None
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            logger.warning("Unparseable preferred date %r", value)
            return None
    return None


def parse_preferred_start(value, company: Company) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable preferred time %r", value)
        return None
    return company.business_hours.localize(parsed)


class FunctionCallHandler:
    def __init__(
        self,
        *,
        scheduler: SlotAllocator,
        companies: CompanyStore,
        tracker: CallTracker | None = None,
        notifier: NotificationSink | None = None,
        classifier: IntentClassifier | None = None,
        clock: Callable[[], datetime] = _utc_now,
        emergency_eta: str = DEFAULT_EMERGENCY_ETA,
    ):
        self.scheduler = scheduler
        self.companies = companies
        self.tracker = tracker
        self.notifier = notifier
        self.classifier = classifier or IntentClassifier()
        self.clock = clock
        self.emergency_eta = emergency_eta
        self._handlers = {
            "book_appointment": (self.book_appointment, BOOKING_FAILED),
            "get_pricing": (self.get_pricing, PRICING_FAILED),
            "check_availability": (self.check_availability, AVAILABILITY_FAILED),
            "escalate_to_human": (self.escalate_to_human, "Let me get you connected with our team right away."),
        }

    async def handle(self, event: FunctionCallEvent) -> FunctionResult:
        entry = self._handlers.get(event.name)
        if entry is None:
            raise UnknownFunctionError(event.name)
        handler, fallback = entry
        logger.info("Function call %s on call %s", event.name, event.call_id)
        try:
            return await handler(event)
        except Exception as e:
            logger.exception("Function %s failed for call %s: %s", event.name, event.call_id, e)
            return FunctionResult(fallback)

    async def _company(self, event: FunctionCallEvent) -> Company | None:
        company_id = event.company_id
        if not company_id and self.tracker is not None:
            session = self.tracker.get(event.call_id)
            company_id = session.company_id if session else None
        if not company_id:
            return None
        return await self.companies.get(company_id)

    async def _notify(self, coro, label: str) -> None:
        if self.tracker is not None:
            self.tracker.spawn(coro, label)
        else:
            await coro

    async def book_appointment(self, event: FunctionCallEvent) -> FunctionResult:
        company = await self._company(event)
        if company is None:
            return FunctionResult(BOOKING_NO_COMPANY)
        params = event.parameters
        session = self.tracker.get(event.call_id) if self.tracker else None

        description = params.get("serviceDescription") or ""
        is_emergency = bool(params.get("isEmergency")) or self.classifier.detect_emergency(description)
        priority = Priority.EMERGENCY if is_emergency else Priority.MEDIUM
        customer_name = params.get("customerName") or (session.customer_name if session else None) or "Unknown Customer"
        customer_phone = params.get("customerPhone") or (session.customer_phone if session else "")

        booking = await self.scheduler.book(
            AppointmentRequest(
                company_id=company.id,
                priority=priority,
                preferred_start=parse_preferred_start(params.get("preferredDateTime"), company),
            ),
            customer_name=customer_name,
            customer_phone=customer_phone,
            customer_email=params.get("customerEmail"),
            address=params.get("address") or "",
            service_type=params.get("serviceType") or "General HVAC Service",
            notes=description,
        )
        appointment = booking.appointment
        if booking.decision.status == SlotStatus.FALLBACK:
            logger.warning("Appointment %s placed on fallback slot", appointment.id)

        if self.notifier is not None and customer_phone:
            await self._notify(
                self.notifier.send_sms(
                    customer_phone,
                    company.phone_number,
                    appointment_confirmation_sms(appointment, company.business_hours),
                ),
                "appointment confirmation",
            )
            if is_emergency:
                await self._notify(
                    self.notifier.send_sms(
                        customer_phone,
                        company.phone_number,
                        emergency_alert_text(company.name, self.emergency_eta),
                    ),
                    "emergency confirmation",
                )

        result = confirmation_text(appointment, company.business_hours)
        if is_emergency:
            result += BOOKING_EMERGENCY_SUFFIX

        if self.tracker is not None:
            await self.tracker.record_function_call(
                event.call_id, event.name, result, appointment=appointment, customer_name=customer_name
            )
        return FunctionResult(result)

    async def get_pricing(self, event: FunctionCallEvent) -> FunctionResult:
        company = await self._company(event)
        if company is None:
            return FunctionResult(PRICING_NO_COMPANY)
        description = event.parameters.get("serviceDescription") or ""
        estimate = self.classifier.estimate_price(
            self.classifier.extract_service_types(description),
            self.classifier.detect_emergency(description),
            is_after_hours(company.business_hours, self.clock()),
            catalog=company.catalog,
            after_hours_multiplier=company.after_hours_multiplier,
        )
        if self.tracker is not None:
            await self.tracker.record_function_call(event.call_id, event.name, estimate.text)
        return FunctionResult(estimate.text)

    async def check_availability(self, event: FunctionCallEvent) -> FunctionResult:
        company = await self._company(event)
        if company is None:
            return FunctionResult(AVAILABILITY_NO_COMPANY)
        params = event.parameters
        hours = company.business_hours
        is_emergency = bool(params.get("isEmergency")) or self.classifier.detect_emergency(
            params.get("description") or ""
        )
        preferred = parse_preferred_date(params.get("preferredDate"))

        if is_emergency or preferred is None:
            result = availability_message(hours, self.clock(), is_emergency)
        else:
            decision = await self.scheduler.check_availability(company.id, preferred)
            if decision.status == SlotStatus.AVAILABLE:
                times = ", ".join(f"{hours.localize(slot):%I:%M %p}" for slot in decision.alternatives)
                result = (
                    f"Great! We have availability on {preferred.month}/{preferred.day}/{preferred.year} "
                    f"at these times: {times}. Which works best for you?"
                )
            elif decision.status == SlotStatus.ALTERNATIVES:
                days = ", ".join(
                    f"{hours.localize(slot):%a, %b} {hours.localize(slot).day}" for slot in decision.alternatives
                )
                result = f"That date is fully booked, but I have openings on: {days}. Would any of these work for you?"
            else:
                result = AVAILABILITY_NONE

        if self.tracker is not None:
            await self.tracker.record_function_call(event.call_id, event.name, result)
        return FunctionResult(result)

    async def escalate_to_human(self, event: FunctionCallEvent) -> FunctionResult:
        logger.info("Escalating call %s to a human dispatcher", event.call_id)
        if self.tracker is not None:
            await self.tracker.record_function_call(event.call_id, event.name, ESCALATION)
        return FunctionResult(ESCALATION, action=TRANSFER_TO_HUMAN)
