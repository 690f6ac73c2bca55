import logging
from datetime import datetime

from calldesk.classification import IntentClassifier
from calldesk.records import CallRecord, Lead, new_id
from calldesk.session import CallSession
from calldesk.states import CallType
from calldesk.store import CallRecordStore, LeadStore
from calldesk.transcript import caller_text

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "Unknown Customer"
NO_BOOKING_NOTE = "Call completed - no appointment booked"


def should_create_lead(session: CallSession) -> bool:
    """Calls that showed intent but ended without a booking become sales leads."""
    return (
        session.appointment_id is None
        and session.lead_id is None
        and session.call_type != CallType.GENERAL_INQUIRY
    )


def apply_whole_call_classification(session: CallSession, classifier: IntentClassifier) -> None:
    """Re-classify everything the caller said.

    The emergency flag only ever turns on here; a call type already set to
    EMERGENCY is kept.
    """
    text = caller_text(session.transcript_log)
    if not text:
        return
    result = classifier.classify(text)
    if result.is_emergency:
        session.mark_emergency()
    elif not session.is_emergency:
        session.call_type = result.call_type
    session.add_service_types(classifier.specific_service_types(result.service_types))


def build_call_record_fields(session: CallSession, summary: str, now: datetime) -> dict:
    return {
        "call_type": session.call_type,
        "is_emergency": session.is_emergency,
        "summary": summary,
        "transcript": session.transcript,
        "duration": session.duration(now),
        "customer_name": session.customer_name,
        "appointment_id": session.appointment_id,
    }


async def finalize_call(
    session: CallSession,
    *,
    call_records: CallRecordStore,
    leads: LeadStore,
    classifier: IntentClassifier,
    now: datetime,
) -> CallRecord:
    """Final write for an ended call: call record, then a lead if one is warranted.

    Safe to run again after a StoreUnavailableError: the record is created if
    it is missing and a lead is only created once per session.
    """
    apply_whole_call_classification(session, classifier)
    summary = classifier.summarize(session.transcript)
    fields = build_call_record_fields(session, summary, now)

    record = None
    if session.call_record_id is not None:
        record = await call_records.get(session.call_record_id)
    if record is None:
        record = await call_records.create(CallRecord(
            id=session.call_record_id or new_id(),
            company_id=session.company_id,
            customer_phone=session.customer_phone,
            telephony_call_id=session.telephony_call_id,
            assistant_call_id=session.assistant_call_id,
            created_at=session.started_at,
        ))
        session.call_record_id = record.id
    record = await call_records.update(record.id, **fields)

    if should_create_lead(session):
        lead = await leads.create(Lead(
            company_id=session.company_id,
            customer_name=session.customer_name or UNKNOWN_CUSTOMER,
            customer_phone=session.customer_phone,
            service_interest=list(session.service_types) or classifier.extract_service_types(summary),
            notes=summary or NO_BOOKING_NOTE,
            call_record_id=record.id,
        ))
        session.lead_id = lead.id
        record = await call_records.update(record.id, lead_id=lead.id)
        logger.info("Created lead %s from call %s", lead.id, session.call_id)

    logger.info(
        "Call %s finalized: type=%s emergency=%s duration=%ds",
        session.call_id, session.call_type.value, session.is_emergency, record.duration,
    )
    return record
