"""Live registry of in-flight calls.

Every event for a call runs under that call's lock, so transcript fragments
and lifecycle changes for one call apply in arrival order while different
calls proceed independently. Dashboard subscribers are scoped by company and
receive a snapshot before any incremental message.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, time, timedelta
from typing import Callable

from calldesk.business_hours import BusinessHours
from calldesk.classification import IntentClassifier
from calldesk.events import CallEvent, FunctionCallEvent, LifecycleEvent, MalformedEventError, TranscriptEvent
from calldesk.notifications import DEFAULT_EMERGENCY_ETA, NotificationSink, notify_emergency
from calldesk.post_call import finalize_call
from calldesk.records import Appointment, CallRecord, new_id
from calldesk.session import CallSession
from calldesk.states import CallState, CallType
from calldesk.store import CallRecordStore, CompanyStore, LeadStore, StoreUnavailableError
from calldesk.transcript import caller_text

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 300
DEFAULT_REFRESH_SECONDS = 5.0
SUBSCRIBER_QUEUE_SIZE = 256

CALL_STARTED = "call-started"
CALL_UPDATED = "call-updated"
CALL_ENDED = "call-ended"
EMERGENCY_DETECTED = "emergency-detected"
DURATION_TICK = "duration-tick"
SNAPSHOT = "snapshot"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CallTracker:
    def __init__(
        self,
        *,
        companies: CompanyStore,
        call_records: CallRecordStore,
        leads: LeadStore,
        notifier: NotificationSink | None = None,
        classifier: IntentClassifier | None = None,
        clock: Callable[[], datetime] = _utc_now,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        emergency_eta: str = DEFAULT_EMERGENCY_ETA,
        default_hours: BusinessHours | None = None,
    ):
        self.companies = companies
        self.call_records = call_records
        self.leads = leads
        self.notifier = notifier
        self.classifier = classifier or IntentClassifier()
        self.clock = clock
        self.grace = timedelta(seconds=grace_seconds)
        self.emergency_eta = emergency_eta
        self.default_hours = default_hours or BusinessHours()

        self._sessions: dict[str, CallSession] = {}
        self._aliases: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._ended: dict[str, datetime] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Registry ──

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(self._resolve(call_id))

    def active_calls(self, company_id: str) -> list[CallSession]:
        return [s for s in list(self._sessions.values()) if s.company_id == company_id]

    def is_ended(self, call_id: str) -> bool:
        return self._resolve(call_id) in self._ended

    def _resolve(self, call_id: str) -> str:
        return self._aliases.get(call_id, call_id)

    @asynccontextmanager
    async def _call_lock(self, call_id: str):
        """Serialize work on one call."""
        lock = self._locks.get(call_id)
        if lock is None:
            lock = self._locks[call_id] = asyncio.Lock()
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[call_id] -= 1
            if not self._lock_users[call_id]:
                # Nobody holds or awaits the lock; keep it only while the call is live.
                del self._lock_users[call_id]
                if call_id not in self._sessions:
                    del self._locks[call_id]

    # ── Event intake ──

    async def handle(self, event: CallEvent) -> CallSession | None:
        if isinstance(event, LifecycleEvent):
            return await self.handle_lifecycle(event)
        if isinstance(event, TranscriptEvent):
            return await self.handle_transcript(event)
        if isinstance(event, FunctionCallEvent):
            # Function calls are answered by FunctionCallHandler; the tracker only records results.
            return self.get(event.call_id)
        raise MalformedEventError(f"Unsupported event: {event!r}")

    def _link(self, event: LifecycleEvent) -> str:
        call_id = self._resolve(event.call_id)
        if event.linked_call_id and call_id not in self._sessions:
            linked = self._resolve(event.linked_call_id)
            if linked in self._sessions:
                self._aliases[event.call_id] = linked
                logger.info("Linked call %s to %s", event.call_id, linked)
                return linked
        return call_id

    async def handle_lifecycle(self, event: LifecycleEvent) -> CallSession | None:
        call_id = self._link(event)
        async with self._call_lock(call_id):
            if call_id in self._ended:
                logger.warning("Discarding %s for ended call %s", event.type, call_id)
                return None

            session = self._sessions.get(call_id)
            if session is None:
                session = await self._open(call_id, event)
            else:
                self._merge_ids(session, event)

            if event.is_terminal:
                await self._end(session)
                return session

            target = event.target_state
            if not session.state.can_advance_to(target):
                logger.info(
                    "Ignoring %s for call %s: already %s", event.type, call_id, session.state.value
                )
                return session

            session.state = target
            self.publish(session.company_id, CALL_UPDATED, session.to_dict(self.clock()))
            return session

    def _merge_ids(self, session: CallSession, event: LifecycleEvent) -> None:
        if event.source == "assistant" and session.assistant_call_id is None:
            session.assistant_call_id = event.call_id
        if event.source == "telephony" and session.telephony_call_id is None:
            session.telephony_call_id = event.call_id
        if event.from_number and not session.customer_phone:
            session.customer_phone = event.from_number

    async def _open(self, call_id: str, event: LifecycleEvent) -> CallSession:
        if not event.company_id:
            raise MalformedEventError(f"companyId is required to open call {call_id}")
        now = self.clock()
        session = CallSession(
            call_id=call_id,
            company_id=event.company_id,
            started_at=event.timestamp or now,
            customer_phone=event.from_number,
            called_number=event.to_number,
            state=CallState.RINGING,
        )
        self._merge_ids(session, event)
        self._sessions[call_id] = session
        logger.info("Call %s started for company %s from %s", call_id, session.company_id, session.customer_phone or "unknown")
        self.publish(session.company_id, CALL_STARTED, session.to_dict(now))

        record = CallRecord(
            id=new_id(),
            company_id=session.company_id,
            customer_phone=session.customer_phone,
            telephony_call_id=session.telephony_call_id,
            assistant_call_id=session.assistant_call_id,
            created_at=session.started_at,
        )
        await self.call_records.create(record)
        session.call_record_id = record.id
        return session

    async def _end(self, session: CallSession) -> None:
        now = self.clock()
        if not session.is_emergency:
            # A keyword split across fragments only shows up in the joined caller text.
            keyword = self.classifier.matched_emergency_keyword(caller_text(session.transcript_log))
            if keyword and session.mark_emergency():
                await self._emergency_detected(session, keyword, persist=False)

        if not session.state.is_terminal:
            session.close(now)
            logger.info("Call %s ended after %ds", session.call_id, session.duration(now))
            self.publish(session.company_id, CALL_ENDED, session.to_dict(now))
        else:
            logger.info("Retrying final write for call %s", session.call_id)

        # A StoreUnavailableError leaves the session in ENDING for the retried event.
        await finalize_call(
            session,
            call_records=self.call_records,
            leads=self.leads,
            classifier=self.classifier,
            now=now,
        )
        self._evict(session, now)

    def _evict(self, session: CallSession, now: datetime) -> None:
        call_id = session.call_id
        self._sessions.pop(call_id, None)
        self._ended[call_id] = now
        for alias, target in list(self._aliases.items()):
            if target == call_id:
                self._ended[alias] = now
                del self._aliases[alias]

    async def handle_transcript(self, event: TranscriptEvent) -> CallSession | None:
        call_id = self._resolve(event.call_id)
        async with self._call_lock(call_id):
            if call_id in self._ended:
                logger.warning("Discarding transcript for ended call %s", call_id)
                return None
            session = self._sessions.get(call_id)
            if session is None:
                logger.warning("Discarding transcript for unknown call %s", call_id)
                return None
            if session.state.is_terminal:
                logger.warning("Discarding transcript for call %s: already ending", call_id)
                return session

            now = self.clock()
            session.transcript_log.append({
                "role": event.role,
                "content": event.text,
                "timestamp": (event.timestamp or now).isoformat(),
            })

            if event.from_caller and event.text:
                await self._classify_fragment(session, event.text)

            self.publish(session.company_id, CALL_UPDATED, session.to_dict(now))
            return session

    async def _classify_fragment(self, session: CallSession, text: str) -> None:
        result = self.classifier.classify(text)
        session.add_service_types(self.classifier.specific_service_types(result.service_types))
        session.sentiment = self.classifier.analyze_sentiment(caller_text(session.transcript_log))
        if not session.is_emergency and result.call_type != CallType.GENERAL_INQUIRY:
            session.call_type = result.call_type

        if result.is_emergency and session.mark_emergency():
            await self._emergency_detected(session, result.matched_keyword)

    async def _emergency_detected(
        self, session: CallSession, matched_keyword: str | None, persist: bool = True
    ) -> None:
        logger.warning("Emergency detected on call %s (matched %r)", session.call_id, matched_keyword)
        self.publish(session.company_id, EMERGENCY_DETECTED, {
            "callId": session.call_id,
            "customerPhone": session.customer_phone,
            "matchedKeyword": matched_keyword,
            "serviceTypes": list(session.service_types),
        })
        if persist:
            await self._persist_emergency(session)
        if not session.emergency_alerted:
            session.emergency_alerted = True
            self.spawn(self._send_emergency_alert(session, matched_keyword), "emergency alert")

    async def _persist_emergency(self, session: CallSession) -> None:
        if session.call_record_id is None:
            return
        try:
            await self.call_records.update(
                session.call_record_id, is_emergency=True, call_type=CallType.EMERGENCY
            )
        except StoreUnavailableError as e:
            # The flag is held in memory and written again by the final call-record update.
            logger.error("Could not persist emergency flag for call %s: %s", session.call_id, e)

    async def _send_emergency_alert(self, session: CallSession, matched_keyword: str | None) -> None:
        if self.notifier is None:
            logger.warning("No notifier configured; emergency alert for call %s not sent", session.call_id)
            return
        company = await self.companies.get(session.company_id)
        await notify_emergency(
            self.notifier,
            company_id=session.company_id,
            company_name=company.name if company else session.company_id,
            company_phone=company.phone_number if company else session.called_number,
            call_id=session.call_id,
            customer_phone=session.customer_phone,
            matched_keyword=matched_keyword,
            transcript=session.transcript,
            eta=self.emergency_eta,
        )

    async def record_function_call(
        self,
        call_id: str,
        name: str,
        result: str,
        appointment: Appointment | None = None,
        customer_name: str | None = None,
    ) -> CallSession | None:
        """Log a function-call result on the call and attach any booked appointment."""
        call_id = self._resolve(call_id)
        async with self._call_lock(call_id):
            session = self._sessions.get(call_id)
            if session is None:
                logger.info("Function %s for untracked call %s", name, call_id)
                return None
            session.transcript_log.append({"role": "function", "name": name, "result": result})
            if customer_name and not session.customer_name:
                session.customer_name = customer_name
            if appointment is not None:
                session.appointment_id = appointment.id
                if session.call_record_id is not None:
                    await self.call_records.update(session.call_record_id, appointment_id=appointment.id)
            self.publish(session.company_id, CALL_UPDATED, session.to_dict(self.clock()))
            return session

    # ── Background tasks ──

    def spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for outstanding background notifications."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Dashboard fan-out ──

    def publish(self, company_id: str, event_type: str, data: dict) -> None:
        message = {"type": event_type, "data": data, "timestamp": self.clock().isoformat()}
        for queue in list(self._subscribers.get(company_id, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dashboard subscriber for company %s is behind; dropped %s", company_id, event_type)

    async def subscribe(self, company_id: str) -> asyncio.Queue:
        """Register a dashboard subscriber. The first queued message is the snapshot."""
        stats = await self.stats(company_id)
        # Nothing below awaits, so no event can slip between the snapshot and registration.
        now = self.clock()
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        queue.put_nowait({
            "type": SNAPSHOT,
            "data": {
                "activeCalls": [s.to_dict(now) for s in self.active_calls(company_id)],
                "stats": stats,
            },
            "timestamp": now.isoformat(),
        })
        self._subscribers.setdefault(company_id, set()).add(queue)
        return queue

    def unsubscribe(self, company_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(company_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[company_id]

    async def stats(self, company_id: str) -> dict:
        """Today's call statistics for the dashboard, in the company's time zone."""
        company = await self.companies.get(company_id)
        hours = company.business_hours if company else self.default_hours
        local_now = hours.localize(self.clock())
        since = datetime.combine(local_now.date(), time(0), tzinfo=hours.tz)
        records = await self.call_records.list_since(company_id, since)
        durations = [r.duration for r in records if r.duration > 0]
        return {
            "totalCalls": len(records),
            "emergencyCalls": sum(1 for r in records if r.is_emergency),
            "appointmentsBooked": sum(1 for r in records if r.appointment_id),
            "averageDuration": round(sum(durations) / len(durations)) if durations else 0,
            "activeCalls": len(self.active_calls(company_id)),
        }

    # ── Duration refresh ──

    def tick(self) -> None:
        now = self.clock()
        for session in list(self._sessions.values()):
            if session.state.is_live:
                self.publish(session.company_id, DURATION_TICK, {
                    "callId": session.call_id,
                    "duration": session.duration(now),
                })
        self._prune_ended(now)

    def _prune_ended(self, now: datetime) -> None:
        for call_id, ended_at in list(self._ended.items()):
            if now - ended_at >= self.grace:
                del self._ended[call_id]

    async def run_duration_refresh(self, interval: float = DEFAULT_REFRESH_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval)
            self.tick()
