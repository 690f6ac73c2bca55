import asyncio
import contextlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Callable

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from calldesk.business_hours import BusinessHours
from calldesk.classification import IntentClassifier
from calldesk.config import Settings, configure_logging, validate_config
from calldesk.events import FunctionCallEvent, MalformedEventError, decode_event
from calldesk.functions import FunctionCallHandler, UnknownFunctionError
from calldesk.notifications import NotificationClient, NotificationSink
from calldesk.scheduler import SlotAllocator
from calldesk.store import (
    AppointmentStore,
    CallRecordStore,
    CompanyStore,
    InMemoryAppointmentStore,
    InMemoryCallRecordStore,
    InMemoryCompanyStore,
    InMemoryLeadStore,
    LeadStore,
    StoreUnavailableError,
)
from calldesk.tracker import CallTracker

load_dotenv()

logger = logging.getLogger(__name__)

ACK = {"success": True}
SIGNATURE_HEADER = "X-Webhook-Secret"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def create_app(
    settings: Settings | None = None,
    *,
    companies: CompanyStore | None = None,
    appointments: AppointmentStore | None = None,
    call_records: CallRecordStore | None = None,
    leads: LeadStore | None = None,
    notifier: NotificationSink | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> FastAPI:
    settings = settings or Settings.from_env()
    companies = companies or InMemoryCompanyStore()
    appointments = appointments or InMemoryAppointmentStore()
    call_records = call_records or InMemoryCallRecordStore()
    leads = leads or InMemoryLeadStore()
    if notifier is None and settings.notifications_enabled:
        notifier = NotificationClient(
            sms_url=settings.sms_url,
            alerts_url=settings.alerts_url,
            webhook_secret=settings.webhook_secret,
        )

    default_hours = BusinessHours(timezone=settings.default_timezone)
    classifier = IntentClassifier()
    scheduler = SlotAllocator(appointments, companies, clock=clock, default_hours=default_hours)
    tracker = CallTracker(
        companies=companies,
        call_records=call_records,
        leads=leads,
        notifier=notifier,
        classifier=classifier,
        clock=clock,
        grace_seconds=settings.ended_call_grace_seconds,
        emergency_eta=settings.emergency_eta,
        default_hours=default_hours,
    )
    functions = FunctionCallHandler(
        scheduler=scheduler,
        companies=companies,
        tracker=tracker,
        notifier=notifier,
        classifier=classifier,
        clock=clock,
        emergency_eta=settings.emergency_eta,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        refresher = asyncio.create_task(tracker.run_duration_refresh(settings.duration_refresh_seconds))
        logger.info("Duration refresh every %.0fs", settings.duration_refresh_seconds)
        yield
        refresher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresher
        await tracker.drain()

    app = FastAPI(title="calldesk", lifespan=lifespan)
    app.state.settings = settings
    app.state.tracker = tracker
    app.state.scheduler = scheduler
    app.state.functions = functions
    app.state.companies = companies

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable while handling %s: %s", request.url.path, exc)
        return JSONResponse({"error": "Store unavailable, retry later"}, status_code=503)

    async def _decode(request: Request):
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise MalformedEventError("Body is not valid JSON") from e
        return decode_event(body, request.query_params.get("companyId"))

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/webhooks/telephony")
    async def telephony_webhook(request: Request):
        if settings.telephony_webhook_secret and not hmac.compare_digest(
            request.headers.get(SIGNATURE_HEADER, ""), settings.telephony_webhook_secret
        ):
            logger.warning("Rejected telephony webhook with a bad or missing %s header", SIGNATURE_HEADER)
            return JSONResponse({"error": "Invalid webhook signature"}, status_code=401)
        try:
            event = await _decode(request)
            await tracker.handle(event)
        except MalformedEventError as e:
            logger.warning("Malformed telephony event: %s", e)
        return ACK

    @app.post("/webhooks/assistant")
    async def assistant_webhook(request: Request):
        try:
            event = await _decode(request)
            if isinstance(event, FunctionCallEvent):
                result = await functions.handle(event)
                return result.to_dict()
            await tracker.handle(event)
        except UnknownFunctionError as e:
            logger.warning("Unknown function call: %s", e)
            return JSONResponse({"error": "Unknown function call"}, status_code=400)
        except MalformedEventError as e:
            logger.warning("Malformed assistant event: %s", e)
        return ACK

    @app.websocket("/ws/dashboard/{company_id}")
    async def dashboard_websocket(websocket: WebSocket, company_id: str):
        await websocket.accept()
        try:
            queue = await tracker.subscribe(company_id)
        except StoreUnavailableError as e:
            logger.error("Dashboard snapshot failed for company %s: %s", company_id, e)
            await websocket.close(code=1011)
            return

        async def forward():
            while True:
                await websocket.send_json(await queue.get())

        def forward_done(task: asyncio.Task) -> None:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("Dashboard feed for company %s stopped: %s", company_id, task.exception())

        sender = asyncio.create_task(forward())
        sender.add_done_callback(forward_done)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Dashboard for company %s disconnected", company_id)
        finally:
            sender.cancel()
            tracker.unsubscribe(company_id, queue)

    return app


if __name__ == "__main__":
    validate_config()
    configure_logging()
    settings = Settings.from_env()
    uvicorn.run("calldesk.app:create_app", factory=True, host="0.0.0.0", port=settings.port)
