import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from remindsync.api.remote_store import RemoteStoreClient
from remindsync.bot.notifier import LoggingNotifier, TelegramNotifier
from remindsync.clock import Clock, utc_now
from remindsync.config import Settings
from remindsync.db.database import build_engine, build_session_factory, init_db
from remindsync.db.record_store import RecordStore
from remindsync.errors import NotFoundError, ValidationError
from remindsync.models.payload import NotificationAction, NotificationPayload, NotificationPayloadError
from remindsync.models.record import ReminderRecord
from remindsync.scheduler.maintenance import MaintenanceLoop
from remindsync.scheduler.tasks import BackgroundTasks
from remindsync.scheduler.trigger import TriggerScheduler, build_scheduler
from remindsync.services.error_log import ErrorCategory, ErrorLog
from remindsync.services.fallback import FallbackController
from remindsync.services.recurrence import RecurrenceCalculator
from remindsync.services.reminder_service import ReminderService
from remindsync.services.schedule_validator import ScheduleTimeValidator
from remindsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    engine: Any
    store: RecordStore
    error_log: ErrorLog
    fallback: FallbackController
    triggers: TriggerScheduler
    sync_engine: SyncEngine
    tasks: BackgroundTasks
    service: ReminderService
    maintenance: MaintenanceLoop
    bot_app: Any = None


def build_components(
    settings: Settings,
    clock: Clock = utc_now,
    remote: Optional[RemoteStoreClient] = None,
    notifier=None,
) -> Components:
    """Construct and wire every component. Nothing is started here."""
    engine = build_engine(settings.database_url, echo=settings.db_echo)
    session_factory = build_session_factory(engine)

    error_log = ErrorLog(session_factory, clock=clock)
    store = RecordStore(session_factory, error_log=error_log, clock=clock)
    fallback = FallbackController(session_factory, error_log, clock=clock)

    if remote is None and settings.remote_store_url:
        remote = RemoteStoreClient(settings.remote_store_url, settings.remote_store_api_key)
    if remote is None:
        logger.warning("REMOTE_STORE_URL not provided, reminders will only be kept locally")

    bot_app = None
    if notifier is None and settings.telegram_bot_token and settings.telegram_chat_id:
        from telegram.ext import Application

        bot_app = Application.builder().token(settings.telegram_bot_token).build()
        notifier = TelegramNotifier(bot_app.bot, settings.telegram_chat_id)
    if notifier is None:
        logger.warning("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not provided, notifications are only logged")
        notifier = LoggingNotifier()

    scheduler = build_scheduler(settings.jobstore_url)
    triggers = TriggerScheduler(scheduler, fallback, error_log, store=store, clock=clock)
    sync_engine = SyncEngine(store, remote, error_log, clock=clock)
    tasks = BackgroundTasks(error_log)
    calculator = RecurrenceCalculator(settings.tz)
    validator = ScheduleTimeValidator(
        calculator, clock=clock, min_lead=timedelta(seconds=settings.min_lead_seconds)
    )
    service = ReminderService(
        store, validator, triggers, sync_engine, tasks,
        notifier=notifier, error_log=error_log, clock=clock,
    )
    maintenance = MaintenanceLoop(
        scheduler, triggers, sync_engine, error_log,
        sweep_interval_minutes=settings.sweep_interval_minutes,
        sync_interval_minutes=settings.sync_interval_minutes,
        reminder_service=service,
    )

    if bot_app is not None:
        from remindsync.bot.handlers import setup_handlers

        setup_handlers(bot_app, service)

    return Components(
        settings=settings,
        engine=engine,
        store=store,
        error_log=error_log,
        fallback=fallback,
        triggers=triggers,
        sync_engine=sync_engine,
        tasks=tasks,
        service=service,
        maintenance=maintenance,
        bot_app=bot_app,
    )


async def start_components(components: Components):
    """Process start: restore state, backfill, arm everything and kick off a sync."""
    await init_db(components.engine)
    await components.fallback.load()
    await components.fallback.check_health()
    await components.store.migrate(components.service.backfill_next_fire)
    components.triggers.start()
    await components.service.refresh_overdue()
    await components.triggers.sweep()
    components.maintenance.start()
    components.tasks.submit(components.sync_engine.drain(), "initial sync drain", ErrorCategory.SYNC_TRANSIENT)

    if components.bot_app is not None:
        async def start_polling():
            await components.bot_app.initialize()
            await components.bot_app.start()
            await components.bot_app.updater.start_polling()

        components.tasks.submit(start_polling(), "telegram polling")


async def stop_components(components: Components):
    components.maintenance.shutdown()
    components.triggers.shutdown()
    await components.tasks.cancel_all()
    if components.bot_app is not None:
        await components.bot_app.updater.stop()
        await components.bot_app.stop()
        await components.bot_app.shutdown()
    await components.engine.dispose()


class ReminderCreate(BaseModel):
    title: str
    category: str
    frequency: Dict[str, Any]
    time: str
    description: str = ""
    enable_notifications: bool = True
    repeat_limit: int = 0


class ReminderUpdate(BaseModel):
    title: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    frequency: Optional[Dict[str, Any]] = None
    time: Optional[str] = None
    enable_notifications: Optional[bool] = None
    repeat_limit: Optional[int] = None
    status: Optional[str] = None


class SnoozeRequest(BaseModel):
    minutes: int = Field(10, ge=1)


class ConnectivitySignal(BaseModel):
    online: bool


class PermissionSignal(BaseModel):
    permitted: bool


class NotificationActionRequest(BaseModel):
    payload: str
    action: Optional[str] = None
    snooze_minutes: int = Field(10, ge=1)


def build_app(settings: Optional[Settings] = None, components: Optional[Components] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        settings: Runtime settings, read from the environment when omitted
        components: Prebuilt components, mainly for tests
    """
    settings = settings or Settings.from_env()

    # Configure logging
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level, logging.INFO),
    )

    components = components or build_components(settings)
    service = components.service

    app = FastAPI(title="Reminder Sync Engine")
    app.state.components = components

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Initialize database and start the schedulers on startup."""
        await start_components(components)
        logger.info("Reminder engine started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await stop_components(components)
        logger.info("Reminder engine stopped")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    def serialize(record: ReminderRecord) -> Dict[str, Any]:
        data = record.to_dict()
        data["next_occurrence"] = service.describe_next(record)
        return data

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        report = await components.fallback.health_report()
        report["status"] = "degraded" if report["in_fallback_mode"] else "healthy"
        report["armed_triggers"] = components.triggers.armed_count
        return report

    @app.post("/health/check")
    async def run_health_check():
        in_fallback = await components.fallback.check_health()
        if not in_fallback:
            components.tasks.submit(components.triggers.sweep(), "sweep after health check", ErrorCategory.SCHEDULING)
        return {"in_fallback_mode": in_fallback}

    @app.get("/errors")
    async def list_errors(limit: int = 50):
        return [entry.to_dict() for entry in await components.error_log.recent(limit)]

    @app.get("/sync/status")
    async def sync_status():
        return await components.sync_engine.queue_status()

    @app.post("/sync/drain")
    async def sync_drain():
        result = await components.sync_engine.drain()
        return result.to_dict()

    @app.get("/sync/dead-letter")
    async def dead_letter():
        return [entry.to_dict() for entry in await components.sync_engine.dead_letter_items()]

    @app.post("/sync/dead-letter/{dead_letter_id}/requeue")
    async def requeue_dead_letter(dead_letter_id: int):
        item = await components.sync_engine.requeue_dead_letter(dead_letter_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Dead-letter entry {dead_letter_id} not found")
        return item.to_dict()

    @app.post("/signals/connectivity")
    async def connectivity_signal(signal: ConnectivitySignal):
        if signal.online:
            components.tasks.submit(components.sync_engine.drain(), "sync drain on reconnect", ErrorCategory.SYNC_TRANSIENT)
        return {"status": "ok"}

    @app.post("/signals/background-permission")
    async def background_permission_signal(signal: PermissionSignal):
        await components.fallback.set_background_permission(signal.permitted)
        return components.fallback.state.to_dict()

    @app.get("/reminders")
    async def list_reminders(status: Optional[str] = None):
        try:
            records = await service.list_reminders(status)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Invalid status: {status}")
        return [serialize(record) for record in records]

    @app.post("/reminders", status_code=201)
    async def create_reminder(body: ReminderCreate):
        record = await service.create(
            title=body.title,
            category=body.category,
            frequency=body.frequency,
            time_of_day=body.time,
            description=body.description,
            enable_notifications=body.enable_notifications,
            repeat_limit=body.repeat_limit,
        )
        return serialize(record)

    @app.get("/reminders/{record_id}")
    async def get_reminder(record_id: int):
        return serialize(await service.get(record_id))

    @app.patch("/reminders/{record_id}")
    async def update_reminder(record_id: int, body: ReminderUpdate):
        changes = body.model_dump(exclude_none=True)
        if "time" in changes:
            changes["time_of_day"] = changes.pop("time")
        return serialize(await service.update(record_id, **changes))

    @app.delete("/reminders/{record_id}")
    async def delete_reminder(record_id: int):
        if not await service.delete(record_id):
            raise HTTPException(status_code=404, detail=f"Reminder {record_id} not found")
        return {"status": "deleted"}

    @app.post("/reminders/{record_id}/toggle")
    async def toggle_reminder(record_id: int):
        return serialize(await service.toggle(record_id))

    @app.post("/reminders/{record_id}/complete")
    async def complete_reminder(record_id: int):
        return serialize(await service.mark_completed(record_id))

    @app.post("/reminders/{record_id}/complete-manually")
    async def complete_reminder_manually(record_id: int):
        return serialize(await service.complete_manually(record_id))

    @app.post("/reminders/{record_id}/snooze")
    async def snooze_reminder(record_id: int, body: SnoozeRequest):
        return serialize(await service.snooze(record_id, body.minutes))

    @app.post("/notifications/action")
    async def notification_action(body: NotificationActionRequest):
        """Apply the action of a notification, given its JSON or legacy payload."""
        try:
            payload = NotificationPayload.parse(body.payload)
        except NotificationPayloadError as e:
            raise HTTPException(status_code=422, detail=str(e))
        action = body.action or payload.action
        if action == NotificationAction.COMPLETE:
            return serialize(await service.mark_completed(payload.record_id))
        if action == NotificationAction.SNOOZE:
            return serialize(await service.snooze(payload.record_id, body.snooze_minutes))
        if action in (NotificationAction.DISMISS, NotificationAction.TRIGGER):
            return serialize(await service.get(payload.record_id))
        raise HTTPException(status_code=422, detail=f"Invalid action type: {action}")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("remindsync.main:build_app", factory=True, host="0.0.0.0", port=8000)
