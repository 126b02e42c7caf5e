from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

import app.models  # noqa: F401  registers SQLModel tables

from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.routers import admin, audit, checkins, health, unlock, verification
from app.services.checkin import CheckInTracker
from app.services.escalation import EscalationScheduler
from app.services.notifier import SmtpNotifier
from app.services.registry import SqlContactRegistry
from app.services.responses import ResponseLog
from app.services.unlock import UnlockService
from app.services.verification import VerificationService
from app.services.will_store import FileWillStore
from app.utils.clock import SystemClock

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.will_store_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    clock = SystemClock()
    notifier = SmtpNotifier(settings)
    if not settings.smtp_host:
        logger.warning("SMTP_HOST is not set, notifications will fail until configured")

    tracker = CheckInTracker(settings, clock)
    verification_service = VerificationService(
        settings, SqlContactRegistry(), notifier, clock
    )
    app.state.checkin_tracker = tracker
    app.state.verification_service = verification_service
    app.state.escalation_scheduler = EscalationScheduler(
        tracker, verification_service, notifier, clock
    )
    app.state.unlock_service = UnlockService(
        settings,
        verification_service,
        notifier,
        FileWillStore(settings.will_store_dir),
        clock,
    )
    app.state.response_log = ResponseLog(settings, verification_service, tracker, clock)

    def _run_sweep() -> None:
        with Session(engine) as db:
            app.state.escalation_scheduler.process_overdue(db)
        app.state.last_sweep_at = clock.now().isoformat()

    # Optional in-process trigger; otherwise cron calls the admin endpoint
    async def _escalation_sweep_loop(interval_minutes: int) -> None:
        while True:
            await asyncio.sleep(interval_minutes * 60)
            try:
                await asyncio.to_thread(_run_sweep)
            except Exception:
                logger.exception("Escalation sweep error")

    sweep_task = None
    if settings.escalation_sweep_interval_minutes > 0:
        sweep_task = asyncio.create_task(
            _escalation_sweep_loop(settings.escalation_sweep_interval_minutes)
        )

    yield

    # Shutdown: cancel escalation sweep
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Will Release",
    description="Check-in tracking, death verification and multi-party will unlock",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        f"https://{settings.domain}",
        settings.frontend_url,
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin.router)
app.include_router(audit.router)
app.include_router(checkins.router)
app.include_router(health.router)
app.include_router(unlock.router)
app.include_router(verification.router)
