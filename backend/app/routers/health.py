from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.config import get_settings
from app.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    settings = get_settings()
    interval = settings.escalation_sweep_interval_minutes
    sweep_status: dict = {
        "trigger": "in_process" if interval > 0 else "external",
        "interval_minutes": interval,
        "last_run": getattr(request.app.state, "last_sweep_at", None),
        "admin_endpoint": "enabled" if settings.admin_token else "disabled",
    }

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "will-release-backend",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "escalation_sweep": sweep_status,
            "smtp": "configured" if settings.smtp_host else "not_configured",
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "will-release-backend",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "will-release-backend",
    }
