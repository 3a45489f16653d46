"""Liveness and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text

from supplier_import.core.config import get_settings
from supplier_import.db.session import engine
from supplier_import.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "supplier-import-api"


def _check_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1")).fetchone()


def _ping(url: str) -> None:
    client = create_redis_client(url, decode_responses=True, socket_connect_timeout=2)
    try:
        client.ping()
    finally:
        client.close()


def _run_check(name: str, check: Callable[[], None]) -> dict[str, str]:
    try:
        check()
    except Exception as e:
        logger.error(f"{name} health check failed: {e}", exc_info=True)
        return {"status": "unhealthy", "message": f"{name} connection failed: {e}"}
    return {"status": "healthy", "message": f"{name} connection successful"}


@router.get("/live", summary="Liveness probe")
async def live() -> dict[str, str]:
    """Indicates the API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/ready", summary="Readiness probe")
async def ready() -> dict[str, Any]:
    """Database and Redis must answer; the Celery broker is reported only.

    The push channel and the progress cache live in Redis; without it
    progress falls back to polling, which is why it still counts here.
    """
    settings = get_settings()
    checks = {
        "database": _run_check("Database", _check_database),
        "redis": _run_check("Redis", lambda: _ping(settings.redis_url)),
        "celery_broker": _run_check(
            "Celery broker", lambda: _ping(settings.celery_broker_url or settings.redis_url)
        ),
    }
    healthy = all(checks[name]["status"] == "healthy" for name in ("database", "redis"))
    payload = {
        "status": "ok" if healthy else "unhealthy",
        "service": SERVICE_NAME,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=payload)
    return payload
