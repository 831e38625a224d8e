"""Health check endpoints.

Provides:
- Liveness and dependency check (/api/health)
- Detailed engine status (/api/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text
import logging

from app.config import get_settings
from core.constants import ExecutionStatus
from db import database
from workflow.dispatcher import get_action_dispatcher
from workflow.ledger import ExecutionLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


async def _check_redis(url: str) -> str:
    import redis.asyncio as aioredis

    client = aioredis.from_url(url, socket_connect_timeout=2)
    try:
        return "ok" if await client.ping() else "degraded"
    finally:
        await client.aclose()


@router.get("", response_model=dict[str, Any])
async def health_check() -> dict[str, Any]:
    """
    Health check with dependency verification.
    Returns 503 if the database is unreachable. Redis is only checked
    when the deployment depends on it (Celery queue or event bus).
    """
    settings = get_settings()
    checks: dict[str, str] = {}

    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        checks["database"] = "unavailable"

    if settings.uses_celery or settings.EVENT_BUS_ENABLED:
        try:
            checks["redis"] = await _check_redis(settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis health check failed: %s", e)
            checks["redis"] = "unavailable"

    if checks["database"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return {"status": "healthy", "app": settings.APP_NAME, "version": settings.APP_VERSION, **checks}


@router.get("/status", response_model=dict[str, Any])
async def system_status() -> dict[str, Any]:
    """
    Uptime, configuration and suspended execution counts.
    """
    settings = get_settings()
    ledger = ExecutionLedger(database.AsyncSessionLocal)

    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "python": {"version": sys.version, "platform": platform.platform()},
        "execution_mode": settings.EXECUTION_MODE,
        "action_types": sorted(get_action_dispatcher().available_types),
        "executions": {
            "running": await ledger.count_by_status([ExecutionStatus.RUNNING]),
            "waiting_approval": await ledger.count_by_status([ExecutionStatus.WAITING_APPROVAL]),
            "retrying": await ledger.count_by_status([ExecutionStatus.RETRYING]),
        },
    }
