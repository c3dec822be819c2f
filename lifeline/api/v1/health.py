"""Liveness and readiness probes."""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; does not touch the stores."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    Reports ``degraded`` when the document store is unreachable, when the
    local store has fallen back to memory (the active-session pointer
    would not survive a restart), or when location writes are queued.
    """
    checks: dict[str, str] = {}
    all_ok = True

    documents = getattr(request.app.state, "documents", None)
    ping = getattr(documents, "ping", None)
    if documents is None:
        checks["documents"] = "not_configured"
        all_ok = False
    elif ping is not None:
        if await ping():
            checks["documents"] = "ok"
        else:
            checks["documents"] = "unreachable"
            all_ok = False
    else:
        online = getattr(documents, "online", True)
        checks["documents"] = "ok (in-memory)" if online else "offline"
        all_ok = all_ok and online

    local_store = getattr(request.app.state, "local_store", None)
    if local_store is None:
        checks["local_store"] = "not_configured"
        all_ok = False
    elif local_store.degraded:
        checks["local_store"] = "degraded (in-memory fallback)"
        all_ok = False
    else:
        checks["local_store"] = "ok"

    sessions = getattr(request.app.state, "sessions", None)
    if sessions is not None and sessions.pending_count:
        checks["pending_writes"] = str(sessions.pending_count)
        all_ok = False

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
