"""Lifeline SOS FastAPI application entry point.

Creates the FastAPI app, configures logging and middleware, includes
routers, and wires the SOS services (stores, tracker, dispatcher,
orchestrator) onto ``app.state`` for the lifetime of the process.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Final

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.settings import settings
from lifeline.api.router import api_router
from lifeline.api.v1 import tracking
from lifeline.middleware.privacy import PrivacyHeadersMiddleware, redact_sensitive
from lifeline.middleware.rate_limit import TrackingRateLimitMiddleware
from lifeline.services.errors import SOSError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# HTTP status for each SOSError code; anything unlisted is a 500.
_STATUS_BY_CODE: Final[dict[str, int]] = {
    "session_already_active": 409,
    "already_inactive": 409,
    "no_contacts": 422,
    "permission_denied": 403,
    "location_unavailable": 422,
    "not_found": 404,
    "invalid_token": 404,
    "store_unavailable": 503,
    "creation_failed": 503,
}


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog; tokens and phone numbers are masked before rendering."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the SOS services and store them on ``app.state``.

    With ``REDIS_URL`` set, documents and the local pointer live in Redis;
    otherwise documents stay in process and the pointer is kept in a JSON
    file so it survives a restart.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, redis=bool(settings.redis_url))
    app.state.start_time = time.time()

    # -- 1. Stores -------------------------------------------------------------
    from lifeline.services.document_store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
    from lifeline.services.local_store import LocalStore

    documents: DocumentStore
    if settings.redis_url:
        documents = RedisDocumentStore(settings.redis_url, timeout_seconds=settings.store_timeout_seconds)
    else:
        documents = InMemoryDocumentStore()
    local_store = LocalStore.from_settings(
        redis_url=settings.redis_url or None,
        path=settings.local_store_path,
        timeout_seconds=settings.store_timeout_seconds,
    )
    app.state.documents = documents
    app.state.local_store = local_store
    logger.info("app.stores_initialised", documents=type(documents).__name__)

    # -- 2. Sessions -----------------------------------------------------------
    from lifeline.services.session_store import SessionStore
    from lifeline.services.sos_settings import SOSSettingsStore
    from lifeline.services.token_minter import TokenMinter

    minter = TokenMinter(
        length=settings.token_length,
        reuse_window=timedelta(seconds=settings.token_reuse_seconds),
    )
    sessions = SessionStore(
        documents,
        local_store,
        minter,
        web_app_url=settings.sos_web_app_url,
        verify_attempts=settings.verify_attempts,
        reject_stale_location_fixes=settings.reject_stale_location_fixes,
    )
    app.state.sessions = sessions

    # -- 3. Location -----------------------------------------------------------
    from lifeline.services.location import PushedLocationProvider, WatchOptions
    from lifeline.services.location_tracker import LocationTracker

    provider = PushedLocationProvider(max_fix_age=timedelta(seconds=settings.initial_fix_max_age_seconds))
    tracker = LocationTracker(
        provider,
        sessions,
        foreground_options=WatchOptions(
            distance_meters=settings.foreground_distance_meters,
            interval_ms=settings.foreground_interval_ms,
        ),
        background_options=WatchOptions(
            distance_meters=settings.background_distance_meters,
            interval_ms=settings.background_interval_ms,
        ),
    )
    app.state.location_provider = provider
    app.state.tracker = tracker

    # -- 4. Notifications ------------------------------------------------------
    from lifeline.services.notifications import (
        DocumentDispatchChannel,
        NotificationDispatcher,
        UnavailableSmsComposer,
    )

    channel = DocumentDispatchChannel(documents)
    dispatcher = NotificationDispatcher(channel, UnavailableSmsComposer())
    app.state.dispatch_channel = channel

    # -- 5. Orchestrator -------------------------------------------------------
    from lifeline.services.orchestrator import SessionOrchestrator

    app.state.orchestrator = SessionOrchestrator(
        sessions,
        tracker,
        dispatcher,
        SOSSettingsStore(local_store),
    )
    logger.info("app.startup_complete")

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("app.shutdown_start", pending_writes=sessions.pending_count)
    await tracker.end()
    await local_store.close()
    close = getattr(documents, "close", None)
    if close is not None:
        await close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Lifeline SOS API",
    description="Emergency alert sessions: live location sharing with emergency contacts.",
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)


@app.exception_handler(SOSError)
async def sos_error_handler(request: Request, exc: SOSError) -> ORJSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.code, 500)
    log = logger.warning if status_code < 500 else logger.error
    log("api.sos_error", path=request.url.path, code=exc.code, status=status_code)
    content: dict[str, object] = {"code": exc.code, "detail": exc.user_message}
    session_id = getattr(exc, "session_id", None)
    if session_id is not None:
        content["session_id"] = session_id
    return ORJSONResponse(status_code=status_code, content=content)


# -- Custom middleware ------------------------------------------------------
app.add_middleware(PrivacyHeadersMiddleware)
app.add_middleware(
    TrackingRateLimitMiddleware,
    max_requests_per_minute=settings.tracking_rate_limit_per_minute,
    trusted_proxy_count=settings.trusted_proxy_count,
)

# -- Prometheus metrics -----------------------------------------------------
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/api/v1/health"],
).instrument(app).expose(
    app,
    endpoint="/metrics",
    include_in_schema=not settings.is_production,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)
app.include_router(tracking.router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    return {
        "name": "Lifeline SOS API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "tracking": "/session/{session_id}?token=...",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lifeline.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
    )
