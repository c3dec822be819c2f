"""Emergency SOS API endpoints.

The device drives the session through these routes: start (manually or
from a crash / fall detector), post location fixes, end.  Errors raised
by the orchestrator are ``SOSError`` subclasses and are mapped to HTTP
responses by the application-wide exception handler.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from lifeline.models.enums import LocationSource, SessionState, TrackerState
from lifeline.models.session import (
    EndOutcome,
    Location,
    SessionHistoryItem,
    SOSSettings,
    StartOutcome,
)
from lifeline.models.user_profile import UserProfile
from lifeline.services.location import PushedLocationProvider
from lifeline.services.notifications import DocumentDispatchChannel
from lifeline.services.orchestrator import SessionOrchestrator
from lifeline.services.session_store import SessionStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sos", tags=["sos"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class StartRequest(BaseModel):
    profile: UserProfile
    location: Location | None = Field(default=None, description="Fix taken when the button was pressed")


class LocationRequest(BaseModel):
    location: Location
    source: LocationSource = LocationSource.FOREGROUND


class LocationResponse(BaseModel):
    delivered: int
    pending_writes: int


class DeviceCapabilities(BaseModel):
    foreground_permission: bool = True
    background_permission: bool = True
    background_capable: bool = True


class StatusResponse(BaseModel):
    active: bool
    session_id: str | None = None
    state: SessionState
    tracker_state: TrackerState
    pending_writes: int = 0


class ShareResponse(BaseModel):
    tracking_link: str
    message: str


class FlushResponse(BaseModel):
    replayed: int
    remaining: int


class ResponderRequest(BaseModel):
    user_id: str
    contact_id: str = Field(..., min_length=1, description="Contact id or phone number")
    push_token: str = Field(..., min_length=1)


class ResumeRequest(BaseModel):
    user_id: str


class ResumeResponse(BaseModel):
    session_id: str | None = None
    resumed: bool


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> SessionOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="SOS service not available")
    return orchestrator


def _sessions(request: Request) -> SessionStore:
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(status_code=503, detail="SOS service not available")
    return sessions


def _provider(request: Request) -> PushedLocationProvider:
    provider = getattr(request.app.state, "location_provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="Location intake not available")
    return provider


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/start", response_model=StartOutcome, status_code=201)
async def start_sos(body: StartRequest, request: Request) -> StartOutcome:
    """Start an SOS session and alert every emergency contact.

    The response lists any degraded features as ``warnings``; when
    ``offer_manual_share`` is true, show ``share_message`` with a share
    action.
    """
    orchestrator = _orchestrator(request)
    if body.location is not None:
        await _provider(request).publish(body.location)
    return await orchestrator.start(body.profile)


@router.post("/auto-start", response_model=StartOutcome, status_code=201)
async def auto_start_sos(body: StartRequest, request: Request) -> StartOutcome:
    """Start an SOS session from an automatic trigger (crash / fall detection)."""
    orchestrator = _orchestrator(request)
    if body.location is not None:
        await _provider(request).publish(body.location)
    return await orchestrator.auto_start(body.profile)


@router.post("/end", response_model=EndOutcome)
async def end_sos(request: Request) -> EndOutcome:
    return await _orchestrator(request).end()


@router.post("/resume", response_model=ResumeResponse)
async def resume_sos(body: ResumeRequest, request: Request) -> ResumeResponse:
    """Re-attach tracking to a session that survived an app restart."""
    session_id = await _orchestrator(request).resume(body.user_id)
    return ResumeResponse(session_id=session_id, resumed=session_id is not None)


@router.get("/status", response_model=StatusResponse)
async def sos_status(request: Request) -> StatusResponse:
    """Cheap enough to poll from shared UI chrome."""
    orchestrator = _orchestrator(request)
    session_id = await orchestrator.active_session_id()
    tracker = getattr(request.app.state, "tracker", None)
    return StatusResponse(
        active=session_id is not None,
        session_id=session_id,
        state=orchestrator.state,
        tracker_state=tracker.state if tracker is not None else TrackerState.STOPPED,
        pending_writes=_sessions(request).pending_count,
    )


@router.get("/share", response_model=ShareResponse)
async def share_link(request: Request) -> ShareResponse:
    link, message = await _orchestrator(request).share_link()
    return ShareResponse(tracking_link=link, message=message)


# ---------------------------------------------------------------------------
# Location intake
# ---------------------------------------------------------------------------


@router.post("/location", response_model=LocationResponse)
async def post_location(body: LocationRequest, request: Request) -> LocationResponse:
    """Feed one device fix to the tracker (foreground stream or background task)."""
    delivered = await _provider(request).publish(body.location, body.source)
    return LocationResponse(delivered=delivered, pending_writes=_sessions(request).pending_count)


@router.put("/device", response_model=DeviceCapabilities)
async def update_device(body: DeviceCapabilities, request: Request) -> DeviceCapabilities:
    """Report the device's location permissions and background capability."""
    provider = _provider(request)
    provider.foreground_permission = body.foreground_permission
    provider.background_permission = body.background_permission
    provider.background_capable = body.background_capable
    logger.info("api.sos.device_updated", **body.model_dump())
    return body


@router.post("/flush", response_model=FlushResponse)
async def flush_pending(request: Request) -> FlushResponse:
    sessions = _sessions(request)
    replayed = await sessions.flush_pending()
    return FlushResponse(replayed=replayed, remaining=sessions.pending_count)


# ---------------------------------------------------------------------------
# Settings, history, responders
# ---------------------------------------------------------------------------


@router.get("/settings", response_model=SOSSettings)
async def get_settings(request: Request) -> SOSSettings:
    return await _orchestrator(request).settings_store.get_settings()


@router.put("/settings", response_model=SOSSettings)
async def put_settings(body: SOSSettings, request: Request) -> SOSSettings:
    return await _orchestrator(request).settings_store.save_settings(body)


@router.post("/settings/{flag}/toggle", response_model=SOSSettings)
async def toggle_setting(flag: str, request: Request) -> SOSSettings:
    try:
        return await _orchestrator(request).settings_store.toggle(flag)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown setting: {flag}") from None


@router.get("/history/{user_id}", response_model=list[SessionHistoryItem])
async def session_history(user_id: str, request: Request) -> list[SessionHistoryItem]:
    return await _orchestrator(request).history(user_id)


@router.post("/responders", status_code=204)
async def register_responder(body: ResponderRequest, request: Request) -> None:
    """Record a contact's push token so future alerts reach them by push."""
    channel: DocumentDispatchChannel | None = getattr(request.app.state, "dispatch_channel", None)
    if channel is None:
        raise HTTPException(status_code=503, detail="Push registration not available")
    await channel.register_responder(body.contact_id, body.push_token, user_id=body.user_id)
