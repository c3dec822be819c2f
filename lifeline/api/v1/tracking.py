"""Public tracking view behind the bearer-token link.

Served at ``/session/{session_id}?token=...`` (outside ``/api/v1``) so
the link sent to contacts resolves directly.  Anyone holding the link
sees the live location and the consent-filtered profile until the
session ends.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from lifeline.models.session import SharedSessionView

router = APIRouter(prefix="/session", tags=["tracking"])


@router.get("/{session_id}", response_model=SharedSessionView, response_model_exclude_none=True)
async def shared_session(
    session_id: str,
    request: Request,
    token: str = Query(..., min_length=1, max_length=128),
) -> SharedSessionView:
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(status_code=503, detail="Tracking not available")
    return await sessions.get_shared_view(session_id, token)
