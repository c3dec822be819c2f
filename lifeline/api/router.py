"""Main API router.

Aggregates the v1 route modules under ``/api/v1``.  The public tracking
view is mounted separately at the application root because its URL is
the one embedded in tracking links.
"""

from __future__ import annotations

from fastapi import APIRouter

from lifeline.api.v1 import health, sos

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(sos.router)
