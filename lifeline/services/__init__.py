"""Lifeline service layer -- stores, token minting, consent, tracking, alerting.

Everything here is importable without a Redis server; the Redis-backed
stores only import the client library when instantiated.
"""

from __future__ import annotations

from lifeline.services.consent import build_shared_profile
from lifeline.services.document_store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from lifeline.services.errors import SOSError
from lifeline.services.local_store import LocalStore
from lifeline.services.location import LocationProvider, PushedLocationProvider, WatchOptions
from lifeline.services.location_tracker import LocationTracker
from lifeline.services.notifications import (
    DocumentDispatchChannel,
    NotificationDispatcher,
    UnavailableSmsComposer,
    compose_sms,
)
from lifeline.services.orchestrator import SessionOrchestrator
from lifeline.services.session_store import SessionStore
from lifeline.services.sos_settings import SOSSettingsStore
from lifeline.services.token_minter import TokenMinter

__all__ = [
    "DocumentDispatchChannel",
    "DocumentStore",
    "InMemoryDocumentStore",
    "LocalStore",
    "LocationProvider",
    "LocationTracker",
    "NotificationDispatcher",
    "PushedLocationProvider",
    "RedisDocumentStore",
    "SOSError",
    "SOSSettingsStore",
    "SessionOrchestrator",
    "SessionStore",
    "TokenMinter",
    "UnavailableSmsComposer",
    "WatchOptions",
    "build_shared_profile",
    "compose_sms",
]
