"""Emergency session models.

Documents are persisted with camelCase keys (``userId``, ``startTime``,
``accessToken``...) so that the public tracking web app and the dispatch
worker read the same shape the mobile client writes.  Python code uses
the snake_case attribute names.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from lifeline.models.enums import (
    FallbackAction,
    SessionState,
    SmsStatus,
    StartTrigger,
    WarningCode,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys and no ``None`` values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Consent settings
# ---------------------------------------------------------------------------


class SOSSettings(_Document):
    """Per-user sharing preferences.  Name and location are always shared."""

    share_blood_type: bool = True
    share_allergies: bool = True
    share_medical_conditions: bool = True
    share_medications: bool = True
    share_notes: bool = False
    share_age: bool = True


# ---------------------------------------------------------------------------
# Session document
# ---------------------------------------------------------------------------


class Location(_Document):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    accuracy: float | None = Field(default=None, ge=0.0)
    timestamp: datetime = Field(default_factory=utcnow)


class SharedProfile(_Document):
    """Consent-filtered subset of the profile, frozen at session start."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    blood_type: str | None = None
    age: int | None = None
    medical_conditions: list[str] | None = None
    allergies: list[str] | None = None
    medications: list[str] | None = None
    notes: str | None = None


class EmergencySession(_Document):
    id: str = ""
    user_id: str
    active: bool = True
    trigger: StartTrigger = StartTrigger.MANUAL
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    access_token: str
    token_created_at: datetime = Field(default_factory=utcnow)
    location: Location | None = None
    shared_profile: SharedProfile

    def to_document(self) -> dict[str, Any]:
        # The id is the document key, not a field.
        doc = super().to_document()
        doc.pop("id", None)
        return doc

    @classmethod
    def from_document(cls, session_id: str, doc: dict[str, Any]) -> EmergencySession:
        return cls.model_validate({**doc, "id": session_id})


class SessionHistoryItem(_Document):
    id: str
    active: bool
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    location: Location | None = None


class SharedSessionView(_Document):
    """What a holder of the tracking link is allowed to see.

    Once the session has ended only ``active`` and the times remain.
    """

    active: bool
    start_time: datetime
    end_time: datetime | None = None
    location: Location | None = None
    shared_profile: SharedProfile | None = None


# ---------------------------------------------------------------------------
# Push delivery
# ---------------------------------------------------------------------------


class DeliveryRecord(_Document):
    """One persisted push intent, keyed by ``(session_id, contact_id)``."""

    session_id: str
    contact_id: str
    target_token: str
    title: str
    body: str
    payload: dict[str, Any] = Field(default_factory=dict)
    send_at: datetime = Field(default_factory=utcnow)
    sent: bool = False


def delivery_key(session_id: str, contact_id: str) -> str:
    return f"{session_id}_{contact_id}"


# ---------------------------------------------------------------------------
# Orchestrator outcomes
# ---------------------------------------------------------------------------


class SessionWarning(BaseModel):
    """A soft failure: the session stays active, one feature is degraded."""

    code: WarningCode
    message: str
    contact_id: str | None = None


class SmsOutcome(BaseModel):
    status: SmsStatus
    fallback: FallbackAction = FallbackAction.NONE
    message: str = ""


class StartOutcome(BaseModel):
    session_id: str
    state: SessionState
    trigger: StartTrigger
    tracking_link: str | None = None
    sms: SmsOutcome | None = None
    share_message: str | None = None
    notified_contacts: list[str] = Field(default_factory=list)
    warnings: list[SessionWarning] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def offer_manual_share(self) -> bool:
        return self.sms is not None and self.sms.fallback is not FallbackAction.NONE


class EndOutcome(BaseModel):
    session_id: str | None = None
    already_ended: bool = False
    tracker_errors: list[str] = Field(default_factory=list)
