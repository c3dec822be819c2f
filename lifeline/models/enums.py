from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    __slots__ = ()

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"


class TrackerState(StrEnum):
    __slots__ = ()

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class StartTrigger(StrEnum):
    __slots__ = ()

    MANUAL = "manual"
    AUTO = "auto"


class LocationSource(StrEnum):
    __slots__ = ()

    FOREGROUND = "foreground"
    BACKGROUND = "background"


class SmsStatus(StrEnum):
    __slots__ = ()

    SENT = "sent"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


class UpdateResult(StrEnum):
    """Outcome of a location merge write."""

    __slots__ = ()

    WRITTEN = "written"
    QUEUED = "queued"
    SKIPPED_STALE = "skipped_stale"
    SKIPPED_INACTIVE = "skipped_inactive"


class FallbackAction(StrEnum):
    """What the caller should offer after an SMS soft failure."""

    __slots__ = ()

    NONE = "none"
    MANUAL_SHARE = "manual_share"
    SHARE_SHEET = "share_sheet"


class WarningCode(StrEnum):
    __slots__ = ()

    PERMISSION_DENIED = "permission_denied"
    LOCATION_UNAVAILABLE = "location_unavailable"
    BACKGROUND_DEGRADED = "background_degraded"
    TRACKING_FAILED = "tracking_failed"
    DISPATCH_FAILED = "dispatch_failed"
    SMS_CANCELLED = "sms_cancelled"
    SMS_UNAVAILABLE = "sms_unavailable"
    LINK_FAILED = "link_failed"
