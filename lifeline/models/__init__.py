from lifeline.models.enums import (
    FallbackAction,
    LocationSource,
    SessionState,
    SmsStatus,
    StartTrigger,
    TrackerState,
    UpdateResult,
    WarningCode,
)
from lifeline.models.session import (
    DeliveryRecord,
    EmergencySession,
    EndOutcome,
    Location,
    SessionHistoryItem,
    SessionWarning,
    SharedProfile,
    SharedSessionView,
    SmsOutcome,
    SOSSettings,
    StartOutcome,
)
from lifeline.models.user_profile import EmergencyContact, MedicalInfo, UserProfile

__all__ = [
    "DeliveryRecord",
    "EmergencyContact",
    "EmergencySession",
    "EndOutcome",
    "FallbackAction",
    "Location",
    "LocationSource",
    "MedicalInfo",
    "SOSSettings",
    "SessionHistoryItem",
    "SessionState",
    "SessionWarning",
    "SharedProfile",
    "SharedSessionView",
    "SmsOutcome",
    "SmsStatus",
    "StartOutcome",
    "StartTrigger",
    "TrackerState",
    "UpdateResult",
    "UserProfile",
    "WarningCode",
]
