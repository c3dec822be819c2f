"""Exception hierarchy for the SOS subsystem.

Each error carries a stable ``code`` (used by the API layer and in log
events) and a ``user_message`` suitable for showing to the person in
distress.  End-state errors (``NotFoundError``,
``AlreadyInactiveError``) mean "already where you wanted to be"
and are never escalated by the orchestrator.
"""

from __future__ import annotations


class SOSError(Exception):
    """Base class for all SOS subsystem errors."""

    code: str = "sos_error"
    user_message: str = "Something went wrong with the emergency alert."

    def __init__(self, message: str | None = None, **details: object) -> None:
        super().__init__(message or self.user_message)
        self.details = details


class StoreUnavailableError(SOSError):
    """The document store is offline or timed out."""

    code = "store_unavailable"
    user_message = "Could not reach the server. Check your connection and try again."


class NotFoundError(SOSError):
    code = "not_found"
    user_message = "This emergency session no longer exists."


class AlreadyInactiveError(SOSError):
    code = "already_inactive"
    user_message = "This emergency session has already ended."


class SessionCreationError(SOSError):
    """Creation could not be confirmed, so no session id is handed out."""

    code = "creation_failed"
    user_message = "Could not start SOS. Please try again."


class SessionAlreadyActiveError(SOSError):
    code = "session_already_active"
    user_message = "An SOS alert is already active."

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} is already active", session_id=session_id)
        self.session_id = session_id


class NoContactsConfiguredError(SOSError):
    code = "no_contacts"
    user_message = "You need to add at least one emergency contact before using SOS."


class LocationPermissionDeniedError(SOSError):
    code = "permission_denied"
    user_message = "Location permission is required for SOS tracking."


class LocationUnavailableError(SOSError):
    code = "location_unavailable"
    user_message = "Could not determine your current location."


class InvalidTrackingTokenError(SOSError):
    code = "invalid_token"
    user_message = "This tracking link is invalid or has expired."
