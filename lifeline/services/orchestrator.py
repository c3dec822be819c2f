"""SOS session orchestrator.

State machine::

    IDLE -> STARTING -> ACTIVE -> ENDING -> IDLE

``start`` and ``auto_start`` move IDLE to ACTIVE.  Anything that fails
before the session document is verified rolls back to IDLE and raises.
Anything that fails after that point is recorded as a warning on the
returned :class:`StartOutcome` and the session stays ACTIVE.  Only an
explicit ``end`` leaves ACTIVE; sessions never time out.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import date

import structlog

from lifeline.models.enums import FallbackAction, SessionState, SmsStatus, StartTrigger, WarningCode
from lifeline.models.session import (
    EndOutcome,
    SessionHistoryItem,
    SessionWarning,
    StartOutcome,
)
from lifeline.models.user_profile import UserProfile
from lifeline.services.consent import build_shared_profile
from lifeline.services.errors import (
    AlreadyInactiveError,
    LocationPermissionDeniedError,
    NoContactsConfiguredError,
    NotFoundError,
    SessionAlreadyActiveError,
    SOSError,
    StoreUnavailableError,
)
from lifeline.services.location_tracker import LocationTracker
from lifeline.services.notifications import LocalNotifier, NotificationDispatcher, manual_share_message
from lifeline.services.session_store import SessionStore
from lifeline.services.sos_settings import SOSSettingsStore

logger = structlog.get_logger(__name__)

ACTIVATED_TITLE = "SOS Activated"
ACTIVATED_BODY = "Your location is being shared with emergency contacts. Tap to return to the app."


class SessionOrchestrator:
    """Sequences session creation, tracking and alerting.

    Parameters
    ----------
    sessions:
        Session persistence and the active-session pointer.
    tracker:
        Location tracker bound to the same store.
    dispatcher:
        Push and SMS fan-out.
    settings_store:
        The user's sharing preferences.
    local_notifier:
        Optional on-device "SOS activated" notice.
    today:
        Returns the reference date for age calculation; injectable for tests.
    """

    __slots__ = (
        "_dispatcher",
        "_local_notifier",
        "_lock",
        "_session_id",
        "_sessions",
        "_settings_store",
        "_today",
        "_tracker",
        "state",
    )

    def __init__(
        self,
        sessions: SessionStore,
        tracker: LocationTracker,
        dispatcher: NotificationDispatcher,
        settings_store: SOSSettingsStore,
        *,
        local_notifier: LocalNotifier | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._sessions = sessions
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._settings_store = settings_store
        self._local_notifier = local_notifier
        self._today = today
        self._lock = asyncio.Lock()
        self._session_id: str | None = None
        self.state = SessionState.IDLE

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def settings_store(self) -> SOSSettingsStore:
        return self._settings_store

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, profile: UserProfile, *, trigger: StartTrigger = StartTrigger.MANUAL) -> StartOutcome:
        """Create a session for *profile*, start tracking and alert contacts.

        Raises
        ------
        NoContactsConfiguredError
            The profile has no emergency contacts; nothing changed.
        SessionAlreadyActiveError
            A session is already active for this device or user.
        StoreUnavailableError, SessionCreationError
            The session could not be created; state is back to IDLE.
        """
        if not profile.emergency_contacts:
            logger.info("orchestrator.start_refused", user_id=profile.user_id, reason="no_contacts")
            raise NoContactsConfiguredError()

        async with self._lock:
            await self._refuse_if_active(profile.user_id)

            self.state = SessionState.STARTING
            logger.info("orchestrator.starting", user_id=profile.user_id, trigger=trigger.value)
            try:
                settings = await self._settings_store.get_settings()
                shared = build_shared_profile(profile, settings, today=self._today())
                session_id = await self._sessions.create_session(profile.user_id, shared, trigger=trigger)
            except SOSError as exc:
                self.state = SessionState.IDLE
                logger.error("orchestrator.start_failed", user_id=profile.user_id, error=exc.code)
                raise

            # The session exists from here on: degrade, never abort.
            self._session_id = session_id
            self.state = SessionState.ACTIVE
            outcome = StartOutcome(session_id=session_id, state=self.state, trigger=trigger)

            await self._begin_tracking(session_id, outcome.warnings)

            try:
                report = await self._dispatcher.notify_all(session_id, shared, profile.emergency_contacts)
            except Exception as exc:
                logger.error("orchestrator.dispatch_failed", session_id=session_id, exc_info=True)
                outcome.warnings.append(
                    SessionWarning(code=WarningCode.DISPATCH_FAILED, message=f"Push alerts could not be queued: {exc}")
                )
            else:
                outcome.notified_contacts = [*report.queued, *report.duplicates]
                outcome.warnings.extend(
                    SessionWarning(
                        code=WarningCode.DISPATCH_FAILED,
                        message="Push alert could not be queued for this contact.",
                        contact_id=contact_id,
                    )
                    for contact_id in report.failed
                )

            try:
                outcome.tracking_link = await self._sessions.tracking_link(session_id)
            except SOSError as exc:
                logger.error("orchestrator.link_failed", session_id=session_id, error=exc.code)
                outcome.warnings.append(SessionWarning(code=WarningCode.LINK_FAILED, message=exc.user_message))

            if outcome.tracking_link is not None:
                outcome.sms = await self._dispatcher.send_sms(
                    profile.emergency_contacts, outcome.tracking_link, shared, settings
                )
                if outcome.sms.fallback is not FallbackAction.NONE:
                    outcome.share_message = outcome.sms.message
                if outcome.sms.status is SmsStatus.CANCELLED:
                    outcome.warnings.append(
                        SessionWarning(
                            code=WarningCode.SMS_CANCELLED,
                            message="SMS was not sent. Share your location link manually.",
                        )
                    )
                elif outcome.sms.status is SmsStatus.UNAVAILABLE:
                    outcome.warnings.append(
                        SessionWarning(
                            code=WarningCode.SMS_UNAVAILABLE,
                            message="SMS is not available. Share your location link another way.",
                        )
                    )

            await self._notify_locally()

            logger.info(
                "orchestrator.active",
                session_id=session_id,
                trigger=trigger.value,
                notified=len(outcome.notified_contacts),
                warnings=[w.code.value for w in outcome.warnings],
            )
            return outcome

    async def auto_start(self, profile: UserProfile) -> StartOutcome:
        """Start without user interaction (crash or fall detection).

        Same guards and sequence as :meth:`start`; a second trigger while a
        session is active is refused the same way.
        """
        return await self.start(profile, trigger=StartTrigger.AUTO)

    async def _refuse_if_active(self, user_id: str) -> None:
        existing = await self._sessions.get_active_session_id()
        if existing is None:
            existing = next(iter(await self._sessions.find_active_session_ids(user_id)), None)
        if existing is not None:
            logger.info("orchestrator.start_refused", user_id=user_id, reason="already_active", session_id=existing)
            raise SessionAlreadyActiveError(existing)

        if self.state is not SessionState.IDLE:
            # Ended elsewhere; drop local leftovers before starting afresh.
            logger.info("orchestrator.stale_state_reset", state=self.state.value, session_id=self._session_id)
            await self._tracker.end()
            self._session_id = None
            self.state = SessionState.IDLE

    async def _begin_tracking(self, session_id: str, warnings: list[SessionWarning]) -> None:
        try:
            warnings.extend(await self._tracker.begin(session_id))
        except LocationPermissionDeniedError as exc:
            warnings.append(SessionWarning(code=WarningCode.PERMISSION_DENIED, message=exc.user_message))
        except Exception as exc:
            logger.error("orchestrator.tracking_failed", session_id=session_id, exc_info=True)
            warnings.append(
                SessionWarning(code=WarningCode.TRACKING_FAILED, message=f"Location tracking could not start: {exc}")
            )

    async def _notify_locally(self) -> None:
        if self._local_notifier is None:
            return
        try:
            await self._local_notifier.notify(ACTIVATED_TITLE, ACTIVATED_BODY)
        except Exception:
            logger.warning("orchestrator.local_notice_failed", exc_info=True)

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end(self) -> EndOutcome:
        """Stop tracking, then mark the session inactive.

        Ending a session that is already over (or that never existed) is
        reported through ``already_ended`` rather than raised.

        Raises
        ------
        StoreUnavailableError
            The session could not be marked inactive; state returns to
            ACTIVE so the caller can retry.
        """
        async with self._lock:
            session_id = await self._sessions.get_active_session_id() or self._session_id
            if session_id is None:
                if self._tracker.session_id is not None:
                    await self._tracker.end()
                self.state = SessionState.IDLE
                logger.info("orchestrator.end_noop")
                return EndOutcome(already_ended=True)

            self.state = SessionState.ENDING
            tracker_errors = await self._tracker.end(session_id)

            already_ended = False
            try:
                await self._sessions.end_session(session_id)
            except (NotFoundError, AlreadyInactiveError) as exc:
                already_ended = True
                logger.info("orchestrator.already_ended", session_id=session_id, reason=exc.code)
            except StoreUnavailableError:
                self._session_id = session_id
                self.state = SessionState.ACTIVE
                logger.warning("orchestrator.end_deferred", session_id=session_id)
                raise

            self._session_id = None
            self.state = SessionState.IDLE
            logger.info("orchestrator.ended", session_id=session_id, already_ended=already_ended)
            return EndOutcome(session_id=session_id, already_ended=already_ended, tracker_errors=tracker_errors)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_active(self) -> bool:
        """Whether this device has a live session; safe to poll."""
        return await self._sessions.get_active_session_id() is not None

    async def active_session_id(self) -> str | None:
        return await self._sessions.get_active_session_id()

    async def share_link(self) -> tuple[str, str]:
        """Tracking link of the active session and the text to share it with.

        Raises
        ------
        NotFoundError
            No session is active.
        """
        session_id = await self._sessions.get_active_session_id()
        if session_id is None:
            raise NotFoundError("no active session")
        link = await self._sessions.tracking_link(session_id)
        return link, manual_share_message(link)

    async def history(self, user_id: str) -> list[SessionHistoryItem]:
        return await self._sessions.list_history(user_id)

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, user_id: str) -> str | None:
        """Re-attach to a session that survived a restart.

        Restarts tracking for the session the local pointer names, without
        creating or notifying anything.  Returns the session id, or None
        when there is nothing to resume.
        """
        async with self._lock:
            session_id = await self._sessions.get_active_session_id()
            if session_id is None:
                return None

            try:
                session = await self._sessions.get_session(session_id)
            except StoreUnavailableError:
                session = None
            if session is not None and session.user_id != user_id:
                logger.warning("orchestrator.resume_foreign_session", session_id=session_id, user_id=user_id)
                return None
            if self.state is SessionState.ACTIVE and self._session_id == session_id:
                return session_id

            warnings: list[SessionWarning] = []
            await self._begin_tracking(session_id, warnings)
            self._session_id = session_id
            self.state = SessionState.ACTIVE
            logger.info(
                "orchestrator.resumed",
                session_id=session_id,
                user_id=user_id,
                warnings=[w.code.value for w in warnings],
            )
            return session_id
