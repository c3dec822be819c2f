"""Coordinates the two location producers feeding one emergency session.

State machine: ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``.

Both producers call :meth:`SessionStore.update_location` on their own.
No ordering is guaranteed between them and none is imposed here: the
store merges only the ``location`` field, and the last write to arrive
wins.  A stale background fix can therefore briefly replace a fresher
foreground fix; enable ``reject_stale_location_fixes`` on the store to
compare timestamps instead.
"""

from __future__ import annotations

from typing import Final

import structlog

from lifeline.models.enums import LocationSource, TrackerState, WarningCode
from lifeline.models.session import Location, SessionWarning
from lifeline.services.errors import (
    LocationPermissionDeniedError,
    LocationUnavailableError,
    NotFoundError,
    SOSError,
)
from lifeline.services.location import LocationProvider, WatchOptions
from lifeline.services.session_store import SessionStore

logger = structlog.get_logger(__name__)

BACKGROUND_TASK_ID: Final[str] = "sos-background-location"


class LocationTracker:
    """Runs the foreground subscription and the background task for a session.

    Parameters
    ----------
    provider:
        Source of position fixes.
    sessions:
        Store the fixes are written through.
    foreground_options, background_options:
        Distance / interval filters for each producer.
    """

    __slots__ = (
        "_background_options",
        "_background_session_id",
        "_foreground_options",
        "_provider",
        "_session_id",
        "_sessions",
        "_subscription",
        "state",
        "update_count",
    )

    def __init__(
        self,
        provider: LocationProvider,
        sessions: SessionStore,
        *,
        foreground_options: WatchOptions | None = None,
        background_options: WatchOptions | None = None,
    ) -> None:
        self._provider = provider
        self._sessions = sessions
        self._foreground_options = foreground_options or WatchOptions()
        self._background_options = background_options or WatchOptions()
        self._session_id: str | None = None
        self._background_session_id: str | None = None
        self._subscription: str | None = None
        self.state = TrackerState.STOPPED
        self.update_count = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def background_active(self) -> bool:
        return self._background_session_id is not None

    # ------------------------------------------------------------------
    # Begin
    # ------------------------------------------------------------------

    async def begin(self, session_id: str) -> list[SessionWarning]:
        """Start tracking *session_id*.

        Returns the soft failures met on the way (no initial fix, no
        background tracking).

        Raises
        ------
        LocationPermissionDeniedError
            Foreground permission was refused; the tracker stays stopped.
        """
        if self.state is TrackerState.RUNNING and self._session_id == session_id:
            return []
        if self.state is not TrackerState.STOPPED:
            await self.end()

        warnings: list[SessionWarning] = []
        self.state = TrackerState.STARTING
        self._session_id = session_id

        if not await self._provider.request_foreground_permission():
            self.state = TrackerState.STOPPED
            self._session_id = None
            logger.warning("tracker.permission_denied", session_id=session_id)
            raise LocationPermissionDeniedError()

        # One immediate high-accuracy fix so the first alert carries a location.
        try:
            fix = await self._provider.get_current(high_accuracy=True)
        except LocationUnavailableError as exc:
            logger.warning("tracker.initial_fix_unavailable", session_id=session_id)
            warnings.append(SessionWarning(code=WarningCode.LOCATION_UNAVAILABLE, message=str(exc)))
        else:
            await self._write(session_id, fix, LocationSource.FOREGROUND)

        self._subscription = await self._provider.subscribe(self._foreground_options, self._on_foreground_fix)

        degraded = await self._start_background(session_id)
        if degraded is not None:
            warnings.append(degraded)

        self.state = TrackerState.RUNNING
        logger.info(
            "tracker.running",
            session_id=session_id,
            background=self.background_active,
        )
        return warnings

    async def _start_background(self, session_id: str) -> SessionWarning | None:
        """Best-effort background registration; returns a warning when degraded."""
        reason: str | None = None
        try:
            if not await self._provider.is_background_capable():
                reason = "background location is not available on this device"
            elif not await self._provider.request_background_permission():
                reason = "background location permission was not granted"
            elif not await self._provider.register_background_task(
                BACKGROUND_TASK_ID, self._background_options, self._on_background_fix
            ):
                reason = "background task could not be registered"
        except Exception as exc:
            reason = f"background registration failed: {exc}"

        if reason is not None:
            logger.warning("tracker.background_degraded", session_id=session_id, reason=reason)
            return SessionWarning(
                code=WarningCode.BACKGROUND_DEGRADED,
                message=f"Location will only update while the app is open ({reason}).",
            )

        self._background_session_id = session_id
        return None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _on_foreground_fix(self, fix: Location) -> None:
        session_id = self._session_id
        if session_id is None or self.state not in (TrackerState.STARTING, TrackerState.RUNNING):
            return
        active = await self._sessions.get_active_session_id()
        if active != session_id:
            logger.info("tracker.foreground_session_gone", tracked=session_id, active=active)
            await self.end(session_id)
            return
        await self._write(session_id, fix, LocationSource.FOREGROUND)

    async def _on_background_fix(self, fix: Location) -> None:
        tracked = self._background_session_id
        active = await self._sessions.get_active_session_id()
        if tracked is None or active != tracked:
            # Session ended elsewhere (or here, while this fix was in flight).
            logger.info("tracker.background_self_unregister", tracked=tracked, active=active)
            await self._unregister_background()
            return
        await self._write(tracked, fix, LocationSource.BACKGROUND)

    async def _write(self, session_id: str, fix: Location, source: LocationSource) -> None:
        try:
            result = await self._sessions.update_location(session_id, fix)
        except NotFoundError:
            logger.warning("tracker.session_vanished", session_id=session_id, source=source.value)
            return
        except SOSError as exc:
            logger.warning("tracker.write_failed", session_id=session_id, source=source.value, error=exc.code)
            return
        self.update_count += 1
        logger.debug("tracker.fix_written", session_id=session_id, source=source.value, result=result.value)

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end(self, session_id: str | None = None) -> list[str]:
        """Stop both producers.

        Both unregistrations are always attempted; failures are logged
        and returned, never raised.
        """
        if session_id is not None and self._session_id not in (None, session_id):
            logger.warning("tracker.end_session_mismatch", requested=session_id, tracked=self._session_id)

        self.state = TrackerState.STOPPING
        errors: list[str] = []

        if self._subscription is not None:
            try:
                await self._provider.unsubscribe(self._subscription)
            except Exception as exc:
                logger.error("tracker.unsubscribe_failed", error=str(exc), exc_info=True)
                errors.append(f"foreground: {exc}")
            self._subscription = None

        try:
            await self._unregister_background()
        except Exception as exc:
            logger.error("tracker.unregister_failed", error=str(exc), exc_info=True)
            errors.append(f"background: {exc}")

        logger.info("tracker.stopped", session_id=self._session_id, updates=self.update_count)
        self._session_id = None
        self.state = TrackerState.STOPPED
        return errors

    async def _unregister_background(self) -> None:
        self._background_session_id = None
        await self._provider.unregister_background_task(BACKGROUND_TASK_ID)
