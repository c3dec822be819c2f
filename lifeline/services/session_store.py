"""Session persistence and the device-local "active session" pointer.

:class:`SessionStore` is the only component that writes the local
pointer, so every part of the application agrees on which session this
device cares about.  Remote documents live in the ``sos_sessions``
collection of a :class:`DocumentStore`.

Offline behaviour
-----------------
* Creating a session needs a real, verified id, so an unavailable store
  is a hard failure.
* Location merges that hit an unavailable store are buffered in order
  and replayed by :meth:`SessionStore.flush_pending` (also attempted
  automatically before the next location write).
* When the pointer cannot be confirmed because the store is offline,
  the pointer is trusted: it is only ever written here, after a verified
  create.
"""

from __future__ import annotations

import hmac
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Final

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lifeline.models.enums import StartTrigger, UpdateResult
from lifeline.models.session import (
    EmergencySession,
    Location,
    SessionHistoryItem,
    SharedProfile,
    SharedSessionView,
    utcnow,
)
from lifeline.services.document_store import DocumentStore
from lifeline.services.errors import (
    AlreadyInactiveError,
    InvalidTrackingTokenError,
    NotFoundError,
    SessionCreationError,
    StoreUnavailableError,
)
from lifeline.services.local_store import LocalStore
from lifeline.services.token_minter import TokenMinter

logger = structlog.get_logger(__name__)

SESSIONS_COLLECTION: Final[str] = "sos_sessions"
ACTIVE_SESSION_KEY: Final[str] = "sos_active_session"
_MAX_PENDING_WRITES: Final[int] = 500


class _NotYetVisible(Exception):
    """Read-after-write found no document (yet)."""


class SessionStore:
    """CRUD and consistency wrapper for emergency sessions.

    Parameters
    ----------
    documents:
        Remote document store.
    local:
        Durable local key-value store holding the active-session pointer.
    minter:
        Token minter used at creation and for tracking links.
    web_app_url:
        Base URL of the public tracking web app.
    verify_attempts:
        Reads attempted when confirming a freshly created document.
    reject_stale_location_fixes:
        When True, a location write older than the stored fix is skipped.
        Off by default: writes land in arrival order.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    __slots__ = (
        "_clock",
        "_documents",
        "_local",
        "_minter",
        "_pending",
        "_reject_stale",
        "_verify_attempts",
        "_verify_wait",
        "_web_app_url",
    )

    def __init__(
        self,
        documents: DocumentStore,
        local: LocalStore,
        minter: TokenMinter,
        *,
        web_app_url: str = "https://sos.lifeline.app",
        verify_attempts: int = 3,
        verify_wait_seconds: float = 0.1,
        reject_stale_location_fixes: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._documents = documents
        self._local = local
        self._minter = minter
        self._web_app_url = web_app_url.rstrip("/")
        self._verify_attempts = verify_attempts
        self._verify_wait = verify_wait_seconds
        self._reject_stale = reject_stale_location_fixes
        self._clock = clock
        self._pending: deque[tuple[str, Location]] = deque(maxlen=_MAX_PENDING_WRITES)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        shared_profile: SharedProfile,
        *,
        trigger: StartTrigger = StartTrigger.MANUAL,
    ) -> str:
        """Write a new active session, verify it, and point the device at it.

        Raises
        ------
        StoreUnavailableError
            The store could not be reached; no session exists.
        SessionCreationError
            The store acknowledged the write but the document never
            became readable.
        """
        now = self._clock()
        session = EmergencySession(
            user_id=user_id,
            active=True,
            trigger=trigger,
            start_time=now,
            access_token=self._minter.mint(user_id),
            token_created_at=now,
            shared_profile=shared_profile,
        )
        session_id = await self._documents.create(SESSIONS_COLLECTION, session.to_document())

        try:
            await self._verify_exists(session_id)
        except _NotYetVisible:
            logger.error("session_store.create_unverified", session_id=session_id, user_id=user_id)
            raise SessionCreationError(
                "session document was not readable after creation",
                session_id=session_id,
            ) from None

        await self._local.set(ACTIVE_SESSION_KEY, session_id)
        logger.info("session_store.created", session_id=session_id, user_id=user_id, trigger=trigger.value)
        return session_id

    async def _verify_exists(self, session_id: str) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_NotYetVisible),
            stop=stop_after_attempt(self._verify_attempts),
            wait=wait_exponential(multiplier=self._verify_wait, max=2.0),
            reraise=True,
        ):
            with attempt:
                if await self._documents.get(SESSIONS_COLLECTION, session_id) is None:
                    raise _NotYetVisible(session_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_active_session_id(self) -> str | None:
        """The session this device believes is active, confirmed remotely.

        A pointer to a missing or inactive document is cleared (the
        session may have been ended by another device or process).
        """
        session_id: str | None = await self._local.get(ACTIVE_SESSION_KEY)
        if not session_id:
            return None

        try:
            doc = await self._documents.get(SESSIONS_COLLECTION, session_id)
        except StoreUnavailableError:
            logger.warning("session_store.pointer_unconfirmed", session_id=session_id)
            return session_id

        if doc is None or not doc.get("active"):
            logger.info(
                "session_store.pointer_cleared",
                session_id=session_id,
                reason="missing" if doc is None else "inactive",
            )
            await self._local.delete(ACTIVE_SESSION_KEY)
            return None
        return session_id

    async def get_session(self, session_id: str) -> EmergencySession:
        doc = await self._documents.get(SESSIONS_COLLECTION, session_id)
        if doc is None:
            raise NotFoundError(f"session {session_id} not found", session_id=session_id)
        return EmergencySession.from_document(session_id, doc)

    async def find_active_session_ids(self, user_id: str) -> list[str]:
        """Ids of every session of *user_id* still marked active remotely."""
        docs = await self._documents.query(SESSIONS_COLLECTION, "userId", user_id)
        return [doc_id for doc_id, doc in docs if doc.get("active")]

    async def list_history(self, user_id: str) -> list[SessionHistoryItem]:
        """All sessions of *user_id*, newest first."""
        docs = await self._documents.query(SESSIONS_COLLECTION, "userId", user_id)
        items: list[SessionHistoryItem] = []
        for doc_id, doc in docs:
            session = EmergencySession.from_document(doc_id, doc)
            duration = None
            if session.end_time is not None:
                duration = round((session.end_time - session.start_time).total_seconds() / 60)
            items.append(
                SessionHistoryItem(
                    id=doc_id,
                    active=session.active,
                    start_time=session.start_time,
                    end_time=session.end_time,
                    duration_minutes=duration,
                    location=session.location,
                )
            )
        items.sort(key=lambda item: item.start_time, reverse=True)
        return items

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    async def update_location(self, session_id: str, location: Location) -> UpdateResult:
        """Merge *location* into the session, or buffer it while offline.

        Only the ``location`` field is written, so concurrent producers
        never clobber other fields.  Between producers the last write to
        arrive wins unless ``reject_stale_location_fixes`` is enabled.
        The merge is conditional on ``active``: a session that has ended
        is never written to again.

        Raises
        ------
        NotFoundError
            The session document no longer exists.
        """
        if self._pending:
            await self.flush_pending()
            if self._pending:
                self._pending.append((session_id, location))
                return UpdateResult.QUEUED

        try:
            if self._reject_stale and await self._is_stale(session_id, location):
                logger.debug("session_store.stale_fix_skipped", session_id=session_id)
                return UpdateResult.SKIPPED_STALE
            written = await self._merge_location(session_id, location)
        except StoreUnavailableError:
            self._pending.append((session_id, location))
            logger.info("session_store.location_queued", session_id=session_id, pending=len(self._pending))
            return UpdateResult.QUEUED
        if not written:
            logger.info("session_store.inactive_fix_skipped", session_id=session_id)
            return UpdateResult.SKIPPED_INACTIVE
        return UpdateResult.WRITTEN

    async def _merge_location(self, session_id: str, location: Location) -> bool:
        return await self._documents.update_if(
            SESSIONS_COLLECTION,
            session_id,
            {"location": location.to_document()},
            field="active",
            expected=True,
        )

    async def _is_stale(self, session_id: str, location: Location) -> bool:
        doc = await self._documents.get(SESSIONS_COLLECTION, session_id)
        if doc is None:
            raise NotFoundError(f"session {session_id} not found", session_id=session_id)
        current = doc.get("location")
        if not current:
            return False
        return Location.model_validate(current).timestamp > location.timestamp

    async def flush_pending(self) -> int:
        """Replay buffered location writes in order.

        Stops at the first write that still finds the store unavailable.
        Writes for sessions that have ended or vanished are dropped.

        Returns
        -------
        int
            Number of writes that reached the store.
        """
        replayed = 0
        while self._pending:
            session_id, location = self._pending[0]
            try:
                if await self._merge_location(session_id, location):
                    replayed += 1
            except StoreUnavailableError:
                break
            except NotFoundError:
                pass
            self._pending.popleft()

        if replayed:
            logger.info("session_store.pending_flushed", replayed=replayed, remaining=len(self._pending))
        return replayed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end_session(self, session_id: str) -> None:
        """Mark the session inactive with an end time, then clear the pointer.

        ``active`` and ``endTime`` change in one conditional write, so
        ``endTime`` is set exactly once even if two callers race.

        Raises
        ------
        NotFoundError
            The document does not exist (pointer is still cleared).
        AlreadyInactiveError
            The session had already ended (pointer is still cleared).
        StoreUnavailableError
            Nothing changed; the caller should retry later.
        """
        try:
            ended = await self._documents.update_if(
                SESSIONS_COLLECTION,
                session_id,
                {"active": False, "endTime": self._clock().isoformat()},
                field="active",
                expected=True,
            )
        except NotFoundError:
            await self._clear_pointer(session_id)
            raise

        await self._clear_pointer(session_id)
        self._drop_pending(session_id)
        if not ended:
            raise AlreadyInactiveError(f"session {session_id} already ended", session_id=session_id)
        logger.info("session_store.ended", session_id=session_id)

    async def _clear_pointer(self, session_id: str) -> None:
        # Leave a pointer to some other session alone.
        current = await self._local.get(ACTIVE_SESSION_KEY)
        if current is None or current == session_id:
            await self._local.delete(ACTIVE_SESSION_KEY)

    def _drop_pending(self, session_id: str) -> None:
        kept = [entry for entry in self._pending if entry[0] != session_id]
        self._pending.clear()
        self._pending.extend(kept)

    # ------------------------------------------------------------------
    # Tracking links
    # ------------------------------------------------------------------

    async def tracking_link(self, session_id: str) -> str:
        """Public link for *session_id*, rotating a stale token first."""
        session = await self.get_session(session_id)
        grant = self._minter.ensure_fresh(session)
        if grant.rotated:
            await self._documents.update(
                SESSIONS_COLLECTION,
                session_id,
                {"accessToken": grant.token, "tokenCreatedAt": grant.created_at.isoformat()},
            )
        return f"{self._web_app_url}/session/{session_id}?token={grant.token}"

    async def get_shared_view(self, session_id: str, token: str) -> SharedSessionView:
        """What the holder of a tracking link may see.

        Unknown sessions and wrong tokens raise the same error so the
        endpoint cannot be used to probe for session ids.  The link stops
        granting access when the session ends: an ended session reports
        only that it is over, never its location or shared profile.
        """
        doc = await self._documents.get(SESSIONS_COLLECTION, session_id)
        if doc is None:
            raise InvalidTrackingTokenError()
        session = EmergencySession.from_document(session_id, doc)
        if not hmac.compare_digest(session.access_token.encode(), token.encode()):
            logger.warning("session_store.invalid_token", session_id=session_id)
            raise InvalidTrackingTokenError()
        if not session.active:
            return SharedSessionView(active=False, start_time=session.start_time, end_time=session.end_time)
        return SharedSessionView(
            active=session.active,
            start_time=session.start_time,
            end_time=session.end_time,
            location=session.location,
            shared_profile=session.shared_profile,
        )
