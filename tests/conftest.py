"""Shared fixtures and fakes for the SOS test suite.

All tests run WITHOUT network access: documents live in
:class:`InMemoryDocumentStore`, the local pointer in an in-memory
backend, and location / SMS / notices come from the fakes below.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Literal

import pytest

from lifeline.models.session import Location
from lifeline.models.user_profile import EmergencyContact, MedicalInfo, UserProfile
from lifeline.services.document_store import InMemoryDocumentStore
from lifeline.services.errors import LocationUnavailableError
from lifeline.services.local_store import InMemoryKeyValueBackend, LocalStore
from lifeline.services.location import FixCallback, WatchOptions
from lifeline.services.location_tracker import LocationTracker
from lifeline.services.notifications import DocumentDispatchChannel, NotificationDispatcher
from lifeline.services.orchestrator import SessionOrchestrator
from lifeline.services.session_store import SessionStore
from lifeline.services.sos_settings import SOSSettingsStore
from lifeline.services.token_minter import TokenMinter

TODAY = date(2026, 10, 19)
WEB_APP_URL = "https://sos.example.test"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 8, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeLocationProvider:
    """Location provider whose callbacks the test fires by hand."""

    def __init__(
        self,
        *,
        foreground_permission: bool = True,
        background_permission: bool = True,
        background_capable: bool = True,
        current: Location | None = None,
    ) -> None:
        self.foreground_permission = foreground_permission
        self.background_permission = background_permission
        self.background_capable = background_capable
        self.current = current
        self.subscriptions: dict[str, FixCallback] = {}
        self.background_tasks: dict[str, FixCallback] = {}
        self.fail_unsubscribe = False
        self.fail_unregister = False
        self._next_handle = 0

    async def request_foreground_permission(self) -> bool:
        return self.foreground_permission

    async def request_background_permission(self) -> bool:
        return self.background_permission

    async def get_current(self, high_accuracy: bool = True) -> Location:
        if self.current is None:
            raise LocationUnavailableError("no fix")
        return self.current

    async def subscribe(self, options: WatchOptions, callback: FixCallback) -> str:
        self._next_handle += 1
        handle = f"sub-{self._next_handle}"
        self.subscriptions[handle] = callback
        return handle

    async def unsubscribe(self, handle: str) -> None:
        if self.fail_unsubscribe:
            raise RuntimeError("unsubscribe failed")
        self.subscriptions.pop(handle, None)

    async def is_background_capable(self) -> bool:
        return self.background_capable

    async def register_background_task(self, task_id: str, options: WatchOptions, callback: FixCallback) -> bool:
        self.background_tasks[task_id] = callback
        return True

    async def unregister_background_task(self, task_id: str) -> None:
        if self.fail_unregister:
            raise RuntimeError("unregister failed")
        self.background_tasks.pop(task_id, None)

    async def fire_foreground(self, fix: Location) -> None:
        for callback in list(self.subscriptions.values()):
            await callback(fix)

    async def fire_background(self, fix: Location, callback: FixCallback | None = None) -> None:
        targets = [callback] if callback is not None else list(self.background_tasks.values())
        for target in targets:
            await target(fix)


class ScriptedSmsComposer:
    """SMS composer returning a fixed outcome and recording what it was given."""

    def __init__(self, result: Literal["sent", "cancelled"] = "sent", *, available: bool = True) -> None:
        self.result = result
        self.available = available
        self.calls: list[tuple[list[str], str]] = []

    async def is_available(self) -> bool:
        return self.available

    async def compose(self, recipients: Sequence[str], body: str) -> Literal["sent", "cancelled"]:
        self.calls.append((list(recipients), body))
        return self.result


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[tuple[str, str]] = []

    async def notify(self, title: str, body: str) -> None:
        self.notices.append((title, body))


def _make_fix(lat: float = 37.7749, lng: float = -122.4194, *, at: datetime | None = None) -> Location:
    return Location(
        latitude=lat,
        longitude=lng,
        accuracy=5.0,
        timestamp=at or datetime(2026, 10, 19, 8, 30, tzinfo=UTC),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def web_app_url() -> str:
    return WEB_APP_URL


@pytest.fixture
def make_fix() -> Callable[..., Location]:
    """Builds a fix; defaults to downtown San Francisco at the fixed test time."""
    return _make_fix


@pytest.fixture
def provider_factory() -> type[FakeLocationProvider]:
    return FakeLocationProvider


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def local_store() -> LocalStore:
    return LocalStore(InMemoryKeyValueBackend())


@pytest.fixture
def minter(clock: FakeClock) -> TokenMinter:
    return TokenMinter(clock=clock)


@pytest.fixture
def sessions(
    documents: InMemoryDocumentStore,
    local_store: LocalStore,
    minter: TokenMinter,
    clock: FakeClock,
) -> SessionStore:
    return SessionStore(
        documents,
        local_store,
        minter,
        web_app_url=WEB_APP_URL,
        verify_wait_seconds=0,
        clock=clock,
    )


@pytest.fixture
def provider() -> FakeLocationProvider:
    return FakeLocationProvider(current=_make_fix())


@pytest.fixture
def tracker(provider: FakeLocationProvider, sessions: SessionStore) -> LocationTracker:
    return LocationTracker(provider, sessions)


@pytest.fixture
def sms() -> ScriptedSmsComposer:
    return ScriptedSmsComposer()


@pytest.fixture
def channel(documents: InMemoryDocumentStore) -> DocumentDispatchChannel:
    return DocumentDispatchChannel(documents)


@pytest.fixture
def dispatcher(channel: DocumentDispatchChannel, sms: ScriptedSmsComposer) -> NotificationDispatcher:
    return NotificationDispatcher(channel, sms)


@pytest.fixture
def settings_store(local_store: LocalStore) -> SOSSettingsStore:
    return SOSSettingsStore(local_store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(
    sessions: SessionStore,
    tracker: LocationTracker,
    dispatcher: NotificationDispatcher,
    settings_store: SOSSettingsStore,
    notifier: RecordingNotifier,
) -> SessionOrchestrator:
    return SessionOrchestrator(
        sessions,
        tracker,
        dispatcher,
        settings_store,
        local_notifier=notifier,
        today=lambda: TODAY,
    )


@pytest.fixture
def profile() -> UserProfile:
    """A profile with every optional field populated and two contacts."""
    return UserProfile(
        user_id="user-1",
        first_name="Maya",
        last_name="Okafor",
        birthday=date(1990, 5, 1),
        medical_info=MedicalInfo(
            blood_type="O+",
            allergies=["penicillin", "peanuts"],
            conditions=["asthma"],
            medications=["albuterol"],
            notes="Inhaler in left jacket pocket",
        ),
        emergency_contacts=[
            EmergencyContact(name="Sam Okafor", phone_number="+14155550123", relationship="sibling"),
            EmergencyContact(name="Lee Park", phone_number="+14155550199", contact_id="lee-park"),
        ],
    )
