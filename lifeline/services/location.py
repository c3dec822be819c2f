"""Location provider contract and the device-fed provider.

The provider exposes two independent producers of position fixes:

* a foreground stream, subscribed with a distance / interval filter and
  delivered on the same event loop as the orchestrator;
* an OS-scheduled background task, registered under a task id, whose
  callback runs independently of the foreground subscription.

:class:`PushedLocationProvider` is the implementation used by the HTTP
service: the device posts its fixes (tagged foreground or background)
and the provider fans them out to whoever is listening.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final, Protocol, runtime_checkable
from uuid import uuid4

import structlog

from lifeline.models.enums import LocationSource
from lifeline.models.session import Location, utcnow
from lifeline.services.errors import LocationUnavailableError

logger = structlog.get_logger(__name__)

FixCallback = Callable[[Location], Awaitable[None]]

_EARTH_RADIUS_M: Final[float] = 6_371_000.0


@dataclass(frozen=True, slots=True)
class WatchOptions:
    """Deliver a fix after ``distance_meters`` of movement or ``interval_ms``, whichever first."""

    distance_meters: float = 7.0
    interval_ms: int = 3_000
    high_accuracy: bool = True


def haversine_meters(a: Location, b: Location) -> float:
    """Great-circle distance between two fixes, in metres."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(h))


@runtime_checkable
class LocationProvider(Protocol):
    """Async location provider interface."""

    async def request_foreground_permission(self) -> bool: ...

    async def request_background_permission(self) -> bool: ...

    async def get_current(self, high_accuracy: bool = True) -> Location: ...

    async def subscribe(self, options: WatchOptions, callback: FixCallback) -> str: ...

    async def unsubscribe(self, handle: str) -> None: ...

    async def is_background_capable(self) -> bool: ...

    async def register_background_task(
        self, task_id: str, options: WatchOptions, callback: FixCallback
    ) -> bool: ...

    async def unregister_background_task(self, task_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Device-fed provider
# ---------------------------------------------------------------------------


class _Listener:
    __slots__ = ("callback", "last_emitted", "options")

    def __init__(self, options: WatchOptions, callback: FixCallback) -> None:
        self.options = options
        self.callback = callback
        self.last_emitted: Location | None = None

    def wants(self, fix: Location) -> bool:
        last = self.last_emitted
        if last is None:
            return True
        elapsed_ms = (fix.timestamp - last.timestamp).total_seconds() * 1000
        if elapsed_ms >= self.options.interval_ms:
            return True
        return haversine_meters(last, fix) >= self.options.distance_meters


class PushedLocationProvider:
    """Location provider fed by fixes the device posts to the service.

    Permission and capability flags mirror what the device reported; they
    default to granted so a device that never reports them is tracked.
    The latest fix only counts as the current position for ``max_fix_age``
    after it was received.
    """

    __slots__ = (
        "_background_tasks",
        "_clock",
        "_latest",
        "_latest_at",
        "_max_fix_age",
        "_subscriptions",
        "background_capable",
        "background_permission",
        "foreground_permission",
    )

    def __init__(
        self,
        *,
        foreground_permission: bool = True,
        background_permission: bool = True,
        background_capable: bool = True,
        max_fix_age: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.foreground_permission = foreground_permission
        self.background_permission = background_permission
        self.background_capable = background_capable
        self._latest: Location | None = None
        self._latest_at: datetime | None = None
        self._max_fix_age = max_fix_age
        self._clock = clock
        self._subscriptions: dict[str, _Listener] = {}
        self._background_tasks: dict[str, _Listener] = {}

    # -- LocationProvider interface --------------------------------------------

    async def request_foreground_permission(self) -> bool:
        return self.foreground_permission

    async def request_background_permission(self) -> bool:
        return self.background_permission

    async def get_current(self, high_accuracy: bool = True) -> Location:
        if self._latest is None or self._latest_at is None:
            raise LocationUnavailableError("no fix has been reported yet")
        age = self._clock() - self._latest_at
        if age > self._max_fix_age:
            raise LocationUnavailableError(f"last fix is {int(age.total_seconds())}s old")
        return self._latest

    async def subscribe(self, options: WatchOptions, callback: FixCallback) -> str:
        handle = uuid4().hex
        self._subscriptions[handle] = _Listener(options, callback)
        return handle

    async def unsubscribe(self, handle: str) -> None:
        self._subscriptions.pop(handle, None)

    async def is_background_capable(self) -> bool:
        return self.background_capable

    async def register_background_task(
        self, task_id: str, options: WatchOptions, callback: FixCallback
    ) -> bool:
        if not self.background_capable:
            return False
        self._background_tasks[task_id] = _Listener(options, callback)
        return True

    async def unregister_background_task(self, task_id: str) -> None:
        self._background_tasks.pop(task_id, None)

    # -- Device input ------------------------------------------------------------

    async def publish(self, fix: Location, source: LocationSource = LocationSource.FOREGROUND) -> int:
        """Deliver *fix* to the listeners of *source*; returns how many received it."""
        self._latest = fix
        self._latest_at = self._clock()
        listeners = self._subscriptions if source is LocationSource.FOREGROUND else self._background_tasks

        delivered = 0
        # Snapshot: a callback may unregister itself.
        for listener in list(listeners.values()):
            if not listener.wants(fix):
                continue
            listener.last_emitted = fix
            await listener.callback(fix)
            delivered += 1

        logger.debug("location.published", source=source.value, delivered=delivered)
        return delivered

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def background_task_ids(self) -> list[str]:
        return list(self._background_tasks)
