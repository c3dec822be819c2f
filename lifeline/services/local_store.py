"""Device-local key-value storage that survives process restarts.

Backs the "which session is mine" pointer and the user's SOS settings.
A durable primary backend (JSON file on disk, or Redis) is wrapped by
:class:`LocalStore`, which transparently fails over to a process-local
in-memory backend so that a broken disk or Redis never blocks an
emergency flow.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import orjson
import structlog

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyValueBackend(Protocol):
    """Async key-value backend interface."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryKeyValueBackend:
    """Plain dict backend.  Not durable; used as fallback and in tests."""

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    @property
    def size(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------


class FileKeyValueBackend:
    """Single JSON file on disk, rewritten atomically on every mutation.

    The whole file is small (a session id and a settings record), so the
    simple load-modify-replace cycle under an :class:`asyncio.Lock` is
    enough for the single owner process per device.
    """

    __slots__ = ("_data", "_lock", "_path")

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is None:
            try:
                self._data = orjson.loads(self._path.read_bytes())
            except FileNotFoundError:
                self._data = {}
            except orjson.JSONDecodeError:
                logger.warning("local_store.file_corrupt", path=str(self._path))
                self._data = {}
        return self._data

    def _flush(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(data))
        os.replace(tmp, self._path)

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            raw = self._load().get(key)
            return raw.encode() if raw is not None else None

    async def set(self, key: str, value: bytes) -> None:
        async with self._lock:
            data = dict(self._load())
            data[key] = value.decode()
            self._flush(data)
            self._data = data

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key not in data:
                return
            data = {k: v for k, v in data.items() if k != key}
            self._flush(data)
            self._data = data


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisKeyValueBackend:
    """Redis-backed store using ``redis.asyncio`` with connection pooling."""

    __slots__ = ("_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        max_connections: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes) -> None:
        await self._redis.set(key, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()


# ---------------------------------------------------------------------------
# LocalStore  --  public API
# ---------------------------------------------------------------------------


class LocalStore:
    """Namespaced key-value facade with automatic in-memory failover.

    Values are serialised with *orjson*, so anything JSON-compatible
    (strings, dicts of flags) can be stored.

    Parameters
    ----------
    backend:
        Durable primary backend.  Pass *None* to run purely in memory.
    namespace:
        Optional prefix prepended to every key (e.g. ``"lifeline:"``).
    """

    __slots__ = ("_backend", "_backend_available", "_fallback", "_namespace")

    def __init__(
        self,
        backend: KeyValueBackend | None = None,
        *,
        namespace: str = "",
    ) -> None:
        self._namespace = namespace
        self._fallback = InMemoryKeyValueBackend()
        self._backend = backend
        self._backend_available = backend is not None

    def _make_key(self, key: str) -> str:
        if self._namespace:
            return f"{self._namespace}{key}"
        return key

    async def _safe_op(self, method: str, key: str, *args: Any) -> Any:
        """Try the primary backend; on failure, flip to in-memory and retry."""
        if self._backend_available and self._backend is not None:
            try:
                return await getattr(self._backend, method)(key, *args)
            except Exception:
                logger.warning("local_store.backend_op_failed", method=method, key=key, exc_info=True)
                self._backend_available = False

        return await getattr(self._fallback, method)(key, *args)

    async def get(self, key: str, default: Any = None) -> Any:
        raw: bytes | None = await self._safe_op("get", self._make_key(key))
        if raw is None:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return default

    async def set(self, key: str, value: Any) -> None:
        await self._safe_op("set", self._make_key(key), orjson.dumps(value))

    async def delete(self, key: str) -> None:
        await self._safe_op("delete", self._make_key(key))

    @property
    def degraded(self) -> bool:
        """True when running on the in-memory fallback."""
        return not self._backend_available

    async def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is not None:
            with contextlib.suppress(Exception):
                await close()

    # -- Convenience constructors ----------------------------------------------

    @staticmethod
    def from_settings(
        *,
        redis_url: str | None,
        path: str | Path,
        namespace: str = "lifeline:",
        timeout_seconds: float = 5.0,
    ) -> LocalStore:
        """Redis when *redis_url* is set, otherwise the JSON file at *path*."""
        backend: KeyValueBackend
        if redis_url:
            backend = RedisKeyValueBackend(redis_url, timeout_seconds=timeout_seconds)
        else:
            backend = FileKeyValueBackend(path)
        return LocalStore(backend, namespace=namespace)
