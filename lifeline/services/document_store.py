"""Remote document store: JSON-like documents grouped in collections.

Contract
--------
* ``create(collection, doc) -> id``   the store assigns the id.
* ``get(collection, id) -> doc | None``
* ``update(collection, id, partial)``  top-level field merge, never a full
  overwrite; raises :class:`NotFoundError` for a missing document.
* ``put(collection, id, doc, merge=False)``  write under a caller-chosen id.
* ``create_if_absent(collection, id, doc) -> bool``  write under a caller-chosen
  id only when nothing is stored there yet; exactly one concurrent caller wins.
* ``update_if(collection, id, partial, field=, expected=) -> bool``  single-document
  transaction: merge only while ``doc[field] == expected``.
* ``query(collection, field, value) -> [(id, doc), ...]``  equality filter.

Every call may raise :class:`StoreUnavailableError` when the store is
offline or a request times out; that condition is always distinguishable
from "not found".
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from collections.abc import AsyncIterator
from typing import Any, Final, Protocol, runtime_checkable
from uuid import uuid4

import orjson
import structlog

from lifeline.services.errors import NotFoundError, StoreUnavailableError

logger = structlog.get_logger(__name__)

Document = dict[str, Any]


@runtime_checkable
class DocumentStore(Protocol):
    """Async document store interface."""

    async def create(self, collection: str, doc: Document) -> str: ...

    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    async def update(self, collection: str, doc_id: str, partial: Document) -> None: ...

    async def put(self, collection: str, doc_id: str, doc: Document, *, merge: bool = False) -> None: ...

    async def create_if_absent(self, collection: str, doc_id: str, doc: Document) -> bool: ...

    async def update_if(
        self, collection: str, doc_id: str, partial: Document, *, field: str, expected: Any
    ) -> bool: ...

    async def query(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryDocumentStore:
    """Process-local document store with an offline switch.

    Each call yields to the event loop once before touching data, so
    concurrent callers interleave the way they would against a remote
    store.  A single ``dict.update`` per merge keeps field-level writes
    atomic with respect to other coroutines.

    Attributes
    ----------
    online:
        When False every operation raises :class:`StoreUnavailableError`.
    drop_writes:
        When True ``create`` returns an id but never stores the document,
        mimicking a client SDK that acknowledges offline writes it later
        loses.
    """

    __slots__ = ("_collections", "drop_writes", "online")

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self.online = True
        self.drop_writes = False

    async def _checkpoint(self) -> None:
        await asyncio.sleep(0)
        if not self.online:
            raise StoreUnavailableError("document store is offline")

    def _collection(self, name: str) -> dict[str, Document]:
        return self._collections.setdefault(name, {})

    async def create(self, collection: str, doc: Document) -> str:
        await self._checkpoint()
        doc_id = uuid4().hex
        if not self.drop_writes:
            self._collection(collection)[doc_id] = copy.deepcopy(doc)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Document | None:
        await self._checkpoint()
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        await self._checkpoint()
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise NotFoundError(f"{collection}/{doc_id} does not exist")
        doc.update(copy.deepcopy(partial))

    async def put(self, collection: str, doc_id: str, doc: Document, *, merge: bool = False) -> None:
        await self._checkpoint()
        docs = self._collection(collection)
        if merge and doc_id in docs:
            docs[doc_id].update(copy.deepcopy(doc))
        else:
            docs[doc_id] = copy.deepcopy(doc)

    async def create_if_absent(self, collection: str, doc_id: str, doc: Document) -> bool:
        await self._checkpoint()
        docs = self._collection(collection)
        if doc_id in docs:
            return False
        docs[doc_id] = copy.deepcopy(doc)
        return True

    async def update_if(
        self, collection: str, doc_id: str, partial: Document, *, field: str, expected: Any
    ) -> bool:
        await self._checkpoint()
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise NotFoundError(f"{collection}/{doc_id} does not exist")
        if doc.get(field) != expected:
            return False
        doc.update(copy.deepcopy(partial))
        return True

    async def query(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]:
        await self._checkpoint()
        return [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in self._collection(collection).items()
            if doc.get(field) == value
        ]


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

# Merge only into an existing hash; HSET alone would create the document.
_UPDATE_IF_EXISTS: Final[str] = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

# KEYS: document hash, collection index. ARGV: id, then field/value pairs.
_CREATE_IF_ABSENT: Final[str] = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
redis.call('SADD', KEYS[2], ARGV[1])
return 1
"""

# Returns -1 for a missing hash, 0 when the guard field does not match.
_UPDATE_IF_MATCHES: Final[str] = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
return 1
"""


class RedisDocumentStore:
    """Documents as Redis hashes, one orjson-encoded value per top-level field.

    ``update`` becomes a single server-side HSET over just the given
    fields, so concurrent writers touching different fields (or the same
    field, last writer wins) never corrupt each other.  Each collection
    keeps a set of its ids for ``query``.
    """

    __slots__ = ("_conditional_script", "_create_script", "_pool", "_prefix", "_redis", "_update_script")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "lifeline:doc:",
        max_connections: int = 20,
        timeout_seconds: float = 5.0,
    ) -> None:
        import redis.asyncio as aioredis

        self._prefix = prefix
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)
        self._update_script = self._redis.register_script(_UPDATE_IF_EXISTS)
        self._conditional_script = self._redis.register_script(_UPDATE_IF_MATCHES)
        self._create_script = self._redis.register_script(_CREATE_IF_ABSENT)

    # -- Internal helpers ------------------------------------------------------

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self._prefix}{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}{collection}:_ids"

    @staticmethod
    def _encode(doc: Document) -> dict[str, bytes]:
        return {field: orjson.dumps(value) for field, value in doc.items()}

    @staticmethod
    def _decode(raw: dict[bytes, bytes]) -> Document:
        return {field.decode(): orjson.loads(value) for field, value in raw.items()}

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        from redis.exceptions import ConnectionError as RedisConnectionError
        from redis.exceptions import TimeoutError as RedisTimeoutError

        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            logger.warning("document_store.redis_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(f"redis unavailable during {operation}") from exc

    # -- DocumentStore interface -----------------------------------------------

    async def create(self, collection: str, doc: Document) -> str:
        doc_id = uuid4().hex
        async with self._guard("create"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._key(collection, doc_id), mapping=self._encode(doc))
                pipe.sadd(self._index_key(collection), doc_id)
                await pipe.execute()
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Document | None:
        async with self._guard("get"):
            raw = await self._redis.hgetall(self._key(collection, doc_id))
        return self._decode(raw) if raw else None

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        if not partial:
            return
        args: list[Any] = []
        for field, value in self._encode(partial).items():
            args.extend((field, value))
        async with self._guard("update"):
            updated = await self._update_script(keys=[self._key(collection, doc_id)], args=args)
        if not updated:
            raise NotFoundError(f"{collection}/{doc_id} does not exist")

    async def update_if(
        self, collection: str, doc_id: str, partial: Document, *, field: str, expected: Any
    ) -> bool:
        args: list[Any] = [field, orjson.dumps(expected)]
        for name, value in self._encode(partial).items():
            args.extend((name, value))
        async with self._guard("update_if"):
            result = await self._conditional_script(keys=[self._key(collection, doc_id)], args=args)
        if result == -1:
            raise NotFoundError(f"{collection}/{doc_id} does not exist")
        return result == 1

    async def put(self, collection: str, doc_id: str, doc: Document, *, merge: bool = False) -> None:
        key = self._key(collection, doc_id)
        async with self._guard("put"):
            async with self._redis.pipeline(transaction=True) as pipe:
                if not merge:
                    pipe.delete(key)
                pipe.hset(key, mapping=self._encode(doc))
                pipe.sadd(self._index_key(collection), doc_id)
                await pipe.execute()

    async def create_if_absent(self, collection: str, doc_id: str, doc: Document) -> bool:
        args: list[Any] = [doc_id]
        for field, value in self._encode(doc).items():
            args.extend((field, value))
        async with self._guard("create_if_absent"):
            created = await self._create_script(
                keys=[self._key(collection, doc_id), self._index_key(collection)], args=args
            )
        return created == 1

    async def query(self, collection: str, field: str, value: Any) -> list[tuple[str, Document]]:
        results: list[tuple[str, Document]] = []
        async with self._guard("query"):
            ids = await self._redis.smembers(self._index_key(collection))
            for raw_id in ids:
                doc_id = raw_id.decode()
                raw = await self._redis.hgetall(self._key(collection, doc_id))
                if not raw:
                    continue
                doc = self._decode(raw)
                if doc.get(field) == value:
                    results.append((doc_id, doc))
        return results

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()
