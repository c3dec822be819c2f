"""Tests for the local key-value store, its backends, and SOS settings persistence."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import orjson
import pytest

from lifeline.models.session import SOSSettings
from lifeline.services.document_store import InMemoryDocumentStore
from lifeline.services.errors import NotFoundError, StoreUnavailableError
from lifeline.services.local_store import FileKeyValueBackend, InMemoryKeyValueBackend, LocalStore
from lifeline.services.sos_settings import SETTINGS_KEY, SOSSettingsStore


# -----------------------------------------------------------------------
# File backend
# -----------------------------------------------------------------------


class TestFileKeyValueBackend:
    async def test_value_survives_new_instance(self, tmp_path: Path) -> None:
        path = tmp_path / "store.json"
        await FileKeyValueBackend(path).set("sos_active_session", b'"abc123"')

        reopened = FileKeyValueBackend(path)
        assert await reopened.get("sos_active_session") == b'"abc123"', "value should persist across restarts"

    async def test_delete_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "store.json"
        backend = FileKeyValueBackend(path)
        await backend.set("k", b"1")
        await backend.delete("k")
        assert await FileKeyValueBackend(path).get("k") is None

    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "store.json"
        await FileKeyValueBackend(path).set("k", b"1")
        assert orjson.loads(path.read_bytes()) == {"k": "1"}

    async def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "store.json"
        path.write_text("{not json")
        backend = FileKeyValueBackend(path)
        assert await backend.get("k") is None
        await backend.set("k", b"2")
        assert await backend.get("k") == b"2"


# -----------------------------------------------------------------------
# LocalStore facade
# -----------------------------------------------------------------------


class TestLocalStore:
    async def test_roundtrip_json_values(self) -> None:
        store = LocalStore(InMemoryKeyValueBackend())
        await store.set("settings", {"share_notes": True})
        assert await store.get("settings") == {"share_notes": True}

    async def test_namespace_prefixes_keys(self) -> None:
        backend = InMemoryKeyValueBackend()
        store = LocalStore(backend, namespace="lifeline:")
        await store.set("sos_active_session", "s1")
        assert await backend.get("lifeline:sos_active_session") == b'"s1"'

    async def test_failover_to_memory_on_backend_error(self) -> None:
        backend = AsyncMock()
        backend.set.side_effect = ConnectionError("redis down")
        store = LocalStore(backend)

        await store.set("k", "v")

        assert store.degraded, "a failing backend should flip the store to memory"
        assert await store.get("k") == "v"

    async def test_no_backend_is_degraded(self) -> None:
        assert LocalStore().degraded

    async def test_from_settings_uses_file_without_redis(self, tmp_path: Path) -> None:
        store = LocalStore.from_settings(redis_url=None, path=tmp_path / "local.json")
        await store.set("sos_active_session", "s9")
        raw = orjson.loads((tmp_path / "local.json").read_bytes())
        assert raw == {"lifeline:sos_active_session": '"s9"'}


# -----------------------------------------------------------------------
# SOS settings
# -----------------------------------------------------------------------


class TestSOSSettingsStore:
    async def test_defaults_when_missing(self, local_store: LocalStore) -> None:
        settings = await SOSSettingsStore(local_store).get_settings()
        assert settings == SOSSettings()
        assert settings.share_notes is False, "notes default to private"
        assert settings.share_blood_type is True

    async def test_save_and_reload(self, local_store: LocalStore) -> None:
        store = SOSSettingsStore(local_store)
        await store.save_settings(SOSSettings(share_age=False, share_notes=True))
        reloaded = await SOSSettingsStore(local_store).get_settings()
        assert reloaded.share_age is False
        assert reloaded.share_notes is True

    async def test_unreadable_record_yields_defaults(self, local_store: LocalStore) -> None:
        await local_store.set(SETTINGS_KEY, {"shareAge": "definitely"})
        assert await SOSSettingsStore(local_store).get_settings() == SOSSettings()

    async def test_toggle_flips_and_persists(self, local_store: LocalStore) -> None:
        store = SOSSettingsStore(local_store)
        toggled = await store.toggle("share_medications")
        assert toggled.share_medications is False
        assert (await store.get_settings()).share_medications is False

    async def test_toggle_unknown_flag(self, local_store: LocalStore) -> None:
        with pytest.raises(KeyError):
            await SOSSettingsStore(local_store).toggle("share_everything")


# -----------------------------------------------------------------------
# In-memory document store
# -----------------------------------------------------------------------


class TestInMemoryDocumentStore:
    async def test_update_merges_fields(self) -> None:
        store = InMemoryDocumentStore()
        doc_id = await store.create("c", {"a": 1, "b": 2})
        await store.update("c", doc_id, {"b": 3, "c": 4})
        assert await store.get("c", doc_id) == {"a": 1, "b": 3, "c": 4}

    async def test_update_missing_document(self) -> None:
        with pytest.raises(NotFoundError):
            await InMemoryDocumentStore().update("c", "nope", {"a": 1})

    async def test_offline_is_distinct_from_not_found(self) -> None:
        store = InMemoryDocumentStore()
        store.online = False
        with pytest.raises(StoreUnavailableError):
            await store.get("c", "nope")

    async def test_update_if_guards_on_field(self) -> None:
        store = InMemoryDocumentStore()
        doc_id = await store.create("c", {"active": True})
        assert await store.update_if("c", doc_id, {"active": False, "endTime": "t1"}, field="active", expected=True)
        assert not await store.update_if("c", doc_id, {"endTime": "t2"}, field="active", expected=True)
        assert (await store.get("c", doc_id))["endTime"] == "t1"

    async def test_returned_documents_are_copies(self) -> None:
        store = InMemoryDocumentStore()
        doc_id = await store.create("c", {"nested": {"x": 1}})
        (await store.get("c", doc_id))["nested"]["x"] = 99
        assert (await store.get("c", doc_id))["nested"]["x"] == 1

    async def test_put_merge(self) -> None:
        store = InMemoryDocumentStore()
        await store.put("c", "id1", {"a": 1})
        await store.put("c", "id1", {"b": 2}, merge=True)
        assert await store.get("c", "id1") == {"a": 1, "b": 2}
        await store.put("c", "id1", {"z": 0})
        assert await store.get("c", "id1") == {"z": 0}
