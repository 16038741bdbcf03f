"""
Persistent JSON Store Tests

Atomic writes, advisory locking and versioned documents.
"""

import asyncio
import json
import os
import stat
import time

import pytest

from infra.storage import (
    JsonDocumentStore,
    LockTimeoutError,
    file_lock,
    read_json,
    with_file_lock,
    write_json,
)


class TestReadWrite:

    def test_missing_file_returns_copy_of_default(self, tmp_path):
        default = {"items": []}
        value = read_json(tmp_path / "missing.json", default)
        value["items"].append(1)
        assert default == {"items": []}

    def test_corrupt_file_returns_default(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text("{not json", encoding="utf-8")
        assert read_json(path, {"ok": False}) == {"ok": False}

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "nested" / "doc.json"
        write_json(path, {"名字": "值", "n": 1})
        assert read_json(path, None) == {"名字": "值", "n": 1}

    def test_write_is_owner_only_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, {"a": 1})
        write_json(path, {"a": 2})

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.json"]
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": 2}


class TestFileLock:

    @pytest.mark.asyncio
    async def test_lock_marker_created_and_removed(self, tmp_path):
        path = tmp_path / "doc.json"
        async with file_lock(path) as marker:
            assert marker.exists()
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_contended_lock_times_out(self, tmp_path):
        path = tmp_path / "doc.json"
        async with file_lock(path):
            with pytest.raises(LockTimeoutError):
                async with file_lock(path, timeout_ms=100):
                    pass

    @pytest.mark.asyncio
    async def test_stale_marker_is_reclaimed(self, tmp_path):
        path = tmp_path / "doc.json"
        marker = tmp_path / "doc.json.lock"
        marker.write_text("12345\n")
        old = time.time() - 120
        os.utime(marker, (old, old))

        async with file_lock(path, timeout_ms=200, stale_ms=1_000):
            assert marker.exists()
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_with_file_lock_accepts_sync_and_async(self, tmp_path):
        path = tmp_path / "doc.json"

        async def produce():
            return "async"

        assert await with_file_lock(path, lambda: "sync") == "sync"
        assert await with_file_lock(path, produce) == "async"


def _counter_default():
    return {"version": 1, "count": 0}


class TestJsonDocumentStore:

    def test_version_mismatch_resets_to_default(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, {"version": 7, "count": 99})
        store = JsonDocumentStore(path, _counter_default)
        assert store.read() == {"version": 1, "count": 0}

    def test_invalid_document_resets_to_default(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, {"version": 1, "count": "many"})
        store = JsonDocumentStore(path, _counter_default, validate=lambda d: isinstance(d.get("count"), int))
        assert store.read()["count"] == 0

    @pytest.mark.asyncio
    async def test_update_returns_mutator_result_and_persists(self, tmp_path):
        path = tmp_path / "doc.json"
        store = JsonDocumentStore(path, _counter_default)

        def bump(doc):
            doc["count"] += 1
            return doc["count"]

        assert await store.update(bump) == 1
        assert JsonDocumentStore(path, _counter_default).read()["count"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_serialized(self, tmp_path):
        path = tmp_path / "doc.json"
        first = JsonDocumentStore(path, _counter_default)
        second = JsonDocumentStore(path, _counter_default)

        def bump(doc):
            doc["count"] += 1

        await asyncio.gather(*[(first if i % 2 else second).update(bump) for i in range(20)])

        assert JsonDocumentStore(path, _counter_default).read()["count"] == 20

    @pytest.mark.asyncio
    async def test_read_picks_up_writes_from_another_store(self, tmp_path):
        path = tmp_path / "doc.json"
        reader = JsonDocumentStore(path, _counter_default)
        writer = JsonDocumentStore(path, _counter_default)
        assert reader.read()["count"] == 0

        def bump(doc):
            doc["count"] += 1

        await writer.update(bump)
        assert reader.read()["count"] == 1

        await writer.update(bump)
        assert reader.read()["count"] == 2

    def test_unchanged_file_served_from_cache(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, {"version": 1, "count": 3})
        store = JsonDocumentStore(path, _counter_default)
        assert store.read() is store.read()
