from __future__ import annotations

import anyio
import pytest

from record_store.db.memory import InMemoryBackend
from record_store.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    NotFoundError,
    VersionConflictError,
)
from record_store.store import RecordStore


class _InterleavingBackend(InMemoryBackend):
    """Runs a one-shot hook right after the next get_item returns."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.after_get = None

    async def get_item(self, table, key):
        item = await super().get_item(table, key)
        hook, self.after_get = self.after_get, None
        if hook is not None:
            await hook()
        return item


def test_concurrent_creates_exactly_one_succeeds(store):
    results: list[str] = []

    async def _attempt(i: int):
        try:
            await store.create({"id": "same", "n": i}, f"actor-{i}")
            results.append("ok")
        except AlreadyExistsError:
            results.append("exists")

    async def _run():
        async with anyio.create_task_group() as tg:
            for i in range(10):
                tg.start_soon(_attempt, i)
        return await store.get({"id": "same"})

    stored = anyio.run(_run)
    assert results.count("ok") == 1
    assert results.count("exists") == 9
    assert stored["meta"]["version"] == 1


def test_concurrent_updates_all_count_toward_version(store):
    async def _run():
        await store.create({"id": "u1"}, "sys")
        async with anyio.create_task_group() as tg:
            for i in range(20):
                tg.start_soon(store.update, {"id": "u1"}, {"tags": [f"t{i}"], "last": i}, f"actor-{i}")
        return await store.get({"id": "u1"})

    stored = anyio.run(_run)
    assert stored["meta"]["version"] == 21
    assert sorted(stored["tags"]) == sorted(f"t{i}" for i in range(20))
    assert stored["last"] in range(20)


def test_save_bumps_version_and_keeps_creation_stamp(store):
    async def _run():
        await store.create({"id": "u1", "name": "Ann"}, "creator")
        rec = await store.get({"id": "u1"})
        rec["name"] = "Annie"
        saved = await store.save(rec, "editor")
        return saved, await store.get({"id": "u1"})

    saved, stored = anyio.run(_run)
    assert saved == stored
    assert stored["name"] == "Annie"
    assert stored["meta"]["version"] == 2
    assert stored["meta"]["createdBy"] == "creator"
    assert stored["meta"]["modifiedBy"] == "editor"


def test_save_with_stale_version_conflicts(store):
    async def _run():
        await store.create({"id": "u1", "name": "Ann"}, "sys")
        stale = await store.get({"id": "u1"})
        await store.update({"id": "u1"}, {"name": "Other"}, "sys")
        stale["name"] = "Mine"
        with pytest.raises(VersionConflictError) as ei:
            await store.save(stale, "sys")
        return ei.value, await store.get({"id": "u1"})

    err, stored = anyio.run(_run)
    assert err.expected_version == 1
    assert err.actual_version == 2
    assert stored["name"] == "Other"


def test_save_detects_writer_between_read_and_write(settings):
    backend = _InterleavingBackend()
    store = RecordStore(backend=backend, settings=settings)

    async def _intervene():
        await store.update({"id": "u1"}, {"name": "Intruder"}, "b")

    async def _run():
        await store.create({"id": "u1", "name": "Ann"}, "a")
        rec = await store.get({"id": "u1"})
        rec["name"] = "Mine"
        backend.after_get = _intervene
        with pytest.raises(VersionConflictError):
            await store.save(rec, "a")
        return await store.get({"id": "u1"})

    stored = anyio.run(_run)
    assert stored["name"] == "Intruder"
    assert stored["meta"]["version"] == 2


def test_save_missing_record(store):
    rec = {"id": "ghost", "meta": {"version": 1, "createdAt": "2026-01-01T00:00:00Z", "createdBy": "x"}}
    with pytest.raises(NotFoundError):
        anyio.run(store.save, rec, "sys")


def test_save_requires_meta(store):
    anyio.run(store.create, {"id": "u1"}, "sys")
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.save, {"id": "u1", "name": "x"}, "sys")
