from __future__ import annotations

import anyio
import pytest
from pydantic import BaseModel

from record_store.errors import AlreadyExistsError, InvalidArgumentError, NotFoundError
from record_store.models import UNSET, payload_from_model


def test_create_stamps_initial_meta(store):
    async def _run():
        rec = await store.create({"id": "u1", "name": "Ann"}, "sys")
        return rec, await store.get({"id": "u1"})

    rec, stored = anyio.run(_run)
    assert rec["id"] == "u1"
    assert rec["name"] == "Ann"
    assert rec["meta"]["version"] == 1
    assert rec["meta"]["createdBy"] == "sys"
    assert rec["meta"]["createdAt"].endswith("Z")
    assert "modifiedAt" not in rec["meta"]
    assert stored == rec


def test_create_then_update_scenario(store):
    async def _run():
        await store.create({"id": "u1", "name": "Ann"}, "sys")
        return await store.update({"id": "u1"}, {"name": "Annie"}, "sys2")

    out = anyio.run(_run)
    assert out["name"] == "Annie"
    assert out["meta"]["version"] == 2
    assert out["meta"]["modifiedBy"] == "sys2"
    assert out["meta"]["createdBy"] == "sys"
    assert out["meta"]["modifiedAt"].endswith("Z")


@pytest.mark.parametrize("data", [{"name": "no id"}, {"id": None}, {"id": UNSET}])
def test_create_requires_identity(store, data):
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.create, data, "sys")


def test_create_rejects_non_mapping(store):
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.create, ["id", "u1"], "sys")


def test_create_replaces_caller_meta_and_drops_unset(store):
    rec = anyio.run(store.create, {"id": "u1", "meta": {"version": 99}, "skip": UNSET}, "sys")
    assert rec["meta"]["version"] == 1
    assert "skip" not in rec


def test_create_duplicate_fails_and_keeps_original(store):
    async def _run():
        await store.create({"id": "u1", "name": "first"}, "a")
        with pytest.raises(AlreadyExistsError):
            await store.create({"id": "u1", "name": "second"}, "b")
        return await store.get({"id": "u1"})

    stored = anyio.run(_run)
    assert stored["name"] == "first"
    assert stored["meta"]["createdBy"] == "a"


def test_get_missing_returns_none_and_get_required_raises(store):
    assert anyio.run(store.get, {"id": "nope"}) is None
    with pytest.raises(NotFoundError):
        anyio.run(store.get_required, {"id": "nope"})


@pytest.mark.parametrize("key", [{"id": "u1", "name": "x"}, {}, "u1", {"id": None}])
def test_get_validates_key(store, key):
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.get, key)


def test_repeated_updates_increment_version_by_one(store):
    async def _run():
        await store.create({"id": "u1", "n": 0}, "sys")
        versions = []
        for i in range(1, 6):
            out = await store.update({"id": "u1"}, {"n": i}, "sys")
            versions.append(out["meta"]["version"])
        return versions, await store.get({"id": "u1"})

    versions, stored = anyio.run(_run)
    assert versions == [2, 3, 4, 5, 6]
    assert stored["meta"]["version"] == 6
    assert stored["n"] == 5


def test_update_missing_record_raises_and_writes_nothing(store, backend):
    async def _run():
        with pytest.raises(NotFoundError):
            await store.update({"id": "ghost"}, {"name": "x"}, "sys")
        return await store.get({"id": "ghost"})

    assert anyio.run(_run) is None
    assert backend.requests.count("UpdateItem") == 1


def test_array_updates_accumulate(store):
    async def _run():
        await store.create({"id": "u1"}, "sys")
        await store.update({"id": "u1"}, {"tags": ["x"]}, "sys")
        await store.update({"id": "u1"}, {"tags": ["y"]}, "sys")
        return await store.get({"id": "u1"})

    assert anyio.run(_run)["tags"] == ["x", "y"]


def test_array_update_appends_to_existing_list(store):
    async def _run():
        await store.create({"id": "u1", "tags": ["a"]}, "sys")
        return await store.update({"id": "u1"}, {"tags": ["b", "c"]}, "sys")

    assert anyio.run(_run)["tags"] == ["a", "b", "c"]


def test_dotted_update_leaves_siblings_untouched(store):
    async def _run():
        await store.create({"id": "u1", "profile": {"name": "Z", "age": 30}}, "sys")
        return await store.update({"id": "u1"}, {"profile.name": "A"}, "sys")

    out = anyio.run(_run)
    assert out["profile"] == {"name": "A", "age": 30}


def test_dotted_update_requires_existing_parent_map(store):
    async def _run():
        await store.create({"id": "u1"}, "sys")
        await store.update({"id": "u1"}, {"profile.name": "A"}, "sys")

    with pytest.raises(InvalidArgumentError):
        anyio.run(_run)


def test_update_writes_none_but_skips_unset(store):
    async def _run():
        await store.create({"id": "u1", "a": 1, "b": 2}, "sys")
        return await store.update({"id": "u1"}, {"a": None, "b": UNSET}, "sys")

    out = anyio.run(_run)
    assert out["a"] is None
    assert out["b"] == 2


@pytest.mark.parametrize("data", [{}, {"id": "other"}, {"meta.version": 10}, {"meta": {}}])
def test_update_rejects_empty_or_protected_payload_without_a_request(store, backend, data):
    anyio.run(store.create, {"id": "u1"}, "sys")
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.update, {"id": "u1"}, data, "sys")
    assert "UpdateItem" not in backend.requests


def test_update_from_pydantic_model_only_sends_set_fields(store):
    class ProfilePatch(BaseModel):
        name: str | None = None
        email: str | None = None

    async def _run():
        await store.create({"id": "u1", "name": "Ann", "email": "ann@example.com"}, "sys")
        return await store.update({"id": "u1"}, payload_from_model(ProfilePatch(name="Annie")), "sys")

    out = anyio.run(_run)
    assert out["name"] == "Annie"
    assert out["email"] == "ann@example.com"


def test_patch_does_not_touch_meta(store):
    async def _run():
        created = await store.create({"id": "u1", "profile": {"name": "Z"}}, "sys")
        patched = await store.patch({"id": "u1"}, {"profile.name": "A", "flags": ["f"]})
        return created, patched

    created, patched = anyio.run(_run)
    assert patched["profile"]["name"] == "A"
    assert patched["flags"] == ["f"]
    assert patched["meta"] == created["meta"]


def test_patch_missing_record_raises(store):
    async def _run():
        with pytest.raises(NotFoundError):
            await store.patch({"id": "ghost"}, {"a": 1})
        return await store.get({"id": "ghost"})

    assert anyio.run(_run) is None


def test_delete_is_idempotent(store):
    async def _run():
        await store.create({"id": "u1"}, "sys")
        await store.delete({"id": "u1"})
        await store.delete({"id": "u1"})
        return await store.get({"id": "u1"})

    assert anyio.run(_run) is None


def test_returned_records_are_snapshots(store):
    async def _run():
        rec = await store.create({"id": "u1", "tags": ["a"]}, "sys")
        rec["tags"].append("mutated")
        rec["meta"]["version"] = 42
        got = await store.get({"id": "u1"})
        got["tags"].append("again")
        return await store.get({"id": "u1"})

    stored = anyio.run(_run)
    assert stored["tags"] == ["a"]
    assert stored["meta"]["version"] == 1


def test_query_escapes_logical_value_names(settings):
    from record_store.db.memory import InMemoryBackend
    from record_store.store import RecordStore

    backend = InMemoryBackend(key_fields=("pk", "sk"), indexes={"byEmail": ("email",)})
    store = RecordStore(backend=backend, settings=settings, key_fields=("pk", "sk"))

    async def _run():
        await store.create({"pk": "USER#1", "sk": "B", "email": "a@x.com", "status": "active"}, "sys")
        await store.create({"pk": "USER#1", "sk": "A", "email": "b@x.com", "status": "inactive"}, "sys")
        await store.create({"pk": "USER#2", "sk": "A", "email": "a@x.com", "status": "active"}, "sys")
        by_pk = await store.query("pk = :pk", {"pk": "USER#1"})
        filtered = await store.query(
            "pk = :pk AND begins_with(sk, :prefix)",
            {"pk": "USER#1", "prefix": "B"},
        )
        by_email = await store.query(
            "email = :email",
            {"email": "a@x.com", "status": "active"},
            index_name="byEmail",
            filter_expression="#s = :status",
            attribute_names={"s": "status"},
        )
        return by_pk, filtered, by_email

    by_pk, filtered, by_email = anyio.run(_run)
    assert [r["sk"] for r in by_pk] == ["A", "B"]
    assert [r["sk"] for r in filtered] == ["B"]
    assert sorted(r["pk"] for r in by_email) == ["USER#1", "USER#2"]


def test_query_requires_key_condition(store):
    with pytest.raises(InvalidArgumentError):
        anyio.run(store.query, "  ", {})


def test_query_page_follows_continuation_tokens(settings):
    from record_store.db.memory import InMemoryBackend
    from record_store.store import RecordStore

    backend = InMemoryBackend(key_fields=("pk", "sk"), page_size=2)
    store = RecordStore(backend=backend, settings=settings, key_fields=("pk", "sk"))

    async def _run():
        for sk in "EDCBA":
            await store.create({"pk": "USER#1", "sk": sk}, "sys")
        await store.create({"pk": "USER#2", "sk": "A"}, "sys")

        pages, token = [], None
        while True:
            page = await store.query_page("pk = :pk", {"pk": "USER#1"}, next_token=token)
            pages.append([r["sk"] for r in page.items])
            token = page.next_token
            if not token:
                break
        first_only = await store.query("pk = :pk", {"pk": "USER#1"})
        bigger = await store.query_page("pk = :pk", {"pk": "USER#1"}, limit=10)
        return pages, first_only, bigger

    pages, first_only, bigger = anyio.run(_run)
    assert pages == [["A", "B"], ["C", "D"], ["E"]]
    assert [r["sk"] for r in first_only] == ["A", "B"]
    assert [r["sk"] for r in bigger.items] == ["A", "B", "C", "D", "E"]
    assert bigger.next_token is None


@pytest.mark.parametrize("kwargs", [{"limit": 0}, {"next_token": "not-a-token"}])
def test_query_page_rejects_bad_limit_and_token(store, kwargs):
    with pytest.raises(InvalidArgumentError):
        anyio.run(lambda: store.query_page("id = :id", {"id": "u1"}, **kwargs))


def test_nested_unset_values_are_never_stored(store):
    async def _run():
        await store.create(
            {"id": "u1", "profile": {"x": UNSET, "y": 1}, "tags": ["a", UNSET]},
            "sys",
        )
        created = await store.get({"id": "u1"})
        await store.update({"id": "u1"}, {"profile": {"x": UNSET, "y": 2}, "tags": [UNSET, "b"]}, "sys")
        return created, await store.get({"id": "u1"})

    created, updated = anyio.run(_run)
    assert created["profile"] == {"y": 1}
    assert created["tags"] == ["a"]
    assert updated["profile"] == {"y": 2}
    assert updated["tags"] == ["a", "b"]
