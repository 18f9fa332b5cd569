from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update

from appforge.core.errors import ForbiddenError, NotFoundError, ValidationError
from appforge.domain.models import Collection, CollectionItem
from appforge.domain.schema import CollectionSpec
from appforge.persistence.db import SessionLocal
from appforge.services import collections, items
from appforge.services.access_policy import GUEST
from appforge.tests.utils.auth import create_test_tenant, signup_test_user


async def _configure(tenant_id: str, name: str, payload: dict) -> None:
    async with SessionLocal() as session:
        await collections.update_schema(
            session, tenant_id=tenant_id, name=name, spec=CollectionSpec.model_validate(payload)
        )


async def _create(tenant_id: str, name: str, data: dict, caller, **kwargs) -> dict:
    async with SessionLocal() as session:
        return await items.create_item(
            session, tenant_id=tenant_id, collection_name=name, data=data, caller=caller, **kwargs
        )


async def _list(tenant_id: str, name: str, caller, **kwargs) -> dict:
    async with SessionLocal() as session:
        return await items.list_items(
            session, tenant_id=tenant_id, collection_name=name, caller=caller, **kwargs
        )


async def _count(tenant_id: str, name: str) -> int:
    async with SessionLocal() as session:
        return await items.count_items(session, tenant_id=tenant_id, collection_name=name)


@pytest.mark.asyncio
async def test_create_then_get_round_trips_data_and_owner() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)

    created = await _create(tenant_id, "notes", {"title": "Hello", "tags": ["a", "b"]}, admin, sort_order=3)
    async with SessionLocal() as session:
        fetched = await items.get_item(
            session, tenant_id=tenant_id, collection_name="notes", item_id=created["id"], caller=admin
        )

    assert fetched["data"] == {"title": "Hello", "tags": ["a", "b"]}
    assert fetched["owner_id"] == admin.identity_id
    assert fetched["sort_order"] == 3
    assert fetched["created_at"] is not None


@pytest.mark.asyncio
async def test_first_use_auto_creates_empty_collection() -> None:
    tenant_id = await create_test_tenant()

    result = await _list(tenant_id, "fresh", GUEST)

    assert result == {"items": [], "total": 0, "limit": 100, "offset": 0, "hasMore": False}
    async with SessionLocal() as session:
        collection = await collections.find(session, tenant_id=tenant_id, name="fresh")
    assert collection is not None
    assert collection.description == "Auto-created collection: fresh"
    assert collection.schema_json == []


@pytest.mark.asyncio
async def test_invalid_collection_name_is_rejected() -> None:
    tenant_id = await create_test_tenant()

    with pytest.raises(ValidationError) as exc_info:
        await _create(tenant_id, "Bad-Name", {"x": 1}, GUEST)
    assert exc_info.value.details["violations"][0]["code"] == "pattern"


@pytest.mark.asyncio
async def test_update_shallow_merges_and_validates_merged_payload() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    await _configure(
        tenant_id,
        "tasks",
        {
            "schema": [
                {"name": "title", "type": "text", "required": True},
                {"name": "status", "type": "enum", "enumValues": ["todo", "done"]},
            ]
        },
    )
    created = await _create(tenant_id, "tasks", {"title": "X", "status": "todo"}, admin)

    async with SessionLocal() as session:
        updated = await items.update_item(
            session,
            tenant_id=tenant_id,
            collection_name="tasks",
            item_id=created["id"],
            data={"status": "done"},
            caller=admin,
        )
    assert updated["data"] == {"title": "X", "status": "done"}

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await items.update_item(
                session,
                tenant_id=tenant_id,
                collection_name="tasks",
                item_id=created["id"],
                data={"status": "blocked"},
                caller=admin,
            )
    async with SessionLocal() as session:
        stored = await items.get_item(
            session, tenant_id=tenant_id, collection_name="tasks", item_id=created["id"], caller=admin
        )
    assert stored["data"]["status"] == "done"


@pytest.mark.asyncio
async def test_validation_failure_persists_nothing() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    await _configure(
        tenant_id,
        "people",
        {"schema": [{"name": "name", "type": "text", "required": True}, {"name": "age", "type": "number", "min": 0}]},
    )

    with pytest.raises(ValidationError) as exc_info:
        await _create(tenant_id, "people", {"age": -5}, admin)

    codes = {(v["field"], v["code"]) for v in exc_info.value.details["violations"]}
    assert codes == {("name", "required"), ("age", "min")}
    assert await _count(tenant_id, "people") == 0


@pytest.mark.asyncio
async def test_relation_must_reference_existing_item() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    await _configure(
        tenant_id,
        "tasks",
        {"schema": [{"name": "project_id", "type": "text", "relation": {"collection": "projects"}}]},
    )
    project = await _create(tenant_id, "projects", {"name": "Apollo"}, admin)

    linked = await _create(tenant_id, "tasks", {"project_id": project["id"]}, admin)
    assert linked["data"]["project_id"] == project["id"]

    with pytest.raises(ValidationError) as exc_info:
        await _create(tenant_id, "tasks", {"project_id": "missing"}, admin)
    violation = exc_info.value.details["violations"][0]
    assert violation["code"] == "relation"
    assert violation["message"] == "Referenced item not found: projects/missing"
    assert await _count(tenant_id, "tasks") == 1


@pytest.mark.asyncio
async def test_owner_read_only_hides_other_users_items() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    alice, _ = await signup_test_user(tenant_id=tenant_id)
    bob, _ = await signup_test_user(tenant_id=tenant_id)
    await _configure(tenant_id, "diary", {"schema": [], "settings": {"ownerReadOnly": True}})

    alice_item = await _create(tenant_id, "diary", {"entry": "alice"}, alice)
    await _create(tenant_id, "diary", {"entry": "bob"}, bob)

    alice_view = await _list(tenant_id, "diary", alice)
    assert [item["data"]["entry"] for item in alice_view["items"]] == ["alice"]
    assert alice_view["total"] == 1

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await items.get_item(
                session, tenant_id=tenant_id, collection_name="diary", item_id=alice_item["id"], caller=bob
            )

    assert (await _list(tenant_id, "diary", GUEST))["total"] == 0
    assert (await _list(tenant_id, "diary", admin))["total"] == 2
    # Counts are tenant-wide aggregates.
    assert await _count(tenant_id, "diary") == 2


@pytest.mark.asyncio
async def test_owner_write_only_blocks_foreign_update_and_delete() -> None:
    tenant_id = await create_test_tenant()
    await signup_test_user(tenant_id=tenant_id)
    alice, _ = await signup_test_user(tenant_id=tenant_id)
    bob, _ = await signup_test_user(tenant_id=tenant_id)
    editor, _ = await signup_test_user(tenant_id=tenant_id, role="editor")
    await _configure(tenant_id, "posts", {"schema": [], "settings": {"ownerWriteOnly": True}})
    post = await _create(tenant_id, "posts", {"body": "mine"}, alice)

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await items.update_item(
                session, tenant_id=tenant_id, collection_name="posts", item_id=post["id"], data={"body": "x"}, caller=bob
            )
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await items.delete_item(
                session, tenant_id=tenant_id, collection_name="posts", item_id=post["id"], caller=bob
            )
    # Everyone can still read it.
    assert (await _list(tenant_id, "posts", bob))["total"] == 1

    async with SessionLocal() as session:
        edited = await items.update_item(
            session, tenant_id=tenant_id, collection_name="posts", item_id=post["id"], data={"body": "ed"}, caller=editor
        )
    assert edited["data"]["body"] == "ed"

    async with SessionLocal() as session:
        await items.delete_item(
            session, tenant_id=tenant_id, collection_name="posts", item_id=post["id"], caller=alice
        )
    assert await _count(tenant_id, "posts") == 0


@pytest.mark.asyncio
async def test_admin_write_only_rejects_non_admin_writes() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    user, _ = await signup_test_user(tenant_id=tenant_id)
    await _configure(tenant_id, "projects", {"schema": [], "settings": {"adminWriteOnly": True}})

    with pytest.raises(ForbiddenError):
        await _create(tenant_id, "projects", {"name": "nope"}, user)
    with pytest.raises(ForbiddenError):
        await _create(tenant_id, "projects", {"name": "nope"}, GUEST)

    await _create(tenant_id, "projects", {"name": "ok"}, admin)
    assert (await _list(tenant_id, "projects", GUEST))["total"] == 1


@pytest.mark.asyncio
async def test_list_filters_orders_and_paginates() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    for index, status in enumerate(["todo", "done", "todo", "done", "todo"]):
        await _create(tenant_id, "tasks", {"n": str(index), "status": status}, admin, sort_order=index)

    filtered = await _list(tenant_id, "tasks", admin, filters={"status": "todo"}, order_by="sort_order", order="asc")
    assert [item["data"]["n"] for item in filtered["items"]] == ["0", "2", "4"]
    assert filtered["total"] == 3

    page = await _list(tenant_id, "tasks", admin, limit=2, offset=1, order_by="sort_order", order="desc")
    assert [item["data"]["n"] for item in page["items"]] == ["3", "2"]
    assert page["total"] == 5
    assert page["hasMore"] is True

    clamped = await _list(tenant_id, "tasks", admin, limit=50_000)
    assert clamped["limit"] == 1000


@pytest.mark.asyncio
async def test_pages_stay_in_insertion_order_when_timestamps_tie() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    created = [(await _create(tenant_id, "ticks", {"n": str(index)}, admin))["id"] for index in range(5)]

    frozen = datetime(2026, 1, 1, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        await session.execute(
            update(CollectionItem).where(CollectionItem.id.in_(created)).values(created_at=frozen)
        )
        await session.commit()

    seen: list[str] = []
    for offset in (0, 2, 4):
        page = await _list(tenant_id, "ticks", admin, limit=2, offset=offset, order="asc")
        seen.extend(item["id"] for item in page["items"])
    assert seen == created

    newest_first = await _list(tenant_id, "ticks", admin, limit=5, order="desc")
    assert [item["id"] for item in newest_first["items"]] == list(reversed(created))


@pytest.mark.asyncio
async def test_list_rejects_unknown_order_column_and_unsafe_filter_keys() -> None:
    tenant_id = await create_test_tenant()

    with pytest.raises(ValidationError):
        await _list(tenant_id, "tasks", GUEST, order_by="data")
    with pytest.raises(ValidationError):
        await _list(tenant_id, "tasks", GUEST, order="sideways")
    with pytest.raises(ValidationError):
        await _list(tenant_id, "tasks", GUEST, filters={"a') OR 1=1 --": "x"})


@pytest.mark.asyncio
async def test_bulk_archive_is_idempotent_and_hides_items() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    created = [await _create(tenant_id, "logs", {"i": i}, admin) for i in range(3)]
    ids = [created[0]["id"], created[1]["id"], "does-not-exist"]

    async with SessionLocal() as session:
        first = await items.bulk_archive(session, tenant_id=tenant_id, collection_name="logs", ids=ids)
    async with SessionLocal() as session:
        second = await items.bulk_archive(session, tenant_id=tenant_id, collection_name="logs", ids=ids)

    assert first == 2
    assert second == 0
    assert (await _list(tenant_id, "logs", admin))["total"] == 1
    assert await _count(tenant_id, "logs") == 1

    # Hard delete still reaches archived rows.
    async with SessionLocal() as session:
        deleted = await items.bulk_delete(
            session, tenant_id=tenant_id, collection_name="logs", ids=[item["id"] for item in created]
        )
    assert deleted == 3


@pytest.mark.asyncio
async def test_bulk_operations_require_ids() -> None:
    tenant_id = await create_test_tenant()

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await items.bulk_delete(session, tenant_id=tenant_id, collection_name="logs", ids=[])


@pytest.mark.asyncio
async def test_tenants_never_see_each_others_items() -> None:
    tenant_a = await create_test_tenant()
    tenant_b = await create_test_tenant()
    admin_a, _ = await signup_test_user(tenant_id=tenant_a)
    admin_b, _ = await signup_test_user(tenant_id=tenant_b)
    item = await _create(tenant_a, "shared", {"secret": True}, admin_a)

    assert (await _list(tenant_b, "shared", admin_b))["total"] == 0
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await items.get_item(
                session, tenant_id=tenant_b, collection_name="shared", item_id=item["id"], caller=admin_b
            )


@pytest.mark.asyncio
async def test_concurrent_first_writes_create_one_collection() -> None:
    tenant_id = await create_test_tenant()
    writers = 5

    await asyncio.gather(*(_create(tenant_id, "race", {"i": i}, GUEST) for i in range(writers)))

    async with SessionLocal() as session:
        collection_count = await session.scalar(
            select(func.count())
            .select_from(Collection)
            .where(Collection.tenant_id == tenant_id, Collection.name == "race")
        )
    assert collection_count == 1
    assert await _count(tenant_id, "race") == writers


@pytest.mark.asyncio
async def test_stats_report_live_counts_per_collection() -> None:
    tenant_id = await create_test_tenant()
    admin, _ = await signup_test_user(tenant_id=tenant_id)
    first = await _create(tenant_id, "alpha", {"v": 1}, admin)
    await _create(tenant_id, "alpha", {"v": 2}, admin)
    await _list(tenant_id, "empty", admin)
    async with SessionLocal() as session:
        await items.bulk_archive(session, tenant_id=tenant_id, collection_name="alpha", ids=[first["id"]])

    async with SessionLocal() as session:
        stats = await items.get_stats(session, tenant_id=tenant_id)

    assert stats["alpha"]["count"] == 1
    assert stats["alpha"]["lastUpdated"] is not None
    assert stats["empty"] == {"count": 0, "lastUpdated": None}
