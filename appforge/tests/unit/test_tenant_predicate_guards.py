from __future__ import annotations

import pytest

from appforge.core.config import get_settings
from appforge.persistence.guards import TenantPredicateError
from appforge.persistence.repos import audit as audit_repo
from appforge.persistence.repos import collections as collections_repo
from appforge.persistence.repos import end_users as end_users_repo
from appforge.persistence.repos import items as items_repo
from appforge.persistence.repos.items import ItemQuery, ItemScope


@pytest.fixture(autouse=True)
def _enable_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    # Force tenant predicate enforcement for guard tests.
    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_item_repo_requires_tenant_predicate() -> None:
    scope = ItemScope(tenant_id="", collection_id="c1")
    with pytest.raises(TenantPredicateError):
        await items_repo.list_items(None, scope, ItemQuery(limit=10, offset=0))  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await items_repo.get_item(None, scope, "item-1")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_collection_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await collections_repo.get_by_name(None, None, "tasks")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await collections_repo.list_for_tenant(None, None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_identity_and_audit_repos_require_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await end_users_repo.get_by_email(None, None, "a@b.co")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await audit_repo.list_events(None, tenant_id=None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_guard_fires_before_any_statement_runs() -> None:
    # No session is needed: the predicate is built before the query executes.
    scope = ItemScope(tenant_id="", collection_id="c1")
    with pytest.raises(TenantPredicateError):
        await items_repo.delete_item(None, scope, "item-1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await items_repo.count_items(None, tenant_id="", collection_id="c1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await end_users_repo.get_by_id(None, "", "u1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await end_users_repo.count_for_tenant(None, "")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await end_users_repo.list_end_users(None, tenant_id="", search="a")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await collections_repo.collection_stats(None, "")  # type: ignore[arg-type]
