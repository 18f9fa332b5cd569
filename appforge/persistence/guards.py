from __future__ import annotations

from appforge.core.config import get_settings


class TenantPredicateError(RuntimeError):
    """Raised when a repository query is about to run without a tenant scope."""


def require_tenant_id(tenant_id: str | None) -> str:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    if not get_settings().require_tenant_predicate:
        return tenant_id or ""
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
