"""
Tenant scoping helpers.

Every read and write into a shared backend carries a tenant id. These
helpers are the single place that decides what a valid tenant scope is.
"""

from __future__ import annotations

from typing import Any

from benefits_rag.core.errors import TenantIsolationViolation

TENANT_KEY = "tenant_id"


def require_tenant(tenant_id: str | None) -> str:
    """Return the tenant id or fail fast if it is missing or blank."""
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise TenantIsolationViolation(
            f"Operation attempted without a tenant scope (tenant_id={tenant_id!r})"
        )
    return tenant_id


def stamp_tenant(tenant_id: str, metadata: dict[str, Any] | None) -> dict[str, Any]:
    """
    Return a copy of `metadata` tagged with `tenant_id`.

    A record already tagged with a different tenant is never re-tagged.
    """
    tagged = dict(metadata or {})
    existing = tagged.get(TENANT_KEY)
    if existing is not None and existing != tenant_id:
        raise TenantIsolationViolation(
            f"Record tagged for tenant {existing!r} written under tenant {tenant_id!r}"
        )
    tagged[TENANT_KEY] = tenant_id
    return tagged


def tenant_filter(tenant_id: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a metadata filter that always includes the tenant clause."""
    require_tenant(tenant_id)
    merged = dict(extra or {})
    if TENANT_KEY in merged and merged[TENANT_KEY] != tenant_id:
        raise TenantIsolationViolation(
            f"Filter for tenant {merged[TENANT_KEY]!r} used in a query scoped to {tenant_id!r}"
        )
    merged[TENANT_KEY] = tenant_id
    return merged


def matches_filter(metadata: dict[str, Any], filter: dict[str, Any]) -> bool:
    """
    Equality match of `filter` against `metadata`.

    A list-valued metadata field matches when it contains the filter value,
    or every element of a list-valued filter value (jsonb `@>` semantics).
    """
    for key, expected in filter.items():
        actual = metadata.get(key)
        if isinstance(actual, (list, tuple, set)) and isinstance(expected, (list, tuple, set)):
            if not all(item in actual for item in expected):
                return False
            continue
        if isinstance(actual, (list, tuple, set)):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True
