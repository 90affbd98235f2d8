"""Tenant resolution for the two call paths.

- Webhook path: shop domain -> tenant, NotFound(UNKNOWN_TENANT) otherwise.
  Callers run this only after the signature check has passed, so an
  unauthenticated caller learns nothing about which shops exist.
- Dashboard path: API credential -> tenant, AuthError(MISSING_CREDENTIAL)
  or AuthError(INVALID_CREDENTIAL) otherwise.
"""

from __future__ import annotations

import logging

from shoplens.errors import AuthError, NotFound, Reason
from shoplens.storage import Store, Tenant
from shoplens.tenancy.cache import TenantCache

logger = logging.getLogger(__name__)


def normalize_shop_domain(shop_domain: str | None) -> str:
    """Domains are matched exactly after trimming and lower-casing."""
    return (shop_domain or "").strip().lower()


class TenantResolver:
    """Maps origin domains and credentials to tenants."""

    def __init__(self, store: Store, cache: TenantCache | None = None):
        self._store = store
        self._cache = cache

    def by_domain(self, shop_domain: str | None) -> Tenant:
        domain = normalize_shop_domain(shop_domain)
        if not domain:
            raise NotFound(Reason.UNKNOWN_TENANT, "shop domain header missing")

        if self._cache:
            tenant = self._cache.get_by_domain(domain)
            if tenant is not None:
                return tenant
        generation = self._snapshot()
        tenant = self._store.get_tenant_by_domain(domain)
        if tenant is None:
            raise NotFound(Reason.UNKNOWN_TENANT, domain)
        if self._cache:
            self._cache.store(tenant, generation)
        return tenant

    def by_credential(self, api_key: str | None) -> Tenant:
        api_key = (api_key or "").strip()
        if not api_key:
            raise AuthError(Reason.MISSING_CREDENTIAL)

        if self._cache:
            tenant = self._cache.get_by_credential(api_key)
            if tenant is not None:
                return tenant
        generation = self._snapshot()
        tenant = self._store.get_tenant_by_api_key(api_key)
        if tenant is None:
            raise AuthError(Reason.INVALID_CREDENTIAL)
        if self._cache:
            self._cache.store(tenant, generation)
        return tenant

    def _snapshot(self) -> str | None:
        # Taken before the store read so a concurrent invalidation wins
        return self._cache.generation() if self._cache else None

    def invalidate(self, tenant: Tenant) -> None:
        if self._cache:
            self._cache.invalidate(tenant)
