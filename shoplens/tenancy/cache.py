"""Tenant lookup cache: Redis-backed, optional.

Security contract:
- Keys: tenant:domain:{shop_domain} and tenant:key:{sha256(api_key)};
  raw credentials never appear in key names
- Access tokens are never written to the cache
- Every entry is stamped with the cache generation read BEFORE the store
  lookup that produced it. ``invalidate()`` bumps the generation, so an
  entry written by a lookup that raced a rotation is already stale when
  it lands and is never served
- Invalidation failures raise; a rotation must not report success while
  the old credential may still resolve from cache
- If Redis is down, lookups fall through to the store (fail-open for
  availability; the store is always authoritative)
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, replace

import redis

from shoplens.errors import PersistenceError
from shoplens.storage import Tenant

logger = logging.getLogger(__name__)

_KEY_PREFIX = "tenant"
_GENERATION_KEY = f"{_KEY_PREFIX}:generation"


def _domain_key(shop_domain: str) -> str:
    return f"{_KEY_PREFIX}:domain:{shop_domain}"


def _credential_key(api_key: str) -> str:
    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return f"{_KEY_PREFIX}:key:{digest}"


class TenantCache:
    """Caches domain -> tenant and credential -> tenant mappings.

    The generation counter is global rather than per tenant: a credential
    lookup does not know which tenant it will find until after the store
    read, and the snapshot has to be taken before it.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 300):
        self._redis = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> TenantCache:
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    def generation(self) -> str | None:
        """Current generation, or None when Redis cannot be reached."""
        try:
            value = self._redis.get(_GENERATION_KEY)
        except redis.RedisError:
            logger.warning("Redis unavailable for tenant cache generation", exc_info=True)
            return None
        return str(value) if value is not None else "0"

    def _get(self, key: str) -> Tenant | None:
        try:
            raw, current = self._redis.mget(key, _GENERATION_KEY)
        except redis.RedisError:
            logger.warning("Redis unavailable for tenant cache read", exc_info=True)
            return None
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            generation = entry["generation"]
            tenant = Tenant(**entry["tenant"])
        except (ValueError, TypeError, KeyError):
            logger.warning("Discarding unreadable tenant cache entry %s", key)
            return None
        if generation != (str(current) if current is not None else "0"):
            return None
        return tenant

    def get_by_domain(self, shop_domain: str) -> Tenant | None:
        return self._get(_domain_key(shop_domain))

    def get_by_credential(self, api_key: str) -> Tenant | None:
        cached = self._get(_credential_key(api_key))
        # Guard against a hash collision or a stale entry for another key
        if cached is not None and cached.api_key != api_key:
            return None
        return cached

    def store(self, tenant: Tenant, generation: str | None) -> None:
        """Cache ``tenant`` as read under ``generation``; None skips the write."""
        if generation is None:
            return
        payload = json.dumps(
            {"generation": generation, "tenant": asdict(replace(tenant, access_token=None))}
        )
        try:
            pipe = self._redis.pipeline()
            pipe.setex(_credential_key(tenant.api_key), self._ttl, payload)
            if tenant.shop_domain:
                pipe.setex(_domain_key(tenant.shop_domain), self._ttl, payload)
            pipe.execute()
        except redis.RedisError:
            logger.warning("Redis unavailable for tenant cache write", exc_info=True)

    def invalidate(self, tenant: Tenant) -> None:
        """Retire every cached entry and drop this tenant's mappings."""
        keys = [_credential_key(tenant.api_key)]
        if tenant.shop_domain:
            keys.append(_domain_key(tenant.shop_domain))
        try:
            pipe = self._redis.pipeline()
            pipe.incr(_GENERATION_KEY)
            pipe.delete(*keys)
            pipe.execute()
        except redis.RedisError as e:
            logger.error("Tenant cache invalidation failed for tenant=%s", tenant.id, exc_info=True)
            raise PersistenceError(f"tenant cache invalidation failed for tenant={tenant.id}") from e
