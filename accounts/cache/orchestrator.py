"""
Read-through cache orchestration.

One ``CachedResource`` per domain. Reads come from the durable store while
fresh; stale or missing records are refreshed from the upstream service
under single-flight, and upstream failures degrade to the last stored
payload or to the domain's default.
"""

import copy
from typing import Any, Awaitable, Callable, Optional, Protocol

from accounts.cache.freshness import is_stale
from accounts.cache.single_flight import SingleFlight, single_flight
from accounts.clients.base import UpstreamError
from accounts.db.models import CacheDomain
from accounts.utils.logging import get_logger

logger = get_logger(__name__)

UpstreamFetch = Callable[[str, str], Awaitable[Any]]


class CacheStoreProtocol(Protocol):
    async def find(self, tenant_id: str, user_id: str) -> Any: ...

    # Insert-if-absent; returns the stored record either way
    async def create(self, tenant_id: str, user_id: str, payload: Any) -> Any: ...

    async def upsert(self, tenant_id: str, user_id: str, payload: Any) -> Any: ...


def cache_key(domain: CacheDomain, tenant_id: str, user_id: str) -> str:
    return f"{domain.value}:{tenant_id}:{user_id}"


class CachedResource:
    """Read-through cache for one upstream-backed domain."""

    def __init__(
        self,
        domain: CacheDomain,
        store: CacheStoreProtocol,
        fetch: UpstreamFetch,
        ttl_ms: int,
        default: Any = None,
        placeholder_ttl_ms: Optional[int] = None,
        coordinator: Optional[SingleFlight] = None,
    ):
        self.domain = domain
        self.store = store
        self.fetch = fetch
        self.ttl_ms = ttl_ms
        self.default = default
        self.placeholder_ttl_ms = ttl_ms if placeholder_ttl_ms is None else min(ttl_ms, placeholder_ttl_ms)
        self.coordinator = single_flight if coordinator is None else coordinator

    def _default(self, override: Any = None) -> Any:
        # Copied so callers can't mutate a shared default
        return copy.deepcopy(self.default if override is None else override)

    def _payload_or_default(self, record: Any, override: Any = None) -> Any:
        if record is None or record.payload is None:
            return self._default(override)
        return record.payload

    def ttl_for(self, record: Any) -> int:
        """Records without a payload are placeholders and expire sooner."""
        if record is not None and record.payload is None:
            return self.placeholder_ttl_ms
        return self.ttl_ms

    async def get_or_refresh(self, tenant_id: str, user_id: str, default: Any = None) -> Any:
        """Return the cached payload, refreshing it from upstream when stale.

        Upstream failures never escape; store failures always do.
        """
        record = await self.store.find(tenant_id, user_id)
        if not is_stale(record, self.ttl_for(record)):
            return self._payload_or_default(record, default)

        key = cache_key(self.domain, tenant_id, user_id)

        async def refresh_or_degrade() -> Any:
            try:
                return await self._refresh(tenant_id, user_id)
            except UpstreamError as e:
                return await self._degrade(tenant_id, user_id, record, e)

        payload = await self.coordinator.run(key, refresh_or_degrade)
        if payload is None:
            return self._default(default)
        return payload

    async def _refresh(self, tenant_id: str, user_id: str) -> Any:
        payload = await self.fetch(tenant_id, user_id)
        record = await self.store.upsert(tenant_id, user_id, payload)
        logger.debug("Cache refreshed", domain=self.domain.value, tenant_id=tenant_id, user_id=user_id)
        return record.payload

    async def _degrade(self, tenant_id: str, user_id: str, record: Any, error: UpstreamError) -> Any:
        self._log_refresh_failure(tenant_id, user_id, record, error)

        if record is not None:
            # Stale but available: leave the stored record untouched
            return record.payload

        # Placeholder stops every later call in the burst from hammering upstream.
        # A row written since our read wins over the placeholder.
        placeholder = await self.store.create(tenant_id, user_id, None)
        return placeholder.payload

    def _log_refresh_failure(self, tenant_id: str, user_id: str, record: Any, error: UpstreamError) -> None:
        try:
            logger.warning(
                "Failed to refresh cache from upstream, using cache if available",
                domain=self.domain.value,
                service=error.service,
                tenant_id=tenant_id,
                user_id=user_id,
                has_stale_cache=record is not None and record.payload is not None,
                error=str(error),
            )
        except Exception:
            # Logging must not change the degraded result
            pass

    async def prime(self, tenant_id: str, user_id: str, payload: Any) -> Any:
        """Write a payload straight through to the store."""
        record = await self.store.upsert(tenant_id, user_id, payload)
        return record.payload
