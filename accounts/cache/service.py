"""
Account data served to request handlers through the read-through cache.

Profile data comes from the CRM, subscription, invoice and entitlement
data from the payments service.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from accounts.cache.orchestrator import CachedResource
from accounts.cache.single_flight import SingleFlight, single_flight
from accounts.clients.crm import CrmClient, crm_client, empty_profile
from accounts.clients.payments import PaymentsClient, payments_client
from accounts.config import Settings, settings as default_settings
from accounts.db.database import CacheStore
from accounts.db.models import CacheDomain
from accounts.utils.logging import get_logger

logger = get_logger(__name__)


def is_entitlement_expired(entitlement: dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True when ``expiresAt`` is set and in the past.

    A missing or unparseable ``expiresAt`` means the entitlement does not expire.
    """
    expires_at = entitlement.get("expiresAt")
    if not expires_at:
        return False
    try:
        expires = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable entitlement expiry", entitlement_id=entitlement.get("id"), expires_at=expires_at)
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires < (now or datetime.now(timezone.utc))


class AccountCache:
    """Per-domain cached reads for a (tenant, user) pair."""

    def __init__(
        self,
        crm: Optional[CrmClient] = None,
        payments: Optional[PaymentsClient] = None,
        stores: Optional[dict[CacheDomain, Any]] = None,
        coordinator: Optional[SingleFlight] = None,
        settings: Optional[Settings] = None,
    ):
        self.crm = crm or crm_client
        self.payments = payments or payments_client
        cfg = settings or default_settings
        stores = stores or {}
        if coordinator is None:
            coordinator = single_flight

        def store(domain: CacheDomain) -> Any:
            if domain in stores:
                return stores[domain]
            return CacheStore.for_domain(domain)

        def resource(domain: CacheDomain, fetch, ttl_ms: int, default: Any) -> CachedResource:
            return CachedResource(
                domain,
                store(domain),
                fetch,
                ttl_ms,
                default=default,
                placeholder_ttl_ms=cfg.cache_ttl_placeholder_ms,
                coordinator=coordinator,
            )

        self.profile = resource(CacheDomain.PROFILE, self._fetch_profile, cfg.cache_ttl_profile_ms, empty_profile())
        self.subscription = resource(
            CacheDomain.SUBSCRIPTION, self.payments.fetch_subscription, cfg.cache_ttl_billing_ms, None
        )
        self.invoices = resource(CacheDomain.INVOICES, self.payments.fetch_invoices, cfg.cache_ttl_billing_ms, [])
        self.entitlements = resource(
            CacheDomain.ENTITLEMENTS, self.payments.fetch_entitlements, cfg.cache_ttl_entitlements_ms, []
        )

    async def _fetch_profile(self, tenant_id: str, user_id: str) -> dict[str, Any]:
        # Profiles are not tenant scoped in the CRM
        return await self.crm.fetch_profile(user_id)

    async def get_profile(
        self,
        tenant_id: str,
        user_id: str,
        fallback: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Profile for the user; ``fallback`` is served when nothing is cached."""
        return await self.profile.get_or_refresh(tenant_id, user_id, default=fallback)

    async def get_subscription(self, tenant_id: str, user_id: str) -> Optional[dict[str, Any]]:
        return await self.subscription.get_or_refresh(tenant_id, user_id)

    async def get_invoices(self, tenant_id: str, user_id: str) -> list[dict[str, Any]]:
        return await self.invoices.get_or_refresh(tenant_id, user_id)

    async def get_entitlements(self, tenant_id: str, user_id: str) -> list[dict[str, Any]]:
        return await self.entitlements.get_or_refresh(tenant_id, user_id)

    async def find_entitlement(self, tenant_id: str, user_id: str, resource_id: str) -> Optional[dict[str, Any]]:
        """The user's entitlement for one resource, or None."""
        entitlements = await self.get_entitlements(tenant_id, user_id)
        for entitlement in entitlements:
            if entitlement.get("resourceId") == resource_id:
                return entitlement
        return None

    async def update_profile(self, tenant_id: str, user_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Write to the CRM, then refresh the local copy.

        Upstream errors propagate: there is nothing to fall back to for a write.
        """
        updated = await self.crm.update_profile(user_id, changes)
        await self.profile.prime(tenant_id, user_id, updated)
        logger.info("Profile cache primed after update", tenant_id=tenant_id, user_id=user_id)
        return updated
