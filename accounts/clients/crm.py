"""
CRM client. The CRM is the source of truth for customer profiles.
"""

from typing import Any, Optional

from accounts.clients.base import BaseHttpClient, UpstreamRejected, mock_delay
from accounts.config import settings
from accounts.utils.logging import get_logger

logger = get_logger(__name__)

PROFILE_FIELDS = (
    "firstName",
    "lastName",
    "email",
    "phone",
    "company",
    "street",
    "city",
    "postalCode",
    "country",
    "vatId",
)

# Canned profile for development
MOCK_PROFILE: dict[str, Any] = {
    "firstName": "Max",
    "lastName": "Mustermann",
    "email": "demo@mojo-institut.de",
    "phone": "+49 123 456789",
    "company": "MOJO Institut GmbH",
    "street": "Musterstraße 123",
    "city": "Berlin",
    "postalCode": "10115",
    "country": "DE",
    "vatId": "DE123456789",
}


def empty_profile(**known: Any) -> dict[str, Any]:
    """Profile skeleton with every field present, filled from ``known``."""
    return {field: known.get(field) for field in PROFILE_FIELDS}


class CrmClient(BaseHttpClient):
    """Client for the CRM service."""

    service = "crm"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        tenant_slug: Optional[str] = None,
        mock_mode: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(
            base_url or settings.crm_api_url,
            settings.crm_api_key if api_key is None else api_key,
            **kwargs,
        )
        self.tenant_slug = tenant_slug or settings.crm_tenant_slug
        if mock_mode is None:
            mock_mode = settings.mock_external_services or not self.api_key
        self.mock_mode = mock_mode
        if self.mock_mode:
            logger.info("CrmClient running in mock mode")

    def default_headers(self) -> dict[str, str]:
        headers = super().default_headers()
        headers["x-tenant-slug"] = self.tenant_slug
        return headers

    async def fetch_profile(self, user_id: str) -> dict[str, Any]:
        """Fetch a profile from the CRM. Raises UpstreamError on failure."""
        if self.mock_mode:
            await mock_delay()
            return dict(MOCK_PROFILE)

        data = await self._request("GET", "/me/profile", params={"userId": user_id})
        if not isinstance(data, dict):
            raise UpstreamRejected("Unexpected profile payload", self.service)
        return data

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Write profile changes to the CRM and return the updated profile."""
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        if self.mock_mode:
            await mock_delay()
            return {**MOCK_PROFILE, **changes}

        data = await self._request(
            "PATCH",
            "/me/profile",
            params={"userId": user_id},
            json=changes,
        )
        if not isinstance(data, dict):
            raise UpstreamRejected("Unexpected profile payload", self.service)
        logger.info("Profile updated in CRM", user_id=user_id, fields=sorted(changes))
        return data


# Module-level singleton
crm_client = CrmClient()
