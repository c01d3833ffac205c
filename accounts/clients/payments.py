"""
Payments client. The payments service is the source of truth for
subscriptions, invoices and entitlements.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from accounts.clients.base import BaseHttpClient, UpstreamRejected, mock_delay
from accounts.config import settings
from accounts.utils.logging import get_logger

logger = get_logger(__name__)


def _days_from_now(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def mock_subscription() -> dict[str, Any]:
    return {
        "id": "sub_mock_123",
        "status": "active",
        "planId": "plan_premium",
        "planName": "MOJO Premium",
        "currentPeriodStart": _days_from_now(-30),
        "currentPeriodEnd": _days_from_now(30),
        "cancelAtPeriodEnd": False,
    }


def mock_invoices() -> list[dict[str, Any]]:
    return [
        {
            "id": "inv_mock_001",
            "number": "INV-2024-001",
            "status": "paid",
            "amount": 9900,
            "currency": "EUR",
            "createdAt": _days_from_now(-30),
            "pdfUrl": "https://example.com/invoice.pdf",
        },
        {
            "id": "inv_mock_002",
            "number": "INV-2024-002",
            "status": "paid",
            "amount": 9900,
            "currency": "EUR",
            "createdAt": _days_from_now(-60),
            "pdfUrl": "https://example.com/invoice2.pdf",
        },
    ]


def mock_entitlements() -> list[dict[str, Any]]:
    return [
        {
            "id": "ent_mock_001",
            "type": "course_access",
            "resourceId": "course_101",
            "resourceName": "MOJO Grundlagen",
            "expiresAt": None,
        },
        {
            "id": "ent_mock_003",
            "type": "feature_flag",
            "resourceId": "premium_support",
            "resourceName": "Premium Support",
            "expiresAt": None,
        },
    ]


class PaymentsClient(BaseHttpClient):
    """Client for the payments service."""

    service = "payments"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        mock_mode: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(
            base_url or settings.payments_api_url,
            settings.payments_api_key if api_key is None else api_key,
            **kwargs,
        )
        if mock_mode is None:
            mock_mode = settings.mock_external_services or not self.api_key
        self.mock_mode = mock_mode
        if self.mock_mode:
            logger.info("PaymentsClient running in mock mode")

    @staticmethod
    def _scope(tenant_id: str, user_id: str) -> dict[str, str]:
        return {"userId": user_id, "tenantId": tenant_id}

    async def fetch_subscription(self, tenant_id: str, user_id: str) -> Optional[dict[str, Any]]:
        """Current subscription, or None when the user has none."""
        if self.mock_mode:
            await mock_delay()
            return mock_subscription()

        # The service returns the subscription directly, not wrapped
        data = await self._request("GET", "/me/subscription", params=self._scope(tenant_id, user_id))
        if data is not None and not isinstance(data, dict):
            raise UpstreamRejected("Unexpected subscription payload", self.service)
        return data

    async def fetch_invoices(self, tenant_id: str, user_id: str) -> list[dict[str, Any]]:
        if self.mock_mode:
            await mock_delay()
            return mock_invoices()

        data = await self._request("GET", "/me/invoices", params=self._scope(tenant_id, user_id))
        if not isinstance(data, list):
            raise UpstreamRejected("Unexpected invoices payload", self.service)
        return data

    async def fetch_entitlements(self, tenant_id: str, user_id: str) -> list[dict[str, Any]]:
        if self.mock_mode:
            await mock_delay()
            return mock_entitlements()

        data = await self._request("GET", "/me/entitlements", params=self._scope(tenant_id, user_id))
        if not isinstance(data, list):
            raise UpstreamRejected("Unexpected entitlements payload", self.service)
        return data


# Module-level singleton
payments_client = PaymentsClient()
