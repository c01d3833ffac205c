"""
Upstream service clients (CRM and payments).
"""

from accounts.clients.base import (
    BaseHttpClient,
    UpstreamError,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from accounts.clients.crm import CrmClient, crm_client
from accounts.clients.payments import PaymentsClient, payments_client

__all__ = [
    "BaseHttpClient",
    "CrmClient",
    "PaymentsClient",
    "UpstreamError",
    "UpstreamRejected",
    "UpstreamTimeout",
    "UpstreamUnavailable",
    "crm_client",
    "payments_client",
]
