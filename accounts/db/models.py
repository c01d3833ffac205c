"""
SQLAlchemy database models for the accounts cache.
Each cached domain gets its own table keyed by (tenant_id, user_id).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    """Timezone-aware current time, used for every cache write."""
    return datetime.now(timezone.utc)


# ===================
# Enums
# ===================

class CacheDomain(str, Enum):
    """Upstream-backed data domains held in the cache."""
    PROFILE = "profile"
    SUBSCRIPTION = "billing:subscription"
    INVOICES = "billing:invoices"
    ENTITLEMENTS = "entitlements"


# ===================
# Models
# ===================

class CacheRecordMixin:
    """Columns shared by every per-domain cache table."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    # Internal user id, not the identity provider's id
    user_id: Mapped[str] = mapped_column(String(64))

    # None until the first successful upstream fetch
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    # Set explicitly on every write so unchanged payloads still refresh it
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        return (
            Index(f"ix_{cls.__tablename__}_tenant_user", "tenant_id", "user_id", unique=True),
        )

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} tenant={self.tenant_id} user={self.user_id} "
            f"updated_at={self.updated_at}>"
        )


class ProfileCache(CacheRecordMixin, Base):
    """CRM profile snapshot."""

    __tablename__ = "profile_cache"


class SubscriptionCache(CacheRecordMixin, Base):
    """Payments subscription snapshot."""

    __tablename__ = "subscription_cache"


class InvoiceCache(CacheRecordMixin, Base):
    """Payments invoice list."""

    __tablename__ = "invoice_cache"


class EntitlementCache(CacheRecordMixin, Base):
    """Payments entitlement list."""

    __tablename__ = "entitlement_cache"


CACHE_MODELS: dict[CacheDomain, type[CacheRecordMixin]] = {
    CacheDomain.PROFILE: ProfileCache,
    CacheDomain.SUBSCRIPTION: SubscriptionCache,
    CacheDomain.INVOICES: InvoiceCache,
    CacheDomain.ENTITLEMENTS: EntitlementCache,
}
