"""
Database connection and session management.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from accounts.db.models import (
    CACHE_MODELS,
    Base,
    CacheDomain,
    CacheRecordMixin,
    utcnow,
)
from accounts.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _normalize_url(database_url: str) -> str:
    # Convert postgres:// to postgresql+asyncpg://
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None) -> None:
    """Initialize database connection."""
    global _engine, _session_factory

    if database_url is None:
        from accounts.config import settings
        database_url = settings.database_url

    database_url = _normalize_url(database_url)

    if database_url.startswith("sqlite"):
        # One shared connection keeps an in-memory database alive
        _engine = create_async_engine(
            database_url,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        _engine = create_async_engine(
            database_url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info("Database connection initialized", dialect=_engine.dialect.name)


async def create_tables() -> None:
    """Create all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session (context manager for internal use)."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ===================
# Cache Record Operations
# ===================

class CacheStore:
    """Durable cache records for one domain, keyed by (tenant_id, user_id).

    Errors raised by the database are not caught here: there is no safe
    fallback for a failed read of the source of truth.
    """

    def __init__(self, model: type[CacheRecordMixin]):
        self.model = model

    @classmethod
    def for_domain(cls, domain: CacheDomain) -> "CacheStore":
        return cls(CACHE_MODELS[domain])

    async def find(self, tenant_id: str, user_id: str) -> Optional[CacheRecordMixin]:
        """Get the record for a tenant/user pair, or None."""
        async with get_session() as session:
            result = await session.execute(
                select(self.model)
                .where(self.model.tenant_id == tenant_id)
                .where(self.model.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def create(self, tenant_id: str, user_id: str, payload: Any) -> CacheRecordMixin:
        """Insert a record unless one exists for the pair.

        Returns whichever record is stored afterwards; an existing row is
        left untouched.
        """
        try:
            async with get_session() as session:
                record = self.model(
                    id=generate_id(),
                    tenant_id=tenant_id,
                    user_id=user_id,
                    payload=payload,
                    updated_at=utcnow(),
                )
                session.add(record)
                await session.flush()
                return record
        except IntegrityError:
            existing = await self.find(tenant_id, user_id)
            if existing is None:
                raise
            logger.debug(
                "Cache record already exists",
                table=self.model.__tablename__,
                tenant_id=tenant_id,
                user_id=user_id,
            )
            return existing

    async def upsert(self, tenant_id: str, user_id: str, payload: Any) -> CacheRecordMixin:
        """Create or replace the payload for a tenant/user pair."""
        async with get_session() as session:
            result = await session.execute(
                select(self.model)
                .where(self.model.tenant_id == tenant_id)
                .where(self.model.user_id == user_id)
            )
            record = result.scalar_one_or_none()

            if record:
                record.payload = payload
                record.updated_at = utcnow()
            else:
                record = self.model(
                    id=generate_id(),
                    tenant_id=tenant_id,
                    user_id=user_id,
                    payload=payload,
                    updated_at=utcnow(),
                )
                session.add(record)

            await session.flush()
            return record
