"""
Pytest configuration and fixtures.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio

from accounts.cache.single_flight import SingleFlight


@dataclass
class FakeRecord:
    """Cache record held by the in-memory store."""
    tenant_id: str
    user_id: str
    payload: Any
    updated_at: datetime


class InMemoryCacheStore:
    """Cache store backed by a dict. Suspends on every call like a real database."""

    def __init__(self):
        self.records: dict[tuple[str, str], FakeRecord] = {}
        self.creates = 0
        self.upserts = 0
        self.fail_with: Optional[Exception] = None

    def seed(self, tenant_id: str, user_id: str, payload: Any, age_ms: int = 0) -> FakeRecord:
        record = FakeRecord(
            tenant_id=tenant_id,
            user_id=user_id,
            payload=payload,
            updated_at=datetime.now(timezone.utc) - timedelta(milliseconds=age_ms),
        )
        self.records[(tenant_id, user_id)] = record
        return record

    async def find(self, tenant_id: str, user_id: str) -> Optional[FakeRecord]:
        await asyncio.sleep(0)
        if self.fail_with:
            raise self.fail_with
        return self.records.get((tenant_id, user_id))

    async def create(self, tenant_id: str, user_id: str, payload: Any) -> FakeRecord:
        await asyncio.sleep(0)
        self.creates += 1
        if (tenant_id, user_id) in self.records:
            return self.records[(tenant_id, user_id)]
        return self.seed(tenant_id, user_id, payload)

    async def upsert(self, tenant_id: str, user_id: str, payload: Any) -> FakeRecord:
        await asyncio.sleep(0)
        self.upserts += 1
        if self.fail_with:
            raise self.fail_with
        return self.seed(tenant_id, user_id, payload)


class FakeUpstream:
    """Upstream fetch that counts calls and can be slow or fail."""

    def __init__(self, result: Any = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self, tenant_id: str, user_id: str) -> Any:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def coordinator() -> SingleFlight:
    """A private registry so tests never share in-flight state."""
    return SingleFlight()


@pytest.fixture
def tenant_id() -> str:
    return "tenant_123"


@pytest.fixture
def user_id() -> str:
    return "user_456"


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Fresh in-memory SQLite database with all tables."""
    from accounts.db.database import close_db, create_tables, init_db

    await init_db("sqlite+aiosqlite:///:memory:")
    await create_tables()
    yield
    await close_db()
