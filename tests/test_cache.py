"""
Tests for the read-through cache orchestration.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from accounts.cache.orchestrator import CachedResource, cache_key
from accounts.clients.base import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable
from accounts.db.models import CacheDomain
from tests.conftest import FakeUpstream, InMemoryCacheStore

TTL_MS = 60_000
PLACEHOLDER_TTL_MS = 10_000


def _resource(store, fetch, coordinator, default=None, domain=CacheDomain.SUBSCRIPTION):
    return CachedResource(
        domain,
        store,
        fetch,
        TTL_MS,
        default=default,
        placeholder_ttl_ms=PLACEHOLDER_TTL_MS,
        coordinator=coordinator,
    )


def _warnings(logs):
    return [entry for entry in logs if entry["log_level"] == "warning"]


class TestCacheKey:
    """Test single-flight key construction."""

    def test_key_includes_domain_tenant_and_user(self):
        assert cache_key(CacheDomain.PROFILE, "t1", "u1") == "profile:t1:u1"
        assert cache_key(CacheDomain.INVOICES, "t1", "u1") == "billing:invoices:t1:u1"

    def test_domains_do_not_collide(self):
        keys = {cache_key(domain, "t", "u") for domain in CacheDomain}
        assert len(keys) == len(CacheDomain)


class TestFreshReads:
    """Test serving fresh records without upstream calls."""

    @pytest.mark.asyncio
    async def test_fresh_record_served_from_cache(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, {"status": "active"}, age_ms=30_000)
        upstream = FakeUpstream(result={"status": "canceled"})

        result = await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)

        assert result == {"status": "active"}
        assert upstream.calls == 0
        assert store.upserts == 0

    @pytest.mark.asyncio
    async def test_fresh_empty_record_served_as_default(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, None, age_ms=1_000)
        upstream = FakeUpstream(result=[{"id": "inv_1"}])

        result = await _resource(store, upstream, coordinator, default=[]).get_or_refresh(tenant_id, user_id)

        assert result == []
        assert upstream.calls == 0


class TestRefresh:
    """Test refreshing stale or missing records."""

    @pytest.mark.asyncio
    async def test_missing_record_fetched_and_stored(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(result={"status": "trialing"})
        before = datetime.now(timezone.utc)

        result = await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)

        assert result == {"status": "trialing"}
        record = store.records[(tenant_id, user_id)]
        assert record.payload == {"status": "trialing"}
        assert before <= record.updated_at <= datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_stale_record_replaced(self, store, coordinator, tenant_id, user_id):
        old = store.seed(tenant_id, user_id, {"status": "active"}, age_ms=90_000)
        upstream = FakeUpstream(result={"status": "past_due"})

        result = await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)

        assert result == {"status": "past_due"}
        assert upstream.calls == 1
        assert store.records[(tenant_id, user_id)].updated_at > old.updated_at

    @pytest.mark.asyncio
    async def test_concurrent_cold_requests_fetch_once(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(result={"status": "active"}, delay=0.2)
        resource = _resource(store, upstream, coordinator)

        results = await asyncio.gather(*(resource.get_or_refresh(tenant_id, user_id) for _ in range(10)))

        assert upstream.calls == 1
        assert store.upserts == 1
        assert all(r == {"status": "active"} for r in results)
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_stale_requests_fetch_once(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, [{"id": "inv_old"}], age_ms=120_000)
        upstream = FakeUpstream(result=[{"id": "inv_new"}], delay=0.05)
        resource = _resource(store, upstream, coordinator, default=[], domain=CacheDomain.INVOICES)

        results = await asyncio.gather(*(resource.get_or_refresh(tenant_id, user_id) for _ in range(5)))

        assert upstream.calls == 1
        assert results == [[{"id": "inv_new"}]] * 5

    @pytest.mark.asyncio
    async def test_next_wave_after_settlement_refreshes_again(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(result={"status": "active"})
        resource = CachedResource(CacheDomain.SUBSCRIPTION, store, upstream, 0, coordinator=coordinator)

        await resource.get_or_refresh(tenant_id, user_id)
        await asyncio.sleep(0.001)
        await resource.get_or_refresh(tenant_id, user_id)

        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_users_refresh_independently(self, store, coordinator, tenant_id):
        upstream = FakeUpstream(result={"status": "active"}, delay=0.05)
        resource = _resource(store, upstream, coordinator)

        await asyncio.gather(
            resource.get_or_refresh(tenant_id, "user_a"),
            resource.get_or_refresh(tenant_id, "user_b"),
        )

        assert upstream.calls == 2
        assert set(store.records) == {(tenant_id, "user_a"), (tenant_id, "user_b")}


class TestUpstreamFailure:
    """Test degradation when the upstream service fails."""

    @pytest.mark.asyncio
    async def test_stale_payload_served_on_failure(self, store, coordinator, tenant_id, user_id):
        old = store.seed(tenant_id, user_id, {"status": "active"}, age_ms=90_000)
        old_updated_at = old.updated_at
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 503", "payments", "503"))

        with capture_logs() as logs:
            result = await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)

        assert result == {"status": "active"}
        record = store.records[(tenant_id, user_id)]
        assert record.payload == {"status": "active"}
        assert record.updated_at == old_updated_at
        assert store.upserts == 0

        warnings = _warnings(logs)
        assert len(warnings) == 1
        assert warnings[0]["has_stale_cache"] is True
        assert warnings[0]["domain"] == "billing:subscription"

    @pytest.mark.asyncio
    async def test_rejected_upstream_also_degrades(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, [{"id": "inv_1"}], age_ms=90_000)
        upstream = FakeUpstream(error=UpstreamRejected("HTTP 404", "payments", "404"))

        resource = _resource(store, upstream, coordinator, default=[], domain=CacheDomain.INVOICES)
        result = await resource.get_or_refresh(tenant_id, user_id)

        assert result == [{"id": "inv_1"}]

    @pytest.mark.asyncio
    async def test_cold_start_failure_creates_placeholder(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=UpstreamTimeout("Request timeout after 10s", "payments"))

        with capture_logs() as logs:
            result = await _resource(store, upstream, coordinator, default=[]).get_or_refresh(tenant_id, user_id)

        assert result == []
        record = store.records[(tenant_id, user_id)]
        assert record.payload is None
        assert store.creates == 1
        assert _warnings(logs)[0]["has_stale_cache"] is False

    @pytest.mark.asyncio
    async def test_placeholder_suppresses_immediate_retries(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 502", "payments", "502"))
        resource = _resource(store, upstream, coordinator)

        assert await resource.get_or_refresh(tenant_id, user_id) is None
        assert await resource.get_or_refresh(tenant_id, user_id) is None

        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_expired_placeholder_retried_before_domain_ttl(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, None, age_ms=PLACEHOLDER_TTL_MS + 1)
        upstream = FakeUpstream(result={"status": "active"})

        result = await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)

        assert result == {"status": "active"}
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_failed_retry_of_placeholder_keeps_it(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, None, age_ms=PLACEHOLDER_TTL_MS + 1)
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 500", "payments", "500"))

        result = await _resource(store, upstream, coordinator, default=[]).get_or_refresh(tenant_id, user_id)

        assert result == []
        assert store.creates == 0

    @pytest.mark.asyncio
    async def test_burst_failure_degrades_once(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 503", "payments", "503"), delay=0.05)
        resource = _resource(store, upstream, coordinator, default=[], domain=CacheDomain.INVOICES)

        with capture_logs() as logs:
            results = await asyncio.gather(*(resource.get_or_refresh(tenant_id, user_id) for _ in range(10)))

        assert results == [[]] * 10
        assert upstream.calls == 1
        assert store.creates == 1
        assert len(_warnings(logs)) == 1

    @pytest.mark.asyncio
    async def test_late_caller_after_leader_settles_degrades(self, coordinator, tenant_id, user_id):
        """An empty read taken before the leader's placeholder still ends in the default."""

        class SlowReadStore(InMemoryCacheStore):
            async def find(self, tenant_id, user_id):
                record = self.records.get((tenant_id, user_id))
                await asyncio.sleep(0.1)
                return record

        store = SlowReadStore()
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 503", "payments", "503"), delay=0.05)
        resource = _resource(store, upstream, coordinator, default=[], domain=CacheDomain.INVOICES)

        async def late_caller():
            await asyncio.sleep(0.12)
            return await resource.get_or_refresh(tenant_id, user_id)

        results = await asyncio.gather(resource.get_or_refresh(tenant_id, user_id), late_caller())

        assert results == [[], []]
        assert upstream.calls == 2
        assert store.creates == 2
        assert store.records[(tenant_id, user_id)].payload is None

    @pytest.mark.asyncio
    async def test_defaults_are_not_shared_between_callers(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 503", "payments", "503"))
        resource = _resource(store, upstream, coordinator, default=[])

        first = await resource.get_or_refresh(tenant_id, user_id)
        first.append({"id": "mutated"})

        assert await resource.get_or_refresh(tenant_id, user_id) == []

    @pytest.mark.asyncio
    async def test_caller_default_overrides_domain_default(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=UpstreamUnavailable("HTTP 503", "crm", "503"))
        resource = _resource(store, upstream, coordinator, default={"firstName": None}, domain=CacheDomain.PROFILE)

        result = await resource.get_or_refresh(tenant_id, user_id, default={"firstName": "Ada"})

        assert result == {"firstName": "Ada"}


class TestStoreFailure:
    """Test that store errors are not masked."""

    @pytest.mark.asyncio
    async def test_read_failure_propagates(self, store, coordinator, tenant_id, user_id):
        store.fail_with = ConnectionError("database unreachable")
        upstream = FakeUpstream(result={"status": "active"})

        with pytest.raises(ConnectionError):
            await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_write_failure_reaches_every_waiter(self, tenant_id, user_id, coordinator):
        store = InMemoryCacheStore()
        upstream = FakeUpstream(result={"status": "active"}, delay=0.05)
        resource = _resource(store, upstream, coordinator)

        async def break_store_after_read():
            await asyncio.sleep(0.01)
            store.fail_with = ConnectionError("write failed")

        results = await asyncio.gather(
            *(resource.get_or_refresh(tenant_id, user_id) for _ in range(3)),
            break_store_after_read(),
            return_exceptions=True,
        )

        errors = results[:3]
        assert all(isinstance(e, ConnectionError) for e in errors)
        assert upstream.calls == 1
        assert not coordinator.is_in_flight(cache_key(CacheDomain.SUBSCRIPTION, tenant_id, user_id))

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_propagates(self, store, coordinator, tenant_id, user_id):
        upstream = FakeUpstream(error=KeyError("bug"))

        with pytest.raises(KeyError):
            await _resource(store, upstream, coordinator).get_or_refresh(tenant_id, user_id)
        assert store.creates == 0


class TestPrime:
    """Test write-through updates."""

    @pytest.mark.asyncio
    async def test_prime_overwrites_and_freshens(self, store, coordinator, tenant_id, user_id):
        store.seed(tenant_id, user_id, {"city": "Berlin"}, age_ms=600_000)
        upstream = FakeUpstream(result={"city": "Hamburg"})
        resource = _resource(store, upstream, coordinator, domain=CacheDomain.PROFILE)

        await resource.prime(tenant_id, user_id, {"city": "Munich"})

        assert await resource.get_or_refresh(tenant_id, user_id) == {"city": "Munich"}
        assert upstream.calls == 0
