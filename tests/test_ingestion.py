"""
Tests for the ingestion pipeline: rate limiting, enrichment, buffering.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Sequence

from usage_analytics.events.schema import EnrichedEvent, GeoInfo
from usage_analytics.ingestion.buffer import BufferManager
from usage_analytics.ingestion.enrichment import (
    GEO_ENRICHMENT_FAILED,
    Enricher,
    GeoResolver,
    StaticGeoResolver,
    is_private_ip,
)
from usage_analytics.ingestion.rate_limiter import RateLimiter
from usage_analytics.ingestion.service import IngestionService
from usage_analytics.storage.adapters import InMemoryAdapter
from usage_analytics.storage.cache import InMemoryCacheStore
from usage_analytics.utils.config import IngestionConfig
from usage_analytics.utils.errors import StorageError

from tests.fixtures.event_fixtures import EventFixtures, FIXED_NOW, PROJECT_ID


class FlakyStorage(InMemoryAdapter):
    """Fails the first ``failures`` writes."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def write_events(self, events: Sequence[EnrichedEvent]) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("database unavailable")
        await super().write_events(events)


class BrokenCache(InMemoryCacheStore):
    async def get(self, key):
        raise ConnectionError("cache down")


class CounterDownCache(InMemoryCacheStore):
    async def incrby(self, key, amount=1):
        raise ConnectionError("cache down")


class ExplodingResolver(GeoResolver):
    async def lookup(self, ip):
        raise RuntimeError("geo service timeout")


class TestRateLimiter:
    """Per-project minute buckets."""

    async def test_limit_boundary(self, cache):
        limiter = RateLimiter(cache, limit_per_minute=10, clock=lambda: FIXED_NOW)
        await limiter.increment(PROJECT_ID, 9)

        at_limit = await limiter.check_limit(PROJECT_ID, 1)
        over_limit = await limiter.check_limit(PROJECT_ID, 2)

        assert at_limit.exceeded is False
        assert at_limit.count == 9
        assert over_limit.exceeded is True

    async def test_bucket_key_and_reset(self, cache):
        limiter = RateLimiter(cache, clock=lambda: FIXED_NOW)
        assert limiter.bucket_key(PROJECT_ID) == "ratelimit:proj-1:2024-03-15-12-30"

        info = await limiter.check_limit(PROJECT_ID, 1)
        assert info.reset_at == datetime(2024, 3, 15, 12, 31, tzinfo=timezone.utc)
        assert info.window_seconds == 60

    async def test_projects_are_independent(self, cache):
        limiter = RateLimiter(cache, limit_per_minute=5, clock=lambda: FIXED_NOW)
        await limiter.increment("proj-a", 5)
        assert (await limiter.check_limit("proj-a", 1)).exceeded is True
        assert (await limiter.check_limit("proj-b", 5)).exceeded is False

    async def test_new_minute_resets(self, cache, clock):
        limiter = RateLimiter(cache, limit_per_minute=5, clock=clock)
        await limiter.increment(PROJECT_ID, 5)
        clock.advance(minutes=1)
        assert (await limiter.check_limit(PROJECT_ID, 5)).exceeded is False

    async def test_increment_sets_expiry(self, cache):
        limiter = RateLimiter(cache, clock=lambda: FIXED_NOW, key_ttl_seconds=120)
        await limiter.increment(PROJECT_ID, 3)
        ttl = cache.ttl(limiter.bucket_key(PROJECT_ID))
        assert ttl is not None and 0 < ttl <= 120

    async def test_cache_outage_fails_open(self):
        limiter = RateLimiter(BrokenCache(), limit_per_minute=1)
        info = await limiter.check_limit(PROJECT_ID, 1)
        assert info.exceeded is False
        assert info.count == 0

    async def test_increment_outage_returns_zero(self):
        limiter = RateLimiter(CounterDownCache(), limit_per_minute=5)
        assert await limiter.increment(PROJECT_ID, 3) == 0


class TestEnrichment:
    """Geo enrichment of accepted events."""

    @pytest.mark.parametrize("ip,private", [
        ("127.0.0.1", True),
        ("10.1.2.3", True),
        ("172.20.0.1", True),
        ("192.168.1.10", True),
        ("8.8.8.8", False),
        ("172.32.0.1", False),
        ("not-an-ip", True),
        ("::1", True),
    ])
    def test_private_ranges(self, ip, private):
        assert is_private_ip(ip) is private

    async def test_private_ip_skips_lookup(self):
        resolver = StaticGeoResolver({"10.0.0.1": GeoInfo(country="US")})
        enricher = Enricher(geo_resolver=resolver, clock=lambda: FIXED_NOW)
        event = await enricher.enrich(EventFixtures.create_event(), "10.0.0.1")

        assert event.geo == GeoInfo()
        assert event.meta.enriched is False
        assert event.meta.errors is None
        assert event.received_at == FIXED_NOW

    async def test_public_ip_resolved(self):
        resolver = StaticGeoResolver({"8.8.8.8": GeoInfo(country="US", city="Mountain View")})
        event = await Enricher(geo_resolver=resolver).enrich(EventFixtures.create_event(), "8.8.8.8")

        assert event.geo.country == "US"
        assert event.meta.enriched is True

    async def test_failed_lookup_is_recorded_not_rejected(self):
        event = await Enricher(geo_resolver=ExplodingResolver()).enrich(
            EventFixtures.create_event(), "8.8.8.8"
        )
        assert event.meta.enriched is False
        assert event.meta.errors == [GEO_ENRICHMENT_FAILED]

    async def test_disabled_geo(self):
        resolver = StaticGeoResolver({"8.8.8.8": GeoInfo(country="US")})
        event = await Enricher(geo_resolver=resolver, enable_geo=False).enrich(
            EventFixtures.create_event(), "8.8.8.8"
        )
        assert event.meta.enriched is False
        assert event.geo.country is None


class TestBufferManager:
    """Per-project buffering and flush semantics."""

    async def test_flush_when_full(self, storage, metrics):
        buffers = BufferManager(storage, buffer_size=3, metrics=metrics)

        assert await buffers.append(PROJECT_ID, [EventFixtures.create_event() for _ in range(2)]) == 0
        assert buffers.size(PROJECT_ID) == 2
        assert storage.get_events() == []

        flushed = await buffers.append(PROJECT_ID, [EventFixtures.create_event()])
        assert flushed == 3
        assert buffers.size(PROJECT_ID) == 0
        assert len(storage.get_events()) == 3
        assert metrics.get_counter("events_flushed") == 3

    async def test_failed_flush_restores_events_in_order(self, metrics):
        storage = FlakyStorage(failures=1)
        buffers = BufferManager(storage, buffer_size=100, metrics=metrics)
        first = [EventFixtures.create_event(event_id=f"a{i}") for i in range(3)]
        await buffers.append(PROJECT_ID, first)

        with pytest.raises(StorageError):
            await buffers.flush(PROJECT_ID)

        later = [EventFixtures.create_event(event_id="b0")]
        await buffers.append(PROJECT_ID, later)
        assert [e.event_id for e in buffers.pending(PROJECT_ID)] == ["a0", "a1", "a2", "b0"]

        assert await buffers.flush(PROJECT_ID) == 4
        assert [e.event_id for e in storage.get_events()] == ["a0", "a1", "a2", "b0"]

    async def test_flush_all_reports_first_failure(self, metrics):
        storage = FlakyStorage(failures=1)
        buffers = BufferManager(storage, buffer_size=100, metrics=metrics)
        await buffers.append("proj-a", [EventFixtures.create_event(project_id="proj-a")])
        await buffers.append("proj-b", [EventFixtures.create_event(project_id="proj-b")])

        with pytest.raises(StorageError):
            await buffers.flush_all()
        # One project was written, the other kept its events
        assert len(storage.get_events()) == 1
        assert sum(buffers.stats().values()) == 1

    async def test_concurrent_appends_do_not_lose_events(self, storage, metrics):
        buffers = BufferManager(storage, buffer_size=10, metrics=metrics)
        await asyncio.gather(*(
            buffers.append(PROJECT_ID, [EventFixtures.create_event()]) for _ in range(35)
        ))
        await buffers.flush_all()
        assert len(storage.get_events()) == 35


class TestIngestionService:
    """Batch ingestion end to end."""

    @pytest.fixture
    def service(self, storage, cache, metrics):
        config = IngestionConfig(rate_limit_per_minute=10, max_batch_size=5, buffer_size=100)
        return IngestionService(storage, cache, config, metrics=metrics)

    async def test_valid_batch_accepted(self, service, storage):
        batch = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(3)])
        result = await service.ingest_batch(batch, "10.0.0.1")

        assert result.success is True
        assert result.accepted == 3
        assert result.rejected == 0
        assert result.rate_limit.count == 3
        assert service.get_buffer_stats() == {PROJECT_ID: 3}

        await service.flush_buffer()
        assert len(storage.get_events()) == 3

    async def test_invalid_events_rejected_individually(self, service):
        bad = EventFixtures.create_raw_event(event_id="evt-bad")
        del bad["sessionId"]
        other_project = EventFixtures.create_raw_event(project_id="proj-2", event_id="evt-other")
        batch = EventFixtures.create_batch([EventFixtures.create_raw_event(), bad, other_project])

        result = await service.ingest_batch(batch)

        assert result.accepted == 1
        assert result.rejected == 2
        assert {e.event_id for e in result.errors} == {"evt-bad", "evt-other"}
        payload = result.to_dict()
        assert payload["errors"][0]["eventId"] == "evt-bad"

    async def test_oversized_batch_rejected_whole(self, service):
        batch = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(6)])
        result = await service.ingest_batch(batch)

        assert result.success is False
        assert result.accepted == 0
        assert result.rejected == 6
        assert result.batch_rejected is True
        assert service.get_buffer_stats() == {}

    async def test_invalid_envelope_rejected(self, service):
        result = await service.ingest_batch({"projectId": PROJECT_ID, "events": []})
        assert result.success is False
        assert result.batch_rejected is True
        assert "Invalid batch" in result.errors[0].error

    async def test_rate_limited_batch_is_atomic(self, service):
        first = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(5)])
        second = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(5)])
        third = EventFixtures.create_batch([EventFixtures.create_raw_event()])

        assert (await service.ingest_batch(first)).accepted == 5
        assert (await service.ingest_batch(second)).accepted == 5

        limited = await service.ingest_batch(third)
        assert limited.success is False
        assert limited.accepted == 0
        assert limited.rejected == 1
        assert limited.rate_limit.exceeded is True
        assert limited.batch_rejected is False
        assert limited.errors[0].event_id == "batch"
        assert "Rate limit exceeded" in limited.errors[0].error
        assert service.get_buffer_stats() == {PROJECT_ID: 10}

    async def test_counter_outage_keeps_events_accepted(self, storage, metrics):
        config = IngestionConfig(rate_limit_per_minute=10, max_batch_size=5, buffer_size=100)
        service = IngestionService(storage, CounterDownCache(), config, metrics=metrics)
        batch = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(3)])

        result = await service.ingest_batch(batch)

        assert result.success is True
        assert result.accepted == 3
        assert service.get_buffer_stats() == {PROJECT_ID: 3}

    async def test_rejected_events_do_not_consume_budget(self, service):
        bad = [EventFixtures.create_raw_event(event_type="") for _ in range(5)]
        await service.ingest_batch(EventFixtures.create_batch(bad))

        good = [EventFixtures.create_raw_event() for _ in range(5)]
        assert (await service.ingest_batch(EventFixtures.create_batch(good))).accepted == 5
        assert (await service.ingest_batch(EventFixtures.create_batch(good[:5]))).accepted == 5

    async def test_ingest_single_event(self, service):
        result = await service.ingest_event(EventFixtures.create_raw_event(event_id="evt-solo"))
        assert result.accepted == 1
        assert service.buffers.pending(PROJECT_ID)[0].event_id == "evt-solo"

    async def test_storage_failure_keeps_events_buffered(self, cache, metrics):
        storage = FlakyStorage(failures=1)
        service = IngestionService(
            storage, cache, IngestionConfig(buffer_size=2, max_batch_size=10), metrics=metrics
        )
        batch = EventFixtures.create_batch([EventFixtures.create_raw_event() for _ in range(2)])

        result = await service.ingest_batch(batch)
        assert result.accepted == 2
        assert service.get_buffer_stats() == {PROJECT_ID: 2}

        await service.shutdown()
        assert len(storage.get_events()) == 2

    async def test_shutdown_flushes(self, service, storage):
        await service.ingest_batch(EventFixtures.create_batch([EventFixtures.create_raw_event()]))
        await service.shutdown()
        assert len(storage.get_events()) == 1
        assert service.get_buffer_stats() == {}

    async def test_counters(self, service, metrics):
        bad = EventFixtures.create_raw_event()
        del bad["eventId"]
        await service.ingest_batch(EventFixtures.create_batch([EventFixtures.create_raw_event(), bad]))
        assert metrics.get_counter("events_accepted") == 1
        assert metrics.get_counter("events_rejected") == 1
