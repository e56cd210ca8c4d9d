"""
HTTP boundary tests against an in-process aiohttp server.
"""

import asyncio
import pytest
from urllib.parse import urlparse

from aiohttp.test_utils import TestClient, TestServer

from usage_analytics.api import StaticApiKeyValidator, build_context, create_app
from usage_analytics.export.object_store import InMemoryObjectStore
from usage_analytics.storage.adapters import InMemoryAdapter
from usage_analytics.storage.cache import InMemoryCacheStore
from usage_analytics.utils.config import AnalyticsConfig

from tests.fixtures.event_fixtures import EventFixtures, PROJECT_ID

DAY = {"start": "2024-03-15T00:00:00Z", "end": "2024-03-16T00:00:00Z"}


class UnhealthyStorage(InMemoryAdapter):
    async def health_check(self) -> bool:
        raise RuntimeError("disk on fire")


async def make_client(event_bus, metrics, storage=None, export=None, **ingestion):
    config = AnalyticsConfig(
        ingestion={"rate_limit_per_minute": 10, "max_batch_size": 5, "buffer_size": 100, **ingestion},
        export={"object_store": "memory", **(export or {})},
    )
    storage = storage if storage is not None else InMemoryAdapter()
    await storage.register_project(PROJECT_ID)
    context = await build_context(
        config,
        storage=storage,
        cache=InMemoryCacheStore(),
        object_store=InMemoryObjectStore(base_url="http://testserver/downloads", secret="test"),
        api_keys=StaticApiKeyValidator({"key-1": PROJECT_ID, "key-2": "proj-2"}),
        event_bus=event_bus,
        metrics=metrics,
    )
    client = TestClient(TestServer(create_app(context)))
    await client.start_server()
    return client, context


@pytest.fixture
async def api(event_bus, metrics):
    client, context = await make_client(event_bus, metrics)
    yield client, context
    await client.close()


def batch(*events):
    return EventFixtures.create_batch(list(events) or [EventFixtures.create_raw_event()])


class TestHealth:
    async def test_health(self, api):
        client, _ = api
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["checks"] == {"storage": True, "cache": True}

    async def test_unexpected_errors_become_500(self, event_bus, metrics):
        client, _ = await make_client(event_bus, metrics, storage=UnhealthyStorage())
        try:
            resp = await client.get("/health")
            assert resp.status == 500
            body = await resp.json()
            assert body["error"]["code"] == "INTERNAL_ERROR"
            assert "disk on fire" not in body["error"]["message"]
        finally:
            await client.close()


class TestIngestRoutes:
    async def test_batch_accepted(self, api):
        client, context = api
        resp = await client.post("/v1/events/batch", json=batch(), headers={"X-API-Key": "key-1"})

        assert resp.status == 202
        body = await resp.json()
        assert body["accepted"] == 1
        assert body["rateLimit"]["limit"] == 10
        assert context.ingestion.get_buffer_stats() == {PROJECT_ID: 1}

        flushed = await client.post("/v1/flush")
        assert (await flushed.json())["data"]["flushed"] == 1
        assert len(context.storage.get_events()) == 1

    async def test_single_event(self, api):
        client, _ = api
        resp = await client.post(
            "/v1/events", json=EventFixtures.create_raw_event(), headers={"X-API-Key": "key-1"}
        )
        assert resp.status == 202

    async def test_missing_and_unknown_keys(self, api):
        client, _ = api
        resp = await client.post("/v1/events/batch", json=batch())
        assert resp.status == 401

        resp = await client.post("/v1/events/batch", json=batch(), headers={"X-API-Key": "nope"})
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "UNAUTHORIZED"

    async def test_key_for_other_project(self, api):
        client, _ = api
        resp = await client.post("/v1/events/batch", json=batch(), headers={"X-API-Key": "key-2"})
        assert resp.status == 403

    async def test_rate_limited(self, api):
        client, _ = api
        headers = {"X-API-Key": "key-1"}
        events = [EventFixtures.create_raw_event() for _ in range(5)]
        for _ in range(2):
            resp = await client.post("/v1/events/batch", json=batch(*events), headers=headers)
            assert resp.status == 202

        resp = await client.post("/v1/events/batch", json=batch(*events), headers=headers)
        assert resp.status == 429
        assert int(resp.headers["Retry-After"]) >= 1
        body = await resp.json()
        assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["success"] is False
        assert body["accepted"] == 0
        assert body["rejected"] == 5
        assert body["rateLimit"]["exceeded"] is True
        assert body["rateLimit"]["limit"] == 10
        assert "resetAt" in body["rateLimit"]

    async def test_rejected_batch(self, api):
        client, _ = api
        events = [EventFixtures.create_raw_event() for _ in range(6)]
        resp = await client.post("/v1/events/batch", json=batch(*events), headers={"X-API-Key": "key-1"})
        assert resp.status == 400
        body = await resp.json()
        assert body["errors"][0]["eventId"] == "batch"

    async def test_partial_batch_is_accepted(self, api):
        client, _ = api
        bad = EventFixtures.create_raw_event()
        del bad["sessionId"]
        resp = await client.post(
            "/v1/events/batch", json=batch(EventFixtures.create_raw_event(), bad), headers={"X-API-Key": "key-1"}
        )
        assert resp.status == 202
        body = await resp.json()
        assert (body["accepted"], body["rejected"]) == (1, 1)

    async def test_invalid_json(self, api):
        client, _ = api
        resp = await client.post(
            "/v1/events/batch", data="{nope", headers={"X-API-Key": "key-1", "Content-Type": "application/json"}
        )
        assert resp.status == 400

    async def test_stats(self, api):
        client, _ = api
        await client.post("/v1/events/batch", json=batch(), headers={"X-API-Key": "key-1"})
        body = await (await client.get("/v1/stats")).json()
        assert body["data"]["buffers"] == {PROJECT_ID: 1}
        assert body["data"]["metrics"]["counters"]["events_accepted"] == 1


class TestDashboardRoutes:
    @pytest.fixture
    async def seeded(self, api):
        client, context = api
        await context.storage.write_events([
            EventFixtures.create_event("app_open", "u1", "s1", event_id="e1"),
            EventFixtures.create_event("screen_view", "u2", "s2", event_id="e2",
                                       properties={"screen": "home"}),
        ])
        return client

    async def test_dau(self, seeded):
        resp = await seeded.get(f"/v1/projects/{PROJECT_ID}/dashboard/dau", params=DAY)
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["cached"] is False
        assert body["data"][0]["value"] == 2

        again = await (await seeded.get(f"/v1/projects/{PROJECT_ID}/dashboard/dau", params=DAY)).json()
        assert again["cached"] is True

    @pytest.mark.parametrize("metric", ["overview", "mau", "events", "event-counts", "screens", "sessions"])
    async def test_metric_routes(self, seeded, metric):
        resp = await seeded.get(f"/v1/projects/{PROJECT_ID}/dashboard/{metric}", params=DAY)
        assert resp.status == 200

    async def test_funnel(self, seeded):
        resp = await seeded.get(
            f"/v1/projects/{PROJECT_ID}/dashboard/funnel", params={**DAY, "steps": "app_open,screen_view"}
        )
        assert resp.status == 200

    async def test_bad_ranges(self, seeded):
        resp = await seeded.get(
            f"/v1/projects/{PROJECT_ID}/dashboard/dau",
            params={"start": DAY["end"], "end": DAY["start"]},
        )
        assert resp.status == 400

        resp = await seeded.get(f"/v1/projects/{PROJECT_ID}/dashboard/dau", params={"start": "yesterday"})
        assert resp.status == 400

        resp = await seeded.get(
            f"/v1/projects/{PROJECT_ID}/dashboard/retention",
            params={"cohortStartDate": "2024-03-10T00:00:00Z", "cohortEndDate": "2024-03-01T00:00:00Z"},
        )
        assert resp.status == 400

    async def test_retention(self, seeded):
        resp = await seeded.get(
            f"/v1/projects/{PROJECT_ID}/dashboard/retention",
            params={
                "cohortStartDate": "2024-03-14T00:00:00Z",
                "cohortEndDate": "2024-03-15T00:00:00Z",
                "retentionDays": "1,7",
            },
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["data"]["retentionDays"] == [1, 7]

    async def test_rollup_routes(self, seeded):
        resp = await seeded.get(f"/v1/projects/{PROJECT_ID}/metrics", params=DAY)
        assert resp.status == 200
        assert (await resp.json())["data"][0]["timestamp"] == "2024-03-15"

        resp = await seeded.get(f"/v1/projects/{PROJECT_ID}/metrics/dashboard")
        assert resp.status == 200


class TestExportRoutes:
    async def test_export_flow(self, api):
        client, context = api
        await context.storage.write_events([EventFixtures.create_event(event_id="e1")])

        resp = await client.post(
            f"/v1/projects/{PROJECT_ID}/exports",
            json={"reportType": "events", "format": "csv", "dateRange": DAY},
            headers={"X-User-Id": "analyst"},
        )
        assert resp.status == 202
        export_id = (await resp.json())["data"]["exportId"]

        await context.exports.wait_for_pending()
        status = (await (await client.get(f"/v1/projects/{PROJECT_ID}/exports/{export_id}")).json())["data"]
        assert status["status"] == "completed"

        url = urlparse(status["downloadUrl"])
        download = await client.get(f"{url.path}?{url.query}")
        assert download.status == 200
        assert download.headers["Content-Type"].startswith("text/csv")
        assert (await download.text()).splitlines()[1].startswith("e1,")

        tampered = await client.get(f"{url.path}?{url.query.replace('signature=', 'signature=0')}")
        assert tampered.status == 403

        listing = (await (await client.get(f"/v1/projects/{PROJECT_ID}/exports")).json())["data"]
        assert listing["total"] == 1
        assert listing["exports"][0]["userId"] == "analyst"

        resp = await client.delete(f"/v1/projects/{PROJECT_ID}/exports/{export_id}")
        assert resp.status == 200
        resp = await client.get(f"/v1/projects/{PROJECT_ID}/exports/{export_id}")
        assert resp.status == 404

    async def test_export_errors(self, api):
        client, _ = api
        body = {"reportType": "events", "format": "docx", "dateRange": DAY}
        resp = await client.post(f"/v1/projects/{PROJECT_ID}/exports", json=body)
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "INVALID_EXPORT_FORMAT"

        resp = await client.post(f"/v1/projects/{PROJECT_ID}/exports", json={**body, "reportType": "custom"})
        assert resp.status == 400

        resp = await client.post("/v1/projects/unknown/exports", json={**body, "format": "csv"})
        assert resp.status == 404


class TestCostRoutes:
    async def test_track_and_report(self, api):
        client, _ = api
        resp = await client.post("/v1/usage/api", json={
            "userId": "user-1",
            "projectId": PROJECT_ID,
            "model": "claude-3-sonnet",
            "inputTokens": 1_000_000,
            "outputTokens": 0,
        })
        assert resp.status == 200
        assert (await resp.json())["data"]["totalCents"] == 300

        user = (await (await client.get("/v1/costs/users/user-1", params={"period": "day"})).json())["data"]
        assert user["totalCost"] == 3.0

        project = (await (await client.get(f"/v1/costs/projects/{PROJECT_ID}")).json())["data"]
        assert project["byModel"]["claude-3-sonnet"]["inputTokens"] == 1_000_000

        overall = await client.get("/v1/costs/global")
        assert overall.status == 200

        alert = (await (await client.get("/v1/costs/users/user-1/budget", params={"budget": "2"})).json())["data"]
        assert alert["exceeded"] is True

    async def test_cost_validation(self, api):
        client, _ = api
        resp = await client.post("/v1/usage/api", json={"userId": "u", "inputTokens": 1})
        assert resp.status == 400

        resp = await client.get("/v1/costs/users/user-1", params={"period": "decade"})
        assert resp.status == 400

        resp = await client.get("/v1/costs/users/user-1/budget")
        assert resp.status == 400

    async def test_pricing(self, api):
        client, _ = api
        body = await (await client.get("/v1/costs/pricing", params={"model": "claude-3-haiku"})).json()
        assert body["data"] == {"input": 0.25, "output": 1.25}


class TestApiKeys:
    async def test_add_and_revoke(self):
        validator = StaticApiKeyValidator({})
        validator.add_key("key-9", "proj-9")
        assert await validator.authorize("key-9", "proj-9") == "proj-9"
        assert await validator.authorize("key-9", None) == "proj-9"

        assert validator.revoke_key("key-9") is True
        assert validator.revoke_key("key-9") is False
        assert await validator.project_for_key("key-9") is None


async def stalled_overview(project_id, date_range):
    await asyncio.Event().wait()


class TestShutdown:
    """Context teardown with buffered events and a job that never finishes."""

    async def start_stuck_export(self, client, context):
        resp = await client.post(
            "/v1/events/batch",
            json=batch(*[EventFixtures.create_raw_event() for _ in range(3)]),
            headers={"X-API-Key": "key-1"},
        )
        assert resp.status == 202
        context.exports.engine.get_overview = stalled_overview
        created = await context.exports.create_export(PROJECT_ID, "user-1", {
            "reportType": "overview",
            "format": "json",
            "dateRange": DAY,
        })
        await asyncio.sleep(0)
        return created["exportId"]

    async def test_stuck_export_is_failed_after_drain(self, event_bus, metrics):
        storage = InMemoryAdapter()
        client, context = await make_client(
            event_bus, metrics, storage=storage, export={"drain_timeout_seconds": 0.1}
        )
        export_id = await self.start_stuck_export(client, context)

        await context.close()
        await client.close()

        assert len(storage.get_events()) == 3
        assert context.shutdown_manager.errors == []
        record = await context.exports.get_export(PROJECT_ID, export_id)
        assert record.status.value == "failed"

    async def test_events_flushed_when_shutdown_times_out(self, event_bus, metrics):
        storage = InMemoryAdapter()
        client, context = await make_client(
            event_bus, metrics, storage=storage, export={"drain_timeout_seconds": 5}
        )
        context.shutdown_manager.timeout = 0.3
        await self.start_stuck_export(client, context)

        await context.close()
        await client.close()

        assert len(storage.get_events()) == 3
        assert "shutdown timed out" in context.shutdown_manager.errors
