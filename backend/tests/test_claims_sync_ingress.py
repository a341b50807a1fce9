"""
Claims sync ingress: webhook and health endpoint contract.

Why:
    The webhook is the only way external triggers reach the queue. Guards:
    - shared-secret authentication (401 without/with wrong token)
    - malformed payloads are refused with 400 and never enqueued
    - accepted events are durable before 202 is returned; queue outages map to 503
    - responses are private and never cached
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

from backend.claims_sync.workers import health as worker_health
from backend.web import main
from backend.web.routes import claims_events

pytestmark = pytest.mark.anyio("asyncio")

TOKEN = "test-webhook-token"


@pytest.fixture
def enqueued(monkeypatch: pytest.MonkeyPatch) -> list:
    monkeypatch.setenv("CLAIMS_SYNC_WEBHOOK_TOKEN", TOKEN)
    calls: list = []

    def _fake_enqueue(dsn, payload, timeout_seconds=5):
        calls.append(payload)
        return len(calls)

    monkeypatch.setattr(claims_events, "enqueue_event", _fake_enqueue)
    return calls


async def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


async def test_missing_token_is_unauthenticated(enqueued: list):
    async with (await _client()) as client:
        r = await client.post("/internal/claims-sync/events", json={"kind": "principal_created", "principal_id": "p"})
    assert r.status_code == 401
    assert r.headers.get("Cache-Control") == "private, no-store"
    assert enqueued == []


async def test_wrong_token_is_unauthenticated(enqueued: list):
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            json={"kind": "principal_created", "principal_id": "p"},
            headers={claims_events.TOKEN_HEADER: "nope"},
        )
    assert r.status_code == 401


async def test_unconfigured_token_rejects_everything(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("CLAIMS_SYNC_WEBHOOK_TOKEN", raising=False)
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            json={"kind": "principal_created", "principal_id": "p"},
            headers={claims_events.TOKEN_HEADER: ""},
        )
    assert r.status_code == 401


async def test_invalid_json_is_bad_request(enqueued: list):
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            content=b"{not json",
            headers={claims_events.TOKEN_HEADER: TOKEN, "Content-Type": "application/json"},
        )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_json"}


async def test_invalid_event_is_bad_request(enqueued: list):
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            json={"kind": "profile_updated", "principal_id": "p"},
            headers={claims_events.TOKEN_HEADER: TOKEN},
        )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_event", "detail": "after_missing"}
    assert enqueued == []


async def test_valid_event_is_enqueued(enqueued: list):
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            json={
                "kind": "profile_updated",
                "principal_id": "sub-1",
                "after": {"role": "admin", "display_name": "A", "email": "a@x.com", "revision": 2},
            },
            headers={claims_events.TOKEN_HEADER: TOKEN},
        )
    assert r.status_code == 202
    assert r.json() == {"id": 1, "kind": "profile_updated"}
    assert enqueued[0]["after"]["role"] == "admin"
    assert enqueued[0]["after"]["revision"] == 2


async def test_queue_outage_is_service_unavailable(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLAIMS_SYNC_WEBHOOK_TOKEN", TOKEN)

    def _down(*args, **kwargs):
        raise ConnectionError("db down")

    monkeypatch.setattr(claims_events, "enqueue_event", _down)
    async with (await _client()) as client:
        r = await client.post(
            "/internal/claims-sync/events",
            json={"kind": "principal_created", "principal_id": "p"},
            headers={claims_events.TOKEN_HEADER: TOKEN},
        )
    assert r.status_code == 503
    assert r.json() == {"error": "queue_unavailable"}


class _FakeHealthService:
    def __init__(self, report: worker_health.HealthReport):
        self._report = report
        self.probe_calls = 0

    async def probe(self) -> worker_health.HealthReport:
        self.probe_calls += 1
        return self._report


@pytest.mark.parametrize("table_ok,expected_status,expected_code", [(True, "healthy", 200), (False, "degraded", 503)])
async def test_health_endpoint_maps_status(
    monkeypatch: pytest.MonkeyPatch, table_ok: bool, expected_status: str, expected_code: int
):
    monkeypatch.setenv("CLAIMS_SYNC_WEBHOOK_TOKEN", TOKEN)
    fake = _FakeHealthService(
        worker_health.HealthReport(
            db_role="gustav_claims_sync",
            checks=[worker_health.ComponentCheck(name="table:public.claims_sync_events", ok=table_ok)],
        )
    )
    monkeypatch.setattr(worker_health, "CLAIMS_SYNC_HEALTH_SERVICE", fake)
    async with (await _client()) as client:
        r = await client.get("/internal/health/claims-sync", headers={claims_events.TOKEN_HEADER: TOKEN})
    assert r.status_code == expected_code
    body = r.json()
    assert body["status"] == expected_status
    assert body["dbRole"] == "gustav_claims_sync"
    assert body["checks"][0] == {
        "check": "table:public.claims_sync_events",
        "status": "ok" if table_ok else "failed",
        "detail": None,
    }
    assert fake.probe_calls == 1


async def test_report_without_checks_is_degraded():
    assert worker_health.HealthReport().status == "degraded"


async def test_health_endpoint_requires_token(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLAIMS_SYNC_WEBHOOK_TOKEN", TOKEN)
    async with (await _client()) as client:
        r = await client.get("/internal/health/claims-sync")
    assert r.status_code == 401
