"""
Claims sync worker: queue disposition per outcome.

Why:
    The router decides *what* happened; the worker decides what happens to
    the queue row. Guards:
    - accepted and rejected outcomes delete the row (ack)
    - transient failures are requeued with backoff until retries run out
    - permanent failures and malformed payloads stay visible as `failed`
"""
from __future__ import annotations

from datetime import datetime, timezone
import types

import pytest

from backend.claims_sync import queue
from backend.claims_sync.config import load_sync_config
from backend.claims_sync.ports import ClaimsWriteTransientError, ProfileRecord
from backend.claims_sync.profile_store import InMemoryProfileStore
from backend.claims_sync.router import EventRouter
from backend.claims_sync.telemetry import RecordingOutcomeSink, counter_snapshot
from backend.claims_sync.version_guard import InMemoryVersionGuard
from backend.claims_sync.workers import process_claims_sync_events as worker
from backend.identity_access.admin_client import InMemoryClaimsWriter

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class _Conn:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _QueueSpy:
    def __init__(self, event: queue.QueuedEvent | None):
        self.event = event
        self.calls: list[tuple] = []

    def lease_next(self, conn, *, now, lease_seconds):
        return self.event

    def ack(self, conn, event):
        self.calls.append(("ack", event.id))

    def nack_retry(self, conn, event, *, now, backoff_seconds):
        self.calls.append(("retry", event.id, backoff_seconds))
        return now

    def mark_failed(self, conn, event, *, error_code):
        self.calls.append(("failed", event.id, error_code))


@pytest.fixture
def spy_factory(monkeypatch: pytest.MonkeyPatch):
    fake_psycopg = types.SimpleNamespace(connect=lambda *a, **k: _Conn())
    monkeypatch.setattr(worker, "psycopg", fake_psycopg)
    monkeypatch.setattr(queue, "_require_psycopg", lambda: None)

    def _install(event: queue.QueuedEvent | None) -> _QueueSpy:
        spy = _QueueSpy(event)
        for name in ("lease_next", "ack", "nack_retry", "mark_failed"):
            monkeypatch.setattr(queue, name, getattr(spy, name))
        return spy

    return _install


def _event(payload: dict, retry_count: int = 0) -> queue.QueuedEvent:
    return queue.QueuedEvent(
        id="ev-1",
        principal_id=str(payload.get("principal_id") or ""),
        retry_count=retry_count,
        lease_key="lease-1",
        payload=payload,
    )


def _router(writer=None, store=None) -> EventRouter:
    return EventRouter(
        profiles=store or InMemoryProfileStore(),
        guard=InMemoryVersionGuard(),
        writer=writer or InMemoryClaimsWriter(),
        sink=RecordingOutcomeSink(),
    )


_UPDATED = {
    "kind": "profile_updated",
    "principal_id": "sub-1",
    "after": {"role": "teacher", "display_name": "A", "email": "a@x.com", "revision": 1},
}


class _DownWriter:
    def apply(self, principal_id, claims):
        raise ClaimsWriteTransientError("keycloak_status_503")


def test_empty_queue_returns_false(spy_factory):
    spy_factory(None)
    assert worker.run_once(dsn="postgresql://fake", router=_router(), cfg=load_sync_config(), now=NOW) is False


def test_accepted_event_is_acknowledged(spy_factory):
    spy = spy_factory(_event(_UPDATED))
    writer = InMemoryClaimsWriter()
    assert worker.run_once(dsn="postgresql://fake", router=_router(writer=writer), cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("ack", "ev-1")]
    assert writer.claims["sub-1"].role == "teacher"
    assert counter_snapshot("claims_sync_worker_events_total") == {(("status", "accepted"),): 1}


def test_missing_profile_is_acknowledged(spy_factory):
    spy = spy_factory(_event({"kind": "principal_created", "principal_id": "sub-404"}))
    worker.run_once(dsn="postgresql://fake", router=_router(), cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("ack", "ev-1")]
    assert counter_snapshot("claims_sync_worker_events_total") == {(("status", "rejected"),): 1}


def test_transient_failure_is_requeued_with_backoff(spy_factory, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLAIMS_SYNC_BACKOFF_SECONDS", "7")
    spy = spy_factory(_event(_UPDATED, retry_count=1))
    worker.run_once(dsn="postgresql://fake", router=_router(writer=_DownWriter()), cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("retry", "ev-1", 7)]


def test_retries_exhausted_marks_failed(spy_factory, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLAIMS_SYNC_MAX_RETRIES", "2")
    spy = spy_factory(_event(_UPDATED, retry_count=2))
    worker.run_once(dsn="postgresql://fake", router=_router(writer=_DownWriter()), cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("failed", "ev-1", "retries_exhausted:claims_write_unavailable")]


def test_permanent_failure_marks_failed(spy_factory):
    store = InMemoryProfileStore()
    store.put(ProfileRecord(principal_id="sub-1", role="admin", revision=1))

    class _Rejecting:
        def apply(self, principal_id, claims):
            from backend.claims_sync.ports import ClaimsWritePermanentError

            raise ClaimsWritePermanentError("principal_not_found")

    spy = spy_factory(_event({"kind": "principal_created", "principal_id": "sub-1"}))
    worker.run_once(dsn="postgresql://fake", router=_router(writer=_Rejecting(), store=store), cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("failed", "ev-1", "claims_write_rejected")]


def test_malformed_payload_marks_failed_without_routing(spy_factory):
    spy = spy_factory(_event({"kind": "profile_updated", "principal_id": "sub-1"}))
    router = _router()
    worker.run_once(dsn="postgresql://fake", router=router, cfg=load_sync_config(), now=NOW)
    assert spy.calls == [("failed", "ev-1", "invalid_event:after_missing")]
    assert router.sink.outcomes == []
    assert counter_snapshot("claims_sync_worker_events_total") == {(("status", "invalid"),): 1}
