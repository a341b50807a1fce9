"""
Claims sync worker: leases queued events and drives them through the router.

Intent:
    Provide a minimal, framework-free worker that:
      1. Leases the next visible event from `claims_sync_events`.
      2. Parses it and hands it to `EventRouter.handle`.
      3. Acknowledges (deletes) the event, requeues it with exponential
         backoff on transient failures, or marks it failed.

    The worker is invoked from docker-compose via:
        python -m backend.claims_sync.workers.process_claims_sync_events
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from typing import Optional

from backend.claims_sync import queue
from backend.claims_sync.config import SyncConfig, load_sync_config, resolve_sync_dsn
from backend.claims_sync.events import parse_event
from backend.claims_sync.ports import EventPayloadError, SyncOutcome
from backend.claims_sync.router import EventRouter
from backend.claims_sync.telemetry import increment_counter

try:  # pragma: no cover - optional dependency in some environments
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

LOG = logging.getLogger(__name__)


def run_once(
    *,
    dsn: str,
    router: EventRouter,
    cfg: SyncConfig,
    now: Optional[datetime] = None,
) -> bool:
    """
    Lease and process at most one pending event.

    Parameters:
        dsn: Postgres connection string for the worker role.
        router: Router wired with profile store, version guard and claims writer.
        cfg: Retry, backoff and lease settings.
        now: Optional UTC timestamp used for deterministic tests.

    Behavior:
        - `False` is returned when no event is visible.
        - The lease is committed before the router runs, so no row lock is
          held across the remote profile read or claims write.
        - Transient outcomes are requeued until `cfg.max_retries` is reached,
          then the row is kept as `failed` with `retries_exhausted`.
    """
    queue._require_psycopg()
    tick = now or datetime.now(tz=timezone.utc)

    with psycopg.connect(dsn, autocommit=True) as conn:  # type: ignore[arg-type]
        event = queue.lease_next(conn, now=tick, lease_seconds=cfg.lease_seconds)
        if event is None:
            return False

        try:
            parsed = parse_event(event.payload)
        except EventPayloadError as exc:
            LOG.warning("claims_sync.invalid_event id=%s reason=%s", event.id, exc)
            increment_counter("claims_sync_worker_events_total", status="invalid")
            queue.mark_failed(conn, event, error_code=f"invalid_event:{exc}")
            return True

        outcome = router.handle(parsed)
        _settle(conn, event=event, outcome=outcome, cfg=cfg, now=tick)
    return True


def _settle(conn, *, event: queue.QueuedEvent, outcome: SyncOutcome, cfg: SyncConfig, now: datetime) -> None:
    """Apply the outcome's disposition to the queue row."""
    if outcome.should_retry:
        if event.retry_count < cfg.max_retries:
            next_visible = queue.nack_retry(conn, event, now=now, backoff_seconds=cfg.backoff_seconds)
            increment_counter("claims_sync_worker_events_total", status="retrying")
            LOG.warning(
                "Claims sync retry scheduled for principal=%s event=%s retry=%s next_visible_at=%s",
                event.principal_id,
                event.id,
                event.retry_count + 1,
                next_visible.isoformat(),
            )
            return
        increment_counter("claims_sync_worker_events_total", status="failed")
        queue.mark_failed(conn, event, error_code=f"retries_exhausted:{outcome.reason}")
        return
    if outcome.decision == "failed":
        increment_counter("claims_sync_worker_events_total", status="failed")
        queue.mark_failed(conn, event, error_code=outcome.reason)
        return
    increment_counter("claims_sync_worker_events_total", status=outcome.decision)
    queue.ack(conn, event)


def run_forever(*, dsn: str, router: EventRouter, cfg: SyncConfig, poll_interval: float = 0.5) -> None:
    """Continuously process events until interrupted."""
    import time

    while True:
        try:
            processed = run_once(dsn=dsn, router=router, cfg=cfg)
        except psycopg.OperationalError as exc:
            LOG.warning("claims_sync.queue_unavailable error=%s", type(exc).__name__)
            processed = False
        if not processed:
            time.sleep(poll_interval)


def main() -> None:
    """CLI entrypoint for the worker."""
    level_name = os.getenv("LOG_LEVEL", "INFO")
    normalized_level = level_name.strip().upper() or "INFO"
    logging.basicConfig(level=normalized_level)

    from backend.claims_sync.wiring import build_router

    cfg = load_sync_config()
    dsn = resolve_sync_dsn()
    LOG.info(
        "claims_sync.worker_started guard=%s max_retries=%s lease_seconds=%s",
        cfg.guard_backend,
        cfg.max_retries,
        cfg.lease_seconds,
    )
    router = build_router(cfg, dsn=dsn)
    poll_interval = float(os.getenv("CLAIMS_SYNC_POLL_INTERVAL", "0.5"))
    run_forever(dsn=dsn, router=router, cfg=cfg, poll_interval=poll_interval)


if __name__ == "__main__":
    main()
