"""
Postgres event queue for claims synchronization (`public.claims_sync_events`).

Intent:
    Provide the at-least-once delivery the router relies on: producers
    (profile trigger, ingress webhook, backfill tool) insert rows, the worker
    leases one row at a time, and the outcome decides whether the row is
    deleted (ack), requeued with backoff (transient) or kept as `failed`.

Leases expire, so a crashed worker's event becomes visible again and is
redelivered. The router is idempotent, so a redelivery is harmless.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Optional
from uuid import uuid4

try:  # pragma: no cover - optional dependency in some environments
    import psycopg
    from psycopg import Connection
    from psycopg.rows import dict_row
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore
    Connection = object  # type: ignore
    HAVE_PSYCOPG = False

LOG = logging.getLogger(__name__)


def _require_psycopg() -> None:
    if not HAVE_PSYCOPG:
        raise RuntimeError("psycopg3 is required for the claims sync queue")


@dataclass
class QueuedEvent:
    """Minimal snapshot of an event leased from the queue."""

    id: str
    principal_id: str
    retry_count: int
    lease_key: str
    payload: dict


def enqueue(conn: Connection, payload: dict) -> str:
    """Insert one event payload and return its id. Caller owns the transaction."""
    with conn.cursor() as cur:
        cur.execute(
            """
            insert into public.claims_sync_events (principal_id, payload)
            values (%s, %s)
            returning id::text
            """,
            (str(payload.get("principal_id") or ""), Json(payload)),
        )
        row = cur.fetchone()
    if isinstance(row, dict):
        return str(row["id"])
    return str(row[0]) if row else ""


def enqueue_event(dsn: str, payload: dict, *, timeout_seconds: int = 5) -> str:
    """Open a short autocommit connection and enqueue `payload`."""
    _require_psycopg()
    with psycopg.connect(dsn, autocommit=True, connect_timeout=timeout_seconds) as conn:  # type: ignore[arg-type]
        return enqueue(conn, payload)


def lease_next(conn: Connection, *, now: datetime, lease_seconds: int) -> Optional[QueuedEvent]:
    """Lease the next visible event (queued, or leased with an expired lease)."""
    lease_key = str(uuid4())
    lease_until = now + timedelta(seconds=lease_seconds)
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            with candidate as (
                select id
                  from public.claims_sync_events
                 where (status = 'queued' and visible_at <= %s)
                    or (status = 'leased' and leased_until is not null and leased_until <= %s)
                 order by visible_at asc, created_at asc
                 limit 1
                 for update skip locked
            )
            update public.claims_sync_events as ev
               set status = 'leased',
                   lease_key = %s::uuid,
                   leased_until = %s,
                   updated_at = now()
              from candidate
             where ev.id = candidate.id
            returning ev.id::text as id,
                      ev.principal_id,
                      ev.retry_count,
                      ev.payload
            """,
            (now, now, lease_key, lease_until),
        )
        row = cur.fetchone()
    if not row:
        return None
    return QueuedEvent(
        id=row["id"],
        principal_id=row["principal_id"] or "",
        retry_count=int(row["retry_count"]),
        lease_key=lease_key,
        payload=row["payload"] if isinstance(row["payload"], dict) else {},
    )


def ack(conn: Connection, event: QueuedEvent) -> None:
    """Delete a handled event, but only while we still hold its lease."""
    with conn.cursor() as cur:
        cur.execute(
            "delete from public.claims_sync_events where id = %s::uuid and lease_key = %s::uuid",
            (event.id, event.lease_key),
        )
        LOG.debug("Deleted event %s rowcount=%s", event.id, cur.rowcount)


def nack_retry(conn: Connection, event: QueuedEvent, *, now: datetime, backoff_seconds: int) -> datetime:
    """Requeue with exponential backoff and return the next visibility timestamp."""
    delay_seconds = backoff_seconds * (2 ** event.retry_count)
    next_visible = now + timedelta(seconds=delay_seconds)
    with conn.cursor() as cur:
        cur.execute(
            """
            update public.claims_sync_events
               set status = 'queued',
                   retry_count = %s,
                   visible_at = %s,
                   lease_key = null,
                   leased_until = null,
                   updated_at = now()
             where id = %s::uuid and lease_key = %s::uuid
            """,
            (event.retry_count + 1, next_visible, event.id, event.lease_key),
        )
    return next_visible


def mark_failed(conn: Connection, event: QueuedEvent, *, error_code: str) -> None:
    """Keep a terminal failure on the queue row so operators can inspect it."""
    with conn.cursor() as cur:
        cur.execute(
            """
            update public.claims_sync_events
               set status = 'failed',
                   error_code = %s,
                   lease_key = null,
                   leased_until = null,
                   updated_at = now()
             where id = %s::uuid and lease_key = %s::uuid
            """,
            (_truncate(error_code), event.id, event.lease_key),
        )


def _truncate(message: str, limit: int = 200) -> str:
    text = (message or "").strip()
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


__all__ = [
    "QueuedEvent",
    "enqueue",
    "enqueue_event",
    "lease_next",
    "ack",
    "nack_retry",
    "mark_failed",
]
