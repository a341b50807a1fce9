"""
Database-backed VersionGuard for production use (Postgres/Supabase).

Why: Event handlers run as independent invocations without shared memory.
The per-principal version must therefore live in a shared store that supports
an atomic admit-and-advance. This guard keeps one row per principal in
`public.claims_sync_versions` and performs the compare-and-swap inside a
short transaction that holds the row lock only for the comparison itself,
never across the remote claims write.

Schema (see supabase/migrations/*_claims_sync.sql):
    principal_id text primary key,
    stamp bigint, sequence bigint,   -- (-1, -1) means "nothing admitted yet"
    source text,                     -- "revision" or "time"
    claims jsonb,
    pending bigint,                  -- set until the claims write is confirmed
    updated_at timestamptz

Note: This module uses psycopg3. Tests can use `InMemoryVersionGuard`.
"""
from __future__ import annotations

import logging
import os
import re
from typing import Optional

try:
    import psycopg
    from psycopg import sql as _sql
    from psycopg.rows import dict_row
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .ports import REVISION, Admission, ClaimsSet, GuardState, SyncVersion, VersionGuardUnavailableError
from .version_guard import STALE

LOG = logging.getLogger(__name__)

_EMPTY = (-1, -1)
_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


class DBVersionGuard:
    """Postgres-backed version guard.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string for the sync worker role.
    table:
        Fully qualified table name. Defaults to `public.claims_sync_versions`.
    timeout_seconds:
        Upper bound for connecting and for each statement.
    """

    def __init__(
        self,
        dsn: str | None = None,
        table: str = "public.claims_sync_versions",
        sequence: str = "public.claims_sync_sequence",
        timeout_seconds: int = 5,
    ) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBVersionGuard")
        self._dsn = dsn or os.getenv("CLAIMS_SYNC_DATABASE_URL") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBVersionGuard")
        for ident in (table, sequence):
            if not _TABLE_RE.match(ident or ""):
                raise ValueError("Invalid table name")
        self._table = _qualified(table)
        self._sequence = sequence
        self._timeout = int(timeout_seconds)

    def _connect(self, **kwargs):
        return psycopg.connect(
            self._dsn,
            connect_timeout=self._timeout,
            options=f"-c statement_timeout={self._timeout * 1000}",
            row_factory=dict_row,
            **kwargs,
        )

    def admit(self, principal_id: str, candidate: SyncVersion, claims: ClaimsSet) -> Admission:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        # Materialize the row first so the lock below always has a target.
                        cur.execute(
                            _sql.SQL(
                                "insert into {} (principal_id, stamp, sequence, claims) "
                                "values (%s, -1, -1, null) on conflict (principal_id) do nothing"
                            ).format(self._table),
                            (principal_id,),
                        )
                        cur.execute(
                            _sql.SQL(
                                "select stamp, sequence, source, claims, pending from {} "
                                "where principal_id = %s for update"
                            ).format(self._table),
                            (principal_id,),
                        )
                        previous = _state_from_row(cur.fetchone())
                        if previous is not None and candidate <= previous.version:
                            return Admission(accepted=False, version=candidate, previous=previous, reason=STALE)
                        cur.execute(
                            _sql.SQL(
                                "update {} set stamp = %s, sequence = %s, source = %s, claims = %s, "
                                "pending = nextval(%s::regclass), updated_at = now() "
                                "where principal_id = %s returning pending"
                            ).format(self._table),
                            (
                                candidate.stamp,
                                candidate.sequence,
                                candidate.source,
                                Json(claims.as_dict()),
                                self._sequence,
                                principal_id,
                            ),
                        )
                        token = int(cur.fetchone()["pending"])
            return Admission(accepted=True, version=candidate, previous=previous, token=token)
        except psycopg.Error as exc:
            LOG.warning("claims_sync.guard_unavailable op=admit error=%s", type(exc).__name__)
            raise VersionGuardUnavailableError("admit_failed") from exc

    def release(self, principal_id: str, admission: Admission) -> None:
        if not admission.accepted:
            return
        prev = admission.previous
        stamp, sequence = (prev.version.stamp, prev.version.sequence) if prev else _EMPTY
        source = prev.version.source if prev else REVISION
        claims = Json(prev.claims.as_dict()) if prev else None
        pending = prev.pending if prev else None
        ours = admission.version
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor() as cur:
                    # Only undo our own admission; a newer one must survive.
                    cur.execute(
                        _sql.SQL(
                            "update {} set stamp = %s, sequence = %s, source = %s, claims = %s, pending = %s, "
                            "updated_at = now() "
                            "where principal_id = %s and stamp = %s and sequence = %s and source = %s"
                        ).format(self._table),
                        (
                            stamp,
                            sequence,
                            source,
                            claims,
                            pending,
                            principal_id,
                            ours.stamp,
                            ours.sequence,
                            ours.source,
                        ),
                    )
                    LOG.debug("claims_sync.guard_release principal=%s rowcount=%s", principal_id, cur.rowcount)
        except psycopg.Error as exc:
            LOG.warning("claims_sync.guard_unavailable op=release error=%s", type(exc).__name__)
            raise VersionGuardUnavailableError("release_failed") from exc

    def current(self, principal_id: str) -> Optional[GuardState]:
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        _sql.SQL(
                            "select stamp, sequence, source, claims, pending from {} where principal_id = %s"
                        ).format(self._table),
                        (principal_id,),
                    )
                    return _state_from_row(cur.fetchone())
        except psycopg.Error as exc:
            raise VersionGuardUnavailableError("read_failed") from exc

    def mark_pending(self, principal_id: str) -> Optional[int]:
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        _sql.SQL(
                            "update {} set pending = nextval(%s::regclass), updated_at = now() "
                            "where principal_id = %s and claims is not null returning pending"
                        ).format(self._table),
                        (self._sequence, principal_id),
                    )
                    row = cur.fetchone()
            return int(row["pending"]) if row else None
        except psycopg.Error as exc:
            LOG.warning("claims_sync.guard_unavailable op=mark_pending error=%s", type(exc).__name__)
            raise VersionGuardUnavailableError("mark_pending_failed") from exc

    def clear_pending(self, principal_id: str, token: int) -> bool:
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        _sql.SQL(
                            "update {} set pending = null, updated_at = now() "
                            "where principal_id = %s and pending = %s"
                        ).format(self._table),
                        (principal_id, token),
                    )
                    return cur.rowcount == 1
        except psycopg.Error as exc:
            LOG.warning("claims_sync.guard_unavailable op=clear_pending error=%s", type(exc).__name__)
            raise VersionGuardUnavailableError("clear_pending_failed") from exc

    def next_sequence(self) -> int:
        try:
            with self._connect(autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute("select nextval(%s::regclass) as seq", (self._sequence,))
                    row = cur.fetchone()
            return int(row["seq"])
        except psycopg.Error as exc:
            raise VersionGuardUnavailableError("sequence_failed") from exc


def _qualified(table: str):
    if "." in table:
        schema, name = table.split(".", 1)
    else:
        schema, name = "public", table
    return _sql.Identifier(schema, name)


def _state_from_row(row: Optional[dict]) -> Optional[GuardState]:
    if not row or row.get("claims") is None:
        return None
    if (int(row["stamp"]), int(row["sequence"])) == _EMPTY:
        return None
    pending = row.get("pending")
    return GuardState(
        version=SyncVersion(
            stamp=int(row["stamp"]),
            sequence=int(row["sequence"]),
            source=row.get("source") or REVISION,
        ),
        claims=ClaimsSet.from_mapping(row["claims"]),
        pending=None if pending is None else int(pending),
    )


__all__ = ["DBVersionGuard"]
