"""
Profile store gateways: Postgres-backed reads and an in-memory variant.

The gateway is a read-only point lookup. Eventual-consistency reads are
acceptable because the pipeline is idempotent and monotonic. Reads are
bounded by a connect and statement timeout; timeouts and connection errors
surface as `ProfileStoreTransientError`.
"""
from __future__ import annotations

import logging
import os
from typing import Dict, Optional

try:
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .ports import ProfileRecord, ProfileStoreTransientError

LOG = logging.getLogger(__name__)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._data: Dict[str, ProfileRecord] = {}

    def put(self, profile: ProfileRecord) -> None:
        self._data[profile.principal_id] = profile

    def fetch(self, principal_id: str) -> Optional[ProfileRecord]:
        return self._data.get(principal_id)


class DBProfileStore:
    """Read `public.profiles` rows by principal id."""

    def __init__(self, dsn: str | None = None, timeout_seconds: int = 5) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBProfileStore")
        self._dsn = dsn or os.getenv("CLAIMS_SYNC_DATABASE_URL") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBProfileStore")
        self._timeout = int(timeout_seconds)

    def fetch(self, principal_id: str) -> Optional[ProfileRecord]:
        try:
            with psycopg.connect(
                self._dsn,
                autocommit=True,
                connect_timeout=self._timeout,
                options=f"-c statement_timeout={self._timeout * 1000}",
                row_factory=dict_row,
            ) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        select id as principal_id,
                               role,
                               display_name,
                               email,
                               revision,
                               updated_at
                          from public.profiles
                         where id = %s
                        """,
                        (principal_id,),
                    )
                    row = cur.fetchone()
        except psycopg.Error as exc:
            LOG.warning("claims_sync.profile_store_unavailable principal=%s error=%s", principal_id, type(exc).__name__)
            raise ProfileStoreTransientError("profile_read_failed") from exc
        if not row:
            return None
        return ProfileRecord.from_mapping(row, principal_id=principal_id)


__all__ = ["InMemoryProfileStore", "DBProfileStore"]
