"""
Readiness probe for the claims sync pipeline.

Checks that the worker's database role can see the queue, the version
register and the profiles table, and reports how many events are waiting or
parked as failed. The blocking psycopg work runs in the default executor so
the FastAPI handler can simply await `probe()`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional

try:  # pragma: no cover - optional dependency
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from backend.claims_sync.config import resolve_sync_dsn

REQUIRED_TABLES = (
    "public.claims_sync_events",
    "public.claims_sync_versions",
    "public.profiles",
)


@dataclass(frozen=True)
class ComponentCheck:
    name: str
    ok: bool
    detail: Optional[str] = None

    @property
    def status(self) -> str:
        return "ok" if self.ok else "failed"


@dataclass(frozen=True)
class HealthReport:
    db_role: Optional[str] = None
    checks: List[ComponentCheck] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.checks) and all(c.ok for c in self.checks)

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "degraded"


def _table_checks(cur) -> List[ComponentCheck]:
    found = []
    for table in REQUIRED_TABLES:
        cur.execute("select to_regclass(%s) is not null as present", (table,))
        present = bool((cur.fetchone() or {}).get("present"))
        found.append(ComponentCheck(name=f"table:{table}", ok=present, detail=None if present else "missing"))
    return found


def _backlog_check(cur) -> ComponentCheck:
    cur.execute(
        """
        select count(*) filter (where status in ('queued', 'leased')) as pending,
               count(*) filter (where status = 'failed') as failed
          from public.claims_sync_events
        """
    )
    row = cur.fetchone() or {}
    return ComponentCheck(
        name="queue_backlog",
        ok=True,
        detail=f"pending={row.get('pending', 0)} failed={row.get('failed', 0)}",
    )


class ClaimsSyncHealthService:
    def __init__(self, dsn_resolver: Callable[[], str] | None = None):
        self._dsn_resolver = dsn_resolver or resolve_sync_dsn

    async def probe(self) -> HealthReport:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.probe_blocking)

    def probe_blocking(self) -> HealthReport:
        if not HAVE_PSYCOPG:
            return HealthReport(checks=[ComponentCheck(name="db_connect", ok=False, detail="psycopg3 not installed")])
        role: Optional[str] = None
        try:
            with psycopg.connect(self._dsn_resolver(), row_factory=dict_row, connect_timeout=5) as conn:  # type: ignore[arg-type]
                with conn.cursor() as cur:
                    cur.execute("select current_user as role")
                    role = (cur.fetchone() or {}).get("role")
                    checks = _table_checks(cur)
                    # Counting needs the queue table; skip it when anything is missing.
                    if all(c.ok for c in checks):
                        checks.append(_backlog_check(cur))
        except psycopg.Error as exc:
            return HealthReport(
                db_role=role,
                checks=[ComponentCheck(name="db_connect", ok=False, detail=type(exc).__name__)],
            )
        return HealthReport(db_role=role, checks=checks)


CLAIMS_SYNC_HEALTH_SERVICE = ClaimsSyncHealthService()

__all__ = [
    "ComponentCheck",
    "HealthReport",
    "ClaimsSyncHealthService",
    "CLAIMS_SYNC_HEALTH_SERVICE",
    "REQUIRED_TABLES",
]
