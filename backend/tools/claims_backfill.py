"""Backfill and verify Keycloak claims against stored profiles.

Why:
    Claims converge through events. When events were lost before the queue
    existed, or a reconcile write could not complete, an operator needs a
    way to compare the identity store with the profile store and to push
    fresh sync events for principals that drifted.

Usage:
    python -m backend.tools.claims_backfill enqueue --db-dsn ... --all
    python -m backend.tools.claims_backfill enqueue --db-dsn ... -p <sub> -p <sub>
    python -m backend.tools.claims_backfill verify --db-dsn ... --all [--enqueue-drift]

Notes:
    - Idempotent: enqueued events go through the version guard, so repeated
      runs never regress claims.
    - `verify` reads Keycloak with admin credentials from the environment
      (KC_BASE_URL, KC_REALM, KC_ADMIN_CLIENT_ID/SECRET).
"""

from __future__ import annotations

from typing import Iterable, List

import click

from backend.claims_sync.events import event_to_json
from backend.claims_sync.ports import ClaimsSyncError, PrincipalCreated
from backend.claims_sync.profile_store import DBProfileStore
from backend.claims_sync.queue import enqueue as enqueue_payload
from backend.claims_sync.resolver import resolve
from backend.identity_access.admin_client import AdminClient, claims_from_attributes

try:  # pragma: no cover - optional dependency for unit tests
    import psycopg  # type: ignore
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore


def _ensure_psycopg() -> None:
    if psycopg is None:  # pragma: no cover - defensive guard in test envs
        raise click.ClickException("psycopg is required for the claims backfill tool")


def _all_principals(conn) -> List[str]:
    with conn.cursor() as cur:
        cur.execute("select id from public.profiles order by id")
        return [str(r[0]) for r in cur.fetchall()]


def _enqueue_created(conn, principals: Iterable[str]) -> int:
    count = 0
    for principal_id in principals:
        enqueue_payload(conn, event_to_json(PrincipalCreated(principal_id=principal_id)))
        count += 1
    return count


def _reset_guard(conn, principals: Iterable[str]) -> int:
    """Forget admitted versions so the next sync for these principals is accepted."""
    with conn.cursor() as cur:
        cur.execute(
            "delete from public.claims_sync_versions where principal_id = any(%s)",
            (list(principals),),
        )
        return cur.rowcount or 0


def _select_principals(conn, principals: tuple[str, ...], select_all: bool) -> List[str]:
    if select_all:
        return _all_principals(conn)
    if not principals:
        raise click.ClickException("Please provide --principal or --all")
    return [p.strip() for p in principals if p.strip()]


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli() -> None:
    """Claims sync maintenance commands."""


@cli.command()
@click.option("--db-dsn", required=True, help="DSN with INSERT rights on public.claims_sync_events.")
@click.option("-p", "--principal", "principals", multiple=True, help="Principal id (repeatable).")
@click.option("--all", "select_all", is_flag=True, help="Enqueue every principal with a profile.")
@click.option("--reset-guard", is_flag=True, help="Forget admitted versions first (repairs drift at equal versions).")
def enqueue(db_dsn: str, principals: tuple[str, ...], select_all: bool, reset_guard: bool) -> None:
    """Enqueue principal_created events so the worker re-syncs claims."""
    _ensure_psycopg()
    with psycopg.connect(db_dsn, autocommit=True) as conn:  # type: ignore[arg-type]
        targets = _select_principals(conn, principals, select_all)
        if reset_guard and targets:
            _reset_guard(conn, targets)
        count = _enqueue_created(conn, targets)
    click.echo(f"Enqueued {count} event(s).")


@cli.command()
@click.option("--db-dsn", required=True, help="DSN with SELECT rights on public.profiles.")
@click.option("-p", "--principal", "principals", multiple=True, help="Principal id (repeatable).")
@click.option("--all", "select_all", is_flag=True, help="Verify every principal with a profile.")
@click.option("--enqueue-drift", is_flag=True, help="Enqueue sync events for drifted principals.")
@click.option("--timeout", type=float, default=10.0, show_default=True, help="HTTP timeout for Keycloak calls")
def verify(db_dsn: str, principals: tuple[str, ...], select_all: bool, enqueue_drift: bool, timeout: float) -> None:
    """Compare Keycloak claims with the claims resolved from each profile."""
    _ensure_psycopg()
    with psycopg.connect(db_dsn, autocommit=True) as conn:  # type: ignore[arg-type]
        targets = _select_principals(conn, principals, select_all)
    store = DBProfileStore(db_dsn)
    admin = AdminClient(timeout_seconds=timeout)
    token = admin.token()
    drifted: List[str] = []
    for principal_id in targets:
        profile = store.fetch(principal_id)
        if profile is None:
            continue
        try:
            user = admin.get_user(principal_id, token=token)
        except ClaimsSyncError as exc:
            click.echo(f"{principal_id}: unavailable ({exc.reason})")
            drifted.append(principal_id)
            continue
        if claims_from_attributes(user.get("attributes")) != resolve(profile):
            click.echo(f"{principal_id}: drift")
            drifted.append(principal_id)
    click.echo(f"Checked {len(targets)} principal(s), drift={len(drifted)}")
    if enqueue_drift and drifted:
        with psycopg.connect(db_dsn, autocommit=True) as conn:  # type: ignore[arg-type]
            # Drift at the admitted version would otherwise be rejected as stale.
            _reset_guard(conn, drifted)
            count = _enqueue_created(conn, drifted)
        click.echo(f"Enqueued {count} event(s).")


if __name__ == "__main__":  # pragma: no cover - manual entry
    cli()
