"""
Configuration parsing and validation for claims synchronization.

Intent:
    Provide a single place to read environment variables that control the
    version guard backend, store timeouts, retry policy and the Keycloak
    endpoint used for claim writes.

Why:
    Centralising configuration reduces drift between the worker, the ingress
    webhook and the backfill tool, and lets tests exercise config behaviour
    without booting any process.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


@dataclass(frozen=True)
class SyncConfig:
    guard_backend: str  # "db" | "memory"
    profile_timeout_seconds: int
    write_timeout_seconds: int
    max_retries: int
    backoff_seconds: int
    lease_seconds: int
    webhook_token: Optional[str]
    kc_base_url: str
    kc_realm: str


def _int_env(name: str, default: int, *, low: int = 1, high: int = 300) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < low or value > high:
        raise ValueError(f"{name} out of range ({low}..{high}), got: {value}")
    return value


def is_prod_like() -> bool:
    env = (os.getenv("GUSTAV_ENV") or "dev").lower()
    return env in {"prod", "production", "stage", "staging"}


def load_sync_config() -> SyncConfig:
    """
    Parse and validate claims-sync configuration from environment variables.

    Behavior:
        - `CLAIMS_SYNC_GUARD_BACKEND` selects "db" (default) or "memory".
        - Timeouts are validated to 1..300 seconds.
        - Production-like environments refuse the in-memory guard, require a
          webhook token and an https Keycloak base URL.
    """
    backend = (os.getenv("CLAIMS_SYNC_GUARD_BACKEND") or "db").strip().lower()
    if backend not in {"db", "memory"}:
        raise ValueError("CLAIMS_SYNC_GUARD_BACKEND must be 'db' or 'memory'")

    token = (os.getenv("CLAIMS_SYNC_WEBHOOK_TOKEN") or "").strip() or None
    kc_base_url = os.getenv("KC_BASE_URL", "http://localhost:8080").rstrip("/")

    if is_prod_like():
        # A per-process guard cannot coordinate concurrent invocations.
        if backend == "memory":
            raise ValueError("CLAIMS_SYNC_GUARD_BACKEND=memory is not allowed in production/staging environments.")
        if not token or token.upper().startswith("CHANGE_ME"):
            raise ValueError("CLAIMS_SYNC_WEBHOOK_TOKEN must be set in production/staging environments.")
        if not kc_base_url.lower().startswith("https://"):
            raise ValueError("KC_BASE_URL must use https in production/staging environments.")

    return SyncConfig(
        guard_backend=backend,
        profile_timeout_seconds=_int_env("CLAIMS_SYNC_PROFILE_TIMEOUT", 5),
        write_timeout_seconds=_int_env("CLAIMS_SYNC_WRITE_TIMEOUT", 10),
        max_retries=_int_env("CLAIMS_SYNC_MAX_RETRIES", 5, low=0, high=50),
        backoff_seconds=_int_env("CLAIMS_SYNC_BACKOFF_SECONDS", 10, high=3600),
        lease_seconds=_int_env("CLAIMS_SYNC_LEASE_SECONDS", 60, high=3600),
        webhook_token=token,
        kc_base_url=kc_base_url,
        kc_realm=os.getenv("KC_REALM", "gustav"),
    )


def resolve_sync_dsn() -> str:
    """Resolve the Postgres DSN shared by the profile store, guard and queue."""
    for name in ("CLAIMS_SYNC_DATABASE_URL", "DATABASE_URL"):
        candidate = os.getenv(name)
        if candidate:
            return candidate
    host = os.getenv("TEST_DB_HOST", "127.0.0.1")
    port = os.getenv("TEST_DB_PORT", "54322")
    user = os.getenv("APP_DB_USER", "gustav_app")
    password = os.getenv("APP_DB_PASSWORD", "CHANGE_ME_DEV")
    return f"postgresql://{user}:{password}@{host}:{port}/postgres"


__all__ = ["SyncConfig", "is_prod_like", "load_sync_config", "resolve_sync_dsn"]
