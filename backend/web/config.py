"""
Configuration and startup security checks for the claims sync service.

Why: A misconfigured identity sync can silently grant or strip roles. This
module provides a single guard that enforces minimal production safety
constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

from backend.claims_sync.config import is_prod_like, load_sync_config


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - Claims sync config must validate (guard backend, webhook token, https Keycloak).
    - Keycloak admin client secret must be configured (no password grant in prod).
    - DATABASE_URL must not explicitly disable TLS.
    """
    if not is_prod_like():
        return  # dev/test remain permissive

    try:
        load_sync_config()
    except ValueError as exc:
        raise SystemExit(f"Refusing to start: {exc}")

    kc_secret = (os.getenv("KC_ADMIN_CLIENT_SECRET", "") or "").strip()
    if not kc_secret or kc_secret.upper().startswith("CHANGE_ME"):
        raise SystemExit(
            "Refusing to start: KC_ADMIN_CLIENT_SECRET is unset or a placeholder in production."
        )

    for key in ("CLAIMS_SYNC_DATABASE_URL", "DATABASE_URL"):
        if "sslmode=disable" in os.getenv(key, ""):
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )
