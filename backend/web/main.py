"Claims sync ingress"
from __future__ import annotations

import os
import sys

from dotenv import load_dotenv
from fastapi import FastAPI

from backend.web import config as _cfg
from backend.web.routes.claims_events import claims_events_router
from backend.web.routes.operations import operations_router


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via GUSTAV_ENABLE_DOTENV (default true outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("GUSTAV_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

app = FastAPI(
    title="GUSTAV claims sync",
    description="Keeps Keycloak role/name/email claims in step with profiles",
    version="0.1.0",
)
app.include_router(claims_events_router)
app.include_router(operations_router)
