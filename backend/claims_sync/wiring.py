"""
Composition root: build an EventRouter from configuration.

Keeps adapter selection in one place for the worker entrypoint and tests.
"""
from __future__ import annotations

from typing import Optional

from backend.identity_access.admin_client import AdminClient, KeycloakClaimsWriter

from .config import SyncConfig, load_sync_config, resolve_sync_dsn
from .ports import OutcomeSinkProtocol
from .profile_store import DBProfileStore
from .router import EventRouter
from .version_guard import InMemoryVersionGuard
from .version_guard_db import DBVersionGuard


def build_router(
    cfg: Optional[SyncConfig] = None,
    *,
    dsn: Optional[str] = None,
    sink: Optional[OutcomeSinkProtocol] = None,
) -> EventRouter:
    cfg = cfg or load_sync_config()
    dsn = dsn or resolve_sync_dsn()
    if cfg.guard_backend == "memory":
        guard = InMemoryVersionGuard()
    else:
        guard = DBVersionGuard(dsn, timeout_seconds=cfg.profile_timeout_seconds)
    admin = AdminClient(base_url=cfg.kc_base_url, realm=cfg.kc_realm, timeout_seconds=cfg.write_timeout_seconds)
    return EventRouter(
        profiles=DBProfileStore(dsn, timeout_seconds=cfg.profile_timeout_seconds),
        guard=guard,
        writer=KeycloakClaimsWriter(admin),
        sink=sink,
    )


__all__ = ["build_router"]
