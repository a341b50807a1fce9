"""Operations endpoints (internal tooling for operators)."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.claims_sync.workers import health as worker_health
from backend.web.routes.claims_events import _authorized

operations_router = APIRouter(tags=["Operations"])


def _private_response(body: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


@operations_router.get("/internal/health/claims-sync")
async def claims_sync_health(request: Request):
    """
    Return diagnostics for the claims sync pipeline.

    Permissions:
        Caller must present the claims-sync shared secret.
    """
    if not _authorized(request):
        return _private_response({"error": "unauthenticated"}, status_code=401)

    report = await worker_health.CLAIMS_SYNC_HEALTH_SERVICE.probe()
    body = {
        "status": report.status,
        "dbRole": report.db_role,
        "checks": [{"check": c.name, "status": c.status, "detail": c.detail} for c in report.checks],
    }
    return _private_response(body, status_code=200 if report.healthy else 503)
