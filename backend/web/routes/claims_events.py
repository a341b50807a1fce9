"""Claims sync ingress: internal webhook receiving identity and profile events."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.claims_sync.config import resolve_sync_dsn
from backend.claims_sync.events import event_to_json, parse_event
from backend.claims_sync.ports import EventPayloadError
from backend.claims_sync.queue import enqueue_event

LOG = logging.getLogger(__name__)

TOKEN_HEADER = "X-Claims-Sync-Token"

claims_events_router = APIRouter(tags=["Claims Sync"])


def _private_response(body: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _authorized(request: Request) -> bool:
    expected = (os.getenv("CLAIMS_SYNC_WEBHOOK_TOKEN") or "").strip()
    provided = request.headers.get(TOKEN_HEADER) or ""
    if not expected or not provided:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


@claims_events_router.post("/internal/claims-sync/events")
async def receive_claims_event(request: Request):
    """
    Validate and enqueue a `principal_created` or `profile_updated` event.

    Permissions:
        Caller must present the shared secret in `X-Claims-Sync-Token`.

    Behavior:
        202 with the queue id once the event is durable, 400 for malformed
        payloads, 401 without a valid token, 503 when the queue is unreachable.
    """
    if not _authorized(request):
        return _private_response({"error": "unauthenticated"}, status_code=401)
    try:
        payload = await request.json()
    except ValueError:
        return _private_response({"error": "invalid_json"}, status_code=400)
    try:
        event = parse_event(payload)
    except EventPayloadError as exc:
        return _private_response({"error": "invalid_event", "detail": str(exc)}, status_code=400)

    loop = asyncio.get_running_loop()
    try:
        event_id = await loop.run_in_executor(None, enqueue_event, resolve_sync_dsn(), event_to_json(event))
    except Exception as exc:
        LOG.warning("claims_sync.enqueue_failed principal=%s error=%s", event.principal_id, type(exc).__name__)
        return _private_response({"error": "queue_unavailable"}, status_code=503)
    LOG.info("claims_sync.event_enqueued principal=%s event=%s id=%s", event.principal_id, event.kind, event_id)
    return _private_response({"id": event_id, "kind": event.kind}, status_code=202)
