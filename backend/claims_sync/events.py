"""
Wire format for inbound synchronization events.

JSON shape shared by the webhook, the Postgres queue trigger and the backfill
tool:

    {"kind": "principal_created", "principal_id": "<sub>"}
    {"kind": "profile_updated", "principal_id": "<sub>", "before": {...} | null, "after": {...}}
"""

from __future__ import annotations

from typing import Any, Mapping

from .ports import EventPayloadError, PrincipalCreated, ProfileRecord, ProfileUpdated, SyncEvent

EVENT_KINDS = frozenset({PrincipalCreated.kind, ProfileUpdated.kind})


def parse_event(payload: Any) -> SyncEvent:
    """Turn a decoded JSON payload into a typed event or raise EventPayloadError."""
    if not isinstance(payload, Mapping):
        raise EventPayloadError("payload_not_object")
    kind = str(payload.get("kind") or "").strip().lower()
    if kind not in EVENT_KINDS:
        raise EventPayloadError("unknown_kind")
    principal_id = str(payload.get("principal_id") or "").strip()

    if kind == PrincipalCreated.kind:
        if not principal_id:
            raise EventPayloadError("principal_id_missing")
        return PrincipalCreated(principal_id=principal_id)

    after_raw = payload.get("after")
    if not isinstance(after_raw, Mapping):
        raise EventPayloadError("after_missing")
    before_raw = payload.get("before")
    if before_raw is not None and not isinstance(before_raw, Mapping):
        raise EventPayloadError("before_not_object")
    try:
        after = ProfileRecord.from_mapping(after_raw, principal_id=principal_id)
        before = ProfileRecord.from_mapping(before_raw, principal_id=principal_id) if before_raw else None
    except (TypeError, ValueError) as exc:
        raise EventPayloadError("profile_malformed") from exc
    principal_id = principal_id or after.principal_id
    if not principal_id:
        raise EventPayloadError("principal_id_missing")
    return ProfileUpdated(principal_id=principal_id, after=after, before=before)


def _profile_json(profile: ProfileRecord) -> dict:
    return {
        "principal_id": profile.principal_id,
        "role": profile.role,
        "display_name": profile.display_name,
        "email": profile.email,
        "revision": profile.revision,
        "updated_at": profile.updated_at.isoformat() if profile.updated_at else None,
    }


def event_to_json(event: SyncEvent) -> dict:
    """Serialize an event into the queue/webhook JSON shape."""
    if isinstance(event, PrincipalCreated):
        return {"kind": event.kind, "principal_id": event.principal_id}
    return {
        "kind": event.kind,
        "principal_id": event.principal_id,
        "before": _profile_json(event.before) if event.before else None,
        "after": _profile_json(event.after),
    }


__all__ = ["EVENT_KINDS", "parse_event", "event_to_json"]
