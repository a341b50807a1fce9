"""
Ports for claims synchronization: shared value types, protocols, and errors.

Intent:
    Provide framework-agnostic contracts between the event router and the
    concrete adapters (Postgres profile store, Keycloak claims writer, version
    guard backends). Keeping these definitions in a dedicated module avoids
    circular imports and clarifies boundaries.

Design:
    - Value types: ProfileRecord, ClaimsSet, SyncVersion, GuardState, Admission, SyncOutcome
    - Events: PrincipalCreated, ProfileUpdated
    - Protocols: ProfileStoreProtocol, ClaimsWriterProtocol, VersionGuardProtocol, OutcomeSinkProtocol
    - Error taxonomy: transient vs. permanent
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import total_ordering
import re
from typing import Any, Mapping, Optional, Protocol, Union


# ----------------------------- Value types ----------------------------------

_FRACTION_RE = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp as rendered by Postgres or JavaScript.

    Postgres drops trailing zeros from fractional seconds (`.12345`) and
    clients send a `Z` suffix; both are normalised before `fromisoformat`.
    """
    text = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    text = _FRACTION_RE.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
    return datetime.fromisoformat(text)


@dataclass(frozen=True)
class ProfileRecord:
    """Snapshot of a profile row as seen by the synchronizer.

    Parameters:
        principal_id: Keycloak user id (OIDC `sub`) the profile belongs to.
        role: Raw role value; may be missing or unrecognized.
        display_name: Optional human readable name.
        email: Contact email, copied into claims for display only.
        revision: Monotonic revision maintained by the profile store, if any.
        updated_at: Last modification time reported by the profile store, if any.
    """

    principal_id: str
    role: Optional[str] = None
    display_name: Optional[str] = None
    email: str = ""
    revision: Optional[int] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, principal_id: str = "") -> "ProfileRecord":
        """Build a record from a JSON document or a database row.

        Accepts `display_name`, `displayName` and the legacy `name` key for the
        display name. Raises ValueError for non-integer revisions or unparsable
        timestamps.
        """
        pid = str(data.get("principal_id") or data.get("id") or principal_id or "").strip()
        display_name = data.get("display_name")
        if display_name is None:
            display_name = data.get("displayName", data.get("name"))
        revision = data.get("revision")
        if revision is not None and not isinstance(revision, int):
            revision = int(str(revision))
        updated_at = data.get("updated_at") or data.get("updatedAt")
        if isinstance(updated_at, str):
            updated_at = parse_timestamp(updated_at)
        email = data.get("email")
        role = data.get("role")
        return cls(
            principal_id=pid,
            role=role if role is None else str(role),
            display_name=None if display_name is None else str(display_name),
            email="" if email is None else str(email),
            revision=revision,
            updated_at=updated_at,
        )


@dataclass(frozen=True)
class ClaimsSet:
    """Canonical claims attached to an identity record. Always applied as a whole."""

    role: str
    email: str
    name: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "email": self.email, "name": self.name}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ClaimsSet":
        return cls(
            role=str(data.get("role") or ""),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
        )


REVISION = "revision"
TIME = "time"
_SOURCE_RANK = {TIME: 0, REVISION: 1}


@total_ordering
@dataclass(frozen=True)
class SyncVersion:
    """Totally ordered version: stamp source, primary stamp, then tie-break sequence.

    Revision counters and microsecond timestamps live on different scales and
    are never compared by value: any revision-stamped version ranks above any
    time-stamped one.
    """

    stamp: int
    sequence: int = 0
    source: str = REVISION

    def __post_init__(self) -> None:
        if self.source not in _SOURCE_RANK:
            raise ValueError(f"unknown version source: {self.source!r}")

    def _key(self) -> tuple[int, int, int]:
        return (_SOURCE_RANK[self.source], self.stamp, self.sequence)

    def __lt__(self, other: "SyncVersion") -> bool:
        if not isinstance(other, SyncVersion):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        prefix = "t" if self.source == TIME else "r"
        return f"{prefix}{self.stamp}.{self.sequence}"


@dataclass(frozen=True)
class GuardState:
    """Last admitted version for a principal and the claims admitted with it.

    `pending` is a token set while the identity store may not hold `claims`:
    from admission until the write is confirmed, and again whenever an older
    write is known to have landed on top of them.
    """

    version: SyncVersion
    claims: ClaimsSet
    pending: Optional[int] = None


@dataclass(frozen=True)
class Admission:
    """Result of `VersionGuard.admit`.

    `previous` carries the state replaced by an accepted admission so that a
    failed write can be released without clobbering a newer admission. On a
    rejection it is the state that won. `token` is the pending token set by
    an accepted admission.
    """

    accepted: bool
    version: SyncVersion
    previous: Optional[GuardState] = None
    reason: str = ""
    token: Optional[int] = None


@dataclass(frozen=True)
class SyncOutcome:
    """One outcome per handled event, emitted to the observability sink."""

    principal_id: str
    decision: str  # "accepted" | "rejected" | "failed"
    reason: str = ""
    event_kind: str = ""
    version: Optional[SyncVersion] = None
    disposition: str = "ack"  # "ack" | "retry"
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def should_retry(self) -> bool:
        return self.disposition == "retry"


# ------------------------------- Events -------------------------------------


@dataclass(frozen=True)
class PrincipalCreated:
    """The identity provider created a principal; its profile may not exist yet."""

    principal_id: str
    kind = "principal_created"


@dataclass(frozen=True)
class ProfileUpdated:
    """The profile store wrote a profile; `after` is the written snapshot."""

    principal_id: str
    after: ProfileRecord
    before: Optional[ProfileRecord] = None
    kind = "profile_updated"


SyncEvent = Union[PrincipalCreated, ProfileUpdated]


# ----------------------------- Protocols ------------------------------------


class ProfileStoreProtocol(Protocol):
    """Read-only point lookup of a profile by principal id."""

    def fetch(self, principal_id: str) -> Optional[ProfileRecord]:
        ...


class ClaimsWriterProtocol(Protocol):
    """Replace the claims on a principal's identity record as one set."""

    def apply(self, principal_id: str, claims: ClaimsSet) -> None:
        ...


class VersionGuardProtocol(Protocol):
    """Shared, atomically updated per-principal version register."""

    def admit(self, principal_id: str, candidate: SyncVersion, claims: ClaimsSet) -> Admission:
        ...

    def release(self, principal_id: str, admission: Admission) -> None:
        ...

    def current(self, principal_id: str) -> Optional[GuardState]:
        ...

    def mark_pending(self, principal_id: str) -> Optional[int]:
        ...

    def clear_pending(self, principal_id: str, token: int) -> bool:
        ...

    def next_sequence(self) -> int:
        ...


class OutcomeSinkProtocol(Protocol):
    """Receives exactly one SyncOutcome per handled event."""

    def emit(self, outcome: SyncOutcome) -> None:
        ...


# ------------------------------ Errors --------------------------------------


class ClaimsSyncError(Exception):
    """Base class for synchronization failures."""

    reason = "sync_failed"


class TransientSyncError(ClaimsSyncError):
    """Recoverable failure; the event should be redelivered."""


class PermanentSyncError(ClaimsSyncError):
    """Non-recoverable failure; the event is acknowledged and surfaced."""


class ProfileStoreTransientError(TransientSyncError):
    reason = "profile_store_unavailable"


class VersionGuardUnavailableError(TransientSyncError):
    reason = "version_guard_unavailable"


class ClaimsWriteTransientError(TransientSyncError):
    reason = "claims_write_unavailable"


class ReconcilePendingError(TransientSyncError):
    reason = "reconcile_pending"


class ClaimsWritePermanentError(PermanentSyncError):
    reason = "claims_write_rejected"


class ClaimsValidationError(PermanentSyncError):
    reason = "invalid_claims"


class EventPayloadError(PermanentSyncError):
    reason = "invalid_event"


__all__ = [
    # Values
    "ProfileRecord",
    "ClaimsSet",
    "SyncVersion",
    "REVISION",
    "TIME",
    "parse_timestamp",
    "GuardState",
    "Admission",
    "SyncOutcome",
    # Events
    "PrincipalCreated",
    "ProfileUpdated",
    "SyncEvent",
    # Protocols
    "ProfileStoreProtocol",
    "ClaimsWriterProtocol",
    "VersionGuardProtocol",
    "OutcomeSinkProtocol",
    # Errors
    "ClaimsSyncError",
    "TransientSyncError",
    "PermanentSyncError",
    "ProfileStoreTransientError",
    "VersionGuardUnavailableError",
    "ClaimsWriteTransientError",
    "ReconcilePendingError",
    "ClaimsWritePermanentError",
    "ClaimsValidationError",
    "EventPayloadError",
]
