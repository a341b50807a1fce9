"""
EventRouter: drive one synchronization attempt per inbound event.

Pipeline:
    read profile (PrincipalCreated only) -> resolve claims -> admit version
    -> write claims -> reconcile -> emit exactly one SyncOutcome

Failure policy:
    Nothing escapes `handle`. Transient failures produce a `failed` outcome
    with `disposition="retry"` so the trigger infrastructure redelivers the
    event; everything else is acknowledged. A failed write releases its guard
    admission, so the guard never records a version that was not written.
    Admitted claims stay pending in the guard until their write is confirmed;
    a stale delivery that finds the winning claims still pending rewrites them
    before it is acknowledged.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable, Optional

from .ports import (
    Admission,
    ClaimsSyncError,
    ClaimsWriterProtocol,
    EventPayloadError,
    GuardState,
    OutcomeSinkProtocol,
    PermanentSyncError,
    PrincipalCreated,
    ProfileRecord,
    ProfileStoreProtocol,
    ProfileUpdated,
    ReconcilePendingError,
    SyncOutcome,
    SyncVersion,
    TIME,
    TransientSyncError,
    VersionGuardProtocol,
)
from .resolver import resolve, validate_claims
from .telemetry import LoggingOutcomeSink

LOG = logging.getLogger(__name__)

# Upper bound for catch-up writes when newer versions keep arriving mid-write.
RECONCILE_ATTEMPTS = 3

NOT_FOUND = "profile_not_found"


def _micros(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1_000_000)


class EventRouter:
    def __init__(
        self,
        *,
        profiles: ProfileStoreProtocol,
        guard: VersionGuardProtocol,
        writer: ClaimsWriterProtocol,
        sink: Optional[OutcomeSinkProtocol] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.profiles = profiles
        self.guard = guard
        self.writer = writer
        self.sink = sink or LoggingOutcomeSink()
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def handle(self, event) -> SyncOutcome:
        """Handle one event and return (and emit) its single outcome."""
        kind = str(getattr(event, "kind", "unknown"))
        principal_id = str(getattr(event, "principal_id", "") or "")
        try:
            outcome = self._sync(event, kind=kind, principal_id=principal_id)
        except TransientSyncError as exc:
            outcome = self._failed(principal_id, kind, exc.reason, retry=True)
        except PermanentSyncError as exc:
            outcome = self._failed(principal_id, kind, exc.reason, retry=False)
        except Exception as exc:
            # Type only: messages from drivers may echo profile data.
            LOG.error("claims_sync.unexpected_error principal=%s event=%s error=%s", principal_id, kind, type(exc).__name__)
            outcome = self._failed(principal_id, kind, "internal_error", retry=False)
        self._emit(outcome)
        return outcome

    def version_for(self, profile: ProfileRecord) -> SyncVersion:
        """Derive the recency of a snapshot.

        Prefers the store's revision, then its update timestamp; otherwise the
        arrival time with a shared sequence as tie-break. Time-based versions
        carry `source=TIME` and always rank below revisions.
        """
        if profile.revision is not None:
            return SyncVersion(stamp=int(profile.revision))
        if profile.updated_at is not None:
            return SyncVersion(stamp=_micros(profile.updated_at), source=TIME)
        return SyncVersion(stamp=_micros(self._clock()), sequence=self.guard.next_sequence(), source=TIME)

    def _sync(self, event, *, kind: str, principal_id: str) -> SyncOutcome:
        if not principal_id:
            raise EventPayloadError("principal_id_missing")
        if isinstance(event, PrincipalCreated):
            profile = self.profiles.fetch(principal_id)
            if profile is None:
                # The profile's own write event will trigger the sync later.
                return SyncOutcome(principal_id=principal_id, decision="rejected", reason=NOT_FOUND, event_kind=kind)
        elif isinstance(event, ProfileUpdated):
            # Use the carried snapshot; re-reading could observe an older replica.
            profile = event.after
        else:
            raise EventPayloadError("unknown_event")

        claims = validate_claims(resolve(profile))
        version = self.version_for(profile)
        admission = self.guard.admit(principal_id, version, claims)
        if not admission.accepted:
            reason = admission.reason or "stale"
            winner = admission.previous
            if winner is not None and winner.pending is not None:
                self._repair(principal_id, winner)
                reason = f"{reason}_repaired"
            return SyncOutcome(principal_id=principal_id, decision="rejected", reason=reason, event_kind=kind, version=version)

        try:
            self.writer.apply(principal_id, claims)
        except Exception:
            self._release(principal_id, admission)
            raise

        self._reconcile(principal_id, version)
        self._confirm(principal_id, admission.token)
        return SyncOutcome(principal_id=principal_id, decision="accepted", event_kind=kind, version=version)

    def _repair(self, principal_id: str, state: GuardState) -> None:
        """Rewrite the winning claims whose write was never confirmed."""
        LOG.info("claims_sync.repair principal=%s version=%s", principal_id, state.version)
        self.writer.apply(principal_id, state.claims)
        self._reconcile(principal_id, state.version)
        self._confirm(principal_id, state.pending)

    def _reconcile(self, principal_id: str, version: SyncVersion) -> None:
        """Rewrite the newest admitted claims if a newer version overtook this write.

        A newer attempt may have been admitted and written while our write was
        in flight; if ours landed last, the identity store now holds older
        claims. The guard state is marked pending before the catch-up write so
        that, if the write fails, the next delivery for this principal repairs
        it. Write failures propagate and the event is redelivered.
        """
        applied = version
        token = None
        for _ in range(RECONCILE_ATTEMPTS):
            state = self.guard.current(principal_id)
            if state is None or state.version <= applied:
                self._confirm(principal_id, token)
                return
            LOG.info(
                "claims_sync.reconcile principal=%s written=%s newer=%s",
                principal_id,
                applied,
                state.version,
            )
            token = self.guard.mark_pending(principal_id)
            self.writer.apply(principal_id, state.claims)
            applied = state.version
        LOG.warning("claims_sync.reconcile_pending principal=%s written=%s", principal_id, applied)
        raise ReconcilePendingError(str(applied))

    def _confirm(self, principal_id: str, token: Optional[int]) -> None:
        if token is None:
            return
        try:
            self.guard.clear_pending(principal_id, token)
        except ClaimsSyncError as exc:
            # The claims landed; a stale pending flag only costs one extra write later.
            LOG.warning("claims_sync.confirm_failed principal=%s reason=%s", principal_id, exc.reason)

    def _release(self, principal_id: str, admission: Admission) -> None:
        try:
            self.guard.release(principal_id, admission)
        except ClaimsSyncError as exc:
            LOG.warning("claims_sync.release_failed principal=%s version=%s reason=%s", principal_id, admission.version, exc.reason)

    def _failed(self, principal_id: str, kind: str, reason: str, *, retry: bool) -> SyncOutcome:
        return SyncOutcome(
            principal_id=principal_id,
            decision="failed",
            reason=reason,
            event_kind=kind,
            disposition="retry" if retry else "ack",
        )

    def _emit(self, outcome: SyncOutcome) -> None:
        try:
            self.sink.emit(outcome)
        except Exception as exc:
            LOG.warning("claims_sync.sink_failed principal=%s error=%s", outcome.principal_id, type(exc).__name__)


__all__ = ["EventRouter", "NOT_FOUND", "RECONCILE_ATTEMPTS"]
