"""
In-memory VersionGuard for development and tests.

Why: The guard decides which synchronization attempt may write claims. The
decision and the advance happen under one lock so two candidates with the
same or close versions can never both be admitted. For deployments with more
than one process use `DBVersionGuard`, which keeps the same contract in
Postgres.

Pending tokens: an accepted admission marks its state pending until the
router confirms the write (`clear_pending`). A stale candidate that finds the
winning state still pending rewrites its claims, so a crash or a failed
catch-up write is repaired by the next delivery for that principal.
"""
from __future__ import annotations

import itertools
from dataclasses import replace
from threading import Lock
from typing import Dict, Optional

from .ports import Admission, ClaimsSet, GuardState, SyncVersion

STALE = "stale"


class InMemoryVersionGuard:
    def __init__(self) -> None:
        self._data: Dict[str, GuardState] = {}
        self._lock = Lock()
        self._sequence = itertools.count(1)

    def admit(self, principal_id: str, candidate: SyncVersion, claims: ClaimsSet) -> Admission:
        with self._lock:
            current = self._data.get(principal_id)
            if current is not None and candidate <= current.version:
                return Admission(accepted=False, version=candidate, previous=current, reason=STALE)
            token = next(self._sequence)
            self._data[principal_id] = GuardState(version=candidate, claims=claims, pending=token)
            return Admission(accepted=True, version=candidate, previous=current, token=token)

    def release(self, principal_id: str, admission: Admission) -> None:
        """Undo an accepted admission unless a newer one has replaced it."""
        if not admission.accepted:
            return
        with self._lock:
            current = self._data.get(principal_id)
            if current is None or current.version != admission.version:
                return
            if admission.previous is None:
                self._data.pop(principal_id, None)
            else:
                self._data[principal_id] = admission.previous

    def current(self, principal_id: str) -> Optional[GuardState]:
        with self._lock:
            return self._data.get(principal_id)

    def mark_pending(self, principal_id: str) -> Optional[int]:
        """Flag the current claims as not held by the identity store; return the new token."""
        with self._lock:
            current = self._data.get(principal_id)
            if current is None:
                return None
            token = next(self._sequence)
            self._data[principal_id] = replace(current, pending=token)
            return token

    def clear_pending(self, principal_id: str, token: int) -> bool:
        """Clear the pending flag if it still carries `token`."""
        with self._lock:
            current = self._data.get(principal_id)
            if current is None or current.pending is None or current.pending != token:
                return False
            self._data[principal_id] = replace(current, pending=None)
            return True

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence)


__all__ = ["InMemoryVersionGuard", "STALE"]
