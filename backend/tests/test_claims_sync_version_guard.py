"""
In-memory version guard: compare-and-swap semantics.

Why:
    The guard is the only shared state of the sync pipeline. Exactly one of
    several concurrent candidates with equal versions may be admitted, stale
    candidates are rejected, and a release never clobbers a newer admission.
    Admitted claims stay pending until the writer confirms them.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.claims_sync.ports import TIME, ClaimsSet, SyncVersion
from backend.claims_sync.version_guard import InMemoryVersionGuard

_C1 = ClaimsSet(role="teacher", email="a@x.com", name="A")
_C2 = ClaimsSet(role="admin", email="a@x.com", name="A")


def test_first_candidate_is_admitted():
    guard = InMemoryVersionGuard()
    adm = guard.admit("p1", SyncVersion(1), _C1)
    assert adm.accepted
    assert adm.previous is None
    assert guard.current("p1").version == SyncVersion(1)


def test_equal_and_older_versions_are_stale():
    guard = InMemoryVersionGuard()
    guard.admit("p1", SyncVersion(5), _C1)
    same = guard.admit("p1", SyncVersion(5), _C1)
    older = guard.admit("p1", SyncVersion(4), _C1)
    assert not same.accepted and same.reason == "stale"
    assert not older.accepted and older.reason == "stale"
    assert guard.current("p1").version == SyncVersion(5)


def test_sequence_breaks_ties():
    guard = InMemoryVersionGuard()
    assert guard.admit("p1", SyncVersion(7, 1), _C1).accepted
    assert guard.admit("p1", SyncVersion(7, 2), _C2).accepted
    assert not guard.admit("p1", SyncVersion(7, 2), _C2).accepted


def test_principals_are_independent():
    guard = InMemoryVersionGuard()
    assert guard.admit("p1", SyncVersion(9), _C1).accepted
    assert guard.admit("p2", SyncVersion(1), _C1).accepted


def test_release_restores_previous_state():
    guard = InMemoryVersionGuard()
    guard.admit("p1", SyncVersion(1), _C1)
    adm = guard.admit("p1", SyncVersion(2), _C2)
    guard.release("p1", adm)
    state = guard.current("p1")
    assert state.version == SyncVersion(1)
    assert state.claims == _C1


def test_release_of_first_admission_forgets_principal():
    guard = InMemoryVersionGuard()
    adm = guard.admit("p1", SyncVersion(1), _C1)
    guard.release("p1", adm)
    assert guard.current("p1") is None
    assert guard.admit("p1", SyncVersion(1), _C1).accepted


def test_release_does_not_clobber_newer_admission():
    guard = InMemoryVersionGuard()
    old = guard.admit("p1", SyncVersion(1), _C1)
    guard.admit("p1", SyncVersion(2), _C2)
    guard.release("p1", old)
    assert guard.current("p1").version == SyncVersion(2)


def test_concurrent_equal_candidates_admit_exactly_one():
    guard = InMemoryVersionGuard()

    def _try(_):
        return guard.admit("p1", SyncVersion(10), _C1).accepted

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(_try, range(64)))
    assert results.count(True) == 1


def test_next_sequence_is_monotonic():
    guard = InMemoryVersionGuard()
    seqs = [guard.next_sequence() for _ in range(5)]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 5


def test_revision_versions_rank_above_time_versions():
    guard = InMemoryVersionGuard()
    assert guard.admit("p1", SyncVersion(1_767_225_600_000_000, source=TIME), _C1).accepted
    assert guard.admit("p1", SyncVersion(7), _C2).accepted
    late = guard.admit("p1", SyncVersion(1_800_000_000_000_000, source=TIME), _C1)
    assert not late.accepted
    assert guard.current("p1").claims == _C2


def test_admission_is_pending_until_cleared():
    guard = InMemoryVersionGuard()
    adm = guard.admit("p1", SyncVersion(1), _C1)
    assert adm.token is not None
    assert guard.current("p1").pending == adm.token
    assert guard.clear_pending("p1", adm.token)
    assert guard.current("p1").pending is None
    assert not guard.clear_pending("p1", adm.token)


def test_clear_pending_ignores_superseded_token():
    guard = InMemoryVersionGuard()
    adm = guard.admit("p1", SyncVersion(1), _C1)
    token = guard.mark_pending("p1")
    assert token != adm.token
    assert not guard.clear_pending("p1", adm.token)
    assert guard.current("p1").pending == token


def test_release_restores_previous_pending_flag():
    guard = InMemoryVersionGuard()
    first = guard.admit("p1", SyncVersion(1), _C1)
    guard.clear_pending("p1", first.token)
    second = guard.admit("p1", SyncVersion(2), _C2)
    guard.release("p1", second)
    assert guard.current("p1").pending is None


def test_mark_pending_without_state_is_noop():
    guard = InMemoryVersionGuard()
    assert guard.mark_pending("p1") is None
    assert guard.current("p1") is None
