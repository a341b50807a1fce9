"""
Observability for claims synchronization: outcome sinks and in-memory counters.

Intent:
    Every handled event produces exactly one SyncOutcome. The default sink
    writes one structured log line and bumps a labelled counter; the counters
    stay in process until an exporter scrapes them. Tests use
    `RecordingOutcomeSink` or `counter_snapshot` to assert on outcomes.

Privacy:
    Outcomes carry ids, decisions and reasons only. Claim values are never logged.
"""
from __future__ import annotations

from collections import defaultdict
import logging
from threading import Lock
from typing import Dict, Iterable, List, Tuple

from .ports import SyncOutcome

LOG = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]
_counters: Dict[str, Dict[LabelKey, int]] = defaultdict(dict)
_lock = Lock()

_LEVELS = {
    "accepted": logging.INFO,
    "rejected": logging.DEBUG,
    "failed": logging.WARNING,
}


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    """Increase a named counter by `amount` (defaults to 1)."""
    if amount == 0:
        return
    key = _label_key(labels)
    with _lock:
        _counters[name][key] = _counters[name].get(key, 0) + amount


def counter_snapshot(name: str) -> dict[LabelKey, int]:
    """Return a shallow copy of the stored counter values."""
    with _lock:
        return dict(_counters.get(name, {}))


def reset_for_tests() -> None:
    """Clear all counters. Intended for pytest fixtures."""
    with _lock:
        _counters.clear()


class LoggingOutcomeSink:
    """Default sink: one log line plus `claims_sync_outcomes_total{decision}`."""

    def emit(self, outcome: SyncOutcome) -> None:
        increment_counter("claims_sync_outcomes_total", decision=outcome.decision)
        if outcome.should_retry:
            increment_counter("claims_sync_retry_requested_total", reason=outcome.reason)
        LOG.log(
            _LEVELS.get(outcome.decision, logging.INFO),
            "claims_sync.outcome principal=%s event=%s decision=%s reason=%s version=%s disposition=%s",
            outcome.principal_id,
            outcome.event_kind,
            outcome.decision,
            outcome.reason or "-",
            outcome.version or "-",
            outcome.disposition,
        )


class RecordingOutcomeSink:
    """Keeps outcomes in memory; optionally forwards to further sinks."""

    def __init__(self, forward: Iterable = ()) -> None:
        self.outcomes: List[SyncOutcome] = []
        self._forward = list(forward)
        self._lock = Lock()

    def emit(self, outcome: SyncOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)
        for sink in self._forward:
            sink.emit(outcome)

    def decisions(self) -> List[str]:
        with self._lock:
            return [o.decision for o in self.outcomes]


__all__ = [
    "increment_counter",
    "counter_snapshot",
    "reset_for_tests",
    "LoggingOutcomeSink",
    "RecordingOutcomeSink",
]
