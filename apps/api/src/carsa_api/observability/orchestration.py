"""In-memory telemetry for ledger-backed orchestration flows."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrchestrationSnapshot:
    outcomes: Dict[str, Dict[str, int]]
    ledger_submissions: Dict[str, int]
    reconciliation: Dict[str, int]
    last_failure_at: datetime | None
    last_failure_kind: str | None
    last_ambiguous_at: datetime | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": {operation: dict(counts) for operation, counts in self.outcomes.items()},
            "ledger_submissions": dict(self.ledger_submissions),
            "reconciliation": dict(self.reconciliation),
            "events": {
                "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
                "last_failure_kind": self.last_failure_kind,
                "last_ambiguous_at": self.last_ambiguous_at.isoformat() if self.last_ambiguous_at else None,
            },
        }


@dataclass
class OrchestrationObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _outcomes: Dict[str, Counter] = field(default_factory=dict)
    _ledger_submissions: Counter = field(default_factory=Counter)
    _reconciliation: Counter = field(default_factory=Counter)
    _last_failure_at: datetime | None = None
    _last_failure_kind: str | None = None
    _last_ambiguous_at: datetime | None = None

    def record_outcome(self, operation: str, outcome: str) -> None:
        with self._lock:
            self._outcomes.setdefault(operation, Counter())[outcome] += 1
            if outcome not in {"succeeded", "replayed", "reconciled"}:
                self._last_failure_at = _utcnow()
                self._last_failure_kind = outcome
            if outcome == "persistence":
                self._last_ambiguous_at = _utcnow()

    def record_ledger_submission(self, operation: str) -> None:
        with self._lock:
            self._ledger_submissions[operation] += 1

    def record_reconciliation(self, result: str, count: int = 1) -> None:
        with self._lock:
            self._reconciliation[result] += count

    def snapshot(self) -> OrchestrationSnapshot:
        with self._lock:
            return OrchestrationSnapshot(
                outcomes={operation: dict(counter) for operation, counter in self._outcomes.items()},
                ledger_submissions=dict(self._ledger_submissions),
                reconciliation=dict(self._reconciliation),
                last_failure_at=self._last_failure_at,
                last_failure_kind=self._last_failure_kind,
                last_ambiguous_at=self._last_ambiguous_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._ledger_submissions.clear()
            self._reconciliation.clear()
            self._last_failure_at = None
            self._last_failure_kind = None
            self._last_ambiguous_at = None


_STORE = OrchestrationObservabilityStore()


def get_orchestration_store() -> OrchestrationObservabilityStore:
    return _STORE


__all__ = ["OrchestrationObservabilityStore", "OrchestrationSnapshot", "get_orchestration_store"]
