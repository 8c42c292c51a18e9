from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RedemptionSnapshot:
    transitions: Dict[str, int]
    expirations: Dict[str, int]
    failures: Dict[str, int]
    audits: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "transitions": dict(self.transitions),
            "expirations": dict(self.expirations),
            "failures": dict(self.failures),
            "audits": dict(self.audits),
        }


class RedemptionObservabilityStore:
    """Collect redemption session telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transitions: Dict[str, int] = defaultdict(int)
        self._expirations: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._audits: Dict[str, int] = defaultdict(int)

    def record_transition(self, status: str, *, reason: str | None = None) -> None:
        with self._lock:
            self._transitions[status] += 1
            if reason:
                self._expirations[reason] += 1

    def record_failure(self, kind: str) -> None:
        with self._lock:
            self._failures[kind] += 1

    def record_audit(self, check: str, flagged: int) -> None:
        with self._lock:
            self._audits[f"{check}:runs"] += 1
            self._audits[f"{check}:flagged"] += flagged

    def snapshot(self) -> RedemptionSnapshot:
        with self._lock:
            return RedemptionSnapshot(
                transitions=dict(self._transitions),
                expirations=dict(self._expirations),
                failures=dict(self._failures),
                audits=dict(self._audits),
            )

    def reset(self) -> None:
        with self._lock:
            self._transitions.clear()
            self._expirations.clear()
            self._failures.clear()
            self._audits.clear()


_STORE = RedemptionObservabilityStore()


def get_redemption_store() -> RedemptionObservabilityStore:
    return _STORE


__all__ = ["get_redemption_store", "RedemptionObservabilityStore", "RedemptionSnapshot"]
