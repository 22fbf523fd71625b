from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    purchases: Dict[str, int]
    rewards: Dict[str, int]
    detections: Dict[str, int]
    sync: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "purchases": dict(self.purchases),
            "rewards": dict(self.rewards),
            "detections": dict(self.detections),
            "sync": {key: dict(value) for key, value in self.sync.items()},
        }


class LoyaltyObservabilityStore:
    """In-process counters for the accrual, redemption and sync pipelines."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._purchases: Dict[str, int] = defaultdict(int)
        self._rewards: Dict[str, int] = defaultdict(int)
        self._detections: Dict[str, int] = defaultdict(int)
        self._sync_outcomes: Dict[str, int] = defaultdict(int)
        self._sync_failures_by_step: Dict[str, int] = defaultdict(int)

    def record_purchase(self, quantity: int) -> None:
        with self._lock:
            self._purchases["events"] += 1
            self._purchases["units"] += max(int(quantity), 0)

    def record_order(self, result_type: str) -> None:
        with self._lock:
            self._purchases[f"orders:{result_type}"] += 1

    def record_reward_transition(self, status: str) -> None:
        with self._lock:
            self._rewards[status] += 1

    def record_detection(self, method: str | None) -> None:
        with self._lock:
            self._detections[method or "not_detected"] += 1

    def record_sync(self, operation: str, outcome: str, *, step: str | None = None) -> None:
        with self._lock:
            self._sync_outcomes[f"{operation}:{outcome}"] += 1
            if step and outcome != "success":
                self._sync_failures_by_step[step] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            purchases = dict(self._purchases)
            rewards = dict(self._rewards)
            detections = dict(self._detections)
            sync = {
                "outcomes": dict(self._sync_outcomes),
                "failures_by_step": dict(self._sync_failures_by_step),
            }
        return LoyaltySnapshot(purchases=purchases, rewards=rewards, detections=detections, sync=sync)

    def reset(self) -> None:
        with self._lock:
            self._purchases.clear()
            self._rewards.clear()
            self._detections.clear()
            self._sync_outcomes.clear()
            self._sync_failures_by_step.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
