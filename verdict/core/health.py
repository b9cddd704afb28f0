"""
Aggregate health signals over a sliding one-hour window.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

WINDOW_SEC = 3600

DECISION_OK = "decision_ok"
DECISION_REFUSED = "decision_refused"
DECISION_FAILED = "decision_failed"
AI_SUCCESS = "ai_success"
AI_FAILURE = "ai_failure"
ASSURANCE_SUCCESS = "assurance_success"
ASSURANCE_FAILURE = "assurance_failure"


@dataclass
class HealthSignal:
    name: str
    value: Optional[float]
    warning: float
    critical: float
    status: str
    higher_is_worse: bool = True


def classify(value: Optional[float], warning: float, critical: float, higher_is_worse: bool = True) -> str:
    if value is None:
        return "healthy"
    if higher_is_worse:
        if value >= critical:
            return "critical"
        if value >= warning:
            return "degraded"
        return "healthy"
    if value <= critical:
        return "critical"
    if value <= warning:
        return "degraded"
    return "healthy"


def _rate(numerator: int, denominator: int) -> Optional[float]:
    return round(numerator / denominator, 4) if denominator else None


class HealthMonitor:
    """Windowed outcome counters for the ops surface."""

    def __init__(self, window_sec: int = WINDOW_SEC, clock: Callable[[], float] = time.time):
        self.window_sec = window_sec
        self.clock = clock
        self._events: Deque[Tuple[float, str]] = deque()
        self._lock = threading.Lock()

    def _add(self, kind: str):
        with self._lock:
            self._events.append((self.clock(), kind))

    def record_decision(self, refused: bool = False, failed: bool = False):
        if failed:
            self._add(DECISION_FAILED)
        elif refused:
            self._add(DECISION_REFUSED)
        else:
            self._add(DECISION_OK)

    def record_ai_call(self, success: bool):
        self._add(AI_SUCCESS if success else AI_FAILURE)

    def record_assurance(self, success: bool):
        self._add(ASSURANCE_SUCCESS if success else ASSURANCE_FAILURE)

    def counters(self) -> Dict[str, int]:
        cutoff = self.clock() - self.window_sec
        with self._lock:
            while self._events and self._events[0][0] < cutoff:
                self._events.popleft()
            counts: Dict[str, int] = {}
            for _, kind in self._events:
                counts[kind] = counts.get(kind, 0) + 1
        return counts

    def signals(self, pending_reviews: int = 0) -> List[HealthSignal]:
        c = self.counters()
        decisions = c.get(DECISION_OK, 0) + c.get(DECISION_REFUSED, 0) + c.get(DECISION_FAILED, 0)
        ai_calls = c.get(AI_SUCCESS, 0) + c.get(AI_FAILURE, 0)
        assurances = c.get(ASSURANCE_SUCCESS, 0) + c.get(ASSURANCE_FAILURE, 0)

        specs = [
            ("decision_failure_rate", _rate(c.get(DECISION_FAILED, 0), decisions), 0.05, 0.15, True),
            ("refusal_rate", _rate(c.get(DECISION_REFUSED, 0), decisions), 0.4, 0.6, True),
            ("ai_failure_rate", _rate(c.get(AI_FAILURE, 0), ai_calls), 0.1, 0.3, True),
            ("assurance_success_rate", _rate(c.get(ASSURANCE_SUCCESS, 0), assurances), 0.8, 0.6, False),
            ("review_queue_size", float(pending_reviews), 10, 25, True),
        ]
        return [
            HealthSignal(name, value, warning, critical, classify(value, warning, critical, worse), worse)
            for name, value, warning, critical, worse in specs
        ]

    def status(self, pending_reviews: int = 0) -> Dict:
        signals = self.signals(pending_reviews)
        statuses = {s.status for s in signals}
        if "critical" in statuses:
            overall = "critical"
        elif "degraded" in statuses:
            overall = "degraded"
        else:
            overall = "healthy"

        counters = self.counters()
        return {
            "status": overall,
            "action_required": overall != "healthy",
            "window_sec": self.window_sec,
            "total_decisions": counters.get(DECISION_OK, 0) + counters.get(DECISION_REFUSED, 0) + counters.get(DECISION_FAILED, 0),
            "signals": [s.__dict__ for s in signals],
            "counters": counters,
        }

    def reset(self):
        with self._lock:
            self._events.clear()


# Global monitor instance
health_monitor = HealthMonitor()
