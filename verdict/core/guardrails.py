"""
Guardrail Tracker - circuit breakers and per-topic refusal tallies.

Counters live in a pluggable store: process-local memory by default, or the shared
SQLite store so every host sees the same circuit state. Threshold decisions are
pure functions over a GuardrailSnapshot.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from . import config
from .db import get_db
from ..util.logging import logger

INFERENCE_FAILURES = "inference_consecutive_failures"
ARTIFACT_FAILURES = "artifact_consecutive_failures"
SCHEMA_VIOLATIONS = "schema_violations"
TOPIC_TOTAL_PREFIX = "topic_total:"
TOPIC_REFUSED_PREFIX = "topic_refused:"


class MemoryCounterStore:
    """Process-local counters. Best effort across hosts."""

    def __init__(self):
        self._values: Dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, amount: int = 1) -> int:
        with self._lock:
            self._values[name] = self._values.get(name, 0) + amount
            return self._values[name]

    def set(self, name: str, value: int):
        with self._lock:
            self._values[name] = value

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def items(self, prefix: str = "") -> Dict[str, int]:
        with self._lock:
            return {k: v for k, v in self._values.items() if k.startswith(prefix)}

    def clear(self, prefix: str = ""):
        with self._lock:
            for key in [k for k in self._values if k.startswith(prefix)]:
                del self._values[key]


class SqliteCounterStore:
    """Counters in the durable store with atomic increments, shared by every host."""

    def increment(self, name: str, amount: int = 1) -> int:
        with get_db() as conn:
            conn.execute(
                "INSERT INTO guardrail_counters (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = value + excluded.value",
                (name, amount)
            )
            row = conn.execute("SELECT value FROM guardrail_counters WHERE name = ?", (name,)).fetchone()
            conn.commit()
        return row["value"]

    def set(self, name: str, value: int):
        with get_db() as conn:
            conn.execute(
                "INSERT INTO guardrail_counters (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                (name, value)
            )
            conn.commit()

    def get(self, name: str) -> int:
        with get_db() as conn:
            row = conn.execute("SELECT value FROM guardrail_counters WHERE name = ?", (name,)).fetchone()
        return row["value"] if row else 0

    def items(self, prefix: str = "") -> Dict[str, int]:
        with get_db() as conn:
            rows = conn.execute(
                "SELECT name, value FROM guardrail_counters WHERE substr(name, 1, ?) = ?", (len(prefix), prefix)
            ).fetchall()
        return {row["name"]: row["value"] for row in rows}

    def clear(self, prefix: str = ""):
        with get_db() as conn:
            conn.execute("DELETE FROM guardrail_counters WHERE substr(name, 1, ?) = ?", (len(prefix), prefix))
            conn.commit()


@dataclass(frozen=True)
class GuardrailThresholds:
    inference_failures: int = 3
    artifact_failures: int = 3
    refusal_spike_rate: float = 0.6
    refusal_spike_min_sample: int = 5
    schema_violation_count: int = 1
    review_queue_capacity: int = 30

    @classmethod
    def from_config(cls) -> "GuardrailThresholds":
        return cls(
            inference_failures=config.INFERENCE_FAILURE_THRESHOLD,
            artifact_failures=config.ARTIFACT_FAILURE_THRESHOLD,
            refusal_spike_rate=config.REFUSAL_SPIKE_RATE,
            refusal_spike_min_sample=config.REFUSAL_SPIKE_MIN_SAMPLE,
            schema_violation_count=config.SCHEMA_VIOLATION_ALERT_COUNT,
            review_queue_capacity=config.REVIEW_QUEUE_CAPACITY,
        )


@dataclass(frozen=True)
class GuardrailSnapshot:
    """Read-only copy of the counters at one instant."""
    inference_consecutive_failures: int
    artifact_consecutive_failures: int
    schema_violations: int
    topic_totals: Dict[str, int] = field(default_factory=dict)
    topic_refusals: Dict[str, int] = field(default_factory=dict)
    pending_reviews: int = 0


@dataclass
class GuardrailAlert:
    id: str
    severity: str  # warning|critical
    title: str
    description: str
    action: str
    detected_at: str


@dataclass
class GuardrailState:
    inference_circuit_open: bool
    artifact_paused: bool
    alerts: List[GuardrailAlert]
    interventions: List[str]


def is_circuit_open(consecutive_failures: int, threshold: int) -> bool:
    return consecutive_failures >= threshold


def refusal_spike_topics(snapshot: GuardrailSnapshot, rate: float, min_sample: int) -> List[Tuple[str, float, int]]:
    """Topics whose refusal share reaches rate, ignoring topics below min_sample."""
    spikes = []
    for topic_id, total in snapshot.topic_totals.items():
        if total < min_sample:
            continue
        topic_rate = snapshot.topic_refusals.get(topic_id, 0) / total
        if topic_rate >= rate:
            spikes.append((topic_id, topic_rate, total))
    return sorted(spikes)


def evaluate_guardrails(snapshot: GuardrailSnapshot, thresholds: GuardrailThresholds) -> GuardrailState:
    """Derive alerts and interventions from a counter snapshot."""
    now = datetime.now(timezone.utc).isoformat()
    alerts = []
    interventions = []

    inference_open = is_circuit_open(snapshot.inference_consecutive_failures, thresholds.inference_failures)
    if inference_open:
        alerts.append(GuardrailAlert(
            id="inference_circuit_open",
            severity="critical",
            title="Inference circuit open",
            description=f"{snapshot.inference_consecutive_failures} consecutive inference failures",
            action="Check the inference provider, then reset the inference circuit",
            detected_at=now,
        ))
        interventions.append("serve_safe_defaults")

    artifact_paused = is_circuit_open(snapshot.artifact_consecutive_failures, thresholds.artifact_failures)
    if artifact_paused:
        alerts.append(GuardrailAlert(
            id="artifact_generation_paused",
            severity="critical",
            title="Assurance generation paused",
            description=f"{snapshot.artifact_consecutive_failures} consecutive artifact failures",
            action="Inspect assurance failures, then reset the artifact circuit",
            detected_at=now,
        ))
        interventions.append("pause_assurance")

    for topic_id, rate, total in refusal_spike_topics(
            snapshot, thresholds.refusal_spike_rate, thresholds.refusal_spike_min_sample):
        alerts.append(GuardrailAlert(
            id=f"refusal_spike:{topic_id}",
            severity="warning",
            title="Refusal spike",
            description=f"Topic {topic_id} refused {rate:.0%} of {total} requests",
            action="Review topic inputs and policy rules",
            detected_at=now,
        ))

    if snapshot.schema_violations >= thresholds.schema_violation_count:
        alerts.append(GuardrailAlert(
            id="schema_violations",
            severity="warning",
            title="Model schema violations",
            description=f"{snapshot.schema_violations} structurally invalid model responses",
            action="Review prompt version and model output",
            detected_at=now,
        ))

    if snapshot.pending_reviews >= thresholds.review_queue_capacity:
        alerts.append(GuardrailAlert(
            id="review_queue_full",
            severity="warning",
            title="Review queue at capacity",
            description=f"{snapshot.pending_reviews} pending reviews",
            action="Work down the review queue",
            detected_at=now,
        ))

    return GuardrailState(
        inference_circuit_open=inference_open,
        artifact_paused=artifact_paused,
        alerts=alerts,
        interventions=interventions,
    )


class GuardrailTracker:
    """Feeds outcomes into counters and answers circuit questions."""

    def __init__(self, store=None, thresholds: GuardrailThresholds = None):
        self.store = store or MemoryCounterStore()
        self.thresholds = thresholds or GuardrailThresholds.from_config()

    def _record(self, counter: str, threshold: int, guardrail: str, success: bool):
        if success:
            previous = self.store.get(counter)
            if previous:
                self.store.set(counter, 0)
            if previous >= threshold:
                logger.log_guardrail_event(guardrail, "closed")
            return

        failures = self.store.increment(counter)
        if failures == threshold:
            logger.log_guardrail_event(guardrail, "opened", {"consecutive_failures": failures})

    def record_inference_result(self, success: bool):
        self._record(INFERENCE_FAILURES, self.thresholds.inference_failures, "inference", success)

    def record_artifact_result(self, success: bool):
        self._record(ARTIFACT_FAILURES, self.thresholds.artifact_failures, "artifact", success)

    def record_schema_violation(self):
        self.store.increment(SCHEMA_VIOLATIONS)

    def record_topic_outcome(self, topic_id: str, refused: bool):
        self.store.increment(TOPIC_TOTAL_PREFIX + topic_id)
        if refused:
            self.store.increment(TOPIC_REFUSED_PREFIX + topic_id)

    def is_inference_circuit_open(self) -> bool:
        return is_circuit_open(self.store.get(INFERENCE_FAILURES), self.thresholds.inference_failures)

    def is_artifact_paused(self) -> bool:
        return is_circuit_open(self.store.get(ARTIFACT_FAILURES), self.thresholds.artifact_failures)

    def snapshot(self, pending_reviews: int = 0) -> GuardrailSnapshot:
        totals = {k[len(TOPIC_TOTAL_PREFIX):]: v for k, v in self.store.items(TOPIC_TOTAL_PREFIX).items()}
        refusals = {k[len(TOPIC_REFUSED_PREFIX):]: v for k, v in self.store.items(TOPIC_REFUSED_PREFIX).items()}
        return GuardrailSnapshot(
            inference_consecutive_failures=self.store.get(INFERENCE_FAILURES),
            artifact_consecutive_failures=self.store.get(ARTIFACT_FAILURES),
            schema_violations=self.store.get(SCHEMA_VIOLATIONS),
            topic_totals=totals,
            topic_refusals=refusals,
            pending_reviews=pending_reviews,
        )

    def get_state(self, pending_reviews: int = 0) -> GuardrailState:
        return evaluate_guardrails(self.snapshot(pending_reviews), self.thresholds)

    def summary(self, pending_reviews: int = 0) -> Dict:
        """Read-only view for the ops surface."""
        snapshot = self.snapshot(pending_reviews)
        state = evaluate_guardrails(snapshot, self.thresholds)
        return {
            "circuit_open": state.inference_circuit_open,
            "assurance_paused": state.artifact_paused,
            "active_alerts": len(state.alerts),
            "alerts": [alert.__dict__ for alert in state.alerts],
            "interventions": state.interventions,
            "counters": {
                "inference_consecutive_failures": snapshot.inference_consecutive_failures,
                "artifact_consecutive_failures": snapshot.artifact_consecutive_failures,
                "schema_violations": snapshot.schema_violations,
                "topics_tracked": len(snapshot.topic_totals),
            },
        }

    def reset_inference_circuit(self):
        self.store.set(INFERENCE_FAILURES, 0)
        logger.log_guardrail_event("inference", "reset")

    def reset_artifact_circuit(self):
        self.store.set(ARTIFACT_FAILURES, 0)
        logger.log_guardrail_event("artifact", "reset")

    def reset_all(self):
        self.store.clear()
        logger.log_guardrail_event("all", "reset")


def create_tracker(backend: Optional[str] = None) -> GuardrailTracker:
    """Build a tracker for the configured counter backend."""
    backend = backend or config.get_guardrail_backend()
    if backend == "store":
        return GuardrailTracker(store=SqliteCounterStore())
    return GuardrailTracker(store=MemoryCounterStore())


# Global tracker instance
guardrails = create_tracker()
