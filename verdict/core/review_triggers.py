"""
Review Trigger Engine.

Evaluators are pure functions over ledger and event history that return a
TriggerFinding or None. run_review_triggers() gathers the history, turns findings
into review records and flags the referenced decision; evaluators never touch
the store themselves.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import config, event_log, ledger, reviews
from .errors import InvalidTransition
from .schema import (
    DecisionRecord, EventRecord, ReviewRecord, ISSUED, FLAGGED_FOR_REVIEW, TOOL_COMPLETED,
    QUALITY_GATE_FAILED, REPEATED_TOPIC_VISIT, OUTCOME_CHANGED, HIGH_REFUSAL_RATE, CONFIDENCE_DRIFT
)
from ..util.logging import logger


@dataclass
class TriggerFinding:
    """A positive evaluation, not yet persisted."""
    id: str
    reason_code: str
    topic_id: str
    details: str
    decision_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerThresholds:
    repeated_visit_count: int = 3
    refusal_rate: float = 0.3
    refusal_min_sample: int = 10
    confidence_drift: float = 0.15
    baseline_window: int = 10
    recent_window: int = 5
    outcome_window_hours: int = 24

    @classmethod
    def from_config(cls) -> "TriggerThresholds":
        return cls(
            repeated_visit_count=config.REVIEW_REPEATED_VISIT_COUNT,
            refusal_rate=config.REVIEW_REFUSAL_RATE,
            refusal_min_sample=config.REVIEW_REFUSAL_MIN_SAMPLE,
            confidence_drift=config.REVIEW_CONFIDENCE_DRIFT,
            baseline_window=config.REVIEW_BASELINE_WINDOW,
            recent_window=config.REVIEW_RECENT_WINDOW,
            outcome_window_hours=config.REVIEW_OUTCOME_WINDOW_HOURS,
        )


def _finding(reason_code: str, topic_id: str, details: str, decision_id: Optional[str] = None,
             context: Optional[Dict[str, Any]] = None) -> TriggerFinding:
    return TriggerFinding(
        id=str(uuid.uuid4()),
        reason_code=reason_code,
        topic_id=topic_id,
        details=details,
        decision_id=decision_id,
        context=context or {},
    )


def evaluate_repeated_visit(topic_id: str, traveler_id: str, events: List[EventRecord], threshold: int,
                            decision_id: Optional[str] = None) -> Optional[TriggerFinding]:
    """Same traveler evaluating the same topic threshold times or more."""
    visits = [
        e for e in events
        if e.event_type == TOOL_COMPLETED
        and e.traveler_id == traveler_id
        and e.payload.get("topic_id") == topic_id
    ]
    if len(visits) < threshold:
        return None

    return _finding(
        REPEATED_TOPIC_VISIT, topic_id,
        f"Traveler visited topic {len(visits)} times, threshold is {threshold}",
        decision_id,
        {"traveler_id": traveler_id, "visit_count": len(visits)},
    )


def evaluate_outcome_change(topic_id: str, decisions: List[DecisionRecord], window_hours: int) -> Optional[TriggerFinding]:
    """Latest issued outcome differs from the one before it within the window."""
    issued = sorted((d for d in decisions if not d.is_refusal), key=lambda d: d.created_at)
    if len(issued) < 2:
        return None

    previous, current = issued[-2], issued[-1]
    if previous.outcome == current.outcome:
        return None

    hours = (datetime.fromisoformat(current.created_at) - datetime.fromisoformat(previous.created_at)).total_seconds() / 3600
    if hours > window_hours:
        return None

    return _finding(
        OUTCOME_CHANGED, topic_id,
        f'Outcome changed from "{previous.outcome}" to "{current.outcome}" within {hours:.1f}h',
        current.decision_id,
        {
            "previous_decision_id": previous.decision_id,
            "previous_outcome": previous.outcome,
            "current_outcome": current.outcome,
            "hours_since_previous": round(hours, 2),
        },
    )


def evaluate_refusal_rate(topic_id: str, decisions: List[DecisionRecord], threshold: float,
                          min_sample: int) -> Optional[TriggerFinding]:
    """Share of refusals for a topic at or above threshold, once min_sample decisions exist."""
    total = len(decisions)
    if total < min_sample:
        return None

    refusals = sum(1 for d in decisions if d.is_refusal)
    rate = refusals / total
    if rate < threshold:
        return None

    return _finding(
        HIGH_REFUSAL_RATE, topic_id,
        f"Refusal rate {rate * 100:.1f}% exceeds threshold {threshold * 100:.0f}%",
        context={"refusal_count": refusals, "total_count": total, "refusal_rate": round(rate, 4)},
    )


def evaluate_confidence_drift(topic_id: str, decisions: List[DecisionRecord], baseline_window: int,
                              recent_window: int, threshold: float) -> Optional[TriggerFinding]:
    """Mean confidence of the earliest decisions minus the rolling mean of the latest ones."""
    confidences = [d.confidence for d in sorted(decisions, key=lambda d: d.created_at) if not d.is_refusal]
    if len(confidences) < baseline_window + recent_window:
        return None

    baseline = sum(confidences[:baseline_window]) / baseline_window
    recent = sum(confidences[-recent_window:]) / recent_window
    drift = round(baseline - recent, 6)
    if drift < threshold:
        return None

    return _finding(
        CONFIDENCE_DRIFT, topic_id,
        f"Confidence dropped from {baseline * 100:.1f}% to {recent * 100:.1f}%",
        context={
            "baseline_confidence": round(baseline, 4),
            "current_avg_confidence": round(recent, 4),
            "drift": drift,
        },
    )


def quality_gate_finding(topic_id: str, decision_id: Optional[str], failures: List[str]) -> TriggerFinding:
    return _finding(
        QUALITY_GATE_FAILED, topic_id,
        f"Quality gates failed: {'; '.join(failures[:5])}",
        decision_id,
        {"failures": failures[:10]},
    )


def raise_finding(finding: TriggerFinding) -> Optional[ReviewRecord]:
    """Persist a finding as a review record and flag its decision. Skips an identical pending review."""
    if reviews.has_pending_review(finding.topic_id, finding.reason_code, finding.decision_id):
        return None

    review = reviews.create_review(
        finding.topic_id, finding.decision_id, finding.reason_code, finding.details, finding.context
    )

    if finding.decision_id:
        record = ledger.get_decision(finding.decision_id)
        if record and record.state == ISSUED:
            try:
                ledger.flag_for_review(finding.decision_id, finding.reason_code)
            except InvalidTransition as e:
                logger.warning(f"Decision {finding.decision_id} moved before it could be flagged: {e}")

    return review


def evaluate_topic(topic_id: str, thresholds: TriggerThresholds) -> List[TriggerFinding]:
    """Run every history evaluator for one topic."""
    decisions = ledger.list_by_topic(topic_id)
    findings = [
        evaluate_outcome_change(topic_id, decisions, thresholds.outcome_window_hours),
        evaluate_refusal_rate(topic_id, decisions, thresholds.refusal_rate, thresholds.refusal_min_sample),
        evaluate_confidence_drift(
            topic_id, decisions, thresholds.baseline_window, thresholds.recent_window, thresholds.confidence_drift
        ),
    ]

    latest_by_traveler: Dict[str, str] = {}
    for decision in decisions:
        if decision.traveler_id:
            latest_by_traveler[decision.traveler_id] = decision.decision_id

    for traveler_id, decision_id in latest_by_traveler.items():
        events = event_log.list_by_traveler(traveler_id, limit=500)
        findings.append(evaluate_repeated_visit(
            topic_id, traveler_id, events, thresholds.repeated_visit_count, decision_id
        ))

    return [f for f in findings if f is not None]


def run_review_triggers(topic_id: Optional[str] = None, thresholds: TriggerThresholds = None) -> List[ReviewRecord]:
    """Evaluate one topic, or every topic in the ledger, and raise review records."""
    thresholds = thresholds or TriggerThresholds.from_config()
    topics = [topic_id] if topic_id else ledger.list_topics()

    created = []
    for topic in topics:
        for finding in evaluate_topic(topic, thresholds):
            review = raise_finding(finding)
            if review:
                created.append(review)

    logger.log_operation("review.sweep", "success", {"topics": len(topics), "reviews_created": len(created)})
    return created


def resolve_review(review_id: str, status: str, reviewer_id: str,
                   resolution_notes: Optional[str] = None) -> ReviewRecord:
    """Record a reviewer's verdict; a flagged decision moves to REVIEWED once its review is worked."""
    review = reviews.update_review_status(review_id, status, reviewer_id, resolution_notes)

    if status in ("reviewed", "resolved") and review.decision_id:
        record = ledger.get_decision(review.decision_id)
        if record and record.state == FLAGGED_FOR_REVIEW:
            try:
                ledger.mark_reviewed(review.decision_id)
            except InvalidTransition as e:
                logger.warning(f"Decision {review.decision_id} moved before it could be marked reviewed: {e}")

    return review
