"""
Persistent record types and the enumerations shared across the decision core.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Decision ledger states
ISSUED = "ISSUED"
REFUSED = "REFUSED"
REVISED = "REVISED"
SUPERSEDED = "SUPERSEDED"
FLAGGED_FOR_REVIEW = "FLAGGED_FOR_REVIEW"
REVIEWED = "REVIEWED"
CORRECTED = "CORRECTED"
CLOSED = "CLOSED"

DECISION_STATES = [ISSUED, REFUSED, REVISED, SUPERSEDED, FLAGGED_FOR_REVIEW, REVIEWED, CORRECTED, CLOSED]

# state -> states it may move to
ALLOWED_TRANSITIONS = {
    ISSUED: {FLAGGED_FOR_REVIEW, REVISED, SUPERSEDED, CLOSED},
    REFUSED: {SUPERSEDED},
    FLAGGED_FOR_REVIEW: {REVIEWED, SUPERSEDED},
    REVIEWED: {CORRECTED, CLOSED, SUPERSEDED},
    CORRECTED: {SUPERSEDED, CLOSED},
    REVISED: {SUPERSEDED, CLOSED},
    SUPERSEDED: set(),
    CLOSED: set(),
}

OUTCOMES = ["book", "wait", "switch", "discard"]
REFUSED_OUTCOME = "refused"

DECISION_TYPES = ["timing_verdict", "fit_assessment", "comparison", "refusal"]
REVIEW_STATUSES = ["none", "queued", "reviewed", "corrected"]

# Refusal codes
GUARANTEE_REQUESTED = "guarantee_requested"
INPUTS_CONFLICT_UNBOUNDED = "inputs_conflict_unbounded"
MISSING_MATERIAL_INPUTS = "missing_material_inputs"
SCHEMA_VIOLATION = "schema_violation"
CONTENT_POLICY_VIOLATION = "content_policy_violation"
SERVICE_DEGRADED = "service_degraded"
EVALUATION_IN_PROGRESS = "evaluation_in_progress"
MODEL_REFUSED = "model_refused"

REFUSAL_CODES = [
    GUARANTEE_REQUESTED, INPUTS_CONFLICT_UNBOUNDED, MISSING_MATERIAL_INPUTS,
    SCHEMA_VIOLATION, CONTENT_POLICY_VIOLATION, SERVICE_DEGRADED,
    EVALUATION_IN_PROGRESS, MODEL_REFUSED
]

# Event types
SESSION_STARTED = "SESSION_STARTED"
ENGAGED = "ENGAGED"
PAGE_VIEWED = "PAGE_VIEWED"
TOOL_STARTED = "TOOL_STARTED"
TOOL_COMPLETED = "TOOL_COMPLETED"
DECISION_ISSUED = "DECISION_ISSUED"
DECISION_REFUSED = "DECISION_REFUSED"
DECISION_REVERSED = "DECISION_REVERSED"
TRUST_FLAG_RAISED = "TRUST_FLAG_RAISED"
LEAD_CREATED = "LEAD_CREATED"

EVENT_TYPES = [
    SESSION_STARTED, ENGAGED, PAGE_VIEWED, TOOL_STARTED, TOOL_COMPLETED,
    DECISION_ISSUED, DECISION_REFUSED, DECISION_REVERSED, TRUST_FLAG_RAISED, LEAD_CREATED
]

# Review reason codes and statuses
QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
REPEATED_TOPIC_VISIT = "REPEATED_TOPIC_VISIT"
OUTCOME_CHANGED = "OUTCOME_CHANGED"
HIGH_REFUSAL_RATE = "HIGH_REFUSAL_RATE"
CONFIDENCE_DRIFT = "CONFIDENCE_DRIFT"
MANUAL_FLAG = "MANUAL_FLAG"

REVIEW_REASON_CODES = [
    QUALITY_GATE_FAILED, REPEATED_TOPIC_VISIT, OUTCOME_CHANGED,
    HIGH_REFUSAL_RATE, CONFIDENCE_DRIFT, MANUAL_FLAG
]
REVIEW_RECORD_STATUSES = ["pending", "reviewed", "resolved", "dismissed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_id(prefix: str) -> str:
    """Short prefixed identifier, e.g. dec_1a2b3c4d5e6f."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class AITrace:
    model: Optional[str]
    prompt_version: str
    safety_flags: List[str] = field(default_factory=list)


@dataclass
class DecisionRecord:
    decision_id: str
    session_id: str
    topic_id: str
    decision_type: str
    state: str
    outcome: str
    headline: str
    summary: str
    assumptions: List[Dict[str, Any]]
    tradeoffs: Dict[str, List[str]]
    change_conditions: List[str]
    confidence: float
    inputs_snapshot: Dict[str, Any]
    logic_version: str
    prompt_version: str
    ai_used: bool
    created_at: str
    updated_at: str
    traveler_id: Optional[str] = None
    lead_id: Optional[str] = None
    fingerprint: Optional[str] = None
    refusal: Optional[Dict[str, Any]] = None
    ai_trace: Optional[AITrace] = None
    retry_count: int = 0
    needs_review: bool = False
    review_reason: Optional[str] = None
    review_status: str = "none"
    supersedes_decision_id: Optional[str] = None

    @property
    def is_refusal(self) -> bool:
        return self.outcome == REFUSED_OUTCOME

    def verdict_fields(self) -> Dict[str, Any]:
        """Fields that must never change after creation."""
        return {
            "outcome": self.outcome,
            "headline": self.headline,
            "summary": self.summary,
            "assumptions": self.assumptions,
            "tradeoffs": self.tradeoffs,
            "change_conditions": self.change_conditions,
            "confidence": self.confidence,
            "refusal": self.refusal,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EventRecord:
    event_id: str
    created_at: str
    event_type: str
    session_id: Optional[str] = None
    traveler_id: Optional[str] = None
    lead_id: Optional[str] = None
    decision_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewRecord:
    review_id: str
    created_at: str
    topic_id: str
    reason_code: str
    reason_details: str
    decision_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: str = "pending"
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[str] = None
    resolution_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SnapshotRecord:
    fingerprint: str
    topic_id: Optional[str]
    decision_id: Optional[str]
    response: Dict[str, Any]
    created_at: float
    expires_at: float

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class AssuranceRecord:
    assurance_id: str
    decision_id: str
    topic_id: str
    created_at: str
    updated_at: str
    artifact: Dict[str, Any]
    status: str
    payment_status: str
    amount_cents: int
    currency: str
    traveler_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    revocation_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
