"""
Decision Assurance - a paid, immutable copy of an issued verdict.

An artifact never changes the decision it copies. Weak or contested decisions
are rejected rather than given an assurance.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from . import config, ledger
from .db import get_db
from .errors import (
    ArtifactCircuitOpen, AssuranceAlreadyIssued, AssuranceRejected, AssuranceRevoked,
    NotFoundError, PaymentRequired, PersistenceConflict
)
from .guardrails import GuardrailTracker, guardrails
from .health import health_monitor
from .schema import (
    AssuranceRecord, DecisionRecord, FLAGGED_FOR_REVIEW, SUPERSEDED, new_id, utc_now_iso
)
from ..util.logging import logger

PENDING_PAYMENT = "pending_payment"
ASSURANCE_ISSUED = "issued"
REVOKED = "revoked"

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_REFUNDED = "refunded"

MAX_CHECKLIST_ITEMS = 8
LOW_CONFIDENCE_ASSUMPTION = 0.7

STANDARD_INVALIDATIONS = [
    "If travel dates change by more than 2 weeks",
    "If group size or composition changes",
    "If budget constraints change significantly",
]

ASSURANCE_COLUMNS = (
    "assurance_id, decision_id, topic_id, traveler_id, session_id, created_at, updated_at, "
    "artifact, status, payment_status, payment_id, amount_cents, currency, revocation_reason"
)


def new_assurance_id() -> str:
    return new_id("asr")


def confidence_label(confidence: float) -> str:
    if confidence >= 0.7:
        return "High"
    if confidence >= 0.5:
        return "Medium"
    return "Low"


def build_invalidation_checklist(decision: DecisionRecord) -> List[str]:
    """Change conditions, then shaky assumptions, then standard triggers. Capped at 8."""
    checklist = list(decision.change_conditions)
    for assumption in decision.assumptions:
        if assumption.get("confidence", 0) < LOW_CONFIDENCE_ASSUMPTION:
            checklist.append(f"Verify assumption: {assumption.get('text', '')}")
    checklist.extend(STANDARD_INVALIDATIONS)
    return checklist[:MAX_CHECKLIST_ITEMS]


def check_eligibility(decision: DecisionRecord, threshold: float = None):
    """Raise AssuranceRejected unless the decision can carry an assurance."""
    threshold = config.ASSURANCE_CONFIDENCE_THRESHOLD if threshold is None else threshold

    if decision.is_refusal:
        raise AssuranceRejected("DECISION_IS_REFUSAL", "Assurance cannot be issued for refused decisions")

    if decision.needs_review or decision.state == FLAGGED_FOR_REVIEW:
        raise AssuranceRejected(
            "DECISION_FLAGGED_FOR_REVIEW", "This decision is under review and assurance cannot be issued"
        )

    if decision.state == SUPERSEDED:
        raise AssuranceRejected("DECISION_SUPERSEDED", "This decision has been replaced by a newer record")

    if decision.confidence < threshold:
        raise AssuranceRejected(
            "CONFIDENCE_BELOW_THRESHOLD",
            f"Decision confidence ({decision.confidence * 100:.0f}%) is below the assurance threshold"
        )

    if not decision.outcome or not decision.summary:
        raise AssuranceRejected("MISSING_REQUIRED_FIELDS", "Decision is missing required verdict fields")

    if len(decision.assumptions) < 2:
        raise AssuranceRejected("MISSING_REQUIRED_FIELDS", "Decision is missing sufficient assumptions")

    if not decision.tradeoffs.get("gains") or not decision.tradeoffs.get("losses"):
        raise AssuranceRejected("MISSING_REQUIRED_FIELDS", "Decision is missing trade-off analysis")


def build_artifact(decision: DecisionRecord, assurance_id: str, created_at: str) -> Dict[str, Any]:
    return {
        "assurance_id": assurance_id,
        "decision_id": decision.decision_id,
        "topic_id": decision.topic_id,
        "verdict": {
            "outcome": decision.outcome,
            "headline": decision.headline,
            "summary": decision.summary,
            "confidence": decision.confidence,
            "confidence_label": confidence_label(decision.confidence),
        },
        "assumptions": decision.assumptions,
        "tradeoffs": decision.tradeoffs,
        "change_conditions": decision.change_conditions,
        "invalidation_checklist": build_invalidation_checklist(decision),
        "created_at": created_at,
        "logic_version": decision.logic_version,
        "prompt_version": decision.prompt_version,
        "review_status": "automated",
    }


def _row_to_assurance(row: sqlite3.Row) -> AssuranceRecord:
    return AssuranceRecord(
        assurance_id=row["assurance_id"],
        decision_id=row["decision_id"],
        topic_id=row["topic_id"],
        traveler_id=row["traveler_id"],
        session_id=row["session_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        artifact=json.loads(row["artifact"]),
        status=row["status"],
        payment_status=row["payment_status"],
        payment_id=row["payment_id"],
        amount_cents=row["amount_cents"],
        currency=row["currency"],
        revocation_reason=row["revocation_reason"],
    )


def _load(assurance_id: str) -> AssuranceRecord:
    with get_db() as conn:
        row = conn.execute(
            f"SELECT {ASSURANCE_COLUMNS} FROM assurances WHERE assurance_id = ?", (assurance_id,)
        ).fetchone()
    if not row:
        raise NotFoundError(f"Assurance '{assurance_id}' not found")
    return _row_to_assurance(row)


def generate_assurance(decision_id: str, session_id: str, traveler_id: Optional[str] = None,
                       tracker: GuardrailTracker = None) -> AssuranceRecord:
    """Create the pending-payment artifact for an eligible decision. One per decision."""
    tracker = tracker or guardrails
    if tracker.is_artifact_paused():
        logger.log_guardrail_event("artifact", "short_circuit", {"decision_id": decision_id})
        raise ArtifactCircuitOpen()

    decision = ledger.require_decision(decision_id)
    check_eligibility(decision)

    now = utc_now_iso()
    assurance_id = new_assurance_id()
    record = AssuranceRecord(
        assurance_id=assurance_id,
        decision_id=decision.decision_id,
        topic_id=decision.topic_id,
        traveler_id=traveler_id,
        session_id=session_id,
        created_at=now,
        updated_at=now,
        artifact=build_artifact(decision, assurance_id, now),
        status=PENDING_PAYMENT,
        payment_status=PAYMENT_PENDING,
        amount_cents=config.ASSURANCE_PRICE_CENTS,
        currency=config.ASSURANCE_CURRENCY,
    )

    try:
        with get_db() as conn:
            conn.execute(
                f"INSERT INTO assurances ({ASSURANCE_COLUMNS}) VALUES ({', '.join(['?'] * 14)})",
                (
                    record.assurance_id, record.decision_id, record.topic_id, record.traveler_id,
                    record.session_id, record.created_at, record.updated_at, json.dumps(record.artifact),
                    record.status, record.payment_status, record.payment_id, record.amount_cents,
                    record.currency, record.revocation_reason,
                )
            )
            conn.commit()
    except sqlite3.IntegrityError:
        raise AssuranceAlreadyIssued(
            f"An assurance already exists for decision '{decision_id}'", {"decision_id": decision_id}
        )
    except sqlite3.Error as e:
        logger.error(f"Assurance write failed for {decision_id}: {e}")
        tracker.record_artifact_result(False)
        health_monitor.record_assurance(False)
        raise

    tracker.record_artifact_result(True)
    health_monitor.record_assurance(True)
    logger.log_operation("assurance.generate", "success", {
        "assurance_id": record.assurance_id,
        "decision_id": decision_id,
        "amount_cents": record.amount_cents
    })
    return record


def get_assurance(assurance_id: str) -> AssuranceRecord:
    """Return a paid, unrevoked artifact."""
    record = _load(assurance_id)
    if record.status == REVOKED:
        raise AssuranceRevoked(f"Assurance '{assurance_id}' has been revoked", {"reason": record.revocation_reason})
    if record.payment_status != PAYMENT_COMPLETED:
        raise PaymentRequired(
            f"Payment required for assurance '{assurance_id}'",
            {"amount_cents": record.amount_cents, "currency": record.currency}
        )
    return record


def record_payment(assurance_id: str, payment_id: str) -> AssuranceRecord:
    """Move a pending payment to completed and issue the artifact. Only pending -> completed is allowed."""
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE assurances SET payment_status = ?, payment_id = ?, status = ?, updated_at = ? "
            "WHERE assurance_id = ? AND payment_status = ? AND status = ?",
            (PAYMENT_COMPLETED, payment_id, ASSURANCE_ISSUED, utc_now_iso(),
             assurance_id, PAYMENT_PENDING, PENDING_PAYMENT)
        )
        conn.commit()
        updated = cursor.rowcount == 1

    if not updated:
        _load(assurance_id)
        raise PersistenceConflict("payment", assurance_id)

    logger.log_operation("assurance.payment", "completed", {"assurance_id": assurance_id})
    return _load(assurance_id)


def revoke_assurance(assurance_id: str, reason: str) -> AssuranceRecord:
    """Withdraw an artifact. A completed payment is marked refunded."""
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE assurances SET status = ?, revocation_reason = ?, updated_at = ?, "
            "payment_status = CASE WHEN payment_status = ? THEN ? ELSE payment_status END "
            "WHERE assurance_id = ? AND status != ?",
            (REVOKED, reason, utc_now_iso(), PAYMENT_COMPLETED, PAYMENT_REFUNDED, assurance_id, REVOKED)
        )
        conn.commit()
        updated = cursor.rowcount == 1

    if not updated:
        record = _load(assurance_id)
        raise AssuranceRevoked(f"Assurance '{assurance_id}' is already revoked", {"reason": record.revocation_reason})

    logger.log_operation("assurance.revoke", "success", {"assurance_id": assurance_id, "reason": reason})
    return _load(assurance_id)
