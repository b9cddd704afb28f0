"""
Decision Ledger - decision records and their state machine.

Records are created once with a conditional insert. Afterwards only state,
updated_at and the review columns are ever written; verdict columns appear in
no UPDATE statement in this module.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import get_db
from .errors import InvalidTransition, NotFoundError, PersistenceConflict
from .schema import (
    ALLOWED_TRANSITIONS, AITrace, DecisionRecord,
    ISSUED, REFUSED, FLAGGED_FOR_REVIEW, REVIEWED, CORRECTED, SUPERSEDED, REVISED,
    new_id, utc_now_iso
)
from ..util.logging import logger

DECISION_COLUMNS = (
    "decision_id, traveler_id, session_id, lead_id, topic_id, fingerprint, created_at, updated_at, "
    "decision_type, state, outcome, headline, summary, assumptions, tradeoffs, change_conditions, "
    "confidence, refusal, inputs_snapshot, logic_version, prompt_version, ai_used, ai_trace, "
    "retry_count, needs_review, review_reason, review_status, supersedes_decision_id"
)


def new_decision_id() -> str:
    return new_id("dec")


def _row_to_record(row: sqlite3.Row) -> DecisionRecord:
    trace = json.loads(row["ai_trace"]) if row["ai_trace"] else None
    return DecisionRecord(
        decision_id=row["decision_id"],
        traveler_id=row["traveler_id"],
        session_id=row["session_id"],
        lead_id=row["lead_id"],
        topic_id=row["topic_id"],
        fingerprint=row["fingerprint"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        decision_type=row["decision_type"],
        state=row["state"],
        outcome=row["outcome"],
        headline=row["headline"],
        summary=row["summary"],
        assumptions=json.loads(row["assumptions"]),
        tradeoffs=json.loads(row["tradeoffs"]),
        change_conditions=json.loads(row["change_conditions"]),
        confidence=row["confidence"],
        refusal=json.loads(row["refusal"]) if row["refusal"] else None,
        inputs_snapshot=json.loads(row["inputs_snapshot"]),
        logic_version=row["logic_version"],
        prompt_version=row["prompt_version"],
        ai_used=bool(row["ai_used"]),
        ai_trace=AITrace(**trace) if trace else None,
        retry_count=row["retry_count"],
        needs_review=bool(row["needs_review"]),
        review_reason=row["review_reason"],
        review_status=row["review_status"],
        supersedes_decision_id=row["supersedes_decision_id"],
    )


def _insert_decision(conn: sqlite3.Connection, record: DecisionRecord):
    trace = record.ai_trace.__dict__ if record.ai_trace else None
    try:
        conn.execute(
            f"INSERT INTO decisions ({DECISION_COLUMNS}) VALUES ({', '.join(['?'] * 28)})",
            (
                record.decision_id, record.traveler_id, record.session_id, record.lead_id,
                record.topic_id, record.fingerprint, record.created_at, record.updated_at,
                record.decision_type, record.state, record.outcome, record.headline, record.summary,
                json.dumps(record.assumptions), json.dumps(record.tradeoffs),
                json.dumps(record.change_conditions), record.confidence,
                json.dumps(record.refusal) if record.refusal is not None else None,
                json.dumps(record.inputs_snapshot), record.logic_version, record.prompt_version,
                record.ai_used, json.dumps(trace) if trace else None, record.retry_count,
                record.needs_review, record.review_reason, record.review_status,
                record.supersedes_decision_id,
            )
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        logger.warning(f"Duplicate decision id rejected: {record.decision_id}")
        raise PersistenceConflict("decision", record.decision_id)


def create_decision(record: DecisionRecord) -> DecisionRecord:
    """Insert a new record. A second record claiming the same id raises PersistenceConflict."""
    if record.state not in (ISSUED, REFUSED):
        raise InvalidTransition(record.decision_id, "NEW", record.state)

    with get_db() as conn:
        _insert_decision(conn, record)
        conn.commit()

    logger.log_operation("ledger.create", "success", {
        "decision_id": record.decision_id,
        "state": record.state,
        "topic_id": record.topic_id
    })
    return record


def get_decision(decision_id: str) -> Optional[DecisionRecord]:
    with get_db() as conn:
        row = conn.execute(
            f"SELECT {DECISION_COLUMNS} FROM decisions WHERE decision_id = ?", (decision_id,)
        ).fetchone()
    return _row_to_record(row) if row else None


def require_decision(decision_id: str) -> DecisionRecord:
    record = get_decision(decision_id)
    if record is None:
        raise NotFoundError(f"Decision '{decision_id}' not found")
    return record


def list_by_traveler(traveler_id: str, limit: int = 20) -> List[DecisionRecord]:
    """Decisions for a traveler, newest first."""
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT {DECISION_COLUMNS} FROM decisions WHERE traveler_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (traveler_id, limit)
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def list_needing_review(limit: int = 50) -> List[DecisionRecord]:
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT {DECISION_COLUMNS} FROM decisions WHERE needs_review = 1 "
            "ORDER BY created_at DESC LIMIT ?",
            (limit,)
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def list_by_topic(topic_id: str, limit: int = 200) -> List[DecisionRecord]:
    """Decisions for a topic in chronological order."""
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT {DECISION_COLUMNS} FROM decisions WHERE topic_id = ? "
            "ORDER BY created_at ASC LIMIT ?",
            (topic_id, limit)
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def list_topics() -> List[str]:
    with get_db() as conn:
        rows = conn.execute("SELECT DISTINCT topic_id FROM decisions ORDER BY topic_id").fetchall()
    return [row["topic_id"] for row in rows]


def _update_state(conn: sqlite3.Connection, decision_id: str, from_state: str, to_state: str,
                  review_fields: Optional[Dict[str, Any]] = None) -> bool:
    """Compare-and-set on the current state. Returns False if another writer moved it first."""
    assignments = ["state = ?", "updated_at = ?"]
    params: List[Any] = [to_state, utc_now_iso()]
    for column in ("needs_review", "review_reason", "review_status"):
        if review_fields and column in review_fields:
            assignments.append(f"{column} = ?")
            params.append(review_fields[column])
    params.extend([decision_id, from_state])

    cursor = conn.execute(
        f"UPDATE decisions SET {', '.join(assignments)} WHERE decision_id = ? AND state = ?",
        params
    )
    return cursor.rowcount == 1


def transition_state(decision_id: str, to_state: str, review_fields: Optional[Dict[str, Any]] = None) -> DecisionRecord:
    """Advance a decision along the allowed transition table."""
    current = require_decision(decision_id)
    if to_state not in ALLOWED_TRANSITIONS.get(current.state, set()):
        raise InvalidTransition(decision_id, current.state, to_state)

    with get_db() as conn:
        moved = _update_state(conn, decision_id, current.state, to_state, review_fields)
        conn.commit()

    if not moved:
        latest = require_decision(decision_id)
        raise InvalidTransition(decision_id, latest.state, to_state)

    logger.log_operation("ledger.transition", "success", {
        "decision_id": decision_id,
        "from_state": current.state,
        "to_state": to_state
    })
    return require_decision(decision_id)


def flag_for_review(decision_id: str, reason: str) -> DecisionRecord:
    return transition_state(decision_id, FLAGGED_FOR_REVIEW, {
        "needs_review": True,
        "review_reason": reason,
        "review_status": "queued",
    })


def mark_reviewed(decision_id: str) -> DecisionRecord:
    return transition_state(decision_id, REVIEWED, {"needs_review": False, "review_status": "reviewed"})


def _replace(old_decision_id: str, new_record: DecisionRecord, path: List[str]) -> DecisionRecord:
    """Create new_record pointing at the old one and walk the old record along path, atomically."""
    if new_record.state not in (ISSUED, REFUSED):
        raise InvalidTransition(new_record.decision_id, "NEW", new_record.state)

    old = require_decision(old_decision_id)
    state = old.state
    for to_state in path:
        if to_state not in ALLOWED_TRANSITIONS.get(state, set()):
            raise InvalidTransition(old_decision_id, state, to_state)
        state = to_state

    new_record.supersedes_decision_id = old_decision_id
    with get_db() as conn:
        _insert_decision(conn, new_record)
        state = old.state
        for to_state in path:
            review_fields = {"review_status": "corrected"} if to_state == CORRECTED else None
            if not _update_state(conn, old_decision_id, state, to_state, review_fields):
                conn.rollback()
                latest = require_decision(old_decision_id)
                raise InvalidTransition(old_decision_id, latest.state, to_state)
            state = to_state
        conn.commit()

    logger.log_operation("ledger.replace", "success", {
        "old_decision_id": old_decision_id,
        "new_decision_id": new_record.decision_id,
        "old_state": state
    })
    return new_record


def supersede(old_decision_id: str, new_record: DecisionRecord) -> DecisionRecord:
    """New record replaces the old one; the old record becomes SUPERSEDED."""
    return _replace(old_decision_id, new_record, [SUPERSEDED])


def correct_decision(old_decision_id: str, new_record: DecisionRecord) -> DecisionRecord:
    """Issue a corrected record. A reviewed record passes through CORRECTED on its way to SUPERSEDED."""
    old = require_decision(old_decision_id)
    path = [CORRECTED, SUPERSEDED] if old.state == REVIEWED else [SUPERSEDED]
    return _replace(old_decision_id, new_record, path)


def record_revision(old_decision_id: str, new_record: DecisionRecord) -> DecisionRecord:
    """A revision request produced new_record; the prior decision becomes REVISED."""
    return _replace(old_decision_id, new_record, [REVISED])
