"""
Review record store. Records are appended by triggers; only the status block is
progressed afterwards, by human reviewers.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import get_db
from .errors import NotFoundError, PersistenceConflict, ValidationError
from .schema import REVIEW_REASON_CODES, REVIEW_RECORD_STATUSES, ReviewRecord, new_id, utc_now_iso
from ..util.logging import logger


def _row_to_review(row: sqlite3.Row) -> ReviewRecord:
    return ReviewRecord(
        review_id=row["review_id"],
        created_at=row["created_at"],
        topic_id=row["topic_id"],
        decision_id=row["decision_id"],
        reason_code=row["reason_code"],
        reason_details=row["reason_details"],
        context=json.loads(row["context"]) if row["context"] else {},
        status=row["status"],
        reviewer_id=row["reviewer_id"],
        reviewed_at=row["reviewed_at"],
        resolution_notes=row["resolution_notes"],
    )


def create_review(topic_id: str, decision_id: Optional[str], reason_code: str, reason_details: str,
                  context: Optional[Dict[str, Any]] = None) -> ReviewRecord:
    if reason_code not in REVIEW_REASON_CODES:
        raise ValidationError(f"reason_code must be one of: {REVIEW_REASON_CODES}")

    review = ReviewRecord(
        review_id=new_id("rev"),
        created_at=utc_now_iso(),
        topic_id=topic_id,
        decision_id=decision_id,
        reason_code=reason_code,
        reason_details=reason_details,
        context=context or {},
    )
    try:
        with get_db() as conn:
            conn.execute(
                "INSERT INTO reviews (review_id, created_at, topic_id, decision_id, reason_code, reason_details, context, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (review.review_id, review.created_at, review.topic_id, review.decision_id,
                 review.reason_code, review.reason_details, json.dumps(review.context), review.status)
            )
            conn.commit()
    except sqlite3.IntegrityError:
        raise PersistenceConflict("review", review.review_id)

    logger.log_review_trigger(reason_code, topic_id, review.review_id, decision_id)
    return review


def get_review(review_id: str) -> Optional[ReviewRecord]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM reviews WHERE review_id = ?", (review_id,)).fetchone()
    return _row_to_review(row) if row else None


def list_pending_reviews(limit: int = 50) -> List[ReviewRecord]:
    """Oldest pending reviews first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM reviews WHERE status = 'pending' ORDER BY created_at ASC LIMIT ?", (limit,)
        ).fetchall()
    return [_row_to_review(row) for row in rows]


def list_reviews_by_topic(topic_id: str, limit: int = 50) -> List[ReviewRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM reviews WHERE topic_id = ? ORDER BY created_at DESC LIMIT ?", (topic_id, limit)
        ).fetchall()
    return [_row_to_review(row) for row in rows]


def count_pending_reviews() -> int:
    with get_db() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM reviews WHERE status = 'pending'").fetchone()
    return row["n"]


def has_pending_review(topic_id: str, reason_code: str, decision_id: Optional[str]) -> bool:
    with get_db() as conn:
        row = conn.execute(
            "SELECT 1 FROM reviews WHERE status = 'pending' AND topic_id = ? AND reason_code = ? "
            "AND decision_id IS ?",
            (topic_id, reason_code, decision_id)
        ).fetchone()
    return row is not None


def update_review_status(review_id: str, status: str, reviewer_id: str,
                         resolution_notes: Optional[str] = None) -> ReviewRecord:
    if status not in REVIEW_RECORD_STATUSES:
        raise ValidationError(f"status must be one of: {REVIEW_RECORD_STATUSES}")

    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE reviews SET status = ?, reviewer_id = ?, reviewed_at = ?, resolution_notes = ? "
            "WHERE review_id = ?",
            (status, reviewer_id, utc_now_iso(), resolution_notes, review_id)
        )
        conn.commit()

    if cursor.rowcount == 0:
        raise NotFoundError(f"Review '{review_id}' not found")

    logger.log_operation("review.status", status, {"review_id": review_id, "reviewer_id": reviewer_id})
    return get_review(review_id)
