"""
Event Log - append-only audit trail.

There is no update or delete here. A second write with an existing event id is
rejected with PersistenceConflict, leaving the original row untouched.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import get_db
from .errors import PersistenceConflict, ValidationError
from .schema import (
    EVENT_TYPES, EventRecord, new_id, utc_now_iso,
    SESSION_STARTED, ENGAGED, DECISION_ISSUED, DECISION_REFUSED, TOOL_COMPLETED
)
from ..util.logging import audit_event, logger


def new_event_id() -> str:
    return new_id("evt")


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        event_id=row["event_id"],
        created_at=row["created_at"],
        event_type=row["event_type"],
        session_id=row["session_id"],
        traveler_id=row["traveler_id"],
        lead_id=row["lead_id"],
        decision_id=row["decision_id"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
    )


def append_event(event: EventRecord) -> EventRecord:
    """Write an event once. Duplicates raise PersistenceConflict."""
    if event.event_type not in EVENT_TYPES:
        raise ValidationError(f"event_type must be one of: {EVENT_TYPES}")

    try:
        with get_db() as conn:
            conn.execute(
                "INSERT INTO events (event_id, created_at, event_type, session_id, traveler_id, lead_id, decision_id, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (event.event_id, event.created_at, event.event_type, event.session_id,
                 event.traveler_id, event.lead_id, event.decision_id, json.dumps(event.payload))
            )
            conn.commit()
    except sqlite3.IntegrityError:
        logger.warning(f"Duplicate event id rejected: {event.event_id}")
        raise PersistenceConflict("event", event.event_id)

    audit_event("event.append", {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "session_id": event.session_id
    }, event.payload)
    return event


def log_event(event_type: str, session_id: Optional[str], traveler_id: Optional[str] = None,
              lead_id: Optional[str] = None, decision_id: Optional[str] = None,
              payload: Optional[Dict[str, Any]] = None, event_id: Optional[str] = None) -> EventRecord:
    return append_event(EventRecord(
        event_id=event_id or new_event_id(),
        created_at=utc_now_iso(),
        event_type=event_type,
        session_id=session_id,
        traveler_id=traveler_id,
        lead_id=lead_id,
        decision_id=decision_id,
        payload=payload or {},
    ))


def log_session_started(session_id: str, traveler_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> EventRecord:
    return log_event(SESSION_STARTED, session_id, traveler_id, payload=payload)


def log_engaged(session_id: str, traveler_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> EventRecord:
    return log_event(ENGAGED, session_id, traveler_id, payload=payload)


def log_decision_issued(session_id: str, traveler_id: Optional[str], lead_id: Optional[str], decision_id: str,
                        outcome: str, confidence: float, logic_version: str, ai_used: bool) -> EventRecord:
    return log_event(DECISION_ISSUED, session_id, traveler_id, lead_id, decision_id, {
        "outcome": outcome,
        "confidence": confidence,
        "logic_version": logic_version,
        "ai_used": ai_used,
    })


def log_decision_refused(session_id: str, traveler_id: Optional[str], lead_id: Optional[str], decision_id: str,
                         reason: str, code: str, missing_inputs_count: int, logic_version: str) -> EventRecord:
    return log_event(DECISION_REFUSED, session_id, traveler_id, lead_id, decision_id, {
        "reason": reason,
        "code": code,
        "missing_inputs_count": missing_inputs_count,
        "logic_version": logic_version,
    })


def log_tool_completed(session_id: str, traveler_id: Optional[str], tool_name: str, duration_ms: int,
                       decision_id: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> EventRecord:
    payload = {"tool_name": tool_name, "duration_ms": duration_ms}
    if extra:
        payload.update(extra)
    return log_event(TOOL_COMPLETED, session_id, traveler_id, decision_id=decision_id, payload=payload)


def get_event(event_id: str) -> Optional[EventRecord]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM events WHERE event_id = ?", (event_id,)).fetchone()
    return _row_to_event(row) if row else None


def list_by_traveler(traveler_id: str, limit: int = 100) -> List[EventRecord]:
    """Events for a traveler, newest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM events WHERE traveler_id = ? ORDER BY created_at DESC LIMIT ?",
            (traveler_id, limit)
        ).fetchall()
    return [_row_to_event(row) for row in rows]


def list_by_type(event_type: str, limit: int = 100) -> List[EventRecord]:
    """Events of one type, newest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM events WHERE event_type = ? ORDER BY created_at DESC LIMIT ?",
            (event_type, limit)
        ).fetchall()
    return [_row_to_event(row) for row in rows]


def list_by_session(session_id: str) -> List[EventRecord]:
    """Events for a session in chronological order."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM events WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
            (session_id,)
        ).fetchall()
    return [_row_to_event(row) for row in rows]


def count_events(event_id: str) -> int:
    with get_db() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM events WHERE event_id = ?", (event_id,)).fetchone()
    return row["n"]
