"""
Fingerprint & Lock Manager.

fingerprint() hashes the material subset of an envelope. LockManager arbitrates
concurrent identical requests with a create-if-absent lock row per fingerprint,
so at most one inference call is in flight for the same material inputs.
"""

import hashlib
import json
import math
import re
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import config
from .db import get_db
from .schema import SnapshotRecord
from ..api.schemas import InputEnvelope
from ..util.logging import logger

TOPIC_PATTERN = re.compile(r"topic_id=([a-z0-9-]+)")


def derive_topic_id(question: str, scope: str) -> str:
    """Explicit topic from the scope marker, else a short hash of question and scope."""
    match = TOPIC_PATTERN.search(scope or "")
    if match:
        return match.group(1)
    digest = hashlib.sha256(f"{question.strip().lower()}:{scope}".encode("utf-8")).hexdigest()
    return f"t-{digest[:12]}"


def _normalize_text(value: str) -> str:
    return " ".join(value.lower().split())


def material_subset(envelope: InputEnvelope) -> Dict[str, Any]:
    """Fields that change the decision. Tracking is excluded; prior decisions count for revisions only."""
    user_context = envelope.user_context.model_dump(mode="json", exclude={"prior_decisions"})
    subset = {
        "task": envelope.task,
        "topic_id": derive_topic_id(envelope.request.question, envelope.request.scope),
        "question": _normalize_text(envelope.request.question),
        "destinations": sorted(_normalize_text(d) for d in envelope.request.destinations_considered),
        "constraints": envelope.request.constraints,
        "user_context": user_context,
        "facts": envelope.facts.model_dump(mode="json"),
        "policy": envelope.policy.model_dump(mode="json"),
    }
    if envelope.task == "REVISION":
        subset["prior_decisions"] = list(envelope.user_context.prior_decisions)
    return subset


def fingerprint(envelope: InputEnvelope) -> str:
    """Deterministic SHA-256 over the canonical JSON of the material subset."""
    canonical = json.dumps(material_subset(envelope), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class AcquireResult:
    status: str  # hit|lock|locked
    fingerprint: str
    snapshot: Optional[SnapshotRecord] = None
    lock_id: Optional[str] = None
    retry_after_seconds: int = 0

    @property
    def is_hit(self) -> bool:
        return self.status == "hit"

    @property
    def has_lock(self) -> bool:
        return self.status == "lock"


class LockManager:
    """Owns lock acquisition, release and snapshot writes for fingerprints."""

    def __init__(self, ttl_sec: int = None, snapshot_ttl_sec: int = None,
                 poll_interval_sec: float = None, max_wait_sec: float = None,
                 owner: str = None, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.ttl_sec = config.LOCK_TTL_SEC if ttl_sec is None else ttl_sec
        self.snapshot_ttl_sec = config.SNAPSHOT_TTL_SEC if snapshot_ttl_sec is None else snapshot_ttl_sec
        self.poll_interval_sec = config.LOCK_POLL_INTERVAL_SEC if poll_interval_sec is None else poll_interval_sec
        self.max_wait_sec = config.LOCK_POLL_MAX_WAIT_SEC if max_wait_sec is None else max_wait_sec
        self.owner = owner or f"builder-{uuid.uuid4().hex[:8]}"
        self.clock = clock
        self.sleep = sleep

    def get_snapshot(self, fp: str, allow_stale: bool = False, max_age_sec: float = None) -> Optional[SnapshotRecord]:
        """Fresh snapshot for a fingerprint, or a stale one within max_age_sec when allowed."""
        with get_db() as conn:
            row = conn.execute(
                "SELECT fingerprint, topic_id, decision_id, response, created_at, expires_at "
                "FROM snapshots WHERE fingerprint = ?",
                (fp,)
            ).fetchone()

        if not row:
            return None

        record = SnapshotRecord(
            fingerprint=row["fingerprint"],
            topic_id=row["topic_id"],
            decision_id=row["decision_id"],
            response=json.loads(row["response"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )
        now = self.clock()
        if record.is_fresh(now):
            return record
        if allow_stale and (max_age_sec is None or record.age_seconds(now) <= max_age_sec):
            return record
        return None

    def acquire(self, fp: str) -> AcquireResult:
        """Return a fresh snapshot, a new lock token, or report the fingerprint as locked."""
        snapshot = self.get_snapshot(fp)
        if snapshot:
            logger.log_lock_event(fp, "hit", {"decision_id": snapshot.decision_id})
            return AcquireResult("hit", fp, snapshot=snapshot)

        lock_id = uuid.uuid4().hex
        now = self.clock()
        lock_until = now + self.ttl_sec

        with get_db() as conn:
            acquired = False
            try:
                conn.execute(
                    "INSERT INTO fingerprint_locks (fingerprint, lock_id, owner, acquired_at, lock_until) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (fp, lock_id, self.owner, now, lock_until)
                )
                conn.commit()
                acquired = True
            except sqlite3.IntegrityError:
                conn.rollback()

            if not acquired:
                # Take over only an expired lock left by a crashed builder
                cursor = conn.execute(
                    "UPDATE fingerprint_locks SET lock_id = ?, owner = ?, acquired_at = ?, lock_until = ? "
                    "WHERE fingerprint = ? AND lock_until <= ?",
                    (lock_id, self.owner, now, lock_until, fp, now)
                )
                conn.commit()
                if cursor.rowcount == 1:
                    acquired = True
                    logger.log_lock_event(fp, "expired_takeover", {"owner": self.owner})

            if not acquired:
                row = conn.execute(
                    "SELECT lock_until FROM fingerprint_locks WHERE fingerprint = ?", (fp,)
                ).fetchone()
                retry_after = max(1, math.ceil(row["lock_until"] - now)) if row else 1
                logger.log_lock_event(fp, "contended", {"retry_after_seconds": retry_after})
                return AcquireResult("locked", fp, retry_after_seconds=retry_after)

        # The previous holder may have written its snapshot between our read and insert
        snapshot = self.get_snapshot(fp)
        if snapshot:
            self.release(fp, lock_id)
            return AcquireResult("hit", fp, snapshot=snapshot)

        logger.log_lock_event(fp, "acquired", {"owner": self.owner, "ttl_sec": self.ttl_sec})
        return AcquireResult("lock", fp, lock_id=lock_id)

    def wait_for_result(self, fp: str) -> AcquireResult:
        """Poll a contended fingerprint until the winner's snapshot lands, the lock frees, or time runs out."""
        deadline = self.clock() + self.max_wait_sec
        while True:
            result = self.acquire(fp)
            if result.status != "locked":
                return result
            if self.clock() >= deadline:
                return result
            self.sleep(self.poll_interval_sec)

    def store_snapshot(self, fp: str, lock_id: Optional[str], response: Dict[str, Any],
                       decision_id: Optional[str], topic_id: Optional[str], ttl_sec: int = None) -> bool:
        """Write the result for a fingerprint and release our lock in one transaction.

        The upsert only replaces an expired snapshot, so a late duplicate write is a no-op.
        Returns True when the snapshot row was written.
        """
        ttl = self.snapshot_ttl_sec if ttl_sec is None else ttl_sec
        now = self.clock()

        with get_db() as conn:
            cursor = conn.execute(
                "INSERT INTO snapshots (fingerprint, topic_id, decision_id, response, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(fingerprint) DO UPDATE SET "
                "topic_id = excluded.topic_id, decision_id = excluded.decision_id, "
                "response = excluded.response, created_at = excluded.created_at, expires_at = excluded.expires_at "
                "WHERE snapshots.expires_at <= excluded.created_at",
                (fp, topic_id, decision_id, json.dumps(response), now, now + ttl)
            )
            written = cursor.rowcount == 1
            if lock_id:
                conn.execute(
                    "DELETE FROM fingerprint_locks WHERE fingerprint = ? AND lock_id = ?", (fp, lock_id)
                )
            conn.commit()

        logger.log_lock_event(fp, "snapshot_stored" if written else "snapshot_noop", {"decision_id": decision_id})
        return written

    def release(self, fp: str, lock_id: str) -> bool:
        """Delete our lock without writing a snapshot. No-op if the lock changed hands."""
        with get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM fingerprint_locks WHERE fingerprint = ? AND lock_id = ?", (fp, lock_id)
            )
            conn.commit()
            released = cursor.rowcount == 1

        logger.log_lock_event(fp, "released" if released else "release_noop")
        return released

    def extend(self, fp: str, lock_id: str) -> bool:
        """Push our lock expiry out by another ttl_sec. False if the lock changed hands."""
        lock_until = self.clock() + self.ttl_sec
        with get_db() as conn:
            cursor = conn.execute(
                "UPDATE fingerprint_locks SET lock_until = ? WHERE fingerprint = ? AND lock_id = ?",
                (lock_until, fp, lock_id)
            )
            conn.commit()
            extended = cursor.rowcount == 1

        logger.log_lock_event(fp, "extended" if extended else "extend_lost", {"lock_until": lock_until})
        return extended

    def invalidate(self, fp: str):
        """Drop the cached snapshot so the next request recomputes."""
        with get_db() as conn:
            conn.execute("DELETE FROM snapshots WHERE fingerprint = ?", (fp,))
            conn.commit()

        logger.log_lock_event(fp, "invalidated")
