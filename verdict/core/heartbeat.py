"""
Review heartbeat: runs the review trigger sweep on a fixed interval.

Each sweep evaluates every topic with history and raises review records for new
findings. The heartbeat keeps the last few sweep results so the ops snapshot can
show whether the review queue is being fed.
"""

import sqlite3
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .config import get_review_interval, is_review_heartbeat_enabled, validate_config
from .errors import OrchestrationError
from .review_triggers import run_review_triggers
from .schema import ReviewRecord, utc_now_iso
from ..util.logging import logger

SWEEP_HISTORY = 10


class ReviewHeartbeat:
    """Blocking sweep loop, stopped from another thread or by a signal."""

    def __init__(self, interval_sec: int = None, sweep: Callable[[], List[ReviewRecord]] = None,
                 history: int = SWEEP_HISTORY):
        self.interval_sec = interval_sec
        self.sweep = sweep or run_review_triggers
        self.recent_sweeps: deque = deque(maxlen=history)
        self.sweep_count = 0
        self.reviews_created = 0
        self.running = False
        self._shutdown = threading.Event()

    @property
    def interval(self) -> int:
        return get_review_interval() if self.interval_sec is None else self.interval_sec

    def run_once(self) -> Dict[str, Any]:
        """One sweep. A failing sweep is recorded and logged, never raised."""
        started_at = utc_now_iso()
        start_time = time.monotonic()
        try:
            created = self.sweep()
        except (sqlite3.Error, OrchestrationError) as e:
            end_time = time.monotonic()
            logger.log_heartbeat_task("review_sweep", start_time, end_time, status="error",
                                      details={"error": str(e)[:200]})
            result = {"started_at": started_at, "status": "error", "created": 0, "error": str(e)[:200]}
        else:
            end_time = time.monotonic()
            logger.log_heartbeat_task("review_sweep", start_time, end_time, details={"created": len(created)})
            result = {
                "started_at": started_at,
                "status": "success",
                "created": len(created),
                "review_ids": [r.review_id for r in created],
            }

        result["duration_ms"] = round((end_time - start_time) * 1000, 2)
        self.sweep_count += 1
        self.reviews_created += result["created"]
        self.recent_sweeps.append(result)
        return result

    def start(self):
        """Sweep at once, then every interval until stop() is called."""
        if not is_review_heartbeat_enabled():
            logger.info("Review heartbeat disabled (REVIEW_HEARTBEAT_ENABLED=false). Skipping start.")
            return

        if self.running:
            raise RuntimeError("Review heartbeat already running")

        issues = validate_config()
        if issues:
            raise ValueError(f"Heartbeat configuration invalid: {issues}")

        self.running = True
        self._shutdown.clear()
        logger.log_operation("heartbeat.start", "running", {"interval_sec": self.interval})

        try:
            while not self._shutdown.is_set():
                self.run_once()
                self._shutdown.wait(self.interval)
        finally:
            self.running = False
            logger.log_operation("heartbeat.stop", "stopped", {"sweeps": self.sweep_count})

    def stop(self):
        self._shutdown.set()

    def get_status(self) -> Dict[str, Any]:
        if not is_review_heartbeat_enabled():
            return {"status": "disabled", "reason": "REVIEW_HEARTBEAT_ENABLED=false"}

        last: Optional[Dict[str, Any]] = self.recent_sweeps[-1] if self.recent_sweeps else None
        return {
            "status": "running" if self.running else "stopped",
            "interval_sec": self.interval,
            "sweeps": self.sweep_count,
            "reviews_created": self.reviews_created,
            "last_sweep": last,
            "recent_sweeps": list(self.recent_sweeps),
        }


review_heartbeat = ReviewHeartbeat()


def start():
    review_heartbeat.start()


def stop():
    review_heartbeat.stop()


def get_status() -> Dict[str, Any]:
    return review_heartbeat.get_status()
