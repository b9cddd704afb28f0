#!/usr/bin/env python3
"""
Review heartbeat - runs the review triggers over every topic on a fixed interval.
"""

import signal
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from verdict.core.config import get_review_interval, is_review_heartbeat_enabled
from verdict.core.db import init_db
from verdict.core.heartbeat import review_heartbeat


def _handle_signal(signum, frame):
    print("\n👋 Shutting down gracefully...")
    review_heartbeat.stop()


def main():
    """Main entry point for the review heartbeat."""
    if not is_review_heartbeat_enabled():
        print("❌ Review heartbeat requires REVIEW_HEARTBEAT_ENABLED=true")
        sys.exit(1)

    init_db()
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    print(f"🏃 Review sweep every {get_review_interval()} seconds")
    try:
        review_heartbeat.start()
    except (RuntimeError, ValueError) as e:
        print(f"💥 Critical error: {e}")
        sys.exit(1)

    status = review_heartbeat.get_status()
    print(f"✅ {status['sweeps']} sweep(s), {status['reviews_created']} review(s) raised")


if __name__ == "__main__":
    main()
