"""
SQLite durable store: connection handling, schema and health check.
All conditional creates rely on the primary keys declared here.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from . import config

REQUIRED_TABLES = [
    'decisions', 'events', 'snapshots', 'fingerprint_locks',
    'reviews', 'assurances', 'guardrail_counters'
]


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(config.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    config.ensure_db_directory()

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('PRAGMA journal_mode=WAL')

        # Verdict columns are written once by INSERT and never updated
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS decisions (
                decision_id TEXT PRIMARY KEY,
                traveler_id TEXT,
                session_id TEXT NOT NULL,
                lead_id TEXT,
                topic_id TEXT NOT NULL,
                fingerprint TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                decision_type TEXT NOT NULL,
                state TEXT NOT NULL,
                outcome TEXT NOT NULL,
                headline TEXT NOT NULL,
                summary TEXT NOT NULL,
                assumptions TEXT NOT NULL,
                tradeoffs TEXT NOT NULL,
                change_conditions TEXT NOT NULL,
                confidence REAL NOT NULL,
                refusal TEXT,
                inputs_snapshot TEXT NOT NULL,
                logic_version TEXT NOT NULL,
                prompt_version TEXT NOT NULL,
                ai_used BOOLEAN NOT NULL,
                ai_trace TEXT,
                retry_count INTEGER DEFAULT 0,
                needs_review BOOLEAN DEFAULT FALSE,
                review_reason TEXT,
                review_status TEXT DEFAULT 'none',
                supersedes_decision_id TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                event_type TEXT NOT NULL,
                session_id TEXT,
                traveler_id TEXT,
                lead_id TEXT,
                decision_id TEXT,
                payload TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS snapshots (
                fingerprint TEXT PRIMARY KEY,
                topic_id TEXT,
                decision_id TEXT,
                response TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS fingerprint_locks (
                fingerprint TEXT PRIMARY KEY,
                lock_id TEXT NOT NULL,
                owner TEXT,
                acquired_at REAL NOT NULL,
                lock_until REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS reviews (
                review_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                topic_id TEXT NOT NULL,
                decision_id TEXT,
                reason_code TEXT NOT NULL,
                reason_details TEXT NOT NULL,
                context TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                reviewer_id TEXT,
                reviewed_at TEXT,
                resolution_notes TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS assurances (
                assurance_id TEXT PRIMARY KEY,
                decision_id TEXT NOT NULL UNIQUE,
                topic_id TEXT,
                traveler_id TEXT,
                session_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                artifact TEXT NOT NULL,
                status TEXT NOT NULL,
                payment_status TEXT NOT NULL,
                payment_id TEXT,
                amount_cents INTEGER NOT NULL,
                currency TEXT NOT NULL,
                revocation_reason TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS guardrail_counters (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL DEFAULT 0
            )
        ''')

        # Secondary indexes for ledger and event queries
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_decisions_traveler ON decisions(traveler_id, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_decisions_topic ON decisions(topic_id, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_decisions_review ON decisions(needs_review, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_traveler ON events(traveler_id, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_reviews_topic ON reviews(topic_id, created_at DESC)')

        conn.commit()


def health_check():
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
