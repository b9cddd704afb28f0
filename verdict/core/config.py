"""
Environment-driven configuration for the decision core.
Values are read once at import; components take them as constructor defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/verdict.db")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Version tags stamped on every decision record
LOGIC_VERSION = os.getenv("LOGIC_VERSION", "rules_v1.0")
PROMPT_VERSION = os.getenv("PROMPT_VERSION", "prompt_v1.0")

# Inference provider
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
INFERENCE_TEMPERATURE = float(os.getenv("INFERENCE_TEMPERATURE", "0.3"))
RETRY_TEMPERATURE_STEP = float(os.getenv("RETRY_TEMPERATURE_STEP", "0.1"))
MAX_STRUCTURAL_RETRIES = int(os.getenv("MAX_STRUCTURAL_RETRIES", "2"))

# Snapshot cache and fingerprint locks
SNAPSHOT_TTL_SEC = int(os.getenv("SNAPSHOT_TTL_SEC", "86400"))
REFUSAL_SNAPSHOT_TTL_SEC = int(os.getenv("REFUSAL_SNAPSHOT_TTL_SEC", "300"))
# Must cover one inference attempt; the builder extends its lock before each retry
LOCK_TTL_SEC = int(os.getenv("LOCK_TTL_SEC", "30"))
LOCK_POLL_INTERVAL_SEC = float(os.getenv("LOCK_POLL_INTERVAL_SEC", "0.25"))
LOCK_POLL_MAX_WAIT_SEC = float(os.getenv("LOCK_POLL_MAX_WAIT_SEC", "10"))

# Guardrails
GUARDRAIL_BACKEND = os.getenv("GUARDRAIL_BACKEND", "memory")  # memory|store
INFERENCE_FAILURE_THRESHOLD = int(os.getenv("INFERENCE_FAILURE_THRESHOLD", "3"))
ARTIFACT_FAILURE_THRESHOLD = int(os.getenv("ARTIFACT_FAILURE_THRESHOLD", "3"))
REFUSAL_SPIKE_RATE = float(os.getenv("REFUSAL_SPIKE_RATE", "0.6"))
REFUSAL_SPIKE_MIN_SAMPLE = int(os.getenv("REFUSAL_SPIKE_MIN_SAMPLE", "5"))
SCHEMA_VIOLATION_ALERT_COUNT = int(os.getenv("SCHEMA_VIOLATION_ALERT_COUNT", "1"))
REVIEW_QUEUE_CAPACITY = int(os.getenv("REVIEW_QUEUE_CAPACITY", "30"))

# Review triggers
REVIEW_REPEATED_VISIT_COUNT = int(os.getenv("REVIEW_REPEATED_VISIT_COUNT", "3"))
REVIEW_REFUSAL_RATE = float(os.getenv("REVIEW_REFUSAL_RATE", "0.3"))
REVIEW_REFUSAL_MIN_SAMPLE = int(os.getenv("REVIEW_REFUSAL_MIN_SAMPLE", "10"))
REVIEW_CONFIDENCE_DRIFT = float(os.getenv("REVIEW_CONFIDENCE_DRIFT", "0.15"))
REVIEW_BASELINE_WINDOW = int(os.getenv("REVIEW_BASELINE_WINDOW", "10"))
REVIEW_RECENT_WINDOW = int(os.getenv("REVIEW_RECENT_WINDOW", "5"))
REVIEW_OUTCOME_WINDOW_HOURS = int(os.getenv("REVIEW_OUTCOME_WINDOW_HOURS", "24"))
REVIEW_HEARTBEAT_ENABLED = os.getenv("REVIEW_HEARTBEAT_ENABLED", "false").lower() == "true"
REVIEW_INTERVAL_SEC = int(os.getenv("REVIEW_INTERVAL_SEC", "300"))

# Safe defaults while degraded
SAFE_DEFAULT_CACHE_MAX_AGE_SEC = int(os.getenv("SAFE_DEFAULT_CACHE_MAX_AGE_SEC", "86400"))
SAFE_DEFAULT_STALE_AFTER_SEC = int(os.getenv("SAFE_DEFAULT_STALE_AFTER_SEC", "43200"))

# Assurance artifacts
ASSURANCE_CONFIDENCE_THRESHOLD = float(os.getenv("ASSURANCE_CONFIDENCE_THRESHOLD", "0.5"))
ASSURANCE_PRICE_CENTS = int(os.getenv("ASSURANCE_PRICE_CENTS", "2900"))
ASSURANCE_CURRENCY = os.getenv("ASSURANCE_CURRENCY", "USD")

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def is_review_heartbeat_enabled():
    """Check if the periodic review sweep is enabled."""
    return REVIEW_HEARTBEAT_ENABLED


def get_review_interval():
    """Get review sweep interval in seconds."""
    return REVIEW_INTERVAL_SEC


def get_guardrail_backend():
    """Get guardrail counter backend (memory|store)."""
    return GUARDRAIL_BACKEND


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if GUARDRAIL_BACKEND not in ["memory", "store"]:
        issues.append(f"Invalid GUARDRAIL_BACKEND: {GUARDRAIL_BACKEND}")

    if MAX_STRUCTURAL_RETRIES < 0:
        issues.append("MAX_STRUCTURAL_RETRIES must be >= 0")

    if not 0.0 <= INFERENCE_TEMPERATURE <= 2.0:
        issues.append("INFERENCE_TEMPERATURE must be between 0 and 2")

    if LOCK_TTL_SEC < 1:
        issues.append("LOCK_TTL_SEC must be >= 1")

    if LOCK_POLL_INTERVAL_SEC <= 0:
        issues.append("LOCK_POLL_INTERVAL_SEC must be > 0")

    if INFERENCE_FAILURE_THRESHOLD < 1 or ARTIFACT_FAILURE_THRESHOLD < 1:
        issues.append("Circuit thresholds must be >= 1")

    for name, rate in (("REFUSAL_SPIKE_RATE", REFUSAL_SPIKE_RATE), ("REVIEW_REFUSAL_RATE", REVIEW_REFUSAL_RATE)):
        if not 0.0 < rate <= 1.0:
            issues.append(f"{name} must be in (0, 1]")

    if REVIEW_INTERVAL_SEC < 1:
        issues.append("REVIEW_INTERVAL_SEC must be >= 1")

    return issues
