"""
Structured logging for the decision core.
Every pipeline stage, lock transition and guardrail change goes through log_operation.
"""

import logging
from typing import Any, Dict, List

# Free-text fields that never reach the log verbatim
DEFAULT_SENSITIVE_FIELDS = ['question', 'constraints', 'content', 'raw', 'secret', 'password']


class StructuredLogger:
    """Structured logger for orchestration, persistence and guardrail operations."""

    def __init__(self, name: str = "verdict"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_decision(self, decision_id: str, outcome: str, confidence: float, topic_id: str, retry_count: int = 0):
        """Log an issued decision."""
        self.log_operation("decision.issued", "success", {
            "decision_id": decision_id,
            "outcome": outcome,
            "confidence": confidence,
            "topic_id": topic_id,
            "retry_count": retry_count
        })

    def log_refusal(self, decision_id: str, code: str, topic_id: str, source: str):
        """Log a refusal, naming which stage produced it."""
        self.log_operation("decision.refused", "refused", {
            "decision_id": decision_id,
            "code": code,
            "topic_id": topic_id,
            "source": source
        })

    def log_inference_call(self, model: str, attempt: int, status: str, duration_ms: float, details: Dict[str, Any] = None):
        """Log a single inference provider call."""
        log_details = {"model": model, "attempt": attempt, "duration_ms": round(duration_ms, 2)}
        if details:
            log_details.update(details)

        level = logging.WARNING if status != "success" else logging.INFO
        self.log_operation("inference.call", status, log_details, level=level)

    def log_lock_event(self, fingerprint: str, action: str, details: Dict[str, Any] = None):
        """Log lock acquisition, contention and release."""
        log_details = {"fingerprint": fingerprint[:16]}
        if details:
            log_details.update(details)

        self.log_operation(f"lock.{action}", "ok", log_details)

    def log_guardrail_event(self, guardrail: str, status: str, details: Dict[str, Any] = None):
        """Log circuit transitions and operator resets."""
        log_details = {"guardrail": guardrail}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("opened", "short_circuit") else logging.INFO
        self.log_operation("guardrail", status, log_details, level=level)

    def log_schema_violation(self, attempt: int, violations: List[Any]):
        """Log structural violations with messages truncated."""
        sanitized = [str(v)[:100] for v in violations[:10]]
        self.log_operation("enforcer.structure", "rejected", {
            "attempt": attempt,
            "violation_count": len(violations),
            "violations": sanitized
        }, level=logging.WARNING)

    def log_review_trigger(self, reason_code: str, topic_id: str, review_id: str, decision_id: str = None):
        """Log a review record raised by a trigger."""
        log_details = {
            "reason_code": reason_code,
            "topic_id": topic_id,
            "review_id": review_id
        }
        if decision_id:
            log_details["decision_id"] = decision_id

        self.log_operation("review.triggered", "pending", log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with free-text fields redacted."""
    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
