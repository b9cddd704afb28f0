"""
Error taxonomy for the decision core.
Each error carries the HTTP status the API layer maps it to.
"""

from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """Base class for every error raised inside the decision core."""

    status_code = 500
    error = "orchestration_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(OrchestrationError):
    """Malformed input envelope, rejected before the Policy Gate runs."""

    status_code = 400
    error = "validation_error"

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, {"field_errors": field_errors or []})
        self.field_errors = field_errors or []


class PolicyRefusal(OrchestrationError):
    """A must-refuse rule matched. A normal terminal outcome, not a fault."""

    status_code = 200
    error = "policy_refusal"

    def __init__(self, refusal: Any, rules: List[str]):
        code = refusal.refusal.code
        super().__init__(f"Policy refusal: {code}", {"code": code, "rules": rules})
        self.refusal = refusal
        self.code = code
        self.rules = rules


class StructuralOutputError(OrchestrationError):
    """Model output failed the AIOutput schema on every allowed attempt."""

    error = "schema_violation"

    def __init__(self, violations: List[Any], retry_count: int):
        super().__init__(
            f"Model output failed structural validation after {retry_count} retries",
            {"violations": [str(v) for v in violations], "retry_count": retry_count}
        )
        self.violations = violations
        self.retry_count = retry_count


class ContentPolicyViolation(OrchestrationError):
    """A structurally valid decision contained prohibited language."""

    error = "content_policy_violation"

    def __init__(self, flags: List[str]):
        super().__init__(f"Content policy violation: {', '.join(flags[:5])}", {"flags": flags})
        self.flags = flags


class TransportFailure(OrchestrationError):
    """The inference call itself failed."""

    status_code = 503
    error = "transport_failure"


class GuardrailShortCircuit(OrchestrationError):
    """The circuit for a dependency is open; no call was made."""

    status_code = 503
    error = "guardrail_short_circuit"

    def __init__(self, guardrail: str):
        super().__init__(f"Circuit open for {guardrail}", {"guardrail": guardrail})
        self.guardrail = guardrail


class LockContention(OrchestrationError):
    """Another builder holds the fingerprint lock."""

    status_code = 202
    error = "lock_contention"

    def __init__(self, fingerprint: str, retry_after_seconds: int):
        super().__init__(
            "Evaluation already in progress for identical inputs",
            {"retry_after_seconds": retry_after_seconds}
        )
        self.fingerprint = fingerprint
        self.retry_after_seconds = retry_after_seconds


class PersistenceConflict(OrchestrationError):
    """A conditional create found the key already present. Indicates replay, not data loss."""

    status_code = 409
    error = "persistence_conflict"

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} '{key}' already exists", {"entity": entity, "key": key})
        self.entity = entity
        self.key = key


class InvalidTransition(OrchestrationError):
    """A state change was attempted that the state machine does not allow."""

    status_code = 409
    error = "invalid_transition"

    def __init__(self, decision_id: str, from_state: str, to_state: str):
        super().__init__(
            f"Decision '{decision_id}' cannot move from {from_state} to {to_state}",
            {"decision_id": decision_id, "from_state": from_state, "to_state": to_state}
        )


class NotFoundError(OrchestrationError):
    status_code = 404
    error = "not_found"


class AssuranceRejected(OrchestrationError):
    """Decision is not eligible for an assurance artifact."""

    status_code = 422
    error = "assurance_rejected"

    def __init__(self, code: str, message: str):
        super().__init__(message, {"code": code})
        self.code = code


class AssuranceAlreadyIssued(OrchestrationError):
    status_code = 409
    error = "assurance_exists"


class PaymentRequired(OrchestrationError):
    status_code = 402
    error = "payment_required"


class AssuranceRevoked(OrchestrationError):
    status_code = 410
    error = "assurance_revoked"


class ArtifactCircuitOpen(GuardrailShortCircuit):
    """Assurance generation is paused by the artifact circuit."""

    def __init__(self):
        super().__init__("artifact")
