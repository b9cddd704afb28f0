"""
Decision Orchestrator - one evaluate request from envelope to persisted verdict.

Flow:
1. Validate the envelope
2. Policy Gate (refusals here never reach the model)
3. Fingerprint and lock; a fresh snapshot is returned as is
4. Guardrail check; an open circuit serves a safe default
5. Inference with structural retries
6. Content enforcement
7. Ledger and event writes
8. Snapshot write, which also releases the lock
9. Guardrail, health and review feedback
"""

import time
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..api.schemas import (
    DecisionOutput, EvaluateResponse, InputEnvelope, RefusalBody, RefusalOutput, ResponseMetadata
)
from ..core import config, event_log, ledger
from ..core.errors import (
    ContentPolicyViolation, GuardrailShortCircuit, InvalidTransition, LockContention, NotFoundError,
    PolicyRefusal, StructuralOutputError, TransportFailure, ValidationError
)
from ..core.fingerprint import LockManager, derive_topic_id, fingerprint
from ..core.guardrails import GuardrailTracker, guardrails
from ..core.health import health_monitor
from ..core.review_triggers import quality_gate_finding, raise_finding
from ..core.safe_defaults import decision_default, in_progress_refusal, service_degraded_refusal
from ..core.schema import (
    AITrace, DecisionRecord, ISSUED, REFUSED, REFUSED_OUTCOME,
    SCHEMA_VIOLATION, CONTENT_POLICY_VIOLATION, utc_now_iso
)
from ..util.logging import logger
from . import policy_gate
from .inference import InferenceClient
from .output_enforcer import OutputEnforcer

AIOutputModel = Union[DecisionOutput, RefusalOutput]

TIMING_KEYWORDS = ("when", "timing", "month")


def _schema_violation_refusal() -> RefusalOutput:
    return RefusalOutput(
        type="refusal",
        refusal=RefusalBody(
            code=SCHEMA_VIOLATION,
            reason="A recommendation could not be produced in a form that passes verification.",
            missing_or_conflicting_inputs=["Verifiable recommendation output", "Decision service response"],
            safe_next_step="Try again in a few minutes. If this keeps happening, contact support.",
        )
    )


def _content_violation_refusal() -> RefusalOutput:
    return RefusalOutput(
        type="refusal",
        refusal=RefusalBody(
            code=CONTENT_POLICY_VIOLATION,
            reason="The drafted recommendation did not meet our standards for neutral, verifiable advice.",
            missing_or_conflicting_inputs=["Neutral recommendation wording", "Decision service response"],
            safe_next_step="Try again in a few minutes. If this keeps happening, contact support.",
        )
    )


def determine_decision_type(envelope: InputEnvelope, output: AIOutputModel) -> str:
    if isinstance(output, RefusalOutput):
        return "refusal"
    if envelope.task == "REVISION":
        return "fit_assessment"
    question = envelope.request.question.lower()
    if any(word in question for word in TIMING_KEYWORDS):
        return "timing_verdict"
    if len(envelope.request.destinations_considered) > 1:
        return "comparison"
    return "fit_assessment"


def build_decision_record(envelope: InputEnvelope, output: AIOutputModel, topic_id: str,
                          fp: Optional[str], ai_used: bool, retry_count: int = 0,
                          model: Optional[str] = None, safety_flags: Optional[List[str]] = None) -> DecisionRecord:
    """Map a final output onto a new ledger record."""
    now = utc_now_iso()
    tracking = envelope.tracking

    if isinstance(output, DecisionOutput):
        d = output.decision
        verdict = {
            "state": ISSUED,
            "outcome": d.outcome,
            "headline": d.headline,
            "summary": d.summary,
            "assumptions": [a.model_dump() for a in d.assumptions],
            "tradeoffs": d.tradeoffs.model_dump(),
            "change_conditions": list(d.change_conditions),
            "confidence": d.confidence,
            "refusal": None,
        }
    else:
        r = output.refusal
        verdict = {
            "state": REFUSED,
            "outcome": REFUSED_OUTCOME,
            "headline": "Decision refused",
            "summary": r.reason,
            "assumptions": [],
            "tradeoffs": {"gains": [], "losses": []},
            "change_conditions": [],
            "confidence": 0.0,
            "refusal": r.model_dump(),
        }

    return DecisionRecord(
        decision_id=ledger.new_decision_id(),
        session_id=tracking.session_id,
        traveler_id=tracking.traveler_id,
        lead_id=tracking.lead_id,
        topic_id=topic_id,
        fingerprint=fp,
        decision_type=determine_decision_type(envelope, output),
        inputs_snapshot=envelope.model_dump(mode="json", exclude={"tracking"}),
        logic_version=config.LOGIC_VERSION,
        prompt_version=config.PROMPT_VERSION,
        ai_used=ai_used,
        ai_trace=AITrace(model, config.PROMPT_VERSION, safety_flags or []) if ai_used else None,
        retry_count=retry_count,
        created_at=now,
        updated_at=now,
        **verdict,
    )


class DecisionOrchestrator:
    """Runs the evaluate pipeline against injected collaborators."""

    def __init__(self, inference_client: InferenceClient = None, lock_manager: LockManager = None,
                 tracker: GuardrailTracker = None, enforcer: OutputEnforcer = None):
        self.tracker = tracker or guardrails
        self.enforcer = enforcer or OutputEnforcer()
        self.inference_client = inference_client or InferenceClient(tracker=self.tracker)
        self.lock_manager = lock_manager or LockManager()

    def evaluate_payload(self, payload: Dict[str, Any]) -> EvaluateResponse:
        """Validate a raw request body, then evaluate it."""
        try:
            envelope = InputEnvelope.model_validate(payload)
        except PydanticValidationError as e:
            field_errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            logger.log_operation("evaluate.validate", "rejected", {"error_count": len(field_errors)})
            raise ValidationError("Invalid input envelope", field_errors)
        return self.evaluate(envelope)

    def evaluate(self, envelope: InputEnvelope) -> EvaluateResponse:
        start = time.monotonic()
        topic_id = derive_topic_id(envelope.request.question, envelope.request.scope)

        response = self._evaluate(envelope, topic_id)

        duration_ms = int((time.monotonic() - start) * 1000)
        event_log.log_tool_completed(
            envelope.tracking.session_id, envelope.tracking.traveler_id, "evaluate", duration_ms,
            response.decision_id, {"topic_id": topic_id, "cache": response.metadata.cache}
        )
        return response

    def _evaluate(self, envelope: InputEnvelope, topic_id: str) -> EvaluateResponse:
        try:
            policy_gate.enforce(envelope)
        except PolicyRefusal as e:
            return self._commit(envelope, topic_id, None, e.refusal, ai_used=False,
                                source="policy_gate", cache="none")

        fp = fingerprint(envelope)
        try:
            acquired = self._acquire(fp)
        except LockContention as e:
            return self._deferred(e.retry_after_seconds)

        if acquired.is_hit:
            return self._from_snapshot(acquired.snapshot.response, "hit")

        lock_held = True
        try:
            response, snapshot_ttl = self._build(envelope, topic_id, fp, acquired.lock_id)
            if snapshot_ttl is not None:
                self.lock_manager.store_snapshot(
                    fp, acquired.lock_id, response.model_dump(mode="json"),
                    response.decision_id, topic_id, snapshot_ttl
                )
                lock_held = False
        finally:
            if lock_held:
                self.lock_manager.release(fp, acquired.lock_id)

        return response

    def _acquire(self, fp: str):
        """Take the fingerprint lock or a snapshot hit, waiting out a contended lock once."""
        acquired = self.lock_manager.acquire(fp)
        if acquired.status == "locked":
            acquired = self.lock_manager.wait_for_result(fp)
        if acquired.status == "locked":
            raise LockContention(fp, acquired.retry_after_seconds)
        return acquired

    def _build(self, envelope: InputEnvelope, topic_id: str, fp: str, lock_id: str):
        """Produce the response for a locked fingerprint, plus the snapshot TTL (None = do not cache)."""
        if self.tracker.is_inference_circuit_open():
            return self._safe_default(envelope, topic_id, fp), None

        try:
            result = self.inference_client.invoke_with_retry(
                envelope, self.enforcer, before_attempt=self._lock_refresher(fp, lock_id)
            )
        except GuardrailShortCircuit:
            return self._safe_default(envelope, topic_id, fp), None
        except TransportFailure as e:
            logger.error(f"Inference transport failure for topic {topic_id}: {e}")
            response = self._commit(envelope, topic_id, fp, service_degraded_refusal(), ai_used=False,
                                    source="transport", failed=True)
            return response, None
        except StructuralOutputError as e:
            violations = [str(v) for v in e.violations]
            response = self._commit(envelope, topic_id, fp, _schema_violation_refusal(), ai_used=True,
                                    retry_count=e.retry_count, model=self.inference_client.model,
                                    safety_flags=violations, source="enforcer", failed=True)
            raise_finding(quality_gate_finding(topic_id, response.decision_id, violations))
            return response, config.REFUSAL_SNAPSHOT_TTL_SEC

        output = result.output
        try:
            self.enforcer.finalize(output, envelope.policy.forbidden_phrases)
        except ContentPolicyViolation as e:
            response = self._commit(envelope, topic_id, fp, _content_violation_refusal(), ai_used=True,
                                    retry_count=result.retry_count, model=result.model,
                                    safety_flags=e.flags, source="enforcer", failed=True)
            raise_finding(quality_gate_finding(topic_id, response.decision_id, e.flags))
            return response, config.REFUSAL_SNAPSHOT_TTL_SEC

        response = self._commit(envelope, topic_id, fp, output, ai_used=True,
                                retry_count=result.retry_count, model=result.model, source="model")
        if isinstance(output, RefusalOutput):
            return response, config.REFUSAL_SNAPSHOT_TTL_SEC
        return response, self.lock_manager.snapshot_ttl_sec

    def _lock_refresher(self, fp: str, lock_id: str):
        """Extend the fingerprint lock ahead of each retry so a slow build keeps it."""
        def refresh(attempt: int):
            if attempt > 0:
                self.lock_manager.extend(fp, lock_id)
        return refresh

    def _safe_default(self, envelope: InputEnvelope, topic_id: str, fp: str) -> EvaluateResponse:
        """Serve a recent snapshot while the circuit is open, else a degraded-service refusal."""
        stale = self.lock_manager.get_snapshot(
            fp, allow_stale=True, max_age_sec=config.SAFE_DEFAULT_CACHE_MAX_AGE_SEC
        )
        age = stale.age_seconds(self.lock_manager.clock()) if stale else None
        default = decision_default(True, age)
        logger.log_guardrail_event("inference", "safe_default", {"action": default.action, "topic_id": topic_id})

        if default.action == "use_cached":
            return self._from_snapshot(stale.response, "stale")

        return self._commit(envelope, topic_id, fp, service_degraded_refusal(), ai_used=False,
                            source="circuit", failed=True, retry_after_seconds=default.retry_after_seconds)

    def _from_snapshot(self, cached: Dict[str, Any], cache: str) -> EvaluateResponse:
        response = EvaluateResponse.model_validate(cached)
        metadata = response.metadata.model_copy(update={"cache": cache})
        return response.model_copy(update={"metadata": metadata})

    def _deferred(self, retry_after_seconds: int) -> EvaluateResponse:
        """Identical request still in flight after the wait window."""
        default = decision_default(False, None)
        retry_after = retry_after_seconds or default.retry_after_seconds
        logger.log_operation("evaluate.deferred", "pending", {"retry_after_seconds": retry_after})
        return EvaluateResponse(
            decision_id=None,
            output=in_progress_refusal(retry_after),
            metadata=ResponseMetadata(
                logic_version=config.LOGIC_VERSION,
                ai_used=False,
                persisted=False,
                cache="none",
                deferred=True,
                retry_after_seconds=retry_after,
            )
        )

    def _persist(self, envelope: InputEnvelope, record: DecisionRecord) -> DecisionRecord:
        """Create the record; a revision also moves the latest prior decision to REVISED."""
        prior = envelope.user_context.prior_decisions
        if envelope.task == "REVISION" and prior:
            try:
                return ledger.record_revision(prior[-1], record)
            except (NotFoundError, InvalidTransition) as e:
                logger.warning(f"Revision link to {prior[-1]} skipped: {e.message}")
                record.supersedes_decision_id = None
        return ledger.create_decision(record)

    def _commit(self, envelope: InputEnvelope, topic_id: str, fp: Optional[str], output: AIOutputModel,
                ai_used: bool, retry_count: int = 0, model: Optional[str] = None,
                safety_flags: Optional[List[str]] = None, source: str = "model", failed: bool = False,
                cache: str = "miss", retry_after_seconds: Optional[int] = None) -> EvaluateResponse:
        """Persist the record, append its event and feed the outcome back into the counters."""
        record = build_decision_record(envelope, output, topic_id, fp, ai_used, retry_count, model, safety_flags)
        record = self._persist(envelope, record)
        tracking = envelope.tracking

        if record.is_refusal:
            refusal = output.refusal
            event_log.log_decision_refused(
                tracking.session_id, tracking.traveler_id, tracking.lead_id, record.decision_id,
                refusal.reason, refusal.code, len(refusal.missing_or_conflicting_inputs), record.logic_version
            )
            logger.log_refusal(record.decision_id, refusal.code, topic_id, source)
        else:
            event_log.log_decision_issued(
                tracking.session_id, tracking.traveler_id, tracking.lead_id, record.decision_id,
                record.outcome, record.confidence, record.logic_version, ai_used
            )
            logger.log_decision(record.decision_id, record.outcome, record.confidence, topic_id, retry_count)

        self.tracker.record_topic_outcome(topic_id, record.is_refusal)
        health_monitor.record_decision(refused=record.is_refusal, failed=failed)

        return EvaluateResponse(
            decision_id=record.decision_id,
            output=output,
            metadata=ResponseMetadata(
                logic_version=record.logic_version,
                ai_used=ai_used,
                retry_count=retry_count,
                persisted=True,
                cache=cache,
                retry_after_seconds=retry_after_seconds,
            )
        )
