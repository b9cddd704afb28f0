"""
Inference Client - the only component that talks to the model provider.

Each attempt consults the inference circuit first. A structurally invalid reply
is retried with a correction prompt and a lower temperature; a transport failure
is reported at once and counts toward opening the circuit.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import ollama

from ..api.schemas import DecisionOutput, InputEnvelope, RefusalOutput
from ..core import config
from ..core.errors import GuardrailShortCircuit, StructuralOutputError, TransportFailure
from ..core.guardrails import GuardrailTracker, guardrails
from ..core.health import health_monitor
from ..util.logging import logger
from .output_enforcer import OutputEnforcer
from .prompts import SYSTEM_PROMPT, build_user_prompt

TRANSPORT_ERRORS = (ollama.ResponseError, ollama.RequestError, httpx.HTTPError, ConnectionError, TimeoutError)
# A reply without message.content counts as a failed call
MALFORMED_REPLY_ERRORS = (KeyError, TypeError)


@dataclass
class InferenceResult:
    output: Union[DecisionOutput, RefusalOutput]
    retry_count: int
    raw: str
    model: str
    duration_ms: int = 0


class InferenceClient:
    """Calls the model with bounded structural retries and temperature decay."""

    def __init__(self, client: Any = None, model: str = None, host: str = None,
                 max_retries: int = None, base_temperature: float = None,
                 temperature_step: float = None, tracker: GuardrailTracker = None):
        self.model = model or config.OLLAMA_MODEL
        self.host = host or config.OLLAMA_HOST
        self.client = client or ollama.Client(host=self.host)
        self.max_retries = config.MAX_STRUCTURAL_RETRIES if max_retries is None else max_retries
        self.base_temperature = config.INFERENCE_TEMPERATURE if base_temperature is None else base_temperature
        self.temperature_step = config.RETRY_TEMPERATURE_STEP if temperature_step is None else temperature_step
        self.tracker = tracker or guardrails

    def temperature_for(self, attempt: int) -> float:
        """Attempt 0 uses the base temperature; each retry steps it down, never below zero."""
        return max(0.0, round(self.base_temperature - attempt * self.temperature_step, 4))

    def _messages(self, envelope: InputEnvelope, correction_prompt: Optional[str]) -> List[Dict[str, str]]:
        envelope_json = envelope.model_dump(mode="json")
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(envelope.task, envelope_json, correction_prompt)},
        ]

    def _fail(self, attempt: int, start: float, message: str):
        duration_ms = (time.monotonic() - start) * 1000
        logger.log_inference_call(self.model, attempt, "transport_error", duration_ms, {"error": message[:200]})
        self.tracker.record_inference_result(False)
        health_monitor.record_ai_call(False)
        raise TransportFailure(message, {"model": self.model, "attempt": attempt})

    def invoke(self, envelope: InputEnvelope, correction_prompt: Optional[str] = None, attempt: int = 0) -> str:
        """One provider call. Returns the raw reply text or raises TransportFailure."""
        if self.tracker.is_inference_circuit_open():
            logger.log_guardrail_event("inference", "short_circuit", {"attempt": attempt})
            raise GuardrailShortCircuit("inference")

        temperature = self.temperature_for(attempt)
        start = time.monotonic()
        try:
            response = self.client.chat(
                model=self.model,
                messages=self._messages(envelope, correction_prompt),
                format="json",
                options={"temperature": temperature},
            )
        except TRANSPORT_ERRORS as e:
            self._fail(attempt, start, f"Inference call failed: {e}")

        try:
            content = response["message"]["content"]
        except MALFORMED_REPLY_ERRORS as e:
            self._fail(attempt, start, f"Inference reply has no message content: {e!r}")

        duration_ms = (time.monotonic() - start) * 1000
        logger.log_inference_call(self.model, attempt, "success", duration_ms, {"temperature": temperature})
        self.tracker.record_inference_result(True)
        health_monitor.record_ai_call(True)
        return content or ""

    def invoke_with_retry(self, envelope: InputEnvelope, enforcer: OutputEnforcer,
                          correction_prompt: Optional[str] = None,
                          before_attempt: Optional[Callable[[int], None]] = None) -> InferenceResult:
        """Call until the reply is structurally valid, up to 1 + max_retries attempts.

        Raises StructuralOutputError when every attempt fails validation,
        TransportFailure on the first transport error and GuardrailShortCircuit
        when the circuit is open before an attempt.

        before_attempt, when given, runs ahead of every call; the orchestrator uses
        it to keep its fingerprint lock alive.
        """
        start = time.monotonic()
        violations: List[Any] = []

        for attempt in range(self.max_retries + 1):
            if before_attempt:
                before_attempt(attempt)
            raw = self.invoke(envelope, correction_prompt, attempt)
            check = enforcer.check_structure(raw)
            if check.valid:
                return InferenceResult(
                    output=check.output,
                    retry_count=attempt,
                    raw=raw,
                    model=self.model,
                    duration_ms=int((time.monotonic() - start) * 1000),
                )

            violations = check.violations
            logger.log_schema_violation(attempt, violations)
            self.tracker.record_schema_violation()
            correction_prompt = enforcer.build_correction_prompt(violations)

        raise StructuralOutputError(violations, self.max_retries)

    def check_health(self) -> bool:
        """True when the provider answers a model listing."""
        try:
            self.client.list()
            return True
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Inference provider health check failed: {e}")
            return False
