"""
Policy Gate - pre-inference refusal rules.

Each rule is a pure predicate over the input envelope. Only the rules an envelope
names in policy.must_refuse_if are evaluated; a single match produces a refusal
and the model is never called.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..api.schemas import InputEnvelope, RefusalBody, RefusalOutput
from ..core.errors import PolicyRefusal
from ..core.schema import GUARANTEE_REQUESTED, INPUTS_CONFLICT_UNBOUNDED, MISSING_MATERIAL_INPUTS
from ..util.logging import logger

GUARANTEE_PATTERNS = [
    r"guarantee",
    r"promise",
    r"will\s+i\s+see",
    r"guaranteed\s+sightings",
    r"certain\s+to",
]

CONFLICT_MESSAGES = {
    GUARANTEE_REQUESTED: "Safari experiences involve natural wildlife and cannot guarantee specific sightings.",
    INPUTS_CONFLICT_UNBOUNDED: "Your budget range conflicts with the comfort level or coverage selected.",
    MISSING_MATERIAL_INPUTS: "Key information (dates, preferences, or budget) is missing, preventing a reliable recommendation.",
}

REFUSAL_REASON = "A reliable recommendation is not possible because the constraints conflict or key information is missing."
REFUSAL_NEXT_STEP = "Clarify your priorities or provide the missing information, then request a new recommendation."
MAX_LISTED_INPUTS = 5


@dataclass
class PolicyMatch:
    """Result of one rule predicate."""
    rule: str
    matched: bool
    reason: str = ""


@dataclass
class GateResult:
    """Outcome of the gate for one envelope."""
    refused: bool
    matches: List[PolicyMatch] = field(default_factory=list)
    skipped_rules: List[str] = field(default_factory=list)
    refusal: Optional[RefusalOutput] = None

    @property
    def code(self) -> Optional[str]:
        return self.refusal.refusal.code if self.refusal else None


def _check_patterns(text: str, patterns: List[str]) -> List[str]:
    matches = []
    for pattern in patterns:
        if re.search(pattern, text, re.IGNORECASE):
            matches.append(pattern)
    return matches


def guarantee_requested(envelope: InputEnvelope) -> PolicyMatch:
    hits = _check_patterns(envelope.request.question, GUARANTEE_PATTERNS)
    if hits:
        return PolicyMatch(GUARANTEE_REQUESTED, True, CONFLICT_MESSAGES[GUARANTEE_REQUESTED])
    return PolicyMatch(GUARANTEE_REQUESTED, False)


def inputs_conflict_unbounded(envelope: InputEnvelope) -> PolicyMatch:
    comfort = str(envelope.request.constraints.get("comfort_level", "")).lower()
    if envelope.user_context.budget_band == "budget" and comfort == "luxury":
        return PolicyMatch(INPUTS_CONFLICT_UNBOUNDED, True, CONFLICT_MESSAGES[INPUTS_CONFLICT_UNBOUNDED])
    return PolicyMatch(INPUTS_CONFLICT_UNBOUNDED, False)


def missing_material_inputs(envelope: InputEnvelope) -> PolicyMatch:
    ctx = envelope.user_context
    if ctx.dates.type == "unknown" and ctx.traveler_type == "unknown" and ctx.budget_band == "unknown":
        return PolicyMatch(MISSING_MATERIAL_INPUTS, True, CONFLICT_MESSAGES[MISSING_MATERIAL_INPUTS])
    return PolicyMatch(MISSING_MATERIAL_INPUTS, False)


RULES: Dict[str, Callable[[InputEnvelope], PolicyMatch]] = {
    GUARANTEE_REQUESTED: guarantee_requested,
    INPUTS_CONFLICT_UNBOUNDED: inputs_conflict_unbounded,
    MISSING_MATERIAL_INPUTS: missing_material_inputs,
}


def build_policy_refusal(envelope: InputEnvelope, matches: List[PolicyMatch]) -> RefusalOutput:
    """Immediate refusal listing every matched reason plus missing-input hints."""
    inputs = [m.reason for m in matches]

    if envelope.user_context.dates.type == "unknown":
        inputs.append("Travel dates or month")
    if envelope.user_context.budget_band == "unknown":
        inputs.append("Budget range")

    return RefusalOutput(
        type="refusal",
        refusal=RefusalBody(
            code=matches[0].rule,
            reason=REFUSAL_REASON,
            missing_or_conflicting_inputs=inputs[:MAX_LISTED_INPUTS],
            safe_next_step=REFUSAL_NEXT_STEP,
        )
    )


def evaluate(envelope: InputEnvelope) -> GateResult:
    """Run the named refusal rules against an envelope."""
    matches = []
    skipped = []

    for rule_name in envelope.policy.must_refuse_if:
        predicate = RULES.get(rule_name)
        if predicate is None:
            skipped.append(rule_name)
            continue
        result = predicate(envelope)
        if result.matched:
            matches.append(result)

    if skipped:
        logger.warning(f"Policy gate skipped unknown rules: {skipped}")

    if not matches:
        return GateResult(refused=False, skipped_rules=skipped)

    logger.log_operation("policy_gate", "refused", {
        "rules": [m.rule for m in matches],
        "session_id": envelope.tracking.session_id
    })
    return GateResult(
        refused=True,
        matches=matches,
        skipped_rules=skipped,
        refusal=build_policy_refusal(envelope, matches),
    )


def enforce(envelope: InputEnvelope) -> GateResult:
    """Like evaluate(), but a match raises PolicyRefusal carrying the refusal output."""
    result = evaluate(envelope)
    if result.refused:
        raise PolicyRefusal(result.refusal, [m.rule for m in result.matches])
    return result
