"""
Output Enforcer - validates model output before anything is persisted.

Raw text moves RECEIVED -> STRUCTURALLY_VALID -> CONTENT_CLEAN -> FINAL.
Structural failures go back to the Inference Client as a correction prompt.
Content failures are final: the decision is replaced by a refusal.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..api.schemas import AI_OUTPUT_ADAPTER, DecisionOutput, RefusalOutput
from ..core.errors import ContentPolicyViolation
from ..core.schema import MODEL_REFUSED
from ..util.logging import logger
from .prompts import build_correction_prompt

RECEIVED = "RECEIVED"
STRUCTURALLY_VALID = "STRUCTURALLY_VALID"
CONTENT_CLEAN = "CONTENT_CLEAN"
FINAL = "FINAL"
REJECTED = "REJECTED"

AIOutputModel = Union[DecisionOutput, RefusalOutput]


@dataclass
class Violation:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class StructuralCheck:
    state: str
    output: Optional[AIOutputModel] = None
    violations: List[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.state == STRUCTURALLY_VALID


@dataclass
class ContentCheck:
    state: str
    flags: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.state == CONTENT_CLEAN


def parse_ai_response(text: str) -> Any:
    """Parse model text as JSON, falling back to the first JSON object embedded in it."""
    if not text or not text.strip():
        raise ValueError("empty response")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start == -1:
        raise ValueError("no JSON object found in response")
    try:
        obj, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON object in response: {e.msg}")
    return obj


def _violations_from_pydantic(error: PydanticValidationError) -> List[Violation]:
    violations = []
    for err in error.errors():
        parts = list(err.get("loc", ()))
        if err.get("type", "").startswith("union_tag"):
            violations.append(Violation("type", "must be 'decision' or 'refusal'"))
            continue
        # Drop the union tag prefix pydantic adds to discriminated locations
        if parts and parts[0] in ("decision", "refusal") and len(parts) > 1:
            parts = parts[1:]
        violations.append(Violation(".".join(str(p) for p in parts) or "output", err.get("msg", "invalid")))
    return violations


def _with_model_refusal_code(data: Any) -> Any:
    """A model refusal always carries model_refused, whatever code the model sent."""
    if isinstance(data, dict) and data.get("type") == "refusal" and isinstance(data.get("refusal"), dict):
        return {**data, "refusal": {**data["refusal"], "code": MODEL_REFUSED}}
    return data


class OutputEnforcer:
    """Structural and content checks for AIOutput."""

    FORBIDDEN_PHRASES = [
        "unforgettable", "magical", "once-in-a-lifetime", "breathtaking", "seamless",
        "curated", "unlock", "elevate", "world-class", "hidden gem", "bucket list",
        "ai-powered", "you'll love", "perfect for", "ideal choice", "great option",
    ]

    GUARANTEE_PATTERNS = [
        r"\byou\s+will\s+see\b",
        r"\bguaranteed\s+sightings?\b",
        r"\byou\s+are\s+guaranteed\b",
        r"\bpromise\s+you\b",
        r"\bcertainly\s+will\b",
        r"\bdefinitely\s+will\b",
    ]

    SELF_REFERENCE_PATTERNS = [
        r"\bas\s+an\s+ai\b",
        r"\bi\s+am\s+an\s+ai\b",
        r"\bas\s+a\s+language\s+model\b",
    ]

    EMOJI_PATTERN = re.compile(
        "[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF"
        "\U0001F1E0-\U0001F1FF☀-⛿✀-➿]"
    )

    MIN_REFUSAL_INPUTS = 2

    def check_structure(self, raw_text: str) -> StructuralCheck:
        """Parse and validate raw model text against the two-variant schema."""
        try:
            data = parse_ai_response(raw_text)
        except ValueError as e:
            return StructuralCheck(RECEIVED, violations=[Violation("output", str(e))])

        try:
            output = AI_OUTPUT_ADAPTER.validate_python(_with_model_refusal_code(data))
        except PydanticValidationError as e:
            return StructuralCheck(RECEIVED, violations=_violations_from_pydantic(e))

        if isinstance(output, RefusalOutput):
            count = len(output.refusal.missing_or_conflicting_inputs)
            if count < self.MIN_REFUSAL_INPUTS:
                return StructuralCheck(RECEIVED, violations=[Violation(
                    "refusal.missing_or_conflicting_inputs", "must list 2 to 5 specific inputs"
                )])

        return StructuralCheck(STRUCTURALLY_VALID, output=output)

    def build_correction_prompt(self, violations: List[Violation]) -> str:
        return build_correction_prompt(violations)

    def _decision_text(self, output: DecisionOutput) -> str:
        d = output.decision
        parts = [d.headline, d.summary]
        parts.extend(a.text for a in d.assumptions)
        parts.extend(d.tradeoffs.gains)
        parts.extend(d.tradeoffs.losses)
        parts.extend(d.change_conditions)
        return "\n".join(parts)

    def check_content(self, output: AIOutputModel, extra_phrases: Iterable[str] = ()) -> ContentCheck:
        """Scan a structurally valid decision for prohibited language."""
        if not isinstance(output, DecisionOutput):
            return ContentCheck(CONTENT_CLEAN)

        text = self._decision_text(output)
        lowered = text.lower()
        flags = []

        phrases = list(self.FORBIDDEN_PHRASES) + [p.lower() for p in extra_phrases if p.strip()]
        for phrase in phrases:
            if phrase in lowered:
                flags.append(f"forbidden_phrase:{phrase}")

        for pattern in self.GUARANTEE_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                flags.append(f"guarantee_language:{pattern}")

        for pattern in self.SELF_REFERENCE_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                flags.append(f"self_reference:{pattern}")

        if self.EMOJI_PATTERN.search(text):
            flags.append("emoji")

        if "!" in text:
            flags.append("exclamation_mark")

        if flags:
            return ContentCheck(REJECTED, flags=flags)
        return ContentCheck(CONTENT_CLEAN)

    def finalize(self, output: AIOutputModel, extra_phrases: Iterable[str] = ()) -> AIOutputModel:
        """Return output unchanged when clean; raise ContentPolicyViolation otherwise."""
        result = self.check_content(output, extra_phrases)
        if not result.clean:
            logger.log_operation("enforcer.content", "rejected", {"flags": result.flags[:10]})
            raise ContentPolicyViolation(result.flags)
        return output
