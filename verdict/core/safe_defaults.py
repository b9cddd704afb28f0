"""
Safe defaults served when the pipeline cannot produce a fresh verdict:
an open inference circuit, a transport failure, or a contended fingerprint.
"""

from dataclasses import dataclass
from typing import Optional

from . import config
from .schema import SERVICE_DEGRADED, EVALUATION_IN_PROGRESS
from ..api.schemas import RefusalBody, RefusalOutput

REFUSE_RETRY_AFTER_SEC = 300
DEFER_RETRY_AFTER_SEC = 60


@dataclass
class SafeDefault:
    action: str  # use_cached|refuse|defer
    reason: str
    retry_after_seconds: Optional[int] = None
    stale: bool = False


def decision_default(circuit_open: bool, cached_age_sec: Optional[float],
                     max_age_sec: float = None, stale_after_sec: float = None) -> SafeDefault:
    """Pick what to serve when a fresh verdict is unavailable."""
    max_age = config.SAFE_DEFAULT_CACHE_MAX_AGE_SEC if max_age_sec is None else max_age_sec
    stale_after = config.SAFE_DEFAULT_STALE_AFTER_SEC if stale_after_sec is None else stale_after_sec

    if circuit_open:
        if cached_age_sec is not None and cached_age_sec <= max_age:
            return SafeDefault(
                action="use_cached",
                reason="Serving the most recent verdict for these inputs while the decision service recovers.",
                stale=cached_age_sec > stale_after,
            )
        return SafeDefault(
            action="refuse",
            reason="The decision service is temporarily unavailable and no recent verdict exists for these inputs.",
            retry_after_seconds=REFUSE_RETRY_AFTER_SEC,
        )

    return SafeDefault(
        action="defer",
        reason="The decision service is processing requests slowly.",
        retry_after_seconds=DEFER_RETRY_AFTER_SEC,
    )


def service_degraded_refusal() -> RefusalOutput:
    return RefusalOutput(
        type="refusal",
        refusal=RefusalBody(
            code=SERVICE_DEGRADED,
            reason="The decision service is temporarily unable to process your request.",
            missing_or_conflicting_inputs=["Decision service availability"],
            safe_next_step="Wait a few seconds and refresh the page, or try again later.",
        )
    )


def in_progress_refusal(retry_after_seconds: int) -> RefusalOutput:
    return RefusalOutput(
        type="refusal",
        refusal=RefusalBody(
            code=EVALUATION_IN_PROGRESS,
            reason="An identical evaluation is already in progress.",
            missing_or_conflicting_inputs=[],
            safe_next_step=f"Wait {retry_after_seconds} seconds and request the recommendation again.",
        )
    )
