"""
Decision assurance artifacts: eligibility, payment gate and revocation.
"""

import sqlite3
from unittest.mock import patch

import pytest

from verdict.core import assurance, ledger
from verdict.core.errors import (
    ArtifactCircuitOpen, AssuranceAlreadyIssued, AssuranceRejected, AssuranceRevoked, NotFoundError,
    PaymentRequired, PersistenceConflict
)
from verdict.core.guardrails import GuardrailThresholds, GuardrailTracker, MemoryCounterStore
from verdict.core.schema import SUPERSEDED


@pytest.fixture
def tracker():
    return GuardrailTracker(store=MemoryCounterStore(), thresholds=GuardrailThresholds())


@pytest.fixture
def issued(make_record):
    return ledger.create_decision(make_record())


class TestEligibility:

    def test_refusal_rejected(self, make_record):
        with pytest.raises(AssuranceRejected) as exc_info:
            assurance.check_eligibility(make_record(outcome="refused"))
        assert exc_info.value.code == "DECISION_IS_REFUSAL"

    def test_flagged_rejected(self, make_record):
        with pytest.raises(AssuranceRejected) as exc_info:
            assurance.check_eligibility(make_record(needs_review=True))
        assert exc_info.value.code == "DECISION_FLAGGED_FOR_REVIEW"

    def test_superseded_rejected(self, make_record):
        with pytest.raises(AssuranceRejected) as exc_info:
            assurance.check_eligibility(make_record(state=SUPERSEDED))
        assert exc_info.value.code == "DECISION_SUPERSEDED"

    def test_low_confidence_rejected(self, make_record):
        with pytest.raises(AssuranceRejected) as exc_info:
            assurance.check_eligibility(make_record(confidence=0.4), threshold=0.5)
        assert exc_info.value.code == "CONFIDENCE_BELOW_THRESHOLD"

    def test_missing_tradeoffs_rejected(self, make_record):
        with pytest.raises(AssuranceRejected) as exc_info:
            assurance.check_eligibility(make_record(tradeoffs={"gains": ["x"], "losses": []}))
        assert exc_info.value.code == "MISSING_REQUIRED_FIELDS"

    def test_eligible_decision_passes(self, make_record):
        assurance.check_eligibility(make_record())


class TestArtifact:

    def test_checklist_order_and_cap(self, make_record):
        record = make_record(change_conditions=["c1", "c2", "c3", "c4"], assumptions=[
            {"id": "a1", "text": "Shaky one", "confidence": 0.5},
            {"id": "a2", "text": "Shaky two", "confidence": 0.6},
            {"id": "a3", "text": "Solid", "confidence": 0.9},
        ])

        checklist = assurance.build_invalidation_checklist(record)

        assert checklist[:4] == ["c1", "c2", "c3", "c4"]
        assert checklist[4:6] == ["Verify assumption: Shaky one", "Verify assumption: Shaky two"]
        assert len(checklist) == assurance.MAX_CHECKLIST_ITEMS

    def test_confidence_labels(self):
        assert assurance.confidence_label(0.72) == "High"
        assert assurance.confidence_label(0.55) == "Medium"
        assert assurance.confidence_label(0.3) == "Low"


class TestLifecycle:

    def test_generate_pending_payment(self, issued, tracker):
        record = assurance.generate_assurance(issued.decision_id, "sess_001", "trav_001", tracker=tracker)

        assert record.assurance_id.startswith("asr_")
        assert record.status == assurance.PENDING_PAYMENT
        assert record.payment_status == assurance.PAYMENT_PENDING
        assert record.artifact["verdict"]["outcome"] == "book"
        assert record.artifact["verdict"]["confidence_label"] == "High"

    def test_second_assurance_conflicts(self, issued, tracker):
        assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

        with pytest.raises(AssuranceAlreadyIssued) as exc_info:
            assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)
        assert exc_info.value.status_code == 409

    def test_unknown_decision(self, tracker):
        with pytest.raises(NotFoundError):
            assurance.generate_assurance("dec_missing", "sess_001", tracker=tracker)

    def test_unpaid_read_requires_payment(self, issued, tracker):
        record = assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

        with pytest.raises(PaymentRequired) as exc_info:
            assurance.get_assurance(record.assurance_id)
        assert exc_info.value.status_code == 402

    def test_payment_then_read(self, issued, tracker):
        record = assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

        paid = assurance.record_payment(record.assurance_id, "pay_123")
        loaded = assurance.get_assurance(record.assurance_id)

        assert paid.status == assurance.ASSURANCE_ISSUED
        assert loaded.payment_id == "pay_123"
        assert loaded.payment_status == assurance.PAYMENT_COMPLETED

    def test_double_payment_conflicts(self, issued, tracker):
        record = assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)
        assurance.record_payment(record.assurance_id, "pay_123")

        with pytest.raises(PersistenceConflict):
            assurance.record_payment(record.assurance_id, "pay_456")
        assert assurance.get_assurance(record.assurance_id).payment_id == "pay_123"

    def test_payment_for_missing_assurance(self):
        with pytest.raises(NotFoundError):
            assurance.record_payment("asr_missing", "pay_1")

    def test_revoke_refunds_and_blocks_reads(self, issued, tracker):
        record = assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)
        assurance.record_payment(record.assurance_id, "pay_123")

        revoked = assurance.revoke_assurance(record.assurance_id, "Park closure")

        assert revoked.status == assurance.REVOKED
        assert revoked.payment_status == assurance.PAYMENT_REFUNDED
        with pytest.raises(AssuranceRevoked) as exc_info:
            assurance.get_assurance(record.assurance_id)
        assert exc_info.value.status_code == 410
        with pytest.raises(AssuranceRevoked):
            assurance.revoke_assurance(record.assurance_id, "again")

    def test_paused_circuit_short_circuits(self, issued, tracker):
        for _ in range(3):
            tracker.record_artifact_result(False)

        with pytest.raises(ArtifactCircuitOpen):
            assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

    def test_write_failure_counts_toward_circuit(self, issued, tracker):
        with patch("verdict.core.assurance.get_db", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

        assert tracker.snapshot().artifact_consecutive_failures == 1

    def test_decision_untouched_by_assurance(self, issued, tracker):
        before = ledger.require_decision(issued.decision_id).verdict_fields()
        assurance.generate_assurance(issued.decision_id, "sess_001", tracker=tracker)

        assert ledger.require_decision(issued.decision_id).verdict_fields() == before
