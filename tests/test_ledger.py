"""
Decision ledger: conditional create, state machine and verdict immutability.
"""

import pytest

from verdict.core import ledger
from verdict.core.errors import InvalidTransition, NotFoundError, PersistenceConflict
from verdict.core.schema import (
    CLOSED, FLAGGED_FOR_REVIEW, ISSUED, REFUSED, REVIEWED, REVISED, SUPERSEDED
)


class TestCreate:
    """Conditional insert."""

    def test_create_and_read_back(self, make_record):
        record = ledger.create_decision(make_record())
        loaded = ledger.get_decision(record.decision_id)

        assert loaded.state == ISSUED
        assert loaded.assumptions == record.assumptions
        assert loaded.tradeoffs == record.tradeoffs
        assert loaded.ai_used is True
        assert loaded.needs_review is False

    def test_duplicate_id_conflicts(self, make_record):
        record = ledger.create_decision(make_record())
        clone = make_record(decision_id=record.decision_id, outcome="wait")

        with pytest.raises(PersistenceConflict):
            ledger.create_decision(clone)

        assert ledger.get_decision(record.decision_id).outcome == "book"

    def test_create_requires_initial_state(self, make_record):
        with pytest.raises(InvalidTransition):
            ledger.create_decision(make_record(state=REVIEWED))

    def test_refusal_record(self, make_record):
        record = ledger.create_decision(make_record(outcome="refused"))
        loaded = ledger.require_decision(record.decision_id)

        assert loaded.state == REFUSED
        assert loaded.is_refusal

    def test_require_missing(self):
        with pytest.raises(NotFoundError):
            ledger.require_decision("dec_missing")


class TestQueries:

    def test_list_by_traveler_newest_first(self, make_record):
        older = ledger.create_decision(make_record(created_at="2026-01-01T00:00:00+00:00"))
        newer = ledger.create_decision(make_record(created_at="2026-01-02T00:00:00+00:00"))
        ledger.create_decision(make_record(traveler_id="trav_other"))

        ids = [r.decision_id for r in ledger.list_by_traveler("trav_001")]

        assert ids == [newer.decision_id, older.decision_id]

    def test_list_by_topic_chronological(self, make_record):
        first = ledger.create_decision(make_record(created_at="2026-01-01T00:00:00+00:00"))
        second = ledger.create_decision(make_record(created_at="2026-01-02T00:00:00+00:00"))

        assert [r.decision_id for r in ledger.list_by_topic("tz-family")] == [first.decision_id, second.decision_id]
        assert ledger.list_topics() == ["tz-family"]

    def test_list_needing_review(self, make_record):
        record = ledger.create_decision(make_record())
        ledger.flag_for_review(record.decision_id, "MANUAL_FLAG")

        flagged = ledger.list_needing_review()

        assert [r.decision_id for r in flagged] == [record.decision_id]
        assert flagged[0].review_status == "queued"


class TestTransitions:
    """State machine."""

    def test_flag_then_review(self, make_record):
        record = ledger.create_decision(make_record())

        flagged = ledger.flag_for_review(record.decision_id, "OUTCOME_CHANGED")
        reviewed = ledger.mark_reviewed(record.decision_id)

        assert flagged.state == FLAGGED_FOR_REVIEW
        assert flagged.review_reason == "OUTCOME_CHANGED"
        assert reviewed.state == REVIEWED
        assert reviewed.needs_review is False

    def test_invalid_transition_rejected(self, make_record):
        record = ledger.create_decision(make_record(outcome="refused"))

        with pytest.raises(InvalidTransition):
            ledger.flag_for_review(record.decision_id, "MANUAL_FLAG")

        assert ledger.require_decision(record.decision_id).state == REFUSED

    def test_closed_is_terminal(self, make_record):
        record = ledger.create_decision(make_record())
        ledger.transition_state(record.decision_id, CLOSED)

        with pytest.raises(InvalidTransition):
            ledger.transition_state(record.decision_id, SUPERSEDED)

    def test_supersede_links_records(self, make_record):
        old = ledger.create_decision(make_record())
        new = ledger.supersede(old.decision_id, make_record(outcome="wait"))

        assert ledger.require_decision(old.decision_id).state == SUPERSEDED
        assert ledger.require_decision(new.decision_id).supersedes_decision_id == old.decision_id

    def test_supersede_rolls_back_on_invalid_path(self, make_record):
        old = ledger.create_decision(make_record())
        ledger.transition_state(old.decision_id, CLOSED)
        replacement = make_record(outcome="wait")

        with pytest.raises(InvalidTransition):
            ledger.supersede(old.decision_id, replacement)

        assert ledger.get_decision(replacement.decision_id) is None

    def test_correct_reviewed_decision(self, make_record):
        """A reviewed record passes through CORRECTED and ends SUPERSEDED."""
        old = ledger.create_decision(make_record())
        ledger.flag_for_review(old.decision_id, "MANUAL_FLAG")
        ledger.mark_reviewed(old.decision_id)

        new = ledger.correct_decision(old.decision_id, make_record(outcome="wait"))

        old_record = ledger.require_decision(old.decision_id)
        assert old_record.state == SUPERSEDED
        assert old_record.review_status == "corrected"
        assert new.supersedes_decision_id == old.decision_id

    def test_record_revision(self, make_record):
        old = ledger.create_decision(make_record())
        ledger.record_revision(old.decision_id, make_record(outcome="switch"))

        assert ledger.require_decision(old.decision_id).state == REVISED

    def test_verdict_fields_never_change(self, make_record):
        """State changes leave the verdict exactly as issued."""
        record = ledger.create_decision(make_record())
        before = ledger.require_decision(record.decision_id).verdict_fields()

        ledger.flag_for_review(record.decision_id, "MANUAL_FLAG")
        ledger.mark_reviewed(record.decision_id)
        ledger.correct_decision(record.decision_id, make_record(outcome="discard"))

        assert ledger.require_decision(record.decision_id).verdict_fields() == before
