"""
Append-only event log.
"""

import pytest

from verdict.core import event_log
from verdict.core.errors import PersistenceConflict, ValidationError
from verdict.core.schema import DECISION_ISSUED, ENGAGED, SESSION_STARTED, EventRecord


class TestAppend:

    def test_append_and_get(self):
        event = event_log.log_session_started("sess_001", "trav_001", {"referrer": "search"})
        loaded = event_log.get_event(event.event_id)

        assert loaded.event_type == SESSION_STARTED
        assert loaded.payload == {"referrer": "search"}
        assert loaded.event_id.startswith("evt_")

    def test_duplicate_event_id_rejected(self):
        """The original row survives a replayed write."""
        event_log.log_event(ENGAGED, "sess_001", event_id="evt_fixed", payload={"n": 1})

        with pytest.raises(PersistenceConflict):
            event_log.log_event(ENGAGED, "sess_001", event_id="evt_fixed", payload={"n": 2})

        assert event_log.count_events("evt_fixed") == 1
        assert event_log.get_event("evt_fixed").payload == {"n": 1}

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValidationError):
            event_log.append_event(EventRecord(event_id="evt_x", created_at="2026-01-01T00:00:00+00:00",
                                               event_type="SOMETHING_ELSE"))

    def test_decision_issued_payload(self):
        event = event_log.log_decision_issued("sess_001", "trav_001", None, "dec_1", "book", 0.72,
                                              "rules_v1.0", True)

        assert event.event_type == DECISION_ISSUED
        assert event.payload == {"outcome": "book", "confidence": 0.72, "logic_version": "rules_v1.0",
                                 "ai_used": True}


class TestQueries:

    def test_session_events_in_order(self):
        first = event_log.log_session_started("sess_001")
        second = event_log.log_engaged("sess_001")
        event_log.log_engaged("sess_other")

        assert [e.event_id for e in event_log.list_by_session("sess_001")] == [first.event_id, second.event_id]

    def test_traveler_events_newest_first(self):
        event_log.append_event(EventRecord(event_id="evt_old", created_at="2026-01-01T00:00:00+00:00",
                                           event_type=ENGAGED, traveler_id="trav_001"))
        event_log.append_event(EventRecord(event_id="evt_new", created_at="2026-01-02T00:00:00+00:00",
                                           event_type=ENGAGED, traveler_id="trav_001"))

        assert [e.event_id for e in event_log.list_by_traveler("trav_001")] == ["evt_new", "evt_old"]

    def test_list_by_type(self):
        event_log.log_engaged("sess_001")
        event_log.log_session_started("sess_001")

        events = event_log.list_by_type(ENGAGED)

        assert len(events) == 1
        assert events[0].event_type == ENGAGED
