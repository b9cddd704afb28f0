"""
Shared fixtures: a fresh SQLite store per test, envelope and model reply builders.
"""

import copy
import json
from unittest.mock import MagicMock

import pytest

from verdict.core import config, ledger
from verdict.core.db import init_db
from verdict.core.guardrails import guardrails
from verdict.core.health import health_monitor
from verdict.core.schema import DecisionRecord, ISSUED, REFUSED, REFUSED_OUTCOME, utc_now_iso

BASE_PAYLOAD = {
    "task": "DECISION",
    "tracking": {"session_id": "sess_001", "traveler_id": "trav_001", "lead_id": None},
    "user_context": {
        "traveler_type": "family",
        "budget_band": "fair_value",
        "dates": {"type": "month_year", "month": "February", "year": 2099},
        "pace_preference": "balanced",
        "risk_tolerance": "medium",
        "group_size": 4,
    },
    "request": {
        "question": "Is Tanzania a good fit for our family safari?",
        "scope": "topic_id=tz-family",
        "destinations_considered": ["Tanzania"],
        "constraints": {"comfort_level": "mid"},
    },
    "facts": {
        "known_constraints": ["School holidays in February"],
        "known_tradeoffs": ["Calving season draws crowds"],
        "destination_notes": [],
    },
    "policy": {
        "must_refuse_if": ["guarantee_requested", "inputs_conflict_unbounded", "missing_material_inputs"],
        "forbidden_phrases": [],
    },
}

VALID_DECISION = {
    "type": "decision",
    "decision": {
        "outcome": "book",
        "headline": "Book Tanzania for February",
        "summary": "February lines up with calving season in the southern Serengeti. Family lodges have space at fair value rates.",
        "assumptions": [
            {"id": "a1", "text": "Travel dates stay within February", "confidence": 0.8},
            {"id": "a2", "text": "Budget covers mid-range lodges", "confidence": 0.6},
        ],
        "tradeoffs": {
            "gains": ["Calving season activity"],
            "losses": ["Higher vehicle density at sightings"],
        },
        "change_conditions": ["If dates move into the long rains", "If the group grows beyond one vehicle"],
        "confidence": 0.72,
    },
}


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Point the store at a throwaway database and clear process-wide counters."""
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "verdict.db"))
    init_db()
    guardrails.reset_all()
    health_monitor.reset()
    yield
    guardrails.reset_all()
    health_monitor.reset()


@pytest.fixture
def envelope_payload():
    """Factory for request bodies. Keyword sections are merged over the defaults."""
    def _build(**sections):
        payload = copy.deepcopy(BASE_PAYLOAD)
        for section, values in sections.items():
            if isinstance(values, dict) and isinstance(payload.get(section), dict):
                payload[section].update(values)
            else:
                payload[section] = values
        return payload
    return _build


@pytest.fixture
def decision_reply():
    """Factory for model reply text; keyword args override decision fields."""
    def _build(**overrides):
        reply = copy.deepcopy(VALID_DECISION)
        reply["decision"].update(overrides)
        return json.dumps(reply)
    return _build


def chat_response(content):
    return {"message": {"role": "assistant", "content": content}}


@pytest.fixture
def mock_ollama():
    """MagicMock standing in for ollama.Client."""
    client = MagicMock()
    client.chat.return_value = chat_response(json.dumps(VALID_DECISION))
    client.list.return_value = {"models": []}
    return client


@pytest.fixture
def make_record():
    """Factory for ledger records that bypass the pipeline."""
    def _build(topic_id="tz-family", outcome="book", confidence=0.72, created_at=None,
               traveler_id="trav_001", state=None, **fields):
        now = created_at or utc_now_iso()
        refused = outcome == REFUSED_OUTCOME
        values = dict(
            decision_id=ledger.new_decision_id(),
            session_id="sess_001",
            traveler_id=traveler_id,
            topic_id=topic_id,
            decision_type="refusal" if refused else "fit_assessment",
            state=state or (REFUSED if refused else ISSUED),
            outcome=outcome,
            headline="Decision refused" if refused else "Book Tanzania for February",
            summary="February lines up with calving season.",
            assumptions=[] if refused else [
                {"id": "a1", "text": "Travel dates stay within February", "confidence": 0.8},
                {"id": "a2", "text": "Budget covers mid-range lodges", "confidence": 0.6},
            ],
            tradeoffs={"gains": [], "losses": []} if refused else {
                "gains": ["Calving season activity"], "losses": ["Higher vehicle density"]
            },
            change_conditions=[] if refused else ["If dates move", "If the group grows"],
            confidence=0.0 if refused else confidence,
            inputs_snapshot={"task": "DECISION"},
            logic_version=config.LOGIC_VERSION,
            prompt_version=config.PROMPT_VERSION,
            ai_used=not refused,
            created_at=now,
            updated_at=now,
        )
        values.update(fields)
        return DecisionRecord(**values)
    return _build
