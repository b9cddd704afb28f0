"""
HTTP surface: evaluate, ledger and event reads, reviews, ops and assurance.
"""

import pytest
from fastapi.testclient import TestClient

from verdict.agents.inference import InferenceClient
from verdict.agents.orchestrator import DecisionOrchestrator
from verdict.api.main import app, get_orchestrator
from verdict.core import ledger
from verdict.core.fingerprint import LockManager, fingerprint
from verdict.api.schemas import InputEnvelope
from verdict.core.guardrails import GuardrailThresholds, GuardrailTracker, MemoryCounterStore


@pytest.fixture
def orchestrator(mock_ollama):
    tracker = GuardrailTracker(store=MemoryCounterStore(), thresholds=GuardrailThresholds())
    client = InferenceClient(client=mock_ollama, model="test-model", tracker=tracker)
    return DecisionOrchestrator(inference_client=client,
                                lock_manager=LockManager(poll_interval_sec=0.01, max_wait_sec=0),
                                tracker=tracker)


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestEvaluateEndpoint:

    def test_evaluate_issues_decision(self, client, envelope_payload):
        response = client.post("/evaluate", json=envelope_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["output"]["type"] == "decision"
        assert body["metadata"]["persisted"] is True
        assert body["decision_id"].startswith("dec_")

    def test_policy_refusal_is_200(self, client, envelope_payload, mock_ollama):
        response = client.post("/evaluate", json=envelope_payload(
            request={"question": "Will I see the Big Five guaranteed?"}
        ))

        assert response.status_code == 200
        assert response.json()["output"]["refusal"]["code"] == "guarantee_requested"
        mock_ollama.chat.assert_not_called()

    def test_invalid_envelope_is_400(self, client, envelope_payload):
        payload = envelope_payload()
        del payload["user_context"]

        response = client.post("/evaluate", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"]["field_errors"]

    def test_contended_request_is_202(self, client, envelope_payload):
        payload = envelope_payload()
        LockManager(owner="other-builder").acquire(fingerprint(InputEnvelope.model_validate(payload)))

        response = client.post("/evaluate", json=payload)

        assert response.status_code == 202
        body = response.json()
        assert body["decision_id"] is None
        assert body["metadata"]["deferred"] is True
        assert body["metadata"]["retry_after_seconds"] >= 1


class TestLedgerEndpoints:

    def test_get_decision(self, client, envelope_payload):
        decision_id = client.post("/evaluate", json=envelope_payload()).json()["decision_id"]

        response = client.get(f"/decisions/{decision_id}")

        assert response.status_code == 200
        assert response.json()["state"] == "ISSUED"

    def test_missing_decision_is_404(self, client):
        response = client.get("/decisions/dec_missing")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_list_by_traveler(self, client, envelope_payload):
        client.post("/evaluate", json=envelope_payload())

        response = client.get("/decisions", params={"traveler_id": "trav_001"})

        assert len(response.json()) == 1

    def test_review_listing_not_shadowed(self, client, make_record):
        record = ledger.create_decision(make_record())
        ledger.flag_for_review(record.decision_id, "MANUAL_FLAG")

        response = client.get("/decisions/review")

        assert response.status_code == 200
        assert [d["decision_id"] for d in response.json()] == [record.decision_id]


class TestEventEndpoints:

    def test_append_and_list(self, client):
        response = client.post("/events", json={
            "event_type": "SESSION_STARTED", "session_id": "sess_9", "traveler_id": "trav_9",
            "payload": {"referrer": "newsletter"},
        })
        assert response.status_code == 201

        events = client.get("/events", params={"traveler_id": "trav_9"}).json()
        assert [e["event_type"] for e in events] == ["SESSION_STARTED"]

    def test_unknown_event_type_is_400(self, client):
        response = client.post("/events", json={"event_type": "CLICKED", "session_id": "sess_9"})
        assert response.status_code == 400

    def test_list_requires_filter(self, client):
        response = client.get("/events")

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestReviewEndpoints:

    def test_run_and_resolve(self, client, make_record):
        ledger.create_decision(make_record(outcome="book", created_at="2026-03-01T01:00:00+00:00"))
        latest = ledger.create_decision(make_record(outcome="wait", created_at="2026-03-01T02:00:00+00:00"))

        run = client.post("/reviews/run", params={"topic_id": "tz-family"}).json()
        assert run["created"] == 1

        pending = client.get("/reviews/pending").json()
        review_id = pending[0]["review_id"]
        updated = client.patch(f"/reviews/{review_id}", json={"status": "reviewed", "reviewer_id": "ops_1"})

        assert updated.status_code == 200
        assert updated.json()["status"] == "reviewed"
        assert ledger.require_decision(latest.decision_id).state == "REVIEWED"
        assert client.get("/reviews", params={"topic_id": "tz-family"}).json()[0]["reviewer_id"] == "ops_1"

    def test_bad_review_status_is_400(self, client):
        response = client.patch("/reviews/rev_1", json={"status": "maybe", "reviewer_id": "ops_1"})
        assert response.status_code == 400

    def test_missing_review_is_404(self, client):
        response = client.patch("/reviews/rev_missing", json={"status": "reviewed", "reviewer_id": "ops_1"})
        assert response.status_code == 404


class TestOpsEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["db_health"] is True

    def test_ops_health(self, client):
        body = client.get("/ops/health").json()

        assert body["health"]["status"] == "healthy"
        assert body["guardrails"]["circuit_open"] is False
        assert body["inference_available"] is True
        assert body["heartbeat"]["status"] in ("disabled", "stopped")

    def test_reset_guardrails(self, client):
        response = client.post("/ops/guardrails/reset", json={"target": "inference"})

        assert response.status_code == 200
        assert response.json()["target"] == "inference"


class TestAssuranceEndpoints:

    def test_full_lifecycle(self, client, make_record):
        record = ledger.create_decision(make_record())

        created = client.post("/assurance", json={"decision_id": record.decision_id, "session_id": "sess_001"})
        assert created.status_code == 201
        assurance_id = created.json()["assurance_id"]

        assert client.get(f"/assurance/{assurance_id}").status_code == 402
        assert client.post(f"/assurance/{assurance_id}/payment", json={"payment_id": "pay_1"}).status_code == 200
        assert client.get(f"/assurance/{assurance_id}").json()["artifact"]["verdict"]["outcome"] == "book"

        revoked = client.post(f"/assurance/{assurance_id}/revoke", json={"reason": "Lodge closed"})
        assert revoked.json()["payment_status"] == "refunded"
        assert client.get(f"/assurance/{assurance_id}").status_code == 410

    def test_duplicate_is_409(self, client, make_record):
        record = ledger.create_decision(make_record())
        body = {"decision_id": record.decision_id, "session_id": "sess_001"}

        client.post("/assurance", json=body)
        response = client.post("/assurance", json=body)

        assert response.status_code == 409

    def test_refusal_is_422(self, client, make_record):
        record = ledger.create_decision(make_record(outcome="refused"))

        response = client.post("/assurance", json={"decision_id": record.decision_id, "session_id": "sess_001"})

        assert response.status_code == 422
        assert response.json()["details"]["code"] == "DECISION_IS_REFUSAL"
