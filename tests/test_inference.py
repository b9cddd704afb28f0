"""
Inference client retries, temperature decay and circuit behaviour.
"""

import json

import pytest

from verdict.agents.inference import InferenceClient
from verdict.agents.output_enforcer import OutputEnforcer
from verdict.api.schemas import InputEnvelope
from verdict.core.errors import GuardrailShortCircuit, StructuralOutputError, TransportFailure
from verdict.core.guardrails import GuardrailTracker, MemoryCounterStore


def _reply(content):
    return {"message": {"role": "assistant", "content": content}}


@pytest.fixture
def tracker():
    return GuardrailTracker(store=MemoryCounterStore())


@pytest.fixture
def envelope(envelope_payload):
    return InputEnvelope.model_validate(envelope_payload())


@pytest.fixture
def missing_confidence(decision_reply):
    reply = json.loads(decision_reply())
    del reply["decision"]["confidence"]
    return json.dumps(reply)


def _client(mock_ollama, tracker, **kwargs):
    return InferenceClient(client=mock_ollama, model="test-model", max_retries=kwargs.pop("max_retries", 2),
                           base_temperature=0.3, temperature_step=0.1, tracker=tracker, **kwargs)


class TestTemperature:

    def test_temperature_steps_down(self, mock_ollama, tracker):
        client = _client(mock_ollama, tracker)
        assert [client.temperature_for(i) for i in range(3)] == [0.3, 0.2, 0.1]

    def test_temperature_floor_is_zero(self, mock_ollama, tracker):
        client = _client(mock_ollama, tracker)
        assert client.temperature_for(10) == 0.0


class TestInvokeWithRetry:
    """Structural retries."""

    def test_valid_first_attempt(self, mock_ollama, tracker, envelope):
        result = _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer())

        assert result.retry_count == 0
        assert result.model == "test-model"
        assert result.output.decision.outcome == "book"
        call = mock_ollama.chat.call_args
        assert call.kwargs["format"] == "json"
        assert call.kwargs["options"] == {"temperature": 0.3}

    def test_missing_confidence_retried_once(self, mock_ollama, tracker, envelope, decision_reply,
                                             missing_confidence):
        """The second attempt carries the correction prompt at a lower temperature."""
        mock_ollama.chat.side_effect = [_reply(missing_confidence), _reply(decision_reply())]

        result = _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer())

        assert result.retry_count == 1
        assert mock_ollama.chat.call_count == 2
        second = mock_ollama.chat.call_args_list[1].kwargs
        assert second["options"] == {"temperature": 0.2}
        assert "decision.confidence" in second["messages"][1]["content"]
        assert tracker.snapshot().schema_violations == 1

    def test_retries_exhausted(self, mock_ollama, tracker, envelope, missing_confidence):
        mock_ollama.chat.return_value = _reply(missing_confidence)

        with pytest.raises(StructuralOutputError) as exc_info:
            _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer())

        assert mock_ollama.chat.call_count == 3
        assert exc_info.value.retry_count == 2
        assert tracker.snapshot().schema_violations == 3
        # Schema failures are not transport failures
        assert tracker.is_inference_circuit_open() is False

    def test_transport_failure_not_retried(self, mock_ollama, tracker, envelope):
        mock_ollama.chat.side_effect = ConnectionError("connection refused")

        with pytest.raises(TransportFailure):
            _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer())

        assert mock_ollama.chat.call_count == 1
        assert tracker.snapshot().inference_consecutive_failures == 1

    def test_reply_without_message_is_transport_failure(self, mock_ollama, tracker, envelope):
        mock_ollama.chat.return_value = {"done": True}

        with pytest.raises(TransportFailure):
            _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer())

        assert mock_ollama.chat.call_count == 1
        assert tracker.snapshot().inference_consecutive_failures == 1

    def test_before_attempt_runs_for_every_call(self, mock_ollama, tracker, envelope, decision_reply,
                                                missing_confidence):
        mock_ollama.chat.side_effect = [_reply(missing_confidence), _reply(decision_reply())]
        seen = []

        _client(mock_ollama, tracker).invoke_with_retry(envelope, OutputEnforcer(), before_attempt=seen.append)

        assert seen == [0, 1]

    def test_circuit_opens_after_three_failures(self, mock_ollama, tracker, envelope):
        mock_ollama.chat.side_effect = TimeoutError("timed out")
        client = _client(mock_ollama, tracker)

        for _ in range(3):
            with pytest.raises(TransportFailure):
                client.invoke_with_retry(envelope, OutputEnforcer())

        with pytest.raises(GuardrailShortCircuit):
            client.invoke_with_retry(envelope, OutputEnforcer())

        assert mock_ollama.chat.call_count == 3

    def test_success_closes_failure_streak(self, mock_ollama, tracker, envelope, decision_reply):
        mock_ollama.chat.side_effect = [ConnectionError("down"), ConnectionError("down"), _reply(decision_reply())]
        client = _client(mock_ollama, tracker)

        for _ in range(2):
            with pytest.raises(TransportFailure):
                client.invoke_with_retry(envelope, OutputEnforcer())
        client.invoke_with_retry(envelope, OutputEnforcer())

        assert tracker.snapshot().inference_consecutive_failures == 0


class TestHealth:

    def test_check_health_ok(self, mock_ollama, tracker):
        assert _client(mock_ollama, tracker).check_health() is True

    def test_check_health_unreachable(self, mock_ollama, tracker):
        mock_ollama.list.side_effect = ConnectionError("refused")
        assert _client(mock_ollama, tracker).check_health() is False
