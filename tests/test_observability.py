from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from interview_copilot import observability
from interview_copilot.config import LLMMode
from interview_copilot.insight_engine import FinalSummaryRequest, InsightEngine, InsightRequest


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    monkeypatch.setattr(observability, "_initialized", False)
    monkeypatch.delenv("COPILOT_TRACING_CAPTURE_SENSITIVE", raising=False)
    setup = MagicMock()
    monkeypatch.setattr(observability, "setup_observability", setup)
    return setup


def test_tracing_initializes_once(fresh_state: MagicMock) -> None:
    assert observability.initialize_tracing(endpoint="http://collector:4317") is True
    assert observability.initialize_tracing(endpoint="http://collector:4317") is False
    fresh_state.assert_called_once_with(
        otlp_endpoint="http://collector:4317",
        enable_sensitive_data=False,
    )


def test_tracing_failure_is_reported(fresh_state: MagicMock) -> None:
    fresh_state.side_effect = RuntimeError("exporter missing")
    assert observability.initialize_tracing(endpoint="http://collector:4317") is False
    assert observability._initialized is False


async def test_insight_span_carries_turn_and_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    tracer = MagicMock()
    monkeypatch.setattr(observability, "_tracer", tracer)
    request = InsightRequest.build(
        mode=LLMMode.RULES,
        turn_id="t4",
        rolling_summary="",
        snippet="we improved throughput by 40 percent",
        token_budget_left=250,
    )
    await InsightEngine().generate_insight(request)

    tracer.start_as_current_span.assert_called_once_with("copilot.insight")
    span = tracer.start_as_current_span.return_value.__enter__.return_value
    span.set_attribute.assert_any_call(observability.TURN_ID_ATTRIBUTE, "t4")
    span.set_attribute.assert_any_call(observability.LLM_MODE_ATTRIBUTE, "rules")
    span.set_attribute.assert_any_call(observability.BUDGET_ATTRIBUTE, 250)
    span.set_attribute.assert_any_call("interview.used_tokens", 0)


async def test_summary_span_has_no_turn_id(monkeypatch: pytest.MonkeyPatch) -> None:
    tracer = MagicMock()
    monkeypatch.setattr(observability, "_tracer", tracer)
    request = FinalSummaryRequest(mode=LLMMode.CLOUD, candidate_turns=("yes",))
    await InsightEngine().generate_final_summary(request)

    tracer.start_as_current_span.assert_called_once_with("copilot.final_summary")
    span = tracer.start_as_current_span.return_value.__enter__.return_value
    attributes = {call.args[0] for call in span.set_attribute.call_args_list}
    assert observability.TURN_ID_ATTRIBUTE not in attributes
    span.set_attribute.assert_any_call(observability.LLM_MODE_ATTRIBUTE, "cloud")
