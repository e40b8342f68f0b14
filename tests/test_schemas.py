from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from interview_copilot.safety import REDACTED, redact_pii, risky_question
from interview_copilot.schemas import (
    Insight,
    SchemaError,
    SessionSummary,
    extract_json_object,
    parse_insight,
    parse_session_summary,
    text_similarity,
)

VALID = {
    "schema_version": 1,
    "turn_id": "ignored",
    "summary": "Owned the billing migration end to end.",
    "tags": ["leadership", "systems"],
    "citations": ["f1"],
    "followup": "What would you change in hindsight?",
}


def test_parse_valid_insight_forces_turn_id() -> None:
    parsed = parse_insight(json.dumps(VALID), turn_id="t3")
    assert isinstance(parsed, Insight)
    assert parsed.turn_id == "t3"
    assert parsed.tags == ["leadership", "systems"]


def test_parse_tolerates_text_around_the_object() -> None:
    raw = "Sure! Here you go:\n```json\n" + json.dumps(VALID) + "\n```"
    assert isinstance(parse_insight(raw, turn_id="t1"), Insight)


@pytest.mark.parametrize(
    "mutation",
    [
        {"schema_version": 2},
        {"summary": "x" * 121},
        {"tags": ["astrology"]},
        {"tags": []},
        {"tags": ["ml", "systems", "latency", "impact"]},
        {"followup": "y" * 141},
        {"unexpected": True},
        {"flags": ["vip"]},
    ],
)
def test_schema_violations_are_returned_as_data(mutation: dict) -> None:
    payload = {**VALID, **mutation}
    parsed = parse_insight(json.dumps(payload), turn_id="t1")
    assert isinstance(parsed, SchemaError)
    assert parsed.reason


def test_non_json_is_a_schema_error() -> None:
    parsed = parse_insight("I think the candidate did well.", turn_id="t1")
    assert isinstance(parsed, SchemaError)
    assert parsed.raw == "I think the candidate did well."
    assert extract_json_object("[1, 2, 3]") is None


def test_unknown_citations_are_rejected() -> None:
    parsed = parse_insight(json.dumps(VALID), turn_id="t1", allowed_citations={"f2"})
    assert isinstance(parsed, SchemaError)
    assert "f1" in parsed.reason


def test_summary_word_cap() -> None:
    wordy = {**VALID, "summary": " ".join(["ok"] * 21)}
    parsed = parse_insight(json.dumps(wordy), turn_id="t1")
    assert isinstance(parsed, SchemaError)
    assert "21 words" in parsed.reason

    exact = {**VALID, "summary": " ".join(["ok"] * 20)}
    assert isinstance(parse_insight(json.dumps(exact), turn_id="t1"), Insight)


def test_summary_must_reflect_the_snippet() -> None:
    snippet = "I owned the billing migration end to end and ran the cutover."
    grounded = parse_insight(json.dumps(VALID), turn_id="t1", snippet=snippet)
    assert isinstance(grounded, Insight)

    invented = {**VALID, "summary": "Strong opinions about tabs versus spaces."}
    parsed = parse_insight(json.dumps(invented), turn_id="t1", snippet=snippet)
    assert isinstance(parsed, SchemaError)
    assert "not grounded" in parsed.reason


def test_text_similarity_bounds() -> None:
    assert text_similarity("billing migration", "Billing migration") == pytest.approx(1.0)
    assert text_similarity("billing migration", "queue sizing") == 0.0
    assert text_similarity("", "") == 0.0
    assert text_similarity("!!!", "billing") == 0.0


def test_insight_is_immutable_and_dedupes_tags() -> None:
    insight = Insight(
        schema_version=1,
        turn_id="t1",
        summary="ok",
        tags=["ml", "ml"],
        followup="   ",
    )
    assert insight.tags == ["ml"]
    assert insight.followup is None
    with pytest.raises(ValidationError):
        insight.summary = "changed"  # type: ignore[misc]


def test_parse_session_summary_limits() -> None:
    good = {
        "schema_version": 1,
        "overview": "Solid systems depth.",
        "strengths": ["Clear ownership", "Clear ownership"],
        "risks": [],
        "topics": ["systems"],
    }
    parsed = parse_session_summary(json.dumps(good), session_id="sess-1")
    assert isinstance(parsed, SessionSummary)
    assert parsed.session_id == "sess-1"
    assert parsed.strengths == ["Clear ownership"]

    too_many = {**good, "topics": [f"t{n}" for n in range(9)]}
    assert isinstance(
        parse_session_summary(json.dumps(too_many), session_id=None), SchemaError
    )


def test_redact_pii_masks_identifiers() -> None:
    text, changed = redact_pii("Mail me at jane.doe@example.com or 123-45-6789")
    assert changed
    assert "jane.doe@example.com" not in text
    assert "123-45-6789" not in text
    assert text.count(REDACTED) == 2

    clean, changed = redact_pii("We cut latency by half")
    assert clean == "We cut latency by half"
    assert not changed


def test_risky_question_detects_protected_topics() -> None:
    assert risky_question("How old are you?")
    assert risky_question("Are you married?")
    assert risky_question("What is your nationality?")
    assert not risky_question("How did you size the cache?")
