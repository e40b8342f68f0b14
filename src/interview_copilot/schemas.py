"""Schema models for model-produced insights and session summaries."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Literal, Optional, Union, cast

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sklearn.feature_extraction.text import CountVectorizer
from sklearn.metrics.pairwise import cosine_similarity

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SUMMARY_MAX_CHARS = 120
FOLLOWUP_MAX_CHARS = 140
OVERVIEW_MAX_CHARS = 600
SUMMARY_MAX_WORDS = 20
MIN_GROUNDING_SIMILARITY = 0.70
DEFAULT_TURN_ID = "t0"

ALLOWED_TAGS: tuple[str, ...] = (
    "intro",
    "experience",
    "projects",
    "leadership",
    "impact",
    "performance",
    "systems",
    "ml",
    "latency",
    "reliability",
    "security",
    "ownership",
    "communication",
    "culture",
    "off_topic",
    "review",
)

ALLOWED_FLAGS: tuple[str, ...] = (
    "risky_topic",
    "pii",
    "format_fix",
    "model_unavailable",
)

InsightTag = Literal[
    "intro",
    "experience",
    "projects",
    "leadership",
    "impact",
    "performance",
    "systems",
    "ml",
    "latency",
    "reliability",
    "security",
    "ownership",
    "communication",
    "culture",
    "off_topic",
    "review",
]
InsightFlag = Literal["risky_topic", "pii", "format_fix", "model_unavailable"]


def _dedupe(values: List[Any]) -> List[Any]:
    seen: set[Any] = set()
    unique: List[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


class Insight(BaseModel):
    """Structured, validated summary of one candidate utterance."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal[1]
    turn_id: str = Field(min_length=1)
    summary: str = Field(max_length=SUMMARY_MAX_CHARS)
    tags: List[InsightTag] = Field(min_length=1, max_length=3)
    citations: Optional[List[str]] = Field(default=None, max_length=3)
    flags: Optional[List[InsightFlag]] = None
    followup: Optional[str] = Field(default=None, max_length=FOLLOWUP_MAX_CHARS)

    @field_validator("tags", "flags", mode="after")
    @classmethod
    def _unique(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return _dedupe(value)

    @field_validator("followup", mode="after")
    @classmethod
    def _blank_followup(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class SessionSummary(BaseModel):
    """End-of-interview overview produced from the full transcript."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal[1]
    session_id: Optional[str] = None
    overview: str = Field(max_length=OVERVIEW_MAX_CHARS)
    strengths: List[str] = Field(default_factory=list, max_length=5)
    risks: List[str] = Field(default_factory=list, max_length=5)
    topics: List[str] = Field(default_factory=list, max_length=8)

    @field_validator("strengths", "risks", "topics", mode="after")
    @classmethod
    def _unique(cls, value: List[str]) -> List[str]:
        return _dedupe([item.strip() for item in value if item.strip()])


@dataclass(frozen=True, slots=True)
class SchemaError:
    """Why a model response was rejected."""

    reason: str
    raw: str = ""


ParsedInsight = Union[Insight, SchemaError]
ParsedSummary = Union[SessionSummary, SchemaError]


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object embedded in ``raw`` or ``None``."""

    text = raw.strip()
    if not text:
        return None
    candidate = text
    if not candidate.lstrip().startswith("{"):
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            return None
        candidate = text[start:end + 1]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return cast(Dict[str, Any], payload)


def parse_insight(
    raw: str,
    *,
    turn_id: str,
    allowed_citations: Optional[Collection[str]] = None,
    snippet: Optional[str] = None,
) -> ParsedInsight:
    """Parse then validate a model response against the insight schema.

    When ``snippet`` is given the summary must also stay grounded in it:
    at most :data:`SUMMARY_MAX_WORDS` words and a term-frequency cosine
    similarity of at least :data:`MIN_GROUNDING_SIMILARITY`.
    """

    payload = extract_json_object(raw)
    if payload is None:
        return SchemaError(reason="response is not a JSON object", raw=raw)
    payload["turn_id"] = turn_id
    try:
        insight = Insight.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Insight failed validation: %s", exc)
        return SchemaError(reason=_first_error(exc), raw=raw)
    word_count = len(insight.summary.split())
    if word_count > SUMMARY_MAX_WORDS:
        return SchemaError(
            reason=f"summary has {word_count} words (max {SUMMARY_MAX_WORDS})",
            raw=raw,
        )
    if snippet is not None:
        similarity = text_similarity(snippet, insight.summary)
        if similarity < MIN_GROUNDING_SIMILARITY:
            return SchemaError(
                reason=f"summary is not grounded in the answer (similarity {similarity:.2f})",
                raw=raw,
            )
    if allowed_citations is not None and insight.citations:
        unknown = [c for c in insight.citations if c not in allowed_citations]
        if unknown:
            return SchemaError(
                reason=f"unknown citations: {', '.join(unknown)}",
                raw=raw,
            )
    return insight


def text_similarity(first: str, second: str) -> float:
    """Cosine similarity of the term-frequency vectors of two texts."""

    vectorizer = CountVectorizer(token_pattern=r"[a-z0-9]+")
    try:
        counts = vectorizer.fit_transform([first, second])
    except ValueError:
        # Neither text contains a single token.
        return 0.0
    return float(cosine_similarity(counts[0], counts[1])[0][0])


def parse_session_summary(raw: str, *, session_id: Optional[str]) -> ParsedSummary:
    """Parse then validate a model response against the summary schema."""

    payload = extract_json_object(raw)
    if payload is None:
        return SchemaError(reason="response is not a JSON object", raw=raw)
    if session_id is not None:
        payload["session_id"] = session_id
    try:
        return SessionSummary.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Session summary failed validation: %s", exc)
        return SchemaError(reason=_first_error(exc), raw=raw)


def insight_schema_json() -> str:
    """JSON schema text embedded in prompts."""

    schema = Insight.model_json_schema()
    return json.dumps(schema, indent=2)


def summary_schema_json() -> str:
    schema = SessionSummary.model_json_schema()
    return json.dumps(schema, indent=2)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "schema validation failed"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid value"))
    return f"{location}: {message}" if location else message
