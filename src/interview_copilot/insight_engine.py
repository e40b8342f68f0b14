"""Insight generation with a cloud model and a deterministic rules fallback.

Every public coroutine here resolves to a usable, schema-valid result. Cloud
problems (network errors, timeouts, malformed or out-of-schema JSON) are
logged and converted into the rules path with zero token cost.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import snowballstemmer
from rank_bm25 import BM25Okapi
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS

from .config import AppSettings, CampaignFact, LLMMode
from .maf_client import (
    CompletionClient,
    CompletionRequest,
    CompletionResult,
    LLMCallError,
)
from .observability import interview_span
from .prompts import (
    FOLLOWUP_SYSTEM_PROMPT,
    FOLLOWUP_TEMPLATE,
    INSIGHT_SYSTEM_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    SUMMARY_TEMPLATE,
    build_insight_prompt,
    build_retry_prompt,
)
from .question_bank import is_short_answer
from .safety import redact_pii
from .schemas import (
    DEFAULT_TURN_ID,
    FOLLOWUP_MAX_CHARS,
    OVERVIEW_MAX_CHARS,
    SUMMARY_MAX_CHARS,
    Insight,
    SchemaError,
    SessionSummary,
    insight_schema_json,
    parse_insight,
    parse_session_summary,
    summary_schema_json,
)

logger = logging.getLogger(__name__)

ROLLING_SUMMARY_CHARS = 240
SNIPPET_CHARS = 400
MAX_FACTS = 3
SUMMARY_TURNS = 16
SUMMARY_TRANSCRIPT_CHARS = 2000
BREVITY_CHARS = 400
MAX_ATTEMPTS = 2

GENERIC_FOLLOWUP = "Could you give a concrete example with metrics?"
SPECIFIC_EXAMPLE_FOLLOWUP = (
    "Could you share a specific example with your role and the outcome?"
)

_HEDGE_RE = re.compile(r"\b(general|generic|generally|unsure|not sure)\b", re.I)
_METRIC_RE = re.compile(r"\d|%|\bpercent\b", re.I)
_METRIC_UNIT_RE = re.compile(
    r"%|\b(percent|users|requests|ms|seconds|hours|days|weeks|months|years)\b",
    re.I,
)
_TECH_RE = re.compile(
    r"\b(node|react|python|java|aws|gcp|kubernetes|docker|sql|postgres|"
    r"mongodb|redis|cache|latency|performance|scalability)\b",
    re.I,
)
_PROCESS_RE = re.compile(
    r"\b(process|workflow|pipeline|system|architecture|design|implementation)\b",
    re.I,
)
_VAGUE_RE = re.compile(r"\b(thing|stuff|worked on|did|it|that)\b", re.I)

# Order matters: tags are emitted in this order.
_TAG_PATTERNS: Tuple[Tuple[str, re.Pattern[str]], ...] = (
    (
        "performance",
        re.compile(
            r"\b(latency|throughput|p9\d|perf\w*|faster|speed\w*|"
            r"optimi[sz]\w*|cach\w*)\b|%|\bpercent\b",
            re.I,
        ),
    ),
    (
        "systems",
        re.compile(
            r"\b(system\w*|architect\w*|pipeline\w*|queue\w*|stream\w*|"
            r"backpressure|scal\w*|distributed|microservice\w*|database\w*)\b",
            re.I,
        ),
    ),
    (
        "leadership",
        re.compile(
            r"\b(led|lead\w*|mentor\w*|team\w*|managed|manager|ownership|"
            r"owned|stakeholder\w*)\b",
            re.I,
        ),
    ),
)

_ML_RE = re.compile(
    r"\b(model\w*|ml|machine learning|lstm|arima|rag|embedding\w*|"
    r"training|inference|llm\w*)\b",
    re.I,
)


def _tail(text: str, limit: int) -> str:
    cleaned = text.strip()
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[-limit:]


def _cap(text: str, limit: int) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 3].rstrip() + "..."


@dataclass(frozen=True, slots=True)
class InsightRequest:
    """Everything needed to analyze one finalized candidate turn."""

    mode: LLMMode
    turn_id: str
    rolling_summary: str
    snippet: str
    facts: Tuple[CampaignFact, ...] = ()
    token_budget_left: int = 0

    @classmethod
    def build(
        cls,
        *,
        mode: LLMMode,
        turn_id: str,
        rolling_summary: str,
        snippet: str,
        facts: Sequence[CampaignFact] = (),
        token_budget_left: int = 0,
    ) -> "InsightRequest":
        """Trim the inputs to the sizes the prompts are designed for."""

        return cls(
            mode=mode,
            turn_id=turn_id.strip() or DEFAULT_TURN_ID,
            rolling_summary=_tail(rolling_summary, ROLLING_SUMMARY_CHARS),
            snippet=_tail(snippet, SNIPPET_CHARS),
            facts=tuple(facts[:MAX_FACTS]),
            token_budget_left=token_budget_left,
        )


@dataclass(frozen=True, slots=True)
class InsightOutcome:
    insight: Insight
    latency_ms: float
    used_tokens: int = 0


def _empty_tags() -> Dict[str, int]:
    return {}


@dataclass(frozen=True, slots=True)
class FinalSummaryRequest:
    """Inputs for the end-of-interview summary."""

    mode: LLMMode
    candidate_turns: Tuple[str, ...]
    tags: Mapping[str, int] = field(default_factory=_empty_tags)
    token_budget_left: int = 0
    session_id: Optional[str] = None

    def transcript_excerpt(self) -> str:
        """Most recent turns, newest kept when the excerpt is too long."""

        lines = [turn.strip() for turn in self.candidate_turns[-SUMMARY_TURNS:]]
        excerpt = "\n".join(f"- {line}" for line in lines if line)
        return _tail(excerpt, SUMMARY_TRANSCRIPT_CHARS)


@dataclass(frozen=True, slots=True)
class SummaryOutcome:
    summary: SessionSummary
    latency_ms: float
    used_tokens: int = 0


@dataclass(frozen=True, slots=True)
class FollowupOutcome:
    text: str
    used_tokens: int = 0


def rules_followup(snippet: str) -> Optional[str]:
    """Pick one targeted follow-up for an answer, or ``None``."""

    text = snippet.strip().lower()
    if not text:
        return SPECIFIC_EXAMPLE_FOLLOWUP
    has_number = bool(re.search(r"\d", text))
    has_units = bool(_METRIC_UNIT_RE.search(text))
    vague = len(text.split()) < 12 or bool(_VAGUE_RE.search(text))
    tech_match = _TECH_RE.search(text)
    if has_number and has_units:
        return (
            "What drove that specific number? Can you walk me through the "
            "methodology?"
        )
    if tech_match:
        tech = tech_match.group(0).lower()
        if tech in {"cache", "latency"}:
            return "How did you measure the impact? What were your baseline metrics?"
        return f"How did you implement {tech} in that project? What challenges did you face?"
    if _PROCESS_RE.search(text) and vague:
        return (
            "Could you give me a concrete example of that process? What was "
            "your specific role?"
        )
    if vague:
        return SPECIFIC_EXAMPLE_FOLLOWUP
    if any(word in text for word in ("problem", "challenge", "issue")):
        return "What was the root cause? How did you identify it?"
    if any(word in text for word in ("result", "outcome", "impact")):
        return "How did you measure success? What were the key metrics?"
    return None


_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STEMMER = snowballstemmer.stemmer("english")


class _FactIndex(BM25Okapi):
    """BM25 with the Lucene idf, which stays positive on short fact lists."""

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        for term, freq in nd.items():
            self.idf[term] = math.log(
                1 + (self.corpus_size - freq + 0.5) / (freq + 0.5)
            )


def _index_terms(text: str) -> List[str]:
    """Lowercased, stop-word free, stemmed terms so word variants match."""

    words = [
        word
        for word in _TOKEN_RE.findall(text.lower())
        if word not in ENGLISH_STOP_WORDS
    ]
    return _STEMMER.stemWords(words)


def select_facts(
    facts: Sequence[CampaignFact],
    query: str,
    *,
    limit: int = MAX_FACTS,
) -> List[CampaignFact]:
    """Rank campaign facts against ``query`` with BM25.

    Facts scoring zero are dropped. Ties keep campaign order.
    """

    query_terms = _index_terms(query)
    documents = [(fact, _index_terms(fact.text)) for fact in facts]
    documents = [(fact, terms) for fact, terms in documents if terms]
    if not query_terms or not documents:
        return []
    index = _FactIndex([terms for _fact, terms in documents])
    scores = index.get_scores(query_terms)
    ranked = sorted(
        (
            (float(score), position, fact)
            for position, ((fact, _terms), score) in enumerate(zip(documents, scores))
            if score > 0
        ),
        key=lambda item: (-item[0], item[1]),
    )
    return [fact for _score, _position, fact in ranked[:limit]]


def rules_tags(text: str) -> List[str]:
    tags = [name for name, pattern in _TAG_PATTERNS if pattern.search(text)]
    return tags or ["review"]


def rules_insight(
    request: InsightRequest,
    *,
    flags: Sequence[str] = (),
) -> Insight:
    """Deterministic, zero-cost insight. Never fails."""

    snippet = request.snippet
    short = is_short_answer(snippet)
    if _METRIC_RE.search(snippet):
        summary = "Mentions metrics; probe how they were measured and the baseline."
    elif short:
        summary = "Brief answer; ask for a specific example with role and outcome."
    else:
        summary = "General answer; probe for depth, ownership and trade-offs."
    followup: Optional[str] = None
    if short or _HEDGE_RE.search(snippet):
        followup = rules_followup(snippet) or SPECIFIC_EXAMPLE_FOLLOWUP
    citations = [fact.id for fact in request.facts[:2]] or None
    return Insight(
        schema_version=1,
        turn_id=request.turn_id.strip() or DEFAULT_TURN_ID,
        summary=_cap(summary, SUMMARY_MAX_CHARS),
        tags=rules_tags(snippet),  # type: ignore[arg-type]
        citations=citations,
        flags=list(flags) or None,  # type: ignore[arg-type]
        followup=_cap(followup, FOLLOWUP_MAX_CHARS) if followup else None,
    )


def rules_summary(
    request: FinalSummaryRequest,
    *,
    flags_note: str = "",
) -> SessionSummary:
    """Keyword heuristics over all candidate text."""

    text = " ".join(turn.strip() for turn in request.candidate_turns).strip()
    strengths: List[str] = []
    topics: List[str] = []
    if _TAG_PATTERNS[2][1].search(text):
        strengths.append("Shows leadership and ownership signals.")
        topics.append("leadership")
    if _TAG_PATTERNS[0][1].search(text):
        if _METRIC_RE.search(text):
            strengths.append("Discusses performance with concrete metrics.")
        else:
            strengths.append("Discusses performance considerations.")
        topics.append("performance")
    if _ML_RE.search(text):
        strengths.append("Demonstrates machine-learning familiarity.")
        topics.append("ml")
    risks: List[str] = []
    if len(text) < BREVITY_CHARS:
        risks.append("Brevity: answers were short and need deeper probing.")
    if text and not _METRIC_RE.search(text):
        risks.append("Few concrete metrics were cited.")
    for tag, _count in Counter(dict(request.tags)).most_common():
        if tag not in topics and tag != "review":
            topics.append(tag)
    answered = len([turn for turn in request.candidate_turns if turn.strip()])
    overview = (
        f"Candidate gave {answered} answer(s) totalling {len(text)} characters."
    )
    if topics:
        overview += f" Topics covered: {', '.join(topics[:8])}."
    if flags_note:
        overview += f" {flags_note}"
    return SessionSummary(
        schema_version=1,
        session_id=request.session_id,
        overview=_cap(overview, OVERVIEW_MAX_CHARS),
        strengths=strengths[:5],
        risks=risks[:5],
        topics=topics[:8],
    )


class InsightEngine:
    """Produces insights, follow-ups and summaries within a token budget."""

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        *,
        timeout_seconds: float = 8.0,
        max_tokens: int = 220,
    ) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "InsightEngine":
        client: Optional[CompletionClient] = None
        if settings.model.cloud_available:
            from .maf_client import MAFChatClient

            client = MAFChatClient(settings.model)
        return cls(
            client,
            timeout_seconds=settings.insight_timeout_seconds,
            max_tokens=settings.insight_max_tokens,
        )

    @property
    def cloud_enabled(self) -> bool:
        return self._client is not None

    def _use_cloud(self, mode: LLMMode, budget_left: int) -> bool:
        return (
            mode is LLMMode.CLOUD
            and budget_left > 0
            and self._client is not None
        )

    async def _call(self, request: CompletionRequest) -> CompletionResult:
        if self._client is None:
            raise LLMCallError("No completion client is configured.")
        return await asyncio.wait_for(
            self._client.complete(request),
            timeout=self._timeout_seconds,
        )

    async def generate_insight(self, request: InsightRequest) -> InsightOutcome:
        """Analyze one turn. Always resolves to a schema-valid insight."""

        if not request.turn_id.strip():
            request = replace(request, turn_id=DEFAULT_TURN_ID)
        with interview_span(
            "copilot.insight",
            turn_id=request.turn_id,
            llm_mode=request.mode.value,
            token_budget_left=request.token_budget_left,
        ) as span:
            outcome = await self._generate_insight(request)
            span.set_attribute("interview.used_tokens", outcome.used_tokens)
            span.set_attribute(
                "interview.insight.flags", list(outcome.insight.flags or [])
            )
            return outcome

    async def _generate_insight(self, request: InsightRequest) -> InsightOutcome:
        started = time.perf_counter()
        snippet_safe, redacted = redact_pii(request.snippet)
        base_flags = ["pii"] if redacted else []

        if not self._use_cloud(request.mode, request.token_budget_left):
            insight = rules_insight(request, flags=base_flags)
            return InsightOutcome(
                insight=insight,
                latency_ms=_elapsed_ms(started),
                used_tokens=0,
            )

        prompt = build_insight_prompt(
            turn_id=request.turn_id,
            rolling_summary=request.rolling_summary,
            snippet=snippet_safe,
            facts=request.facts,
            schema=insight_schema_json(),
        )
        allowed_citations = (
            {fact.id for fact in request.facts} if request.facts else None
        )
        used_tokens = 0
        reason = ""
        try:
            for attempt in range(MAX_ATTEMPTS):
                user_instruction = prompt
                if attempt:
                    user_instruction = build_retry_prompt(
                        prompt, reason=reason, snippet=snippet_safe
                    )
                result = await self._call(
                    CompletionRequest(
                        system_instruction=INSIGHT_SYSTEM_PROMPT,
                        user_instruction=user_instruction,
                        json_mode=True,
                        max_tokens=self._max_tokens,
                    )
                )
                used_tokens += result.usage.total
                parsed = parse_insight(
                    result.text,
                    turn_id=request.turn_id,
                    allowed_citations=allowed_citations,
                    snippet=snippet_safe,
                )
                if isinstance(parsed, Insight):
                    if redacted:
                        merged = list(parsed.flags or []) + ["pii"]
                        parsed = parsed.model_copy(update={"flags": merged})
                        parsed = Insight.model_validate(parsed.model_dump())
                    return InsightOutcome(
                        insight=parsed,
                        latency_ms=_elapsed_ms(started),
                        used_tokens=used_tokens,
                    )
                reason = parsed.reason
                logger.info(
                    "Insight attempt %d for %s rejected: %s",
                    attempt + 1,
                    request.turn_id,
                    reason,
                )
        except Exception as exc:  # noqa: BLE001 - cloud path must not raise
            logger.warning(
                "Cloud insight failed for %s; using rules path: %s",
                request.turn_id,
                exc or type(exc).__name__,
            )
        else:
            logger.warning(
                "Cloud insight for %s failed validation twice; using rules path.",
                request.turn_id,
            )
        insight = rules_insight(
            request, flags=base_flags + ["model_unavailable"]
        )
        return InsightOutcome(
            insight=insight,
            latency_ms=_elapsed_ms(started),
            used_tokens=0,
        )

    async def generate_final_summary(
        self,
        request: FinalSummaryRequest,
    ) -> SummaryOutcome:
        """Summarize the whole interview with the same fallback policy."""

        with interview_span(
            "copilot.final_summary",
            turn_id=None,
            llm_mode=request.mode.value,
            token_budget_left=request.token_budget_left,
        ) as span:
            outcome = await self._generate_final_summary(request)
            span.set_attribute("interview.used_tokens", outcome.used_tokens)
            return outcome

    async def _generate_final_summary(
        self,
        request: FinalSummaryRequest,
    ) -> SummaryOutcome:
        started = time.perf_counter()
        if not self._use_cloud(request.mode, request.token_budget_left):
            return SummaryOutcome(
                summary=rules_summary(request),
                latency_ms=_elapsed_ms(started),
            )
        excerpt, _redacted = redact_pii(request.transcript_excerpt())
        tag_line = ", ".join(
            f"{tag} ({count})"
            for tag, count in Counter(dict(request.tags)).most_common()
        ) or "none"
        prompt = SUMMARY_TEMPLATE.format(
            transcript=excerpt or "(no candidate answers)",
            tags=tag_line,
            schema=summary_schema_json(),
        )
        used_tokens = 0
        reason = ""
        try:
            for attempt in range(MAX_ATTEMPTS):
                user_instruction = prompt
                if attempt:
                    user_instruction = build_retry_prompt(
                        prompt, reason=reason, snippet=excerpt[-200:]
                    )
                result = await self._call(
                    CompletionRequest(
                        system_instruction=SUMMARY_SYSTEM_PROMPT,
                        user_instruction=user_instruction,
                        json_mode=True,
                        max_tokens=max(self._max_tokens, 600),
                    )
                )
                used_tokens += result.usage.total
                parsed = parse_session_summary(
                    result.text, session_id=request.session_id
                )
                if isinstance(parsed, SessionSummary):
                    return SummaryOutcome(
                        summary=parsed,
                        latency_ms=_elapsed_ms(started),
                        used_tokens=used_tokens,
                    )
                reason = parsed.reason
                logger.info(
                    "Summary attempt %d rejected: %s", attempt + 1, reason
                )
        except Exception as exc:  # noqa: BLE001 - cloud path must not raise
            logger.warning("Cloud summary failed; using rules path: %s", exc)
        return SummaryOutcome(
            summary=rules_summary(
                request, flags_note="(Generated by rules; model unavailable.)"
            ),
            latency_ms=_elapsed_ms(started),
        )

    async def generate_followup_question(
        self,
        *,
        last_answer: str,
        rolling_summary: str,
        mode: LLMMode,
        token_budget_left: int,
    ) -> FollowupOutcome:
        """One interviewer follow-up for the latest answer."""

        rules_text = rules_followup(last_answer) or GENERIC_FOLLOWUP
        if not self._use_cloud(mode, token_budget_left):
            return FollowupOutcome(text=rules_text)
        answer_safe, _redacted = redact_pii(_tail(last_answer, SNIPPET_CHARS))
        try:
            result = await self._call(
                CompletionRequest(
                    system_instruction=FOLLOWUP_SYSTEM_PROMPT,
                    user_instruction=FOLLOWUP_TEMPLATE.format(
                        rolling_summary=_tail(
                            rolling_summary, ROLLING_SUMMARY_CHARS
                        ),
                        last_answer=answer_safe,
                    ),
                    json_mode=False,
                    max_tokens=60,
                )
            )
        except Exception as exc:  # noqa: BLE001 - cloud path must not raise
            logger.warning("Cloud follow-up failed; using rules path: %s", exc)
            return FollowupOutcome(text=rules_text)
        text = result.text.strip().strip("\"'\u201c\u201d").strip()
        if not text or len(text) > FOLLOWUP_MAX_CHARS:
            logger.info("Discarding unusable follow-up: %r", result.text)
            return FollowupOutcome(text=rules_text)
        return FollowupOutcome(text=text, used_tokens=result.usage.total)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


__all__ = [
    "FinalSummaryRequest",
    "FollowupOutcome",
    "InsightEngine",
    "InsightOutcome",
    "InsightRequest",
    "SchemaError",
    "SummaryOutcome",
    "rules_followup",
    "rules_insight",
    "rules_summary",
    "select_facts",
]
