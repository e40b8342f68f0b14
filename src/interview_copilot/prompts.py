"""Prompt scaffolding for insight, follow-up and summary generation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from .config import CampaignFact
from .schemas import ALLOWED_TAGS

DEFAULT_LANGUAGE = "en"

INSIGHT_SYSTEM_PROMPT = (
    "ROLE: You are an interview co-pilot. Output STRICT JSON matching the "
    "schema. No extra text. Be neutral and factual."
)

INSIGHT_TEMPLATE = (
    """
TASK:
- Summarize the last turn in at most 20 words and 120 characters.
- Choose 1-3 tags from ALLOWED_TAGS: {allowed_tags}.
- If facts are provided and used, include their IDs as "citations" (max 3).
- Provide "followup": ONE concise follow-up question (max 15 words) that
  clarifies a shallow answer or opens the next topic after a thorough one.

CONTEXT:
- turn_id: "{turn_id}"
- Rolling summary: "{rolling_summary}"
- Latest transcript snippet: "{snippet}"
- Retrieved facts: {facts}

SCHEMA:
{schema}

Always include "schema_version": 1.
RETURN: JSON ONLY.
""".strip()
)

RETRY_NOTE = (
    """
IMPORTANT:
- Your previous response was rejected ({reason}).
- Return VALID JSON only. No text outside the JSON object, no markdown fences.
- Ensure the "summary" reflects this snippet: "{snippet}"
""".strip()
)

FOLLOWUP_SYSTEM_PROMPT = (
    "You are an AI interviewer. Read the candidate's last answer and the "
    "running transcript. Ask ONE concise, high-signal follow-up that digs "
    "deeper into their experience. No boilerplate, no multi-part questions, "
    "18 words max. Respond with the question text only."
)

FOLLOWUP_TEMPLATE = (
    """
Running transcript: "{rolling_summary}"
Candidate's last answer: "{last_answer}"
""".strip()
)

SUMMARY_SYSTEM_PROMPT = (
    "You write hiring-panel interview summaries. Output STRICT JSON matching "
    "the schema. No extra text. Be neutral and evidence based."
)

SUMMARY_TEMPLATE = (
    """
TASK:
- "overview": at most 600 characters describing how the candidate answered.
- "strengths": up to 5 short bullet strings grounded in the transcript.
- "risks": up to 5 short bullet strings (gaps, vague answers, missing metrics).
- "topics": up to 8 topic labels covered.

CANDIDATE TRANSCRIPT (most recent turns):
{transcript}

ACCUMULATED INSIGHT TAGS: {tags}

SCHEMA:
{schema}

Always include "schema_version": 1.
RETURN: JSON ONLY.
""".strip()
)


def format_facts(facts: Sequence[CampaignFact]) -> str:
    return json.dumps(
        [{"id": fact.id, "text": fact.text} for fact in facts],
        ensure_ascii=False,
    )


def build_insight_prompt(
    *,
    turn_id: str,
    rolling_summary: str,
    snippet: str,
    facts: Sequence[CampaignFact],
    schema: str,
) -> str:
    return INSIGHT_TEMPLATE.format(
        allowed_tags=", ".join(ALLOWED_TAGS),
        turn_id=turn_id,
        rolling_summary=rolling_summary,
        snippet=snippet,
        facts=format_facts(facts),
        schema=schema,
    )


def build_retry_prompt(original: str, *, reason: str, snippet: str) -> str:
    note = RETRY_NOTE.format(reason=reason, snippet=snippet)
    return f"{original}\n\n{note}"


@dataclass(slots=True)
class InterviewerPhrases:
    """Lines the interviewer speaks outside of the question flow."""

    closing: str
    stalled: str
    generic_followup: str


LANGUAGE_PACKS: Dict[str, InterviewerPhrases] = {
    "en": InterviewerPhrases(
        closing="Thank you, that concludes the interview.",
        stalled="Take your time. Could you tell me a little more?",
        generic_followup="Could you give a concrete example with metrics?",
    ),
    "es": InterviewerPhrases(
        closing="Gracias, con esto concluye la entrevista.",
        stalled="Tomate tu tiempo. Podrias contarme un poco mas?",
        generic_followup="Podrias dar un ejemplo concreto con metricas?",
    ),
}


def _normalize_language_code(language: object | None) -> str | None:
    if isinstance(language, str):
        normalized = language.strip().lower()
        if not normalized:
            return None
        normalized = normalized.replace("_", "-")
        normalized = normalized.split("-")[0]
        if normalized in LANGUAGE_PACKS:
            return normalized
    return None


def resolve_language_code(language: object | None) -> str:
    """Return a supported language code, falling back to the default."""

    return _normalize_language_code(language) or DEFAULT_LANGUAGE


def get_language_pack(language: object | None) -> Tuple[str, InterviewerPhrases]:
    """Resolve and return the interviewer phrases for the given code."""

    code = resolve_language_code(language)
    return code, LANGUAGE_PACKS[code]
