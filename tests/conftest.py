from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Union

import pytest

from interview_copilot.config import (
    AppSettings,
    InterviewMode,
    LLMMode,
    ModelSettings,
)
from interview_copilot.maf_client import (
    CompletionRequest,
    CompletionResult,
    TokenUsage,
)

LONG_ANSWER = (
    "I led the migration of our billing pipeline to an event driven design, "
    "owning the rollout plan and the on-call rotation for three months."
)

# A model summary that stays close to LONG_ANSWER.
GROUNDED_SUMMARY = (
    "Led the migration of our billing pipeline to an event driven design "
    "and owned the rollout."
)


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float = 1.0) -> None:
        self.now += seconds


Scripted = Union[CompletionResult, BaseException]


class FakeCompletionClient:
    """Replays scripted completions and records every request."""

    def __init__(self, *responses: Scripted) -> None:
        self._responses: List[Scripted] = list(responses)
        self.requests: List[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError("Unexpected completion call")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def completion(payload: Any, prompt_tokens: int = 30, completion_tokens: int = 12) -> CompletionResult:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return CompletionResult(
        text=text,
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        model=ModelSettings(
            provider="openai",
            model="gpt-4o-mini",
            endpoint=None,
            api_key=None,
            api_version=None,
        ),
        soft_token_cap=12000,
        default_llm_mode=LLMMode.RULES,
        default_interview_mode=InterviewMode.STRUCTURED,
        insight_timeout_seconds=1.0,
        insight_max_tokens=220,
        advance_guard_seconds=0.3,
        conversational_cap=8,
        output_dir=tmp_path / "outputs",
        session_log=tmp_path / "outputs" / "sessions.jsonl",
        redis_url=None,
    )
