"""Scripted interview questions and the structured-mode depth check."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import CampaignConfig

FOLLOWUP_SUFFIX = "-f"
AI_FOLLOWUP_SUFFIX = "-ai-followup"

DEPTH_PROBE_TEXT = "Could you add concrete metrics or a specific example?"

# An answer is "short" below either threshold.
SHORT_ANSWER_CHARS = 60
SHORT_ANSWER_WORDS = 10


class Topic(str, Enum):
    """Coarse topic buckets for scripted questions."""

    INTRO = "intro"
    SYSTEMS = "systems"
    ML = "ml"
    BEHAVIORAL = "behavioral"

    @classmethod
    def from_string(cls, value: str | None, default: "Topic") -> "Topic":
        if not value:
            return default
        normalized = value.strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        return default


@dataclass(frozen=True, slots=True)
class Question:
    """A single interview question."""

    id: str
    text: str
    topic: Topic = Topic.BEHAVIORAL
    difficulty: int = 2

    @property
    def is_depth_probe(self) -> bool:
        return self.id.endswith(FOLLOWUP_SUFFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "topic": self.topic.value,
            "difficulty": self.difficulty,
        }


DEFAULT_QUESTIONS: List[Question] = [
    Question(
        id="q1",
        text="Give me a 30s overview of your background.",
        topic=Topic.INTRO,
        difficulty=1,
    ),
    Question(
        id="q2",
        text="How would you keep p95 <1s in a live STT to summary pipeline?",
        topic=Topic.SYSTEMS,
        difficulty=2,
    ),
    Question(
        id="q3",
        text="Describe backpressure and how you would apply it to streaming.",
        topic=Topic.SYSTEMS,
        difficulty=2,
    ),
    Question(
        id="q4",
        text="ARIMA vs LSTM for time-series; when does ARIMA win?",
        topic=Topic.ML,
        difficulty=2,
    ),
    Question(
        id="q5",
        text=(
            "Walk through a time you reduced latency. Baseline, actions, "
            "result."
        ),
        topic=Topic.BEHAVIORAL,
        difficulty=2,
    ),
    Question(
        id="q6",
        text="How would you ground LLM answers in documentation (RAG)?",
        topic=Topic.ML,
        difficulty=2,
    ),
    Question(
        id="q7",
        text="If transcripts get noisy, how do you keep summaries robust?",
        topic=Topic.SYSTEMS,
        difficulty=3,
    ),
    Question(
        id="q8",
        text=(
            "Tradeoffs: cost vs latency vs quality - give a concrete example."
        ),
        topic=Topic.BEHAVIORAL,
        difficulty=3,
    ),
]


@dataclass(frozen=True, slots=True)
class QuestionDecision:
    """Outcome of the structured-mode depth check."""

    question: Question
    advance: bool


def is_short_answer(answer: Optional[str]) -> bool:
    """Heuristic depth check: character and word thresholds, not NLP."""

    text = (answer or "").strip()
    if len(text) < SHORT_ANSWER_CHARS:
        return True
    return len(text.split()) < SHORT_ANSWER_WORDS


def ai_followup_question(text: str, parent: Optional[Question]) -> Question:
    """Wrap an AI-generated follow-up text in a :class:`Question`."""

    if parent is None:
        return Question(id=f"q{AI_FOLLOWUP_SUFFIX}", text=text)
    return Question(
        id=f"{parent.id}{AI_FOLLOWUP_SUFFIX}",
        text=text,
        topic=parent.topic,
        difficulty=parent.difficulty,
    )


class QuestionBank:
    """Ordered, read-only list of scripted questions."""

    def __init__(self, questions: Sequence[Question] | None = None) -> None:
        selected = list(questions) if questions else list(DEFAULT_QUESTIONS)
        self._questions: tuple[Question, ...] = tuple(selected)

    @classmethod
    def from_campaign(cls, campaign: CampaignConfig) -> "QuestionBank":
        """Build a bank from a campaign's question list."""

        questions: List[Question] = []
        for index, entry in enumerate(campaign.questions, start=1):
            text = str(entry.get("text", "")).strip()
            if not text:
                continue
            raw_id = str(entry.get("id") or index).strip()
            question_id = raw_id if raw_id.startswith("q") else f"q{raw_id}"
            topic = Topic.from_string(
                str(entry.get("topic") or entry.get("category") or ""),
                default=Topic.BEHAVIORAL,
            )
            try:
                difficulty = int(entry.get("difficulty", 2))
            except (TypeError, ValueError):
                difficulty = 2
            questions.append(
                Question(
                    id=question_id,
                    text=text,
                    topic=topic,
                    difficulty=min(max(difficulty, 1), 3),
                )
            )
        return cls(questions)

    def __len__(self) -> int:
        return len(self._questions)

    def __iter__(self) -> Iterator[Question]:
        return iter(self._questions)

    @property
    def questions(self) -> tuple[Question, ...]:
        return self._questions

    def initial(self) -> Question:
        return self._questions[0]

    def at(self, index: int) -> Question:
        """Return the question at ``index``; out-of-range reads saturate."""

        clamped = min(max(index, 0), len(self._questions) - 1)
        return self._questions[clamped]

    def is_last(self, index: int) -> bool:
        return index >= len(self._questions) - 1

    def followup_or_next(
        self,
        last_answer: Optional[str],
        current: Question,
        index: int,
    ) -> QuestionDecision:
        """Probe a short answer once, otherwise move to the next question."""

        if is_short_answer(last_answer) and not current.is_depth_probe:
            probe = replace(
                current,
                id=f"{current.id}{FOLLOWUP_SUFFIX}",
                text=DEPTH_PROBE_TEXT,
            )
            return QuestionDecision(question=probe, advance=False)
        return QuestionDecision(question=self.at(index + 1), advance=True)
