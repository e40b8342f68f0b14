"""Session state machine that decides which question comes next."""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .config import AppSettings, InterviewMode, LLMMode
from .question_bank import Question, QuestionBank, ai_followup_question
from .schemas import Insight

logger = logging.getLogger(__name__)

ROLLING_SUMMARY_TURNS = 3
DEFAULT_ADVANCE_GUARD_SECONDS = 0.3
DEFAULT_CONVERSATIONAL_CAP = 8


class SessionNotStartedError(RuntimeError):
    """Raised when the session is driven before ``start()``."""


class SessionPhase(str, Enum):
    IDLE = "idle"
    STRUCTURED_ACTIVE = "structured_active"
    CONVERSATIONAL_ACTIVE = "conversational_active"
    FINISHED = "finished"


class AdvanceOutcome(str, Enum):
    """What a call to :meth:`TurnController.advance` did."""

    ADVANCED = "advanced"
    FOLLOWUP = "followup"
    STALLED = "stalled"
    FINISHED = "finished"
    SUPPRESSED = "suppressed"
    NOOP = "noop"
    PENDING = "pending"

    @property
    def moved(self) -> bool:
        return self in {
            AdvanceOutcome.ADVANCED,
            AdvanceOutcome.FOLLOWUP,
            AdvanceOutcome.FINISHED,
        }


@dataclass(frozen=True, slots=True)
class Turn:
    text: str
    final: bool
    ts: float

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "final": self.final, "ts": self.ts}


@dataclass(frozen=True, slots=True)
class AdvanceResult:
    outcome: AdvanceOutcome
    question: Optional[Question]
    generation: int


def _empty_turns() -> List[Turn]:
    return []


def _empty_ids() -> List[str]:
    return []


def _empty_queue() -> Deque[str]:
    return deque()


def _empty_tally() -> Counter[str]:
    return Counter()


@dataclass(slots=True)
class SessionState:
    """Mutable session aggregate owned by a single :class:`TurnController`."""

    mode: InterviewMode
    llm_mode: LLMMode
    soft_cap: int
    current_question: Optional[Question] = None
    question_index: int = 0
    asked_ids: List[str] = field(default_factory=_empty_ids)
    transcript: List[Turn] = field(default_factory=_empty_turns)
    tokens_used: int = 0
    followup_queue: Deque[str] = field(default_factory=_empty_queue)
    finished: bool = False
    started: bool = False
    partial: str = ""
    last_answer: str = ""
    rolling_summary: str = ""
    last_insight: Optional[Insight] = None
    last_insight_followup_consumed: bool = False
    last_latency_ms: Optional[float] = None
    tag_tally: Counter[str] = field(default_factory=_empty_tally)
    generating: bool = False


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only copy of the session state handed to readers."""

    phase: SessionPhase
    mode: InterviewMode
    llm_mode: LLMMode
    current_question: Optional[Question]
    question_index: int
    asked_ids: Tuple[str, ...]
    transcript: Tuple[Turn, ...]
    tokens_used: int
    soft_cap: int
    token_budget_left: int
    followup_queue: Tuple[str, ...]
    finished: bool
    started: bool
    partial: str
    last_answer: str
    rolling_summary: str
    last_insight: Optional[Insight]
    last_latency_ms: Optional[float]
    tag_tally: Tuple[Tuple[str, int], ...]
    generating: bool
    generation: int

    @property
    def final_turns(self) -> Tuple[str, ...]:
        return tuple(turn.text for turn in self.transcript if turn.final)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "mode": self.mode.value,
            "llm_mode": self.llm_mode.value,
            "current_question": (
                self.current_question.to_dict() if self.current_question else None
            ),
            "question_index": self.question_index,
            "asked_ids": list(self.asked_ids),
            "transcript": [turn.to_dict() for turn in self.transcript],
            "tokens_used": self.tokens_used,
            "soft_cap": self.soft_cap,
            "token_budget_left": self.token_budget_left,
            "followup_queue": list(self.followup_queue),
            "finished": self.finished,
            "started": self.started,
            "partial": self.partial,
            "rolling_summary": self.rolling_summary,
            "last_insight": (
                self.last_insight.model_dump(exclude_none=True)
                if self.last_insight
                else None
            ),
            "last_latency_ms": self.last_latency_ms,
            "tag_tally": dict(self.tag_tally),
            "generating": self.generating,
            "generation": self.generation,
        }


class TurnController:
    """Single writer of a :class:`SessionState`.

    All mutation goes through the methods below; everything else reads a
    :meth:`snapshot`. ``advance`` is guarded against duplicate delivery in two
    ways: callers may pass the ``generation`` they observed so that a late
    duplicate is recognised as stale, and untokened calls arriving within
    ``advance_guard_seconds`` of the previous transition are suppressed.
    """

    def __init__(
        self,
        bank: Optional[QuestionBank] = None,
        *,
        mode: InterviewMode = InterviewMode.STRUCTURED,
        llm_mode: LLMMode = LLMMode.RULES,
        soft_cap: int = 12000,
        advance_guard_seconds: float = DEFAULT_ADVANCE_GUARD_SECONDS,
        conversational_cap: int = DEFAULT_CONVERSATIONAL_CAP,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if soft_cap < 0:
            raise ValueError("soft_cap must be >= 0")
        self._bank = bank or QuestionBank()
        self._default_llm_mode = llm_mode
        self._advance_guard_seconds = advance_guard_seconds
        self._conversational_cap = conversational_cap
        self._clock = clock
        self._state = SessionState(mode=mode, llm_mode=llm_mode, soft_cap=soft_cap)
        self._generation = 0
        self._last_transition_at: Optional[float] = None
        if soft_cap == 0:
            self._state.llm_mode = LLMMode.RULES

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        bank: Optional[QuestionBank] = None,
        *,
        mode: Optional[InterviewMode] = None,
        llm_mode: Optional[LLMMode] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "TurnController":
        return cls(
            bank,
            mode=mode or settings.default_interview_mode,
            llm_mode=llm_mode or settings.default_llm_mode,
            soft_cap=settings.soft_token_cap,
            advance_guard_seconds=settings.advance_guard_seconds,
            conversational_cap=settings.conversational_cap,
            clock=clock,
        )

    @property
    def bank(self) -> QuestionBank:
        return self._bank

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def token_budget_left(self) -> int:
        return max(self._state.soft_cap - self._state.tokens_used, 0)

    @property
    def phase(self) -> SessionPhase:
        state = self._state
        if state.finished:
            return SessionPhase.FINISHED
        if not state.started:
            return SessionPhase.IDLE
        if state.mode is InterviewMode.CONVERSATIONAL:
            return SessionPhase.CONVERSATIONAL_ACTIVE
        return SessionPhase.STRUCTURED_ACTIVE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, initial_question: Optional[Question] = None) -> Question:
        """(Re)initialize session-local fields. Token usage is preserved."""

        state = self._state
        question = initial_question or self._bank.initial()
        state.transcript = []
        state.partial = ""
        state.last_answer = ""
        state.rolling_summary = ""
        state.last_insight = None
        state.last_insight_followup_consumed = False
        state.last_latency_ms = None
        state.tag_tally = Counter()
        state.followup_queue = deque()
        state.generating = False
        state.question_index = 0
        state.asked_ids = []
        state.finished = False
        state.current_question = question
        state.started = True
        self._generation += 1
        self._last_transition_at = None
        logger.info(
            "Session started in %s mode with question %s",
            state.mode.value,
            question.id,
        )
        return question

    def stop(self) -> None:
        self._state.started = False
        self._state.partial = ""

    def finish(self) -> None:
        state = self._state
        if state.finished:
            return
        state.finished = True
        self._remember_asked()
        self._generation += 1

    def reset_budget(self, llm_mode: Optional[LLMMode] = None) -> None:
        """Open a new budget window."""

        self._state.tokens_used = 0
        self._state.llm_mode = llm_mode or self._default_llm_mode
        if self._state.soft_cap == 0:
            self._state.llm_mode = LLMMode.RULES

    def set_mode(self, mode: InterviewMode) -> None:
        self._state.mode = mode

    def set_llm_mode(self, mode: LLMMode) -> LLMMode:
        """Switch the LLM mode; returns the mode actually in effect."""

        state = self._state
        if mode is LLMMode.CLOUD and state.tokens_used >= state.soft_cap:
            logger.info(
                "Refusing cloud mode: %s of %s tokens used",
                state.tokens_used,
                state.soft_cap,
            )
            return state.llm_mode
        state.llm_mode = mode
        return mode

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------
    def push_partial(self, text: str) -> None:
        self._state.partial = text

    def push_final(self, text: str, ts: Optional[float] = None) -> Optional[Turn]:
        """Append a finalized utterance. Blank text is ignored.

        Deduplicating repeated deliveries of the same utterance is up to the
        caller.
        """

        cleaned = text.strip()
        if not cleaned:
            return None
        state = self._state
        turn = Turn(
            text=cleaned,
            final=True,
            ts=ts if ts is not None else time.time() * 1000.0,
        )
        state.transcript.append(turn)
        state.last_answer = cleaned
        recent = [item.text for item in state.transcript if item.final]
        state.rolling_summary = " ".join(recent[-ROLLING_SUMMARY_TURNS:])
        state.partial = ""
        return turn

    def record_insight(self, insight: Insight, latency_ms: Optional[float] = None) -> None:
        state = self._state
        state.last_insight = insight
        state.last_insight_followup_consumed = False
        state.last_latency_ms = latency_ms
        state.tag_tally.update(insight.tags)

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------
    def add_tokens(self, amount: int) -> int:
        """Charge ``amount`` tokens. Crossing the soft cap locks rules mode."""

        if amount < 0:
            raise ValueError("Token delta must be non-negative.")
        state = self._state
        state.tokens_used += amount
        if state.tokens_used >= state.soft_cap and state.llm_mode is not LLMMode.RULES:
            logger.warning(
                "Soft token cap reached (%s/%s); switching to rules mode.",
                state.tokens_used,
                state.soft_cap,
            )
            state.llm_mode = LLMMode.RULES
        return state.tokens_used

    # ------------------------------------------------------------------
    # Follow-ups and generation
    # ------------------------------------------------------------------
    def enqueue_followup(self, text: str) -> bool:
        cleaned = text.strip()
        if not cleaned:
            return False
        self._state.followup_queue.append(cleaned)
        return True

    def dequeue_followup(self) -> Optional[str]:
        queue = self._state.followup_queue
        if not queue:
            return None
        return queue.popleft()

    def begin_generation(self) -> None:
        self._state.generating = True

    def end_generation(self) -> None:
        self._state.generating = False

    # ------------------------------------------------------------------
    # Advance
    # ------------------------------------------------------------------
    def advance(self, *, generation: Optional[int] = None) -> AdvanceResult:
        """Move to the next question according to the interview mode."""

        state = self._state
        if not state.started and not state.finished:
            raise SessionNotStartedError("advance() called before start().")
        if state.finished:
            return self._result(AdvanceOutcome.NOOP)
        if generation is not None and generation != self._generation:
            logger.debug(
                "Suppressing stale advance (generation %s, current %s)",
                generation,
                self._generation,
            )
            return self._result(AdvanceOutcome.SUPPRESSED)
        now = self._clock()
        # The time window only applies to requests without a generation token.
        if (
            generation is None
            and self._last_transition_at is not None
            and now - self._last_transition_at < self._advance_guard_seconds
        ):
            logger.debug("Suppressing duplicate advance within guard window")
            return self._result(AdvanceOutcome.SUPPRESSED)

        if state.mode is InterviewMode.CONVERSATIONAL:
            outcome = self._advance_conversational()
        else:
            outcome = self._advance_structured()

        if outcome.moved:
            state.last_answer = ""
            self._generation += 1
            self._last_transition_at = now
        return self._result(outcome)

    def _advance_conversational(self) -> AdvanceOutcome:
        state = self._state
        if state.generating:
            return AdvanceOutcome.PENDING
        if state.question_index + 1 >= self._conversational_cap:
            self._remember_asked()
            state.finished = True
            return AdvanceOutcome.FINISHED

        text = self.dequeue_followup()
        if text is not None:
            if text == self._pending_insight_followup():
                state.last_insight_followup_consumed = True
        else:
            text = self._pending_insight_followup()
            if text is not None:
                state.last_insight_followup_consumed = True
        if text is None:
            logger.info(
                "No follow-up available; staying on %s",
                state.current_question.id if state.current_question else "-",
            )
            return AdvanceOutcome.STALLED

        self._remember_asked()
        state.current_question = ai_followup_question(text, state.current_question)
        state.question_index += 1
        return AdvanceOutcome.ADVANCED

    def _advance_structured(self) -> AdvanceOutcome:
        state = self._state
        current = state.current_question or self._bank.at(state.question_index)
        decision = self._bank.followup_or_next(
            state.last_answer, current, state.question_index
        )
        self._remember_asked()
        if not decision.advance:
            state.current_question = decision.question
            return AdvanceOutcome.FOLLOWUP
        if self._bank.is_last(state.question_index):
            state.finished = True
            return AdvanceOutcome.FINISHED
        state.current_question = decision.question
        state.question_index += 1
        return AdvanceOutcome.ADVANCED

    def _pending_insight_followup(self) -> Optional[str]:
        state = self._state
        if state.last_insight is None or state.last_insight_followup_consumed:
            return None
        return state.last_insight.followup

    def _remember_asked(self) -> None:
        state = self._state
        question = state.current_question
        if question is not None and question.id not in state.asked_ids:
            state.asked_ids.append(question.id)

    def _result(self, outcome: AdvanceOutcome) -> AdvanceResult:
        return AdvanceResult(
            outcome=outcome,
            question=self._state.current_question,
            generation=self._generation,
        )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def snapshot(self) -> SessionSnapshot:
        state = self._state
        return SessionSnapshot(
            phase=self.phase,
            mode=state.mode,
            llm_mode=state.llm_mode,
            current_question=state.current_question,
            question_index=state.question_index,
            asked_ids=tuple(state.asked_ids),
            transcript=tuple(state.transcript),
            tokens_used=state.tokens_used,
            soft_cap=state.soft_cap,
            token_budget_left=self.token_budget_left,
            followup_queue=tuple(state.followup_queue),
            finished=state.finished,
            started=state.started,
            partial=state.partial,
            last_answer=state.last_answer,
            rolling_summary=state.rolling_summary,
            last_insight=state.last_insight,
            last_latency_ms=state.last_latency_ms,
            tag_tally=tuple(state.tag_tally.items()),
            generating=state.generating,
            generation=self._generation,
        )


__all__ = [
    "AdvanceOutcome",
    "AdvanceResult",
    "SessionNotStartedError",
    "SessionPhase",
    "SessionSnapshot",
    "SessionState",
    "Turn",
    "TurnController",
]
