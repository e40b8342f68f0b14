"""Event loop that wires speech events, the insight engine and the controller."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .config import AppSettings, CampaignConfig, InterviewMode, LLMMode
from .insight_engine import (
    FinalSummaryRequest,
    InsightEngine,
    InsightOutcome,
    InsightRequest,
    SummaryOutcome,
    select_facts,
)
from .prompts import get_language_pack
from .question_bank import AI_FOLLOWUP_SUFFIX, Question, QuestionBank
from .safety import risky_question
from .schemas import Insight
from .session_store import SessionStore
from .speech import (
    CancelSpeech,
    Speak,
    SpeechCommand,
    SpeechPort,
    StartListening,
    StopListening,
    apply_commands,
)
from .turn_controller import AdvanceOutcome, AdvanceResult, TurnController

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PartialTranscript:
    text: str


@dataclass(frozen=True, slots=True)
class FinalTranscript:
    text: str
    ts: Optional[float] = None


@dataclass(frozen=True, slots=True)
class Silence:
    pass


@dataclass(frozen=True, slots=True)
class NextRequested:
    generation: Optional[int] = None


@dataclass(frozen=True, slots=True)
class Stop:
    pass


InterviewEvent = Union[PartialTranscript, FinalTranscript, Silence, NextRequested, Stop]


def _question_source(question: Question) -> str:
    if question.id.endswith(AI_FOLLOWUP_SUFFIX):
        return "ai"
    if question.is_depth_probe:
        return "probe"
    return "scripted"


class InterviewRunner:
    """Consumes interview events in arrival order.

    Each handler returns the speech commands it issued so the flow can be
    checked without timers or audio. When a :class:`SpeechPort` is supplied
    the commands are also applied to it.
    """

    def __init__(
        self,
        controller: TurnController,
        engine: InsightEngine,
        *,
        store: Optional[SessionStore] = None,
        campaign: Optional[CampaignConfig] = None,
        speech: Optional[SpeechPort] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self._controller = controller
        self._engine = engine
        self._store = store
        self._campaign = campaign or CampaignConfig(campaign_id="default")
        self._speech = speech
        self._session_id = session_id
        self._queue: "asyncio.Queue[InterviewEvent]" = asyncio.Queue()
        self._last_final: Optional[str] = None
        self._final_count = 0
        self._asked: List[Question] = []
        self.language, self.phrases = get_language_pack(self._campaign.language)
        self.last_outcome: Optional[InsightOutcome] = None

    @property
    def controller(self) -> TurnController:
        return self._controller

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def campaign(self) -> CampaignConfig:
        return self._campaign

    @property
    def asked_questions(self) -> List[Question]:
        return list(self._asked)

    def _emit(self, commands: List[SpeechCommand]) -> List[SpeechCommand]:
        if self._speech is not None and commands:
            apply_commands(self._speech, commands)
        return commands

    def _say(self, text: str) -> List[SpeechCommand]:
        return [CancelSpeech(), Speak(text)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, initial_question: Optional[Question] = None) -> List[SpeechCommand]:
        """Begin (or restart) the interview and ask the first question."""

        snapshot = self._controller.snapshot()
        if self._store is not None and self._session_id is None:
            self._session_id = self._store.create_session(
                campaign_id=self._campaign.campaign_id,
                mode=snapshot.mode.value,
                llm_mode=snapshot.llm_mode.value,
            )
        question = self._controller.start(initial_question)
        self._last_final = None
        self._final_count = 0
        self._asked = []
        self._record_question(question, 0)
        self._timeline("started", {"question_id": question.id})
        return self._emit(self._say(question.text) + [StartListening()])

    async def submit(self, event: InterviewEvent) -> None:
        await self._queue.put(event)

    async def run(self) -> None:
        """Drain the event queue until a :class:`Stop` arrives."""

        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            finally:
                self._queue.task_done()
            if isinstance(event, Stop):
                return

    async def handle(self, event: InterviewEvent) -> List[SpeechCommand]:
        if isinstance(event, PartialTranscript):
            self._controller.push_partial(event.text)
            return []
        if isinstance(event, FinalTranscript):
            return self._emit(await self._on_final(event))
        if isinstance(event, Silence):
            return self._emit(self._advance(prompt_on_stall=True))
        if isinstance(event, NextRequested):
            return self._emit(
                self._advance(generation=event.generation, prompt_on_stall=True)
            )
        if isinstance(event, Stop):
            return self._emit(self._on_stop())
        raise TypeError(f"Unsupported interview event: {event!r}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _on_final(self, event: FinalTranscript) -> List[SpeechCommand]:
        cleaned = event.text.strip()
        if not cleaned or cleaned == self._last_final:
            return []
        snapshot = self._controller.snapshot()
        if snapshot.finished or not snapshot.started:
            logger.info("Ignoring utterance outside an active session")
            return []
        turn = self._controller.push_final(cleaned, event.ts)
        if turn is None:
            return []
        self._last_final = cleaned
        self._final_count += 1
        if self._store is not None and self._session_id:
            self._store.add_transcript_segment(
                self._session_id, speaker="candidate", text=turn.text, ts=turn.ts
            )

        snapshot = self._controller.snapshot()
        request = InsightRequest.build(
            mode=snapshot.llm_mode,
            turn_id=f"t{self._final_count}",
            rolling_summary=snapshot.rolling_summary,
            snippet=turn.text,
            facts=select_facts(self._campaign.facts, turn.text),
            token_budget_left=self._controller.token_budget_left,
        )
        self._controller.begin_generation()
        try:
            outcome = await self._engine.generate_insight(request)
            self._charge(outcome.used_tokens)
            insight = self._screen_insight(outcome.insight)
            self._controller.record_insight(insight, outcome.latency_ms)
            self.last_outcome = outcome
            self._record_llm_run("insight", insight.turn_id, outcome, insight)
            if snapshot.mode is InterviewMode.CONVERSATIONAL:
                await self._queue_followup(insight, turn.text)
        finally:
            self._controller.end_generation()

        if snapshot.mode is InterviewMode.CONVERSATIONAL:
            return self._advance()
        return []

    def _on_stop(self) -> List[SpeechCommand]:
        self._controller.stop()
        self._timeline("stopped", {})
        return [CancelSpeech(), StopListening()]

    async def _queue_followup(self, insight: Insight, answer: str) -> None:
        if insight.followup:
            self._controller.enqueue_followup(insight.followup)
            return
        snapshot = self._controller.snapshot()
        result = await self._engine.generate_followup_question(
            last_answer=answer,
            rolling_summary=snapshot.rolling_summary,
            mode=snapshot.llm_mode,
            token_budget_left=self._controller.token_budget_left,
        )
        self._charge(result.used_tokens)
        text = result.text
        if risky_question(text):
            self._audit("risky_followup_blocked", {"text": text})
            text = self.phrases.generic_followup
        self._controller.enqueue_followup(text)

    def _advance(
        self,
        *,
        generation: Optional[int] = None,
        prompt_on_stall: bool = False,
    ) -> List[SpeechCommand]:
        result = self._controller.advance(generation=generation)
        return self._commands_for(result, prompt_on_stall=prompt_on_stall)

    def _commands_for(
        self,
        result: AdvanceResult,
        *,
        prompt_on_stall: bool,
    ) -> List[SpeechCommand]:
        outcome = result.outcome
        if outcome in {AdvanceOutcome.ADVANCED, AdvanceOutcome.FOLLOWUP}:
            question = result.question
            if question is None:
                raise RuntimeError(f"{outcome.value} advance returned no question")
            index = self._controller.snapshot().question_index
            self._record_question(question, index)
            self._timeline(
                outcome.value, {"question_id": question.id, "index": index}
            )
            return self._say(question.text)
        if outcome is AdvanceOutcome.FINISHED:
            self._timeline("finished", {})
            return self._say(self.phrases.closing) + [StopListening()]
        if outcome is AdvanceOutcome.STALLED:
            self._timeline("stalled", {})
            if prompt_on_stall:
                return self._say(self.phrases.stalled)
        return []

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    async def summarize(self) -> SummaryOutcome:
        """Generate the end-of-interview summary and charge its tokens."""

        snapshot = self._controller.snapshot()
        request = FinalSummaryRequest(
            mode=snapshot.llm_mode,
            candidate_turns=snapshot.final_turns,
            tags=dict(snapshot.tag_tally),
            token_budget_left=snapshot.token_budget_left,
            session_id=self._session_id,
        )
        outcome = await self._engine.generate_final_summary(request)
        self._charge(outcome.used_tokens)
        if self._store is not None and self._session_id:
            self._store.add_llm_run(
                self._session_id,
                kind="summary",
                turn_id=None,
                latency_ms=outcome.latency_ms,
                used_tokens=outcome.used_tokens,
                output=outcome.summary.model_dump(exclude_none=True),
            )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _charge(self, tokens: int) -> None:
        before = self._controller.snapshot().llm_mode
        self._controller.add_tokens(tokens)
        after = self._controller.snapshot().llm_mode
        if before is LLMMode.CLOUD and after is LLMMode.RULES:
            self._audit(
                "llm_mode_locked",
                {"tokens_used": self._controller.snapshot().tokens_used},
            )

    def _screen_insight(self, insight: Insight) -> Insight:
        if not insight.followup or not risky_question(insight.followup):
            return insight
        self._audit("risky_followup_blocked", {"text": insight.followup})
        flags = list(insight.flags or []) + ["risky_topic"]
        payload = insight.model_dump()
        payload.update(followup=self.phrases.generic_followup, flags=flags)
        return Insight.model_validate(payload)

    def _record_question(self, question: Question, index: int) -> None:
        self._asked.append(question)
        if self._store is None or not self._session_id:
            return
        self._store.add_question(
            self._session_id,
            question_id=question.id,
            text=question.text,
            source=_question_source(question),
            index=index,
        )

    def _record_llm_run(
        self,
        kind: str,
        turn_id: Optional[str],
        outcome: InsightOutcome,
        insight: Insight,
    ) -> None:
        if self._store is None or not self._session_id:
            return
        self._store.add_llm_run(
            self._session_id,
            kind=kind,
            turn_id=turn_id,
            latency_ms=outcome.latency_ms,
            used_tokens=outcome.used_tokens,
            output=insight.model_dump(exclude_none=True),
        )

    def _timeline(self, event_type: str, payload: dict) -> None:
        if self._store is None or not self._session_id:
            return
        self._store.add_timeline_event(self._session_id, event_type, payload)

    def _audit(self, action: str, details: dict) -> None:
        logger.info("Audit %s: %s", action, details)
        if self._store is None or not self._session_id:
            return
        self._store.add_audit_event(self._session_id, action, details)


def create_runner(
    settings: AppSettings,
    engine: InsightEngine,
    *,
    store: Optional[SessionStore] = None,
    campaign: Optional[CampaignConfig] = None,
    mode: Optional[InterviewMode] = None,
    llm_mode: Optional[LLMMode] = None,
    speech: Optional[SpeechPort] = None,
    clock: Callable[[], float] = time.monotonic,
) -> InterviewRunner:
    """Assemble a controller and runner for one interview."""

    campaign = campaign or CampaignConfig(campaign_id="default")
    bank = QuestionBank.from_campaign(campaign)
    selected_llm_mode = llm_mode or settings.default_llm_mode
    if not engine.cloud_enabled:
        selected_llm_mode = LLMMode.RULES
    controller = TurnController.from_settings(
        settings,
        bank,
        mode=mode or campaign.mode or settings.default_interview_mode,
        llm_mode=selected_llm_mode,
        clock=clock,
    )
    return InterviewRunner(
        controller,
        engine,
        store=store,
        campaign=campaign,
        speech=speech,
    )


__all__ = [
    "FinalTranscript",
    "InterviewEvent",
    "InterviewRunner",
    "NextRequested",
    "PartialTranscript",
    "Silence",
    "Stop",
    "create_runner",
]
