from __future__ import annotations

from typing import List
from unittest.mock import MagicMock

from interview_copilot.config import CampaignConfig, InterviewMode, LLMMode
from interview_copilot.insight_engine import InsightEngine
from interview_copilot.prompts import LANGUAGE_PACKS
from interview_copilot.question_bank import QuestionBank
from interview_copilot.runner import (
    FinalTranscript,
    InterviewRunner,
    NextRequested,
    PartialTranscript,
    Silence,
    Stop,
    create_runner,
)
from interview_copilot.session_store import SessionStore
from interview_copilot.speech import CancelSpeech, ConsoleSpeech, Speak, StartListening, StopListening
from interview_copilot.turn_controller import TurnController

from conftest import GROUNDED_SUMMARY, LONG_ANSWER, FakeClock, FakeCompletionClient, completion


def _runner(
    mode: InterviewMode = InterviewMode.STRUCTURED,
    *,
    engine: InsightEngine | None = None,
    llm_mode: LLMMode = LLMMode.RULES,
    store: SessionStore | None = None,
    speech: ConsoleSpeech | None = None,
) -> InterviewRunner:
    controller = TurnController(
        QuestionBank(),
        mode=mode,
        llm_mode=llm_mode,
        advance_guard_seconds=0.0,
        clock=FakeClock(),
    )
    return InterviewRunner(
        controller,
        engine or InsightEngine(),
        store=store,
        speech=speech,
    )


def _spoken(commands) -> List[str]:
    return [command.text for command in commands if isinstance(command, Speak)]


def test_start_asks_the_first_question() -> None:
    runner = _runner()
    commands = runner.start()
    assert commands == [
        CancelSpeech(),
        Speak(QuestionBank().initial().text),
        StartListening(),
    ]


async def test_structured_answer_then_silence_advances() -> None:
    runner = _runner()
    runner.start()
    assert await runner.handle(FinalTranscript(LONG_ANSWER)) == []
    snapshot = runner.controller.snapshot()
    assert snapshot.last_insight is not None
    assert snapshot.last_insight.turn_id == "t1"

    commands = await runner.handle(Silence())
    assert _spoken(commands) == [QuestionBank().at(1).text]
    assert commands[0] == CancelSpeech()


async def test_partial_transcripts_only_update_state() -> None:
    runner = _runner()
    runner.start()
    assert await runner.handle(PartialTranscript("I was")) == []
    assert runner.controller.snapshot().partial == "I was"


async def test_duplicate_final_is_ignored() -> None:
    runner = _runner()
    runner.start()
    await runner.handle(FinalTranscript(LONG_ANSWER))
    await runner.handle(FinalTranscript(f"  {LONG_ANSWER} "))
    assert len(runner.controller.snapshot().transcript) == 1


async def test_conversational_answer_is_followed_up_automatically() -> None:
    runner = _runner(InterviewMode.CONVERSATIONAL)
    runner.start()
    commands = await runner.handle(FinalTranscript("yes"))
    spoken = _spoken(commands)
    assert len(spoken) == 1
    snapshot = runner.controller.snapshot()
    assert snapshot.question_index == 1
    assert snapshot.current_question is not None
    assert snapshot.current_question.text == spoken[0]
    assert not snapshot.generating


async def test_conversational_answer_without_insight_followup_generates_one() -> None:
    runner = _runner(InterviewMode.CONVERSATIONAL)
    runner.start()
    commands = await runner.handle(FinalTranscript(LONG_ANSWER))
    assert runner.controller.snapshot().last_insight.followup is None  # type: ignore[union-attr]
    assert len(_spoken(commands)) == 1
    assert runner.controller.snapshot().question_index == 1


async def test_conversational_silence_without_followup_prompts_candidate() -> None:
    runner = _runner(InterviewMode.CONVERSATIONAL)
    runner.start()
    commands = await runner.handle(Silence())
    assert _spoken(commands) == [LANGUAGE_PACKS["en"].stalled]
    assert runner.controller.snapshot().question_index == 0


async def test_risky_cloud_followup_is_replaced() -> None:
    risky = {
        "schema_version": 1,
        "turn_id": "t1",
        "summary": GROUNDED_SUMMARY,
        "tags": ["culture"],
        "followup": "Are you married or planning children?",
    }
    engine = InsightEngine(FakeCompletionClient(completion(risky, 20, 10)))
    runner = _runner(InterviewMode.CONVERSATIONAL, engine=engine, llm_mode=LLMMode.CLOUD)
    runner.start()
    commands = await runner.handle(FinalTranscript(LONG_ANSWER))
    generic = LANGUAGE_PACKS["en"].generic_followup
    assert _spoken(commands) == [generic]
    insight = runner.controller.snapshot().last_insight
    assert insight is not None
    assert insight.followup == generic
    assert "risky_topic" in (insight.flags or [])
    assert runner.controller.snapshot().tokens_used == 30


async def test_budget_exhaustion_switches_to_rules() -> None:
    payload = {
        "schema_version": 1,
        "turn_id": "t1",
        "summary": GROUNDED_SUMMARY,
        "tags": ["systems"],
    }
    client = FakeCompletionClient(completion(payload, 80, 40))
    controller = TurnController(
        QuestionBank(),
        llm_mode=LLMMode.CLOUD,
        soft_cap=100,
        advance_guard_seconds=0.0,
        clock=FakeClock(),
    )
    runner = InterviewRunner(controller, InsightEngine(client))
    runner.start()
    await runner.handle(FinalTranscript(LONG_ANSWER))
    assert controller.snapshot().llm_mode is LLMMode.RULES
    await runner.handle(Silence())
    await runner.handle(FinalTranscript(LONG_ANSWER + " Again."))
    assert len(client.requests) == 1


async def test_run_loop_drains_queue_until_stop() -> None:
    lines: List[str] = []
    speech = ConsoleSpeech(output=lines.append)
    runner = _runner(speech=speech)
    runner.start()
    speech.start_listening()
    await runner.submit(FinalTranscript(LONG_ANSWER))
    await runner.submit(NextRequested())
    await runner.submit(Stop())
    await runner.run()
    assert f"Interviewer: {QuestionBank().at(1).text}" in lines
    assert speech.listening is False
    assert runner.controller.snapshot().started is False


async def test_finishing_speaks_closing_line() -> None:
    runner = _runner()
    runner.start()
    commands = []
    for index in range(8):
        await runner.handle(FinalTranscript(f"{LONG_ANSWER} {index}"))
        commands = await runner.handle(Silence())
    assert _spoken(commands) == [LANGUAGE_PACKS["en"].closing]
    assert commands[-1] == StopListening()
    assert runner.controller.snapshot().finished
    assert await runner.handle(FinalTranscript("one more thing")) == []


async def test_store_receives_timeline() -> None:
    store = MagicMock(spec=SessionStore)
    store.create_session.return_value = "sess-1"
    runner = _runner(store=store)
    runner.start()
    await runner.handle(FinalTranscript(LONG_ANSWER))
    await runner.handle(Silence())
    await runner.summarize()

    assert runner.session_id == "sess-1"
    store.add_transcript_segment.assert_called_once()
    sources = [call.kwargs["source"] for call in store.add_question.call_args_list]
    assert sources == ["scripted", "scripted"]
    kinds = [call.kwargs["kind"] for call in store.add_llm_run.call_args_list]
    assert kinds == ["insight", "summary"]
    events = [call.args[1] for call in store.add_timeline_event.call_args_list]
    assert events == ["started", "advanced"]


async def test_summarize_uses_final_turns() -> None:
    runner = _runner()
    runner.start()
    await runner.handle(FinalTranscript("yes"))
    outcome = await runner.summarize()
    assert any("brevity" in risk.lower() for risk in outcome.summary.risks)


def test_create_runner_respects_campaign(settings) -> None:
    campaign = CampaignConfig.from_dict(
        {
            "campaign_id": "c-1",
            "language": "es-ES",
            "mode": "conversational",
            "questions": ["Hola, cuentame de ti."],
        }
    )
    runner = create_runner(settings, InsightEngine(), campaign=campaign, llm_mode=LLMMode.CLOUD)
    snapshot = runner.controller.snapshot()
    assert snapshot.mode is InterviewMode.CONVERSATIONAL
    # No cloud client configured, so cloud cannot be selected.
    assert snapshot.llm_mode is LLMMode.RULES
    assert runner.language == "es"
    assert runner.start()[1] == Speak("Hola, cuentame de ti.")
