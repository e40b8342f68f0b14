"""Terminal interview loop: typed answers stand in for speech."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .config import AppSettings, CampaignConfig, InterviewMode, LLMMode
from .insight_engine import InsightEngine
from .reports import ReportComposer, ReportData
from .runner import FinalTranscript, NextRequested, Silence, Stop, create_runner
from .session_store import SessionStore
from .speech import ConsoleSpeech

logger = logging.getLogger(__name__)

TERMINATION_TOKENS = {"/done", "/quit", "/exit"}
NEXT_TOKENS = {"/next", "/skip"}


async def run_interview(
    settings: AppSettings,
    *,
    mode: Optional[InterviewMode] = None,
    llm_mode: Optional[LLMMode] = None,
    campaign: Optional[CampaignConfig] = None,
    engine: Optional[InsightEngine] = None,
    store: Optional[SessionStore] = None,
    read_line: Callable[[str], str] = input,
    write: Callable[[str], None] = print,
) -> Optional[str]:
    """Conduct an interview in the terminal and return the session id."""

    insight_engine = engine or InsightEngine.from_settings(settings)
    session_store = store or SessionStore(settings.session_log, settings.redis_url)
    runner = create_runner(
        settings,
        insight_engine,
        store=session_store,
        campaign=campaign,
        mode=mode,
        llm_mode=llm_mode,
        speech=ConsoleSpeech(
            voice=campaign.voice if campaign else None,
            output=write,
        ),
    )
    runner.start()
    structured = runner.controller.snapshot().mode is InterviewMode.STRUCTURED

    while not runner.controller.snapshot().finished:
        try:
            answer = read_line("You: ")  # noqa: PLW1514 - intentional CLI input
        except EOFError:
            break
        command = answer.strip().lower()
        if command in TERMINATION_TOKENS:
            break
        if command in NEXT_TOKENS:
            await runner.handle(NextRequested())
            continue
        if not command:
            await runner.handle(Silence())
            continue
        await runner.handle(FinalTranscript(text=answer))
        if structured:
            # A typed line is a complete answer, so move on right away.
            await runner.handle(
                NextRequested(generation=runner.controller.generation)
            )

    await runner.handle(Stop())
    outcome = await runner.summarize()
    summary = outcome.summary
    write("")
    write("Interview summary:")
    write(summary.overview)
    for strength in summary.strengths:
        write(f" + {strength}")
    for risk in summary.risks:
        write(f" - {risk}")

    snapshot = runner.controller.snapshot()
    composer = ReportComposer(settings.output_dir)
    artifacts = composer.save(
        ReportData(
            session_id=runner.session_id,
            campaign_id=runner.campaign.campaign_id,
            summary=summary,
            candidate_turns=snapshot.final_turns,
            tag_tally=snapshot.tag_tally,
            asked_questions=runner.asked_questions,
            tokens_used=snapshot.tokens_used,
            llm_mode=snapshot.llm_mode.value,
        )
    )
    write("")
    write("Report saved to:")
    write(f" - {artifacts.markdown_path}")
    if artifacts.pdf_path is not None:
        write(f" - {artifacts.pdf_path}")
    if runner.session_id:
        write(f"Session id: {runner.session_id}")
    return runner.session_id
