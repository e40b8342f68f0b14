"""FastAPI surface that drives interview sessions over HTTP."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import AppSettings, CampaignConfig, InterviewMode, LLMMode
from .insight_engine import InsightEngine
from .reports import ReportComposer, ReportData
from .runner import FinalTranscript, InterviewRunner, NextRequested, create_runner
from .session_store import SessionStore
from .speech import Speak, SpeechCommand

logger = logging.getLogger(__name__)


class CreateSessionRequest(BaseModel):
    mode: Optional[str] = None
    llm_mode: Optional[str] = None
    campaign: Optional[Dict[str, Any]] = None
    campaign_path: Optional[str] = None


class UtteranceRequest(BaseModel):
    text: str
    ts: Optional[float] = None


class NextRequest(BaseModel):
    generation: Optional[int] = None


class FollowupRequest(BaseModel):
    text: str


class SummaryRequest(BaseModel):
    export: bool = False


def _spoken(commands: Sequence[SpeechCommand]) -> List[str]:
    return [command.text for command in commands if isinstance(command, Speak)]


def create_app(
    settings: AppSettings,
    *,
    engine: Optional[InsightEngine] = None,
    store: Optional[SessionStore] = None,
    allow_origins: Sequence[str] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """Create the FastAPI app holding an in-memory registry of interviews."""

    app = FastAPI(title="AI Interview Copilot")

    origins = list(allow_origins) if allow_origins else ["*"]
    allow_credentials = origins != ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    insight_engine = engine or InsightEngine.from_settings(settings)
    session_store = store or SessionStore(settings.session_log, settings.redis_url)
    composer = ReportComposer(settings.output_dir)
    runners: Dict[str, InterviewRunner] = {}
    app.state.runners = runners

    def _get_runner(session_id: str) -> InterviewRunner:
        runner = runners.get(session_id)
        if runner is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return runner

    def _load_campaign(payload: CreateSessionRequest) -> Optional[CampaignConfig]:
        try:
            if payload.campaign is not None:
                return CampaignConfig.from_dict(payload.campaign)
            if payload.campaign_path:
                return CampaignConfig.load(Path(payload.campaign_path))
        except (RuntimeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return None

    def _state(runner: InterviewRunner) -> Dict[str, Any]:
        return runner.controller.snapshot().to_dict()

    @app.post("/sessions")
    async def create_session(payload: CreateSessionRequest) -> Dict[str, Any]:
        try:
            mode = (
                InterviewMode.from_string(payload.mode) if payload.mode else None
            )
            llm_mode = (
                LLMMode.from_string(payload.llm_mode) if payload.llm_mode else None
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        campaign = _load_campaign(payload)
        runner = create_runner(
            settings,
            insight_engine,
            store=session_store,
            campaign=campaign,
            mode=mode,
            llm_mode=llm_mode,
            clock=clock,
        )
        commands = runner.start()
        session_id = runner.session_id or f"sess-{uuid4().hex[:12]}"
        runners[session_id] = runner
        logger.info("Registered session %s", session_id)
        return {
            "session_id": session_id,
            "spoken": _spoken(commands),
            "state": _state(runner),
        }

    @app.post("/sessions/{session_id}/utterances")
    async def post_utterance(session_id: str, payload: UtteranceRequest) -> Dict[str, Any]:
        runner = _get_runner(session_id)
        commands = await runner.handle(FinalTranscript(text=payload.text, ts=payload.ts))
        insight = runner.controller.snapshot().last_insight
        return {
            "spoken": _spoken(commands),
            "insight": insight.model_dump(exclude_none=True) if insight else None,
            "state": _state(runner),
        }

    @app.post("/sessions/{session_id}/next")
    async def post_next(
        session_id: str,
        payload: Optional[NextRequest] = None,
    ) -> Dict[str, Any]:
        runner = _get_runner(session_id)
        generation = payload.generation if payload else None
        commands = await runner.handle(NextRequested(generation=generation))
        return {"spoken": _spoken(commands), "state": _state(runner)}

    @app.post("/sessions/{session_id}/followups")
    async def post_followup(session_id: str, payload: FollowupRequest) -> Dict[str, Any]:
        runner = _get_runner(session_id)
        queued = runner.controller.enqueue_followup(payload.text)
        if not queued:
            raise HTTPException(status_code=400, detail="Follow-up text is empty.")
        return {"queued": True, "state": _state(runner)}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        return _state(_get_runner(session_id))

    @app.post("/sessions/{session_id}/summary")
    async def post_summary(
        session_id: str,
        payload: Optional[SummaryRequest] = None,
    ) -> Dict[str, Any]:
        runner = _get_runner(session_id)
        outcome = await runner.summarize()
        response: Dict[str, Any] = {
            "summary": outcome.summary.model_dump(exclude_none=True),
            "used_tokens": outcome.used_tokens,
            "latency_ms": outcome.latency_ms,
        }
        if payload is not None and payload.export:
            snapshot = runner.controller.snapshot()
            try:
                artifacts = composer.save(
                    ReportData(
                        session_id=session_id,
                        campaign_id=runner.campaign.campaign_id,
                        summary=outcome.summary,
                        candidate_turns=snapshot.final_turns,
                        tag_tally=snapshot.tag_tally,
                        asked_questions=runner.asked_questions,
                        tokens_used=snapshot.tokens_used,
                        llm_mode=snapshot.llm_mode.value,
                    )
                )
            except OSError as exc:
                logger.exception("Report export failed for %s", session_id)
                raise HTTPException(
                    status_code=500,
                    detail=f"Report export failed: {exc}",
                ) from exc
            response["report"] = {
                "markdown_path": str(artifacts.markdown_path),
                "pdf_path": str(artifacts.pdf_path) if artifacts.pdf_path else None,
            }
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def run_api_server(
    settings: AppSettings,
    *,
    host: str = "127.0.0.1",
    port: int = 8081,
    allow_origins: Sequence[str] | None = None,
    log_level: str = "info",
) -> None:
    """Start the HTTP API with uvicorn."""

    app = create_app(settings, allow_origins=allow_origins)
    uvicorn.run(app, host=host, port=port, log_level=log_level)
