"""Command line entry-point for the interview copilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .api import run_api_server
from .config import AppSettings, CampaignConfig, InterviewMode, LLMMode
from .console import run_interview
from .observability import initialize_tracing
from .sessions_cli import run_sessions_cli


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="interview-copilot",
        description="Run a structured or conversational AI interview",
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in InterviewMode],
        help="Interview mode (default: COPILOT_INTERVIEW_MODE or structured)",
    )
    parser.add_argument(
        "--llm-mode",
        choices=[mode.value for mode in LLMMode],
        help="Insight source: cloud model or local rules",
    )
    parser.add_argument(
        "--campaign",
        type=Path,
        help="Path to a campaign JSON file (questions, facts, language).",
    )
    parser.add_argument(
        "--soft-cap",
        type=int,
        help="Token soft cap for this run. Overrides COPILOT_SOFT_TOKEN_CAP.",
    )
    parser.add_argument(
        "--tracing",
        action="store_true",
        help="Enable OpenTelemetry tracing for model calls.",
    )
    return parser.parse_args(argv)


def _parse_serve_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="interview-copilot serve",
        description="Expose interview sessions over HTTP.",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the API server (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8081,
        help="Port for the API server (default: 8081).",
    )
    parser.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origin",
        help="Optional CORS origin(s) to allow. Defaults to '*'.",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        help="Logging level for uvicorn (default: info).",
    )
    parser.add_argument(
        "--tracing",
        action="store_true",
        help="Enable OpenTelemetry tracing for model calls.",
    )
    return parser.parse_args(argv)


def _load_settings() -> AppSettings:
    try:
        return AppSettings.load()
    except RuntimeError as exc:
        logging.error("Failed to load AppSettings: %s", exc)
        raise SystemExit(1) from exc


def run_cli(argv: Optional[list[str]] = None) -> None:
    """Entry-point invoked from ``python -m interview_copilot``."""

    logging.basicConfig(level=logging.INFO)
    arg_list = list(argv) if argv is not None else sys.argv[1:]
    if arg_list:
        command = arg_list[0]
        if command == "sessions":
            settings = _load_settings()
            run_sessions_cli(settings, arg_list[1:])
            return
        if command == "serve":
            serve_args = _parse_serve_args(arg_list[1:])
            settings = _load_settings()
            if serve_args.tracing:
                initialize_tracing()
            run_api_server(
                settings,
                host=serve_args.host,
                port=serve_args.port,
                allow_origins=serve_args.allow_origin,
                log_level=serve_args.log_level,
            )
            return

    args = _parse_args(arg_list)
    settings = _load_settings()
    if args.soft_cap is not None:
        if args.soft_cap < 0:
            raise SystemExit("--soft-cap must be >= 0")
        settings = replace(settings, soft_token_cap=args.soft_cap)
    if args.tracing:
        initialize_tracing()

    campaign = None
    if args.campaign is not None:
        try:
            campaign = CampaignConfig.load(args.campaign)
        except RuntimeError as exc:
            raise SystemExit(str(exc)) from exc

    mode = InterviewMode.from_string(args.mode) if args.mode else None
    llm_mode = LLMMode.from_string(args.llm_mode) if args.llm_mode else None
    asyncio.run(
        run_interview(settings, mode=mode, llm_mode=llm_mode, campaign=campaign)
    )


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    run_cli()
