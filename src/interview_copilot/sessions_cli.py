"""Command-line utilities for browsing stored interview sessions."""

from __future__ import annotations

import argparse
from typing import Any, Callable, Dict, List, Optional

from .config import AppSettings
from .session_store import SessionStore

CommandHandler = Callable[[SessionStore, argparse.Namespace], None]


def run_sessions_cli(
    settings: AppSettings,
    argv: Optional[List[str]] = None,
    *,
    store: Optional[SessionStore] = None,
) -> None:
    """Entry point for session-related CLI commands."""

    session_store = store or SessionStore(settings.session_log, settings.redis_url)
    parser = argparse.ArgumentParser(
        prog="interview-copilot sessions",
        description="Inspect persisted interview sessions.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    list_parser = subparsers.add_parser("list", help="Show recent sessions")
    list_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=10,
        help="Maximum number of sessions to display (default: 10)",
    )
    list_parser.set_defaults(func=_handle_list)

    show_parser = subparsers.add_parser(
        "show",
        help="Display the timeline of a session",
    )
    show_parser.add_argument("id", help="Session identifier")
    show_parser.set_defaults(func=_handle_show)

    args = parser.parse_args(argv)
    handler: CommandHandler = args.func
    handler(session_store, args)


def _handle_list(store: SessionStore, args: argparse.Namespace) -> None:
    session_ids = store.list_sessions(limit=args.limit)
    if not session_ids:
        print("No sessions found.")
        return
    print(f"Showing {len(session_ids)} sessions:")
    for session_id in session_ids:
        print(f" - {session_id}")


def _handle_show(store: SessionStore, args: argparse.Namespace) -> None:
    record = store.load_session(args.id)
    if not record:
        print(f"Session '{args.id}' not found.")
        return
    meta: Dict[str, Any] = record.get("meta") or {}
    print(f"Session ID: {args.id}")
    if meta:
        print(f"Campaign: {meta.get('campaign_id', '-')}")
        print(f"Mode: {meta.get('mode', '-')} / {meta.get('llm_mode', '-')}")
        print(f"Created: {meta.get('created_at', '-')}")

    print("\nQuestions:")
    for question in record.get("questions", []):
        print(
            f" {question.get('index', '?')}. [{question.get('source', '?')}] "
            f"{question.get('text', '')}"
        )
    print("\nTranscript:")
    for segment in record.get("transcript", []):
        print(f" {segment.get('speaker', '?')}: {segment.get('text', '')}")
    runs = record.get("llm_runs", [])
    if runs:
        total = sum(int(run.get("used_tokens") or 0) for run in runs)
        print(f"\nModel runs: {len(runs)} ({total} tokens)")
    audit = record.get("audit", [])
    if audit:
        print("\nAudit:")
        for entry in audit:
            print(f" - {entry.get('action')}: {entry.get('details')}")
