"""Tracing helpers for the interview copilot runtime.

Model calls are traced by the agent framework once :func:`initialize_tracing`
has run. :func:`interview_span` wraps each insight or summary request in a
parent span carrying the turn id and the LLM mode, so those calls can be
found per interview turn.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from agent_framework.observability import setup_observability
from opentelemetry import trace

logger = logging.getLogger(__name__)

TRACER_NAME = "interview_copilot"
TURN_ID_ATTRIBUTE = "interview.turn_id"
LLM_MODE_ATTRIBUTE = "interview.llm_mode"
BUDGET_ATTRIBUTE = "interview.token_budget_left"

_initialized = False
_tracer = trace.get_tracer(TRACER_NAME)


def _should_capture_sensitive_data() -> bool:
    # Candidate answers are personal data; capture is opt-in.
    raw = os.getenv("COPILOT_TRACING_CAPTURE_SENSITIVE", "false").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def initialize_tracing(
    *,
    endpoint: Optional[str] = None,
    enable_sensitive_data: Optional[bool] = None,
) -> bool:
    """Configure OpenTelemetry tracing for the model calls."""

    global _initialized
    if _initialized:
        return False

    otlp_endpoint = (
        endpoint or os.getenv("COPILOT_OTLP_ENDPOINT", "http://localhost:4317")
    ).strip()
    if not otlp_endpoint:
        logger.info("Tracing skipped because no OTLP endpoint is configured.")
        return False

    try:
        setup_observability(
            otlp_endpoint=otlp_endpoint,
            enable_sensitive_data=enable_sensitive_data
            if enable_sensitive_data is not None
            else _should_capture_sensitive_data(),
        )
    except Exception as exc:  # noqa: BLE001 - tracing must not block interviews
        logger.warning("Tracing initialization failed: %s", exc)
        return False

    _initialized = True
    logger.info("Tracing initialized with OTLP endpoint %s", otlp_endpoint)
    return True


@contextmanager
def interview_span(
    name: str,
    *,
    turn_id: Optional[str],
    llm_mode: str,
    token_budget_left: int,
) -> Iterator[trace.Span]:
    """Open a span for one copilot request.

    Spans are no-ops until tracing has been initialized.
    """

    with _tracer.start_as_current_span(name) as span:
        if turn_id:
            span.set_attribute(TURN_ID_ATTRIBUTE, turn_id)
        span.set_attribute(LLM_MODE_ATTRIBUTE, llm_mode)
        span.set_attribute(BUDGET_ATTRIBUTE, token_budget_left)
        yield span
