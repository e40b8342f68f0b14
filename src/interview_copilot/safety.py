"""Guards applied to candidate text and generated questions."""

from __future__ import annotations

import re
from typing import List, Pattern, Tuple

REDACTED = "[REDACTED]"

# Topics an interviewer must not raise.
_BANNED_TOPICS: List[Pattern[str]] = [
    re.compile(r"\bage\b|\bhow old\b", re.IGNORECASE),
    re.compile(r"\breligio|\bfaith\b", re.IGNORECASE),
    re.compile(
        r"\bmarried|\bmarital|\bpregnan|\bchildren\b|\bfamily planning\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bnationality\b|\bcitizenship\b|\borigin\b", re.IGNORECASE),
    re.compile(r"\bdisab|\bmedical\b|\bhealth condition", re.IGNORECASE),
]

_PII_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN-like
    re.compile(r"\b\d{16}\b"),  # card number
    re.compile(r"\b\d{5}(?:-\d{4})?\b"),  # ZIP
    re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b"),  # email
]


def risky_question(question: str) -> bool:
    """Return ``True`` when a question touches a protected topic."""

    return any(pattern.search(question) for pattern in _BANNED_TOPICS)


def redact_pii(text: str) -> Tuple[str, bool]:
    """Mask personal identifiers; the flag reports whether anything changed."""

    redacted = text
    for pattern in _PII_PATTERNS:
        redacted = pattern.sub(REDACTED, redacted)
    return redacted, redacted != text
