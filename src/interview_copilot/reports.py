"""Interview reports: Markdown composition and PDF export."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from .question_bank import Question
from .schemas import SessionSummary

logger = logging.getLogger(__name__)

MAX_QUOTES = 3
QUOTE_CHARS = 220


class ReportExportError(RuntimeError):
    """Raised when a report PDF cannot be generated."""


@dataclass(slots=True)
class ReportData:
    """Everything a report needs, collected once the interview ends."""

    session_id: Optional[str]
    campaign_id: str
    summary: SessionSummary
    candidate_turns: Sequence[str]
    tag_tally: Sequence[Tuple[str, int]]
    asked_questions: Sequence[Question] = ()
    tokens_used: int = 0
    llm_mode: str = "rules"


@dataclass(slots=True)
class ReportArtifacts:
    markdown_path: Path
    pdf_path: Optional[Path] = None


@dataclass(slots=True)
class _RenderBlock:
    kind: str
    text: str = ""
    level: int = 0
    rows: Optional[list[list[str]]] = None


def _select_quotes(turns: Sequence[str], limit: int = MAX_QUOTES) -> List[str]:
    """Longest answers make the most useful quotes."""

    ranked = sorted(
        (turn.strip() for turn in turns if turn.strip()),
        key=len,
        reverse=True,
    )
    quotes: List[str] = []
    for text in ranked[:limit]:
        if len(text) > QUOTE_CHARS:
            text = text[: QUOTE_CHARS - 3].rstrip() + "..."
        quotes.append(text)
    return quotes


class ReportComposer:
    """Builds the interview report and renders it with fpdf2."""

    _BULLET_RE = re.compile(r"^(?P<indent>\s*)([-*])\s+(?P<text>.+)$")

    _UNICODE_TRANSLATION = str.maketrans(
        {
            "\u00a0": " ",  # non-breaking space
            "\u2010": "-",  # hyphen
            "\u2011": "-",  # non-breaking hyphen
            "\u2013": "-",  # en dash
            "\u2014": "-",  # em dash
            "\u2018": "'",  # left single quote
            "\u2019": "'",  # right single quote
            "\u201c": '"',  # left double quote
            "\u201d": '"',  # right double quote
            "\u2026": "...",  # ellipsis
            "\u2212": "-",  # minus sign
        }
    )

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = Path(output_dir)

    def compose_markdown(self, data: ReportData) -> str:
        summary = data.summary
        lines: List[str] = ["# Interview Report", ""]
        lines.append(f"- Campaign: {data.campaign_id}")
        if data.session_id:
            lines.append(f"- Session: {data.session_id}")
        lines.append(f"- Answers: {len([t for t in data.candidate_turns if t.strip()])}")
        lines.append(f"- Insight mode: {data.llm_mode} ({data.tokens_used} tokens)")
        lines.extend(["", "## Executive Summary", "", summary.overview, ""])

        lines.extend(["## Strengths", ""])
        lines.extend(f"- {item}" for item in summary.strengths or ["None noted."])
        lines.extend(["", "## Risks", ""])
        lines.extend(f"- {item}" for item in summary.risks or ["None noted."])
        lines.append("")

        if summary.topics:
            lines.extend(["## Topics", "", ", ".join(summary.topics), ""])

        if data.tag_tally:
            lines.extend(["## Tag Coverage", "", "| Tag | Count |", "| --- | --- |"])
            for tag, count in sorted(data.tag_tally, key=lambda item: -item[1]):
                lines.append(f"| {tag} | {count} |")
            lines.append("")

        if data.asked_questions:
            lines.extend(["## Questions Asked", ""])
            for number, question in enumerate(data.asked_questions, start=1):
                lines.append(f"{number}. {question.text}")
            lines.append("")

        quotes = _select_quotes(data.candidate_turns)
        if quotes:
            lines.extend(["## Selected Quotes", ""])
            lines.extend(f"- \"{quote}\"" for quote in quotes)
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def save(self, data: ReportData) -> ReportArtifacts:
        """Persist the report as Markdown and, when possible, PDF."""

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        stem = data.session_id or f"{data.campaign_id}_{timestamp}"
        self._output_dir.mkdir(parents=True, exist_ok=True)
        markdown = self.compose_markdown(data)
        markdown_path = self._output_dir / f"interview_report_{stem}.md"
        markdown_path.write_text(markdown, encoding="utf-8")

        pdf_path: Optional[Path] = None
        try:
            pdf_path = self.export_pdf(markdown, markdown_path.with_suffix(".pdf"))
        except ReportExportError:
            logger.exception("Unable to render interview report PDF.")
        return ReportArtifacts(markdown_path=markdown_path, pdf_path=pdf_path)

    def export_pdf(self, markdown_text: str, destination: Path) -> Path:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem guard
            raise ReportExportError(
                f"Unable to create directory for PDF export: {destination}"
            ) from exc

        try:
            from fpdf import FPDF  # type: ignore[import]
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ReportExportError(
                "fpdf2 is required to export reports as PDF."
            ) from exc

        pdf: Any = FPDF(unit="mm", format="A4")
        pdf.set_auto_page_break(auto=True, margin=15)
        pdf.set_margin(15)
        pdf.add_page()
        pdf.set_title("Interview Report")

        for block in self._iter_blocks(markdown_text):
            self._render_block(pdf, block)

        try:
            pdf.output(str(destination))
        except (OSError, RuntimeError) as exc:
            raise ReportExportError(
                f"Unable to write interview report PDF: {destination}"
            ) from exc
        return destination

    def _iter_blocks(self, markdown_text: str) -> Iterator[_RenderBlock]:
        table_buffer: list[list[str]] = []
        for raw_line in markdown_text.splitlines():
            stripped = raw_line.strip()
            if stripped.startswith("|"):
                cells = [cell.strip() for cell in stripped.strip("|").split("|")]
                if all(not cell.replace("-", "").strip() for cell in cells):
                    continue
                table_buffer.append(cells)
                continue
            if table_buffer:
                yield _RenderBlock(kind="table", rows=table_buffer)
                table_buffer = []
            if not stripped:
                yield _RenderBlock(kind="blank")
                continue
            if stripped.startswith("## "):
                yield _RenderBlock(kind="heading2", text=stripped[3:])
                continue
            if stripped.startswith("# "):
                yield _RenderBlock(kind="heading1", text=stripped[2:])
                continue
            bullet_match = self._BULLET_RE.match(raw_line)
            if bullet_match:
                yield _RenderBlock(
                    kind="bullet",
                    text=bullet_match.group("text"),
                    level=len(bullet_match.group("indent")) // 2,
                )
                continue
            yield _RenderBlock(kind="paragraph", text=stripped)
        if table_buffer:
            yield _RenderBlock(kind="table", rows=table_buffer)

    def _render_block(self, pdf: Any, block: _RenderBlock) -> None:
        if block.kind == "blank":
            pdf.ln(4)
            return
        if block.kind in {"heading1", "heading2"}:
            pdf.set_font("Helvetica", "B", size=18 if block.kind == "heading1" else 14)
            pdf.set_x(pdf.l_margin)
            pdf.multi_cell(0, 8, self._safe_text(block.text))
            pdf.ln(1)
            pdf.set_font("Helvetica", size=11)
            return
        if block.kind == "bullet":
            pdf.set_font("Helvetica", size=11)
            pdf.set_x(pdf.l_margin + min(block.level, 8) * 4)
            pdf.multi_cell(0, 6, self._safe_text(f"- {block.text}"))
            return
        if block.kind == "table":
            self._render_table(pdf, block.rows or [])
            return
        pdf.set_font("Helvetica", size=11)
        pdf.set_x(pdf.l_margin)
        pdf.multi_cell(0, 6, self._safe_text(block.text))

    def _render_table(self, pdf: Any, rows: list[list[str]]) -> None:
        if not rows:
            return
        column_count = len(rows[0])
        width = (pdf.w - pdf.l_margin - pdf.r_margin) / max(column_count, 1)
        for row_index, row in enumerate(rows):
            pdf.set_font("Helvetica", "B" if row_index == 0 else "", size=10)
            pdf.set_x(pdf.l_margin)
            for cell in row[:column_count]:
                pdf.cell(width, 7, self._safe_text(cell), border=1)
            pdf.ln(7)
        pdf.set_font("Helvetica", size=11)

    @classmethod
    def _safe_text(cls, text: str) -> str:
        text = text.replace("**", "").replace("`", "")
        text = text.translate(cls._UNICODE_TRANSLATION)
        try:
            text.encode("latin-1")
        except UnicodeEncodeError:
            return text.encode("latin-1", "replace").decode("latin-1")
        return text


__all__ = [
    "ReportArtifacts",
    "ReportComposer",
    "ReportData",
    "ReportExportError",
]
