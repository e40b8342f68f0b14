"""Configuration helpers for the interview copilot."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from importlib import import_module
from pathlib import Path
from typing import Any, Dict, List, Optional, cast


class InterviewMode(str, Enum):
    """How the interview picks its next question."""

    STRUCTURED = "structured"
    CONVERSATIONAL = "conversational"

    @classmethod
    def from_string(
        cls,
        mode: str | None,
        default: Optional["InterviewMode"] = None,
    ) -> "InterviewMode":
        """Normalize arbitrary user input into a valid interview mode."""
        if not mode:
            if default is None:
                raise ValueError("Interview mode is required.")
            return default
        normalized = mode.strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        if default is not None:
            return default
        raise ValueError(f"Unsupported interview mode: {mode}")


class LLMMode(str, Enum):
    """Where insights come from: the cloud model or the local rules."""

    CLOUD = "cloud"
    RULES = "rules"

    @classmethod
    def from_string(
        cls,
        mode: str | None,
        default: Optional["LLMMode"] = None,
    ) -> "LLMMode":
        """Normalize arbitrary user input into a valid LLM mode."""
        if not mode:
            if default is None:
                raise ValueError("LLM mode is required.")
            return default
        normalized = mode.strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        if default is not None:
            return default
        raise ValueError(f"Unsupported LLM mode: {mode}")


@dataclass(slots=True)
class ModelSettings:
    """Holds model-related configuration for the runtime."""

    provider: str
    model: str
    endpoint: Optional[str]
    api_key: Optional[str]
    api_version: Optional[str]

    @property
    def cloud_available(self) -> bool:
        return bool(self.api_key)


@dataclass(slots=True)
class AppSettings:
    """Top-level application settings loaded from environment variables."""

    model: ModelSettings
    soft_token_cap: int
    default_llm_mode: LLMMode
    default_interview_mode: InterviewMode
    insight_timeout_seconds: float
    insight_max_tokens: int
    advance_guard_seconds: float
    conversational_cap: int
    output_dir: Path
    session_log: Path
    redis_url: Optional[str]

    @classmethod
    def load(cls) -> "AppSettings":
        """Load settings from the environment or .env file."""
        _ensure_dotenv()
        provider = os.getenv("COPILOT_MODEL_PROVIDER", "openai")
        model = os.getenv("COPILOT_MODEL", "gpt-4o-mini")
        endpoint = os.getenv("COPILOT_MODEL_ENDPOINT")
        api_key = os.getenv("COPILOT_MODEL_API_KEY") or os.getenv(
            "OPENAI_API_KEY"
        )
        api_version = os.getenv("COPILOT_MODEL_API_VERSION")
        model_settings = ModelSettings(
            provider=provider,
            model=model,
            endpoint=endpoint,
            api_key=api_key or None,
            api_version=api_version,
        )
        soft_token_cap = _int_from_env("COPILOT_SOFT_TOKEN_CAP", 12000)
        if soft_token_cap < 0:
            raise RuntimeError("COPILOT_SOFT_TOKEN_CAP must be >= 0")
        derived_llm_mode = (
            LLMMode.CLOUD if model_settings.cloud_available else LLMMode.RULES
        )
        default_llm_mode = LLMMode.from_string(
            os.getenv("COPILOT_LLM_MODE"),
            default=derived_llm_mode,
        )
        if not model_settings.cloud_available:
            default_llm_mode = LLMMode.RULES
        default_interview_mode = InterviewMode.from_string(
            os.getenv("COPILOT_INTERVIEW_MODE"),
            default=InterviewMode.STRUCTURED,
        )
        timeout_raw = os.getenv("COPILOT_INSIGHT_TIMEOUT", "8")
        try:
            insight_timeout_seconds = float(timeout_raw)
        except ValueError as exc:
            raise RuntimeError(
                "COPILOT_INSIGHT_TIMEOUT must be a number of seconds"
            ) from exc
        if insight_timeout_seconds <= 0:
            raise RuntimeError("COPILOT_INSIGHT_TIMEOUT must be positive")
        insight_max_tokens = _int_from_env("COPILOT_INSIGHT_MAX_TOKENS", 220)
        if insight_max_tokens < 1:
            raise RuntimeError("COPILOT_INSIGHT_MAX_TOKENS must be at least 1")
        guard_ms = _int_from_env("COPILOT_ADVANCE_GUARD_MS", 300)
        if guard_ms < 0:
            raise RuntimeError("COPILOT_ADVANCE_GUARD_MS must be >= 0")
        conversational_cap = _int_from_env("COPILOT_CONVERSATIONAL_CAP", 8)
        if conversational_cap < 1:
            raise RuntimeError("COPILOT_CONVERSATIONAL_CAP must be at least 1")
        output_dir = Path(os.getenv("COPILOT_OUTPUT_DIR", "outputs"))
        output_dir.mkdir(parents=True, exist_ok=True)
        session_log = Path(
            os.getenv(
                "COPILOT_SESSION_JSONL",
                str(output_dir / "sessions.jsonl"),
            )
        )
        session_log.parent.mkdir(parents=True, exist_ok=True)
        redis_url: Optional[str] = os.getenv(
            "COPILOT_REDIS_URL", "redis://localhost:6379/0"
        )
        if redis_url is not None and not redis_url.strip():
            redis_url = None
        return cls(
            model=model_settings,
            soft_token_cap=soft_token_cap,
            default_llm_mode=default_llm_mode,
            default_interview_mode=default_interview_mode,
            insight_timeout_seconds=insight_timeout_seconds,
            insight_max_tokens=insight_max_tokens,
            advance_guard_seconds=guard_ms / 1000.0,
            conversational_cap=conversational_cap,
            output_dir=output_dir,
            session_log=session_log,
            redis_url=redis_url,
        )


@dataclass(frozen=True, slots=True)
class CampaignFact:
    """Context document retrieved for grounding insights."""

    id: str
    text: str


def _empty_list() -> List[Any]:
    return []


@dataclass(slots=True)
class CampaignConfig:
    """Read-only campaign input consumed at session start."""

    campaign_id: str
    questions: List[Dict[str, Any]] = field(default_factory=_empty_list)
    language: str = "en-US"
    voice: Optional[str] = None
    facts: List[CampaignFact] = field(default_factory=_empty_list)
    mode: Optional[InterviewMode] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CampaignConfig":
        campaign_id = str(data.get("campaign_id") or data.get("id") or "").strip()
        questions: List[Dict[str, Any]] = []
        raw_questions = data.get("questions")
        if isinstance(raw_questions, list):
            for entry in cast(List[Any], raw_questions):
                if isinstance(entry, str) and entry.strip():
                    questions.append({"text": entry.strip()})
                elif isinstance(entry, dict):
                    questions.append(cast(Dict[str, Any], entry))
        facts: List[CampaignFact] = []
        raw_facts = data.get("facts")
        if isinstance(raw_facts, list):
            for index, entry in enumerate(cast(List[Any], raw_facts), start=1):
                if isinstance(entry, dict):
                    entry_dict = cast(Dict[str, Any], entry)
                    text = str(entry_dict.get("text", "")).strip()
                    fact_id = str(entry_dict.get("id") or f"f{index}").strip()
                else:
                    text = str(entry).strip()
                    fact_id = f"f{index}"
                if text:
                    facts.append(CampaignFact(id=fact_id, text=text))
        mode_value = data.get("mode")
        mode = (
            InterviewMode.from_string(str(mode_value))
            if mode_value
            else None
        )
        voice = data.get("voice")
        return cls(
            campaign_id=campaign_id or "default",
            questions=questions,
            language=str(data.get("language") or "en-US"),
            voice=str(voice) if voice else None,
            facts=facts,
            mode=mode,
        )

    @classmethod
    def load(cls, path: Path) -> "CampaignConfig":
        """Parse a campaign JSON file."""
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Unable to read campaign file {path}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError(f"Campaign file {path} must hold a JSON object")
        return cls.from_dict(cast(Dict[str, Any], payload))


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _ensure_dotenv() -> None:
    """Load dotenv variables and provide a helpful error if missing."""

    try:
        dotenv_module = import_module("dotenv")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
        raise RuntimeError(
            "python-dotenv is required. Install with `pip install "
            "python-dotenv`."
        ) from exc

    load_dotenv = getattr(dotenv_module, "load_dotenv")
    load_dotenv()
