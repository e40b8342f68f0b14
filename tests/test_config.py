from __future__ import annotations

import json
from pathlib import Path

import pytest

from interview_copilot.config import AppSettings, CampaignConfig, InterviewMode, LLMMode

ENV_VARS = (
    "COPILOT_MODEL_API_KEY",
    "OPENAI_API_KEY",
    "COPILOT_LLM_MODE",
    "COPILOT_INTERVIEW_MODE",
    "COPILOT_SOFT_TOKEN_CAP",
    "COPILOT_ADVANCE_GUARD_MS",
    "COPILOT_REDIS_URL",
    "COPILOT_SESSION_JSONL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("COPILOT_OUTPUT_DIR", str(tmp_path / "out"))


def test_defaults_without_api_key_force_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COPILOT_LLM_MODE", "cloud")
    settings = AppSettings.load()
    assert settings.default_llm_mode is LLMMode.RULES
    assert settings.default_interview_mode is InterviewMode.STRUCTURED
    assert settings.soft_token_cap == 12000
    assert settings.advance_guard_seconds == pytest.approx(0.3)
    assert settings.session_log.name == "sessions.jsonl"
    assert settings.output_dir.is_dir()


def test_api_key_enables_cloud(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COPILOT_MODEL_API_KEY", "sk-test")
    monkeypatch.setenv("COPILOT_INTERVIEW_MODE", "Conversational")
    monkeypatch.setenv("COPILOT_ADVANCE_GUARD_MS", "500")
    settings = AppSettings.load()
    assert settings.model.cloud_available
    assert settings.default_llm_mode is LLMMode.CLOUD
    assert settings.default_interview_mode is InterviewMode.CONVERSATIONAL
    assert settings.advance_guard_seconds == pytest.approx(0.5)


def test_empty_redis_url_disables_redis(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COPILOT_REDIS_URL", "  ")
    assert AppSettings.load().redis_url is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("COPILOT_SOFT_TOKEN_CAP", "lots"),
        ("COPILOT_SOFT_TOKEN_CAP", "-5"),
        ("COPILOT_ADVANCE_GUARD_MS", "-1"),
    ],
)
def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError):
        AppSettings.load()


def test_mode_parsing() -> None:
    assert LLMMode.from_string(" CLOUD ") is LLMMode.CLOUD
    assert LLMMode.from_string("bogus", default=LLMMode.RULES) is LLMMode.RULES
    with pytest.raises(ValueError):
        InterviewMode.from_string("freestyle")


def test_campaign_from_dict_normalizes_entries() -> None:
    campaign = CampaignConfig.from_dict(
        {
            "id": "backend",
            "questions": ["  Tell me about yourself. ", "", {"id": "x", "text": "Why us?"}],
            "facts": ["Kafka powers ingestion.", {"id": "lat", "text": "p95 under 200ms"}],
            "mode": "structured",
        }
    )
    assert campaign.campaign_id == "backend"
    assert [q["text"] for q in campaign.questions] == ["Tell me about yourself.", "Why us?"]
    assert [fact.id for fact in campaign.facts] == ["f1", "lat"]
    assert campaign.mode is InterviewMode.STRUCTURED
    assert campaign.language == "en-US"


def test_campaign_load_errors(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        CampaignConfig.load(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")
    with pytest.raises(RuntimeError):
        CampaignConfig.load(bad)
