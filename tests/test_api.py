from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from interview_copilot.api import create_app
from interview_copilot.insight_engine import InsightEngine
from interview_copilot.question_bank import QuestionBank
from interview_copilot.session_store import SessionStore

from conftest import LONG_ANSWER, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(settings, tmp_path: Path, clock: FakeClock) -> TestClient:
    app = create_app(
        settings,
        engine=InsightEngine(),
        store=SessionStore(tmp_path / "sessions.jsonl", redis_url=None),
        clock=clock,
    )
    return TestClient(app)


def _create(client: TestClient, **body) -> dict:
    response = client.post("/sessions", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_create_session_asks_first_question(client: TestClient) -> None:
    created = _create(client)
    assert created["session_id"].startswith("sess-")
    assert created["spoken"] == [QuestionBank().initial().text]
    state = created["state"]
    assert state["phase"] == "structured_active"
    assert state["llm_mode"] == "rules"
    assert client.get(f"/sessions/{created['session_id']}").json() == state


def test_bad_mode_and_campaign_are_rejected(client: TestClient) -> None:
    assert client.post("/sessions", json={"mode": "freestyle"}).status_code == 400
    response = client.post("/sessions", json={"campaign": {"mode": "freestyle"}})
    assert response.status_code == 400


def test_unknown_session_is_404(client: TestClient) -> None:
    assert client.get("/sessions/sess-nope").status_code == 404
    response = client.post("/sessions/sess-nope/utterances", json={"text": "hi"})
    assert response.status_code == 404


def test_utterance_then_next(client: TestClient, clock: FakeClock) -> None:
    session_id = _create(client)["session_id"]
    response = client.post(f"/sessions/{session_id}/utterances", json={"text": LONG_ANSWER})
    body = response.json()
    assert body["spoken"] == []
    assert body["insight"]["turn_id"] == "t1"
    assert body["state"]["transcript"][0]["text"] == LONG_ANSWER

    clock.tick(1.0)
    advanced = client.post(f"/sessions/{session_id}/next").json()
    assert advanced["spoken"] == [QuestionBank().at(1).text]
    assert advanced["state"]["question_index"] == 1

    stale = client.post(f"/sessions/{session_id}/next", json={"generation": 0}).json()
    assert stale["spoken"] == []
    assert stale["state"]["question_index"] == 1


def test_followups_are_queued(client: TestClient, clock: FakeClock) -> None:
    session_id = _create(client, mode="conversational")["session_id"]
    empty = client.post(f"/sessions/{session_id}/followups", json={"text": "  "})
    assert empty.status_code == 400

    queued = client.post(
        f"/sessions/{session_id}/followups",
        json={"text": "Walk me through your last incident."},
    ).json()
    assert queued["state"]["followup_queue"] == ["Walk me through your last incident."]

    clock.tick(1.0)
    spoken = client.post(f"/sessions/{session_id}/next").json()["spoken"]
    assert spoken == ["Walk me through your last incident."]


def test_summary_with_export(client: TestClient) -> None:
    session_id = _create(client)["session_id"]
    client.post(f"/sessions/{session_id}/utterances", json={"text": "yes"})
    body = client.post(f"/sessions/{session_id}/summary", json={"export": True}).json()
    assert body["used_tokens"] == 0
    assert any("brevity" in risk.lower() for risk in body["summary"]["risks"])
    markdown = Path(body["report"]["markdown_path"])
    assert markdown.exists()
    assert "## Questions Asked" in markdown.read_text(encoding="utf-8")


def test_summary_without_body_skips_export(client: TestClient) -> None:
    session_id = _create(client)["session_id"]
    body = client.post(f"/sessions/{session_id}/summary").json()
    assert "report" not in body
