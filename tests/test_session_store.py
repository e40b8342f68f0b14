from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from interview_copilot.session_store import SESSION_INDEX_KEY, SessionStore


def _read_archive(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_archive_only_round_trip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.jsonl", redis_url=None)
    session_id = store.create_session(campaign_id="c-1", mode="structured", llm_mode="rules")
    store.add_question(session_id, question_id="q1", text="Hello?", source="scripted", index=0)
    store.add_transcript_segment(session_id, speaker="candidate", text="Hi there", ts=12.5)
    store.add_timeline_event(session_id, "advanced", {"question_id": "q2"})
    store.add_audit_event(session_id, "llm_mode_locked", {"tokens_used": 12000})
    store.add_llm_run(
        session_id,
        kind="insight",
        turn_id="t1",
        latency_ms=41.23,
        used_tokens=0,
        output={"summary": "ok"},
    )

    record = store.load_session(session_id)
    assert record is not None
    assert record["meta"]["campaign_id"] == "c-1"
    assert record["questions"][0]["id"] == "q1"
    assert record["transcript"][0]["text"] == "Hi there"
    assert record["timeline"][0]["type"] == "advanced"
    assert record["audit"][0]["action"] == "llm_mode_locked"
    assert record["llm_runs"][0]["latency_ms"] == 41.2
    assert store.list_sessions() == [session_id]
    assert store.load_session("sess-missing") is None


def test_sessions_do_not_mix(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.jsonl", redis_url=None)
    first = store.create_session(campaign_id="a", mode="structured", llm_mode="rules")
    second = store.create_session(campaign_id="b", mode="structured", llm_mode="rules")
    store.add_transcript_segment(first, speaker="candidate", text="first")
    store.add_transcript_segment(second, speaker="candidate", text="second")
    record = store.load_session(second)
    assert record is not None
    assert [item["text"] for item in record["transcript"]] == ["second"]
    assert store.list_sessions() == [second, first]


def test_appends_use_rpush(tmp_path: Path) -> None:
    client = MagicMock()
    store = SessionStore(tmp_path / "sessions.jsonl", redis_url=None, client=client)
    session_id = store.create_session(
        campaign_id="c-1", mode="structured", llm_mode="rules", session_id="sess-x"
    )
    store.add_transcript_segment(session_id, speaker="candidate", text="hello")

    assert session_id == "sess-x"
    client.hset.assert_called_once()
    assert client.zadd.call_args.args[0] == SESSION_INDEX_KEY
    key, blob = client.rpush.call_args.args
    assert key == "session:sess-x:transcript"
    assert json.loads(blob)["text"] == "hello"


def test_redis_failures_are_swallowed(tmp_path: Path) -> None:
    client = MagicMock()
    client.rpush.side_effect = RedisConnectionError("down")
    client.hset.side_effect = RedisConnectionError("down")
    archive = tmp_path / "sessions.jsonl"
    store = SessionStore(archive, redis_url=None, client=client)
    session_id = store.create_session(campaign_id="c", mode="structured", llm_mode="rules")
    store.add_timeline_event(session_id, "started")

    entries = _read_archive(archive)
    assert entries[-1]["collection"] == "timeline"
    assert entries[-1]["item"]["type"] == "started"


def test_load_prefers_redis(tmp_path: Path) -> None:
    client = MagicMock()
    client.hgetall.return_value = {"id": "sess-r", "campaign_id": "c-9"}
    client.lrange.side_effect = lambda key, start, end: (
        [json.dumps({"text": "from redis"})] if key.endswith(":transcript") else []
    )
    store = SessionStore(tmp_path / "sessions.jsonl", redis_url=None, client=client)
    record = store.load_session("sess-r")
    assert record is not None
    assert record["meta"]["campaign_id"] == "c-9"
    assert record["transcript"] == [{"text": "from redis"}]
    assert record["questions"] == []


def test_load_falls_back_to_archive_when_redis_fails(tmp_path: Path) -> None:
    archive = tmp_path / "sessions.jsonl"
    writer = SessionStore(archive, redis_url=None)
    session_id = writer.create_session(campaign_id="c", mode="conversational", llm_mode="rules")
    writer.add_transcript_segment(session_id, speaker="candidate", text="archived")

    client = MagicMock()
    client.hgetall.side_effect = RedisConnectionError("down")
    reader = SessionStore(archive, redis_url=None, client=client)
    record = reader.load_session(session_id)
    assert record is not None
    assert record["transcript"][0]["text"] == "archived"
