"""Append-only session persistence: Redis lists mirrored into a JSONL archive."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import redis
from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

SESSION_INDEX_KEY = "sessions:index"
COLLECTIONS = ("transcript", "questions", "timeline", "audit", "llm_runs")


def _timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _new_session_id(created_at: datetime) -> str:
    return "sess-{}-{}".format(
        created_at.strftime("%Y%m%d%H%M%S"),
        uuid4().hex[:6],
    )


class SessionStore:
    """Persists session events to Redis and a JSONL archive.

    Every write is an append: Redis ``RPUSH`` onto per-session lists and one
    JSON line in the archive. Redis problems are logged and ignored so the
    interview keeps running; the archive is the durable copy.
    """

    def __init__(
        self,
        archive_path: Path,
        redis_url: Optional[str],
        *,
        client: Optional[Redis] = None,
    ) -> None:
        self._archive_path = archive_path
        self._archive_path.parent.mkdir(parents=True, exist_ok=True)
        self._redis_url = redis_url
        self._redis: Optional[Redis] = client

    @property
    def archive_path(self) -> Path:
        return self._archive_path

    def _get_redis(self) -> Optional[Redis]:
        if self._redis is not None:
            return self._redis
        if not self._redis_url:
            return None
        try:
            self._redis = redis.from_url(  # type: ignore[call-overload]
                self._redis_url,
                decode_responses=True,
            )
        except RedisError as exc:  # pragma: no cover - network guarded
            logger.warning("Redis connection failed: %s", exc)
            self._redis = None
        return self._redis

    @staticmethod
    def _key(session_id: str, collection: str) -> str:
        return f"session:{session_id}:{collection}"

    def _append_archive(self, entry: Dict[str, Any]) -> None:
        with self._archive_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def _append(self, session_id: str, collection: str, payload: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        item = dict(payload)
        item.setdefault("ts", _timestamp(now))
        self._append_archive(
            {"session_id": session_id, "collection": collection, "item": item}
        )
        client = self._get_redis()
        if not client:
            return
        key = self._key(session_id, collection)
        try:
            client.rpush(key, json.dumps(item, ensure_ascii=False))
        except RedisError as exc:
            logger.warning("Redis persistence failed for %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create_session(
        self,
        *,
        campaign_id: str,
        mode: str,
        llm_mode: str,
        session_id: Optional[str] = None,
    ) -> str:
        """Register a new session and return its id."""

        created_at = datetime.now(timezone.utc)
        record_id = session_id or _new_session_id(created_at)
        meta: Dict[str, Any] = {
            "id": record_id,
            "campaign_id": campaign_id,
            "mode": mode,
            "llm_mode": llm_mode,
            "created_at": _timestamp(created_at),
        }
        self._append_archive({"session_id": record_id, "_meta": meta})
        client = self._get_redis()
        if client:
            key = f"session:{record_id}"
            try:
                client.hset(key, mapping=meta)  # type: ignore[arg-type]
                client.zadd(SESSION_INDEX_KEY, {record_id: created_at.timestamp()})
            except RedisError as exc:
                logger.warning("Redis persistence failed for %s: %s", key, exc)
        logger.info("Created session %s", record_id)
        return record_id

    def add_transcript_segment(
        self,
        session_id: str,
        *,
        speaker: str,
        text: str,
        ts: Optional[float] = None,
    ) -> None:
        self._append(
            session_id,
            "transcript",
            {"speaker": speaker, "text": text, "t_ms": ts},
        )

    def add_question(
        self,
        session_id: str,
        *,
        question_id: str,
        text: str,
        source: str,
        index: int,
    ) -> None:
        self._append(
            session_id,
            "questions",
            {"id": question_id, "text": text, "source": source, "index": index},
        )

    def add_timeline_event(
        self,
        session_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._append(
            session_id,
            "timeline",
            {"type": event_type, "payload": payload or {}},
        )

    def add_audit_event(
        self,
        session_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._append(
            session_id,
            "audit",
            {"action": action, "details": details or {}},
        )

    def add_llm_run(
        self,
        session_id: str,
        *,
        kind: str,
        turn_id: Optional[str],
        latency_ms: float,
        used_tokens: int,
        output: Dict[str, Any],
    ) -> None:
        self._append(
            session_id,
            "llm_runs",
            {
                "kind": kind,
                "turn_id": turn_id,
                "latency_ms": round(latency_ms, 1),
                "used_tokens": used_tokens,
                "output": output,
            },
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored session, preferring Redis over the archive."""

        record = self._load_from_redis(session_id)
        if record is not None:
            return record
        return self._load_from_archive(session_id)

    def _load_from_redis(self, session_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_redis()
        if not client:
            return None
        try:
            meta = client.hgetall(f"session:{session_id}")
            if not meta:
                return None
            record: Dict[str, Any] = {"meta": dict(meta)}  # type: ignore[arg-type]
            for collection in COLLECTIONS:
                raw_items = client.lrange(self._key(session_id, collection), 0, -1)
                record[collection] = [
                    json.loads(item) for item in raw_items  # type: ignore[union-attr]
                ]
        except (RedisError, json.JSONDecodeError) as exc:
            logger.warning("Unable to read session %s from Redis: %s", session_id, exc)
            return None
        return record

    def _load_from_archive(self, session_id: str) -> Optional[Dict[str, Any]]:
        if not self._archive_path.exists():
            return None
        record: Dict[str, Any] = {"meta": None}
        for collection in COLLECTIONS:
            record[collection] = []
        found = False
        with self._archive_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed archive line: %s", line[:80])
                    continue
                if not isinstance(entry, dict) or entry.get("session_id") != session_id:
                    continue
                found = True
                if "_meta" in entry:
                    record["meta"] = entry["_meta"]
                    continue
                collection = entry.get("collection")
                if collection in COLLECTIONS:
                    record[collection].append(entry.get("item") or {})
        return record if found else None

    def list_sessions(self, limit: int = 20) -> List[str]:
        """Most recent session ids, newest first."""

        client = self._get_redis()
        if client:
            try:
                return list(
                    client.zrevrange(SESSION_INDEX_KEY, 0, limit - 1)  # type: ignore[arg-type]
                )
            except RedisError as exc:
                logger.warning("Unable to list sessions from Redis: %s", exc)
        if not self._archive_path.exists():
            return []
        ids: List[str] = []
        with self._archive_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and "_meta" in entry:
                    ids.append(str(entry.get("session_id")))
        return list(reversed(ids))[:limit]


__all__ = ["SessionStore"]
