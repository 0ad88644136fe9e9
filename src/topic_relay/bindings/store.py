from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from topic_relay.bindings.models import IDENTITY_FIELDS, Binding, SessionState

STATE_FILE_VERSION = 1


class BindingConflict(ValueError):
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


class BindingStore:
    """Thread <-> session bindings persisted as one versioned JSON document."""

    def __init__(self, state_path: str, *, clock_ms: Callable[[], int] = now_ms):
        self._state_path = Path(state_path)
        self._clock_ms = clock_ms
        self._topics: list[Binding] = self._load()

    @property
    def state_path(self) -> Path:
        return self._state_path

    def get_by_thread(self, chat_id: int, thread_id: int) -> Binding | None:
        matches = [b for b in self._topics if b.chat_id == chat_id and b.thread_id == thread_id]
        if not matches:
            return None
        for binding in matches:
            if not binding.is_closed:
                return binding
        return max(matches, key=lambda b: b.updated_at)

    def get_by_session(self, session_id: str) -> Binding | None:
        for binding in self._topics:
            if binding.session_id == session_id:
                return binding
        return None

    def list_all(self) -> list[Binding]:
        return list(self._topics)

    def list_by_chat(self, chat_id: int) -> list[Binding]:
        return [b for b in self._topics if b.chat_id == chat_id]

    def upsert(self, binding: Binding) -> None:
        for other in self._topics:
            if other.session_id == binding.session_id:
                continue
            if other.thread_key == binding.thread_key and not other.is_closed and not binding.is_closed:
                raise BindingConflict(
                    f"Thread {binding.chat_id}:{binding.thread_id} is already bound to session {other.session_id}"
                )

        topics = list(self._topics)
        index = next((i for i, b in enumerate(topics) if b.session_id == binding.session_id), None)
        if index is None:
            topics.append(binding)
        else:
            current = topics[index]
            if current.thread_key != binding.thread_key and not current.is_closed:
                raise BindingConflict(
                    f"Session {binding.session_id} is already bound to thread {current.chat_id}:{current.thread_id}"
                )
            topics[index] = binding
        self._persist(topics)

    def patch(self, session_id: str, **changes: Any) -> Binding | None:
        forbidden = IDENTITY_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Cannot patch identity fields: {', '.join(sorted(forbidden))}")

        topics = list(self._topics)
        index = next((i for i, b in enumerate(topics) if b.session_id == session_id), None)
        if index is None:
            return None
        current = topics[index]
        if current.is_closed and changes.get("state", SessionState.CLOSED) != SessionState.CLOSED:
            logger.debug(f"Binding for {session_id} is closed; keeping it closed")
            changes = {k: v for k, v in changes.items() if k != "state"}
        updated = topics[index].with_changes(**changes, updated_at=self._clock_ms())
        topics[index] = updated
        self._persist(topics)
        return updated

    def close_by_thread(self, chat_id: int, thread_id: int) -> Binding | None:
        current = self.get_by_thread(chat_id, thread_id)
        if current is None or current.is_closed:
            return None
        return self.patch(current.session_id, state=SessionState.CLOSED)

    def _load(self) -> list[Binding]:
        try:
            raw = self._state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No binding state at {self._state_path}, starting empty")
            return []
        except OSError as ex:
            logger.warning(f"Could not read binding state {self._state_path}: {ex}. Starting empty")
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as ex:
            logger.warning(f"Binding state {self._state_path} is not valid JSON ({ex}). Starting empty")
            return []

        if not isinstance(parsed, dict) or parsed.get("version") != STATE_FILE_VERSION:
            logger.warning(f"Binding state {self._state_path} has an unsupported schema. Starting empty")
            return []
        topics = parsed.get("topics")
        if not isinstance(topics, list):
            logger.warning(f"Binding state {self._state_path} has no topic list. Starting empty")
            return []

        bindings: list[Binding] = []
        for entry in topics:
            try:
                bindings.append(Binding.from_dict(entry))
            except (KeyError, TypeError, ValueError) as ex:
                logger.warning(f"Skipping malformed binding entry: {ex}")
        logger.info(f"Loaded {len(bindings)} binding(s) from {self._state_path}")
        return bindings

    def _persist(self, topics: list[Binding]) -> None:
        payload = {
            "version": STATE_FILE_VERSION,
            "topics": [b.to_dict() for b in topics],
        }
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._state_path.with_name(f"{self._state_path.name}.tmp-{self._clock_ms()}")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
            os.replace(tmp_path, self._state_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        self._topics = topics
