from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class ModelRef:
    provider_id: str
    model_id: str

    def to_dict(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelRef:
        return cls(provider_id=str(data["providerID"]), model_id=str(data["modelID"]))


# Fields that identify a binding and never change after creation.
IDENTITY_FIELDS = frozenset({"chat_id", "thread_id", "session_id", "created_by", "created_at"})

_KEY_MAP = {
    "chat_id": "chatId",
    "thread_id": "threadId",
    "workspace_path": "workspacePath",
    "session_id": "sessionId",
    "state": "state",
    "model": "model",
    "reasoning_effort": "reasoningEffort",
    "reasoning_summary": "reasoningSummary",
    "text_verbosity": "textVerbosity",
    "created_by": "createdBy",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "last_error": "lastError",
    "session_title": "sessionTitle",
}


@dataclass(frozen=True)
class Binding:
    """Durable link between a chat thread and a backend session.

    Timestamps are epoch milliseconds, matching the on-disk format.
    """

    chat_id: int
    thread_id: int
    workspace_path: str
    session_id: str
    state: SessionState
    model: ModelRef
    created_by: int
    created_at: int
    updated_at: int
    reasoning_effort: str | None = None
    reasoning_summary: str | None = None
    text_verbosity: str | None = None
    last_error: str | None = None
    session_title: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def thread_key(self) -> tuple[int, int]:
        return (self.chat_id, self.thread_id)

    def with_changes(self, **changes: Any) -> Binding:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, SessionState):
                value = value.value
            elif isinstance(value, ModelRef):
                value = value.to_dict()
            result[_KEY_MAP[f.name]] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Binding:
        def optional_str(key: str) -> str | None:
            value = data.get(key)
            return str(value) if isinstance(value, str) and value != "" else None

        return cls(
            chat_id=int(data["chatId"]),
            thread_id=int(data["threadId"]),
            workspace_path=str(data["workspacePath"]),
            session_id=str(data["sessionId"]),
            state=SessionState(data["state"]),
            model=ModelRef.from_dict(data["model"]),
            created_by=int(data["createdBy"]),
            created_at=int(data["createdAt"]),
            updated_at=int(data.get("updatedAt", data["createdAt"])),
            reasoning_effort=optional_str("reasoningEffort"),
            reasoning_summary=optional_str("reasoningSummary"),
            text_verbosity=optional_str("textVerbosity"),
            last_error=optional_str("lastError"),
            session_title=optional_str("sessionTitle"),
        )
