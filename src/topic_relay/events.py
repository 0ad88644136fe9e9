"""Backend event feed model.

Events are a closed set of frozen dataclasses. ``parse_event`` maps a raw
``{"type": ..., "properties": {...}}`` payload onto one of them and returns
None for anything it does not recognize.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from topic_relay.session_backend import parse_error_payload


@dataclass(frozen=True)
class SessionUpdated:
    session_id: str
    title: str | None = None


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    status: str
    attempt: int = 0


@dataclass(frozen=True)
class SessionIdle:
    session_id: str


@dataclass(frozen=True)
class SessionError:
    session_id: str
    error: str


@dataclass(frozen=True)
class MessageUpdated:
    session_id: str
    message_id: str
    role: str
    error: str | None = None


@dataclass(frozen=True)
class MessagePartUpdated:
    session_id: str
    part: dict[str, Any]
    delta: str = ""


@dataclass(frozen=True)
class PermissionUpdated:
    session_id: str
    permission_id: str
    type: str = "unknown"
    title: str = "Permission required"
    pattern: str | None = None
    created_at: float | None = None


@dataclass(frozen=True)
class PermissionReplied:
    session_id: str
    permission_id: str
    response: str = ""


@dataclass(frozen=True)
class Question:
    question: str
    header: str | None = None


@dataclass(frozen=True)
class QuestionAsked:
    session_id: str
    questions: list[Question] = field(default_factory=list)


BackendEvent = (
    SessionUpdated
    | SessionStatus
    | SessionIdle
    | SessionError
    | MessageUpdated
    | MessagePartUpdated
    | PermissionUpdated
    | PermissionReplied
    | QuestionAsked
)


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return parse_error_payload(data["message"])
    return parse_error_payload(error)


def _pattern_text(pattern: Any) -> str | None:
    if isinstance(pattern, str):
        return pattern.strip() or None
    if isinstance(pattern, list):
        values = [str(item).strip() for item in pattern if item is not None and str(item).strip()]
        return ", ".join(values) or None
    return None


def _session_updated(props: dict) -> SessionUpdated | None:
    info = props.get("info")
    if not isinstance(info, dict) or not _str(info.get("id")):
        return None
    title = info.get("title")
    return SessionUpdated(session_id=info["id"], title=title if isinstance(title, str) else None)


def _session_status(props: dict) -> SessionStatus | None:
    session_id = _str(props.get("sessionID"))
    if not session_id:
        return None
    status = props.get("status") if isinstance(props.get("status"), dict) else {}
    attempt = status.get("attempt")
    return SessionStatus(
        session_id=session_id,
        status=_str(status.get("type")),
        attempt=int(attempt) if isinstance(attempt, (int, float)) else 0,
    )


def _session_idle(props: dict) -> SessionIdle | None:
    session_id = _str(props.get("sessionID"))
    return SessionIdle(session_id=session_id) if session_id else None


def _session_error(props: dict) -> SessionError | None:
    session_id = _str(props.get("sessionID"))
    if not session_id:
        return None
    return SessionError(session_id=session_id, error=_error_text(props.get("error")))


def _message_updated(props: dict) -> MessageUpdated | None:
    info = props.get("info")
    if not isinstance(info, dict):
        return None
    session_id = _str(info.get("sessionID"))
    message_id = _str(info.get("id"))
    if not session_id or not message_id:
        return None
    error = info.get("error")
    return MessageUpdated(
        session_id=session_id,
        message_id=message_id,
        role=_str(info.get("role")),
        error=_error_text(error) if error else None,
    )


def _message_part_updated(props: dict) -> MessagePartUpdated | None:
    part = props.get("part")
    if not isinstance(part, dict) or not _str(part.get("sessionID")):
        return None
    delta = props.get("delta")
    return MessagePartUpdated(
        session_id=part["sessionID"],
        part=part,
        delta=delta if isinstance(delta, str) else "",
    )


def _permission_updated(props: dict) -> PermissionUpdated | None:
    session_id = _str(props.get("sessionID"))
    permission_id = _str(props.get("id"))
    if not session_id or not permission_id:
        return None
    time_info = props.get("time") if isinstance(props.get("time"), dict) else {}
    created = time_info.get("created")
    return PermissionUpdated(
        session_id=session_id,
        permission_id=permission_id,
        type=_str(props.get("type")) or "unknown",
        title=_str(props.get("title")) or "Permission required",
        pattern=_pattern_text(props.get("pattern")),
        created_at=float(created) if isinstance(created, (int, float)) and created > 0 else None,
    )


def _permission_replied(props: dict) -> PermissionReplied | None:
    session_id = _str(props.get("sessionID"))
    permission_id = _str(props.get("permissionID"))
    if not session_id or not permission_id:
        return None
    return PermissionReplied(
        session_id=session_id,
        permission_id=permission_id,
        response=_str(props.get("response")),
    )


def _question_asked(props: dict) -> QuestionAsked | None:
    session_id = _str(props.get("sessionID"))
    if not session_id:
        return None
    raw = props.get("questions") if isinstance(props.get("questions"), list) else []
    questions = [
        Question(
            question=str(item.get("question", "")),
            header=_str(item.get("header")) or None,
        )
        for item in raw
        if isinstance(item, dict)
    ]
    return QuestionAsked(session_id=session_id, questions=questions)


_PARSERS = {
    "session.updated": _session_updated,
    "session.status": _session_status,
    "session.idle": _session_idle,
    "session.error": _session_error,
    "message.updated": _message_updated,
    "message.part.updated": _message_part_updated,
    "permission.updated": _permission_updated,
    "permission.replied": _permission_replied,
    "question.asked": _question_asked,
}


def parse_event(payload: Any) -> BackendEvent | None:
    if not isinstance(payload, dict):
        return None
    parser = _PARSERS.get(_str(payload.get("type")))
    if parser is None:
        return None
    props = payload.get("properties")
    return parser(props if isinstance(props, dict) else {})
