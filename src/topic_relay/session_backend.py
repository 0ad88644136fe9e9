import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from topic_relay.bindings.models import ModelRef

_CONTEXT_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "input exceeds the context window",
)


class BackendError(Exception):
    pass


def detect_context_overflow(error_text: str) -> bool:
    normalized = error_text.lower()
    return any(marker in normalized for marker in _CONTEXT_OVERFLOW_MARKERS)


def parse_error_payload(error: Any) -> str:
    """Best-effort human text for an error value returned by the backend."""
    if not error:
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str) and data["message"].strip():
            return data["message"]
        for key in ("detail", "message"):
            value = error.get(key)
            if isinstance(value, str) and value.strip():
                return value
    try:
        return json.dumps(error, ensure_ascii=True)
    except (TypeError, ValueError):
        return str(error)


@runtime_checkable
class SessionBackend(Protocol):
    async def create_session(self, directory: str, title: str) -> dict: ...

    async def get_session(self, directory: str, session_id: str) -> dict: ...

    async def list_sessions(self, directory: str) -> list[dict]: ...

    async def prompt(
        self,
        directory: str,
        session_id: str,
        model: ModelRef,
        system_hint: str | None,
        parts: list[dict],
    ) -> dict:
        """Send a prompt and wait for the run to finish.

        Returns ``{"info": {...}, "parts": [...]}``. Raises BackendError when
        the response carries an error, including ``info.error``.
        """
        ...

    async def abort(self, directory: str, session_id: str) -> None: ...

    async def summarize(self, directory: str, session_id: str, model: ModelRef) -> None: ...

    async def revert(self, directory: str, session_id: str) -> None: ...

    async def unrevert(self, directory: str, session_id: str) -> None: ...

    async def messages(self, directory: str, session_id: str, limit: int) -> list[dict]: ...

    async def update_title(self, directory: str, session_id: str, title: str) -> dict: ...

    async def reply_permission(
        self,
        directory: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None: ...

    def stream_events(self) -> AsyncIterator[dict]: ...

    async def close(self) -> None: ...


def create_backend(
    backend_name: str,
    base_url: str,
    *,
    username: str | None = None,
    password: str | None = None,
    prompt_timeout_seconds: float | None = None,
) -> SessionBackend:
    """Factory: create a SessionBackend by name."""
    name = backend_name.strip().lower()
    if name == "opencode":
        from topic_relay.backends.opencode_backend import OpencodeBackend
        return OpencodeBackend(
            base_url,
            username=username,
            password=password,
            prompt_timeout_seconds=prompt_timeout_seconds,
        )
    raise ValueError(f"Unknown backend: {backend_name!r}. Supported: 'opencode'")
