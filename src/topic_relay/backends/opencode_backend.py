from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
from loguru import logger
from tenacity import retry

from topic_relay.backends.common import default_retry_kwargs
from topic_relay.bindings.models import ModelRef
from topic_relay.session_backend import BackendError, parse_error_payload


class OpencodeBackend:
    """HTTP client for an OpenCode server.

    Every call is scoped to a workspace directory through the ``directory``
    query parameter. A JSON body with an ``error`` field is a failure even on
    HTTP 200.
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        prompt_timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        auth = httpx.BasicAuth(username, password) if username and password else None
        self._prompt_timeout = httpx.Timeout(prompt_timeout_seconds)
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=auth,
            timeout=httpx.Timeout(30.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def create_session(self, directory: str, title: str) -> dict:
        return await self._request("POST", "/session", directory, body={"title": title})

    @retry(**default_retry_kwargs())
    async def get_session(self, directory: str, session_id: str) -> dict:
        return await self._request("GET", f"/session/{session_id}", directory)

    @retry(**default_retry_kwargs())
    async def list_sessions(self, directory: str) -> list[dict]:
        data = await self._request("GET", "/session", directory)
        return data if isinstance(data, list) else []

    async def prompt(
        self,
        directory: str,
        session_id: str,
        model: ModelRef,
        system_hint: str | None,
        parts: list[dict],
    ) -> dict:
        body: dict[str, Any] = {
            "model": model.to_dict(),
            "parts": parts,
        }
        if system_hint:
            body["system"] = system_hint
        logger.debug(f"Prompt request: session={session_id}, model={model.model_id}, parts={len(parts)}")
        data = await self._request(
            "POST",
            f"/session/{session_id}/message",
            directory,
            body=body,
            timeout=self._prompt_timeout,
        )
        info = data.get("info") if isinstance(data, dict) else None
        if isinstance(info, dict) and info.get("error"):
            raise BackendError(parse_error_payload(info["error"]))
        return data

    async def abort(self, directory: str, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort", directory)

    async def summarize(self, directory: str, session_id: str, model: ModelRef) -> None:
        await self._request(
            "POST",
            f"/session/{session_id}/summarize",
            directory,
            body=model.to_dict(),
            timeout=self._prompt_timeout,
        )

    async def revert(self, directory: str, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/revert", directory)

    async def unrevert(self, directory: str, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/unrevert", directory)

    @retry(**default_retry_kwargs())
    async def messages(self, directory: str, session_id: str, limit: int) -> list[dict]:
        data = await self._request(
            "GET",
            f"/session/{session_id}/message",
            directory,
            params={"limit": limit},
        )
        return data if isinstance(data, list) else []

    async def update_title(self, directory: str, session_id: str, title: str) -> dict:
        return await self._request("PATCH", f"/session/{session_id}", directory, body={"title": title})

    async def reply_permission(
        self,
        directory: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None:
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            directory,
            body={"response": response},
        )

    async def stream_events(self) -> AsyncIterator[dict]:
        async with self._client.stream("GET", "/event", timeout=httpx.Timeout(None)) as resp:
            if resp.status_code != 200:
                body = await resp.aread()
                raise BackendError(f"Event stream failed: HTTP {resp.status_code} -- {body[:200]!r}")
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                try:
                    event = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed event payload: {payload[:200]}")
                    continue
                if isinstance(event, dict):
                    yield event

    async def _request(
        self,
        method: str,
        path: str,
        directory: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> Any:
        query = {"directory": directory, **(params or {})}
        kwargs: dict[str, Any] = {"params": query}
        if body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout
        resp = await self._client.request(method, path, **kwargs)

        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = None

        if isinstance(data, dict) and data.get("error"):
            raise BackendError(parse_error_payload(data["error"]))
        if resp.status_code >= 400:
            detail = parse_error_payload(data) if data is not None else resp.text
            raise BackendError(f"OpenCode API error: HTTP {resp.status_code} -- {detail}")
        return data
