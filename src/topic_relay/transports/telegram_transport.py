from __future__ import annotations

import mimetypes
from pathlib import PurePosixPath
from typing import Any

import httpx
from loguru import logger

from topic_relay.transport import Attachment, TransportError

_API_BASE = "https://api.telegram.org"


class TelegramTransport:
    """Telegram Bot API calls used by the relay, over a shared httpx client."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = _API_BASE,
        client: httpx.AsyncClient | None = None,
    ):
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0))

    async def close(self) -> None:
        await self._client.aclose()

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> int:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        if reply_to_message_id is not None:
            payload["reply_parameters"] = {
                "message_id": reply_to_message_id,
                "allow_sending_without_reply": True,
            }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        result = await self._call("sendMessage", payload)
        return int(result["message_id"])

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("editMessageText", payload)

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def create_topic(self, chat_id: int, name: str) -> int:
        result = await self._call("createForumTopic", {"chat_id": chat_id, "name": name})
        return int(result["message_thread_id"])

    async def edit_topic_name(self, chat_id: int, thread_id: int, name: str) -> None:
        await self._call(
            "editForumTopic",
            {"chat_id": chat_id, "message_thread_id": thread_id, "name": name},
        )

    async def download_attachment(self, file_id: str) -> Attachment:
        result = await self._call("getFile", {"file_id": file_id})
        file_path = str(result.get("file_path", ""))
        if not file_path:
            raise TransportError(f"Telegram returned no file path for {file_id}")
        resp = await self._client.get(f"{self._base_url}/file/bot{self._token}/{file_path}")
        if resp.status_code != 200:
            raise TransportError(
                f"File download failed: HTTP {resp.status_code}",
                error_code=resp.status_code,
            )
        filename = PurePosixPath(file_path).name
        mime = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        return Attachment(filename=filename, mime=mime, data=resp.content)

    async def get_updates(self, offset: int | None, timeout_seconds: int = 30) -> list[dict]:
        payload: dict[str, Any] = {
            "timeout": timeout_seconds,
            "allowed_updates": ["message"],
        }
        if offset is not None:
            payload["offset"] = offset
        result = await self._call(
            "getUpdates",
            payload,
            timeout=httpx.Timeout(timeout_seconds + 15.0),
        )
        return result if isinstance(result, list) else []

    async def _call(self, method: str, payload: dict[str, Any], *, timeout: httpx.Timeout | None = None) -> Any:
        url = f"{self._base_url}/bot{self._token}/{method}"
        kwargs: dict[str, Any] = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.post(url, **kwargs)
        except httpx.HTTPError as ex:
            raise TransportError(f"{method} failed: {ex}") from ex

        try:
            data = resp.json()
        except ValueError:
            raise TransportError(
                f"{method} failed: HTTP {resp.status_code}",
                error_code=resp.status_code,
            ) from None

        if not isinstance(data, dict) or not data.get("ok"):
            description = str(data.get("description", "")) if isinstance(data, dict) else ""
            error_code = data.get("error_code") if isinstance(data, dict) else None
            parameters = data.get("parameters") if isinstance(data, dict) else None
            retry_after = parameters.get("retry_after") if isinstance(parameters, dict) else None
            logger.debug(f"Telegram {method} rejected: code={error_code} description={description!r}")
            raise TransportError(
                f"{method} failed: {description or 'unknown error'}",
                description=description,
                error_code=error_code if isinstance(error_code, int) else resp.status_code,
                retry_after=float(retry_after) if isinstance(retry_after, (int, float)) else None,
            )
        return data.get("result")
