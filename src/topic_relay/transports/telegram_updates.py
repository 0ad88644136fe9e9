from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from topic_relay.transport import DocumentRef, InboundMessage, ReplyContext, TransportError


def _display_name(user: Any) -> str | None:
    if not isinstance(user, dict):
        return None
    parts = [str(user.get("first_name", "")).strip(), str(user.get("last_name", "")).strip()]
    name = " ".join(p for p in parts if p)
    return name or user.get("username") or None


def _parse_reply(reply: Any) -> ReplyContext | None:
    if not isinstance(reply, dict) or "message_id" not in reply:
        return None
    document = reply.get("document") if isinstance(reply.get("document"), dict) else {}
    return ReplyContext(
        message_id=int(reply["message_id"]),
        from_name=_display_name(reply.get("from")),
        text=reply.get("text"),
        caption=reply.get("caption"),
        has_photo=bool(reply.get("photo")),
        document_name=document.get("file_name"),
        document_mime=document.get("mime_type"),
    )


def parse_inbound_message(update: dict) -> InboundMessage | None:
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat")
    sender = message.get("from")
    if not isinstance(chat, dict) or not isinstance(sender, dict):
        return None

    photo_file_id = None
    photos = message.get("photo")
    if isinstance(photos, list) and photos:
        # Largest size is last.
        photo_file_id = photos[-1].get("file_id")

    document = None
    raw_document = message.get("document")
    if isinstance(raw_document, dict) and raw_document.get("file_id"):
        document = DocumentRef(
            file_id=str(raw_document["file_id"]),
            filename=raw_document.get("file_name"),
            mime=raw_document.get("mime_type"),
        )

    thread_id = message.get("message_thread_id") if message.get("is_topic_message") else None
    reply = message.get("reply_to_message")
    # In forum topics every message "replies" to the topic's service message.
    if isinstance(reply, dict) and reply.get("message_id") == thread_id:
        reply = None

    return InboundMessage(
        chat_id=int(chat["id"]),
        chat_type=str(chat.get("type", "")),
        message_id=int(message["message_id"]),
        user_id=int(sender["id"]),
        thread_id=int(thread_id) if thread_id is not None else None,
        media_group_id=message.get("media_group_id"),
        text=message.get("text"),
        caption=message.get("caption"),
        photo_file_id=photo_file_id,
        document=document,
        reply_context=_parse_reply(reply),
    )


class UpdatePoller:
    """Long-polls getUpdates and hands allowed messages to a handler task each."""

    def __init__(
        self,
        *,
        transport: Any,
        allowed_user_ids: set[int],
        on_message: Callable[[InboundMessage], Awaitable[None]],
        poll_timeout_seconds: int = 30,
        error_backoff_seconds: float = 5.0,
    ):
        self._transport = transport
        self._allowed_user_ids = allowed_user_ids
        self._on_message = on_message
        self._poll_timeout_seconds = poll_timeout_seconds
        self._error_backoff_seconds = error_backoff_seconds
        self._offset: int | None = None
        self._task: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)

    async def _poll_loop(self) -> None:
        while True:
            try:
                updates = await self._transport.get_updates(self._offset, self._poll_timeout_seconds)
            except asyncio.CancelledError:
                raise
            except TransportError as ex:
                logger.warning(f"getUpdates failed: {ex}. Retrying in {self._error_backoff_seconds:.0f}s")
                await asyncio.sleep(self._error_backoff_seconds)
                continue

            for update in updates:
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    self._offset = update_id + 1
                message = parse_inbound_message(update)
                if message is None:
                    continue
                if message.user_id not in self._allowed_user_ids:
                    logger.warning(f"Ignoring message from unauthorized user {message.user_id}")
                    continue
                task = asyncio.create_task(self._handle(message))
                self._handlers.add(task)
                task.add_done_callback(self._handlers.discard)

    async def _handle(self, message: InboundMessage) -> None:
        try:
            await self._on_message(message)
        except Exception as ex:
            logger.error(f"Failed to handle message {message.chat_id}:{message.message_id}: {ex}")
