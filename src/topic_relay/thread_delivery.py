from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from topic_relay.bindings.models import Binding
from topic_relay.delivery_errors import (
    FLOOD_JITTER_SECONDS,
    DeliveryErrorKind,
    classify_error,
    parse_error_meta,
)
from topic_relay.formatting import render_markdown_html, split_message
from topic_relay.transport import ChatTransport

DEFAULT_FLOOD_WAIT_SECONDS = 1.0


def _is_flood(error: BaseException) -> bool:
    kind, _ = classify_error(error)
    return kind is DeliveryErrorKind.FLOOD


def _on_flood(retry_state) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(f"sendMessage rate-limited, retry in {wait:.2f}s (attempt {retry_state.attempt_number})")


class ThreadDelivery:
    """Sends user-visible messages into a chat thread.

    Long text is split into chunks. Rich text rejected for bad formatting is
    resent once as plain text; flood-limited sends wait the advertised
    retry-after plus jitter and try again a bounded number of times.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        flood_retries: int = 2,
        jitter_seconds: float = FLOOD_JITTER_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._transport = transport
        self._flood_retries = flood_retries
        self._jitter_seconds = jitter_seconds
        self._sleep = sleep

    async def send(self, binding: Binding, text: str, *, rich: bool = False) -> None:
        await self.send_to(binding.chat_id, binding.thread_id, text, rich=rich)

    async def send_to(
        self,
        chat_id: int,
        thread_id: int | None,
        text: str,
        *,
        rich: bool = False,
        reply_to_message_id: int | None = None,
    ) -> int | None:
        """Deliver ``text`` and return the id of the last chunk sent."""
        message_id = None
        for chunk in split_message(text):
            message_id = await self._send_chunk(chat_id, thread_id, chunk, rich, reply_to_message_id)
        return message_id

    def _flood_wait(self, retry_state) -> float:
        meta = parse_error_meta(retry_state.outcome.exception())
        retry_after = meta.retry_after if meta.retry_after is not None else DEFAULT_FLOOD_WAIT_SECONDS
        return retry_after + self._jitter_seconds

    async def _send_chunk(
        self,
        chat_id: int,
        thread_id: int | None,
        text: str,
        rich: bool,
        reply_to_message_id: int | None,
    ) -> int:
        use_rich = rich

        async def attempt_send() -> int:
            nonlocal use_rich
            if use_rich:
                try:
                    return await self._transport.send_message(
                        chat_id,
                        render_markdown_html(text),
                        thread_id=thread_id,
                        reply_to_message_id=reply_to_message_id,
                        parse_mode="HTML",
                    )
                except Exception as ex:
                    kind, meta = classify_error(ex)
                    if kind is not DeliveryErrorKind.FORMATTING:
                        raise
                    logger.warning(f"Formatted message rejected ({meta.description or meta.message}), sending as plain text")
                    use_rich = False
            return await self._transport.send_message(
                chat_id,
                text,
                thread_id=thread_id,
                reply_to_message_id=reply_to_message_id,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_flood),
            stop=stop_after_attempt(1 + self._flood_retries),
            wait=self._flood_wait,
            before_sleep=_on_flood,
            sleep=self._sleep,
            reraise=True,
        )
        message_id = 0
        async for attempt in retrying:
            with attempt:
                message_id = await attempt_send()
        return message_id
