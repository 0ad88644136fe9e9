from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

from topic_relay.events import BackendEvent, parse_event
from topic_relay.session_backend import BackendError, SessionBackend


class StreamEnded(Exception):
    """The server closed the event stream."""


def _on_reconnect(retry_state) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = f"{type(exc).__name__}: {exc}" if exc else "Unknown"
    logger.warning(f"Event stream lost ({reason}). Reconnecting in {wait:.1f}s (attempt {retry_state.attempt_number})")


class EventFeed:
    """Consumes the backend event stream and hands parsed events to a handler.

    Connection failures and server-side closes reconnect with exponential
    backoff. A failing handler is logged and the feed keeps going.
    """

    def __init__(
        self,
        backend: SessionBackend,
        on_event: Callable[[BackendEvent], Awaitable[None]],
        *,
        min_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._backend = backend
        self._on_event = on_event
        self._min_backoff_seconds = min_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def run(self) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((BackendError, httpx.HTTPError, StreamEnded)),
            wait=wait_exponential(multiplier=self._min_backoff_seconds, min=self._min_backoff_seconds, max=self._max_backoff_seconds),
            before_sleep=_on_reconnect,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                await self._consume()

    async def _consume(self) -> None:
        logger.info("Event stream connected")
        async for payload in self._backend.stream_events():
            event = parse_event(payload)
            if event is None:
                continue
            try:
                await self._on_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.error(f"Event handler failed for {type(event).__name__}: {ex}")
        raise StreamEnded("event stream closed by server")
