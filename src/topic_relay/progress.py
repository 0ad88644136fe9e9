from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from topic_relay.bindings.models import Binding
from topic_relay.delivery_errors import BackoffSlots, DeliveryErrorKind, classify_error
from topic_relay.formatting import collapse_line, format_datetime, format_duration
from topic_relay.session_runtime import RuntimeTable, SessionRuntime
from topic_relay.transport import ChatTransport

DEFAULT_REASONING_EFFORT = "high"
DEFAULT_REASONING_SUMMARY = "auto"
DEFAULT_TEXT_VERBOSITY = "medium"


def short_preferences(binding: Binding) -> str:
    return (
        f"Reasoning: effort={binding.reasoning_effort or DEFAULT_REASONING_EFFORT}, "
        f"summary={binding.reasoning_summary or DEFAULT_REASONING_SUMMARY}, "
        f"verbosity={binding.text_verbosity or DEFAULT_TEXT_VERBOSITY}"
    )


def capture_part(runtime: SessionRuntime, part: dict[str, Any], delta: str = "") -> None:
    """Map a streamed message part onto the runtime's live stage and detail."""
    part_type = part.get("type")
    state = part.get("state") if isinstance(part.get("state"), dict) else {}

    if part_type in ("reasoning", "text"):
        runtime.live_stage = "reasoning" if part_type == "reasoning" else "writing"
        text = str(part.get("text") or delta or "")
        if text.strip():
            runtime.live_detail = collapse_line(text)
    elif part_type == "tool":
        runtime.live_stage = f"tool {part.get('tool') or 'tool'} ({state.get('status') or 'running'})"
        detail = str(state.get("title") or state.get("output") or "")
        if detail.strip():
            runtime.live_detail = collapse_line(detail)
    elif part_type == "step-start":
        runtime.live_stage = "step started"
    elif part_type == "step-finish":
        runtime.live_stage = f"step finished ({part.get('reason') or 'ok'})"
    elif part_type == "patch":
        runtime.live_stage = "applying patch"
        files = part.get("files")
        if isinstance(files, list) and files:
            runtime.live_detail = collapse_line(", ".join(str(f) for f in files[:3]))
    elif part_type == "file":
        runtime.live_stage = "file output"
        if part.get("filename"):
            runtime.live_detail = collapse_line(str(part["filename"]))


def apply_session_status(runtime: SessionRuntime, status: str, attempt: int = 0) -> None:
    if status == "busy":
        runtime.live_stage = "busy"
    elif status == "retry":
        runtime.live_stage = f"retry #{attempt}" if attempt > 0 else "retry"
    elif status == "idle":
        runtime.live_stage = "finalizing"


class LiveProgressReporter:
    """Maintains one throttled status message per running session.

    Edits are spaced by ``min_edit_seconds`` and new messages by
    ``min_send_seconds``; flood responses block the affected slot for the
    advertised wait. The final update of a run ignores the spacing but not a
    flood block, and the status message is deleted after a grace delay.
    """

    def __init__(
        self,
        transport: ChatTransport,
        runtimes: RuntimeTable,
        *,
        tick_seconds: float = 3.0,
        min_edit_seconds: float = 2.5,
        min_send_seconds: float = 1.2,
        delete_delay_seconds: float = 5.0,
        lookup: Callable[[str], Binding | None] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._transport = transport
        self._runtimes = runtimes
        self._tick_seconds = tick_seconds
        self._min_edit_seconds = min_edit_seconds
        self._min_send_seconds = min_send_seconds
        self._delete_delay_seconds = delete_delay_seconds
        self._lookup = lookup
        self._clock = clock
        self._sleep = sleep
        self._deletions: set[asyncio.Task] = set()

    # -- ticker --

    def start(self, binding: Binding) -> None:
        runtime = self._runtimes.get(binding.session_id)
        if runtime.progress_ticker is not None:
            runtime.progress_ticker.cancel()
        runtime.progress_ticker = asyncio.create_task(self._tick_loop(binding))

    def stop(self, session_id: str) -> None:
        runtime = self._runtimes.get(session_id)
        ticker = runtime.progress_ticker
        runtime.progress_ticker = None
        if ticker is not None and ticker is not asyncio.current_task():
            ticker.cancel()
        runtime.live_stage = None
        runtime.live_detail = None
        runtime.pending_progress_text = None

    async def _tick_loop(self, binding: Binding) -> None:
        while True:
            await self._sleep(self._tick_seconds)
            current = self._lookup(binding.session_id) if self._lookup else None
            try:
                await self.refresh(current or binding)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.error(f"Failed to refresh live progress for {binding.session_id}: {ex}")

    # -- status text --

    def working_text(self, binding: Binding) -> str:
        runtime = self._runtimes.get(binding.session_id)
        now = self._clock()
        lines = [
            "Status: working",
            f"Session: {binding.session_id}",
            f"Model: {binding.model.model_id}",
            short_preferences(binding),
        ]
        if runtime.run_started_at:
            lines.append(f"Started: {format_datetime(runtime.run_started_at)}")
        elapsed = now - runtime.run_started_at if runtime.run_started_at else 0
        lines.append(f"Elapsed: {format_duration(elapsed)}")
        lines.append(f"Stage: {runtime.live_stage or 'working'}")
        if runtime.live_detail:
            lines.append(f"Last: {runtime.live_detail}")
        lines.append(f"Queue: {len(runtime.pending)}")
        return "\n".join(lines)

    def done_text(self, binding: Binding) -> str:
        runtime = self._runtimes.get(binding.session_id)
        now = self._clock()
        duration = format_duration(now - runtime.run_started_at) if runtime.run_started_at else "n/a"
        return "\n".join(
            [
                "Status: done",
                f"Session: {binding.session_id}",
                f"Model: {binding.model.model_id}",
                short_preferences(binding),
                f"Duration: {duration}",
                f"Finished: {format_datetime(now)}",
                f"Queue: {len(runtime.pending)}",
            ]
        )

    def error_text(self, binding: Binding, error: str, *, compaction: bool = False) -> str:
        label = "Compaction retry failed" if compaction else "Error"
        return "\n".join(
            [
                "Status: error",
                f"Session: {binding.session_id}",
                f"Model: {binding.model.model_id}",
                short_preferences(binding),
                f"{label}: {error}",
            ]
        )

    def aborted_text(self, binding: Binding) -> str:
        return "\n".join(
            [
                "Status: aborted",
                f"Session: {binding.session_id}",
                f"Model: {binding.model.model_id}",
                short_preferences(binding),
            ]
        )

    # -- publishing --

    async def refresh(self, binding: Binding) -> None:
        runtime = self._runtimes.get(binding.session_id)
        if not runtime.inflight:
            return
        await self.upsert(binding, self.working_text(binding))

    async def upsert(self, binding: Binding, text: str, *, force: bool = False) -> None:
        runtime = self._runtimes.get(binding.session_id)
        normalized = text.strip()
        if not normalized:
            return
        if normalized == runtime.last_progress_text:
            runtime.pending_progress_text = None
            return
        runtime.pending_progress_text = normalized
        backoff = runtime.backoff
        now = self._clock()

        if runtime.progress_message_id is not None:
            if backoff.is_blocked(BackoffSlots.PROGRESS_EDIT):
                return
            if not force and runtime.next_progress_edit_at is not None and now < runtime.next_progress_edit_at:
                return
            try:
                await self._transport.edit_message(binding.chat_id, runtime.progress_message_id, normalized)
            except Exception as ex:
                kind, meta = classify_error(ex)
                if kind is DeliveryErrorKind.NOT_MODIFIED:
                    self._mark_published(runtime, normalized)
                    return
                if kind is DeliveryErrorKind.FLOOD:
                    until = backoff.block(BackoffSlots.PROGRESS_EDIT, meta.retry_after, fallback=self._min_edit_seconds)
                    runtime.next_progress_edit_at = until
                    logger.warning(f"Progress edit rate-limited for {max(1.0, until - self._clock()):.0f}s")
                    return
                logger.warning(f"Progress edit failed, sending a new status message: {ex}")
                runtime.progress_message_id = None
            else:
                self._mark_published(runtime, normalized)
                backoff.clear(BackoffSlots.PROGRESS_EDIT)
                return

        if backoff.is_blocked(BackoffSlots.PROGRESS_SEND):
            return
        if not force and runtime.next_progress_send_at is not None and now < runtime.next_progress_send_at:
            return
        try:
            message_id = await self._transport.send_message(binding.chat_id, normalized, thread_id=binding.thread_id)
        except Exception as ex:
            kind, meta = classify_error(ex)
            if kind is DeliveryErrorKind.FLOOD:
                until = backoff.block(BackoffSlots.PROGRESS_SEND, meta.retry_after, fallback=self._min_send_seconds)
                runtime.next_progress_send_at = until
                logger.warning(f"Progress send rate-limited for {max(1.0, until - self._clock()):.0f}s")
                return
            logger.error(f"Failed to send progress message for {binding.session_id}: {ex}")
            return
        runtime.progress_message_id = message_id
        runtime.next_progress_send_at = self._clock() + self._min_send_seconds
        self._mark_published(runtime, normalized)
        backoff.clear(BackoffSlots.PROGRESS_SEND)

    def _mark_published(self, runtime: SessionRuntime, text: str) -> None:
        runtime.last_progress_text = text
        runtime.pending_progress_text = None
        runtime.next_progress_edit_at = self._clock() + self._min_edit_seconds

    async def finish(self, binding: Binding, text: str) -> None:
        """Publish the final status of a run, then retire the status message."""
        await self.upsert(binding, text, force=True)
        self._retire_message(binding)

    def discard(self, binding: Binding) -> None:
        """Drop the status message of a run whose topic was closed under it."""
        self.stop(binding.session_id)
        self._retire_message(binding)

    def _retire_message(self, binding: Binding) -> None:
        runtime = self._runtimes.get(binding.session_id)
        message_id = runtime.progress_message_id
        runtime.reset_progress_message()
        if message_id is None:
            return
        task = asyncio.create_task(self._delete_later(binding.chat_id, message_id))
        self._deletions.add(task)
        task.add_done_callback(self._deletions.discard)

    async def _delete_later(self, chat_id: int, message_id: int) -> None:
        await self._sleep(self._delete_delay_seconds)
        try:
            await self._transport.delete_message(chat_id, message_id)
        except Exception as ex:
            logger.debug(f"Could not delete status message {chat_id}:{message_id}: {ex}")

    async def wait_deletions(self) -> None:
        if self._deletions:
            await asyncio.gather(*self._deletions, return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._deletions):
            task.cancel()
        for task in list(self._deletions):
            with contextlib.suppress(asyncio.CancelledError):
                await task
