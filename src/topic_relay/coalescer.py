from __future__ import annotations

import asyncio

from loguru import logger

from topic_relay.bindings.models import Binding
from topic_relay.bindings.store import BindingStore
from topic_relay.dispatch_engine import DispatchEngine
from topic_relay.progress import LiveProgressReporter
from topic_relay.prompts import PendingPrompt, merge_prompts, should_coalesce
from topic_relay.session_runtime import RuntimeTable


class PromptCoalescer:
    """Debounces inbound prompts before they reach the dispatch engine.

    A prompt is staged for ``debounce_seconds``. Follow-ups that belong with
    it (same author, same media group, or a quick reply) merge into the
    staged prompt; anything else flushes the staged prompt at once and takes
    its place.
    """

    def __init__(
        self,
        runtimes: RuntimeTable,
        store: BindingStore,
        engine: DispatchEngine,
        progress: LiveProgressReporter,
        *,
        debounce_seconds: float = 1.5,
        reply_window_seconds: float = 30.0,
    ):
        self._runtimes = runtimes
        self._store = store
        self._engine = engine
        self._progress = progress
        self._debounce_seconds = debounce_seconds
        self._reply_window_seconds = reply_window_seconds
        self._flushes: set[asyncio.Task] = set()

    def _coalesces(self, left: PendingPrompt, right: PendingPrompt) -> bool:
        return should_coalesce(
            left,
            right,
            debounce_seconds=self._debounce_seconds,
            reply_window_seconds=self._reply_window_seconds,
        )

    async def submit(self, binding: Binding, prompt: PendingPrompt) -> None:
        runtime = self._runtimes.get(binding.session_id)
        if runtime.inflight:
            self._engine.enqueue(runtime, prompt)
            await self._progress.refresh(binding)
            return

        staged = runtime.staged_prompt
        if staged is None:
            runtime.staged_prompt = prompt
        elif self._coalesces(staged, prompt):
            runtime.staged_prompt = merge_prompts(staged, prompt)
        else:
            runtime.cancel_staged_timer()
            runtime.staged_prompt = prompt
            self._engine.dispatch(binding, staged)

        if runtime.staged_timer is None:
            loop = asyncio.get_running_loop()
            runtime.staged_timer = loop.call_later(self._debounce_seconds, self._on_timer, binding.session_id)

    def _on_timer(self, session_id: str) -> None:
        task = asyncio.create_task(self.flush(session_id))
        self._flushes.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task) -> None:
        self._flushes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Failed to flush staged prompt: {task.exception()}")

    async def flush(self, session_id: str) -> None:
        runtime = self._runtimes.get(session_id)
        runtime.cancel_staged_timer()
        staged = runtime.staged_prompt
        runtime.staged_prompt = None
        if staged is None:
            return

        binding = self._store.get_by_session(session_id)
        if binding is None or binding.is_closed:
            logger.warning(f"Dropping staged prompt {staged.source_message_id}: session {session_id} is not bound")
            return
        self._engine.dispatch(binding, staged)

    def cancel(self, session_id: str) -> None:
        runtime = self._runtimes.peek(session_id)
        if runtime is None:
            return
        runtime.cancel_staged_timer()
        runtime.staged_prompt = None

    async def wait_flushed(self) -> None:
        if self._flushes:
            await asyncio.gather(*self._flushes, return_exceptions=True)
