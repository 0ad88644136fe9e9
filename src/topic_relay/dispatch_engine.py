"""Single-flight prompt dispatch per session.

Each session runs at most one backend prompt at a time. The worker task that
owns a session keeps draining its FIFO queue until it is empty. A prompt that
fails with a context-overflow error is compacted (summarized) and sent again
at most once.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable

from loguru import logger

from topic_relay.assistant_output import (
    EMPTY_ASSISTANT_OUTPUT,
    HISTORY_LIMIT,
    extract_assistant_text,
    needs_history_fallback,
    pick_latest_assistant_output,
)
from topic_relay.bindings.models import Binding, ModelRef, SessionState
from topic_relay.bindings.store import BindingStore
from topic_relay.progress import LiveProgressReporter
from topic_relay.prompts import PendingPrompt, merge_prompts, should_coalesce
from topic_relay.session_backend import SessionBackend, detect_context_overflow
from topic_relay.session_runtime import DispatchState, RuntimeTable, SessionRuntime
from topic_relay.thread_delivery import ThreadDelivery
from topic_relay.topic_names import TopicNamer

_EFFORT_SUFFIX = re.compile(r"-(none|low|medium|high|xhigh)$")

TRANSITIONS: dict[DispatchState, frozenset[DispatchState]] = {
    DispatchState.IDLE: frozenset({DispatchState.DISPATCHING}),
    DispatchState.DISPATCHING: frozenset({DispatchState.DONE, DispatchState.ERROR, DispatchState.COMPACTING}),
    DispatchState.COMPACTING: frozenset({DispatchState.DISPATCHING, DispatchState.ERROR}),
    DispatchState.DONE: frozenset({DispatchState.IDLE, DispatchState.DISPATCHING}),
    DispatchState.ERROR: frozenset({DispatchState.IDLE, DispatchState.DISPATCHING}),
}


class IllegalTransition(RuntimeError):
    def __init__(self, session_id: str, source: DispatchState, target: DispatchState):
        super().__init__(f"Illegal dispatch transition for {session_id}: {source.value} -> {target.value}")
        self.session_id = session_id
        self.source = source
        self.target = target


def normalize_model(model: ModelRef) -> ModelRef:
    """Strip a trailing reasoning-effort suffix; effort travels in the system hint."""
    return ModelRef(provider_id=model.provider_id, model_id=_EFFORT_SUFFIX.sub("", model.model_id))


def build_system_hint(binding: Binding) -> str | None:
    hints = []
    if binding.reasoning_effort:
        hints.append(f"reasoning_effort={binding.reasoning_effort}")
    if binding.reasoning_summary:
        hints.append(f"reasoning_summary={binding.reasoning_summary}")
    if binding.text_verbosity:
        hints.append(f"text_verbosity={binding.text_verbosity}")
    if not hints:
        return None
    return f"Preference hints for this session: {', '.join(hints)}."


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class DispatchEngine:
    def __init__(
        self,
        backend: SessionBackend,
        store: BindingStore,
        runtimes: RuntimeTable,
        progress: LiveProgressReporter,
        delivery: ThreadDelivery,
        topics: TopicNamer,
        *,
        debounce_seconds: float = 1.5,
        reply_window_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._store = store
        self._runtimes = runtimes
        self._progress = progress
        self._delivery = delivery
        self._topics = topics
        self._debounce_seconds = debounce_seconds
        self._reply_window_seconds = reply_window_seconds
        self._clock = clock
        self._workers: dict[str, asyncio.Task] = {}

    # -- public API --

    def dispatch(self, binding: Binding, prompt: PendingPrompt) -> bool:
        """Run ``prompt`` now, or queue it behind the run in progress.

        Returns True when a new worker was started for the session.
        """
        runtime = self._runtimes.get(binding.session_id)
        if runtime.inflight:
            self.enqueue(runtime, prompt)
            return False
        runtime.inflight = True
        task = asyncio.create_task(self._drain(binding.session_id, prompt))
        self._workers[binding.session_id] = task
        task.add_done_callback(lambda _t, sid=binding.session_id: self._forget_worker(sid, _t))
        return True

    def enqueue(self, runtime: SessionRuntime, prompt: PendingPrompt) -> None:
        if runtime.pending and should_coalesce(
            runtime.pending[-1],
            prompt,
            debounce_seconds=self._debounce_seconds,
            reply_window_seconds=self._reply_window_seconds,
        ):
            runtime.pending[-1] = merge_prompts(runtime.pending[-1], prompt)
        else:
            runtime.pending.append(prompt)

    def is_owned(self, session_id: str) -> bool:
        return session_id in self._workers

    async def abort(self, binding: Binding) -> None:
        await self._backend.abort(binding.workspace_path, binding.session_id)
        await self._progress.upsert(binding, self._progress.aborted_text(binding), force=True)

    async def wait_idle(self) -> None:
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._workers.values()):
            task.cancel()
        await self.wait_idle()

    # -- state machine --

    def _transition(self, runtime: SessionRuntime, target: DispatchState) -> None:
        source = runtime.dispatch_state
        if target not in TRANSITIONS[source]:
            raise IllegalTransition(runtime.session_id, source, target)
        logger.debug(f"Dispatch {runtime.session_id}: {source.value} -> {target.value}")
        runtime.dispatch_state = target

    def _forget_worker(self, session_id: str, task: asyncio.Task) -> None:
        if self._workers.get(session_id) is task:
            del self._workers[session_id]

    async def _drain(self, session_id: str, prompt: PendingPrompt) -> None:
        runtime = self._runtimes.get(session_id)
        current: PendingPrompt | None = prompt
        try:
            while current is not None:
                binding = self._store.get_by_session(session_id)
                if binding is None or binding.is_closed:
                    logger.warning(
                        f"Session {session_id} is no longer bound; discarding {1 + len(runtime.pending)} prompt(s)"
                    )
                    runtime.pending.clear()
                    break
                try:
                    await self._run_prompt(runtime, binding, current)
                except asyncio.CancelledError:
                    raise
                except IllegalTransition:
                    raise
                except Exception as ex:
                    logger.error(f"Dispatch of message {current.source_message_id} in {session_id} failed: {ex}")
                    if runtime.dispatch_state not in (DispatchState.DONE, DispatchState.ERROR):
                        runtime.dispatch_state = DispatchState.ERROR
                    self._progress.stop(session_id)
                current = runtime.pending.popleft() if runtime.pending else None
        finally:
            runtime.inflight = False
            if runtime.dispatch_state in (DispatchState.DONE, DispatchState.ERROR):
                self._transition(runtime, DispatchState.IDLE)
            elif runtime.dispatch_state is not DispatchState.IDLE:
                logger.warning(f"Dispatch for {session_id} abandoned in state {runtime.dispatch_state.value}")
                self._progress.stop(session_id)
                runtime.dispatch_state = DispatchState.IDLE

    async def _run_prompt(self, runtime: SessionRuntime, binding: Binding, prompt: PendingPrompt) -> None:
        if runtime.last_prompt is None or runtime.last_prompt.source_message_id != prompt.source_message_id:
            runtime.retried_after_compaction = False
        runtime.last_prompt = prompt
        parts = [part.to_request() for part in prompt.parts]

        while True:
            self._transition(runtime, DispatchState.DISPATCHING)
            runtime.live_stage = "starting"
            runtime.live_detail = None
            runtime.last_delivered_assistant_message_id = None
            runtime.run_started_at = self._clock()
            binding = self._patch(binding, state=SessionState.ACTIVE, last_error=None)
            await self._topics.update(binding)
            self._progress.start(binding)
            await self._progress.refresh(binding)

            try:
                response = await self._backend.prompt(
                    binding.workspace_path,
                    binding.session_id,
                    normalize_model(binding.model),
                    build_system_hint(binding),
                    parts,
                )
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                if self._closed_during_run(binding):
                    self._transition(runtime, DispatchState.ERROR)
                    return
                error_text = _error_text(ex)
                if not (detect_context_overflow(error_text) and not runtime.retried_after_compaction):
                    self._transition(runtime, DispatchState.ERROR)
                    await self._fail(runtime, binding, error_text)
                    return

                self._transition(runtime, DispatchState.COMPACTING)
                runtime.retried_after_compaction = True
                logger.info(f"Context overflow in {binding.session_id}; summarizing before one retry")
                runtime.live_stage = "context overflow"
                runtime.live_detail = "summarize + retry"
                await self._progress.refresh(binding)
                try:
                    await self._backend.summarize(binding.workspace_path, binding.session_id, binding.model)
                except asyncio.CancelledError:
                    raise
                except Exception as summary_error:
                    self._transition(runtime, DispatchState.ERROR)
                    await self._fail(runtime, binding, _error_text(summary_error), compaction=True)
                    return
                if self._closed_during_run(binding):
                    self._transition(runtime, DispatchState.ERROR)
                    return
                continue

            self._transition(runtime, DispatchState.DONE)
            if self._closed_during_run(binding):
                return
            await self._complete(runtime, binding, response)
            return

    async def _complete(self, runtime: SessionRuntime, binding: Binding, response: dict) -> None:
        self._progress.stop(binding.session_id)
        binding = self._patch(binding, state=SessionState.IDLE, last_error=None)
        await self._topics.update(binding)
        await self._progress.finish(binding, self._progress.done_text(binding))

        text = await self._resolve_answer(runtime, binding, response)
        try:
            await self._delivery.send(binding, text, rich=True)
        except Exception as ex:
            error_text = f"Failed to deliver answer: {_error_text(ex)}"
            logger.error(f"{error_text} ({binding.session_id})")
            binding = self._patch(binding, state=SessionState.ERROR, last_error=error_text)
            await self._topics.update(binding)

        if not runtime.last_delivered_assistant_message_id:
            info = response.get("info") if isinstance(response, dict) else None
            message_id = info.get("id") if isinstance(info, dict) else None
            runtime.last_delivered_assistant_message_id = str(message_id) if message_id else None
        runtime.run_started_at = None

    async def _resolve_answer(self, runtime: SessionRuntime, binding: Binding, response: dict) -> str:
        parts = response.get("parts") if isinstance(response, dict) else None
        text = extract_assistant_text(parts)
        if not needs_history_fallback(text):
            return text

        try:
            history = await self._backend.messages(binding.workspace_path, binding.session_id, HISTORY_LIMIT)
        except Exception as ex:
            logger.warning(f"Failed to load history for {binding.session_id}: {ex}")
            history = []

        picked = pick_latest_assistant_output(
            history,
            run_started_at=runtime.run_started_at,
            exclude_message_id=runtime.last_delivered_assistant_message_id,
        )
        if picked is not None and picked.text != EMPTY_ASSISTANT_OUTPUT:
            runtime.last_delivered_assistant_message_id = picked.message_id
            return picked.text

        info = response.get("info") if isinstance(response, dict) else None
        finish = str(info.get("finish") or "").strip() if isinstance(info, dict) else ""
        if finish:
            return f"Assistant finished ({finish}) without text output."
        return text

    async def _fail(self, runtime: SessionRuntime, binding: Binding, error_text: str, *, compaction: bool = False) -> None:
        logger.error(f"Run failed in {binding.session_id}: {error_text}")
        self._progress.stop(binding.session_id)
        binding = self._patch(binding, state=SessionState.ERROR, last_error=error_text)
        await self._topics.update(binding)
        await self._progress.finish(binding, self._progress.error_text(binding, error_text, compaction=compaction))
        label = "Compaction retry failed" if compaction else "Error"
        try:
            await self._delivery.send(binding, f"{label}: {error_text}")
        except Exception as ex:
            logger.error(f"Failed to report error to {binding.chat_id}:{binding.thread_id}: {ex}")
        runtime.run_started_at = None

    def _closed_during_run(self, binding: Binding) -> bool:
        latest = self._store.get_by_session(binding.session_id)
        if latest is not None and not latest.is_closed:
            return False
        logger.warning(f"Session {binding.session_id} was unbound during its run; dropping the result")
        self._progress.discard(binding)
        runtime = self._runtimes.get(binding.session_id)
        runtime.run_started_at = None
        return True

    def _patch(self, binding: Binding, **changes) -> Binding:
        try:
            updated = self._store.patch(binding.session_id, **changes)
        except OSError as ex:
            logger.warning(f"Could not persist binding update for {binding.session_id}: {ex}")
            return binding.with_changes(**changes)
        return updated or binding.with_changes(**changes)
