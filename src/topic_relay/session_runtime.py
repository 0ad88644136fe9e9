from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from topic_relay.delivery_errors import BackoffSlots
from topic_relay.prompts import PendingPrompt


class DispatchState(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    COMPACTING = "compacting"
    DONE = "done"
    ERROR = "error"


@dataclass
class SessionRuntime:
    """Transient per-session state. Never persisted; rebuilt empty on start."""

    session_id: str
    backoff: BackoffSlots
    inflight: bool = False
    dispatch_state: DispatchState = DispatchState.IDLE
    pending: deque[PendingPrompt] = field(default_factory=deque)
    staged_prompt: PendingPrompt | None = None
    staged_timer: asyncio.TimerHandle | None = None
    last_prompt: PendingPrompt | None = None
    retried_after_compaction: bool = False
    last_assistant_message_id: str | None = None
    last_delivered_assistant_message_id: str | None = None
    live_stage: str | None = None
    live_detail: str | None = None
    progress_message_id: int | None = None
    last_progress_text: str | None = None
    pending_progress_text: str | None = None
    next_progress_edit_at: float | None = None
    next_progress_send_at: float | None = None
    run_started_at: float | None = None
    progress_ticker: asyncio.Task | None = None

    def cancel_staged_timer(self) -> None:
        if self.staged_timer is not None:
            self.staged_timer.cancel()
            self.staged_timer = None

    def reset_progress_message(self) -> None:
        self.progress_message_id = None
        self.last_progress_text = None
        self.pending_progress_text = None
        self.next_progress_edit_at = None
        self.next_progress_send_at = None


class RuntimeTable:
    def __init__(self, *, clock: Callable[[], float] = time.time, flood_jitter_seconds: float = 0.25):
        self._clock = clock
        self._flood_jitter_seconds = flood_jitter_seconds
        self._runtimes: dict[str, SessionRuntime] = {}

    def get(self, session_id: str) -> SessionRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            runtime = SessionRuntime(
                session_id=session_id,
                backoff=BackoffSlots(clock=self._clock, jitter_seconds=self._flood_jitter_seconds),
            )
            self._runtimes[session_id] = runtime
        return runtime

    def peek(self, session_id: str) -> SessionRuntime | None:
        return self._runtimes.get(session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._runtimes

    def __len__(self) -> int:
        return len(self._runtimes)
