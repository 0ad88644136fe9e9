from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from topic_relay.bindings.models import Binding
from topic_relay.delivery_errors import BackoffSlots, DeliveryErrorKind, classify_error
from topic_relay.formatting import short_session_id, truncate_topic_name, workspace_label
from topic_relay.session_runtime import RuntimeTable
from topic_relay.transport import ChatTransport


def topic_name_for(binding: Binding) -> str:
    return truncate_topic_name(
        f"{workspace_label(binding.workspace_path)} | {short_session_id(binding.session_id)} | {binding.state.value}"
    )


@dataclass
class _TopicNameState:
    last_name: str | None = None
    next_allowed_at: float = 0.0


class TopicNamer:
    """Keeps forum topic names in sync with binding state, rate-limited per topic."""

    def __init__(
        self,
        transport: ChatTransport,
        runtimes: RuntimeTable,
        *,
        rename_min_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self._transport = transport
        self._runtimes = runtimes
        self._rename_min_seconds = rename_min_seconds
        self._clock = clock
        self._states: dict[tuple[int, int], _TopicNameState] = {}

    async def update(self, binding: Binding) -> bool:
        """Rename the binding's topic. Returns True when the name is now current."""
        name = topic_name_for(binding)
        state = self._states.setdefault(binding.thread_key, _TopicNameState())
        if state.last_name == name:
            return True
        backoff = self._runtimes.get(binding.session_id).backoff
        if self._clock() < state.next_allowed_at or backoff.is_blocked(BackoffSlots.TOPIC_RENAME):
            return False

        try:
            await self._transport.edit_topic_name(binding.chat_id, binding.thread_id, name)
        except Exception as ex:
            kind, meta = classify_error(ex)
            if kind is DeliveryErrorKind.NOT_MODIFIED:
                self._mark_renamed(state, name)
                return True
            if kind is DeliveryErrorKind.FLOOD:
                until = backoff.block(BackoffSlots.TOPIC_RENAME, meta.retry_after, fallback=self._rename_min_seconds)
                logger.warning(f"Topic rename rate-limited for {max(1.0, until - self._clock()):.0f}s")
                return False
            logger.error(f"Failed to update topic name for {binding.chat_id}:{binding.thread_id}: {ex}")
            return False

        self._mark_renamed(state, name)
        return True

    def _mark_renamed(self, state: _TopicNameState, name: str) -> None:
        state.last_name = name
        state.next_allowed_at = self._clock() + self._rename_min_seconds
