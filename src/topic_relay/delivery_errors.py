from __future__ import annotations

import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

FLOOD_JITTER_SECONDS = 0.25

_RETRY_AFTER_PATTERN = re.compile(r"retry after\s+(\d+)", re.IGNORECASE)


class DeliveryErrorKind(Enum):
    NOT_MODIFIED = "not_modified"
    FLOOD = "flood"
    FORMATTING = "formatting"
    FAILURE = "failure"


@dataclass(frozen=True)
class DeliveryErrorMeta:
    message: str
    description: str
    error_code: int | None
    retry_after: float | None

    @property
    def combined(self) -> str:
        return f"{self.message} {self.description}".lower()


def parse_error_meta(error: BaseException) -> DeliveryErrorMeta:
    """Pull message, description, code and retry-after out of a transport error.

    Structured attributes win; otherwise retry-after is parsed from the text
    ("Too Many Requests: retry after 7").
    """
    message = str(error) or type(error).__name__
    description = getattr(error, "description", "")
    if not isinstance(description, str):
        description = ""
    error_code = getattr(error, "error_code", None)
    if not isinstance(error_code, int) or isinstance(error_code, bool):
        error_code = None

    retry_after: float | None = None
    raw = getattr(error, "retry_after", None)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and math.isfinite(raw):
        retry_after = max(0.0, float(raw))
    else:
        match = _RETRY_AFTER_PATTERN.search(f"{description} {message}")
        if match:
            retry_after = float(int(match.group(1)))

    return DeliveryErrorMeta(
        message=message,
        description=description,
        error_code=error_code,
        retry_after=retry_after,
    )


def is_not_modified(meta: DeliveryErrorMeta) -> bool:
    combined = meta.combined
    return (
        "message is not modified" in combined
        or "topic_not_modified" in combined
        or "topic not modified" in combined
    )


def is_flood(meta: DeliveryErrorMeta) -> bool:
    if meta.error_code == 429 or meta.retry_after is not None:
        return True
    combined = meta.combined
    return "too many requests" in combined or "flood" in combined


def is_formatting_rejected(meta: DeliveryErrorMeta) -> bool:
    combined = meta.combined
    return "can't parse entities" in combined or "can't find end tag" in combined


def classify(meta: DeliveryErrorMeta) -> DeliveryErrorKind:
    if is_not_modified(meta):
        return DeliveryErrorKind.NOT_MODIFIED
    if is_flood(meta):
        return DeliveryErrorKind.FLOOD
    if is_formatting_rejected(meta):
        return DeliveryErrorKind.FORMATTING
    return DeliveryErrorKind.FAILURE


def classify_error(error: BaseException) -> tuple[DeliveryErrorKind, DeliveryErrorMeta]:
    meta = parse_error_meta(error)
    return classify(meta), meta


class BackoffSlots:
    """Independent "blocked until" timestamps, one per rate-limited operation."""

    PROGRESS_EDIT = "progress_edit"
    PROGRESS_SEND = "progress_send"
    TOPIC_RENAME = "topic_rename"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        jitter_seconds: float = FLOOD_JITTER_SECONDS,
    ):
        self._clock = clock
        self._jitter_seconds = jitter_seconds
        self._blocked_until: dict[str, float] = {}

    def block(self, slot: str, retry_after: float | None, *, fallback: float) -> float:
        wait = (retry_after if retry_after is not None else fallback) + self._jitter_seconds
        until = self._clock() + wait
        self._blocked_until[slot] = until
        return until

    def blocked_until(self, slot: str) -> float | None:
        return self._blocked_until.get(slot)

    def is_blocked(self, slot: str) -> bool:
        until = self._blocked_until.get(slot)
        return until is not None and self._clock() < until

    def clear(self, slot: str) -> None:
        self._blocked_until.pop(slot, None)
