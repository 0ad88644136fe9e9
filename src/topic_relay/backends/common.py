from __future__ import annotations

import httpx
from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

# Network-level failures worth another attempt; HTTP error bodies are not.
TRANSIENT_HTTP_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.ConnectTimeout,
)


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


def default_retry_kwargs(
    exception_types: tuple[type[Exception], ...] = TRANSIENT_HTTP_ERRORS,
    *,
    attempts: int = 3,
) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=0.5, min=0.5, max=8),
        "stop": stop_after_attempt(attempts),
        "before_sleep": _on_retry,
        "reraise": True,
    }
