"""Turns backend message parts into the text delivered to the thread.

When a prompt response carries no usable text, the session history is
searched for the best assistant message of the current run. Candidates are
ranked by what they contain (final text, then files, then reasoning, then
tool-only) on top of their timestamp, with a penalty for messages whose tools
are still running.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

EMPTY_ASSISTANT_OUTPUT = "Assistant finished without final text output."
TOOLS_ONLY_PREFIX = "Assistant ran tools but returned no final text yet:"
REASONING_PREVIEW_CHARS = 2000

HISTORY_LIMIT = 200
RUN_WINDOW_SLACK_MS = 5_000

TEXT_BONUS = 3_000_000_000_000
FILE_BONUS = 2_000_000_000_000
REASONING_BONUS = 1_000_000_000_000
TOOL_ONLY_BONUS = 100_000_000_000
RUNNING_TOOL_PENALTY = 500_000_000_000


@dataclass(frozen=True)
class AssistantOutput:
    message_id: str
    text: str


def _parts_of(parts: Any) -> list[dict]:
    return [p for p in parts if isinstance(p, dict)] if isinstance(parts, list) else []


def extract_assistant_text(parts: Any) -> str:
    parts = _parts_of(parts)

    text = "".join(p["text"] for p in parts if p.get("type") == "text" and isinstance(p.get("text"), str)).strip()
    if text:
        return text

    files = [p.get("filename") or p.get("url") for p in parts if p.get("type") == "file"]
    files = [f for f in files if f]
    if files:
        return "Assistant returned file output:\n" + "\n".join(files)

    reasoning = "\n\n".join(
        p["text"].strip()
        for p in parts
        if p.get("type") == "reasoning" and isinstance(p.get("text"), str) and p["text"].strip()
    ).strip()
    if reasoning:
        return f"Assistant reasoning:\n{reasoning[:REASONING_PREVIEW_CHARS]}"

    tools = []
    for p in parts:
        if p.get("type") != "tool":
            continue
        state = p.get("state") if isinstance(p.get("state"), dict) else {}
        tools.append(f"- {p.get('tool') or 'tool'}: {state.get('status') or 'unknown'}")
    if tools:
        return TOOLS_ONLY_PREFIX + "\n" + "\n".join(tools)

    return EMPTY_ASSISTANT_OUTPUT


def needs_history_fallback(text: str) -> bool:
    return text == EMPTY_ASSISTANT_OUTPUT or text.startswith(TOOLS_ONLY_PREFIX)


def _info(entry: dict) -> dict:
    info = entry.get("info")
    return info if isinstance(info, dict) else {}


def _time(info: dict, key: str) -> float:
    time_info = info.get("time")
    if not isinstance(time_info, dict):
        return 0
    value = time_info.get(key)
    return value if isinstance(value, (int, float)) else 0


def score_message(entry: dict) -> float:
    info = _info(entry)
    parts = _parts_of(entry.get("parts"))

    def text_len(kind: str) -> int:
        return sum(len(str(p.get("text") or "").strip()) for p in parts if p.get("type") == kind)

    has_running_tool = any(
        p.get("type") == "tool"
        and isinstance(p.get("state"), dict)
        and p["state"].get("status") in ("pending", "running")
        for p in parts
    )

    score = _time(info, "completed") or _time(info, "created")
    if text_len("text") > 0:
        score += TEXT_BONUS
    elif any(p.get("type") == "file" for p in parts):
        score += FILE_BONUS
    elif text_len("reasoning") > 0:
        score += REASONING_BONUS
    else:
        score += TOOL_ONLY_BONUS
    if has_running_tool:
        score -= RUNNING_TOOL_PENALTY
    return score


def pick_latest_assistant_output(
    messages: list[dict],
    *,
    run_started_at: float | None,
    exclude_message_id: str | None,
) -> AssistantOutput | None:
    """Choose the best assistant message from a session history listing.

    ``run_started_at`` is in seconds; backend message times are epoch ms.
    """
    assistant = [m for m in messages if isinstance(m, dict) and _info(m).get("role") == "assistant"]
    pool = assistant
    if run_started_at:
        cutoff = run_started_at * 1000 - RUN_WINDOW_SLACK_MS
        scoped = [m for m in assistant if _time(_info(m), "created") >= cutoff]
        pool = scoped or assistant

    candidates = [m for m in pool if str(_info(m).get("id") or "") != (exclude_message_id or "")]
    if not candidates:
        return None
    best = max(candidates, key=score_message)
    return AssistantOutput(
        message_id=str(_info(best).get("id") or ""),
        text=extract_assistant_text(best.get("parts")),
    )
