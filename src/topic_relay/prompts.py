from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

PROMPT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class PromptPart:
    type: Literal["text", "file"]
    text: str | None = None
    mime: str | None = None
    filename: str | None = None
    url: str | None = None

    @classmethod
    def text_part(cls, text: str) -> PromptPart:
        return cls(type="text", text=text)

    @classmethod
    def file_part(cls, *, mime: str, filename: str, url: str) -> PromptPart:
        return cls(type="file", mime=mime, filename=filename, url=url)

    def to_request(self) -> dict:
        if self.type == "text":
            return {"type": "text", "text": self.text or ""}
        return {
            "type": "file",
            "mime": self.mime or "application/octet-stream",
            "filename": self.filename,
            "url": self.url or "",
        }


@dataclass(frozen=True)
class PendingPrompt:
    source_message_id: int
    user_id: int
    created_at: float
    parts: list[PromptPart] = field(default_factory=list)
    reply_to_message_id: int | None = None
    media_group_id: str | None = None

    @property
    def text(self) -> str:
        text, _ = flatten_parts(self.parts)
        return text


def flatten_parts(parts: list[PromptPart]) -> tuple[str, list[PromptPart]]:
    """Split parts into the joined text and the file parts, preserving order."""
    chunks: list[str] = []
    files: list[PromptPart] = []
    for part in parts:
        if part.type == "text":
            value = (part.text or "").strip()
            if value:
                chunks.append(value)
            continue
        files.append(part)
    return "\n\n".join(chunks).strip(), files


def merge_prompts(left: PendingPrompt, right: PendingPrompt) -> PendingPrompt:
    left_text, left_files = flatten_parts(left.parts)
    right_text, right_files = flatten_parts(right.parts)
    merged_text = PROMPT_SEPARATOR.join(t for t in (left_text, right_text) if t).strip()

    parts: list[PromptPart] = []
    if merged_text:
        parts.append(PromptPart.text_part(merged_text))
    parts.extend(left_files)
    parts.extend(right_files)

    return PendingPrompt(
        source_message_id=left.source_message_id,
        reply_to_message_id=left.reply_to_message_id,
        user_id=left.user_id,
        created_at=right.created_at,
        media_group_id=left.media_group_id or right.media_group_id,
        parts=parts,
    )


def should_coalesce(
    left: PendingPrompt,
    right: PendingPrompt,
    *,
    debounce_seconds: float,
    reply_window_seconds: float,
) -> bool:
    if left.user_id != right.user_id:
        return False

    if left.media_group_id and right.media_group_id:
        return left.media_group_id == right.media_group_id

    delta = abs(right.created_at - left.created_at)
    if right.reply_to_message_id is not None and right.reply_to_message_id == left.source_message_id:
        return delta <= reply_window_seconds
    return delta <= debounce_seconds
