from __future__ import annotations

import html
import re
from datetime import UTC, datetime
from pathlib import PurePosixPath

MESSAGE_CHUNK_CHARS = 3500
TOPIC_NAME_MAX_CHARS = 120
SHORT_SESSION_ID_CHARS = 12

_CODE_BLOCK = re.compile(r"```([a-zA-Z0-9_+-]+)?\n?([\s\S]*?)```")
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_LINK = re.compile(r"\[([^\]\n]{1,1000})\]\((https?://[^\s)]+)\)", re.IGNORECASE)
_BOLD = re.compile(r"\*\*([^\n*][^*\n]*?)\*\*")
_STRIKE = re.compile(r"~~([^\n~][^~\n]*?)~~")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.+)$")
_BULLET = re.compile(r"^(\s*)[-*]\s+(.+)$")


def split_message(text: str, max_length: int = MESSAGE_CHUNK_CHARS) -> list[str]:
    if len(text) <= max_length:
        return [text]
    return [text[i : i + max_length] for i in range(0, len(text), max_length)]


def collapse_line(value: str, max_chars: int = 120) -> str:
    single = " ".join(value.split())
    if len(single) <= max_chars:
        return single
    return single[: max(0, max_chars - 3)] + "..."


def trim_with_ellipsis(value: str, max_chars: int = 1200) -> str:
    trimmed = value.strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return trimmed[: max(0, max_chars - 3)] + "..."


def normalize_text_input(text: str | None, caption: str | None) -> str:
    return "\n".join(v for v in (text or "", caption or "") if v).strip()


def format_duration(seconds: float) -> str:
    total = max(0, round(seconds))
    if total < 60:
        return f"{total}s"
    return f"{total // 60}m {total % 60}s"


def format_datetime(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, UTC).strftime("%Y-%m-%d %H:%M:%S") + " UTC"


def short_session_id(session_id: str) -> str:
    return session_id[:SHORT_SESSION_ID_CHARS]


def workspace_label(path: str) -> str:
    return PurePosixPath(path).name or path


def truncate_topic_name(value: str) -> str:
    if len(value) <= TOPIC_NAME_MAX_CHARS:
        return value
    return value[: TOPIC_NAME_MAX_CHARS - 3] + "..."


def _render_inline(text: str) -> str:
    rendered = html.escape(text, quote=False)
    placeholders: list[str] = []

    def stash(match: re.Match) -> str:
        placeholders.append(f"<code>{match.group(1)}</code>")
        return f"\x00{len(placeholders) - 1}\x00"

    rendered = _INLINE_CODE.sub(stash, rendered)
    rendered = _LINK.sub(lambda m: f'<a href="{html.escape(m.group(2))}">{m.group(1)}</a>', rendered)
    rendered = _BOLD.sub(r"<b>\1</b>", rendered)
    rendered = _STRIKE.sub(r"<s>\1</s>", rendered)
    return re.sub(r"\x00(\d+)\x00", lambda m: placeholders[int(m.group(1))], rendered)


def _render_lines(text: str) -> str:
    lines: list[str] = []
    for line in text.split("\n"):
        heading = _HEADING.match(line)
        if heading:
            lines.append(f"<b>{_render_inline(heading.group(1).strip())}</b>")
            continue
        bullet = _BULLET.match(line)
        if bullet:
            lines.append(f"{bullet.group(1)}• {_render_inline(bullet.group(2))}")
            continue
        lines.append(_render_inline(line))
    return "\n".join(lines)


def render_markdown_html(text: str) -> str:
    """Render a small Markdown subset to Telegram's HTML parse mode."""
    if not text.strip():
        return text

    result: list[str] = []
    cursor = 0
    for match in _CODE_BLOCK.finditer(text):
        result.append(_render_lines(text[cursor : match.start()]))
        language = (match.group(1) or "").strip()
        body = html.escape(match.group(2) or "", quote=False)
        if language:
            result.append(f'<pre><code class="language-{html.escape(language)}">{body}</code></pre>')
        else:
            result.append(f"<pre><code>{body}</code></pre>")
        cursor = match.end()
    result.append(_render_lines(text[cursor:]))
    return "".join(result)
