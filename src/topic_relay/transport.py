from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


class TransportError(Exception):
    """Failed chat transport call, carrying the platform's error metadata."""

    def __init__(
        self,
        message: str,
        *,
        description: str = "",
        error_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.description = description
        self.error_code = error_code
        self.retry_after = retry_after


@dataclass(frozen=True)
class Attachment:
    filename: str
    mime: str
    data: bytes


@dataclass(frozen=True)
class DocumentRef:
    file_id: str
    filename: str | None = None
    mime: str | None = None


@dataclass(frozen=True)
class ReplyContext:
    message_id: int
    from_name: str | None = None
    text: str | None = None
    caption: str | None = None
    has_photo: bool = False
    document_name: str | None = None
    document_mime: str | None = None


@dataclass(frozen=True)
class InboundMessage:
    chat_id: int
    chat_type: str
    message_id: int
    user_id: int
    thread_id: int | None = None
    media_group_id: str | None = None
    text: str | None = None
    caption: str | None = None
    photo_file_id: str | None = None
    document: DocumentRef | None = None
    reply_context: ReplyContext | None = None


@runtime_checkable
class ChatTransport(Protocol):
    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> int:
        """Send a message and return its message id."""
        ...

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
    ) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def create_topic(self, chat_id: int, name: str) -> int:
        """Create a forum topic and return its thread id."""
        ...

    async def edit_topic_name(self, chat_id: int, thread_id: int, name: str) -> None: ...

    async def download_attachment(self, file_id: str) -> Attachment: ...
