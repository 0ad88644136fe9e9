"""Glue between the chat transport, the binding store and the dispatch engine.

``TopicBridge`` handles inbound chat messages (relay commands and prompts),
backend events, and the session actions behind the ``/oc`` commands.
"""

from __future__ import annotations

import base64
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from topic_relay.bindings.models import Binding, ModelRef, SessionState
from topic_relay.bindings.store import BindingConflict, BindingStore
from topic_relay.coalescer import PromptCoalescer
from topic_relay.commands.router import HELP_TEXT, CommandRouter
from topic_relay.dispatch_engine import DispatchEngine
from topic_relay.events import (
    BackendEvent,
    MessagePartUpdated,
    MessageUpdated,
    PermissionReplied,
    PermissionUpdated,
    QuestionAsked,
    SessionError,
    SessionStatus,
    SessionUpdated,
)
from topic_relay.formatting import format_datetime, normalize_text_input, trim_with_ellipsis, workspace_label
from topic_relay.progress import (
    DEFAULT_REASONING_EFFORT,
    LiveProgressReporter,
    apply_session_status,
    capture_part,
    short_preferences,
)
from topic_relay.prompts import PendingPrompt, PromptPart
from topic_relay.session_backend import SessionBackend
from topic_relay.session_runtime import RuntimeTable
from topic_relay.thread_delivery import ThreadDelivery
from topic_relay.thread_serializer import ThreadSerializer
from topic_relay.topic_names import TopicNamer
from topic_relay.transport import ChatTransport, InboundMessage, ReplyContext, TransportError

EFFORT_VALUES = ("none", "low", "medium", "high", "xhigh")
EFFORT_ALIASES = {"extra_high": "xhigh", "extra-high": "xhigh", "x-high": "xhigh", "extra": "xhigh"}
SUMMARY_VALUES = ("auto", "none", "detailed")
VERBOSITY_VALUES = ("low", "medium", "high")
PERMISSION_RESPONSES = ("once", "always", "reject")

NOT_BOUND_TEXT = "No mapped session in this topic."
ALREADY_BOUND_TEXT = "This topic is already bound to an active session. Use /oc status or /oc close first."


class AttachmentTooLarge(ValueError):
    pass


@dataclass(frozen=True)
class SessionListing:
    id: str
    title: str
    directory: str
    updated_at: float


def compose_reply_context(reply: ReplyContext | None) -> str | None:
    if reply is None:
        return None
    lines = []
    if reply.from_name:
        lines.append(f"From: {reply.from_name}")
    lines.append(f"Message ID: {reply.message_id}")
    quoted = normalize_text_input(reply.text, reply.caption)
    if quoted:
        lines.append(f"Quoted text: {trim_with_ellipsis(quoted, 1500)}")
    if reply.has_photo:
        lines.append("Quoted media: photo")
    if reply.document_name or reply.document_mime:
        mime = f" ({reply.document_mime})" if reply.document_mime else ""
        lines.append(f"Quoted document: {reply.document_name or 'unnamed'}{mime}")
    return "\n".join(lines)


def normalize_effort(value: str) -> str | None:
    value = value.strip().lower()
    if value in EFFORT_VALUES:
        return value
    return EFFORT_ALIASES.get(value)


def is_topic_permission_error(error_text: str) -> bool:
    normalized = error_text.lower()
    return "not enough rights to create a topic" in normalized or "can_manage_topics" in normalized


def is_within_roots(path: Path, roots: Sequence[Path]) -> bool:
    if not roots:
        return True
    return any(path == root or root in path.parents for root in roots)


def _data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class TopicBridge:
    def __init__(
        self,
        *,
        store: BindingStore,
        runtimes: RuntimeTable,
        backend: SessionBackend,
        transport: ChatTransport,
        delivery: ThreadDelivery,
        engine: DispatchEngine,
        coalescer: PromptCoalescer,
        progress: LiveProgressReporter,
        topics: TopicNamer,
        default_model: ModelRef,
        allowed_workspace_roots: Sequence[str] = (),
        allowed_models: Sequence[str] = (),
        max_attachment_bytes: int = 20 * 1024 * 1024,
        serializer: ThreadSerializer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._runtimes = runtimes
        self._backend = backend
        self._transport = transport
        self._delivery = delivery
        self._engine = engine
        self._coalescer = coalescer
        self._progress = progress
        self._topics = topics
        self._default_model = default_model
        self._roots = [Path(root).resolve() for root in allowed_workspace_roots]
        self._allowed_models = [m.lower() for m in allowed_models]
        self._max_attachment_bytes = max_attachment_bytes
        self._serializer = serializer or ThreadSerializer()
        self._clock = clock
        self._permission_messages: dict[str, tuple[int, int]] = {}
        self._commands = CommandRouter(
            on_new=self._cmd_new,
            on_import=self._cmd_import,
            on_sessions=self._cmd_sessions,
            on_status=self._cmd_status,
            on_set=self._cmd_set,
            on_permission=self._cmd_permission,
            on_rename=self.rename_session,
            on_undo=self._cmd_undo,
            on_redo=self._cmd_redo,
            on_stop=self._cmd_stop,
            on_close=self._cmd_close,
            on_help=self._cmd_help,
        )

    # -- inbound messages --

    async def handle_inbound_message(self, message: InboundMessage) -> None:
        key = (message.chat_id, message.thread_id or 0)
        await self._serializer.run_serialized(key, lambda: self._handle_inbound(message))

    async def _handle_inbound(self, message: InboundMessage) -> None:
        if await self._commands.try_handle(message):
            return

        if message.thread_id is None:
            await self._reply(message, "Use /oc new <absolute_workspace_path> in this chat to create a session topic.")
            return

        binding = self._store.get_by_thread(message.chat_id, message.thread_id)
        if binding is None or binding.is_closed:
            await self._reply(message, "Topic is not bound to an OpenCode session. Use /oc new <path>.")
            return

        try:
            prompt = await self.build_prompt(message)
        except AttachmentTooLarge as ex:
            await self._reply(message, str(ex))
            return
        except TransportError as ex:
            logger.warning(f"Attachment download failed for {message.chat_id}:{message.message_id}: {ex}")
            await self._reply(message, f"Failed to download attachment: {ex}")
            return

        if prompt is None:
            await self._reply(message, "Message ignored: empty content and no supported attachments.")
            return
        await self._coalescer.submit(binding, prompt)

    async def build_prompt(self, message: InboundMessage) -> PendingPrompt | None:
        user_text = normalize_text_input(message.text, message.caption)
        reply_context = compose_reply_context(message.reply_context)
        sections = []
        if reply_context:
            sections.append(f"Reply context:\n{reply_context}")
        if user_text:
            sections.append(f"User message:\n{user_text}")
        text = "\n\n".join(sections).strip()

        parts: list[PromptPart] = []
        if text:
            parts.append(PromptPart.text_part(text))

        if message.photo_file_id:
            attachment = await self._transport.download_attachment(message.photo_file_id)
            self._check_size("Photo", len(attachment.data))
            mime = attachment.mime if attachment.mime.startswith("image/") else "image/jpeg"
            parts.append(
                PromptPart.file_part(
                    mime=mime,
                    filename=attachment.filename or "telegram-photo.jpg",
                    url=_data_url(mime, attachment.data),
                )
            )

        if message.document is not None:
            attachment = await self._transport.download_attachment(message.document.file_id)
            self._check_size("Document", len(attachment.data))
            mime = message.document.mime or attachment.mime or "application/octet-stream"
            parts.append(
                PromptPart.file_part(
                    mime=mime,
                    filename=message.document.filename or attachment.filename or "telegram-document",
                    url=_data_url(mime, attachment.data),
                )
            )

        if not parts:
            return None
        return PendingPrompt(
            source_message_id=message.message_id,
            reply_to_message_id=message.reply_context.message_id if message.reply_context else None,
            user_id=message.user_id,
            created_at=self._clock(),
            media_group_id=message.media_group_id,
            parts=parts,
        )

    def _check_size(self, label: str, size: int) -> None:
        if size > self._max_attachment_bytes:
            raise AttachmentTooLarge(f"{label} exceeds the attachment limit ({self._max_attachment_bytes} bytes).")

    # -- backend events --

    async def handle_event(self, event: BackendEvent) -> None:
        if isinstance(event, SessionUpdated):
            await self._on_session_updated(event)
        elif isinstance(event, MessageUpdated):
            await self._on_message_updated(event)
        elif isinstance(event, MessagePartUpdated):
            binding = self._live_binding(event.session_id)
            if binding is not None:
                capture_part(self._runtimes.get(binding.session_id), event.part, event.delta)
                await self._progress.refresh(binding)
        elif isinstance(event, SessionStatus):
            binding = self._live_binding(event.session_id)
            if binding is not None:
                apply_session_status(self._runtimes.get(binding.session_id), event.status, event.attempt)
                await self._progress.refresh(binding)
        elif isinstance(event, SessionError):
            logger.warning(f"Session {event.session_id} reported an error: {event.error}")
        elif isinstance(event, PermissionUpdated):
            await self._on_permission_updated(event)
        elif isinstance(event, PermissionReplied):
            await self._on_permission_replied(event)
        elif isinstance(event, QuestionAsked):
            await self._on_question_asked(event)

    def _live_binding(self, session_id: str) -> Binding | None:
        binding = self._store.get_by_session(session_id)
        if binding is None:
            return None
        runtime = self._runtimes.peek(session_id)
        if runtime is None or not runtime.inflight:
            return None
        return binding

    def _run_in_progress(self, session_id: str) -> bool:
        runtime = self._runtimes.peek(session_id)
        return self._engine.is_owned(session_id) or (runtime is not None and runtime.inflight)

    async def _on_session_updated(self, event: SessionUpdated) -> None:
        binding = self._store.get_by_session(event.session_id)
        if binding is None or event.title is None or event.title == binding.session_title:
            return
        updated = self._store.patch(event.session_id, session_title=event.title)
        await self._topics.update(updated or binding)

    async def _on_message_updated(self, event: MessageUpdated) -> None:
        if event.role != "assistant":
            return
        self._runtimes.get(event.session_id).last_assistant_message_id = event.message_id
        if event.error is None:
            return
        if self._run_in_progress(event.session_id):
            logger.debug(f"Assistant error in {event.session_id} left to the running dispatch: {event.error}")
            return
        binding = self._store.get_by_session(event.session_id)
        if binding is not None and not binding.is_closed:
            await self._delivery.send(binding, f"Error: {event.error}")

    def _permission_text(self, event: PermissionUpdated) -> str:
        lines = [
            f"Permission required: {event.type}",
            f"Title: {event.title}",
            f"Permission ID: {event.permission_id}",
        ]
        if event.pattern:
            lines.append(f"Pattern: {event.pattern}")
        if event.created_at:
            lines.append(f"Created: {format_datetime(event.created_at / 1000)}")
        lines.append(f"Reply with: /oc perm {event.permission_id} <once|always|reject>")
        return "\n".join(lines)

    async def _on_permission_updated(self, event: PermissionUpdated) -> None:
        binding = self._store.get_by_session(event.session_id)
        if binding is None:
            return
        text = self._permission_text(event)
        tracked = self._permission_messages.get(event.permission_id)
        if tracked is not None:
            try:
                await self._transport.edit_message(tracked[0], tracked[1], text)
                return
            except TransportError as ex:
                logger.debug(f"Permission message {event.permission_id} could not be edited: {ex}")
                self._permission_messages.pop(event.permission_id, None)

        message_id = await self._delivery.send_to(binding.chat_id, binding.thread_id, text)
        if message_id:
            self._permission_messages[event.permission_id] = (binding.chat_id, message_id)

    async def _on_permission_replied(self, event: PermissionReplied) -> None:
        binding = self._store.get_by_session(event.session_id)
        if binding is None:
            return
        response = event.response or "unknown"
        tracked = self._permission_messages.pop(event.permission_id, None)
        if tracked is not None:
            try:
                await self._transport.edit_message(
                    tracked[0], tracked[1], f"Permission handled: {event.permission_id}\nResponse: {response}"
                )
                return
            except TransportError as ex:
                logger.error(f"Failed to edit permission message: {ex}")
        await self._delivery.send(binding, f"Permission handled: {event.permission_id} -> {response}")

    async def _on_question_asked(self, event: QuestionAsked) -> None:
        binding = self._store.get_by_session(event.session_id)
        if binding is None or not event.questions:
            return
        lines = [
            f"{index}. {q.header + ': ' if q.header else ''}{q.question}"
            for index, q in enumerate(event.questions, start=1)
        ]
        await self._delivery.send(binding, "Question from OpenCode:\n" + "\n".join(lines))

    # -- session actions --

    async def new_session(self, message: InboundMessage, workspace_path: str) -> Binding | None:
        if not workspace_path:
            await self._reply(message, "Usage: /oc new <absolute_workspace_path>")
            return None
        try:
            resolved = self._resolve_workspace(workspace_path)
        except ValueError as ex:
            await self._reply(message, str(ex))
            return None

        target = await self._resolve_target_thread(message, resolved, "creating")
        if target is None:
            return None
        thread_id, used_current = target

        existing = self._store.get_by_thread(message.chat_id, thread_id)
        if existing is not None and not existing.is_closed:
            await self._delivery.send_to(message.chat_id, thread_id, ALREADY_BOUND_TEXT)
            return None

        stamp = datetime.fromtimestamp(self._clock(), UTC).isoformat(timespec="seconds")
        try:
            created = await self._backend.create_session(str(resolved), f"Telegram {workspace_label(str(resolved))} {stamp}")
        except Exception as ex:
            logger.error(f"Failed to create session in {resolved}: {ex}")
            await self._delivery.send_to(message.chat_id, thread_id, f"Failed to create OpenCode session: {ex}")
            return None

        binding = await self._bind(
            message,
            thread_id,
            workspace=str(resolved),
            session_id=str(created["id"]),
            model=self._default_model,
            title=created.get("title"),
        )
        if binding is not None:
            header = "OpenCode session created in current topic." if used_current else "OpenCode session created."
            await self._delivery.send(binding, self._intro_text(binding, header))
        return binding

    async def import_session(self, message: InboundMessage, session_id: str) -> Binding | None:
        found = next((s for s in await self.collect_sessions() if s.id == session_id), None)
        if found is None:
            await self._reply(message, f"Session not found in allowed roots: {session_id}")
            return None
        directory = Path(found.directory).resolve()
        if not is_within_roots(directory, self._roots):
            await self._reply(message, f"Session directory is outside allowed roots: {directory}")
            return None

        if message.thread_id is not None:
            thread_id, used_current = message.thread_id, True
        else:
            target = await self._resolve_target_thread(message, directory, found.title)
            if target is None:
                return None
            thread_id, used_current = target

        existing = self._store.get_by_thread(message.chat_id, thread_id)
        if existing is not None and not existing.is_closed:
            await self._delivery.send_to(message.chat_id, thread_id, ALREADY_BOUND_TEXT)
            return None

        model = await self._resolve_session_model(str(directory), found.id)
        binding = await self._bind(
            message,
            thread_id,
            workspace=str(directory),
            session_id=found.id,
            model=model,
            title=found.title,
        )
        if binding is not None:
            header = (
                "Imported existing OpenCode session into current topic."
                if used_current
                else "Imported existing OpenCode session."
            )
            await self._delivery.send(binding, self._intro_text(binding, header))
        return binding

    async def close_thread(self, message: InboundMessage) -> Binding | None:
        if message.thread_id is None:
            return None
        binding = self._store.close_by_thread(message.chat_id, message.thread_id)
        if binding is None:
            await self._reply(message, NOT_BOUND_TEXT)
            return None
        self._coalescer.cancel(binding.session_id)
        await self._topics.update(binding)
        await self._delivery.send(binding, "Session mapping closed for this topic.")
        return binding

    async def stop_thread(self, message: InboundMessage) -> bool:
        binding = await self._require_binding(message, "stop")
        if binding is None:
            return False
        try:
            await self._engine.abort(binding)
        except Exception as ex:
            logger.error(f"Failed to abort {binding.session_id}: {ex}")
            await self._delivery.send(binding, f"Failed to stop session: {ex}")
            return False
        return True

    async def revert_session(self, message: InboundMessage, mode: str) -> bool:
        """Undo (revert) or redo (unrevert) the last change of the bound session."""
        binding = await self._require_binding(message, mode)
        if binding is None:
            return False
        action = self._backend.revert if mode == "undo" else self._backend.unrevert
        try:
            await action(binding.workspace_path, binding.session_id)
        except Exception as ex:
            logger.error(f"Failed to {mode} {binding.session_id}: {ex}")
            await self._delivery.send(binding, f"Failed to {mode}: {ex}")
            return False
        await self._delivery.send(binding, "Undo applied." if mode == "undo" else "Redo applied.")
        return True

    def status_text(self, binding: Binding) -> str:
        runtime = self._runtimes.get(binding.session_id)
        lines = [
            f"Status: {binding.state.value}",
            f"Workspace: {binding.workspace_path}",
            f"Session: {binding.session_id}",
            f"Title: {binding.session_title or '-'}",
            *self._profile_lines(binding),
            f"Pending queue: {len(runtime.pending)}",
        ]
        if binding.last_error:
            lines.append(f"Last error: {binding.last_error}")
        return "\n".join(lines)

    async def refresh_title(self, binding: Binding) -> Binding:
        try:
            session = await self._backend.get_session(binding.workspace_path, binding.session_id)
        except Exception as ex:
            logger.debug(f"Session {binding.session_id} lookup failed: {ex}")
            return binding
        title = (session or {}).get("title")
        if not title or title == binding.session_title:
            return binding
        updated = self._store.patch(binding.session_id, session_title=title) or binding
        await self._topics.update(updated)
        return updated

    async def rename_session(self, message: InboundMessage, title: str) -> Binding | None:
        binding = await self._require_binding(message, "rename")
        if binding is None:
            return None
        title = title.strip()
        if not title:
            await self._delivery.send(binding, "Usage: /oc rename <title>")
            return None
        try:
            session = await self._backend.update_title(binding.workspace_path, binding.session_id, title)
        except Exception as ex:
            await self._delivery.send(binding, f"Failed to rename session: {ex}")
            return None
        new_title = (session or {}).get("title") or title
        updated = self._store.patch(binding.session_id, session_title=new_title) or binding
        await self._topics.update(updated)
        await self._delivery.send(updated, f"Session renamed to: {new_title}")
        return updated

    async def set_preference(self, message: InboundMessage, key: str, value: str) -> Binding | None:
        binding = await self._require_binding(message, "set")
        if binding is None:
            return None
        key = key.strip().lower()
        value = value.strip().lower()
        if not key or not value:
            await self._delivery.send(binding, "Usage: /oc set <model|effort|summary|verbosity> <value>")
            return None

        changes: dict = {}
        if key == "model":
            provider_id, _, model_id = value.rpartition("/")
            if self._allowed_models and model_id not in self._allowed_models:
                await self._delivery.send(binding, f"Allowed model values: {', '.join(self._allowed_models)}")
                return None
            changes["model"] = ModelRef(provider_id=provider_id or binding.model.provider_id, model_id=model_id)
        elif key in ("effort", "reasoning_effort"):
            effort = normalize_effort(value)
            if effort is None:
                await self._delivery.send(
                    binding, "Allowed effort values: low, medium, high, xhigh, none (aliases: extra_high, extra-high, x-high)"
                )
                return None
            changes["reasoning_effort"] = effort
        elif key in ("summary", "reasoning_summary"):
            if value not in SUMMARY_VALUES:
                await self._delivery.send(binding, f"Allowed summary values: {', '.join(SUMMARY_VALUES)}")
                return None
            changes["reasoning_summary"] = value
        elif key in ("verbosity", "text_verbosity"):
            if value not in VERBOSITY_VALUES:
                await self._delivery.send(binding, f"Allowed verbosity values: {', '.join(VERBOSITY_VALUES)}")
                return None
            changes["text_verbosity"] = value
        else:
            await self._delivery.send(binding, "Unknown key. Use: model, effort, summary, verbosity")
            return None

        updated = self._store.patch(binding.session_id, **changes)
        if updated is None:
            await self._delivery.send(binding, "Failed to update settings.")
            return None
        await self._delivery.send(updated, "\n".join(["Session settings updated.", *self._profile_lines(updated)]))
        return updated

    async def reply_permission(self, message: InboundMessage, permission_id: str, response: str) -> bool:
        binding = await self._require_binding(message, "perm")
        if binding is None:
            return False
        response = response.strip().lower()
        if response == "deny":
            response = "reject"
        if not permission_id or response not in PERMISSION_RESPONSES:
            await self._delivery.send(binding, "Usage: /oc perm <permission_id> <once|always|reject>")
            return False
        try:
            await self._backend.reply_permission(binding.workspace_path, binding.session_id, permission_id, response)
        except Exception as ex:
            await self._delivery.send(binding, f"Failed to respond to permission: {ex}")
            return False

        tracked = self._permission_messages.pop(permission_id, None)
        if tracked is not None:
            try:
                await self._transport.edit_message(
                    tracked[0], tracked[1], f"Permission handled: {permission_id}\nResponse: {response}"
                )
            except TransportError as ex:
                logger.debug(f"Permission message {permission_id} could not be edited: {ex}")
        await self._delivery.send(binding, f"Permission response sent: {permission_id} -> {response}")
        return True

    async def collect_sessions(self) -> list[SessionListing]:
        roots = [str(root) for root in self._roots] or [str(Path.cwd())]
        latest: dict[str, SessionListing] = {}
        for root in roots:
            try:
                sessions = await self._backend.list_sessions(root)
            except Exception as ex:
                logger.error(f"Failed to list sessions for {root}: {ex}")
                continue
            for item in sessions:
                if not isinstance(item, dict) or not item.get("id"):
                    continue
                times = item.get("time") if isinstance(item.get("time"), dict) else {}
                listing = SessionListing(
                    id=str(item["id"]),
                    title=str(item.get("title") or ""),
                    directory=str(item.get("directory") or root),
                    updated_at=float(times.get("updated") or times.get("created") or 0),
                )
                previous = latest.get(listing.id)
                if previous is None or listing.updated_at > previous.updated_at:
                    latest[listing.id] = listing
        return sorted(latest.values(), key=lambda s: s.updated_at, reverse=True)

    async def sessions_text(self, limit: int = 12, offset: int = 0) -> str:
        sessions = await self.collect_sessions()
        if not sessions:
            return "No sessions found in allowed workspace roots."
        page_size = max(1, min(limit, 20))
        offset = max(0, min(offset, len(sessions) - 1))
        rows = []
        for index, session in enumerate(sessions[offset : offset + page_size], start=offset + 1):
            mapped = "mapped" if self._store.get_by_session(session.id) else "free"
            updated = format_datetime(session.updated_at / 1000) if session.updated_at else "n/a"
            rows.append(
                f"{index}. {session.id} | {workspace_label(session.directory)} | {mapped} | {updated}\n   {session.title}"
            )
        shown_to = min(offset + page_size, len(sessions))
        return (
            f"Sessions available for import ({offset + 1}-{shown_to} of {len(sessions)}):\n\n"
            + "\n\n".join(rows)
            + "\n\nUse /oc import <session_id> to bind one to a topic."
        )

    # -- helpers --

    async def _reply(self, message: InboundMessage, text: str) -> None:
        await self._delivery.send_to(
            message.chat_id,
            message.thread_id,
            text,
            reply_to_message_id=message.message_id,
        )

    async def _require_binding(self, message: InboundMessage, command: str) -> Binding | None:
        if message.thread_id is None:
            await self._reply(message, f"Use /oc {command} inside a session topic.")
            return None
        binding = self._store.get_by_thread(message.chat_id, message.thread_id)
        if binding is None or binding.is_closed:
            await self._delivery.send_to(message.chat_id, message.thread_id, NOT_BOUND_TEXT)
            return None
        return binding

    def _resolve_workspace(self, raw: str) -> Path:
        path = Path(raw.strip())
        if not path.is_absolute():
            raise ValueError("Workspace path must be absolute.")
        resolved = path.resolve()
        if not resolved.is_dir():
            raise ValueError(f"Workspace does not exist: {resolved}")
        if not is_within_roots(resolved, self._roots):
            raise ValueError(f"Path is outside allowed roots: {resolved}")
        return resolved

    async def _resolve_target_thread(
        self,
        message: InboundMessage,
        workspace: Path,
        label: str,
    ) -> tuple[int, bool] | None:
        try:
            thread_id = await self._transport.create_topic(
                message.chat_id, f"{workspace_label(str(workspace))} | {label}"[:120]
            )
            return thread_id, False
        except TransportError as ex:
            error_text = f"{ex} {ex.description}"
            if message.thread_id is not None and is_topic_permission_error(error_text):
                await self._delivery.send_to(
                    message.chat_id,
                    message.thread_id,
                    "Bot has no rights to create new topics, using current topic for this session.",
                )
                return message.thread_id, True
            await self._delivery.send_to(message.chat_id, message.thread_id, f"Failed to create forum topic: {ex}")
            return None

    async def _resolve_session_model(self, directory: str, session_id: str) -> ModelRef:
        try:
            history = await self._backend.messages(directory, session_id, 200)
        except Exception as ex:
            logger.error(f"Failed to resolve session model for {session_id}: {ex}")
            return self._default_model
        for entry in reversed(history):
            info = entry.get("info") if isinstance(entry, dict) else None
            model = info.get("model") if isinstance(info, dict) and info.get("role") == "user" else None
            if isinstance(model, dict) and isinstance(model.get("providerID"), str) and isinstance(model.get("modelID"), str):
                return ModelRef.from_dict(model)
        return self._default_model

    async def _bind(
        self,
        message: InboundMessage,
        thread_id: int,
        *,
        workspace: str,
        session_id: str,
        model: ModelRef,
        title: str | None,
    ) -> Binding | None:
        now = int(self._clock() * 1000)
        binding = Binding(
            chat_id=message.chat_id,
            thread_id=thread_id,
            workspace_path=workspace,
            session_id=session_id,
            state=SessionState.IDLE,
            model=model,
            reasoning_effort=DEFAULT_REASONING_EFFORT,
            created_by=message.user_id,
            created_at=now,
            updated_at=now,
            session_title=title or None,
        )
        try:
            self._store.upsert(binding)
        except BindingConflict as ex:
            await self._delivery.send_to(message.chat_id, thread_id, f"Cannot bind session: {ex}")
            return None
        self._runtimes.get(session_id)
        logger.info(f"Bound session {session_id} to {message.chat_id}:{thread_id} ({workspace})")
        await self._topics.update(binding)
        return binding

    def _profile_lines(self, binding: Binding) -> list[str]:
        return [f"Model: {binding.model.provider_id}/{binding.model.model_id}", short_preferences(binding)]

    def _intro_text(self, binding: Binding, header: str) -> str:
        return "\n".join(
            [
                header,
                f"Workspace: {binding.workspace_path}",
                f"Session: {binding.session_id}",
                *self._profile_lines(binding),
                "Send your prompt in this topic.",
            ]
        )

    # -- command handlers --

    async def _cmd_new(self, message: InboundMessage, args: str) -> None:
        await self.new_session(message, args)

    async def _cmd_import(self, message: InboundMessage, args: str) -> None:
        words = args.split()
        if not words or words[0].lower() == "list":
            numbers = [int(w) for w in words[1:3] if w.isdigit()]
            limit = numbers[0] if numbers else 12
            offset = numbers[1] if len(numbers) > 1 else 0
            await self._reply(message, await self.sessions_text(limit, offset))
            return
        await self.import_session(message, words[0])

    async def _cmd_sessions(self, message: InboundMessage, args: str) -> None:
        await self._reply(message, await self.sessions_text())

    async def _cmd_status(self, message: InboundMessage, args: str) -> None:
        if message.thread_id is None:
            await self._reply(message, "Use /oc status inside a session topic.")
            return
        binding = self._store.get_by_thread(message.chat_id, message.thread_id)
        if binding is None:
            await self._delivery.send_to(message.chat_id, message.thread_id, NOT_BOUND_TEXT)
            return
        if not binding.is_closed:
            binding = await self.refresh_title(binding)
        await self._delivery.send(binding, self.status_text(binding))

    async def _cmd_set(self, message: InboundMessage, args: str) -> None:
        key, _, value = args.partition(" ")
        await self.set_preference(message, key, value)

    async def _cmd_permission(self, message: InboundMessage, args: str) -> None:
        words = args.split()
        await self.reply_permission(message, words[0] if words else "", words[1] if len(words) > 1 else "")

    async def _cmd_stop(self, message: InboundMessage, args: str) -> None:
        await self.stop_thread(message)

    async def _cmd_undo(self, message: InboundMessage, args: str) -> None:
        await self.revert_session(message, "undo")

    async def _cmd_redo(self, message: InboundMessage, args: str) -> None:
        await self.revert_session(message, "redo")

    async def _cmd_close(self, message: InboundMessage, args: str) -> None:
        if message.thread_id is None:
            await self._reply(message, "Use /oc close inside a session topic.")
            return
        await self.close_thread(message)

    async def _cmd_help(self, message: InboundMessage, args: str) -> None:
        await self._reply(message, HELP_TEXT)
