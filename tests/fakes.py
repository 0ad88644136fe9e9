import asyncio
import shutil
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from topic_relay.bindings.models import Binding, ModelRef, SessionState
from topic_relay.bindings.store import BindingStore
from topic_relay.coalescer import PromptCoalescer
from topic_relay.dispatch_engine import DispatchEngine
from topic_relay.progress import LiveProgressReporter
from topic_relay.prompts import PendingPrompt, PromptPart
from topic_relay.session_runtime import RuntimeTable
from topic_relay.thread_delivery import ThreadDelivery
from topic_relay.topic_names import TopicNamer
from topic_relay.transport import Attachment

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every chat call. Queued errors are raised by the next matching call."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.deleted: list[tuple[int, int]] = []
        self.renames: list[tuple[int, int, str]] = []
        self.send_errors: list[Exception] = []
        self.edit_errors: list[Exception] = []
        self.rename_errors: list[Exception] = []
        self.topic_errors: list[Exception] = []
        self.attachments: dict[str, Attachment] = {}
        self.next_topic_id = 500
        self._next_message_id = 1000

    async def send_message(self, chat_id, text, *, thread_id=None, reply_to_message_id=None, parse_mode=None) -> int:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self._next_message_id += 1
        self.sent.append(
            {
                "chat_id": chat_id,
                "thread_id": thread_id,
                "text": text,
                "reply_to_message_id": reply_to_message_id,
                "parse_mode": parse_mode,
                "message_id": self._next_message_id,
            }
        )
        return self._next_message_id

    async def edit_message(self, chat_id, message_id, text, *, parse_mode=None) -> None:
        if self.edit_errors:
            raise self.edit_errors.pop(0)
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})

    async def delete_message(self, chat_id, message_id) -> None:
        self.deleted.append((chat_id, message_id))

    async def create_topic(self, chat_id, name) -> int:
        if self.topic_errors:
            raise self.topic_errors.pop(0)
        self.next_topic_id += 1
        return self.next_topic_id

    async def edit_topic_name(self, chat_id, thread_id, name) -> None:
        if self.rename_errors:
            raise self.rename_errors.pop(0)
        self.renames.append((chat_id, thread_id, name))

    async def download_attachment(self, file_id) -> Attachment:
        return self.attachments[file_id]

    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent]


def make_backend() -> MagicMock:
    backend = MagicMock()
    backend.prompt = AsyncMock(return_value={"info": {"id": "msg-1"}, "parts": [{"type": "text", "text": "done"}]})
    backend.summarize = AsyncMock(return_value=None)
    backend.messages = AsyncMock(return_value=[])
    backend.abort = AsyncMock(return_value=None)
    backend.revert = AsyncMock(return_value=None)
    backend.unrevert = AsyncMock(return_value=None)
    backend.create_session = AsyncMock(return_value={"id": "ses_new", "title": "New session"})
    backend.get_session = AsyncMock(return_value={"id": "ses_abc123def456xyz", "title": "Live title"})
    backend.list_sessions = AsyncMock(return_value=[])
    backend.update_title = AsyncMock(return_value={"title": "Renamed"})
    backend.reply_permission = AsyncMock(return_value=None)
    return backend


def make_binding(
    session_id: str = "ses_abc123def456xyz",
    *,
    chat_id: int = -100,
    thread_id: int = 7,
    state: SessionState = SessionState.IDLE,
    **changes,
) -> Binding:
    binding = Binding(
        chat_id=chat_id,
        thread_id=thread_id,
        workspace_path="/work/project",
        session_id=session_id,
        state=state,
        model=ModelRef(provider_id="openai", model_id="gpt-5.3-codex"),
        created_by=42,
        created_at=1_700_000_000_000,
        updated_at=1_700_000_000_000,
    )
    return binding.with_changes(**changes) if changes else binding


def make_prompt(message_id: int, text: str, *, user_id: int = 42, created_at: float = 100.0, **kwargs) -> PendingPrompt:
    return PendingPrompt(
        source_message_id=message_id,
        user_id=user_id,
        created_at=created_at,
        parts=[PromptPart.text_part(text)],
        **kwargs,
    )


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def build_relay(store: BindingStore, backend, transport: FakeTransport, *, clock: FakeClock | None = None):
    """Wire the dispatch pipeline with a ticker that never fires and instant backoff."""
    clock = clock or FakeClock()
    runtimes = RuntimeTable(clock=clock)
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    delivery = ThreadDelivery(transport, sleep=record_sleep)
    topics = TopicNamer(transport, runtimes, clock=clock)
    progress = LiveProgressReporter(
        transport,
        runtimes,
        tick_seconds=3600,
        delete_delay_seconds=0,
        lookup=store.get_by_session,
        clock=clock,
    )
    engine = DispatchEngine(backend, store, runtimes, progress, delivery, topics, clock=clock)
    coalescer = PromptCoalescer(runtimes, store, engine, progress)
    return SimpleNamespace(
        store=store,
        runtimes=runtimes,
        delivery=delivery,
        topics=topics,
        progress=progress,
        engine=engine,
        coalescer=coalescer,
        clock=clock,
        sleeps=sleeps,
    )


class TempDirTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def new_store(self, name: str = "bindings.json") -> BindingStore:
        return BindingStore(str(self._tmp_dir / name))
