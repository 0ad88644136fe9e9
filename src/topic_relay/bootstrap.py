from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from topic_relay.app_config import AppConfig, ConfigError, RuntimeEnv
from topic_relay.bindings.store import BindingStore
from topic_relay.bridge import TopicBridge
from topic_relay.coalescer import PromptCoalescer
from topic_relay.dispatch_engine import DispatchEngine
from topic_relay.event_feed import EventFeed
from topic_relay.logging_config import setup_logging
from topic_relay.progress import LiveProgressReporter
from topic_relay.session_backend import SessionBackend, create_backend
from topic_relay.session_runtime import RuntimeTable
from topic_relay.thread_delivery import ThreadDelivery
from topic_relay.topic_names import TopicNamer
from topic_relay.transports.telegram_transport import TelegramTransport
from topic_relay.transports.telegram_updates import UpdatePoller


@dataclass
class AppRuntime:
    store: BindingStore
    backend: SessionBackend
    transport: TelegramTransport
    engine: DispatchEngine
    progress: LiveProgressReporter
    bridge: TopicBridge
    event_feed: EventFeed
    poller: UpdatePoller
    log_descriptions: list[str]

    async def start(self) -> None:
        await self.event_feed.start()
        await self.poller.start()

    async def close(self) -> None:
        await self.poller.stop()
        await self.event_feed.close()
        await self.engine.close()
        await self.progress.close()
        await self.backend.close()
        await self.transport.close()


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    state_path = Path(app.state_file_path)
    if not state_path.is_absolute():
        state_path = Path.cwd() / state_path
    store = BindingStore(str(state_path))

    try:
        backend = create_backend(
            app.backend_name,
            env.backend_base_url,
            username=env.backend_username,
            password=env.backend_password,
            prompt_timeout_seconds=app.backend_prompt_timeout_seconds,
        )
    except ValueError as ex:
        raise ConfigError(str(ex)) from ex
    transport = TelegramTransport(env.telegram_bot_token)

    runtimes = RuntimeTable(flood_jitter_seconds=app.flood_jitter_seconds)
    delivery = ThreadDelivery(
        transport,
        flood_retries=app.final_delivery_flood_retries,
        jitter_seconds=app.flood_jitter_seconds,
    )
    topics = TopicNamer(transport, runtimes, rename_min_seconds=app.topic_rename_min_seconds)
    progress = LiveProgressReporter(
        transport,
        runtimes,
        tick_seconds=app.progress_tick_seconds,
        min_edit_seconds=app.progress_min_edit_seconds,
        min_send_seconds=app.progress_min_send_seconds,
        delete_delay_seconds=app.progress_delete_delay_seconds,
        lookup=store.get_by_session,
    )
    engine = DispatchEngine(
        backend,
        store,
        runtimes,
        progress,
        delivery,
        topics,
        debounce_seconds=app.prompt_coalesce_seconds,
        reply_window_seconds=app.reply_coalesce_seconds,
    )
    coalescer = PromptCoalescer(
        runtimes,
        store,
        engine,
        progress,
        debounce_seconds=app.prompt_coalesce_seconds,
        reply_window_seconds=app.reply_coalesce_seconds,
    )
    bridge = TopicBridge(
        store=store,
        runtimes=runtimes,
        backend=backend,
        transport=transport,
        delivery=delivery,
        engine=engine,
        coalescer=coalescer,
        progress=progress,
        topics=topics,
        default_model=app.default_model,
        allowed_workspace_roots=app.allowed_workspace_roots,
        allowed_models=app.allowed_models,
        max_attachment_bytes=app.max_attachment_bytes,
    )
    event_feed = EventFeed(backend, bridge.handle_event)
    poller = UpdatePoller(
        transport=transport,
        allowed_user_ids=env.allowed_user_ids,
        on_message=bridge.handle_inbound_message,
        poll_timeout_seconds=app.poll_timeout_seconds,
    )
    logger.info(f"Relay wired: {len(store.list_all())} binding(s), backend={app.backend_name} at {env.backend_base_url}")

    return AppRuntime(
        store=store,
        backend=backend,
        transport=transport,
        engine=engine,
        progress=progress,
        bridge=bridge,
        event_feed=event_feed,
        poller=poller,
        log_descriptions=log_descriptions,
    )
