from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from topic_relay.bindings.models import ModelRef


class ConfigError(Exception):
    pass


@dataclass
class RuntimeEnv:
    telegram_bot_token: str
    allowed_user_ids: set[int]
    backend_base_url: str
    backend_username: str | None
    backend_password: str | None


@dataclass
class AppConfig:
    backend_name: str
    state_file_path: str
    default_model: ModelRef
    allowed_workspace_roots: list[str]
    allowed_models: list[str]
    max_attachment_bytes: int
    prompt_coalesce_seconds: float
    reply_coalesce_seconds: float
    progress_tick_seconds: float
    progress_min_edit_seconds: float
    progress_min_send_seconds: float
    progress_delete_delay_seconds: float
    topic_rename_min_seconds: float
    flood_jitter_seconds: float
    final_delivery_flood_retries: int
    backend_prompt_timeout_seconds: float | None
    poll_timeout_seconds: int
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        try:
            with open(config_path) as f:
                return json.load(f)
        except json.JSONDecodeError as ex:
            raise ConfigError(f"config.json is not valid JSON: {ex}") from ex
    return {}


def _non_negative(config: dict, key: str, default: float) -> float:
    raw = config.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from ex
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _parse_model(value: object) -> ModelRef:
    if isinstance(value, dict):
        try:
            return ModelRef.from_dict(value)
        except (KeyError, TypeError) as ex:
            raise ConfigError(f"DefaultModel must have providerID and modelID: {value!r}") from ex
    text = str(value or "").strip()
    provider_id, sep, model_id = text.partition("/")
    if not sep or not provider_id or not model_id:
        raise ConfigError(f"DefaultModel must look like 'provider/model', got {text!r}")
    return ModelRef(provider_id=provider_id, model_id=model_id)


def parse_app_config(config: dict) -> AppConfig:
    roots = config.get("AllowedWorkspaceRoots", [])
    if not isinstance(roots, list) or not all(isinstance(r, str) for r in roots):
        raise ConfigError("AllowedWorkspaceRoots must be a list of paths")
    for root in roots:
        if not Path(root).is_absolute():
            raise ConfigError(f"Workspace root must be absolute: {root}")

    timeout = config.get("BackendPromptTimeoutSeconds")
    return AppConfig(
        backend_name=str(config.get("Backend", "opencode")).strip().lower(),
        state_file_path=str(config.get("StateFilePath", ".topic-relay/bindings.json")),
        default_model=_parse_model(config.get("DefaultModel", "openai/gpt-5.3-codex")),
        allowed_workspace_roots=roots,
        allowed_models=[str(m) for m in config.get("AllowedModels", [])],
        max_attachment_bytes=int(_non_negative(config, "MaxAttachmentBytes", 20 * 1024 * 1024)),
        prompt_coalesce_seconds=_non_negative(config, "PromptCoalesceSeconds", 1.5),
        reply_coalesce_seconds=_non_negative(config, "ReplyCoalesceSeconds", 30.0),
        progress_tick_seconds=_non_negative(config, "ProgressTickSeconds", 3.0),
        progress_min_edit_seconds=_non_negative(config, "ProgressMinEditSeconds", 2.5),
        progress_min_send_seconds=_non_negative(config, "ProgressMinSendSeconds", 1.2),
        progress_delete_delay_seconds=_non_negative(config, "ProgressDeleteDelaySeconds", 5.0),
        topic_rename_min_seconds=_non_negative(config, "TopicRenameMinSeconds", 5.0),
        flood_jitter_seconds=_non_negative(config, "FloodJitterSeconds", 0.25),
        final_delivery_flood_retries=int(_non_negative(config, "FinalDeliveryFloodRetries", 2)),
        backend_prompt_timeout_seconds=_non_negative(config, "BackendPromptTimeoutSeconds", 0) if timeout else None,
        poll_timeout_seconds=int(_non_negative(config, "PollTimeoutSeconds", 30)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def _parse_user_ids(raw: str) -> set[int]:
    ids: set[int] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            ids.add(int(item))
        except ValueError as ex:
            raise ConfigError(f"TELEGRAM_ALLOWED_USER_IDS contains a non-numeric id: {item!r}") from ex
    return ids


def resolve_runtime_env() -> RuntimeEnv:
    token = os.environ.get("TELEGRAM_BOT_TOKEN", "").strip()
    if not token:
        raise ConfigError("TELEGRAM_BOT_TOKEN environment variable is required.")

    allowed = _parse_user_ids(os.environ.get("TELEGRAM_ALLOWED_USER_IDS", ""))
    if not allowed:
        raise ConfigError("TELEGRAM_ALLOWED_USER_IDS must list at least one numeric user id.")

    return RuntimeEnv(
        telegram_bot_token=token,
        allowed_user_ids=allowed,
        backend_base_url=os.environ.get("OPENCODE_BASE_URL", "http://127.0.0.1:4096").strip(),
        backend_username=os.environ.get("OPENCODE_USERNAME") or None,
        backend_password=os.environ.get("OPENCODE_PASSWORD") or None,
    )
