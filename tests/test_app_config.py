import asyncio
import os
import unittest
from unittest.mock import patch

from topic_relay.app_config import ConfigError, parse_app_config, resolve_runtime_env
from topic_relay.bindings.models import ModelRef
from topic_relay.bootstrap import bootstrap_runtime


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})

        self.assertEqual("opencode", app.backend_name)
        self.assertEqual(ModelRef("openai", "gpt-5.3-codex"), app.default_model)
        self.assertEqual(1.5, app.prompt_coalesce_seconds)
        self.assertEqual(30.0, app.reply_coalesce_seconds)
        self.assertEqual(2.5, app.progress_min_edit_seconds)
        self.assertEqual(1.2, app.progress_min_send_seconds)
        self.assertEqual(2, app.final_delivery_flood_retries)
        self.assertIsNone(app.backend_prompt_timeout_seconds)
        self.assertEqual([], app.allowed_workspace_roots)

    def test_overrides(self) -> None:
        app = parse_app_config(
            {
                "DefaultModel": {"providerID": "anthropic", "modelID": "claude-x"},
                "AllowedWorkspaceRoots": ["/srv/work"],
                "PromptCoalesceSeconds": 0.5,
                "BackendPromptTimeoutSeconds": 600,
                "LogLevel": "DEBUG",
            }
        )

        self.assertEqual(ModelRef("anthropic", "claude-x"), app.default_model)
        self.assertEqual(["/srv/work"], app.allowed_workspace_roots)
        self.assertEqual(0.5, app.prompt_coalesce_seconds)
        self.assertEqual(600.0, app.backend_prompt_timeout_seconds)
        self.assertEqual("DEBUG", app.log_level)

    def test_invalid_values(self) -> None:
        for config in (
            {"AllowedWorkspaceRoots": ["relative/path"]},
            {"PromptCoalesceSeconds": -1},
            {"ProgressTickSeconds": "soon"},
            {"DefaultModel": "no-provider"},
        ):
            with self.subTest(config=config), self.assertRaises(ConfigError):
                parse_app_config(config)


class RuntimeEnvTests(unittest.TestCase):
    def test_resolves_environment(self) -> None:
        env = {
            "TELEGRAM_BOT_TOKEN": "123:abc",
            "TELEGRAM_ALLOWED_USER_IDS": "42, 43,",
            "OPENCODE_BASE_URL": "http://opencode:4096",
            "OPENCODE_PASSWORD": "secret",
        }
        with patch.dict(os.environ, env, clear=True):
            runtime_env = resolve_runtime_env()

        self.assertEqual({42, 43}, runtime_env.allowed_user_ids)
        self.assertEqual("http://opencode:4096", runtime_env.backend_base_url)
        self.assertIsNone(runtime_env.backend_username)
        self.assertEqual("secret", runtime_env.backend_password)

    def test_missing_token(self) -> None:
        with patch.dict(os.environ, {"TELEGRAM_ALLOWED_USER_IDS": "1"}, clear=True):
            with self.assertRaises(ConfigError):
                resolve_runtime_env()

    def test_bad_user_ids(self) -> None:
        for raw in ("", "abc"):
            with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "t", "TELEGRAM_ALLOWED_USER_IDS": raw}, clear=True):
                with self.subTest(raw=raw), self.assertRaises(ConfigError):
                    resolve_runtime_env()

    def test_unknown_backend_is_a_config_error(self) -> None:
        app = parse_app_config({"Backend": "mystery", "LogConsumers": [{"type": "console"}]})
        with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "t", "TELEGRAM_ALLOWED_USER_IDS": "1"}, clear=True):
            env = resolve_runtime_env()

        with patch("topic_relay.bootstrap.BindingStore"), self.assertRaises(ConfigError):
            asyncio.run(bootstrap_runtime(app, env))


if __name__ == "__main__":
    unittest.main()
