"""Tests for configuration loading and validation."""

from __future__ import annotations

from copy import deepcopy
import os
import tempfile
from pathlib import Path
import unittest
from unittest.mock import patch

from streamchat.config import DEFAULT_CONFIG, StreamConfig, load_config
from streamchat.models import ProviderKind


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def _load(self, text: str | None = None, env: dict[str, str] | None = None):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            if text is not None:
                config_path.write_text(text.strip(), encoding="utf-8")
            with patch.dict(os.environ, env or {}, clear=True):
                return load_config(config_path=config_path)

    def test_missing_config_uses_defaults(self) -> None:
        config = self._load()
        self.assertEqual(config["app"]["title"], DEFAULT_CONFIG["app"]["title"])
        self.assertEqual(config["provider"]["active"], "gemini")
        self.assertEqual(config["stream"]["max_retries"], 2)
        self.assertEqual(config["attachments"]["max_text_attachment_chars"], 4000)
        self.assertEqual(config["storage"]["page_size"], 50)
        self.assertEqual(config["logging"]["level"], DEFAULT_CONFIG["logging"]["level"])

    def test_partial_config_overrides_selected_values(self) -> None:
        config = self._load(
            """
[provider]
active = " OpenAI "

[openai]
model = "gpt-4o-mini"
base_url = "https://example.test/v1/"
            """
        )
        self.assertEqual(config["provider"]["active"], "openai")
        self.assertEqual(config["openai"]["model"], "gpt-4o-mini")
        self.assertEqual(config["openai"]["base_url"], "https://example.test/v1")
        self.assertEqual(config["gemini"]["model"], DEFAULT_CONFIG["gemini"]["model"])

    def test_invalid_values_fallback_to_defaults(self) -> None:
        config = self._load(
            """
[stream]
max_retries = -1

[ollama]
host = "localhost"
            """
        )
        self.assertEqual(config["stream"]["max_retries"], DEFAULT_CONFIG["stream"]["max_retries"])
        self.assertEqual(config["ollama"]["host"], DEFAULT_CONFIG["ollama"]["host"])

    def test_unparseable_toml_uses_defaults(self) -> None:
        with self.assertLogs("streamchat.config", level="WARNING"):
            config = self._load("[provider\nactive = ")
        self.assertEqual(config["provider"]["active"], "gemini")

    def test_api_keys_fall_back_to_environment(self) -> None:
        config = self._load(
            """
[openai]
api_key = "from-file"
            """,
            env={"GEMINI_API_KEY": " env-gemini ", "OPENAI_API_KEY": "env-openai"},
        )
        self.assertEqual(config["gemini"]["api_key"], "env-gemini")
        self.assertEqual(config["openai"]["api_key"], "from-file")


class StreamConfigTests(unittest.TestCase):
    """Validate per-request settings derived from the loaded config."""

    def setUp(self) -> None:
        self.config = deepcopy(DEFAULT_CONFIG)

    def test_active_provider_is_default(self) -> None:
        stream_config = StreamConfig.from_config(self.config)
        self.assertIs(stream_config.provider, ProviderKind.GEMINI)
        self.assertEqual(stream_config.model, "gemini-2.5-flash")
        self.assertEqual(stream_config.thinking_budget, 8192)
        self.assertEqual(stream_config.system_instruction, "You are a helpful assistant.")
        self.assertEqual(stream_config.max_retries, 2)
        self.assertEqual(stream_config.backoff_base_seconds, 0.5)

    def test_explicit_provider_overrides_active(self) -> None:
        stream_config = StreamConfig.from_config(self.config, "ollama")
        self.assertIs(stream_config.provider, ProviderKind.OLLAMA)
        self.assertEqual(stream_config.base_url, "http://localhost:11434")
        self.assertEqual(stream_config.api_key, "")

    def test_openai_section_is_used(self) -> None:
        self.config["openai"]["api_key"] = "sk-test"
        stream_config = StreamConfig.from_config(self.config, ProviderKind.OPENAI)
        self.assertEqual(stream_config.api_key, "sk-test")
        self.assertEqual(stream_config.base_url, "https://api.openai.com/v1")

    def test_unknown_provider_raises(self) -> None:
        with self.assertRaises(ValueError):
            StreamConfig.from_config(self.config, "anthropic")


if __name__ == "__main__":
    unittest.main()
