"""Configuration loading and validation for the streaming chat engine."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Any
import tomllib
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigValidationError
from .models import ProviderKind


LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "streamchat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

API_KEY_ENV_VARS = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


def _require_http_url(value: Any) -> str:
    normalized = _require_string(value).rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        raise ValueError("URL must use http or https and include a hostname.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "StreamChat"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _require_string(value)


class ProviderConfig(BaseModel):
    """Active backend selection and shared system instruction."""

    active: ProviderKind = ProviderKind.GEMINI
    system_prompt: str = "You are a helpful assistant."

    @field_validator("active", mode="before")
    @classmethod
    def _normalize_active(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _normalize_prompt(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()


class GeminiConfig(BaseModel):
    """Google Gemini REST endpoint settings."""

    api_key: str = ""
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    thinking_budget: int = Field(default=8192, ge=0, le=65_536)

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip()

    @field_validator("model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _require_http_url(value)


class OpenAIConfig(BaseModel):
    """OpenAI-compatible chat-completions endpoint settings."""

    api_key: str = ""
    model: str = "gpt-4o"
    base_url: str = "https://api.openai.com/v1"

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip()

    @field_validator("model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _require_http_url(value)


class OllamaConfig(BaseModel):
    """Local Ollama endpoint settings."""

    host: str = "http://localhost:11434"
    model: str = "llama3.2"

    @field_validator("host", mode="before")
    @classmethod
    def _validate_host(cls, value: Any) -> str:
        return _require_http_url(value)

    @field_validator("model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> str:
        return _require_string(value)


class StreamSettings(BaseModel):
    """Retry and transport policy for streamed responses."""

    max_retries: int = Field(default=2, ge=0, le=10)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    timeout_seconds: int = Field(default=120, ge=1, le=3600)


class StorageConfig(BaseModel):
    """Local conversation database settings."""

    database_path: str = "~/.local/share/streamchat/conversations.sqlite3"
    page_size: int = Field(default=50, ge=1, le=10_000)

    @field_validator("database_path", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _require_string(value)


class AttachmentsConfig(BaseModel):
    """Attachment inlining and preview settings."""

    max_text_attachment_chars: int = Field(default=4000, ge=1, le=1_000_000)
    preview_directory: str = ""

    @field_validator("preview_directory", mode="before")
    @classmethod
    def _normalize_directory(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("preview_directory must be a string.")
        return value.strip()


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/streamchat/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    app: AppConfig = AppConfig()
    provider: ProviderConfig = ProviderConfig()
    gemini: GeminiConfig = GeminiConfig()
    openai: OpenAIConfig = OpenAIConfig()
    ollama: OllamaConfig = OllamaConfig()
    stream: StreamSettings = StreamSettings()
    storage: StorageConfig = StorageConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump(mode="json")


@dataclass(frozen=True)
class StreamConfig:
    """Per-request settings handed to the stream controller and adapters."""

    provider: ProviderKind
    system_instruction: str = ""
    api_key: str = ""
    model: str = ""
    base_url: str = ""
    timeout_seconds: float = 120.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.5
    max_text_attachment_chars: int = 4000
    thinking_budget: int = 8192

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        provider: ProviderKind | str | None = None,
    ) -> StreamConfig:
        """Build the request config for ``provider`` (default: the active one)."""
        kind = ProviderKind(provider or config["provider"]["active"])
        stream = config["stream"]
        common: dict[str, Any] = {
            "provider": kind,
            "system_instruction": config["provider"]["system_prompt"],
            "timeout_seconds": float(stream["timeout_seconds"]),
            "max_retries": int(stream["max_retries"]),
            "backoff_base_seconds": float(stream["backoff_base_seconds"]),
            "max_text_attachment_chars": int(
                config["attachments"]["max_text_attachment_chars"]
            ),
        }
        if kind is ProviderKind.GEMINI:
            section = config["gemini"]
            return cls(
                api_key=section["api_key"],
                model=section["model"],
                base_url=section["base_url"],
                thinking_budget=int(section["thinking_budget"]),
                **common,
            )
        if kind is ProviderKind.OPENAI:
            section = config["openai"]
            return cls(
                api_key=section["api_key"],
                model=section["model"],
                base_url=section["base_url"],
                **common,
            )
        section = config["ollama"]
        return cls(model=section["model"], base_url=section["host"], **common)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _apply_env_api_keys(config: dict[str, dict[str, Any]]) -> None:
    for section, env_var in API_KEY_ENV_VARS.items():
        if not config[section]["api_key"]:
            config[section]["api_key"] = os.environ.get(env_var, "").strip()


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump(mode="json")
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(
            "Unable to validate configuration.", detail=str(exc)
        ) from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    validated = _validate_config(merged)
    _apply_env_api_keys(validated)
    return validated
