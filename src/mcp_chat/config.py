"""Configuration loading and validation for the MCP chat engine."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError
from .tool_registry import TOOL_NAME_SEPARATOR

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "mcp-chat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
MIN_THINKING_BUDGET = 1024


def _non_empty_string(value: Any, label: str = "value") -> str:
    if not isinstance(value, str):
        raise ValueError(f"Expected a string {label}.")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label.capitalize()} must not be empty.")
    return normalized


class ModelConfig(BaseModel):
    """Anthropic model endpoint and request settings."""

    name: str = "claude-3-7-sonnet-latest"
    api_key: str = ""
    base_url: str = ""
    max_tokens: int = Field(default=4096, ge=1, le=200_000)
    thinking_budget: int = Field(default=0, ge=0)
    timeout: int = Field(default=120, ge=1, le=3600)
    retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    system_prompt: str = (
        "You are a helpful assistant. Use the available tools when they help "
        "answer the user's request."
    )

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        return _non_empty_string(value, "model name")

    @field_validator("api_key", "system_prompt", mode="before")
    @classmethod
    def _normalize_string(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("base_url must be a string.")
        normalized = value.strip()
        if not normalized:
            return ""
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise ValueError("base_url must be an http(s) URL with a hostname.")
        return normalized

    @model_validator(mode="after")
    def _validate_thinking_budget(self) -> ModelConfig:
        if self.thinking_budget and not (
            MIN_THINKING_BUDGET <= self.thinking_budget < self.max_tokens
        ):
            raise ValueError(
                f"thinking_budget must be 0 or between {MIN_THINKING_BUDGET} and "
                "max_tokens (exclusive)."
            )
        return self


class ToolsConfig(BaseModel):
    """Tool execution limits."""

    call_timeout_seconds: float = Field(default=60.0, gt=0, le=3600)
    max_output_lines: int = Field(default=2000, ge=1, le=100_000)
    max_output_bytes: int = Field(default=100_000, ge=256, le=20_000_000)
    max_tool_iterations: int = Field(default=10, ge=1, le=100)


class ProviderConfig(BaseModel):
    """One MCP server the runtime connects to at startup."""

    id: str
    transport: Literal["stdio", "sse"] = "stdio"
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> str:
        normalized = _non_empty_string(value, "provider id")
        if TOOL_NAME_SEPARATOR in normalized:
            raise ValueError(f"Provider id must not contain {TOOL_NAME_SEPARATOR!r}.")
        return normalized

    @field_validator("args", mode="before")
    @classmethod
    def _validate_args(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError("args must be a list of strings.")
        return list(value)

    @field_validator("env", mode="before")
    @classmethod
    def _validate_env(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("env must be a table of name -> value.")
        return {str(k): str(v) for k, v in value.items()}

    @model_validator(mode="after")
    def _validate_transport(self) -> ProviderConfig:
        if self.transport == "stdio" and not self.command.strip():
            raise ValueError(f"Provider {self.id!r} uses stdio and needs a command.")
        if self.transport == "sse":
            parsed = urlparse(self.url.strip())
            if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
                raise ValueError(f"Provider {self.id!r} uses sse and needs an http(s) url.")
        return self


class EngineConfig(BaseModel):
    """Turn loop settings."""

    event_queue_size: int = Field(default=64, ge=1, le=10_000)


class PersistenceConfig(BaseModel):
    """Where chat state is stored."""

    path: str = "~/.local/state/mcp-chat/chats.json"

    @field_validator("path", mode="before")
    @classmethod
    def _validate_path(cls, value: Any) -> str:
        return _non_empty_string(value, "path")


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    console_level: str = "WARNING"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/mcp-chat/app.log"
    # None follows ``structured``.
    file_structured: bool | None = None

    @field_validator("level", "console_level", mode="before")
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
        return _non_empty_string(value, "log_file_path")


class Config(BaseModel):
    """Root configuration model for all sections."""

    model: ModelConfig = ModelConfig()
    tools: ToolsConfig = ToolsConfig()
    providers: list[ProviderConfig] = Field(
        default_factory=lambda: [
            ProviderConfig(id="default", transport="sse", url="http://localhost:3002/sse")
        ]
    )
    engine: EngineConfig = EngineConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_unique_providers(self) -> Config:
        seen: set[str] = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"Duplicate provider id {provider.id!r}.")
            seen.add(provider.id)
        return self


DEFAULT_CONFIG: dict[str, Any] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values.

    Lists (such as ``providers``) are replaced, never merged item by item.
    """
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


def _safe_default_config() -> dict[str, Any]:
    return deepcopy(DEFAULT_CONFIG)


def _apply_environment(config: dict[str, Any]) -> dict[str, Any]:
    """Fill the API key from ``ANTHROPIC_API_KEY`` when the file leaves it empty."""
    if not config["model"].get("api_key"):
        config["model"]["api_key"] = os.environ.get("ANTHROPIC_API_KEY", "").strip()
    return config


def _validate_config(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "errors": exc.error_count(), "reason": str(exc)},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    if config_path is None:
        ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning(
                "config.parse_failed",
                extra={"event": "config.parse_failed", "path": str(target_path), "reason": str(exc)},
            )
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _apply_environment(_validate_config(merged))
