"""Logging bootstrap: per-handler structlog JSON or plain text output."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import structlog

APP_LOGGER_PREFIX = "mcp_chat"
NOISY_LIBRARIES = ("httpx", "httpcore", "anthropic", "mcp")
PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)


def _best_effort_private_permissions(path: Path) -> None:
    if os.name != "posix":
        return
    try:
        path.chmod(0o600)
    except OSError:
        logging.getLogger(__name__).warning(
            "logging.file.chmod_failed",
            extra={"event": "logging.file.chmod_failed", "path": str(path)},
        )


def app_only_filter(record: logging.LogRecord) -> bool:
    """Only show this package's records on stderr."""
    return record.name == APP_LOGGER_PREFIX or record.name.startswith(
        APP_LOGGER_PREFIX + "."
    )


def _level(value: Any, default: int) -> int:
    return getattr(logging, str(value or "").upper(), default)


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _TIMESTAMPER,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_formatter(structured: bool) -> logging.Formatter:
    """JSON lines through structlog, or the plain stdlib layout."""
    if not structured:
        return logging.Formatter(PLAIN_FORMAT)
    # ExtraAdder lifts the ``extra={...}`` fields of stdlib records into the JSON.
    return structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(ensure_ascii=False, separators=(",", ":")),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            _TIMESTAMPER,
        ],
    )


def _file_handler(target: Path, level: int, structured: bool) -> logging.Handler:
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(build_formatter(structured))
    _best_effort_private_permissions(target)
    return handler


def configure_logging(logging_config: dict[str, Any]) -> None:
    """Install root handlers from the ``[logging]`` config section.

    The stderr handler shows only ``mcp_chat`` records at ``console_level`` or
    above. The optional file handler takes everything at ``level`` and picks
    its own format through ``file_structured``.
    """
    level = _level(logging_config.get("level"), logging.INFO)
    console_level = _level(logging_config.get("console_level"), logging.WARNING)
    structured = bool(logging_config.get("structured", True))
    file_structured = logging_config.get("file_structured")
    if file_structured is None:
        file_structured = structured

    if structured or file_structured:
        _configure_structlog()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(max(level, console_level))
    stderr_handler.setFormatter(build_formatter(structured))
    stderr_handler.addFilter(app_only_filter)
    root.addHandler(stderr_handler)

    if logging_config.get("log_to_file"):
        target = Path(
            str(logging_config.get("log_file_path") or "~/.local/state/mcp-chat/app.log")
        ).expanduser()
        root.addHandler(_file_handler(target, level, bool(file_structured)))

    for logger_name in NOISY_LIBRARIES:
        library_logger = logging.getLogger(logger_name)
        library_logger.setLevel(logging.WARNING)
        library_logger.propagate = True
