"""Tests for logging bootstrap behavior."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import tempfile
import unittest

import structlog

from mcp_chat.logging_utils import NOISY_LIBRARIES, configure_logging


def _record(name: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="turn.tool.failed",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        # Preserve root logger state so tests do not pollute each other.
        root = logging.getLogger()
        self._original_level = root.level
        self._original_handlers = list(root.handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._original_handlers:
                handler.close()
        root.setLevel(self._original_level)
        root.handlers.clear()
        root.handlers.extend(self._original_handlers)

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]

    def test_structured_output_is_json_with_extra_fields(self) -> None:
        configure_logging({"level": "DEBUG", "structured": True, "log_to_file": False})
        handler = self._stream_handlers()[0]
        self.assertIsInstance(handler.formatter, structlog.stdlib.ProcessorFormatter)

        payload = json.loads(
            handler.format(_record("mcp_chat.engine", event="turn.tool.failed", tool="fs__x"))
        )
        self.assertEqual(payload["event"], "turn.tool.failed")
        self.assertEqual(payload["tool"], "fs__x")
        self.assertEqual(payload["level"], "warning")
        self.assertEqual(payload["logger"], "mcp_chat.engine")

    def test_plain_formatter_when_not_structured(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        formatters = [h.formatter for h in logging.getLogger().handlers]
        self.assertFalse(
            any(isinstance(f, structlog.stdlib.ProcessorFormatter) for f in formatters)
        )

    def test_root_level_and_noisy_loggers(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        for name in NOISY_LIBRARIES:
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_file_handler_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "app.log"
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            file_handlers = [
                h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(len(file_handlers), 1)
            self.assertTrue(log_path.exists())
            for handler in file_handlers:
                handler.close()

    def test_file_format_is_chosen_independently(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(Path(tmp) / "app.log"),
                    "file_structured": False,
                }
            )
            file_handler = next(
                h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
            )
            self.assertNotIsInstance(file_handler.formatter, structlog.stdlib.ProcessorFormatter)
            self.assertIsInstance(
                self._stream_handlers()[0].formatter, structlog.stdlib.ProcessorFormatter
            )
            self.assertEqual(file_handler.level, logging.INFO)
            file_handler.close()

    def test_console_level_sets_stderr_threshold(self) -> None:
        configure_logging(
            {"level": "DEBUG", "console_level": "ERROR", "structured": False, "log_to_file": False}
        )
        self.assertEqual(self._stream_handlers()[0].level, logging.ERROR)

    def test_stderr_handler_filters_to_package(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        handler = self._stream_handlers()[0]
        self.assertTrue(handler.filter(_record("mcp_chat.session")))
        self.assertTrue(handler.filter(_record("mcp_chat")))
        self.assertFalse(handler.filter(_record("mcp_chatter")))
        self.assertFalse(handler.filter(_record("httpx")))


if __name__ == "__main__":
    unittest.main()
