"""Reassemble streamed backend events into content blocks and display events."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any

from .content import (
    ContentBlock,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolUseBlock,
)
from .events import DisplayEvent
from .exceptions import BackendStreamingError, ToolInputDecodeError

LOGGER = logging.getLogger(__name__)

_USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def _field(payload: Any, name: str) -> Any:
    """Read ``name`` from a plain dict payload or an SDK object attribute."""
    if payload is None:
        return None
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)


def _merge_usage(current: TokenUsage, payload: Any) -> TokenUsage:
    """Override the counters ``payload`` reports; leave the rest untouched."""
    if payload is None:
        return current
    merged = current.to_dict()
    for name in _USAGE_FIELDS:
        value = _field(payload, name)
        if value is None:
            continue
        try:
            merged[name] = max(0, int(value))
        except (TypeError, ValueError):
            continue
    return TokenUsage(**merged)


@dataclass
class _BlockBuffer:
    kind: str
    text: list[str] = field(default_factory=list)
    signature: list[str] = field(default_factory=list)
    data: str = ""
    tool_id: str = ""
    tool_name: str = ""
    initial_input: dict[str, Any] = field(default_factory=dict)
    json_parts: list[str] = field(default_factory=list)
    parsed_input: dict[str, Any] | None = None
    complete: bool = False


class StreamDecoder:
    """Consume one model turn's events and expose the reassembled result.

    ``feed()`` returns the display events an event produces, in order, so the
    caller can forward them immediately. Tool input is buffered until its block
    completes because partial JSON cannot be parsed.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, _BlockBuffer] = {}
        self._saw_thinking = False
        self._thinking_closed = False
        self.usage = TokenUsage()
        self.stop_reason: str | None = None
        self.finished = False
        self.active_kind: str | None = None

    def feed(self, event: Any) -> list[DisplayEvent]:
        """Apply one backend event and return the display events it yields."""
        event_type = _field(event, "type")
        if event_type == "message_start":
            self.usage = _merge_usage(self.usage, _field(_field(event, "message"), "usage"))
            return []
        if event_type == "content_block_start":
            return self._on_block_start(event)
        if event_type == "content_block_delta":
            return self._on_block_delta(event)
        if event_type == "content_block_stop":
            return self._on_block_stop(_field(event, "index") or 0)
        if event_type == "message_delta":
            stop_reason = _field(_field(event, "delta"), "stop_reason")
            if stop_reason is not None:
                self.stop_reason = str(stop_reason)
            self.usage = _merge_usage(self.usage, _field(event, "usage"))
            return []
        if event_type == "message_stop":
            self.finished = True
            self.active_kind = None
            return []
        if event_type == "error":
            error = _field(event, "error")
            message = _field(error, "message") or "unknown stream error"
            raise BackendStreamingError(f"Model stream reported an error: {message}")
        return []

    def _on_block_start(self, event: Any) -> list[DisplayEvent]:
        index = _field(event, "index") or 0
        block = _field(event, "content_block")
        kind = str(_field(block, "type") or "")
        buffer = _BlockBuffer(kind=kind)
        self._blocks[index] = buffer
        self.active_kind = kind

        if kind == "text":
            initial = _field(block, "text")
            if isinstance(initial, str) and initial:
                return self._on_text(buffer, initial)
        elif kind == "thinking":
            self._saw_thinking = True
            signature = _field(block, "signature")
            if isinstance(signature, str) and signature:
                buffer.signature.append(signature)
            initial = _field(block, "thinking")
            if isinstance(initial, str) and initial:
                return self._on_thinking(buffer, initial)
        elif kind == "redacted_thinking":
            self._saw_thinking = True
            data = _field(block, "data")
            buffer.data = data if isinstance(data, str) else ""
        elif kind == "tool_use":
            buffer.tool_id = str(_field(block, "id") or "")
            buffer.tool_name = str(_field(block, "name") or "")
            initial_input = _field(block, "input")
            if isinstance(initial_input, dict):
                buffer.initial_input = dict(initial_input)
            LOGGER.debug(
                "stream.tool_use.start",
                extra={"event": "stream.tool_use.start", "tool": buffer.tool_name},
            )
        else:
            LOGGER.debug(
                "stream.block.ignored",
                extra={"event": "stream.block.ignored", "block_type": kind},
            )
        return []

    def _on_block_delta(self, event: Any) -> list[DisplayEvent]:
        index = _field(event, "index") or 0
        buffer = self._blocks.get(index)
        delta = _field(event, "delta")
        delta_type = _field(delta, "type")
        if buffer is None:
            # Deltas without a start event still belong to some block.
            kind = {
                "text_delta": "text",
                "thinking_delta": "thinking",
                "signature_delta": "thinking",
                "input_json_delta": "tool_use",
            }.get(str(delta_type), "")
            buffer = _BlockBuffer(kind=kind)
            self._blocks[index] = buffer

        if delta_type == "text_delta":
            return self._on_text(buffer, str(_field(delta, "text") or ""))
        if delta_type == "thinking_delta":
            self._saw_thinking = True
            return self._on_thinking(buffer, str(_field(delta, "thinking") or ""))
        if delta_type == "signature_delta":
            buffer.signature.append(str(_field(delta, "signature") or ""))
            return []
        if delta_type == "input_json_delta":
            fragment = str(_field(delta, "partial_json") or "")
            if not fragment:
                return []
            buffer.json_parts.append(fragment)
            return [
                DisplayEvent(
                    type="input_json_delta",
                    name=buffer.tool_name,
                    partial_json=fragment,
                )
            ]
        return []

    def _on_text(self, buffer: _BlockBuffer, text: str) -> list[DisplayEvent]:
        if not text:
            return []
        buffer.text.append(text)
        events: list[DisplayEvent] = []
        if self._saw_thinking and not self._thinking_closed:
            self._thinking_closed = True
            events.append(DisplayEvent.thinking_delta("", complete=True))
        events.append(DisplayEvent.text_delta(text))
        return events

    def _on_thinking(self, buffer: _BlockBuffer, text: str) -> list[DisplayEvent]:
        if not text:
            return []
        buffer.text.append(text)
        if self._thinking_closed:
            return []
        return [DisplayEvent.thinking_delta(text)]

    def _on_block_stop(self, index: int) -> list[DisplayEvent]:
        buffer = self._blocks.get(index)
        if buffer is None:
            return []
        buffer.complete = True
        self.active_kind = None
        if buffer.kind != "tool_use":
            return []
        tool_input = self._parse_tool_input(buffer)
        return [DisplayEvent(type="tool_use", name=buffer.tool_name, input=tool_input)]

    @staticmethod
    def _parse_tool_input(buffer: _BlockBuffer) -> dict[str, Any]:
        if buffer.parsed_input is not None:
            return buffer.parsed_input
        raw = "".join(buffer.json_parts)
        if not raw.strip():
            buffer.parsed_input = dict(buffer.initial_input)
            return buffer.parsed_input
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolInputDecodeError(
                f"Malformed input for tool {buffer.tool_name!r}: {exc.msg}"
            ) from exc
        if not isinstance(parsed, dict):
            raise ToolInputDecodeError(
                f"Input for tool {buffer.tool_name!r} must be a JSON object."
            )
        buffer.parsed_input = parsed
        return parsed

    def blocks(self) -> list[ContentBlock]:
        """Return the turn's content blocks in stream order.

        Tool inputs still pending are parsed here, so a truncated stream
        surfaces as ``ToolInputDecodeError`` rather than a silent empty input.
        """
        result: list[ContentBlock] = []
        for index in sorted(self._blocks):
            buffer = self._blocks[index]
            if buffer.kind == "text":
                text = "".join(buffer.text)
                if text:
                    result.append(TextBlock(text=text))
            elif buffer.kind == "thinking":
                result.append(
                    ThinkingBlock(
                        text="".join(buffer.text),
                        signature="".join(buffer.signature),
                    )
                )
            elif buffer.kind == "redacted_thinking":
                result.append(ThinkingBlock(redacted=True, data=buffer.data))
            elif buffer.kind == "tool_use":
                result.append(
                    ToolUseBlock(
                        id=buffer.tool_id,
                        name=buffer.tool_name,
                        input=self._parse_tool_input(buffer),
                    )
                )
        return result

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks() if isinstance(b, ToolUseBlock)]
