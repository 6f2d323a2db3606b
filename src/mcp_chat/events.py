"""Display events yielded to callers while a turn is in progress."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Literal

EventType = Literal[
    "text",
    "thinking_delta",
    "input_json_delta",
    "tool_use",
    "tool_result",
    "error",
]

GENERIC_ERROR_TEXT = "An error occurred while processing your message."


@dataclass(frozen=True)
class DisplayEvent:
    """A single display-ready event. Unset optional fields stay ``None``."""

    type: EventType
    text: str | None = None
    thinking: str | None = None
    thinking_complete: bool | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    partial_json: str | None = None
    content: list[dict[str, Any]] | None = None
    is_error: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the unset fields."""
        payload: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is not None:
                payload[item.name] = value
        return payload

    @classmethod
    def text_delta(cls, text: str) -> DisplayEvent:
        return cls(type="text", text=text)

    @classmethod
    def thinking_delta(cls, thinking: str, complete: bool = False) -> DisplayEvent:
        return cls(type="thinking_delta", thinking=thinking, thinking_complete=complete)

    @classmethod
    def error(cls, text: str) -> DisplayEvent:
        return cls(type="error", text=text, is_error=True)
