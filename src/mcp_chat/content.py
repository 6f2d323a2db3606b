"""Tagged content blocks, messages, and token usage for chat history.

Every block variant is a frozen dataclass with a ``kind`` discriminator and
its own fields. ``to_wire()`` produces the Anthropic Messages API shape, which
is also the persisted shape; ``block_from_wire()`` is the tolerant inverse used
when hydrating stored chats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import logging
from typing import Any, ClassVar, Literal
from uuid import uuid4

LOGGER = logging.getLogger(__name__)

Role = Literal["user", "assistant"]
VALID_ROLES: frozenset[str] = frozenset({"user", "assistant"})

TITLE_MAX_CHARS = 40
DEFAULT_TITLE = "New chat"


@dataclass(frozen=True)
class TextBlock:
    """Plain text span."""

    kind: ClassVar[str] = "text"
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    """Base64 image, only valid inside a tool result."""

    kind: ClassVar[str] = "image"
    media_type: str
    data: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass(frozen=True)
class ThinkingBlock:
    """Reasoning trace. Redacted blocks carry only the opaque ``data`` payload."""

    kind: ClassVar[str] = "thinking"
    text: str = ""
    signature: str = ""
    redacted: bool = False
    data: str = ""

    def to_wire(self) -> dict[str, Any]:
        if self.redacted:
            return {"type": "redacted_thinking", "data": self.data}
        return {"type": "thinking", "thinking": self.text, "signature": self.signature}


@dataclass(frozen=True)
class ToolUseBlock:
    """Model request to invoke a tool by qualified name."""

    kind: ClassVar[str] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    """Outcome of a tool invocation, referencing the originating tool use."""

    kind: ClassVar[str] = "tool_result"
    tool_use_id: str
    content: tuple[TextBlock | ImageBlock, ...] = ()
    is_error: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": [item.to_wire() for item in self.content],
            "is_error": self.is_error,
        }


ContentBlock = TextBlock | ImageBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


def _coerced(raw: Any) -> TextBlock:
    """Fallback for block shapes this version does not understand."""
    if isinstance(raw, dict) and isinstance(raw.get("text"), str):
        text = raw["text"]
    elif isinstance(raw, str):
        text = raw
    else:
        try:
            text = json.dumps(raw, ensure_ascii=False, sort_keys=True)
        except (TypeError, ValueError):
            text = str(raw)
    LOGGER.debug(
        "content.block.coerced",
        extra={
            "event": "content.block.coerced",
            "block_type": raw.get("type") if isinstance(raw, dict) else type(raw).__name__,
        },
    )
    return TextBlock(text=text)


def _result_item_from_wire(raw: Any) -> TextBlock | ImageBlock:
    block = block_from_wire(raw)
    if isinstance(block, (TextBlock, ImageBlock)):
        return block
    return _coerced(raw)


def block_from_wire(raw: Any) -> ContentBlock:
    """Decode a wire/persisted block, coercing unknown shapes to text."""
    if not isinstance(raw, dict):
        return _coerced(raw)

    block_type = raw.get("type")
    if block_type == "text" and isinstance(raw.get("text"), str):
        return TextBlock(text=raw["text"])

    if block_type == "thinking":
        # Older snapshots stored the trace under "content".
        text = raw.get("thinking", raw.get("content", ""))
        signature = raw.get("signature", "")
        return ThinkingBlock(
            text=text if isinstance(text, str) else "",
            signature=signature if isinstance(signature, str) else "",
        )

    if block_type == "redacted_thinking" and isinstance(raw.get("data"), str):
        return ThinkingBlock(redacted=True, data=raw["data"])

    if block_type == "tool_use":
        tool_id = raw.get("id")
        name = raw.get("name")
        if isinstance(tool_id, str) and tool_id and isinstance(name, str) and name:
            tool_input = raw.get("input")
            return ToolUseBlock(
                id=tool_id,
                name=name,
                input=tool_input if isinstance(tool_input, dict) else {},
            )

    if block_type == "tool_result" and isinstance(raw.get("tool_use_id"), str):
        content = raw.get("content")
        items: tuple[TextBlock | ImageBlock, ...]
        if isinstance(content, str):
            items = (TextBlock(text=content),)
        elif isinstance(content, list):
            items = tuple(_result_item_from_wire(item) for item in content)
        else:
            items = ()
        return ToolResultBlock(
            tool_use_id=raw["tool_use_id"],
            content=items,
            is_error=bool(raw.get("is_error", False)),
        )

    if block_type == "image":
        source = raw.get("source")
        if isinstance(source, dict) and isinstance(source.get("data"), str):
            media_type = source.get("media_type")
            return ImageBlock(
                media_type=media_type if isinstance(media_type, str) else "image/png",
                data=source["data"],
            )

    return _coerced(raw)


@dataclass(frozen=True)
class Message:
    """One role-tagged entry of a conversation."""

    role: Role
    content: str | tuple[ContentBlock, ...]

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return (TextBlock(text=self.content),)
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_wire(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_wire() for b in self.content]}

    @classmethod
    def from_wire(cls, raw: Any) -> Message | None:
        """Decode a stored message; returns None when the role is unusable."""
        if not isinstance(raw, dict):
            return None
        role = str(raw.get("role", "")).strip().lower()
        if role not in VALID_ROLES:
            LOGGER.debug(
                "content.message.skipped",
                extra={"event": "content.message.skipped", "role": role},
            )
            return None
        content = raw.get("content", "")
        if isinstance(content, list):
            return cls(role=role, content=tuple(block_from_wire(b) for b in content))  # type: ignore[arg-type]
        if not isinstance(content, str):
            content = str(content)
        return cls(role=role, content=content)  # type: ignore[arg-type]


def _read_field(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _as_count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class TokenUsage:
    """Cumulative token counters; combine per-turn values with ``+``."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens
            + other.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens
            + other.cache_read_input_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> TokenUsage:
        """Read counters from an SDK usage object or a plain dict."""
        if payload is None:
            return cls()
        return cls(
            input_tokens=_as_count(_read_field(payload, "input_tokens")),
            output_tokens=_as_count(_read_field(payload, "output_tokens")),
            cache_creation_input_tokens=_as_count(
                _read_field(payload, "cache_creation_input_tokens")
            ),
            cache_read_input_tokens=_as_count(
                _read_field(payload, "cache_read_input_tokens")
            ),
        )


def derive_title(messages: list[Message]) -> str:
    """Title from the first user text, whitespace-collapsed and truncated."""
    for message in messages:
        if message.role != "user":
            continue
        text = " ".join(message.text.split())
        if not text:
            continue
        if len(text) > TITLE_MAX_CHARS:
            return text[:TITLE_MAX_CHARS].rstrip() + "..."
        return text
    return DEFAULT_TITLE


def new_chat_id(created_at: datetime) -> str:
    """Chat ids embed the creation time in epoch milliseconds."""
    return f"chat-{int(created_at.timestamp() * 1000)}-{uuid4().hex[:8]}"


@dataclass
class Conversation:
    """A chat: id, creation time, and its append-only message log."""

    id: str
    created_at: datetime
    messages: list[Message] = field(default_factory=list)

    @classmethod
    def new(cls) -> Conversation:
        created_at = datetime.now(UTC)
        return cls(id=new_chat_id(created_at), created_at=created_at)

    @property
    def title(self) -> str:
        return derive_title(self.messages)
