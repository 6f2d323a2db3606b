"""Per-conversation message logs, token usage side table, and request context."""

from __future__ import annotations

from typing import Any

from .content import (
    VALID_ROLES,
    Conversation,
    Message,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from .exceptions import ChatNotFoundError, ToolReferenceError

CACHE_CONTROL: dict[str, str] = {"type": "ephemeral"}


class MessageStore:
    """Own the ordered message log of every conversation plus its usage counters.

    Logs are append-only. Appends that would break the tool-use/tool-result
    pairing are rejected before they touch history.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._usage: dict[str, TokenUsage] = {}

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def add(self, conversation: Conversation, usage: TokenUsage | None = None) -> None:
        """Register a conversation and its starting usage."""
        self._conversations[conversation.id] = conversation
        self._usage[conversation.id] = usage or TokenUsage()

    def remove(self, chat_id: str) -> Conversation | None:
        self._usage.pop(chat_id, None)
        return self._conversations.pop(chat_id, None)

    def get(self, chat_id: str) -> Conversation | None:
        return self._conversations.get(chat_id)

    def conversations(self) -> list[Conversation]:
        """Return conversations in insertion order."""
        return list(self._conversations.values())

    def _require(self, chat_id: str) -> Conversation:
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            raise ChatNotFoundError(f"Unknown chat id {chat_id!r}")
        return conversation

    def messages(self, chat_id: str) -> list[Message]:
        """Return a shallow copy of a conversation's messages."""
        return list(self._require(chat_id).messages)

    def usage(self, chat_id: str) -> TokenUsage:
        self._require(chat_id)
        return self._usage.get(chat_id, TokenUsage())

    def add_usage(self, chat_id: str, usage: TokenUsage) -> TokenUsage:
        """Add one turn's usage to the running total and return the new total."""
        total = self.usage(chat_id) + usage
        self._usage[chat_id] = total
        return total

    def append(self, chat_id: str, message: Message) -> None:
        """Append a message after checking role and tool-result references."""
        conversation = self._require(chat_id)
        if message.role not in VALID_ROLES:
            raise ValueError(f"Unsupported message role {message.role!r}")

        results = [b for b in message.blocks if isinstance(b, ToolResultBlock)]
        if results:
            pending = {b.id for b in self._unresolved(conversation.messages)}
            for block in results:
                if block.tool_use_id not in pending:
                    raise ToolReferenceError(
                        f"Tool result references unknown or resolved tool use "
                        f"{block.tool_use_id!r}"
                    )
                pending.discard(block.tool_use_id)
        conversation.messages.append(message)

    @staticmethod
    def _unresolved(messages: list[Message]) -> list[ToolUseBlock]:
        pending: dict[str, ToolUseBlock] = {}
        for message in messages:
            for block in message.blocks:
                if isinstance(block, ToolUseBlock):
                    pending[block.id] = block
                elif isinstance(block, ToolResultBlock):
                    pending.pop(block.tool_use_id, None)
        return list(pending.values())

    def unresolved_tool_uses(self, chat_id: str) -> list[ToolUseBlock]:
        """Tool uses in history that have no matching tool result yet."""
        return self._unresolved(self._require(chat_id).messages)

    def build_api_context(self, chat_id: str) -> list[dict[str, Any]]:
        """Build the request message list, marking a trailing plain-text message cacheable."""
        context = [message.to_wire() for message in self._require(chat_id).messages]
        if context and isinstance(context[-1]["content"], str):
            last = context[-1]
            context[-1] = {
                "role": last["role"],
                "content": [
                    {
                        "type": "text",
                        "text": last["content"],
                        "cache_control": dict(CACHE_CONTROL),
                    }
                ],
            }
        return context
