"""Chat sessions: the set of conversations, the active pointer, and persistence."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import logging
from typing import Any

from .content import Conversation, Message, TokenUsage
from .exceptions import ChatNotFoundError
from .message_store import MessageStore
from .persistence import PersistenceError, StateStore

LOGGER = logging.getLogger(__name__)

STATE_KEY = "mcp-chat:chats"


def _parse_created_at(raw: Any, chat_id: str) -> datetime:
    """Accept ISO strings and legacy epoch-millisecond numbers."""
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = datetime.fromisoformat(raw.strip())
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw / 1000, tz=UTC)
    # Fall back to the timestamp embedded in the id.
    parts = chat_id.split("-")
    if len(parts) >= 2 and parts[1].isdigit():
        return datetime.fromtimestamp(int(parts[1]) / 1000, tz=UTC)
    return datetime.now(UTC)


def serialize_chat(conversation: Conversation, usage: TokenUsage) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "createdAt": conversation.created_at.isoformat(),
        "tokenUsage": usage.to_dict(),
        "messages": [message.to_wire() for message in conversation.messages],
    }


def deserialize_chat(raw: Any) -> tuple[Conversation, TokenUsage] | None:
    """Decode one stored chat; returns None when it has no usable id."""
    if not isinstance(raw, dict):
        return None
    chat_id = raw.get("id")
    if not isinstance(chat_id, str) or not chat_id.strip():
        return None
    raw_messages = raw.get("messages")
    messages: list[Message] = []
    if isinstance(raw_messages, list):
        for item in raw_messages:
            message = Message.from_wire(item)
            if message is not None:
                messages.append(message)
    conversation = Conversation(
        id=chat_id,
        created_at=_parse_created_at(raw.get("createdAt"), chat_id),
        messages=messages,
    )
    usage = raw.get("tokenUsage")
    return conversation, TokenUsage.from_payload(usage if isinstance(usage, dict) else None)


class SessionManager:
    """Own every chat, the active chat pointer, and their persisted snapshot.

    Each mutation rewrites the full snapshot under ``key``. Writes go through a
    single lock and the snapshot is taken inside it, so concurrent turns on
    different chats cannot land an older snapshot over a newer one.
    """

    def __init__(
        self,
        store: StateStore,
        key: str = STATE_KEY,
        message_store: MessageStore | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self.messages = message_store or MessageStore()
        self._active_id: str | None = None
        self._save_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._active_id is not None

    @property
    def active_chat_id(self) -> str:
        if self._active_id is None:
            raise RuntimeError("Session is not loaded; call load() first.")
        return self._active_id

    @property
    def active_chat(self) -> Conversation:
        chat_id = self.active_chat_id
        conversation = self.messages.get(chat_id)
        if conversation is None:
            raise ChatNotFoundError(f"Active chat {chat_id!r} is missing from the store.")
        return conversation

    def get_chat(self, chat_id: str) -> Conversation | None:
        return self.messages.get(chat_id)

    def list_chats(self) -> list[Conversation]:
        """All chats, newest first."""
        return [c for _, c in sorted(self._ordered(), key=lambda x: x[0], reverse=True)]

    def usage(self, chat_id: str) -> TokenUsage:
        return self.messages.usage(chat_id)

    def _ordered(self) -> list[tuple[tuple[datetime, int], Conversation]]:
        return [
            ((conversation.created_at, position), conversation)
            for position, conversation in enumerate(self.messages.conversations())
        ]

    def _most_recent(self) -> Conversation | None:
        ordered = self._ordered()
        if not ordered:
            return None
        return max(ordered, key=lambda x: x[0])[1]

    async def load(self) -> Conversation:
        """Hydrate from the store; creates a first chat when none exist."""
        payload = await self.store.fetch(self.key)
        raw_chats: list[Any] = []
        current_id: Any = None
        if isinstance(payload, dict):
            chats = payload.get("chats")
            raw_chats = chats if isinstance(chats, list) else []
            current_id = payload.get("currentChatId")
        elif payload is not None:
            LOGGER.warning(
                "session.load.invalid_payload",
                extra={
                    "event": "session.load.invalid_payload",
                    "payload_type": type(payload).__name__,
                },
            )

        for raw in raw_chats:
            decoded = deserialize_chat(raw)
            if decoded is None:
                LOGGER.warning(
                    "session.load.chat_skipped",
                    extra={"event": "session.load.chat_skipped"},
                )
                continue
            conversation, usage = decoded
            self.messages.add(conversation, usage)

        LOGGER.info(
            "session.loaded",
            extra={"event": "session.loaded", "chat_count": len(self.messages)},
        )
        if isinstance(current_id, str) and current_id in self.messages:
            self._active_id = current_id
            return self.active_chat
        latest = self._most_recent()
        if latest is None:
            return await self.create_chat()
        self._active_id = latest.id
        return latest

    async def create_chat(self) -> Conversation:
        """Start an empty chat, make it active, and persist."""
        conversation = Conversation.new()
        self.messages.add(conversation)
        self._active_id = conversation.id
        LOGGER.info(
            "session.chat.created",
            extra={"event": "session.chat.created", "chat_id": conversation.id},
        )
        await self.save()
        return conversation

    async def load_chat(self, chat_id: str) -> bool:
        """Switch the active chat; returns False when the id is unknown."""
        if chat_id not in self.messages:
            LOGGER.info(
                "session.chat.not_found",
                extra={"event": "session.chat.not_found", "chat_id": chat_id},
            )
            return False
        self._active_id = chat_id
        await self.save()
        return True

    async def delete_active_chat(self) -> Conversation:
        """Delete the active chat and return the chat that replaces it."""
        removed = self.messages.remove(self.active_chat_id)
        LOGGER.info(
            "session.chat.deleted",
            extra={
                "event": "session.chat.deleted",
                "chat_id": removed.id if removed else self._active_id,
            },
        )
        latest = self._most_recent()
        if latest is None:
            return await self.create_chat()
        self._active_id = latest.id
        await self.save()
        return latest

    async def append_message(self, chat_id: str, message: Message) -> None:
        """Append to a chat's log and persist before returning."""
        self.messages.append(chat_id, message)
        await self.save()

    async def add_usage(self, chat_id: str, usage: TokenUsage) -> TokenUsage:
        total = self.messages.add_usage(chat_id, usage)
        await self.save()
        return total

    def snapshot(self) -> dict[str, Any]:
        return {
            "chats": [
                serialize_chat(conversation, self.messages.usage(conversation.id))
                for conversation in self.messages.conversations()
            ],
            "currentChatId": self._active_id,
        }

    async def save(self) -> None:
        """Write the full snapshot; failures surface as ``PersistenceError``."""
        async with self._save_lock:
            snapshot = self.snapshot()
            try:
                await self.store.save(self.key, snapshot)
            except PersistenceError:
                LOGGER.error(
                    "session.save.failed",
                    extra={"event": "session.save.failed", "key": self.key},
                )
                raise
            except Exception as exc:  # noqa: BLE001 - external stores fail arbitrarily.
                LOGGER.error(
                    "session.save.failed",
                    extra={
                        "event": "session.save.failed",
                        "key": self.key,
                        "error": str(exc),
                    },
                )
                raise PersistenceError(f"Unable to save chat state: {exc}") from exc

    def export_markdown(self, chat_id: str) -> str:
        """Render a chat transcript as markdown."""
        conversation = self.messages.get(chat_id)
        if conversation is None:
            raise ChatNotFoundError(f"Unknown chat id {chat_id!r}")
        lines = [f"# {conversation.title}", ""]
        for message in conversation.messages:
            lines.append(f"## {message.role.capitalize()}")
            lines.append("")
            for block in message.blocks:
                rendered = _render_block(block)
                if rendered:
                    lines.append(rendered)
                    lines.append("")
        return "\n".join(lines).strip() + "\n"


def _render_block(block: Any) -> str:
    kind = getattr(block, "kind", "")
    if kind == "text":
        return block.text.strip()
    if kind == "tool_use":
        return f"**Tool call:** `{block.name}` {block.input}"
    if kind == "tool_result":
        texts = [item.text for item in block.content if getattr(item, "kind", "") == "text"]
        label = "Tool error" if block.is_error else "Tool result"
        return f"**{label}:** " + "\n".join(texts)
    return ""
