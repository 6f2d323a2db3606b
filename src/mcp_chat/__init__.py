"""Top-level package for mcp-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import ensure_config_dir, load_config
    from .engine import AmbientContext, ConversationEngine
    from .events import DisplayEvent
    from .exceptions import (
        ChatNotFoundError,
        ConfigValidationError,
        ConversationBusyError,
        McpChatError,
        NoToolsAvailableError,
        ToolExecutionError,
        ToolProviderNotFoundError,
    )
    from .message_store import MessageStore
    from .persistence import JsonFileStateStore, MemoryStateStore, PersistenceError
    from .runtime import ChatRuntime, start_runtime
    from .session import SessionManager
    from .state import ConversationState, StateManager
    from .tool_registry import ToolRegistry

__all__ = [
    "AmbientContext",
    "ChatNotFoundError",
    "ChatRuntime",
    "ConfigValidationError",
    "ConversationBusyError",
    "ConversationEngine",
    "ConversationState",
    "DisplayEvent",
    "JsonFileStateStore",
    "McpChatError",
    "MemoryStateStore",
    "MessageStore",
    "NoToolsAvailableError",
    "PersistenceError",
    "SessionManager",
    "StateManager",
    "ToolExecutionError",
    "ToolProviderNotFoundError",
    "ToolRegistry",
    "ensure_config_dir",
    "load_config",
    "start_runtime",
]


def __getattr__(name: str) -> Any:
    """Lazily import symbols so the backend and MCP SDKs load only when used."""
    if name in {"AmbientContext", "ConversationEngine"}:
        from .engine import AmbientContext, ConversationEngine

        return {"AmbientContext": AmbientContext, "ConversationEngine": ConversationEngine}[name]
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in {
        "ChatNotFoundError",
        "ConfigValidationError",
        "ConversationBusyError",
        "McpChatError",
        "NoToolsAvailableError",
        "ToolExecutionError",
        "ToolProviderNotFoundError",
    }:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"JsonFileStateStore", "MemoryStateStore", "PersistenceError"}:
        from . import persistence

        return getattr(persistence, name)
    if name in {"ChatRuntime", "start_runtime"}:
        from .runtime import ChatRuntime, start_runtime

        return {"ChatRuntime": ChatRuntime, "start_runtime": start_runtime}[name]
    if name in {"ConversationState", "StateManager"}:
        from .state import ConversationState, StateManager

        return {"ConversationState": ConversationState, "StateManager": StateManager}[name]
    if name == "DisplayEvent":
        from .events import DisplayEvent

        return DisplayEvent
    if name == "MessageStore":
        from .message_store import MessageStore

        return MessageStore
    if name == "SessionManager":
        from .session import SessionManager

        return SessionManager
    if name == "ToolRegistry":
        from .tool_registry import ToolRegistry

        return ToolRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
