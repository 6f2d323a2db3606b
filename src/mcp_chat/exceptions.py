"""Domain exception hierarchy for the MCP chat engine."""

from __future__ import annotations


class McpChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ConfigValidationError(McpChatError):
    """Raised when configuration cannot be validated safely."""


class BackendConnectionError(McpChatError):
    """Raised when the model backend cannot be reached."""


class ModelNotFoundError(McpChatError):
    """Raised when the configured model is unavailable."""


class BackendStreamingError(McpChatError):
    """Raised when streaming fails for non-connectivity reasons."""


class ToolError(McpChatError):
    """Base class for tool resolution and execution failures."""


class ToolProviderNotFoundError(ToolError):
    """Raised when a qualified tool name references an unregistered provider."""


class ToolExecutionError(ToolError):
    """Raised when a provider fails or times out while running a tool."""


class ToolInputDecodeError(ToolError):
    """Raised when streamed tool input is not a valid JSON object."""


class NoToolsAvailableError(McpChatError):
    """Raised when initialization finds no tools on any provider."""


class EngineNotInitializedError(McpChatError):
    """Raised when a turn is started before tools were initialized."""


class ConversationBusyError(McpChatError):
    """Raised when a second turn is started on a conversation already in flight."""


class ToolReferenceError(McpChatError):
    """Raised when a tool result references a tool use that is not in history."""


class ChatNotFoundError(McpChatError, KeyError):
    """Raised when a chat id is not (or no longer) in the session."""
