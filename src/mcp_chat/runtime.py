"""Wire configuration, providers, session and engine into a running chat."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from .backend import AnthropicBackend, ModelBackend
from .config import load_config
from .engine import ConversationEngine
from .logging_utils import configure_logging
from .persistence import JsonFileStateStore, StateStore
from .providers import McpToolProvider
from .session import SessionManager
from .tool_registry import ToolProvider, ToolRegistry

LOGGER = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    """Everything a caller needs to hold a conversation."""

    config: dict[str, Any]
    engine: ConversationEngine
    session: SessionManager
    registry: ToolRegistry
    providers: list[McpToolProvider] = field(default_factory=list)

    async def close(self) -> None:
        """Cancel running turns and disconnect every provider."""
        await self.engine.close()
        for provider in self.providers:
            await provider.disconnect()

    async def __aenter__(self) -> ChatRuntime:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def build_registry(config: dict[str, Any]) -> ToolRegistry:
    tools = config["tools"]
    return ToolRegistry(
        call_timeout_seconds=float(tools["call_timeout_seconds"]),
        max_output_lines=int(tools["max_output_lines"]),
        max_output_bytes=int(tools["max_output_bytes"]),
    )


def build_backend(config: dict[str, Any]) -> AnthropicBackend:
    model = config["model"]
    return AnthropicBackend(
        api_key=model["api_key"],
        base_url=model["base_url"],
        timeout=float(model["timeout"]),
        retries=int(model["retries"]),
        retry_backoff_seconds=float(model["retry_backoff_seconds"]),
    )


def build_engine(
    config: dict[str, Any],
    session: SessionManager,
    registry: ToolRegistry,
    backend: ModelBackend,
) -> ConversationEngine:
    model = config["model"]
    return ConversationEngine(
        session=session,
        registry=registry,
        backend=backend,
        model=model["name"],
        max_tokens=int(model["max_tokens"]),
        system_prompt=model["system_prompt"],
        thinking_budget=int(model["thinking_budget"]) or None,
        max_tool_iterations=int(config["tools"]["max_tool_iterations"]),
        event_queue_size=int(config["engine"]["event_queue_size"]),
    )


async def _connect_providers(
    config: dict[str, Any], registry: ToolRegistry
) -> list[McpToolProvider]:
    connected: list[McpToolProvider] = []
    for entry in config["providers"]:
        provider = McpToolProvider.from_config(entry)
        try:
            await provider.connect()
        except Exception as exc:  # noqa: BLE001 - one unreachable server must not block the rest.
            LOGGER.warning(
                "runtime.provider.connect_failed",
                extra={
                    "event": "runtime.provider.connect_failed",
                    "provider": provider.provider_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            continue
        registry.register_provider(provider)
        connected.append(provider)
    return connected


async def start_runtime(
    config: dict[str, Any] | None = None,
    *,
    backend: ModelBackend | None = None,
    store: StateStore | None = None,
    extra_providers: list[ToolProvider] | None = None,
) -> ChatRuntime:
    """Load config, connect providers, hydrate the session and initialize tools.

    Raises ``NoToolsAvailableError`` when no provider contributes a tool; the
    providers connected so far are disconnected first.
    """
    resolved = config if config is not None else load_config()
    configure_logging(resolved["logging"])

    registry = build_registry(resolved)
    providers = await _connect_providers(resolved, registry)
    for provider in extra_providers or []:
        registry.register_provider(provider)

    session = SessionManager(store or JsonFileStateStore(resolved["persistence"]["path"]))
    engine = build_engine(resolved, session, registry, backend or build_backend(resolved))
    runtime = ChatRuntime(
        config=resolved,
        engine=engine,
        session=session,
        registry=registry,
        providers=providers,
    )
    try:
        await session.load()
        await engine.initialize()
    except BaseException:
        await runtime.close()
        raise
    LOGGER.info(
        "runtime.started",
        extra={
            "event": "runtime.started",
            "providers": registry.provider_ids,
            "tool_count": len(registry.descriptors),
            "chat_id": session.active_chat_id,
        },
    )
    return runtime
