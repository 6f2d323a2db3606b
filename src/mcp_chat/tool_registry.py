"""Tool registry adapter over one or more external tool providers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol, runtime_checkable

from .content import ImageBlock, TextBlock
from .exceptions import (
    NoToolsAvailableError,
    ToolExecutionError,
    ToolProviderNotFoundError,
)

LOGGER = logging.getLogger(__name__)

TOOL_NAME_SEPARATOR = "__"


@runtime_checkable
class ToolProvider(Protocol):
    """External source of tools, e.g. one MCP server connection."""

    @property
    def provider_id(self) -> str: ...

    async def list_tools(self) -> list[dict[str, Any]]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ToolDescriptor:
    """A provider tool exposed to the model under its qualified name."""

    provider_id: str
    tool_name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return qualify(self.provider_id, self.tool_name)

    def as_model_tool(self) -> dict[str, Any]:
        schema = dict(self.input_schema) if self.input_schema else {}
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return {
            "name": self.qualified_name,
            "description": self.description or self.tool_name,
            "input_schema": schema,
        }


@dataclass(frozen=True)
class ToolCallResult:
    """Normalized tool output: text/image blocks plus the provider error flag."""

    content: tuple[TextBlock | ImageBlock, ...]
    is_error: bool = False


def qualify(provider_id: str, tool_name: str) -> str:
    return f"{provider_id}{TOOL_NAME_SEPARATOR}{tool_name}"


def split_qualified_name(qualified_name: str) -> tuple[str, str]:
    """Split ``provider__tool`` on the first separator.

    Names without a separator yield an empty provider id, which never resolves.
    """
    provider_id, sep, tool_name = qualified_name.partition(TOOL_NAME_SEPARATOR)
    if not sep:
        return "", qualified_name
    return provider_id, tool_name


def _truncate_output(text: str, max_lines: int, max_bytes: int) -> tuple[str, bool]:
    """Apply deterministic truncation by byte and line limits."""
    truncated = False
    result = text

    if max_bytes > 0:
        encoded = result.encode("utf-8", errors="ignore")
        if len(encoded) > max_bytes:
            truncated = True
            clipped = encoded[:max_bytes]
            result = clipped.decode("utf-8", errors="ignore")
            result += "\n... [truncated by byte limit]"

    if max_lines > 0:
        lines = result.splitlines()
        if len(lines) > max_lines:
            truncated = True
            result = "\n".join(lines[:max_lines] + ["... [truncated by line limit]"])

    return result, truncated


def _item_field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class ToolRegistry:
    """Registry of tool providers and the descriptors they currently expose."""

    def __init__(
        self,
        call_timeout_seconds: float = 60.0,
        max_output_lines: int = 2000,
        max_output_bytes: int = 100_000,
    ) -> None:
        self.call_timeout_seconds = call_timeout_seconds
        self.max_output_lines = max_output_lines
        self.max_output_bytes = max_output_bytes
        self._providers: dict[str, ToolProvider] = {}
        self._descriptors: dict[str, list[ToolDescriptor]] = {}

    def register_provider(self, provider: ToolProvider) -> None:
        """Register a provider; its id must not contain the name separator."""
        provider_id = provider.provider_id
        if not provider_id or TOOL_NAME_SEPARATOR in provider_id:
            raise ValueError(
                f"Invalid tool provider id {provider_id!r}: must be non-empty and "
                f"must not contain {TOOL_NAME_SEPARATOR!r}."
            )
        self._providers[provider_id] = provider
        LOGGER.debug(
            "tools.provider.registered",
            extra={"event": "tools.provider.registered", "provider": provider_id},
        )

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    async def initialize(self) -> list[ToolDescriptor]:
        """Refresh every provider's tools wholesale.

        A provider that fails to list is left out. Raises
        ``NoToolsAvailableError`` when nothing is available afterwards.
        """
        refreshed: dict[str, list[ToolDescriptor]] = {}
        for provider_id, provider in self._providers.items():
            try:
                raw_tools = await provider.list_tools()
            except Exception as exc:  # noqa: BLE001 - providers fail in many ways.
                LOGGER.warning(
                    "tools.provider.list_failed",
                    extra={
                        "event": "tools.provider.list_failed",
                        "provider": provider_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                continue
            descriptors = [
                descriptor
                for raw in raw_tools
                if (descriptor := self._descriptor_from(provider_id, raw)) is not None
            ]
            if descriptors:
                refreshed[provider_id] = descriptors

        self._descriptors = refreshed
        total = sum(len(items) for items in refreshed.values())
        LOGGER.info(
            "tools.initialized",
            extra={
                "event": "tools.initialized",
                "providers": sorted(refreshed),
                "tool_count": total,
            },
        )
        if total == 0:
            raise NoToolsAvailableError("No tools available")
        return self.descriptors

    @staticmethod
    def _descriptor_from(provider_id: str, raw: Any) -> ToolDescriptor | None:
        name = _item_field(raw, "name")
        if not isinstance(name, str) or not name.strip():
            return None
        description = _item_field(raw, "description")
        schema = _item_field(raw, "inputSchema")
        if schema is None:
            schema = _item_field(raw, "input_schema")
        return ToolDescriptor(
            provider_id=provider_id,
            tool_name=name.strip(),
            description=description if isinstance(description, str) else "",
            input_schema=dict(schema) if isinstance(schema, dict) else {},
        )

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return [d for items in self._descriptors.values() for d in items]

    @property
    def is_empty(self) -> bool:
        return not self._descriptors

    def list_tools(self, provider_id: str) -> list[ToolDescriptor]:
        if provider_id not in self._providers:
            raise ToolProviderNotFoundError(f"Unknown tool provider {provider_id!r}")
        return list(self._descriptors.get(provider_id, []))

    def build_tools_list(self) -> list[dict[str, Any]]:
        """Return model-formatted tool definitions in registration order."""
        return [descriptor.as_model_tool() for descriptor in self.descriptors]

    def resolve(self, qualified_name: str) -> tuple[str, str]:
        """Map a qualified name to ``(provider_id, tool_name)``."""
        provider_id, tool_name = split_qualified_name(qualified_name)
        if provider_id not in self._providers:
            raise ToolProviderNotFoundError(
                f"No tool provider registered for tool {qualified_name!r}"
            )
        return provider_id, tool_name

    async def call_tool(
        self, provider_id: str, name: str, arguments: dict[str, Any]
    ) -> ToolCallResult:
        """Run a tool on its provider under the configured timeout.

        Raises ``ToolExecutionError`` when the provider raises or times out.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ToolProviderNotFoundError(f"Unknown tool provider {provider_id!r}")

        LOGGER.info(
            "tools.call",
            extra={"event": "tools.call", "provider": provider_id, "tool": name},
        )
        try:
            raw = await asyncio.wait_for(
                provider.call_tool(name, arguments),
                timeout=self.call_timeout_seconds,
            )
        except TimeoutError as exc:
            raise ToolExecutionError(
                f"Tool {qualify(provider_id, name)!r} timed out after "
                f"{self.call_timeout_seconds:g}s"
            ) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:  # noqa: BLE001 - tool providers can fail arbitrarily.
            raise ToolExecutionError(
                f"Tool {qualify(provider_id, name)!r} raised an error: {exc}"
            ) from exc

        items = _item_field(raw, "content")
        content = tuple(self._to_block(item) for item in (items or []))
        is_error = bool(_item_field(raw, "isError") or _item_field(raw, "is_error"))
        return ToolCallResult(content=content, is_error=is_error)

    def _to_block(self, item: Any) -> TextBlock | ImageBlock:
        item_type = _item_field(item, "type")
        if item_type == "text":
            text, _ = _truncate_output(
                str(_item_field(item, "text") or ""),
                max_lines=self.max_output_lines,
                max_bytes=self.max_output_bytes,
            )
            return TextBlock(text=text)
        if item_type == "image":
            data = _item_field(item, "data")
            if isinstance(data, str) and data:
                mime_type = _item_field(item, "mimeType") or "image/png"
                return ImageBlock(media_type=str(mime_type), data=data)
        return TextBlock(text=f"[Unsupported tool content: {item_type or 'unknown'}]")
