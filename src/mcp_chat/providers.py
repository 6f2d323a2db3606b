"""MCP server connections exposed as tool providers."""

from __future__ import annotations

from contextlib import AsyncExitStack
import logging
import os
from typing import Any, Literal

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

LOGGER = logging.getLogger(__name__)

Transport = Literal["stdio", "sse"]


def _resolve_env(env: dict[str, str]) -> dict[str, str]:
    """Expand ``${NAME}`` values from the process environment."""
    resolved: dict[str, str] = {}
    for key, value in env.items():
        if value.startswith("${") and value.endswith("}"):
            resolved[key] = os.environ.get(value[2:-1], "")
        else:
            resolved[key] = value
    return resolved


class McpToolProvider:
    """One MCP server session, reachable over stdio or SSE."""

    def __init__(
        self,
        provider_id: str,
        transport: Transport = "stdio",
        command: str = "",
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        url: str = "",
    ) -> None:
        self._provider_id = provider_id
        self.transport = transport
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.url = url
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> McpToolProvider:
        return cls(
            provider_id=config["id"],
            transport=config.get("transport", "stdio"),
            command=config.get("command", ""),
            args=config.get("args"),
            env=config.get("env"),
            url=config.get("url", ""),
        )

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        """Open the transport and initialize the MCP session."""
        if self._session is not None:
            return
        stack = AsyncExitStack()
        try:
            if self.transport == "sse":
                read, write = await stack.enter_async_context(sse_client(self.url))
            else:
                params = StdioServerParameters(
                    command=self.command,
                    args=self.args,
                    env=_resolve_env(self.env) or None,
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        LOGGER.info(
            "provider.connected",
            extra={
                "event": "provider.connected",
                "provider": self._provider_id,
                "transport": self.transport,
            },
        )

    async def disconnect(self) -> None:
        """Close the session and its transport."""
        stack, self._stack, self._session = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as exc:  # noqa: BLE001 - transport teardown is best effort.
            LOGGER.warning(
                "provider.disconnect_failed",
                extra={
                    "event": "provider.disconnect_failed",
                    "provider": self._provider_id,
                    "error": str(exc),
                },
            )
        LOGGER.info(
            "provider.disconnected",
            extra={"event": "provider.disconnected", "provider": self._provider_id},
        )

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError(
                f"Not connected to MCP server {self._provider_id!r}. Call connect() first."
            )
        return self._session

    async def list_tools(self) -> list[dict[str, Any]]:
        response = await self._require_session().list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": tool.inputSchema,
            }
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._require_session().call_tool(name, arguments)
        content: list[dict[str, Any]] = []
        for item in result.content:
            entry: dict[str, Any] = {"type": getattr(item, "type", "unknown")}
            for attr in ("text", "data", "mimeType"):
                value = getattr(item, attr, None)
                if value is not None:
                    entry[attr] = value
            content.append(entry)
        return {"content": content, "isError": bool(getattr(result, "isError", False))}
