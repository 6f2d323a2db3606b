"""Model backend boundary and the Anthropic streaming implementation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

import anthropic
from anthropic import AsyncAnthropic
import httpx

from .exceptions import (
    BackendConnectionError,
    BackendStreamingError,
    McpChatError,
    ModelNotFoundError,
)

LOGGER = logging.getLogger(__name__)

_NON_RETRYABLE: tuple[type[Exception], ...] = (
    anthropic.BadRequestError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.NotFoundError,
)


@dataclass(frozen=True)
class ModelRequest:
    """One streaming request: full history, every tool, fixed system text."""

    model: str
    max_tokens: int
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    system: str = ""
    thinking_budget: int | None = None

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self.messages,
        }
        if self.tools:
            kwargs["tools"] = self.tools
        if self.system:
            kwargs["system"] = self.system
        if self.thinking_budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
        return kwargs


class ModelBackend(Protocol):
    """Anything that turns a request into an async stream of raw events."""

    def stream(self, request: ModelRequest) -> AsyncIterator[Any]: ...


class AnthropicBackend:
    """Stream raw Messages API events from ``AsyncAnthropic``.

    Opening the stream is retried with linear backoff, but only while no event
    has been received; a failure mid-stream is raised immediately so callers
    never see duplicated fragments.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 120.0,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        client: Any | None = None,
    ) -> None:
        self.base_url = base_url
        self.retries = max(0, retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        if client is not None:
            self._client = client
        else:
            self._client = AsyncAnthropic(
                api_key=api_key or None,
                base_url=base_url or None,
                timeout=timeout,
                max_retries=0,
            )

    async def stream(self, request: ModelRequest) -> AsyncIterator[Any]:
        kwargs = request.to_kwargs()
        for attempt in range(self.retries + 1):
            received = False
            try:
                stream = await self._client.messages.create(stream=True, **kwargs)
                try:
                    async for event in stream:
                        received = True
                        yield event
                finally:
                    close = getattr(stream, "close", None)
                    if close is not None:
                        await close()
                return
            except asyncio.CancelledError:
                LOGGER.info(
                    "backend.request.cancelled",
                    extra={"event": "backend.request.cancelled"},
                )
                raise
            except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
                mapped_exc = self._map_exception(exc, request.model)
                LOGGER.warning(
                    "backend.request.retry",
                    extra={
                        "event": "backend.request.retry",
                        "attempt": attempt + 1,
                        "error_type": mapped_exc.__class__.__name__,
                    },
                )
                if received or attempt >= self.retries or isinstance(exc, _NON_RETRYABLE):
                    raise mapped_exc from exc
                await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))

    def _map_exception(self, exc: Exception, model: str) -> McpChatError:
        if isinstance(exc, McpChatError):
            return exc

        target = self.base_url or "the Anthropic API"
        if isinstance(
            exc,
            (
                anthropic.APIConnectionError,
                httpx.ConnectError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return BackendConnectionError(f"Unable to connect to {target}.")

        lower_message = str(exc).lower()
        if isinstance(exc, anthropic.NotFoundError) or (
            "model" in lower_message and "not found" in lower_message
        ):
            return ModelNotFoundError(f"Model {model!r} was not found on {target}.")

        return BackendStreamingError(f"Failed to stream response from {target}: {exc}")
