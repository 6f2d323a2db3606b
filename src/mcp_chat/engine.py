"""Conversation engine: the streaming tool-use turn loop."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import logging
from typing import Any

from .backend import ModelBackend, ModelRequest
from .content import Message, TextBlock, ToolResultBlock, ToolUseBlock
from .events import GENERIC_ERROR_TEXT, DisplayEvent
from .exceptions import (
    BackendStreamingError,
    ChatNotFoundError,
    ConversationBusyError,
    EngineNotInitializedError,
    ToolExecutionError,
    ToolInputDecodeError,
    ToolProviderNotFoundError,
)
from .message_store import CACHE_CONTROL
from .session import SessionManager
from .state import ConversationState, StateManager
from .stream_decoder import StreamDecoder
from .task_manager import TaskManager
from .tool_registry import ToolDescriptor, ToolRegistry

LOGGER = logging.getLogger(__name__)

CANCELLED_TOOL_TEXT = "Tool execution cancelled"

_END = object()


@dataclass(frozen=True)
class AmbientContext:
    """Caller state appended to the user's text as ``key: value`` lines."""

    resource_path: str | None = None
    item_id: str | None = None
    extras: dict[str, str] = field(default_factory=dict)

    def suffix_lines(self) -> list[str]:
        lines: list[str] = []
        if self.resource_path:
            lines.append(f"Active resource: {self.resource_path}")
        if self.item_id:
            lines.append(f"Active item: {self.item_id}")
        lines.extend(f"{key}: {value}" for key, value in self.extras.items())
        return lines

    def apply(self, text: str) -> str:
        lines = self.suffix_lines()
        if not lines:
            return text
        return text + "\n\n" + "\n".join(lines)


class ConversationEngine:
    """Drive model turns, tool round trips, and their bookkeeping.

    ``send_message()`` starts one driver task per turn. The task runs the loop
    and puts display events on a bounded queue that the returned iterator
    drains, so a slow consumer pauses the model stream instead of buffering
    it. Every message the loop produces is persisted through the session
    before the loop moves on.
    """

    def __init__(
        self,
        session: SessionManager,
        registry: ToolRegistry,
        backend: ModelBackend,
        model: str,
        max_tokens: int = 4096,
        system_prompt: str = "",
        thinking_budget: int | None = None,
        max_tool_iterations: int = 10,
        event_queue_size: int = 64,
    ) -> None:
        self.session = session
        self.registry = registry
        self.backend = backend
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.thinking_budget = thinking_budget or None
        self.max_tool_iterations = max(1, max_tool_iterations)
        self.event_queue_size = max(1, event_queue_size)
        self._states: dict[str, StateManager] = {}
        self._tasks = TaskManager()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> list[ToolDescriptor]:
        """Refresh the tool registry. Raises ``NoToolsAvailableError``."""
        self._initialized = False
        descriptors = await self.registry.initialize()
        self._initialized = True
        return descriptors

    def state_for(self, chat_id: str) -> StateManager:
        state = self._states.get(chat_id)
        if state is None:
            state = StateManager(name=chat_id)
            self._states[chat_id] = state
        return state

    def build_request(self, chat_id: str) -> ModelRequest:
        """Full history plus every tool, with the last tool marked cacheable."""
        tools = self.registry.build_tools_list()
        if tools:
            tools[-1] = {**tools[-1], "cache_control": dict(CACHE_CONTROL)}
        return ModelRequest(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=self.session.messages.build_api_context(chat_id),
            tools=tools,
            system=self.system_prompt,
            thinking_budget=self.thinking_budget,
        )

    async def send_message(
        self,
        text: str,
        context: AmbientContext | None = None,
        chat_id: str | None = None,
    ) -> AsyncIterator[DisplayEvent]:
        """Run one user turn and yield its display events in order.

        Empty ``text`` resumes the conversation without adding a user message.
        Errors the loop can report are yielded as ``error`` events; persistence
        failures are raised once the events before them have been yielded.
        """
        if not self._initialized:
            raise EngineNotInitializedError("Call initialize() before sending messages.")
        target = chat_id or self.session.active_chat_id
        if target not in self.session.messages:
            raise ChatNotFoundError(f"Unknown chat id {target!r}")
        if not text and not self.session.messages.messages(target):
            raise ValueError("Cannot resume a conversation with no messages.")

        state = self.state_for(target)
        if not await state.transition_if(ConversationState.IDLE, ConversationState.AWAITING_MODEL):
            LOGGER.info(
                "turn.rejected.busy",
                extra={"event": "turn.rejected.busy", "chat_id": target},
            )
            raise ConversationBusyError(f"A turn is already in progress for chat {target!r}.")

        task_name = f"turn:{target}"
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.event_queue_size)
        task = self._tasks.spawn(self._drive(target, text, context, state, queue), task_name)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await task
        finally:
            if not task.done():
                LOGGER.info(
                    "turn.cancelled",
                    extra={"event": "turn.cancelled", "chat_id": target},
                )
                await self._tasks.cancel(task_name)
            await state.reset()

    async def _drive(
        self,
        chat_id: str,
        text: str,
        context: AmbientContext | None,
        state: StateManager,
        queue: asyncio.Queue[Any],
    ) -> None:
        cancelled = False
        try:
            await self._run_turn(chat_id, text, context, state, queue)
        except ChatNotFoundError:
            # Deleted mid-turn; there is no history left to write to.
            LOGGER.warning(
                "turn.chat.missing",
                extra={"event": "turn.chat.missing", "chat_id": chat_id},
            )
            await queue.put(DisplayEvent.error("This chat was deleted while the reply was running."))
            await state.transition_to(ConversationState.ERROR)
        except asyncio.CancelledError:
            # The consumer is gone; nobody is left to read the end marker.
            cancelled = True
            await self._resolve_dangling(chat_id)
            raise
        finally:
            if not cancelled:
                await queue.put(_END)

    async def _run_turn(
        self,
        chat_id: str,
        text: str,
        context: AmbientContext | None,
        state: StateManager,
        queue: asyncio.Queue[Any],
    ) -> None:
        LOGGER.info(
            "turn.started",
            extra={"event": "turn.started", "chat_id": chat_id, "resume": not text},
        )
        if text:
            content = context.apply(text) if context is not None else text
            await self.session.append_message(chat_id, Message(role="user", content=content))

        for iteration in range(self.max_tool_iterations):
            if iteration:
                await state.transition_to(ConversationState.AWAITING_MODEL)

            decoder = StreamDecoder()
            try:
                async for raw_event in self.backend.stream(self.build_request(chat_id)):
                    display_events = decoder.feed(raw_event)
                    await self._track_stream_state(state, decoder)
                    for display_event in display_events:
                        await queue.put(display_event)
                if not decoder.finished:
                    raise BackendStreamingError("Model stream ended before message_stop")
                blocks = decoder.blocks()
            except ToolInputDecodeError as exc:
                LOGGER.warning(
                    "turn.tool_input.invalid",
                    extra={
                        "event": "turn.tool_input.invalid",
                        "chat_id": chat_id,
                        "error": str(exc),
                    },
                )
                await queue.put(DisplayEvent.error(str(exc)))
                await state.transition_to(ConversationState.ERROR)
                return
            except ChatNotFoundError:
                raise
            except Exception as exc:  # noqa: BLE001 - any backend failure ends the turn.
                LOGGER.error(
                    "turn.backend.failed",
                    extra={
                        "event": "turn.backend.failed",
                        "chat_id": chat_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                await queue.put(DisplayEvent.error(GENERIC_ERROR_TEXT))
                await state.transition_to(ConversationState.ERROR)
                return

            total = await self.session.add_usage(chat_id, decoder.usage)
            LOGGER.debug(
                "turn.usage",
                extra={
                    "event": "turn.usage",
                    "chat_id": chat_id,
                    "stop_reason": decoder.stop_reason,
                    "input_tokens": total.input_tokens,
                    "output_tokens": total.output_tokens,
                },
            )

            tool_uses = decoder.tool_uses()
            if not tool_uses:
                if blocks:
                    await self.session.append_message(
                        chat_id, Message(role="assistant", content=tuple(blocks))
                    )
                await state.transition_to(ConversationState.DONE)
                LOGGER.info(
                    "turn.completed",
                    extra={
                        "event": "turn.completed",
                        "chat_id": chat_id,
                        "iterations": iteration + 1,
                    },
                )
                return

            await self.session.append_message(
                chat_id, Message(role="assistant", content=tuple(blocks))
            )
            await state.transition_to(ConversationState.TOOL_ROUND_TRIP)
            if not await self._run_tools(chat_id, tool_uses, queue):
                await state.transition_to(ConversationState.ERROR)
                return

        LOGGER.warning(
            "turn.iterations.exhausted",
            extra={
                "event": "turn.iterations.exhausted",
                "chat_id": chat_id,
                "max_tool_iterations": self.max_tool_iterations,
            },
        )
        await queue.put(
            DisplayEvent.error(
                f"Stopped after {self.max_tool_iterations} model requests without a final answer."
            )
        )
        await state.transition_to(ConversationState.ERROR)

    @staticmethod
    async def _track_stream_state(state: StateManager, decoder: StreamDecoder) -> None:
        if decoder.active_kind is None:
            return
        target = (
            ConversationState.STREAMING_TOOL
            if decoder.active_kind == "tool_use"
            else ConversationState.STREAMING_TEXT
        )
        if state.state != target:
            await state.transition_to(target)

    async def _run_tools(
        self,
        chat_id: str,
        tool_uses: list[ToolUseBlock],
        queue: asyncio.Queue[Any],
    ) -> bool:
        """Execute a turn's tool uses and append their results as one user message.

        Returns False when the loop must stop. Every tool use gets a result
        in all outcomes, including cancellation.
        """
        results: list[ToolResultBlock] = []
        try:
            for tool_use in tool_uses:
                try:
                    provider_id, tool_name = self.registry.resolve(tool_use.name)
                except ToolProviderNotFoundError as exc:
                    LOGGER.warning(
                        "turn.tool.provider_missing",
                        extra={
                            "event": "turn.tool.provider_missing",
                            "chat_id": chat_id,
                            "tool": tool_use.name,
                        },
                    )
                    await queue.put(DisplayEvent.error(str(exc)))
                    results.extend(_fill_missing(tool_uses, results, str(exc)))
                    await self.session.append_message(
                        chat_id, Message(role="user", content=tuple(results))
                    )
                    return False

                try:
                    outcome = await self.registry.call_tool(provider_id, tool_name, tool_use.input)
                    result = ToolResultBlock(
                        tool_use_id=tool_use.id,
                        content=outcome.content,
                        is_error=outcome.is_error,
                    )
                except ToolExecutionError as exc:
                    LOGGER.warning(
                        "turn.tool.failed",
                        extra={
                            "event": "turn.tool.failed",
                            "chat_id": chat_id,
                            "tool": tool_use.name,
                            "error": str(exc),
                        },
                    )
                    result = ToolResultBlock(
                        tool_use_id=tool_use.id,
                        content=(TextBlock(text=str(exc)),),
                        is_error=True,
                    )
                results.append(result)
                await queue.put(
                    DisplayEvent(
                        type="tool_result",
                        name=tool_use.name,
                        content=[item.to_wire() for item in result.content],
                        is_error=result.is_error,
                    )
                )
        except asyncio.CancelledError:
            results.extend(_fill_missing(tool_uses, results, CANCELLED_TOOL_TEXT))
            LOGGER.info(
                "turn.tool.cancelled",
                extra={
                    "event": "turn.tool.cancelled",
                    "chat_id": chat_id,
                    "results": len(results),
                },
            )
            await self.session.append_message(
                chat_id, Message(role="user", content=tuple(results))
            )
            raise

        await self.session.append_message(chat_id, Message(role="user", content=tuple(results)))
        return True

    async def _resolve_dangling(self, chat_id: str) -> None:
        """Answer tool uses a cancellation left without results."""
        if chat_id not in self.session.messages:
            return
        pending = self.session.messages.unresolved_tool_uses(chat_id)
        if not pending:
            return
        await self.session.append_message(
            chat_id,
            Message(
                role="user",
                content=tuple(_fill_missing(pending, [], CANCELLED_TOOL_TEXT)),
            ),
        )

    async def close(self) -> None:
        """Cancel any turn still running."""
        await self._tasks.cancel_all()


def _fill_missing(
    tool_uses: list[ToolUseBlock], results: list[ToolResultBlock], text: str
) -> list[ToolResultBlock]:
    answered = {result.tool_use_id for result in results}
    return [
        ToolResultBlock(tool_use_id=use.id, content=(TextBlock(text=text),), is_error=True)
        for use in tool_uses
        if use.id not in answered
    ]
