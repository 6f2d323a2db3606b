"""Tests for the ConversationEngine turn loop with deterministic fakes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
from typing import Any
import unittest

from mcp_chat.backend import ModelRequest
from mcp_chat.content import (
    Message,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from mcp_chat.engine import CANCELLED_TOOL_TEXT, AmbientContext, ConversationEngine
from mcp_chat.events import GENERIC_ERROR_TEXT, DisplayEvent
from mcp_chat.exceptions import (
    BackendConnectionError,
    ChatNotFoundError,
    ConversationBusyError,
    EngineNotInitializedError,
    NoToolsAvailableError,
)
from mcp_chat.message_store import CACHE_CONTROL
from mcp_chat.persistence import MemoryStateStore, PersistenceError
from mcp_chat.session import STATE_KEY, SessionManager
from mcp_chat.state import ConversationState
from mcp_chat.tool_registry import ToolRegistry


def _message_start(input_tokens: int) -> dict[str, Any]:
    return {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens}}}


def _message_end(stop_reason: str, output_tokens: int) -> list[dict[str, Any]]:
    return [
        {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason},
            "usage": {"output_tokens": output_tokens},
        },
        {"type": "message_stop"},
    ]


def _text_turn(
    *chunks: str, input_tokens: int = 10, output_tokens: int = 5
) -> list[dict[str, Any]]:
    events = [
        _message_start(input_tokens),
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    events.extend(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": chunk}}
        for chunk in chunks
    )
    events.append({"type": "content_block_stop", "index": 0})
    return events + _message_end("end_turn", output_tokens)


def _tool_turn(
    tool_id: str,
    name: str,
    json_parts: list[str],
    input_tokens: int = 20,
    output_tokens: int = 8,
    leading: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    leading = leading or []
    index = len(leading)
    events = [_message_start(input_tokens)]
    for position, block in enumerate(leading):
        events.append({"type": "content_block_start", "index": position, "content_block": block})
        events.append({"type": "content_block_stop", "index": position})
    events.append(
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        }
    )
    events.extend(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": part},
        }
        for part in json_parts
    )
    events.append({"type": "content_block_stop", "index": index})
    return events + _message_end("tool_use", output_tokens)


class FakeBackend:
    """Model backend replaying one scripted turn per request."""

    def __init__(self, turns: list[Any]) -> None:
        self.turns = turns
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest) -> AsyncIterator[dict[str, Any]]:
        self.requests.append(request)
        turn = self.turns[len(self.requests) - 1]
        if isinstance(turn, Exception):
            raise turn
        for event in turn:
            yield event


class FakeProvider:
    """Tool provider with optional blocking to observe in-flight calls."""

    def __init__(
        self,
        provider_id: str = "fs",
        text: str = "hi",
        block: bool = False,
        delay: float = 0.0,
    ) -> None:
        self._provider_id = provider_id
        self.text = text
        self.block = block
        self.delay = delay
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @property
    def provider_id(self) -> str:
        return self._provider_id

    async def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": "readFile",
                "description": "Read a file",
                "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
            },
            {"name": "listDir", "description": "List a directory"},
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((name, arguments))
        self.started.set()
        if self.block:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return {"content": [{"type": "text", "text": self.text}]}


class FlakyStore(MemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def save(self, key: str, value: Any) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        await super().save(key, value)


async def _collect(stream: AsyncIterator[DisplayEvent]) -> list[DisplayEvent]:
    return [event async for event in stream]


class EngineTests(unittest.IsolatedAsyncioTestCase):
    """End-to-end turn loop behavior."""

    async def _engine(
        self,
        turns: list[Any],
        provider: FakeProvider | None = None,
        store: MemoryStateStore | None = None,
        call_timeout_seconds: float = 5.0,
        **kwargs: Any,
    ) -> ConversationEngine:
        self.provider = provider or FakeProvider()
        registry = ToolRegistry(call_timeout_seconds=call_timeout_seconds)
        registry.register_provider(self.provider)
        self.store = store or MemoryStateStore()
        self.session = SessionManager(self.store)
        await self.session.load()
        self.backend = FakeBackend(turns)
        engine = ConversationEngine(
            session=self.session,
            registry=registry,
            backend=self.backend,
            model="claude-test",
            system_prompt="You are helpful.",
            **kwargs,
        )
        await engine.initialize()
        return engine

    def _history(self) -> list[Message]:
        return self.session.messages.messages(self.session.active_chat_id)

    async def _persisted_messages(self) -> list[dict[str, Any]]:
        snapshot = await self.store.fetch(STATE_KEY)
        return snapshot["chats"][0]["messages"]

    async def test_plain_answer_appends_one_assistant_message(self) -> None:
        engine = await self._engine([_text_turn("Hel", "lo!", input_tokens=12, output_tokens=4)])

        events = await _collect(engine.send_message("hello"))

        self.assertEqual([e.to_dict() for e in events], [
            {"type": "text", "text": "Hel"},
            {"type": "text", "text": "lo!"},
        ])
        history = self._history()
        self.assertEqual(history[0], Message(role="user", content="hello"))
        self.assertEqual(history[1], Message(role="assistant", content=(TextBlock("Hello!"),)))
        self.assertEqual(len(history), 2)
        self.assertEqual(
            self.session.usage(self.session.active_chat_id),
            TokenUsage(input_tokens=12, output_tokens=4),
        )
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(engine.state_for(self.session.active_chat_id).state, ConversationState.IDLE)
        self.assertEqual(len(await self._persisted_messages()), 2)

    async def test_tool_round_trip_reaches_final_answer(self) -> None:
        engine = await self._engine(
            [
                _tool_turn("tu_1", "fs__readFile", ['{"path":', ' "a.txt"}']),
                _text_turn("The file says hi.", input_tokens=30, output_tokens=6),
            ]
        )

        events = await _collect(engine.send_message("what is in a.txt?"))

        self.assertEqual(
            [e.type for e in events],
            ["input_json_delta", "input_json_delta", "tool_use", "tool_result", "text"],
        )
        self.assertEqual(events[2].input, {"path": "a.txt"})
        self.assertEqual(events[3].content, [{"type": "text", "text": "hi"}])
        self.assertFalse(events[3].is_error)
        self.assertEqual(self.provider.calls, [("readFile", {"path": "a.txt"})])

        history = self._history()
        self.assertEqual(len(history), 4)
        self.assertEqual(
            history[1].content,
            (ToolUseBlock(id="tu_1", name="fs__readFile", input={"path": "a.txt"}),),
        )
        self.assertEqual(
            history[2],
            Message(
                role="user",
                content=(ToolResultBlock(tool_use_id="tu_1", content=(TextBlock("hi"),)),),
            ),
        )
        self.assertEqual(history[3].text, "The file says hi.")
        self.assertEqual(self.session.messages.unresolved_tool_uses(self.session.active_chat_id), [])
        self.assertEqual(
            self.session.usage(self.session.active_chat_id),
            TokenUsage(input_tokens=50, output_tokens=14),
        )
        second_request = self.backend.requests[1]
        self.assertEqual(second_request.messages[2]["content"][0]["tool_use_id"], "tu_1")

    async def test_cache_marks_present_on_every_request(self) -> None:
        engine = await self._engine(
            [_tool_turn("tu_1", "fs__listDir", ["{}"]), _text_turn("done")]
        )
        await _collect(engine.send_message("list it"))

        self.assertEqual(len(self.backend.requests), 2)
        for request in self.backend.requests:
            self.assertEqual(request.tools[-1]["cache_control"], CACHE_CONTROL)
            self.assertNotIn("cache_control", request.tools[0])
            self.assertEqual(request.system, "You are helpful.")
        first_messages = self.backend.requests[0].messages
        self.assertEqual(first_messages[-1]["content"][0]["cache_control"], CACHE_CONTROL)

    async def test_truncated_tool_input_aborts_without_appending(self) -> None:
        engine = await self._engine([_tool_turn("tu_1", "fs__readFile", ['{"path": "a.t'])])

        events = await _collect(engine.send_message("read a.txt"))

        self.assertEqual(events[-1].type, "error")
        self.assertTrue(events[-1].is_error)
        self.assertNotIn("tool_use", [e.type for e in events])
        self.assertEqual(self._history(), [Message(role="user", content="read a.txt")])
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(await self._persisted_messages(), [{"role": "user", "content": "read a.txt"}])
        self.assertEqual(engine.state_for(self.session.active_chat_id).state, ConversationState.IDLE)

    async def test_backend_failure_yields_one_generic_error(self) -> None:
        engine = await self._engine([BackendConnectionError("Unable to connect")])

        with self.assertLogs("mcp_chat.engine", level="ERROR") as logs:
            events = await _collect(engine.send_message("hello"))

        self.assertEqual(events, [DisplayEvent.error(GENERIC_ERROR_TEXT)])
        self.assertTrue(any("turn.backend.failed" in line for line in logs.output))
        self.assertEqual(self._history(), [Message(role="user", content="hello")])

    async def test_stream_ending_before_message_stop_is_a_backend_failure(self) -> None:
        cut_short = _text_turn("The answer is", input_tokens=12, output_tokens=4)[:3]
        engine = await self._engine([cut_short])

        with self.assertLogs("mcp_chat.engine", level="ERROR") as logs:
            events = await _collect(engine.send_message("hello"))

        self.assertEqual(
            events,
            [DisplayEvent.text_delta("The answer is"), DisplayEvent.error(GENERIC_ERROR_TEXT)],
        )
        self.assertTrue(any("turn.backend.failed" in line for line in logs.output))
        self.assertEqual(self._history(), [Message(role="user", content="hello")])
        self.assertEqual(await self._persisted_messages(), [{"role": "user", "content": "hello"}])
        self.assertEqual(self.session.usage(self.session.active_chat_id), TokenUsage())
        self.assertEqual(engine.state_for(self.session.active_chat_id).state, ConversationState.IDLE)

    async def test_deleting_chat_during_tool_call_ends_turn_with_error(self) -> None:
        provider = FakeProvider(block=True)
        engine = await self._engine(
            [_tool_turn("tu_1", "fs__readFile", ['{"path": "a.txt"}'])],
            provider=provider,
        )
        doomed = self.session.active_chat_id

        stream = engine.send_message("read a.txt")
        received = [await stream.__anext__()]
        await provider.started.wait()
        replacement = await self.session.delete_active_chat()
        provider.release.set()

        with self.assertLogs("mcp_chat.engine", level="WARNING") as logs:
            received.extend(await _collect(stream))

        self.assertEqual(received[-1].type, "error")
        self.assertIn("deleted", received[-1].text)
        self.assertTrue(any("turn.chat.missing" in line for line in logs.output))
        self.assertNotIn(doomed, self.session.messages)
        self.assertEqual(self.session.active_chat_id, replacement.id)
        self.assertEqual(engine.state_for(doomed).state, ConversationState.IDLE)
        snapshot = await self.store.fetch(STATE_KEY)
        self.assertEqual([chat["id"] for chat in snapshot["chats"]], [replacement.id])

    async def test_unknown_chat_id_is_rejected(self) -> None:
        engine = await self._engine([_text_turn("unused")])

        with self.assertRaises(ChatNotFoundError):
            await engine.send_message("hi", chat_id="chat-missing").__anext__()
        self.assertEqual(self.backend.requests, [])

    async def test_unknown_provider_records_error_results_and_stops(self) -> None:
        engine = await self._engine([_tool_turn("tu_9", "web__search", ['{"q": "x"}'])])

        events = await _collect(engine.send_message("search"))

        self.assertEqual(events[-1].type, "error")
        self.assertIn("web__search", events[-1].text)
        self.assertEqual(len(self.backend.requests), 1)
        history = self._history()
        self.assertEqual(len(history), 3)
        result = history[2].content[0]
        self.assertEqual(result.tool_use_id, "tu_9")
        self.assertTrue(result.is_error)
        self.assertEqual(self.session.messages.unresolved_tool_uses(self.session.active_chat_id), [])

    async def test_tool_timeout_becomes_error_result_and_loop_continues(self) -> None:
        engine = await self._engine(
            [
                _tool_turn("tu_1", "fs__readFile", ['{"path": "big.bin"}']),
                _text_turn("That file could not be read."),
            ],
            provider=FakeProvider(delay=1.0),
            call_timeout_seconds=0.05,
        )

        events = await _collect(engine.send_message("read big.bin"))

        tool_results = [e for e in events if e.type == "tool_result"]
        self.assertEqual(len(tool_results), 1)
        self.assertTrue(tool_results[0].is_error)
        self.assertIn("timed out", tool_results[0].content[0]["text"])
        history = self._history()
        self.assertTrue(history[2].content[0].is_error)
        self.assertEqual(history[3].text, "That file could not be read.")

    async def test_tool_iterations_are_bounded(self) -> None:
        engine = await self._engine(
            [
                _tool_turn("tu_1", "fs__listDir", ["{}"]),
                _tool_turn("tu_2", "fs__listDir", ["{}"]),
                _text_turn("never reached"),
            ],
            max_tool_iterations=2,
        )

        events = await _collect(engine.send_message("loop"))

        self.assertEqual(len(self.backend.requests), 2)
        self.assertEqual(events[-1].type, "error")
        self.assertIn("2 model requests", events[-1].text)
        self.assertEqual(self.session.messages.unresolved_tool_uses(self.session.active_chat_id), [])

    async def test_second_send_on_busy_chat_is_rejected(self) -> None:
        provider = FakeProvider(block=True)
        engine = await self._engine(
            [_tool_turn("tu_1", "fs__readFile", ['{"path": "a.txt"}']), _text_turn("ok")],
            provider=provider,
        )

        first = engine.send_message("one")
        received = [await first.__anext__()]
        await provider.started.wait()

        second = engine.send_message("two")
        with self.assertRaises(ConversationBusyError):
            await second.__anext__()

        provider.release.set()
        received.extend(await _collect(first))
        self.assertEqual(received[-1].text, "ok")
        self.assertEqual(
            [m.text for m in self._history() if m.role == "user" and isinstance(m.content, str)],
            ["one"],
        )

        # The chat accepts a new turn once the first has finished.
        self.backend.turns.append(_text_turn("again"))
        events = await _collect(engine.send_message("three"))
        self.assertEqual(events[-1].text, "again")

    async def test_cancel_during_tool_call_resolves_tool_use(self) -> None:
        provider = FakeProvider(block=True)
        engine = await self._engine(
            [_tool_turn("tu_1", "fs__readFile", ['{"path": "a.txt"}'])],
            provider=provider,
        )

        stream = engine.send_message("read a.txt")
        await stream.__anext__()
        await provider.started.wait()
        await stream.aclose()

        history = self._history()
        self.assertEqual(len(history), 3)
        result = history[2].content[0]
        self.assertEqual(result.tool_use_id, "tu_1")
        self.assertTrue(result.is_error)
        self.assertEqual(result.content, (TextBlock(CANCELLED_TOOL_TEXT),))
        self.assertEqual(self.session.messages.unresolved_tool_uses(self.session.active_chat_id), [])
        persisted = await self._persisted_messages()
        self.assertEqual(persisted[-1]["content"][0]["is_error"], True)
        self.assertEqual(engine.state_for(self.session.active_chat_id).state, ConversationState.IDLE)

    async def test_persistence_failure_propagates(self) -> None:
        store = FlakyStore()
        engine = await self._engine([_text_turn("unused")], store=store)
        store.fail = True

        with self.assertRaises(PersistenceError):
            await _collect(engine.send_message("hello"))

        self.assertEqual(self.backend.requests, [])
        self.assertEqual(engine.state_for(self.session.active_chat_id).state, ConversationState.IDLE)

    async def test_ambient_context_is_appended_to_user_text(self) -> None:
        engine = await self._engine([_text_turn("ok")])
        context = AmbientContext(
            resource_path="analysis.ipynb", item_id="cell-3", extras={"kernel": "python3"}
        )

        await _collect(engine.send_message("explain this", context))

        self.assertEqual(
            self._history()[0].content,
            "explain this\n\nActive resource: analysis.ipynb\nActive item: cell-3\nkernel: python3",
        )

    async def test_empty_text_resumes_without_user_message(self) -> None:
        engine = await self._engine([_text_turn("resumed answer")])
        chat_id = self.session.active_chat_id
        await self.session.append_message(chat_id, Message(role="user", content="read a.txt"))
        await self.session.append_message(
            chat_id,
            Message(role="assistant", content=(ToolUseBlock(id="tu_1", name="fs__readFile"),)),
        )
        await self.session.append_message(
            chat_id,
            Message(
                role="user",
                content=(ToolResultBlock(tool_use_id="tu_1", content=(TextBlock("hi"),)),),
            ),
        )

        await _collect(engine.send_message(""))

        history = self._history()
        self.assertEqual(len(history), 4)
        self.assertEqual(history[-1].text, "resumed answer")
        self.assertEqual(len(self.backend.requests[0].messages), 3)

    async def test_thinking_is_replayed_verbatim_on_later_requests(self) -> None:
        leading = [
            {"type": "thinking", "thinking": "need the file", "signature": "sig-1"},
            {"type": "redacted_thinking", "data": "EncryptedBlob=="},
        ]
        engine = await self._engine(
            [
                _tool_turn("tu_1", "fs__readFile", ['{"path": "a.txt"}'], leading=leading),
                _text_turn("done"),
            ],
            thinking_budget=2048,
            max_tokens=8192,
        )

        await _collect(engine.send_message("read"))

        replayed = self.backend.requests[1].messages[1]["content"]
        self.assertEqual(
            replayed[:2],
            [
                {"type": "thinking", "thinking": "need the file", "signature": "sig-1"},
                {"type": "redacted_thinking", "data": "EncryptedBlob=="},
            ],
        )
        self.assertEqual(self.backend.requests[0].thinking_budget, 2048)
        self.assertEqual(
            self._history()[1].content[1], ThinkingBlock(redacted=True, data="EncryptedBlob==")
        )

    async def test_small_event_queue_applies_backpressure(self) -> None:
        chunks = [f"{i} " for i in range(20)]
        engine = await self._engine([_text_turn(*chunks)], event_queue_size=1)

        events = await _collect(engine.send_message("count"))

        self.assertEqual("".join(e.text for e in events), "".join(chunks))

    async def test_send_before_initialize_is_rejected(self) -> None:
        session = SessionManager(MemoryStateStore())
        await session.load()
        registry = ToolRegistry()
        registry.register_provider(FakeProvider())
        engine = ConversationEngine(session, registry, FakeBackend([]), model="m")

        with self.assertRaises(EngineNotInitializedError):
            await engine.send_message("hi").__anext__()

    async def test_initialize_without_tools_fails(self) -> None:
        session = SessionManager(MemoryStateStore())
        await session.load()
        engine = ConversationEngine(session, ToolRegistry(), FakeBackend([]), model="m")

        with self.assertRaisesRegex(NoToolsAvailableError, "No tools available"):
            await engine.initialize()
        self.assertFalse(engine.initialized)

    async def test_distinct_chats_run_concurrently(self) -> None:
        provider = FakeProvider(block=True)
        engine = await self._engine(
            [_tool_turn("tu_1", "fs__readFile", ["{}"]), _text_turn("other chat"), _text_turn("first")],
            provider=provider,
        )
        first_chat = self.session.active_chat_id
        first = engine.send_message("one", chat_id=first_chat)
        await first.__anext__()
        await provider.started.wait()

        other = await self.session.create_chat()
        events = await _collect(engine.send_message("two", chat_id=other.id))
        self.assertEqual(events[-1].text, "other chat")

        provider.release.set()
        rest = await _collect(first)
        self.assertEqual(rest[-1].text, "first")
        self.assertEqual(json.loads(json.dumps(self.session.snapshot()))["currentChatId"], other.id)


if __name__ == "__main__":
    unittest.main()
