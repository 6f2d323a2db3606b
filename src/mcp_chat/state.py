"""Turn state machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """Finite state machine for one conversation's turn lifecycle."""

    IDLE = "IDLE"
    AWAITING_MODEL = "AWAITING_MODEL"
    STREAMING_TEXT = "STREAMING_TEXT"
    STREAMING_TOOL = "STREAMING_TOOL"
    TOOL_ROUND_TRIP = "TOOL_ROUND_TRIP"
    DONE = "DONE"
    ERROR = "ERROR"


_STREAMING = {ConversationState.STREAMING_TEXT, ConversationState.STREAMING_TOOL}

ALLOWED_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.IDLE: frozenset({ConversationState.AWAITING_MODEL}),
    ConversationState.AWAITING_MODEL: frozenset(
        _STREAMING
        | {ConversationState.TOOL_ROUND_TRIP, ConversationState.DONE, ConversationState.ERROR}
    ),
    ConversationState.STREAMING_TEXT: frozenset(
        _STREAMING
        | {ConversationState.TOOL_ROUND_TRIP, ConversationState.DONE, ConversationState.ERROR}
    ),
    ConversationState.STREAMING_TOOL: frozenset(
        _STREAMING
        | {ConversationState.TOOL_ROUND_TRIP, ConversationState.DONE, ConversationState.ERROR}
    ),
    ConversationState.TOOL_ROUND_TRIP: frozenset(
        {ConversationState.AWAITING_MODEL, ConversationState.DONE, ConversationState.ERROR}
    ),
    ConversationState.DONE: frozenset({ConversationState.IDLE}),
    ConversationState.ERROR: frozenset({ConversationState.IDLE}),
}


class StateManager:
    """Manage state transitions with async lock semantics."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._lock = asyncio.Lock()
        self._state = ConversationState.IDLE

    @property
    def state(self) -> ConversationState:
        """Current state without taking the lock (for logging and tests)."""
        return self._state

    async def get_state(self) -> ConversationState:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    async def transition_to(self, new_state: ConversationState) -> ConversationState:
        """Transition to a new state and return it.

        Raises ``ValueError`` for a transition the turn loop never makes.
        """
        async with self._lock:
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                raise ValueError(
                    f"Invalid turn state transition {self._state.value} -> {new_state.value}"
                )
            self._set(new_state)
            return self._state

    async def transition_if(
        self,
        expected_state: ConversationState,
        new_state: ConversationState,
    ) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._set(new_state)
            return True

    async def reset(self) -> None:
        """Return to IDLE from any state (end of turn, cancellation)."""
        async with self._lock:
            self._set(ConversationState.IDLE)

    async def can_send_message(self) -> bool:
        """Return True when a new turn may start."""
        async with self._lock:
            return self._state == ConversationState.IDLE

    def _set(self, new_state: ConversationState) -> None:
        if new_state == self._state:
            return
        LOGGER.debug(
            "turn.state.transition",
            extra={
                "event": "turn.state.transition",
                "chat_id": self.name,
                "from_state": self._state.value,
                "to_state": new_state.value,
            },
        )
        self._state = new_state
