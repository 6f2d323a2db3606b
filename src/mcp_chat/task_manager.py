"""Lifecycle manager for the background tasks that drive turns."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named driver tasks so they can be cancelled and awaited together."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start ``coro`` as a task registered under ``name``.

        A name may only be held by one live task at a time. Finished tasks
        drop out of tracking on their own.
        """
        existing = self._named.get(name)
        if existing is not None and not existing.done():
            coro.close()
            raise RuntimeError(f"Task {name!r} is already running.")
        task = asyncio.create_task(coro, name=name)
        self._named[name] = task
        task.add_done_callback(lambda done, key=name: self._on_done(key, done))
        return task

    def _on_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.debug(
                "task.finished.exception",
                extra={
                    "event": "task.finished.exception",
                    "task": name,
                    "error_type": type(exc).__name__,
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not running."""
        return self._named.get(name)

    @property
    def running(self) -> list[str]:
        return [name for name, task in self._named.items() if not task.done()]

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # noqa: BLE001 - surfaced through the log only.
            LOGGER.warning(
                "task.cancel.exception",
                extra={
                    "event": "task.cancel.exception",
                    "task": name,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        for name in list(self._named):
            await self.cancel(name)
