"""Key-value state stores backing chat session persistence."""

from __future__ import annotations

import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Any, Protocol

from .exceptions import McpChatError


class PersistenceError(McpChatError):
    """Raised when persistence operations fail."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""


class StateStore(Protocol):
    """External key-value store holding JSON-compatible values."""

    async def save(self, key: str, value: Any) -> None: ...

    async def fetch(self, key: str) -> Any | None: ...


class MemoryStateStore:
    """In-process store; values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self.save_count = 0

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
        self.save_count += 1

    async def fetch(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])


class JsonFileStateStore:
    """Store every key in one private JSON document on disk.

    Writes go to a sibling temp file that replaces the target, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; silently ignores failures."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            pass

    def _ensure_parent(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.path.parent, 0o700)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceFormatError(
                f"State file {self.path} is not valid JSON: {exc.msg}"
            ) from exc
        except OSError as exc:
            raise PersistenceError(f"Unable to read state file {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceFormatError(f"State file {self.path} must hold a JSON object.")
        return payload

    def _write_key(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        try:
            self._ensure_parent()
            temp_path = self.path.with_name(self.path.name + ".tmp")
            temp_path.write_text(
                json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            self._enforce_permissions(temp_path)
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Unable to write state file {self.path}: {exc}") from exc

    async def save(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write_key, key, value)

    async def fetch(self, key: str) -> Any | None:
        data = await asyncio.to_thread(self._read_all)
        return data.get(key)
