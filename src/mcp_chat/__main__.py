"""CLI entrypoint for mcp-chat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys
from typing import TextIO

from .config import ensure_config_dir, load_config
from .engine import ConversationEngine
from .exceptions import McpChatError
from .runtime import start_runtime

EXIT_COMMANDS = {"/quit", "/exit"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-chat",
        description="Chat with an Anthropic model that can call MCP server tools",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--new", action="store_true", help="Start a new chat")
    parser.add_argument("message", nargs="?", default=None, help="Send one message and exit")
    return parser


async def run_turn(
    engine: ConversationEngine,
    text: str,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
) -> None:
    """Send one message and write its events as plain text."""
    async for event in engine.send_message(text):
        if event.type == "text":
            out.write(event.text or "")
        elif event.type == "tool_use":
            out.write(f"\n[tool] {event.name} {event.input}\n")
        elif event.type == "tool_result" and event.is_error:
            out.write(f"[tool error] {event.name}\n")
        elif event.type == "error":
            err.write(f"\nerror: {event.text}\n")
        out.flush()
    out.write("\n")


async def _run(args: argparse.Namespace) -> int:
    runtime = await start_runtime(load_config(args.config))
    try:
        if args.new:
            await runtime.session.create_chat()
        if args.message:
            await run_turn(runtime.engine, args.message)
            return 0
        while True:
            line = await asyncio.to_thread(input, "> ")
            if line.strip() in EXIT_COMMANDS:
                return 0
            if line.strip():
                await run_turn(runtime.engine, line)
    except EOFError:
        return 0
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Ensure configuration exists, handle CLI flags, and run the chat loop."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("mcp-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"mcp-chat {version}")
        return 0

    ensure_config_dir()
    try:
        return asyncio.run(_run(args))
    except McpChatError as exc:
        print(f"mcp-chat: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
