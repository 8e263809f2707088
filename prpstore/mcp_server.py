"""MCP server for prpstore.

Exposes PRP documents, their implementation tasks, context blocks and tags to
AI coding agents via the Model Context Protocol. Every tool returns a JSON
envelope: {"ok": true, "data": ...} or {"ok": false, "errorKind", "message",
"correlationId", ...}.

Usage:
    uv run python -m prpstore.mcp_server [--db /path/to/prpstore.db]

Configure in Claude Code (~/.claude.json):
    {
      "mcpServers": {
        "prpstore": {
          "command": "uv",
          "args": ["run", "--directory", "/path/to/prpstore", "python", "-m", "prpstore.mcp_server"],
          "env": {"PRPSTORE_USER": "your-handle"}
        }
      }
    }

The caller identity comes from the authentication layer in front of the
server. Over stdio that layer is the launching process, which sets
PRPSTORE_USER and PRPSTORE_USER_NAME.
"""

from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path

import mcp.server.stdio
import mcp.types as types
from mcp.server import Server

from prpstore.activity import log_tool_call
from prpstore.config import Config
from prpstore.tools.dispatcher import Dispatcher
from prpstore.tools.policy import Identity
from prpstore.tools.registry import OperationRegistry


def _resolve_db_path() -> Path:
    """Find the database, checking CLI args, env var, then current directory."""
    # CLI arg: --db /path/to/db
    for i, arg in enumerate(sys.argv):
        if arg == "--db" and i + 1 < len(sys.argv):
            return Path(sys.argv[i + 1])

    # Env var
    env_db = os.getenv("PRPSTORE_DB_PATH")
    if env_db:
        return Path(env_db)

    # Default: current directory
    return Path("prpstore.db")


server = Server("prpstore")

_config: Config | None = None
_dispatcher: Dispatcher | None = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = Config.load()
        _config.db_path = _resolve_db_path()
    return _config


def _get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher.from_config(_get_config())
    return _dispatcher


def tool_definitions(registry: OperationRegistry) -> list[types.Tool]:
    return [
        types.Tool(
            name=operation.name,
            description=operation.description,
            inputSchema=operation.input_schema(),
        )
        for operation in registry
    ]


def current_identity(dispatcher: Dispatcher, config: Config) -> Identity:
    return dispatcher.policy.resolve_identity(config.user_handle, config.user_display_name)


async def handle_call(
    dispatcher: Dispatcher, identity: Identity, name: str, arguments: dict | None
) -> list[types.TextContent]:
    """Dispatch one tool call, log it, and render the envelope as JSON text."""
    start = time.time()
    envelope = await dispatcher.dispatch(name, arguments, identity)
    duration_ms = int((time.time() - start) * 1000)
    logged = arguments if isinstance(arguments, dict) else {}
    log_tool_call(name, identity.handle, logged, envelope, duration_ms)
    return [types.TextContent(type="text", text=json.dumps(envelope, indent=2, default=str))]


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return tool_definitions(_get_dispatcher().registry)


# Arguments are validated by the dispatcher so that failures come back as
# ValidationError envelopes listing every bad field.
@server.call_tool(validate_input=False)
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    dispatcher = _get_dispatcher()
    identity = current_identity(dispatcher, _get_config())
    return await handle_call(dispatcher, identity, name, arguments)


async def main() -> None:
    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if _dispatcher is not None:
            _dispatcher.close()


if __name__ == "__main__":
    import asyncio
    asyncio.run(main())
