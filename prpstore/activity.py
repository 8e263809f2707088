"""Activity logging for MCP tool calls.

Every tool invocation is appended to a JSONL file so a human can audit what
their agent read and changed through prpstore. One JSON object per line:
UTC timestamp, tool name, caller, argument preview, outcome and duration.

Unless PRPSTORE_LOG_PATH says otherwise, the file sits next to the database.
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from collections.abc import Iterator
from pathlib import Path

from prpstore.config import DEFAULT_DB_PATH
from prpstore.extraction.models import to_timestamp, utcnow

logger = logging.getLogger(__name__)

ACTIVITY_LOG_NAME = "prpstore-activity.jsonl"
ARGUMENT_PREVIEW_LIMIT = 500


def _resolve_log_path() -> Path:
    override = os.getenv("PRPSTORE_LOG_PATH")
    if override:
        return Path(override)
    db_path = Path(os.getenv("PRPSTORE_DB_PATH") or DEFAULT_DB_PATH)
    return db_path.with_name(ACTIVITY_LOG_NAME)


def _preview_arguments(arguments: dict) -> dict:
    """Shorten long string arguments (document content, pseudocode)."""
    preview = {}
    for key, value in (arguments or {}).items():
        if isinstance(value, str) and len(value) > ARGUMENT_PREVIEW_LIMIT:
            value = value[:ARGUMENT_PREVIEW_LIMIT] + f"... ({len(value)} chars)"
        preview[key] = value
    return preview


def log_tool_call(
    tool_name: str,
    caller: str,
    arguments: dict,
    envelope: dict,
    duration_ms: int,
) -> None:
    """Append a tool call entry to the activity log. Never raises."""
    try:
        entry = {
            "timestamp": to_timestamp(utcnow()),
            "tool_name": tool_name,
            "caller": caller,
            "arguments": _preview_arguments(arguments),
            "ok": envelope.get("ok", False),
            "error_kind": envelope.get("errorKind"),
            "correlation_id": envelope.get("correlationId"),
            "duration_ms": duration_ms,
        }
        with open(_resolve_log_path(), "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Could not write activity log: {e}")


def _iter_entries(path: Path) -> Iterator[dict]:
    """Yield well-formed entries in file order; torn or foreign lines are skipped."""
    with open(path) as f:
        for line in f:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                yield entry


def read_activity_log(
    limit: int = 20,
    tool_name: str | None = None,
    log_path: Path | None = None,
) -> list[dict]:
    """Return the newest ``limit`` entries, most recent first.

    The file is streamed and only the last ``limit`` matches are held, so a
    long-lived log does not have to fit in memory.
    """
    path = log_path or _resolve_log_path()
    if limit < 1 or not path.is_file():
        return []

    newest: deque[dict] = deque(maxlen=limit)
    for entry in _iter_entries(path):
        if tool_name is None or entry.get("tool_name") == tool_name:
            newest.append(entry)
    return list(reversed(newest))
