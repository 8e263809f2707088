"""Tests for prpstore.mcp_server tool definitions and call handling."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from prpstore.config import Config
from prpstore.mcp_server import current_identity, handle_call, tool_definitions
from prpstore.tools.dispatcher import Dispatcher
from prpstore.tools.policy import READ, WRITE, Identity


@pytest.fixture
def log_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "activity.jsonl"
    monkeypatch.setenv("PRPSTORE_LOG_PATH", str(path))
    return path


class TestToolDefinitions:
    def test_one_tool_per_operation(self, dispatcher: Dispatcher):
        tools = tool_definitions(dispatcher.registry)
        assert len(tools) == len(dispatcher.registry)
        by_name = {t.name: t for t in tools}
        schema = by_name["list_items"].inputSchema
        assert schema["properties"]["limit"]["maximum"] == 100
        assert schema["additionalProperties"] is False


class TestCurrentIdentity:
    def test_privileged_user(self, dispatcher: Dispatcher):
        config = Config(user_handle="alice", user_display_name="Alice")
        identity = current_identity(dispatcher, config)
        assert identity.handle == "alice"
        assert identity.tier == WRITE

    def test_unlisted_user(self, dispatcher: Dispatcher):
        identity = current_identity(dispatcher, Config(user_handle="bob"))
        assert identity.tier == READ


class TestHandleCall:
    def test_returns_envelope_json_and_logs(self, dispatcher: Dispatcher, admin: Identity, log_path: Path):
        contents = asyncio.run(handle_call(dispatcher, admin, "create_tag", {"name": "backend"}))
        envelope = json.loads(contents[0].text)
        assert envelope["ok"] is True
        assert envelope["data"]["name"] == "backend"

        entry = json.loads(log_path.read_text().strip())
        assert entry["tool_name"] == "create_tag"
        assert entry["caller"] == "alice"
        assert entry["ok"] is True

    def test_error_envelope_is_logged_with_correlation_id(
        self, dispatcher: Dispatcher, viewer: Identity, log_path: Path
    ):
        contents = asyncio.run(handle_call(dispatcher, viewer, "create_tag", {"name": "x"}))
        envelope = json.loads(contents[0].text)
        entry = json.loads(log_path.read_text().strip())
        assert entry["error_kind"] == "AuthorizationError"
        assert entry["correlation_id"] == envelope["correlationId"]

    def test_non_object_arguments(self, dispatcher: Dispatcher, admin: Identity, log_path: Path):
        contents = asyncio.run(handle_call(dispatcher, admin, "list_tags", ["x"]))
        envelope = json.loads(contents[0].text)
        assert envelope["errorKind"] == "ValidationError"
        assert json.loads(log_path.read_text().strip())["arguments"] == {}

    def test_missing_arguments_use_defaults(self, dispatcher: Dispatcher, log_path: Path):
        contents = asyncio.run(handle_call(dispatcher, Identity("carol"), "list_items", None))
        envelope = json.loads(contents[0].text)
        assert envelope["data"]["limit"] == 20
