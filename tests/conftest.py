"""Shared test fixtures for prpstore."""

from __future__ import annotations

import asyncio
import copy
import json
import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from prpstore.extraction.prp import DocumentExtractor
from prpstore.storage.db import ConnectionPool, get_connection
from prpstore.storage.gateway import PersistenceGateway
from prpstore.storage.repository import Repository
from prpstore.tools.dispatcher import Dispatcher
from prpstore.tools.handlers import build_registry
from prpstore.tools.policy import AuthorizationPolicy, Identity

SAMPLE_PRP = """\
# PRP: Tag-aware task search

## Goal
Let agents find implementation tasks by tag.

## Why
- Agents lose track of related tasks
- Tags already exist on documents

## What
Add a search tool over item tags.

### Success Criteria
- [ ] search returns tagged items
- [ ] deleted items are hidden

## All Needed Context
- url: https://www.sqlite.org/fts5.html
  why: full-text search syntax
- file: prpstore/storage/repository.py
  why: query helpers to mirror

## Implementation Blueprint
Task 1: add the association table
Task 2: add the query helper
Task 3: expose the tool
"""

SAMPLE_CANDIDATE = {
    "name": "Tag-aware task search",
    "description": "Search implementation tasks by tag.",
    "goal": "Let agents find implementation tasks by tag.",
    "why": ["Agents lose track of related tasks", "Tags already exist on documents"],
    "what": "Add a search tool over item tags.",
    "success_criteria": ["search returns tagged items", "deleted items are hidden"],
    "context": {
        "references": [
            {"category": "url", "target": "https://www.sqlite.org/fts5.html", "reason": "full-text search syntax"},
            {"category": "file", "target": "prpstore/storage/repository.py", "reason": "query helpers to mirror"},
        ],
        "current_tree": "prpstore/\n  storage/",
        "desired_tree": "prpstore/\n  storage/\n  tools/",
        "known_gotchas": "FTS5 MATCH syntax errors raise OperationalError.",
    },
    "items": [
        {"description": "Add the association table", "file_path": "prpstore/storage/db.py"},
        {"description": "Add the query helper", "file_path": "prpstore/storage/repository.py", "pattern": "select_items"},
        {"description": "Expose the search tool", "pseudocode": "register Operation(...)"},
    ],
}


def make_response(text: str, stop_reason: str = "end_turn") -> MagicMock:
    response = MagicMock()
    content_block = MagicMock()
    content_block.text = text
    response.content = [content_block]
    response.stop_reason = stop_reason
    return response


@pytest.fixture
def sample_prp() -> str:
    return SAMPLE_PRP


@pytest.fixture
def sample_candidate() -> dict:
    return copy.deepcopy(SAMPLE_CANDIDATE)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db_conn(db_path: Path) -> sqlite3.Connection:
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def repo(db_conn: sqlite3.Connection) -> Repository:
    return Repository(db_conn)


@pytest.fixture
def pool(db_path: Path) -> ConnectionPool:
    pool = ConnectionPool(db_path, size=3, timeout=0.2)
    yield pool
    pool.close()


@pytest.fixture
def gateway(pool: ConnectionPool) -> PersistenceGateway:
    return PersistenceGateway(pool)


@pytest.fixture
def policy() -> AuthorizationPolicy:
    return AuthorizationPolicy({"alice"})


@pytest.fixture
def admin(policy: AuthorizationPolicy) -> Identity:
    return policy.resolve_identity("alice", "Alice Admin")


@pytest.fixture
def viewer(policy: AuthorizationPolicy) -> Identity:
    return policy.resolve_identity("bob", "Bob Viewer")


@pytest.fixture
def anthropic_client() -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = make_response(json.dumps(SAMPLE_CANDIDATE))
    return client


@pytest.fixture
def extractor(anthropic_client: MagicMock) -> DocumentExtractor:
    return DocumentExtractor(anthropic_client, max_chars=10_000)


@pytest.fixture
def dispatcher(
    policy: AuthorizationPolicy,
    gateway: PersistenceGateway,
    extractor: DocumentExtractor,
) -> Dispatcher:
    return Dispatcher(build_registry(), policy, gateway, extractor, timeout=10)


@pytest.fixture
def call(dispatcher: Dispatcher):
    """Run one tool call to completion and return its envelope."""

    def _call(name: str, arguments: dict, identity: Identity) -> dict:
        return asyncio.run(dispatcher.dispatch(name, arguments, identity))

    return _call


@pytest.fixture
def saved_document(call, admin: Identity) -> dict:
    """A document stored through extract_and_save_document (3 items, 2 references)."""
    envelope = call("extract_and_save_document", {"content": SAMPLE_PRP}, admin)
    assert envelope["ok"], envelope
    return envelope["data"]
