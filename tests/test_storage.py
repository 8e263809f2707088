"""Tests for prpstore.storage (db, pool, gateway, repository)."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from prpstore.errors import (
    CONFLICT,
    CONSTRAINT,
    NOT_FOUND,
    UNAVAILABLE,
    OperationCancelled,
    PersistenceError,
)
from prpstore.extraction.models import Citation, Context, Document, Item, Tag
from prpstore.storage.db import ConnectionPool, get_connection
from prpstore.storage.gateway import PersistenceGateway
from prpstore.storage.repository import ItemFilter, Repository, build_fts_query

T0 = datetime(2024, 6, 15, 10, 0, 0, tzinfo=timezone.utc)


def _document(**overrides) -> Document:
    values = dict(
        id=str(uuid.uuid4()),
        name="Add caching",
        description="Cache expensive lookups",
        goal="Faster reads",
        why=["reads are slow"],
        what="A cache layer",
        success_criteria=["p95 under 50ms"],
        context=Context(
            references=[
                Citation(category="url", target="https://redis.io/docs", reason="API"),
                Citation(category="file", target="app/cache.py", critical=True),
            ],
            current_tree="app/",
            desired_tree="app/\n  cache.py",
            known_gotchas="TTL is in seconds",
        ),
        created_by="alice",
        created_at=T0,
        updated_at=T0,
    )
    values.update(overrides)
    return Document(**values)


def _item(document_id: str, order: int, description: str = "task", **overrides) -> Item:
    values = dict(
        id=str(uuid.uuid4()),
        document_id=document_id,
        order=order,
        description=description,
        created_at=T0 + timedelta(minutes=order),
        updated_at=T0 + timedelta(minutes=order),
    )
    values.update(overrides)
    return Item(**values)


@pytest.fixture
def document(repo: Repository) -> Document:
    doc = _document()
    repo.insert_document(doc)
    return doc


class TestDatabase:
    def test_creates_tables(self, db_conn: sqlite3.Connection):
        tables = db_conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ).fetchall()
        table_names = {row["name"] for row in tables}
        assert {"documents", "items", "tags", "item_tags", "document_tags", "items_fts"} <= table_names

    def test_wal_mode(self, db_conn: sqlite3.Connection):
        mode = db_conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_foreign_keys_on(self, db_conn: sqlite3.Connection):
        assert db_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_idempotent_schema(self, db_path: Path):
        get_connection(db_path).close()
        conn = get_connection(db_path)
        tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        conn.close()
        assert len(tables) > 0


class TestConnectionPool:
    def test_reuses_released_connections(self, db_path: Path):
        pool = ConnectionPool(db_path, size=1, timeout=0.1)
        conn = pool.acquire()
        pool.release(conn)
        assert pool.acquire() is conn
        pool.close()

    def test_exhaustion_is_unavailable_not_a_hang(self, db_path: Path):
        pool = ConnectionPool(db_path, size=1, timeout=0.05)
        held = pool.acquire()
        with pytest.raises(PersistenceError) as exc_info:
            pool.acquire()
        assert exc_info.value.reason == UNAVAILABLE
        pool.release(held)
        pool.close()

    def test_waiter_gets_released_connection(self, db_path: Path):
        pool = ConnectionPool(db_path, size=1, timeout=2.0)
        held = pool.acquire()
        threading.Timer(0.05, pool.release, args=(held,)).start()
        assert pool.acquire() is held
        pool.close()


class TestGateway:
    def test_commits_on_return(self, gateway: PersistenceGateway, db_conn: sqlite3.Connection):
        doc = _document()
        gateway.run(lambda repo: repo.insert_document(doc))
        assert db_conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0] == 1

    def test_rolls_back_on_failure(self, gateway: PersistenceGateway, db_conn: sqlite3.Connection):
        doc = _document()

        def body(repo: Repository):
            repo.insert_document(doc)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            gateway.run(body)
        assert db_conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0] == 0

    def test_cancelled_before_commit_rolls_back(
        self, gateway: PersistenceGateway, db_conn: sqlite3.Connection
    ):
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(OperationCancelled):
            gateway.run(lambda repo: repo.insert_document(_document()), cancelled=cancelled)
        assert db_conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0] == 0

    def test_cancel_after_check_commits_and_is_logged(
        self,
        gateway: PersistenceGateway,
        db_conn: sqlite3.Connection,
        caplog: pytest.LogCaptureFixture,
    ):
        class CancelledDuringCommit(threading.Event):
            checks = 0

            def is_set(self) -> bool:
                self.checks += 1
                return self.checks > 1

        with caplog.at_level("WARNING", logger="prpstore.storage.gateway"):
            gateway.run(
                lambda repo: repo.insert_document(_document()),
                cancelled=CancelledDuringCommit(),
                label="[abc123] extract_and_save_document",
            )
        assert db_conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0] == 1
        assert "[abc123] extract_and_save_document committed after its caller gave up" in caplog.text

    def test_integrity_error_is_constraint(self, gateway: PersistenceGateway):
        orphan = _item(str(uuid.uuid4()), 1)
        with pytest.raises(PersistenceError) as exc_info:
            gateway.run(lambda repo: repo.insert_item(orphan))
        assert exc_info.value.reason == CONSTRAINT
        assert "FOREIGN KEY" not in exc_info.value.message

    def test_operational_error_is_unavailable(self, gateway: PersistenceGateway):
        def body(repo: Repository):
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(PersistenceError) as exc_info:
            gateway.run(body)
        assert exc_info.value.reason == UNAVAILABLE

    def test_connection_released_on_every_path(self, db_path: Path):
        pool = ConnectionPool(db_path, size=1, timeout=0.05)
        gateway = PersistenceGateway(pool)
        def body(repo: Repository):
            raise RuntimeError("boom")

        for _ in range(3):
            with pytest.raises(RuntimeError):
                gateway.run(body)
        assert gateway.run(lambda repo: repo.get_stats(), write=False)["total_documents"] == 0
        pool.close()


class TestDocuments:
    def test_insert_and_get(self, repo: Repository, document: Document):
        repo.insert_items([_item(document.id, 1), _item(document.id, 2)])
        d = repo.get_document(document.id)
        assert d["name"] == "Add caching"
        assert d["why"] == ["reads are slow"]
        assert d["context"]["references"][1]["critical"] is True
        assert [i["order"] for i in d["items"]] == [1, 2]

    def test_get_missing(self, repo: Repository):
        assert repo.get_document(str(uuid.uuid4())) is None

    def test_update_context_keeps_other_fields(self, repo: Repository, document: Document):
        repo.update_context(document.id, {"known_gotchas": "none"}, T0 + timedelta(hours=1))
        ctx = repo.get_context(document.id)
        assert ctx["known_gotchas"] == "none"
        assert ctx["current_tree"] == "app/"
        assert len(ctx["references"]) == 2

    def test_update_context_missing_document(self, repo: Repository):
        with pytest.raises(PersistenceError) as exc_info:
            repo.update_context(str(uuid.uuid4()), {"known_gotchas": "x"}, T0)
        assert exc_info.value.reason == NOT_FOUND

    def test_list_contexts_by_category(self, repo: Repository, document: Document):
        other = _document(context=Context(references=[Citation(category="doc", target="FastAPI")]))
        repo.insert_document(other)

        contexts, total = repo.list_contexts(category="file")
        assert total == 1
        assert contexts[0]["document_id"] == document.id
        assert [r["target"] for r in contexts[0]["references"]] == ["app/cache.py"]

    def test_list_documents_text_is_literal(self, repo: Repository, document: Document):
        repo.insert_document(_document(name="100% coverage"))
        docs, total = repo.list_documents(text="100%")
        assert total == 1
        assert docs[0]["name"] == "100% coverage"


class TestItems:
    def test_live_order_unique(self, repo: Repository, document: Document):
        repo.insert_item(_item(document.id, 1))
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_item(_item(document.id, 1))

    def test_deleted_item_frees_its_order(self, repo: Repository, document: Document):
        first = _item(document.id, 1)
        repo.insert_item(first)
        repo.soft_delete_item(first.id, T0)
        repo.insert_item(_item(document.id, 1))

    def test_next_item_order(self, repo: Repository, document: Document):
        assert repo.next_item_order(document.id) == 1
        repo.insert_items([_item(document.id, 1), _item(document.id, 5)])
        assert repo.next_item_order(document.id) == 6

    def test_update_with_matching_timestamp(self, repo: Repository, document: Document):
        item = _item(document.id, 1)
        repo.insert_item(item)
        repo.update_item(item.id, {"status": "completed"}, T0 + timedelta(hours=1), expected_updated_at=item.updated_at)
        assert repo.get_item(item.id)["status"] == "completed"

    def test_update_with_stale_timestamp_conflicts(self, repo: Repository, document: Document):
        item = _item(document.id, 1)
        repo.insert_item(item)
        with pytest.raises(PersistenceError) as exc_info:
            repo.update_item(item.id, {"status": "completed"}, T0, expected_updated_at=T0 - timedelta(days=1))
        assert exc_info.value.reason == CONFLICT

    def test_update_deleted_item_is_not_found(self, repo: Repository, document: Document):
        item = _item(document.id, 1)
        repo.insert_item(item)
        repo.soft_delete_item(item.id, T0)
        with pytest.raises(PersistenceError) as exc_info:
            repo.update_item(item.id, {"status": "completed"}, T0)
        assert exc_info.value.reason == NOT_FOUND

    def test_soft_delete_is_idempotent(self, repo: Repository, document: Document):
        item = _item(document.id, 1)
        repo.insert_item(item)
        assert repo.soft_delete_item(item.id, T0) is True
        assert repo.soft_delete_item(item.id, T0) is False
        assert repo.get_item(item.id) is None
        assert repo.get_item(item.id, include_deleted=True)["deleted_at"] is not None

    def test_soft_delete_missing(self, repo: Repository):
        with pytest.raises(PersistenceError) as exc_info:
            repo.soft_delete_item(str(uuid.uuid4()), T0)
        assert exc_info.value.reason == NOT_FOUND

    def test_merge_info(self, repo: Repository, document: Document):
        item = _item(document.id, 1, info={"a": 1})
        repo.insert_item(item)
        merged = repo.merge_item_info(item.id, {"b": [1, 2], "a": 2}, T0)
        assert merged == {"a": 2, "b": [1, 2]}
        assert repo.get_item(item.id)["info"] == {"a": 2, "b": [1, 2]}


class TestSelectItems:
    @pytest.fixture
    def items(self, repo: Repository, document: Document) -> list[Item]:
        items = [
            _item(document.id, 1, "Create the Redis client", status="completed"),
            _item(document.id, 2, "Wire the cache into lookups"),
            _item(document.id, 3, "Add cache invalidation hooks", status="in_progress"),
        ]
        repo.insert_items(items)
        return items

    def test_filter_by_status(self, repo: Repository, items: list[Item]):
        rows, total = repo.select_items(ItemFilter(status="completed"))
        assert total == 1
        assert rows[0]["description"] == "Create the Redis client"

    def test_free_text(self, repo: Repository, items: list[Item]):
        rows, _ = repo.select_items(ItemFilter(text="cache"))
        assert {r["order"] for r in rows} == {2, 3}

    def test_free_text_with_fts_syntax_is_safe(self, repo: Repository, items: list[Item]):
        rows, _ = repo.select_items(ItemFilter(text='Redis" client('))
        assert [r["order"] for r in rows] == [1]

    def test_created_window(self, repo: Repository, items: list[Item]):
        rows, _ = repo.select_items(ItemFilter(
            created_after=T0 + timedelta(minutes=1),
            created_before=T0 + timedelta(minutes=3),
        ))
        assert [r["order"] for r in rows] == [2]

    def test_deleted_excluded_by_default(self, repo: Repository, items: list[Item]):
        repo.soft_delete_item(items[0].id, T0)
        _, total = repo.select_items(ItemFilter())
        assert total == 2
        _, total = repo.select_items(ItemFilter(include_deleted=True))
        assert total == 3

    def test_filter_by_tag(self, repo: Repository, items: list[Item]):
        tag = Tag(id=str(uuid.uuid4()), name="backend", created_by="alice")
        repo.insert_tag(tag)
        repo.add_association("item", items[1].id, tag.id, T0)
        rows, _ = repo.select_items(ItemFilter(tag_id=tag.id))
        assert [r["id"] for r in rows] == [items[1].id]
        assert rows[0]["tags"][0]["name"] == "backend"


def test_build_fts_query():
    assert build_fts_query('Redis "client" OR') == '"redis"* "client"* "or"*'
    assert build_fts_query("!!! ???") == ""


class TestTags:
    def test_duplicate_name_is_constraint(self, repo: Repository):
        repo.insert_tag(Tag(id=str(uuid.uuid4()), name="backend", created_by="alice"))
        with pytest.raises(PersistenceError) as exc_info:
            repo.insert_tag(Tag(id=str(uuid.uuid4()), name="backend", created_by="alice"))
        assert exc_info.value.reason == CONSTRAINT

    def test_names_are_case_sensitive(self, repo: Repository):
        repo.insert_tag(Tag(id=str(uuid.uuid4()), name="backend", created_by="alice"))
        repo.insert_tag(Tag(id=str(uuid.uuid4()), name="Backend", created_by="alice"))
        assert len(repo.list_tags()) == 2

    def test_association_upsert_and_delete(self, repo: Repository, document: Document):
        tag = Tag(id=str(uuid.uuid4()), name="infra", created_by="alice")
        repo.insert_tag(tag)
        assert repo.add_association("document", document.id, tag.id, T0) is True
        assert repo.add_association("document", document.id, tag.id, T0) is False
        assert repo.remove_association("document", document.id, tag.id) is True
        assert repo.remove_association("document", document.id, tag.id) is False

    def test_delete_tag_detaches_only(self, repo: Repository, document: Document):
        item = _item(document.id, 1)
        repo.insert_item(item)
        tag = Tag(id=str(uuid.uuid4()), name="infra", created_by="alice")
        repo.insert_tag(tag)
        repo.add_association("item", item.id, tag.id, T0)
        repo.add_association("document", document.id, tag.id, T0)

        assert repo.delete_tag(tag.id) == {"item": 1, "document": 1}
        assert repo.get_item(item.id)["tags"] == []
        assert repo.get_document(document.id) is not None
        assert repo.find_tag(tag_id=tag.id) is None
