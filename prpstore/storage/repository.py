"""Typed, parameterized queries over documents, items, tags and associations.

Caller-supplied values only ever travel as bound parameters. Table and column
names that appear in query text come from the whitelists in this module.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime

from prpstore.errors import CONFLICT, CONSTRAINT, NOT_FOUND, PersistenceError
from prpstore.extraction.models import Document, Item, Tag, to_timestamp

# Updatable item fields -> column names
ITEM_COLUMNS = {
    "order": "item_order",
    "description": "description",
    "file_path": "file_path",
    "pattern": "pattern",
    "pseudocode": "pseudocode",
    "status": "status",
}

CONTEXT_COLUMNS = {
    "references": "context_references",
    "current_tree": "current_tree",
    "desired_tree": "desired_tree",
    "known_gotchas": "known_gotchas",
}

# Association kind -> (table, owner column)
ASSOCIATIONS = {
    "item": ("item_tags", "item_id"),
    "document": ("document_tags", "document_id"),
}


@dataclass
class ItemFilter:
    document_id: str | None = None
    status: str | None = None
    tag_id: str | None = None
    text: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    include_deleted: bool = False


def build_fts_query(text: str) -> str:
    """Turn free text into a safe FTS5 expression: quoted prefix terms, ANDed."""
    words = []
    for word in text.lower().split():
        cleaned = "".join(c for c in word if c.isalnum())
        if cleaned:
            words.append(f'"{cleaned}"*')
    return " ".join(words)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Repository:
    """Data access layer for the prpstore SQLite database.

    A Repository wraps one connection that already has a transaction open;
    committing and rolling back is the gateway's job, never this class's.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # -- documents ---------------------------------------------------------

    def insert_document(self, document: Document) -> str:
        """Insert a document row (without its items) and return its id."""
        context = document.context
        self._conn.execute(
            """INSERT INTO documents
            (id, name, description, goal, why, what, success_criteria,
             context_references, current_tree, desired_tree, known_gotchas,
             created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                document.id,
                document.name,
                document.description,
                document.goal,
                json.dumps(document.why),
                document.what,
                json.dumps(document.success_criteria),
                json.dumps([asdict(c) for c in context.references]),
                context.current_tree,
                context.desired_tree,
                context.known_gotchas,
                document.created_by,
                to_timestamp(document.created_at),
                to_timestamp(document.updated_at),
            ),
        )
        return document.id

    def document_exists(self, document_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return row is not None

    def get_document(self, document_id: str) -> dict | None:
        row = self._conn.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None
        d = self._row_to_document_dict(row)
        items, _ = self.select_items(ItemFilter(document_id=document_id), limit=-1, offset=0)
        d["items"] = items
        return d

    def list_documents(
        self,
        text: str | None = None,
        tag_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        where = " WHERE 1=1"
        params: list = []

        if text:
            pattern = f"%{_escape_like(text)}%"
            where += " AND (d.name LIKE ? ESCAPE '\\' OR d.description LIKE ? ESCAPE '\\')"
            params.extend([pattern, pattern])
        if tag_id:
            where += " AND d.id IN (SELECT document_id FROM document_tags WHERE tag_id = ?)"
            params.append(tag_id)

        total = self._conn.execute(
            "SELECT COUNT(*) FROM documents d" + where, params
        ).fetchone()[0]
        rows = self._conn.execute(
            "SELECT d.*, (SELECT COUNT(*) FROM items i"
            " WHERE i.document_id = d.id AND i.deleted_at IS NULL) AS item_count"
            " FROM documents d" + where + " ORDER BY d.created_at DESC, d.id LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        documents = []
        for row in rows:
            d = self._row_to_document_dict(row)
            d["item_count"] = row["item_count"]
            documents.append(d)
        return documents, total

    def update_context(self, document_id: str, fields: dict, now: datetime) -> None:
        """Overwrite the given Context fields of a document."""
        if not fields:
            return
        assignments = []
        params: list = []
        for key, value in fields.items():
            assignments.append(f"{CONTEXT_COLUMNS[key]} = ?")
            params.append(json.dumps(value) if key == "references" else value)
        params.extend([to_timestamp(now), document_id])
        cursor = self._conn.execute(
            f"UPDATE documents SET {', '.join(assignments)}, updated_at = ? WHERE id = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise PersistenceError(NOT_FOUND)

    def get_context(self, document_id: str) -> dict | None:
        row = self._conn.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_context_dict(row)

    def list_contexts(
        self,
        document_id: str | None = None,
        category: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        """Context blocks, optionally narrowed to one document and/or one citation category.

        With a category, only documents citing at least one reference of that
        category are returned, and their reference lists are filtered to it.
        """
        where = " WHERE 1=1"
        params: list = []
        if document_id:
            where += " AND d.id = ?"
            params.append(document_id)
        if category:
            where += (
                " AND EXISTS (SELECT 1 FROM json_each(d.context_references) r"
                " WHERE json_extract(r.value, '$.category') = ?)"
            )
            params.append(category)

        total = self._conn.execute(
            "SELECT COUNT(*) FROM documents d" + where, params
        ).fetchone()[0]
        rows = self._conn.execute(
            "SELECT d.* FROM documents d" + where
            + " ORDER BY d.created_at DESC, d.id LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()

        contexts = []
        for row in rows:
            context = self._row_to_context_dict(row)
            if category:
                context["references"] = [
                    r for r in context["references"] if r.get("category") == category
                ]
            contexts.append(context)
        return contexts, total

    # -- items -------------------------------------------------------------

    def insert_items(self, items: list[Item]) -> int:
        """Bulk-insert items. Returns the number of rows written."""
        self._conn.executemany(
            """INSERT INTO items
            (id, document_id, item_order, description, file_path, pattern,
             pseudocode, status, info, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    item.id,
                    item.document_id,
                    item.order,
                    item.description,
                    item.file_path,
                    item.pattern,
                    item.pseudocode,
                    item.status,
                    json.dumps(item.info),
                    to_timestamp(item.created_at),
                    to_timestamp(item.updated_at),
                )
                for item in items
            ],
        )
        return len(items)

    def insert_item(self, item: Item) -> str:
        self.insert_items([item])
        return item.id

    def next_item_order(self, document_id: str) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(item_order), 0) FROM items WHERE document_id = ?",
            (document_id,),
        ).fetchone()
        return row[0] + 1

    def get_item(self, item_id: str, include_deleted: bool = False) -> dict | None:
        query = "SELECT * FROM items WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        row = self._conn.execute(query, (item_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_item_dict(row)

    def update_item(
        self,
        item_id: str,
        fields: dict,
        now: datetime,
        expected_updated_at: datetime | None = None,
    ) -> None:
        """Update fields of a live item.

        Raises PersistenceError ``not_found`` if the item is missing or
        tombstoned, and ``conflict`` if ``expected_updated_at`` is stale.
        """
        assignments = [f"{ITEM_COLUMNS[key]} = ?" for key in fields]
        params: list = list(fields.values())
        params.extend([to_timestamp(now), item_id])
        query = (
            f"UPDATE items SET {', '.join(assignments)}, updated_at = ?"
            " WHERE id = ? AND deleted_at IS NULL"
        )
        if expected_updated_at is not None:
            query += " AND updated_at = ?"
            params.append(to_timestamp(expected_updated_at))

        cursor = self._conn.execute(query, params)
        if cursor.rowcount == 1:
            return

        row = self._conn.execute(
            "SELECT deleted_at FROM items WHERE id = ?", (item_id,)
        ).fetchone()
        if row is None or row["deleted_at"] is not None:
            raise PersistenceError(NOT_FOUND)
        raise PersistenceError(CONFLICT)

    def soft_delete_item(self, item_id: str, now: datetime) -> bool:
        """Tombstone an item. Returns False if it was already deleted."""
        cursor = self._conn.execute(
            "UPDATE items SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
            (to_timestamp(now), to_timestamp(now), item_id),
        )
        if cursor.rowcount == 1:
            return True
        row = self._conn.execute("SELECT 1 FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise PersistenceError(NOT_FOUND)
        return False

    def merge_item_info(self, item_id: str, info: dict, now: datetime) -> dict:
        """Merge keys into an item's attribute bag and return the merged bag."""
        row = self._conn.execute(
            "SELECT info FROM items WHERE id = ? AND deleted_at IS NULL", (item_id,)
        ).fetchone()
        if row is None:
            raise PersistenceError(NOT_FOUND)
        merged = json.loads(row["info"] or "{}")
        merged.update(info)
        self._conn.execute(
            "UPDATE items SET info = ?, updated_at = ? WHERE id = ?",
            (json.dumps(merged), to_timestamp(now), item_id),
        )
        return merged

    def select_items(
        self,
        filters: ItemFilter,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        """Filtered items in (document, order, id) order, plus the unpaged total.

        A negative ``limit`` returns every matching row.
        """
        where = " WHERE 1=1"
        params: list = []

        if not filters.include_deleted:
            where += " AND i.deleted_at IS NULL"
        if filters.document_id:
            where += " AND i.document_id = ?"
            params.append(filters.document_id)
        if filters.status:
            where += " AND i.status = ?"
            params.append(filters.status)
        if filters.tag_id:
            where += " AND i.id IN (SELECT item_id FROM item_tags WHERE tag_id = ?)"
            params.append(filters.tag_id)
        if filters.text:
            fts_query = build_fts_query(filters.text)
            if fts_query:
                where += " AND i.rowid IN (SELECT rowid FROM items_fts WHERE items_fts MATCH ?)"
                params.append(fts_query)
            else:
                where += " AND i.description LIKE ? ESCAPE '\\'"
                params.append(f"%{_escape_like(filters.text)}%")
        if filters.created_after:
            where += " AND i.created_at > ?"
            params.append(to_timestamp(filters.created_after))
        if filters.created_before:
            where += " AND i.created_at < ?"
            params.append(to_timestamp(filters.created_before))

        total = self._conn.execute(
            "SELECT COUNT(*) FROM items i" + where, params
        ).fetchone()[0]
        rows = self._conn.execute(
            "SELECT i.* FROM items i" + where
            + " ORDER BY i.document_id, i.item_order, i.id LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return [self._row_to_item_dict(row) for row in rows], total

    # -- tags --------------------------------------------------------------

    def insert_tag(self, tag: Tag) -> str:
        """Insert a tag. Raises PersistenceError ``constraint`` on a duplicate name."""
        if self.find_tag(name=tag.name) is not None:
            raise PersistenceError(CONSTRAINT)
        self._conn.execute(
            """INSERT INTO tags (id, name, description, color, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (
                tag.id,
                tag.name,
                tag.description,
                tag.color,
                tag.created_by,
                to_timestamp(tag.created_at),
            ),
        )
        return tag.id

    def find_tag(self, tag_id: str | None = None, name: str | None = None) -> dict | None:
        """Look a tag up by id or by exact (case-sensitive) name."""
        if tag_id:
            row = self._conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
        elif name:
            row = self._conn.execute("SELECT * FROM tags WHERE name = ?", (name,)).fetchone()
        else:
            return None
        return dict(row) if row else None

    def list_tags(self) -> list[dict]:
        rows = self._conn.execute(
            """
            SELECT t.*,
                (SELECT COUNT(*) FROM item_tags it
                 JOIN items i ON i.id = it.item_id
                 WHERE it.tag_id = t.id AND i.deleted_at IS NULL) AS item_count,
                (SELECT COUNT(*) FROM document_tags dt WHERE dt.tag_id = t.id) AS document_count
            FROM tags t
            ORDER BY t.name
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def delete_tag(self, tag_id: str) -> dict:
        """Delete a tag and detach it everywhere. Tagged records are kept."""
        detached = {}
        for kind, (table, _) in ASSOCIATIONS.items():
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE tag_id = ?", (tag_id,))
            detached[kind] = cursor.rowcount
        cursor = self._conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
        if cursor.rowcount == 0:
            raise PersistenceError(NOT_FOUND)
        return detached

    def add_association(self, kind: str, owner_id: str, tag_id: str, now: datetime) -> bool:
        """Attach a tag. Returns False if the pair already existed."""
        table, column = ASSOCIATIONS[kind]
        cursor = self._conn.execute(
            f"INSERT OR IGNORE INTO {table} ({column}, tag_id, created_at) VALUES (?, ?, ?)",
            (owner_id, tag_id, to_timestamp(now)),
        )
        return cursor.rowcount == 1

    def remove_association(self, kind: str, owner_id: str, tag_id: str) -> bool:
        """Detach a tag. Returns False if the pair did not exist."""
        table, column = ASSOCIATIONS[kind]
        cursor = self._conn.execute(
            f"DELETE FROM {table} WHERE {column} = ? AND tag_id = ?",
            (owner_id, tag_id),
        )
        return cursor.rowcount == 1

    def search_by_tag(
        self, tag_id: str, target: str = "all", limit: int = 20, offset: int = 0
    ) -> dict:
        result: dict = {}
        if target in ("all", "items"):
            items, total = self.select_items(ItemFilter(tag_id=tag_id), limit, offset)
            result["items"] = items
            result["item_total"] = total
        if target in ("all", "documents"):
            documents, total = self.list_documents(tag_id=tag_id, limit=limit, offset=offset)
            result["documents"] = documents
            result["document_total"] = total
        return result

    def get_stats(self) -> dict:
        """Get summary statistics about the stored records."""
        documents = self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        live_items = self._conn.execute(
            "SELECT COUNT(*) FROM items WHERE deleted_at IS NULL"
        ).fetchone()[0]
        deleted_items = self._conn.execute(
            "SELECT COUNT(*) FROM items WHERE deleted_at IS NOT NULL"
        ).fetchone()[0]
        tags = self._conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0]
        by_status = {
            row["status"]: row["n"]
            for row in self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM items"
                " WHERE deleted_at IS NULL GROUP BY status"
            ).fetchall()
        }
        return {
            "total_documents": documents,
            "total_items": live_items,
            "deleted_items": deleted_items,
            "total_tags": tags,
            "items_by_status": by_status,
        }

    # -- row mapping -------------------------------------------------------

    def _tags_for(self, kind: str, owner_id: str) -> list[dict]:
        table, column = ASSOCIATIONS[kind]
        rows = self._conn.execute(
            f"""SELECT t.id, t.name, t.color FROM tags t
            JOIN {table} a ON a.tag_id = t.id
            WHERE a.{column} = ?
            ORDER BY t.name""",
            (owner_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def _row_to_item_dict(self, row: sqlite3.Row) -> dict:
        d = dict(row)
        d["order"] = d.pop("item_order")
        d["info"] = json.loads(d["info"]) if d.get("info") else {}
        d["tags"] = self._tags_for("item", d["id"])
        return d

    def _row_to_context_dict(self, row: sqlite3.Row) -> dict:
        return {
            "document_id": row["id"],
            "document_name": row["name"],
            "references": json.loads(row["context_references"] or "[]"),
            "current_tree": row["current_tree"] or "",
            "desired_tree": row["desired_tree"] or "",
            "known_gotchas": row["known_gotchas"] or "",
        }

    def _row_to_document_dict(self, row: sqlite3.Row) -> dict:
        context = self._row_to_context_dict(row)
        return {
            "id": row["id"],
            "name": row["name"],
            "description": row["description"] or "",
            "goal": row["goal"] or "",
            "why": json.loads(row["why"] or "[]"),
            "what": row["what"] or "",
            "success_criteria": json.loads(row["success_criteria"] or "[]"),
            "context": {
                "references": context["references"],
                "current_tree": context["current_tree"],
                "desired_tree": context["desired_tree"],
                "known_gotchas": context["known_gotchas"],
            },
            "tags": self._tags_for("document", row["id"]),
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
