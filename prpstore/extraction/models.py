"""Core data models for prpstore."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Render a datetime as a UTC ISO-8601 string that sorts chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Citation:
    category: str  # "url" | "file" | "doc" | "docfile"
    target: str  # URL, repo path, or doc name
    reason: str = ""  # why the reader needs it
    section: str = ""
    critical: bool = False


@dataclass
class Context:
    references: list[Citation] = field(default_factory=list)
    current_tree: str = ""
    desired_tree: str = ""
    known_gotchas: str = ""


@dataclass
class Item:
    id: str  # UUID
    document_id: str  # FK to Document
    order: int  # > 0, unique among live items of the document
    description: str
    file_path: str | None = None
    pattern: str | None = None
    pseudocode: str | None = None
    status: str = "pending"  # "pending" | "in_progress" | "completed"
    info: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Document:
    id: str  # UUID
    name: str
    description: str
    goal: str
    why: list[str] = field(default_factory=list)
    what: str = ""
    success_criteria: list[str] = field(default_factory=list)
    context: Context = field(default_factory=Context)
    items: list[Item] = field(default_factory=list)
    created_by: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Tag:
    id: str  # UUID
    name: str  # case-sensitive unique
    description: str | None = None
    color: str | None = None  # "#RRGGBB"
    created_by: str = ""
    created_at: datetime = field(default_factory=utcnow)
