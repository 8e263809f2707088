"""Argument and extraction-result schemas.

Each tool's arguments are one pydantic model: required and optional fields,
bounds, enums and defaults live here and nowhere else. The same models render
the JSON Schema advertised to MCP clients.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    StringConstraints,
    field_validator,
    model_validator,
)

MAX_NAME_CHARS = 200
MAX_DESCRIPTION_CHARS = 2000
MAX_TEXT_CHARS = 20000
MAX_PAGE_SIZE = 100
MAX_INFO_KEYS = 50
MAX_REFERENCES = 100
MAX_CANDIDATE_ITEMS = 200

ItemStatus = Literal["pending", "in_progress", "completed"]
CitationCategory = Literal["url", "file", "doc", "docfile"]

Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_NAME_CHARS)]
TagName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
Description = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_DESCRIPTION_CHARS)]
Text = Annotated[str, StringConstraints(max_length=MAX_TEXT_CHARS)]
FilePath = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=1000)]
HexColor = Annotated[str, StringConstraints(pattern=r"^#[0-9A-Fa-f]{6}$")]
SearchText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_NAME_CHARS)]


def _as_utc(value: datetime) -> datetime:
    """Read naive datetimes as UTC, the same way stored timestamps are written."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

# Attribute bag values: JSON scalars, or flat arrays of them.
Scalar = Union[StrictStr, StrictInt, StrictFloat, StrictBool, None]
InfoValue = Union[Scalar, list[Scalar]]
InfoKey = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PageArgs(ToolArgs):
    limit: int = Field(20, ge=1, le=MAX_PAGE_SIZE, description="Page size")
    offset: int = Field(0, ge=0, description="Number of records to skip")


class TagRefArgs(ToolArgs):
    """Mixin for tools that address a tag by id or by name (exactly one)."""

    tag_id: Optional[UUID] = Field(None, description="Tag identifier")
    tag_name: Optional[TagName] = Field(None, description="Exact, case-sensitive tag name")

    @model_validator(mode="after")
    def check_tag_reference(self):
        if (self.tag_id is None) == (self.tag_name is None):
            raise ValueError("provide exactly one of tag_id or tag_name")
        return self


# ---------------------------------------------------------------------------
# Shared shapes
# ---------------------------------------------------------------------------


class CitationArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: CitationCategory
    target: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2000)]
    reason: Text = ""
    section: Annotated[str, StringConstraints(max_length=MAX_NAME_CHARS)] = ""
    critical: bool = False


# ---------------------------------------------------------------------------
# Extraction result (what the language model must return)
# ---------------------------------------------------------------------------


class CandidateContext(BaseModel):
    model_config = ConfigDict(extra="ignore")

    references: list[CitationArgs] = Field(default_factory=list, max_length=MAX_REFERENCES)
    current_tree: Text = ""
    desired_tree: Text = ""
    known_gotchas: Text = ""


class CandidateItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: Description
    file_path: Optional[FilePath] = None
    pattern: Optional[Annotated[str, StringConstraints(max_length=MAX_DESCRIPTION_CHARS)]] = None
    pseudocode: Optional[Text] = None
    status: ItemStatus = "pending"


class CandidateDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Name
    description: Annotated[str, StringConstraints(max_length=MAX_DESCRIPTION_CHARS)]
    goal: Text
    why: list[Text] = Field(default_factory=list)
    what: Text = ""
    success_criteria: list[Text] = Field(default_factory=list)
    context: CandidateContext = Field(default_factory=CandidateContext)
    items: list[CandidateItem] = Field(default_factory=list, max_length=MAX_CANDIDATE_ITEMS)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class ExtractAndSaveDocumentArgs(ToolArgs):
    content: Annotated[str, StringConstraints(min_length=1)] = Field(
        ..., description="Full markdown text of the PRP document; the size limit is server-configured"
    )
    name: Optional[Name] = Field(None, description="Overrides the extracted document name")


class GetDocumentArgs(ToolArgs):
    document_id: UUID


class ListDocumentsArgs(PageArgs):
    query: Optional[SearchText] = Field(None, description="Substring match over name and description")
    tag_id: Optional[UUID] = None
    tag_name: Optional[TagName] = None


class CreateDocumentationArgs(ToolArgs):
    document_id: UUID
    references: Optional[list[CitationArgs]] = Field(None, max_length=MAX_REFERENCES)
    current_tree: Optional[Text] = None
    desired_tree: Optional[Text] = None
    known_gotchas: Optional[Text] = None
    append_references: bool = Field(
        False, description="Append to the existing references instead of replacing them"
    )

    @model_validator(mode="after")
    def check_something_to_write(self):
        if not self.changes():
            raise ValueError(
                "provide at least one of references, current_tree, desired_tree, known_gotchas"
            )
        return self

    def changes(self) -> dict:
        fields = ("references", "current_tree", "desired_tree", "known_gotchas")
        return {
            name: getattr(self, name)
            for name in fields
            if getattr(self, name) is not None
        }


class GetDocumentationArgs(PageArgs):
    document_id: Optional[UUID] = None
    category: Optional[CitationCategory] = Field(
        None, description="Only references of this category"
    )


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class CreateItemArgs(ToolArgs):
    document_id: UUID
    description: Description
    order: Optional[int] = Field(None, gt=0, description="Position in the document; defaults to last")
    file_path: Optional[FilePath] = None
    pattern: Optional[Annotated[str, StringConstraints(max_length=MAX_DESCRIPTION_CHARS)]] = None
    pseudocode: Optional[Text] = None
    status: ItemStatus = "pending"
    info: dict[InfoKey, InfoValue] = Field(default_factory=dict, max_length=MAX_INFO_KEYS)


UPDATABLE_ITEM_FIELDS = ("description", "order", "file_path", "pattern", "pseudocode", "status")


class UpdateItemArgs(ToolArgs):
    item_id: UUID
    description: Optional[Description] = None
    order: Optional[int] = Field(None, gt=0)
    file_path: Optional[FilePath] = None
    pattern: Optional[Annotated[str, StringConstraints(max_length=MAX_DESCRIPTION_CHARS)]] = None
    pseudocode: Optional[Text] = None
    status: Optional[ItemStatus] = None
    expected_updated_at: Optional[UtcDatetime] = Field(
        None, description="Reject the update if the item changed since this timestamp"
    )

    @field_validator("description", "order", "status")
    @classmethod
    def check_not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value

    @model_validator(mode="after")
    def check_something_to_update(self):
        if not self.changes():
            raise ValueError(f"provide at least one of {', '.join(UPDATABLE_ITEM_FIELDS)}")
        return self

    def changes(self) -> dict:
        """Fields the caller set explicitly; an explicit null clears optional fields."""
        return {
            name: getattr(self, name)
            for name in UPDATABLE_ITEM_FIELDS
            if name in self.model_fields_set
        }


class ItemIdArgs(ToolArgs):
    item_id: UUID


class GetItemArgs(ItemIdArgs):
    include_deleted: bool = False


class ListItemsArgs(PageArgs):
    document_id: Optional[UUID] = None
    status: Optional[ItemStatus] = None
    tag_id: Optional[UUID] = None
    tag_name: Optional[TagName] = None
    query: Optional[SearchText] = Field(None, description="Free-text match over item descriptions")
    created_after: Optional[UtcDatetime] = None
    created_before: Optional[UtcDatetime] = None
    include_deleted: bool = False

    @model_validator(mode="after")
    def check_window(self):
        if self.created_after and self.created_before and self.created_after >= self.created_before:
            raise ValueError("created_after must be earlier than created_before")
        return self


class AddItemInfoArgs(ToolArgs):
    item_id: UUID
    info: dict[InfoKey, InfoValue] = Field(
        ..., min_length=1, max_length=MAX_INFO_KEYS,
        description="Keys to merge into the item's attribute bag",
    )


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class CreateTagArgs(ToolArgs):
    name: TagName
    description: Optional[Annotated[str, StringConstraints(max_length=MAX_DESCRIPTION_CHARS)]] = None
    color: Optional[HexColor] = Field(None, description="Display color as #RRGGBB")


class ListTagsArgs(ToolArgs):
    pass


class DeleteTagArgs(TagRefArgs):
    pass


class TagItemArgs(TagRefArgs):
    item_id: UUID


class TagDocumentArgs(TagRefArgs):
    document_id: UUID


class SearchByTagArgs(TagRefArgs, PageArgs):
    target: Literal["all", "items", "documents"] = "all"
