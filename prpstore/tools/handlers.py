"""Tool bodies and the default operation registry.

Every body receives a Repository bound to an open transaction, the validated
arguments, the caller identity, and whatever the operation's prepare step
returned. Bodies raise PersistenceError for expected failures; the gateway
rolls the transaction back.
"""

from __future__ import annotations

import uuid

from prpstore.errors import NOT_FOUND, PersistenceError
from prpstore.extraction.models import Citation, Context, Document, Item, Tag, utcnow
from prpstore.extraction.prp import DocumentExtractor
from prpstore.schemas import (
    AddItemInfoArgs,
    CandidateDocument,
    CreateDocumentationArgs,
    CreateItemArgs,
    CreateTagArgs,
    DeleteTagArgs,
    ExtractAndSaveDocumentArgs,
    GetDocumentArgs,
    GetDocumentationArgs,
    GetItemArgs,
    ItemIdArgs,
    ListDocumentsArgs,
    ListItemsArgs,
    ListTagsArgs,
    SearchByTagArgs,
    TagDocumentArgs,
    TagItemArgs,
    UpdateItemArgs,
)
from prpstore.storage.repository import ItemFilter, Repository
from prpstore.tools.policy import READ, WRITE, Identity
from prpstore.tools.registry import Operation, OperationRegistry


def _str(value) -> str | None:
    return str(value) if value is not None else None


def _resolve_tag(repo: Repository, tag_id=None, tag_name: str | None = None) -> dict:
    tag = repo.find_tag(tag_id=_str(tag_id), name=tag_name)
    if tag is None:
        raise PersistenceError(NOT_FOUND)
    return tag


def _require_item(repo: Repository, item_id: str) -> dict:
    item = repo.get_item(item_id)
    if item is None:
        raise PersistenceError(NOT_FOUND)
    return item


def _require_document(repo: Repository, document_id: str) -> None:
    if not repo.document_exists(document_id):
        raise PersistenceError(NOT_FOUND)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def extract_document(extractor: DocumentExtractor, args: ExtractAndSaveDocumentArgs) -> CandidateDocument:
    return extractor.extract(args.content)


def extract_and_save_document(
    repo: Repository,
    args: ExtractAndSaveDocumentArgs,
    identity: Identity,
    candidate: CandidateDocument,
) -> dict:
    """Insert the document and all of its items; the caller's transaction makes it atomic."""
    now = utcnow()
    document_id = str(uuid.uuid4())
    references = [Citation(**c.model_dump()) for c in candidate.context.references]
    document = Document(
        id=document_id,
        name=args.name or candidate.name,
        description=candidate.description,
        goal=candidate.goal,
        why=list(candidate.why),
        what=candidate.what,
        success_criteria=list(candidate.success_criteria),
        context=Context(
            references=references,
            current_tree=candidate.context.current_tree,
            desired_tree=candidate.context.desired_tree,
            known_gotchas=candidate.context.known_gotchas,
        ),
        created_by=identity.handle,
        created_at=now,
        updated_at=now,
    )
    document.items = [
        Item(
            id=str(uuid.uuid4()),
            document_id=document_id,
            order=position,
            description=c.description,
            file_path=c.file_path,
            pattern=c.pattern,
            pseudocode=c.pseudocode,
            status=c.status,
            created_at=now,
            updated_at=now,
        )
        for position, c in enumerate(candidate.items, start=1)
    ]

    repo.insert_document(document)
    repo.insert_items(document.items)

    return {
        "document_id": document_id,
        "name": document.name,
        "items_saved": len(document.items),
        "citations_saved": len(references),
        "item_ids": [item.id for item in document.items],
    }


def get_document(repo: Repository, args: GetDocumentArgs, identity: Identity, _=None) -> dict:
    document = repo.get_document(str(args.document_id))
    if document is None:
        raise PersistenceError(NOT_FOUND)
    return document


def list_documents(repo: Repository, args: ListDocumentsArgs, identity: Identity, _=None) -> dict:
    tag_id = _str(args.tag_id)
    if args.tag_name:
        tag = repo.find_tag(name=args.tag_name)
        if tag is None:
            return {"documents": [], "total": 0, "limit": args.limit, "offset": args.offset}
        tag_id = tag["id"]
    documents, total = repo.list_documents(
        text=args.query, tag_id=tag_id, limit=args.limit, offset=args.offset
    )
    return {"documents": documents, "total": total, "limit": args.limit, "offset": args.offset}


def create_documentation(
    repo: Repository, args: CreateDocumentationArgs, identity: Identity, _=None
) -> dict:
    document_id = str(args.document_id)
    current = repo.get_context(document_id)
    if current is None:
        raise PersistenceError(NOT_FOUND)

    changes = args.changes()
    if "references" in changes:
        references = [c.model_dump() for c in changes["references"]]
        if args.append_references:
            references = current["references"] + references
        changes["references"] = references

    repo.update_context(document_id, changes, utcnow())
    return repo.get_context(document_id)


def get_documentation(
    repo: Repository, args: GetDocumentationArgs, identity: Identity, _=None
) -> dict:
    document_id = _str(args.document_id)
    if document_id:
        _require_document(repo, document_id)
    contexts, total = repo.list_contexts(
        document_id=document_id,
        category=args.category,
        limit=args.limit,
        offset=args.offset,
    )
    return {"contexts": contexts, "total": total, "limit": args.limit, "offset": args.offset}


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def create_item(repo: Repository, args: CreateItemArgs, identity: Identity, _=None) -> dict:
    document_id = str(args.document_id)
    _require_document(repo, document_id)
    now = utcnow()
    item = Item(
        id=str(uuid.uuid4()),
        document_id=document_id,
        order=args.order or repo.next_item_order(document_id),
        description=args.description,
        file_path=args.file_path,
        pattern=args.pattern,
        pseudocode=args.pseudocode,
        status=args.status,
        info=dict(args.info),
        created_at=now,
        updated_at=now,
    )
    repo.insert_item(item)
    return repo.get_item(item.id)


def update_item(repo: Repository, args: UpdateItemArgs, identity: Identity, _=None) -> dict:
    item_id = str(args.item_id)
    repo.update_item(
        item_id,
        args.changes(),
        utcnow(),
        expected_updated_at=args.expected_updated_at,
    )
    return repo.get_item(item_id)


def delete_item(repo: Repository, args: ItemIdArgs, identity: Identity, _=None) -> dict:
    item_id = str(args.item_id)
    newly_deleted = repo.soft_delete_item(item_id, utcnow())
    return {"item_id": item_id, "deleted": True, "already_deleted": not newly_deleted}


def get_item(repo: Repository, args: GetItemArgs, identity: Identity, _=None) -> dict:
    item = repo.get_item(str(args.item_id), include_deleted=args.include_deleted)
    if item is None:
        raise PersistenceError(NOT_FOUND)
    return item


def list_items(repo: Repository, args: ListItemsArgs, identity: Identity, _=None) -> dict:
    tag_id = _str(args.tag_id)
    if args.tag_name:
        tag = repo.find_tag(name=args.tag_name)
        if tag is None:
            return {"items": [], "total": 0, "limit": args.limit, "offset": args.offset}
        tag_id = tag["id"]

    filters = ItemFilter(
        document_id=_str(args.document_id),
        status=args.status,
        tag_id=tag_id,
        text=args.query,
        created_after=args.created_after,
        created_before=args.created_before,
        include_deleted=args.include_deleted,
    )
    items, total = repo.select_items(filters, limit=args.limit, offset=args.offset)
    return {"items": items, "total": total, "limit": args.limit, "offset": args.offset}


def add_item_info(repo: Repository, args: AddItemInfoArgs, identity: Identity, _=None) -> dict:
    item_id = str(args.item_id)
    merged = repo.merge_item_info(item_id, dict(args.info), utcnow())
    return {"item_id": item_id, "info": merged}


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


def create_tag(repo: Repository, args: CreateTagArgs, identity: Identity, _=None) -> dict:
    tag = Tag(
        id=str(uuid.uuid4()),
        name=args.name,
        description=args.description,
        color=args.color,
        created_by=identity.handle,
    )
    repo.insert_tag(tag)
    return repo.find_tag(tag_id=tag.id)


def list_tags(repo: Repository, args: ListTagsArgs, identity: Identity, _=None) -> dict:
    tags = repo.list_tags()
    return {"tags": tags, "total": len(tags)}


def delete_tag(repo: Repository, args: DeleteTagArgs, identity: Identity, _=None) -> dict:
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    detached = repo.delete_tag(tag["id"])
    return {
        "tag_id": tag["id"],
        "name": tag["name"],
        "detached_items": detached["item"],
        "detached_documents": detached["document"],
    }


def tag_item(repo: Repository, args: TagItemArgs, identity: Identity, _=None) -> dict:
    item_id = str(args.item_id)
    _require_item(repo, item_id)
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    created = repo.add_association("item", item_id, tag["id"], utcnow())
    return {"item_id": item_id, "tag": tag, "created": created}


def untag_item(repo: Repository, args: TagItemArgs, identity: Identity, _=None) -> dict:
    item_id = str(args.item_id)
    _require_item(repo, item_id)
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    removed = repo.remove_association("item", item_id, tag["id"])
    return {"item_id": item_id, "tag": tag, "removed": removed}


def tag_document(repo: Repository, args: TagDocumentArgs, identity: Identity, _=None) -> dict:
    document_id = str(args.document_id)
    _require_document(repo, document_id)
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    created = repo.add_association("document", document_id, tag["id"], utcnow())
    return {"document_id": document_id, "tag": tag, "created": created}


def untag_document(repo: Repository, args: TagDocumentArgs, identity: Identity, _=None) -> dict:
    document_id = str(args.document_id)
    _require_document(repo, document_id)
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    removed = repo.remove_association("document", document_id, tag["id"])
    return {"document_id": document_id, "tag": tag, "removed": removed}


def search_by_tag(repo: Repository, args: SearchByTagArgs, identity: Identity, _=None) -> dict:
    tag = _resolve_tag(repo, args.tag_id, args.tag_name)
    result = repo.search_by_tag(tag["id"], target=args.target, limit=args.limit, offset=args.offset)
    result.update({"tag": tag, "limit": args.limit, "offset": args.offset})
    return result


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_registry() -> OperationRegistry:
    """Register every prpstore tool."""
    registry = OperationRegistry()
    for operation in (
        Operation(
            name="extract_and_save_document",
            description=(
                "Parse a PRP markdown document with Claude and store it: the document "
                "(goal, why, what, success criteria, context) and its ordered "
                "implementation tasks as items. All-or-nothing."
            ),
            args_model=ExtractAndSaveDocumentArgs,
            tier=WRITE,
            body=extract_and_save_document,
            prepare=extract_document,
        ),
        Operation(
            name="get_document",
            description="Get one stored PRP document with its context, live items and tags.",
            args_model=GetDocumentArgs,
            tier=READ,
            body=get_document,
        ),
        Operation(
            name="list_documents",
            description="List stored PRP documents, newest first, optionally filtered by text or tag.",
            args_model=ListDocumentsArgs,
            tier=READ,
            body=list_documents,
        ),
        Operation(
            name="create_documentation",
            description=(
                "Create or update the context block of a document: documentation "
                "references, current/desired codebase trees, known gotchas. Omitted "
                "fields are left unchanged."
            ),
            args_model=CreateDocumentationArgs,
            tier=WRITE,
            body=create_documentation,
        ),
        Operation(
            name="get_documentation",
            description=(
                "Get context blocks by document id, or every document's references "
                "of one category (url, file, doc, docfile)."
            ),
            args_model=GetDocumentationArgs,
            tier=READ,
            body=get_documentation,
        ),
        Operation(
            name="create_item",
            description="Add an implementation task to an existing document.",
            args_model=CreateItemArgs,
            tier=WRITE,
            body=create_item,
        ),
        Operation(
            name="update_item",
            description=(
                "Update fields of a task. Pass expected_updated_at to reject the "
                "update if someone else changed the task first."
            ),
            args_model=UpdateItemArgs,
            tier=WRITE,
            body=update_item,
        ),
        Operation(
            name="delete_item",
            description="Delete a task. The record is kept as a tombstone; deleting twice is a no-op.",
            args_model=ItemIdArgs,
            tier=WRITE,
            body=delete_item,
        ),
        Operation(
            name="get_item",
            description="Get one task with its tags and attribute bag.",
            args_model=GetItemArgs,
            tier=READ,
            body=get_item,
        ),
        Operation(
            name="list_items",
            description=(
                "List tasks filtered by document, status, tag, free text or creation "
                "window. Paginated; deleted tasks are excluded unless requested."
            ),
            args_model=ListItemsArgs,
            tier=READ,
            body=list_items,
        ),
        Operation(
            name="add_item_info",
            description="Merge keys into a task's free-form attribute bag. Existing keys not named are kept.",
            args_model=AddItemInfoArgs,
            tier=WRITE,
            body=add_item_info,
        ),
        Operation(
            name="create_tag",
            description="Create a tag. Names are unique and case-sensitive.",
            args_model=CreateTagArgs,
            tier=WRITE,
            body=create_tag,
        ),
        Operation(
            name="list_tags",
            description="List all tags with how many tasks and documents carry each.",
            args_model=ListTagsArgs,
            tier=READ,
            body=list_tags,
        ),
        Operation(
            name="delete_tag",
            description="Delete a tag. It is detached from tasks and documents; they are kept.",
            args_model=DeleteTagArgs,
            tier=WRITE,
            body=delete_tag,
        ),
        Operation(
            name="tag_item",
            description="Attach a tag (by id or name) to a task.",
            args_model=TagItemArgs,
            tier=WRITE,
            body=tag_item,
        ),
        Operation(
            name="untag_item",
            description="Detach a tag (by id or name) from a task.",
            args_model=TagItemArgs,
            tier=WRITE,
            body=untag_item,
        ),
        Operation(
            name="tag_document",
            description="Attach a tag (by id or name) to a document.",
            args_model=TagDocumentArgs,
            tier=WRITE,
            body=tag_document,
        ),
        Operation(
            name="untag_document",
            description="Detach a tag (by id or name) from a document.",
            args_model=TagDocumentArgs,
            tier=WRITE,
            body=untag_document,
        ),
        Operation(
            name="search_by_tag",
            description="List the tasks and/or documents carrying a tag.",
            args_model=SearchByTagArgs,
            tier=READ,
            body=search_by_tag,
        ),
    ):
        registry.register(operation)
    return registry
