from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flask import current_app
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.dms.audit import record_event
from app.dms.errors import NotFoundError, PermissionError, ValidationError
from app.dms.identity import identity_from_config
from app.dms.models import User
from app.dms.modules.document_registry import lifecycle
from app.dms.modules.document_registry.allocator import CodeAllocator, SequenceMatch, build_prefix, format_sequence
from app.dms.modules.document_registry.graph_client import GraphClient
from app.dms.modules.document_registry.models import (
    PUBLISHED,
    DocumentRecord,
    StoreItem,
    UserRef,
)
from app.dms.modules.document_registry.projector import record_fields, to_store_fields
from app.dms.modules.document_registry.stores import (
    DocumentStore,
    FileContent,
    GraphDocumentStore,
    LocalDocumentStore,
    RegistryCollection,
    RegistryCollections,
)
from app.dms.rbac import Capabilities
from app.dms.storage import storage_from_config

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class WorkflowContext:
    """Everything one request needs, passed explicitly into each operation."""

    s: Session
    collections: RegistryCollections
    user: User
    actor: UserRef
    caps: Capabilities
    code_org: str = ""
    allocation_attempts: int = 5

    @property
    def allocator(self) -> CodeAllocator:
        return CodeAllocator(self.collections)


@dataclass(frozen=True)
class DocumentFilters:
    status: str = ""
    document_type: str = ""
    search: str = ""
    process_or_function: str = ""
    department_or_site: str = ""
    keyword: str = ""


def graph_client_from_config(config: dict) -> GraphClient:
    return GraphClient(
        identity=identity_from_config(config),
        site_url=(config.get("GRAPH_SITE_URL") or "").strip(),
        base_url=(config.get("GRAPH_BASE_URL") or "https://graph.microsoft.com/v1.0").strip(),
    )


def init_graph_client(app) -> None:
    """One client per process: the token and the site/drive ids live on it."""
    if (app.config.get("DOCUMENT_STORE") or "local").strip().lower() == "graph":
        app.extensions["graph_client"] = graph_client_from_config(app.config)


def store_from_config(config: dict, s: Session, graph_client: GraphClient | None = None) -> DocumentStore:
    backend = (config.get("DOCUMENT_STORE") or "local").strip().lower()
    if backend == "graph":
        return GraphDocumentStore(graph_client or graph_client_from_config(config))
    return LocalDocumentStore(s, storage_from_config(config))


def app_store(s: Session) -> DocumentStore:
    return store_from_config(current_app.config, s, current_app.extensions.get("graph_client"))


def collections_from_config(config: dict, s: Session, graph_client: GraphClient | None = None) -> RegistryCollections:
    return RegistryCollections.for_store(
        store_from_config(config, s, graph_client),
        authoring_name=config.get("AUTHORING_LIBRARY") or "DM-Authoring",
        published_name=config.get("PUBLISHED_LIBRARY") or "DM-Published",
    )


def context_for(s: Session, user: User, actor: UserRef, caps: Capabilities) -> WorkflowContext:
    cfg = current_app.config
    return WorkflowContext(
        s=s,
        collections=collections_from_config(cfg, s, current_app.extensions.get("graph_client")),
        user=user,
        actor=actor,
        caps=caps,
        code_org=cfg.get("DOCUMENT_CODE_ORG") or "",
        allocation_attempts=int(cfg.get("CODE_ALLOCATION_ATTEMPTS") or 5),
    )


# -- reads ----------------------------------------------------------------------------


def locate(collections: RegistryCollections, item_id: str) -> tuple[RegistryCollection, StoreItem]:
    for collection in collections.both():
        try:
            return collection, collection.get(item_id)
        except NotFoundError:
            continue
    raise NotFoundError(f"Document {item_id} not found.")


def get_document(ctx: WorkflowContext, item_id: str) -> DocumentRecord:
    collection, item = locate(ctx.collections, item_id)
    return collection.project(item)


def _twins(ctx: WorkflowContext, record: DocumentRecord, exclude: RegistryCollection) -> list[tuple[RegistryCollection, StoreItem]]:
    """Items in the other collection carrying the same document code."""
    if not record.document_code:
        return []
    out = []
    for collection in ctx.collections.both():
        if collection.kind == exclude.kind:
            continue
        for item in collection.list_with_metadata():
            if item.id != record.id and collection.project(item).document_code == record.document_code:
                out.append((collection, item))
    return out


def all_documents(ctx: WorkflowContext) -> list[DocumentRecord]:
    """
    Merged view of both collections. The published copy of a code wins over
    its authoring twin.
    """
    seen_codes: set[str] = set()
    out: list[DocumentRecord] = []
    for collection in ctx.collections.both():
        for item in collection.list_with_metadata():
            record = collection.project(item)
            if record.document_code and record.document_code in seen_codes:
                continue
            if record.document_code:
                seen_codes.add(record.document_code)
            out.append(record)
    out.sort(key=lambda r: (r.document_code or "~", r.id))
    return out


def _matches(record: DocumentRecord, f: DocumentFilters) -> bool:
    if f.status and f.status != "All" and record.lifecycle_status != f.status:
        return False
    if f.document_type and f.document_type != "All" and record.document_type != f.document_type:
        return False
    if f.process_or_function and record.process_or_function.lower() != f.process_or_function.lower():
        return False
    if f.department_or_site and record.department_or_site.lower() != f.department_or_site.lower():
        return False
    if f.keyword and f.keyword.lower() not in {k.lower() for k in record.keywords}:
        return False
    if f.search:
        needle = f.search.lower()
        haystack = " ".join([record.document_code, record.title, record.summary, *record.keywords]).lower()
        if needle not in haystack:
            return False
    return True


def list_documents(
    ctx: WorkflowContext, filters: DocumentFilters, *, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
) -> tuple[list[DocumentRecord], int]:
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    matched = [r for r in all_documents(ctx) if _matches(r, filters)]
    start = (page - 1) * page_size
    return matched[start : start + page_size], len(matched)


def sequence_report(ctx: WorkflowContext, prefix: str) -> tuple[list[SequenceMatch], str]:
    if not ctx.caps.is_admin:
        raise PermissionError()
    allocator = ctx.allocator
    matches = allocator.scan(prefix)
    highest = max((m.sequence for m in matches), default=0)
    return matches, format_sequence(highest + 1)


# -- writes ---------------------------------------------------------------------------


def _apply(
    ctx: WorkflowContext,
    collection: RegistryCollection,
    item: StoreItem,
    updates: dict[str, Any],
    *,
    action: str,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> DocumentRecord:
    collection.write_metadata(item.id, to_store_fields(updates))
    record = collection.project(collection.get(item.id))
    record_event(
        ctx.s,
        actor=ctx.user,
        action=action,
        entity_type="Document",
        entity_id=item.id,
        reason=reason,
        metadata={"document_code": record.document_code, "collection": collection.kind, **(metadata or {})},
    )
    return record


def _upload_name(document_code: str, original: str, default_ext: str = "") -> str:
    ext = Path(secure_filename(original or "")).suffix.lower() or default_ext
    return f"{document_code}{ext}"


def create_document(ctx: WorkflowContext, upload: FileContent, metadata: dict[str, Any]) -> DocumentRecord:
    if not upload.data:
        raise ValidationError("Choose a file to upload.", field="file")
    fields = lifecycle.new_draft_fields(ctx.caps, ctx.actor, metadata)
    prefix = build_prefix(
        fields["document_type"],
        fields["process_or_function"],
        fields["department_or_site"],
        org_code=ctx.code_org,
    )
    code = ctx.allocator.allocate_code(ctx.s, prefix, actor=ctx.user, max_attempts=ctx.allocation_attempts)
    fields["document_code"] = code

    authoring = ctx.collections.authoring
    item = authoring.create(
        filename=_upload_name(code, upload.filename),
        data=upload.data,
        content_type=upload.content_type,
        fields=to_store_fields(fields),
    )
    record = authoring.project(authoring.get(item.id))
    record_event(
        ctx.s,
        actor=ctx.user,
        action="doc.create",
        entity_type="Document",
        entity_id=item.id,
        metadata={"document_code": code, "title": record.title, "document_type": record.document_type},
    )
    logger.info("Created document %s (item %s)", code, item.id)
    return record


def update_document(ctx: WorkflowContext, item_id: str, changes: dict[str, Any]) -> DocumentRecord:
    collection, item = locate(ctx.collections, item_id)
    record = collection.project(item)
    updates = lifecycle.metadata_update_fields(record, ctx.caps, ctx.actor, changes)
    changed = sorted(k for k in updates if k != "updated_by")
    return _apply(ctx, collection, item, updates, action="doc.update", metadata={"fields": changed})


def request_approval(ctx: WorkflowContext, item_id: str, notes: str | None = None) -> DocumentRecord:
    collection, item = locate(ctx.collections, item_id)
    updates = lifecycle.request_approval(collection.project(item), ctx.caps, ctx.actor, notes=notes)
    return _apply(ctx, collection, item, updates, action="doc.request_approval", reason=notes or None)


def approve(
    ctx: WorkflowContext, item_id: str, *, revision: Any, effective_date: Any, next_review_date: Any
) -> DocumentRecord:
    collection, item = locate(ctx.collections, item_id)
    updates = lifecycle.approve(
        collection.project(item),
        ctx.caps,
        ctx.actor,
        revision=revision,
        effective_date=effective_date,
        next_review_date=next_review_date,
    )
    return _apply(ctx, collection, item, updates, action="doc.approve", metadata={"revision": updates["revision"]})


def publish(
    ctx: WorkflowContext, item_id: str, *, upload: FileContent | None = None, auto_convert: bool = False
) -> DocumentRecord:
    """
    Approved -> Published. The rendered file is either the caller's upload or a
    PDF rendition produced by the store; it lands in the published collection
    as a new item, and the authoring item is stamped with the outcome.
    """
    source, item = locate(ctx.collections, item_id)
    record = source.project(item)
    lifecycle.check_publish(record, ctx.caps)

    if upload is not None and upload.data:
        rendered = FileContent(
            filename=_upload_name(record.document_code, upload.filename),
            content_type=upload.content_type,
            data=upload.data,
        )
        mode = "manual"
    elif auto_convert:
        converted = source.read_content(item.id, as_pdf=True)
        rendered = FileContent(filename=f"{record.document_code}.pdf", content_type="application/pdf", data=converted.data)
        mode = "auto_convert"
    else:
        raise ValidationError("Provide a rendered file or set autoConvert=true.", field="file")

    published = ctx.collections.published
    fields = record_fields(record)
    fields["lifecycle_status"] = PUBLISHED
    fields["authoring_file_url"] = record.authoring_file_url or None
    new_item = published.create(
        filename=rendered.filename,
        data=rendered.data,
        content_type=rendered.content_type,
        fields=to_store_fields(fields),
    )
    updates = lifecycle.publish(record, ctx.caps, ctx.actor, published_file_url=new_item.web_url)
    if source.kind != published.kind:
        source.write_metadata(item.id, to_store_fields(updates))
    return _apply(
        ctx,
        published,
        new_item,
        updates,
        action="doc.publish",
        metadata={"mode": mode, "source_item_id": item.id, "filename": rendered.filename},
    )


def mark_obsolete(
    ctx: WorkflowContext, item_id: str, *, superseded_by_document_id: str | None = None, notes: str | None = None
) -> DocumentRecord:
    collection, item = locate(ctx.collections, item_id)
    record = collection.project(item)
    updates = lifecycle.mark_obsolete(
        record, ctx.caps, ctx.actor, superseded_by_document_id=superseded_by_document_id, notes=notes
    )
    for twin_collection, twin in _twins(ctx, record, collection):
        twin_collection.write_metadata(twin.id, to_store_fields(updates))
    return _apply(
        ctx,
        collection,
        item,
        updates,
        action="doc.obsolete",
        reason=notes or None,
        metadata={"superseded_by": updates.get("superseded_by_document_id")},
    )


def delete_document(ctx: WorkflowContext, item_id: str) -> None:
    if not ctx.caps.is_admin:
        raise PermissionError()
    collection, item = locate(ctx.collections, item_id)
    record = collection.project(item)
    collection.delete(item.id)
    record_event(
        ctx.s,
        actor=ctx.user,
        action="doc.delete",
        entity_type="Document",
        entity_id=item.id,
        metadata={"document_code": record.document_code, "collection": collection.kind},
    )
