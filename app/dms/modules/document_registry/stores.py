"""
Document store adapters.

The registry is two collections (authoring, published) living in one
external store. ``DocumentStore`` is the store contract; ``RegistryCollection``
binds a store to one collection so the projector and allocator only ever see
``list_with_metadata`` / ``write_metadata``.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.dms.errors import NotFoundError, ValidationError
from app.dms.modules.document_registry.graph_client import GraphClient
from app.dms.modules.document_registry.models import (
    AUTHORING,
    PUBLISHED_COLLECTION,
    DocumentRecord,
    StoredItem,
    StoreItem,
)
from app.dms.modules.document_registry.projector import project
from app.dms.storage import Storage

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class FileContent:
    filename: str
    content_type: str
    data: bytes


class DocumentStore:
    def list_items(self, collection: str) -> list[StoreItem]:
        raise NotImplementedError

    def get_item(self, collection: str, item_id: str) -> StoreItem:
        raise NotImplementedError

    def create_item(
        self,
        collection: str,
        *,
        filename: str,
        data: bytes,
        content_type: str,
        fields: dict[str, Any],
    ) -> StoreItem:
        raise NotImplementedError

    def update_metadata(self, collection: str, item_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    def delete_item(self, collection: str, item_id: str) -> None:
        raise NotImplementedError

    def move_item(self, from_collection: str, item_id: str, to_collection: str, new_name: str | None = None) -> StoreItem:
        raise NotImplementedError

    def read_content(self, collection: str, item_id: str, *, as_pdf: bool = False) -> FileContent:
        raise NotImplementedError


class LocalDocumentStore(DocumentStore):
    """
    Store backed by the ``stored_items`` table plus blob storage.
    Writes are flushed, never committed: the request owns the transaction.
    """

    def __init__(self, s: Session, storage: Storage, *, file_url_prefix: str = "/api/documents/files") -> None:
        self.s = s
        self.storage = storage
        self.file_url_prefix = file_url_prefix.rstrip("/")

    def _to_item(self, row: StoredItem) -> StoreItem:
        return StoreItem(
            id=row.id,
            name=row.name,
            fields=json.loads(row.fields_json or "{}"),
            web_url=f"{self.file_url_prefix}/{row.id}",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _row(self, collection: str, item_id: str) -> StoredItem:
        row = self.s.get(StoredItem, item_id)
        if row is None or row.collection != collection:
            raise NotFoundError(f"Item {item_id} not found in {collection}")
        return row

    def list_items(self, collection: str) -> list[StoreItem]:
        rows = (
            self.s.query(StoredItem)
            .filter(StoredItem.collection == collection)
            .order_by(StoredItem.created_at.asc(), StoredItem.id.asc())
            .all()
        )
        return [self._to_item(r) for r in rows]

    def get_item(self, collection: str, item_id: str) -> StoreItem:
        return self._to_item(self._row(collection, item_id))

    def create_item(
        self,
        collection: str,
        *,
        filename: str,
        data: bytes,
        content_type: str,
        fields: dict[str, Any],
    ) -> StoreItem:
        item_id = uuid.uuid4().hex
        storage_key = f"registry/{collection}/{item_id}/{filename}"
        self.storage.put_bytes(storage_key, data, content_type=content_type)
        now = datetime.utcnow()
        row = StoredItem(
            id=item_id,
            collection=collection,
            name=filename,
            fields_json=json.dumps({k: v for k, v in fields.items() if v is not None}, sort_keys=True),
            storage_key=storage_key,
            content_type=content_type or "application/octet-stream",
            sha256=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            created_at=now,
            updated_at=now,
        )
        self.s.add(row)
        self.s.flush()
        return self._to_item(row)

    def update_metadata(self, collection: str, item_id: str, fields: dict[str, Any]) -> None:
        row = self._row(collection, item_id)
        current = json.loads(row.fields_json or "{}")
        for k, v in fields.items():
            if v is None:
                current.pop(k, None)
            else:
                current[k] = v
        row.fields_json = json.dumps(current, sort_keys=True)
        row.updated_at = datetime.utcnow()
        self.s.flush()

    def delete_item(self, collection: str, item_id: str) -> None:
        row = self._row(collection, item_id)
        self.storage.delete(row.storage_key)
        self.s.delete(row)
        self.s.flush()

    def move_item(self, from_collection: str, item_id: str, to_collection: str, new_name: str | None = None) -> StoreItem:
        row = self._row(from_collection, item_id)
        row.collection = to_collection
        if new_name:
            row.name = new_name
        row.updated_at = datetime.utcnow()
        self.s.flush()
        return self._to_item(row)

    def read_content(self, collection: str, item_id: str, *, as_pdf: bool = False) -> FileContent:
        row = self._row(collection, item_id)
        is_pdf = row.content_type == PDF_CONTENT_TYPE or row.name.lower().endswith(".pdf")
        if as_pdf and not is_pdf:
            raise ValidationError(
                "Automatic PDF conversion is not available for the local document store; upload a rendered file."
            )
        return FileContent(filename=row.name, content_type=row.content_type, data=self.storage.read_bytes(row.storage_key))

    def find_by_id(self, item_id: str) -> StoredItem | None:
        """Row lookup across collections (download route)."""
        return self.s.get(StoredItem, item_id)


def _parse_graph_ts(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


class GraphDocumentStore(DocumentStore):
    """SharePoint document libraries through Microsoft Graph; collection == library name."""

    def __init__(self, client: GraphClient) -> None:
        self.client = client

    @staticmethod
    def _to_item(raw: dict[str, Any]) -> StoreItem:
        list_item = raw.get("listItem") or {}
        return StoreItem(
            id=str(raw.get("id") or ""),
            name=str(raw.get("name") or ""),
            fields=dict(list_item.get("fields") or raw.get("fields") or {}),
            web_url=str(raw.get("webUrl") or ""),
            created_at=_parse_graph_ts(raw.get("createdDateTime")),
            updated_at=_parse_graph_ts(raw.get("lastModifiedDateTime")),
        )

    def list_items(self, collection: str) -> list[StoreItem]:
        return [self._to_item(r) for r in self.client.list_children(collection) if "folder" not in r]

    def get_item(self, collection: str, item_id: str) -> StoreItem:
        return self._to_item(self.client.get_item(collection, item_id))

    def create_item(
        self,
        collection: str,
        *,
        filename: str,
        data: bytes,
        content_type: str,
        fields: dict[str, Any],
    ) -> StoreItem:
        uploaded = self.client.upload(collection, filename, data, content_type=content_type)
        item_id = str(uploaded.get("id") or "")
        if fields and item_id:
            self.client.update_fields(collection, item_id, fields)
        return self._to_item({**uploaded, "fields": fields})

    def update_metadata(self, collection: str, item_id: str, fields: dict[str, Any]) -> None:
        self.client.update_fields(collection, item_id, fields)

    def delete_item(self, collection: str, item_id: str) -> None:
        self.client.delete_item(collection, item_id)

    def move_item(self, from_collection: str, item_id: str, to_collection: str, new_name: str | None = None) -> StoreItem:
        return self._to_item(self.client.move_item(from_collection, item_id, to_collection, new_name))

    def read_content(self, collection: str, item_id: str, *, as_pdf: bool = False) -> FileContent:
        item = self.get_item(collection, item_id)
        data = self.client.download(collection, item_id, as_pdf=as_pdf)
        if as_pdf:
            return FileContent(filename=item.name, content_type=PDF_CONTENT_TYPE, data=data)
        return FileContent(filename=item.name, content_type="application/octet-stream", data=data)


@dataclass(frozen=True)
class RegistryCollection:
    """One collection of the registry, as seen by the projector and allocator."""

    store: DocumentStore
    name: str  # external name, e.g. "DM-Authoring"
    kind: str  # AUTHORING or PUBLISHED_COLLECTION

    def list_with_metadata(self) -> list[StoreItem]:
        return self.store.list_items(self.name)

    def write_metadata(self, item_id: str, fields: dict[str, Any]) -> None:
        self.store.update_metadata(self.name, item_id, fields)

    def get(self, item_id: str) -> StoreItem:
        return self.store.get_item(self.name, item_id)

    def create(self, *, filename: str, data: bytes, content_type: str, fields: dict[str, Any]) -> StoreItem:
        return self.store.create_item(self.name, filename=filename, data=data, content_type=content_type, fields=fields)

    def delete(self, item_id: str) -> None:
        self.store.delete_item(self.name, item_id)

    def read_content(self, item_id: str, *, as_pdf: bool = False) -> FileContent:
        return self.store.read_content(self.name, item_id, as_pdf=as_pdf)

    def project(self, item: StoreItem) -> DocumentRecord:
        return project(item, self.kind)


@dataclass(frozen=True)
class RegistryCollections:
    authoring: RegistryCollection
    published: RegistryCollection

    def both(self) -> tuple[RegistryCollection, RegistryCollection]:
        # published first: it is the registry of record when both hold a code
        return (self.published, self.authoring)

    @classmethod
    def for_store(cls, store: DocumentStore, *, authoring_name: str, published_name: str) -> "RegistryCollections":
        return cls(
            authoring=RegistryCollection(store=store, name=authoring_name, kind=AUTHORING),
            published=RegistryCollection(store=store, name=published_name, kind=PUBLISHED_COLLECTION),
        )
