from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.dms.models import Base

# Lifecycle: Draft -> UnderReview -> Approved -> Published, Obsolete from any non-Obsolete state
DRAFT = "Draft"
UNDER_REVIEW = "UnderReview"
APPROVED = "Approved"
PUBLISHED = "Published"
OBSOLETE = "Obsolete"
LIFECYCLE_STATUSES = (DRAFT, UNDER_REVIEW, APPROVED, PUBLISHED, OBSOLETE)
PRE_APPROVAL_STATUSES = frozenset({DRAFT, UNDER_REVIEW})

DOCUMENT_TYPES = ("Standard", "Procedure", "SOP", "Policy", "WorkInstruction", "Manual", "Form", "Other")

# The two external collections that together make up the registry.
AUTHORING = "authoring"
PUBLISHED_COLLECTION = "published"


@dataclass(frozen=True)
class UserRef:
    id: str = ""
    display_name: str = ""
    email: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.id or self.display_name or self.email)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "displayName": self.display_name, "email": self.email}

    @classmethod
    def from_dict(cls, raw: Any) -> "UserRef | None":
        if not isinstance(raw, dict):
            return None
        return cls(
            id=str(raw.get("id") or "").strip(),
            display_name=str(raw.get("displayName") or raw.get("display_name") or "").strip(),
            email=str(raw.get("email") or "").strip(),
        )


SYSTEM_USER = UserRef(id="", display_name="System", email="")


@dataclass(frozen=True)
class StoreItem:
    """One file/list item as the document store returns it."""

    id: str
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    web_url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    external_item_id: str
    document_code: str
    title: str
    document_type: str
    process_or_function: str
    department_or_site: str
    revision: str
    lifecycle_status: str
    owner: UserRef
    approver: UserRef
    created_by: UserRef
    updated_by: UserRef
    keywords: tuple[str, ...] = ()
    summary: str = ""
    effective_date: date | None = None
    next_review_date: date | None = None
    supersedes_document_id: str | None = None
    superseded_by_document_id: str | None = None
    authoring_file_url: str = ""
    published_file_url: str = ""
    archive_file_url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    source: str = AUTHORING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "externalItemId": self.external_item_id,
            "documentCode": self.document_code,
            "title": self.title,
            "documentType": self.document_type,
            "processOrFunction": self.process_or_function,
            "departmentOrSite": self.department_or_site,
            "revision": self.revision,
            "lifecycleStatus": self.lifecycle_status,
            "owner": self.owner.to_dict(),
            "approver": self.approver.to_dict(),
            "createdBy": self.created_by.to_dict(),
            "updatedBy": self.updated_by.to_dict(),
            "effectiveDate": self.effective_date.isoformat() if self.effective_date else None,
            "nextReviewDate": self.next_review_date.isoformat() if self.next_review_date else None,
            "supersedesDocumentId": self.supersedes_document_id,
            "supersededByDocumentId": self.superseded_by_document_id,
            "keywords": list(self.keywords),
            "summary": self.summary,
            "authoringFileUrl": self.authoring_file_url,
            "publishedFileUrl": self.published_file_url,
            "archiveFileUrl": self.archive_file_url,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "source": self.source,
        }


class StoredItem(Base):
    """
    Item row for the local document store (one per file per collection).
    Bytes live in blob storage under ``storage_key``; metadata columns are the
    ``dm_*`` fields as a JSON object, mirroring a SharePoint list item.
    """

    __tablename__ = "stored_items"
    __table_args__ = (Index("idx_stored_items_collection", "collection"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    collection: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    fields_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class DocumentCodeReservation(Base):
    """
    One row per document code ever handed out. The unique constraint on
    document_code is what makes allocation safe across concurrent requests.
    """

    __tablename__ = "document_code_reservations"
    __table_args__ = (Index("idx_code_reservations_prefix", "prefix"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_code: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    prefix: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    reserved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
