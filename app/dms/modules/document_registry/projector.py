"""
Projection between raw store items and DocumentRecord.

Both collections carry the same ``dm_*`` metadata columns, but either may
lag behind the canonical model: a missing column degrades to the value in
FIELD_DEFAULTS instead of failing. Projection is a pure function.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from app.dms.modules.document_registry.models import (
    AUTHORING,
    DOCUMENT_TYPES,
    DRAFT,
    LIFECYCLE_STATUSES,
    PRE_APPROVAL_STATUSES,
    PUBLISHED,
    PUBLISHED_COLLECTION,
    SYSTEM_USER,
    DocumentRecord,
    StoreItem,
    UserRef,
)

KEYWORD_DELIMITER = ";"

# canonical field -> external metadata column
FIELD_NAMES: dict[str, str] = {
    "title": "Title",
    "document_code": "dm_document_code",
    "external_item_id": "dm_sharepoint_item_id",
    "document_type": "dm_document_type",
    "process_or_function": "dm_process_or_function",
    "department_or_site": "dm_department_or_site",
    "revision": "dm_revision",
    "lifecycle_status": "dm_lifecycle_status",
    "owner": "dm_owner",
    "owner_id": "dm_owner_id",
    "owner_email": "dm_owner_email",
    "approver": "dm_approver",
    "approver_id": "dm_approver_id",
    "approver_email": "dm_approver_email",
    "created_by": "dm_created_by",
    "created_by_id": "dm_created_by_id",
    "created_by_email": "dm_created_by_email",
    "updated_by": "dm_updated_by",
    "updated_by_id": "dm_updated_by_id",
    "updated_by_email": "dm_updated_by_email",
    "effective_date": "dm_effective_date",
    "next_review_date": "dm_next_review_date",
    "supersedes_document_id": "dm_supersedes_document_id",
    "superseded_by_document_id": "dm_superseded_by_document_id",
    "keywords": "dm_keywords",
    "summary": "dm_summary",
    "authoring_file_url": "dm_authoring_file_url",
    "published_file_url": "dm_published_file_url",
    "archive_file_url": "dm_archive_file_url",
}

USER_FIELDS = ("owner", "approver", "created_by", "updated_by")

# canonical field -> value used when the raw column is absent or blank
FIELD_DEFAULTS: dict[str, Any] = {
    "title": "",
    "document_code": "",
    "document_type": "Other",
    "process_or_function": "",
    "department_or_site": "",
    "revision": "",
    "keywords": (),
    "summary": "",
    "effective_date": None,
    "next_review_date": None,
    "supersedes_document_id": None,
    "superseded_by_document_id": None,
    "archive_file_url": "",
    "owner": SYSTEM_USER,
    "approver": SYSTEM_USER,
    "created_by": SYSTEM_USER,
    "updated_by": SYSTEM_USER,
}

# lifecycle_status default depends on where the item was found
STATUS_DEFAULTS: dict[str, str] = {
    AUTHORING: DRAFT,
    PUBLISHED_COLLECTION: PUBLISHED,
}

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


def strip_extension(name: str) -> str:
    return _EXTENSION_RE.sub("", name or "")


def split_keywords(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(k) for k in raw if k)
    return tuple(k for k in str(raw).split(KEYWORD_DELIMITER) if k)


def join_keywords(keywords: Iterable[str]) -> str:
    return KEYWORD_DELIMITER.join(k for k in keywords if k)


def parse_date(value: Any) -> date | None:
    """Accepts date, datetime, ``YYYY-MM-DD`` or a Graph timestamp (``2026-01-15T00:00:00Z``)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if "T" in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        return None


def _text(fields: Mapping[str, Any], canonical: str) -> str | None:
    raw = fields.get(FIELD_NAMES[canonical])
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _get(fields: Mapping[str, Any], canonical: str) -> Any:
    value = _text(fields, canonical)
    return FIELD_DEFAULTS[canonical] if value is None else value


def _user(fields: Mapping[str, Any], canonical: str) -> UserRef:
    ref = UserRef(
        id=_text(fields, f"{canonical}_id") or "",
        display_name=_text(fields, canonical) or "",
        email=_text(fields, f"{canonical}_email") or "",
    )
    return FIELD_DEFAULTS[canonical] if ref.is_empty else ref


def project(item: StoreItem, source: str) -> DocumentRecord:
    if source not in STATUS_DEFAULTS:
        raise ValueError(f"Unknown collection: {source!r}")
    fields = item.fields or {}

    status = _text(fields, "lifecycle_status")
    if status not in LIFECYCLE_STATUSES:
        status = STATUS_DEFAULTS[source]

    doc_type = _get(fields, "document_type")
    if doc_type not in DOCUMENT_TYPES:
        doc_type = FIELD_DEFAULTS["document_type"]

    effective = parse_date(fields.get(FIELD_NAMES["effective_date"]))
    next_review = parse_date(fields.get(FIELD_NAMES["next_review_date"]))
    if status in PRE_APPROVAL_STATUSES:
        effective = None
        next_review = None

    return DocumentRecord(
        id=item.id,
        external_item_id=item.id,
        document_code=_get(fields, "document_code"),
        title=_text(fields, "title") or item.name,
        document_type=doc_type,
        process_or_function=_get(fields, "process_or_function"),
        department_or_site=_get(fields, "department_or_site"),
        revision=_get(fields, "revision"),
        lifecycle_status=status,
        owner=_user(fields, "owner"),
        approver=_user(fields, "approver"),
        created_by=_user(fields, "created_by"),
        updated_by=_user(fields, "updated_by"),
        keywords=split_keywords(fields.get(FIELD_NAMES["keywords"])),
        summary=_get(fields, "summary"),
        effective_date=effective,
        next_review_date=next_review,
        supersedes_document_id=_get(fields, "supersedes_document_id"),
        superseded_by_document_id=_get(fields, "superseded_by_document_id"),
        authoring_file_url=item.web_url if source == AUTHORING else "",
        published_file_url=item.web_url if source == PUBLISHED_COLLECTION else "",
        archive_file_url=_get(fields, "archive_file_url"),
        created_at=item.created_at,
        updated_at=item.updated_at,
        source=source,
    )


def to_store_fields(updates: Mapping[str, Any]) -> dict[str, Any]:
    """
    Inverse direction for writes: canonical update dict -> ``dm_*`` columns.
    Unknown keys are ignored.
    """
    out: dict[str, Any] = {}
    for key, value in updates.items():
        if key in USER_FIELDS:
            ref = value if isinstance(value, UserRef) else SYSTEM_USER
            out[FIELD_NAMES[key]] = ref.display_name
            out[FIELD_NAMES[f"{key}_id"]] = ref.id
            out[FIELD_NAMES[f"{key}_email"]] = ref.email
        elif key == "keywords":
            out[FIELD_NAMES[key]] = join_keywords(value or ())
        elif key in ("effective_date", "next_review_date"):
            out[FIELD_NAMES[key]] = value.isoformat() if value else None
        elif key in FIELD_NAMES:
            out[FIELD_NAMES[key]] = value
    return out


def record_fields(record: DocumentRecord) -> dict[str, Any]:
    """Canonical, storable fields of a record (used when copying it to the other collection)."""
    return {
        "title": record.title,
        "document_code": record.document_code,
        "document_type": record.document_type,
        "process_or_function": record.process_or_function,
        "department_or_site": record.department_or_site,
        "revision": record.revision,
        "lifecycle_status": record.lifecycle_status,
        "owner": record.owner,
        "approver": record.approver,
        "created_by": record.created_by,
        "updated_by": record.updated_by,
        "effective_date": record.effective_date,
        "next_review_date": record.next_review_date,
        "supersedes_document_id": record.supersedes_document_id,
        "superseded_by_document_id": record.superseded_by_document_id,
        "keywords": record.keywords,
        "summary": record.summary,
        "archive_file_url": record.archive_file_url or None,
    }
