"""
Document lifecycle state machine.

    Draft -> UnderReview -> Approved -> Published
    any non-Obsolete state -> Obsolete

Every trigger is a pure function of (record, capabilities, actor, input) and
returns the canonical field updates the caller must persist. Checks run in a
fixed order: the transition must exist for the current state, then the actor
must hold the capability, then the input must be complete.

There is no way back from UnderReview to Draft (rejection).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import date
from typing import Any

from app.dms.errors import InvalidTransitionError, PermissionError, ValidationError
from app.dms.modules.document_registry.models import (
    APPROVED,
    DOCUMENT_TYPES,
    DRAFT,
    LIFECYCLE_STATUSES,
    OBSOLETE,
    PUBLISHED,
    UNDER_REVIEW,
    DocumentRecord,
    UserRef,
)
from app.dms.modules.document_registry.projector import KEYWORD_DELIMITER, parse_date
from app.dms.rbac import ADMIN, AUTHOR, QHSE, Capabilities

INITIAL_REVISION = "0"

TRANSITIONS: dict[str, tuple[str, ...]] = {
    DRAFT: (UNDER_REVIEW, OBSOLETE),
    UNDER_REVIEW: (APPROVED, OBSOLETE),
    APPROVED: (PUBLISHED, OBSOLETE),
    PUBLISHED: (OBSOLETE,),
    OBSOLETE: (),
}

# Fields a metadata update may touch; status, code and dates only move through transitions.
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "document_type",
        "process_or_function",
        "department_or_site",
        "owner",
        "approver",
        "keywords",
        "summary",
        "supersedes_document_id",
    }
)


def allowed_targets(status: str) -> tuple[str, ...]:
    return TRANSITIONS.get(status, ())


def ensure_transition(record: DocumentRecord, target: str) -> None:
    if target not in allowed_targets(record.lifecycle_status):
        raise InvalidTransitionError(record.lifecycle_status, target)


def is_record_owner(record: DocumentRecord, actor: UserRef | None) -> bool:
    if actor is None or record.owner.is_empty:
        return False
    if actor.id and record.owner.id and actor.id == record.owner.id:
        return True
    return bool(actor.email and record.owner.email and actor.email.lower() == record.owner.email.lower())


def _require(allowed: bool) -> None:
    if not allowed:
        raise PermissionError()


def _required_text(value: Any, label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required.", field=label)
    return text


def _required_date(value: Any, label: str) -> date:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required.", field=label)
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"{label} must be a date (YYYY-MM-DD).", field=label)
    return parsed


def validate_keywords(keywords: Iterable[Any]) -> tuple[str, ...]:
    out: list[str] = []
    for k in keywords or ():
        token = str(k or "")
        if not token:
            continue
        if KEYWORD_DELIMITER in token:
            raise ValidationError(f"Keywords may not contain '{KEYWORD_DELIMITER}'.", field="keywords")
        out.append(token)
    return tuple(out)


def validate_document_type(value: Any) -> str:
    doc_type = str(value or "").strip() or "Other"
    if doc_type not in DOCUMENT_TYPES:
        raise ValidationError(f"Invalid documentType. Must be one of: {', '.join(DOCUMENT_TYPES)}", field="documentType")
    return doc_type


# -- creation -------------------------------------------------------------------------


def can_create(caps: Capabilities) -> bool:
    return caps.has_any_role((AUTHOR, QHSE, ADMIN))


def new_draft_fields(caps: Capabilities, actor: UserRef, metadata: Mapping[str, Any]) -> dict[str, Any]:
    """
    Canonical fields for a brand-new Draft. The document code is not part of
    this: it is allocated separately once the fields validate.
    """
    _require(can_create(caps))
    title = _required_text(metadata.get("title"), "title")
    owner = metadata.get("owner")
    approver = metadata.get("approver")
    return {
        "title": title,
        "document_type": validate_document_type(metadata.get("document_type")),
        "process_or_function": str(metadata.get("process_or_function") or "").strip(),
        "department_or_site": str(metadata.get("department_or_site") or "").strip(),
        "revision": INITIAL_REVISION,
        "lifecycle_status": DRAFT,
        "owner": owner if isinstance(owner, UserRef) and not owner.is_empty else actor,
        "approver": approver if isinstance(approver, UserRef) and not approver.is_empty else actor,
        "created_by": actor,
        "updated_by": actor,
        "keywords": validate_keywords(metadata.get("keywords") or ()),
        "summary": str(metadata.get("summary") or "").strip(),
        "supersedes_document_id": (str(metadata.get("supersedes_document_id") or "").strip() or None),
    }


def metadata_update_fields(
    record: DocumentRecord, caps: Capabilities, actor: UserRef, changes: Mapping[str, Any]
) -> dict[str, Any]:
    if record.lifecycle_status == OBSOLETE:
        raise ValidationError("Obsolete documents cannot be edited.")
    _require(caps.is_admin or caps.is_qhse or caps.is_author or is_record_owner(record, actor))

    if "document_code" in changes and (changes["document_code"] or "") != record.document_code:
        raise ValidationError("documentCode is assigned at creation and cannot be changed.", field="documentCode")
    if "lifecycle_status" in changes and changes["lifecycle_status"] != record.lifecycle_status:
        raise ValidationError("lifecycleStatus changes only through workflow transitions.", field="lifecycleStatus")

    out: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS:
            continue
        if key == "title":
            out[key] = _required_text(value, "title")
        elif key == "document_type":
            out[key] = validate_document_type(value)
        elif key == "keywords":
            out[key] = validate_keywords(value)
        elif key in ("owner", "approver"):
            if not isinstance(value, UserRef) or value.is_empty:
                raise ValidationError(f"{key} must be a user reference.", field=key)
            out[key] = value
        elif key == "supersedes_document_id":
            out[key] = str(value or "").strip() or None
        else:
            out[key] = str(value or "").strip()
    out["updated_by"] = actor
    return out


# -- transitions ----------------------------------------------------------------------


def request_approval(
    record: DocumentRecord, caps: Capabilities, actor: UserRef, notes: str | None = None
) -> dict[str, Any]:
    """Draft -> UnderReview. Authors, or the record's owner."""
    ensure_transition(record, UNDER_REVIEW)
    _require(caps.is_author or is_record_owner(record, actor))
    return {
        "lifecycle_status": UNDER_REVIEW,
        "effective_date": None,
        "next_review_date": None,
        "updated_by": actor,
    }


def approve(
    record: DocumentRecord,
    caps: Capabilities,
    actor: UserRef,
    *,
    revision: Any,
    effective_date: Any,
    next_review_date: Any,
) -> dict[str, Any]:
    """UnderReview -> Approved. Sets the revision label and review window."""
    ensure_transition(record, APPROVED)
    _require(caps.is_approver)
    rev = _required_text(revision, "revision")
    effective = _required_date(effective_date, "effectiveDate")
    next_review = _required_date(next_review_date, "nextReviewDate")
    if next_review < effective:
        raise ValidationError("nextReviewDate cannot be before effectiveDate.", field="nextReviewDate")
    return {
        "lifecycle_status": APPROVED,
        "revision": rev,
        "effective_date": effective,
        "next_review_date": next_review,
        "updated_by": actor,
    }


def check_publish(record: DocumentRecord, caps: Capabilities) -> None:
    """Gate checked before any rendered file is produced."""
    ensure_transition(record, PUBLISHED)
    _require(caps.can_publish)


def publish(record: DocumentRecord, caps: Capabilities, actor: UserRef, *, published_file_url: Any) -> dict[str, Any]:
    """
    Approved -> Published. The rendered file (uploaded or converted) must
    already exist; only its URL is recorded here.
    """
    check_publish(record, caps)
    url = _required_text(published_file_url, "publishedFileUrl")
    return {
        "lifecycle_status": PUBLISHED,
        "published_file_url": url,
        "updated_by": actor,
    }


def mark_obsolete(
    record: DocumentRecord,
    caps: Capabilities,
    actor: UserRef,
    *,
    superseded_by_document_id: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Any non-Obsolete state -> Obsolete. Admin only."""
    ensure_transition(record, OBSOLETE)
    _require(caps.is_admin)
    out: dict[str, Any] = {"lifecycle_status": OBSOLETE, "updated_by": actor}
    superseded_by = str(superseded_by_document_id or "").strip()
    if superseded_by:
        if superseded_by in (record.id, record.document_code):
            raise ValidationError("A document cannot supersede itself.", field="supersededByDocumentId")
        out["superseded_by_document_id"] = superseded_by
    return out


_TRIGGERS: dict[str, Callable[..., dict[str, Any]]] = {
    UNDER_REVIEW: request_approval,
    APPROVED: approve,
    PUBLISHED: publish,
    OBSOLETE: mark_obsolete,
}


def transition(
    record: DocumentRecord, target: str, caps: Capabilities, actor: UserRef, **inputs: Any
) -> dict[str, Any]:
    """Generic entry point: dispatch to the trigger that leads to ``target``."""
    if target not in LIFECYCLE_STATUSES or target not in _TRIGGERS:
        raise InvalidTransitionError(record.lifecycle_status, target)
    ensure_transition(record, target)
    return _TRIGGERS[target](record, caps, actor, **inputs)
