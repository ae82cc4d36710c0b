"""
Document registry HTTP API (JSON).

Routes stay thin: parse the request, build a WorkflowContext from the
signed-in user and their capabilities, call the workflow service, commit.
Typed errors bubble up to the DmsError handler registered in create_app.
"""

from __future__ import annotations

import json
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.dms.audit import record_event
from app.dms.db import db_session
from app.dms.errors import NotFoundError, ValidationError
from app.dms.identity import account_for_user
from app.dms.models import User
from app.dms.modules.document_registry import service
from app.dms.modules.document_registry.models import UserRef
from app.dms.modules.document_registry.projector import split_keywords
from app.dms.modules.document_registry.stores import FileContent, LocalDocumentStore
from app.dms.rbac import ADMIN, current_capabilities, require_login, require_roles
from app.dms.storage import storage_from_config

bp = Blueprint("documents", __name__)

# camelCase wire name -> canonical field
_WIRE_FIELDS = {
    "title": "title",
    "documentCode": "document_code",
    "documentType": "document_type",
    "processOrFunction": "process_or_function",
    "departmentOrSite": "department_or_site",
    "lifecycleStatus": "lifecycle_status",
    "owner": "owner",
    "approver": "approver",
    "keywords": "keywords",
    "summary": "summary",
    "supersedesDocumentId": "supersedes_document_id",
}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _ctx() -> service.WorkflowContext:
    user = _current_user()
    return service.context_for(db_session(), user, account_for_user(user), current_capabilities())


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def _canonical(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for wire, canonical in _WIRE_FIELDS.items():
        if wire not in payload:
            continue
        value = payload[wire]
        if canonical in ("owner", "approver"):
            value = UserRef.from_dict(value)
        elif canonical == "keywords":
            if value is None:
                value = []
            elif isinstance(value, str):
                value = split_keywords(value)
            elif isinstance(value, list) and all(isinstance(k, str) for k in value):
                value = list(value)
            else:
                raise ValidationError("keywords must be a string or a list of strings.", field="keywords")
        out[canonical] = value
    return out


def _notes(body: dict[str, Any]) -> str | None:
    raw = body.get("notes")
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationError("notes must be a string.", field="notes")
    return raw.strip() or None


def _upload(field: str = "file") -> FileContent | None:
    f = request.files.get(field)
    if not f or not f.filename:
        return None
    return FileContent(
        filename=f.filename,
        content_type=(f.mimetype or "application/octet-stream").strip(),
        data=f.read(),
    )


def _int_arg(name: str, default: int) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer.", field=name) from e


def _document_response(record, status: int = 200):
    return jsonify({"document": record.to_dict()}), status


@bp.get("")
@require_login
def list_documents():
    filters = service.DocumentFilters(
        status=(request.args.get("status") or "").strip(),
        document_type=(request.args.get("documentType") or "").strip(),
        search=(request.args.get("search") or "").strip(),
        process_or_function=(request.args.get("processOrFunction") or "").strip(),
        department_or_site=(request.args.get("departmentOrSite") or "").strip(),
        keyword=(request.args.get("keyword") or "").strip(),
    )
    page = _int_arg("page", 1)
    page_size = _int_arg("pageSize", service.DEFAULT_PAGE_SIZE)
    items, total = service.list_documents(_ctx(), filters, page=page, page_size=page_size)
    return jsonify(
        {
            "items": [r.to_dict() for r in items],
            "total": total,
            "page": max(page, 1),
            "pageSize": min(max(page_size, 1), service.MAX_PAGE_SIZE),
        }
    )


@bp.get("/sequence")
@require_roles(ADMIN)
def sequence_debug():
    prefix = (request.args.get("prefix") or "").strip()
    matches, nxt = service.sequence_report(_ctx(), prefix)
    return jsonify(
        {
            "prefix": prefix,
            "nextSequence": nxt,
            "matches": [
                {"collection": m.collection, "name": m.name, "code": m.code, "sequence": m.sequence} for m in matches
            ],
        }
    )


@bp.get("/files/<item_id>")
@require_login
def download_file(item_id: str):
    s = db_session()
    u = _current_user()
    store = service.app_store(s)
    if not isinstance(store, LocalDocumentStore):
        raise NotFoundError("Files are served by the external document store.")
    row = store.find_by_id(item_id)
    if row is None:
        raise NotFoundError(f"File {item_id} not found.")

    fobj = storage_from_config(current_app.config).open(row.storage_key)
    record_event(
        s,
        actor=u,
        action="doc.download",
        entity_type="StoredItem",
        entity_id=row.id,
        metadata={"collection": row.collection, "filename": row.name, "sha256": row.sha256},
    )
    s.commit()
    return send_file(
        fobj,
        mimetype=row.content_type,
        as_attachment=True,
        download_name=row.name,
        max_age=0,
    )


@bp.get("/<item_id>")
@require_login
def get_document(item_id: str):
    return _document_response(service.get_document(_ctx(), item_id))


@bp.post("")
@require_login
def create_document():
    upload = _upload()
    if upload is None:
        raise ValidationError("Choose a file to upload.", field="file")
    raw = request.form.get("metadata") or "{}"
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"metadata is not valid JSON: {e}", field="metadata") from e
    if not isinstance(payload, dict):
        raise ValidationError("metadata must be a JSON object.", field="metadata")

    metadata = _canonical(payload)
    metadata.setdefault("title", upload.filename)
    s = db_session()
    record = service.create_document(_ctx(), upload, metadata)
    s.commit()
    return _document_response(record, 201)


@bp.put("/<item_id>")
@require_login
def update_document(item_id: str):
    s = db_session()
    record = service.update_document(_ctx(), item_id, _canonical(_json_body()))
    s.commit()
    return _document_response(record)


@bp.post("/<item_id>/request-approval")
@require_login
def request_approval(item_id: str):
    body = _json_body()
    s = db_session()
    record = service.request_approval(_ctx(), item_id, notes=_notes(body))
    s.commit()
    return _document_response(record)


@bp.post("/<item_id>/approve")
@require_login
def approve(item_id: str):
    body = _json_body()
    s = db_session()
    record = service.approve(
        _ctx(),
        item_id,
        revision=body.get("revision"),
        effective_date=body.get("effectiveDate"),
        next_review_date=body.get("nextReviewDate"),
    )
    s.commit()
    return _document_response(record)


@bp.post("/<item_id>/publish")
@require_login
def publish(item_id: str):
    flag = (request.args.get("autoConvert") or request.form.get("autoConvert") or "").strip().lower()
    s = db_session()
    record = service.publish(_ctx(), item_id, upload=_upload(), auto_convert=flag in ("1", "true", "yes"))
    s.commit()
    return _document_response(record)


@bp.post("/<item_id>/mark-obsolete")
@require_login
def mark_obsolete(item_id: str):
    body = _json_body()
    s = db_session()
    record = service.mark_obsolete(
        _ctx(),
        item_id,
        superseded_by_document_id=body.get("supersededByDocumentId"),
        notes=_notes(body),
    )
    s.commit()
    return _document_response(record)


@bp.delete("/<item_id>")
@require_login
def delete_document(item_id: str):
    s = db_session()
    service.delete_document(_ctx(), item_id)
    s.commit()
    return "", 204
