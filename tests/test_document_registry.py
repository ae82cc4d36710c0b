import io
import json

import pytest
from werkzeug.security import generate_password_hash

from app.dms import auth, create_app
from app.dms.db import session_scope
from app.dms.models import AuditEvent, Base, Role, User
from app.dms.modules.document_registry.models import DocumentCodeReservation, StoredItem

PASSWORD = "pw"
USERS = {
    "author@example.com": ("Author", "Ann Author"),
    "approver@example.com": ("Approver", "Abe Approver"),
    "qhse@example.com": ("QHSE", "Quinn QHSE"),
    "admin@example.com": ("Admin", "Ada Admin"),
}


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("DOCUMENT_STORE", "local")
    monkeypatch.delenv("DOCUMENT_CODE_ORG", raising=False)
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        for email, (role_key, name) in USERS.items():
            r = Role(key=role_key, name=role_key)
            u = User(email=email, display_name=name, password_hash=generate_password_hash(PASSWORD), is_active=True)
            u.roles.append(r)
            s.add_all([r, u])

    return app.test_client()


def _login(client, email):
    r = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrfToken"]}


def _create(client, headers, filename="draft.docx", **metadata):
    payload = {"title": "Document Control", "documentType": "SOP", "processOrFunction": "QMS"}
    payload.update(metadata)
    return client.post(
        "/api/documents",
        data={"file": (io.BytesIO(b"draft bytes"), filename), "metadata": json.dumps(payload)},
        content_type="multipart/form-data",
        headers=headers,
    )


def _approve_body():
    return {"revision": "A", "effectiveDate": "2026-02-01", "nextReviewDate": "2027-02-01"}


def test_requires_login(client):
    assert client.get("/api/documents").status_code == 401


def test_create_assigns_sequential_codes(client):
    h = _login(client, "author@example.com")

    r = _create(client, h, keywords=["control", "records"])
    assert r.status_code == 201
    doc = r.json["document"]
    assert doc["documentCode"] == "SOP-QMS-001"
    assert doc["lifecycleStatus"] == "Draft"
    assert doc["revision"] == "0"
    assert doc["source"] == "authoring"
    assert doc["owner"]["email"] == "author@example.com"
    assert doc["keywords"] == ["control", "records"]
    assert doc["authoringFileUrl"] == f"/api/documents/files/{doc['id']}"
    assert doc["publishedFileUrl"] == ""

    r = _create(client, h, title="Records Control")
    assert r.json["document"]["documentCode"] == "SOP-QMS-002"

    r = _create(client, h, documentType="Policy", processOrFunction="Safety")
    assert r.json["document"]["documentCode"] == "POL-SAFE-001"

    with session_scope(client.application) as s:
        codes = sorted(c.document_code for c in s.query(DocumentCodeReservation).all())
        names = sorted(i.name for i in s.query(StoredItem).all())
    assert codes == ["POL-SAFE-001", "SOP-QMS-001", "SOP-QMS-002"]
    assert names == ["POL-SAFE-001.docx", "SOP-QMS-001.docx", "SOP-QMS-002.docx"]


def test_create_validation_and_permissions(client):
    h = _login(client, "approver@example.com")
    assert _create(client, h).status_code == 403

    h = _login(client, "author@example.com")
    r = client.post(
        "/api/documents",
        data={"metadata": json.dumps({"title": "x"})},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"

    r = _create(client, h, documentType="Memo")
    assert r.status_code == 400

    r = _create(client, h, keywords=["a;b"])
    assert r.status_code == 400

    r = _create(client, h, keywords={"a": 1})
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"


def test_mutations_require_csrf_token(client):
    _login(client, "author@example.com")
    r = client.post(
        "/api/documents",
        data={"file": (io.BytesIO(b"x"), "x.docx"), "metadata": "{}"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_full_lifecycle_vertical_slice(client):
    h = _login(client, "author@example.com")
    draft = _create(client, h).json["document"]
    other = _create(client, h, title="Second").json["document"]
    doc_id = draft["id"]

    # Metadata edit
    r = client.put(f"/api/documents/{doc_id}", json={"summary": "How documents are controlled"}, headers=h)
    assert r.status_code == 200
    assert r.json["document"]["summary"] == "How documents are controlled"
    r = client.put(f"/api/documents/{doc_id}", json={"documentCode": "SOP-QMS-999"}, headers=h)
    assert r.status_code == 400

    # Approver cannot request approval on someone else's draft
    h = _login(client, "approver@example.com")
    r = client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h)
    assert r.status_code == 403
    assert r.json == {"error": "permission_denied", "message": "You do not have permission to perform this action."}

    h = _login(client, "author@example.com")
    r = client.post(f"/api/documents/{doc_id}/request-approval", json={"notes": 5}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    assert client.get(f"/api/documents/{doc_id}").json["document"]["lifecycleStatus"] == "Draft"
    r = client.post(f"/api/documents/{doc_id}/request-approval", json={"notes": "ready"}, headers=h)
    assert r.status_code == 200
    assert r.json["document"]["lifecycleStatus"] == "UnderReview"

    # Author cannot approve; approver must supply every field
    r = client.post(f"/api/documents/{doc_id}/approve", json=_approve_body(), headers=h)
    assert r.status_code == 403

    h = _login(client, "approver@example.com")
    r = client.post(f"/api/documents/{doc_id}/approve", json={**_approve_body(), "revision": ""}, headers=h)
    assert r.status_code == 400
    r = client.post(f"/api/documents/{doc_id}/approve", json={**_approve_body(), "effectiveDate": "2026-02-01garbage"}, headers=h)
    assert r.status_code == 400
    r = client.post(f"/api/documents/{doc_id}/approve", json=_approve_body(), headers=h)
    assert r.status_code == 200
    approved = r.json["document"]
    assert approved["lifecycleStatus"] == "Approved"
    assert approved["revision"] == "A"
    assert approved["effectiveDate"] == "2026-02-01"
    assert approved["nextReviewDate"] == "2027-02-01"

    # Publish: approver lacks the capability; QHSE publishes a rendered file
    r = client.post(
        f"/api/documents/{doc_id}/publish",
        data={"file": (io.BytesIO(b"%PDF-1.7 rendered"), "rendered.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 403

    h = _login(client, "qhse@example.com")
    r = client.post(f"/api/documents/{doc_id}/publish", json={}, headers=h)
    assert r.status_code == 400
    r = client.post(
        f"/api/documents/{doc_id}/publish",
        data={"file": (io.BytesIO(b"%PDF-1.7 rendered"), "rendered.pdf")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 200
    published = r.json["document"]
    assert published["lifecycleStatus"] == "Published"
    assert published["source"] == "published"
    assert published["documentCode"] == "SOP-QMS-001"
    assert published["revision"] == "A"
    assert published["authoringFileUrl"] == ""
    assert published["publishedFileUrl"] == f"/api/documents/files/{published['id']}"

    # Draft -> Published is not a transition
    r = client.post(f"/api/documents/{other['id']}/publish?autoConvert=true", headers=h)
    assert r.status_code == 409
    assert r.json["current"] == "Draft"
    assert r.json["target"] == "Published"

    # Merged listing: the published copy replaces its authoring twin
    r = client.get("/api/documents", headers=h)
    assert r.status_code == 200
    assert r.json["total"] == 2
    by_code = {d["documentCode"]: d for d in r.json["items"]}
    assert by_code["SOP-QMS-001"]["source"] == "published"
    assert by_code["SOP-QMS-002"]["lifecycleStatus"] == "Draft"

    r = client.get("/api/documents?status=Published", headers=h)
    assert [d["documentCode"] for d in r.json["items"]] == ["SOP-QMS-001"]
    r = client.get("/api/documents?search=second", headers=h)
    assert [d["documentCode"] for d in r.json["items"]] == ["SOP-QMS-002"]

    # Authoring item is stamped with the publish outcome
    r = client.get(f"/api/documents/{doc_id}", headers=h)
    assert r.json["document"]["lifecycleStatus"] == "Published"

    # Download the published rendition
    r = client.get(published["publishedFileUrl"], headers=h)
    assert r.status_code == 200
    assert r.data == b"%PDF-1.7 rendered"

    # Obsolete (Admin only), link preserved on both copies
    r = client.post(f"/api/documents/{published['id']}/mark-obsolete", json={}, headers=h)
    assert r.status_code == 403
    h = _login(client, "admin@example.com")
    r = client.post(
        f"/api/documents/{published['id']}/mark-obsolete",
        json={"supersededByDocumentId": "doc-9", "notes": "replaced"},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["document"]["lifecycleStatus"] == "Obsolete"
    assert r.json["document"]["supersededByDocumentId"] == "doc-9"
    twin = client.get(f"/api/documents/{doc_id}", headers=h).json["document"]
    assert twin["lifecycleStatus"] == "Obsolete"
    assert twin["supersededByDocumentId"] == "doc-9"

    r = client.put(f"/api/documents/{published['id']}", json={"summary": "x"}, headers=h)
    assert r.status_code == 400

    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "Document").all()]
        downloads = s.query(AuditEvent).filter(AuditEvent.action == "doc.download").count()
    for action in ("doc.create", "doc.update", "doc.request_approval", "doc.approve", "doc.publish", "doc.obsolete"):
        assert action in actions
    assert downloads == 1


def test_auto_convert_publishes_pdf_source(client):
    h = _login(client, "author@example.com")
    doc_id = _create(client, h, filename="form.pdf", documentType="Form").json["document"]["id"]
    client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h)
    h = _login(client, "approver@example.com")
    client.post(f"/api/documents/{doc_id}/approve", json=_approve_body(), headers=h)

    h = _login(client, "admin@example.com")
    r = client.post(f"/api/documents/{doc_id}/publish?autoConvert=true", headers=h)
    assert r.status_code == 200
    assert r.json["document"]["documentCode"] == "FORM-QMS-001"
    assert client.get(r.json["document"]["publishedFileUrl"], headers=h).data == b"draft bytes"


def test_auto_convert_of_non_pdf_needs_an_upload(client):
    h = _login(client, "author@example.com")
    doc_id = _create(client, h).json["document"]["id"]
    client.post(f"/api/documents/{doc_id}/request-approval", json={}, headers=h)
    h = _login(client, "approver@example.com")
    client.post(f"/api/documents/{doc_id}/approve", json=_approve_body(), headers=h)

    h = _login(client, "qhse@example.com")
    r = client.post(f"/api/documents/{doc_id}/publish?autoConvert=true", headers=h)
    assert r.status_code == 400


def test_delete_is_admin_only(client):
    h = _login(client, "author@example.com")
    doc_id = _create(client, h).json["document"]["id"]
    assert client.delete(f"/api/documents/{doc_id}", headers=h).status_code == 403

    h = _login(client, "admin@example.com")
    assert client.delete(f"/api/documents/{doc_id}", headers=h).status_code == 204
    assert client.get(f"/api/documents/{doc_id}", headers=h).status_code == 404

    # The code stays reserved, so it is never handed out again
    h = _login(client, "author@example.com")
    assert _create(client, h).json["document"]["documentCode"] == "SOP-QMS-002"


def test_sequence_diagnostic_and_roles(client):
    h = _login(client, "author@example.com")
    _create(client, h)
    assert client.get("/api/documents/sequence?prefix=SOP-QMS-", headers=h).status_code == 403

    r = client.get("/api/auth/roles", headers=h)
    assert r.json == {
        "roles": ["Author"],
        "preferredRole": "Author",
        "capabilities": {"isAdmin": False, "isQHSE": False, "isApprover": False, "isAuthor": True},
    }

    h = _login(client, "admin@example.com")
    r = client.get("/api/documents/sequence?prefix=SOP-QMS-", headers=h)
    assert r.status_code == 200
    assert r.json["nextSequence"] == "002"
    assert r.json["matches"][0]["code"] == "SOP-QMS-001"
    assert client.get("/api/documents/sequence", headers=h).status_code == 400


def test_pagination(client):
    h = _login(client, "author@example.com")
    for i in range(3):
        _create(client, h, title=f"Doc {i}")
    r = client.get("/api/documents?page=2&pageSize=2", headers=h)
    assert r.json["total"] == 3
    assert r.json["page"] == 2
    assert [d["documentCode"] for d in r.json["items"]] == ["SOP-QMS-003"]
    assert client.get("/api/documents?page=x", headers=h).status_code == 400
