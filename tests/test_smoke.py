import io
import json

import pytest
from werkzeug.security import generate_password_hash

from app.dms import auth, create_app
from app.dms.db import session_scope
from app.dms.models import AuditEvent, Base, Role, User


def _set_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("DOCUMENT_STORE", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "GRAPH_SITE_URL"):
        monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def client(tmp_path, monkeypatch):
    _set_env(monkeypatch, tmp_path)
    auth._login_attempts.clear()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        r = Role(key="Admin", name="Administrator")
        u = User(email="admin@example.com", display_name="Admin", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").status_code == 200


def test_login_me_and_logout(client):
    r = client.get("/auth/me")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    r = client.post("/auth/login", data={"email": "Admin@Example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"
    assert r.json["roles"] == ["Admin"]
    assert r.json["preferredRole"] == "Admin"
    assert r.json["csrfToken"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["capabilities"]["isAdmin"] is True

    r = client.post("/auth/logout")
    assert r.status_code == 204
    assert client.get("/auth/me").status_code == 401

    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert actions == ["auth.login_failed", "auth.login", "auth.logout"]


def test_login_rate_limit(client):
    for _ in range(5):
        assert client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"}).status_code == 401
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 429


def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    _set_env(monkeypatch, tmp_path)
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError):
        create_app()


def test_graph_store_requires_site_and_credentials(tmp_path, monkeypatch):
    _set_env(monkeypatch, tmp_path)
    monkeypatch.setenv("DOCUMENT_STORE", "graph")
    for k in ("GRAPH_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_CLIENT_SECRET", "GRAPH_ACCESS_TOKEN"):
        monkeypatch.delenv(k, raising=False)
    with pytest.raises(RuntimeError) as exc:
        create_app()
    assert "GRAPH_SITE_URL" in str(exc.value)


def test_graph_client_and_token_are_shared_across_requests(tmp_path, monkeypatch):
    from app.dms import identity
    from app.dms.modules.document_registry import service
    from app.dms.rbac import capabilities_for

    _set_env(monkeypatch, tmp_path)
    monkeypatch.setenv("DOCUMENT_STORE", "graph")
    monkeypatch.setenv("GRAPH_SITE_URL", "https://contoso.sharepoint.com/sites/dm")
    monkeypatch.setenv("GRAPH_TENANT_ID", "t1")
    monkeypatch.setenv("GRAPH_CLIENT_ID", "c1")
    monkeypatch.setenv("GRAPH_CLIENT_SECRET", "s1")
    monkeypatch.delenv("GRAPH_ACCESS_TOKEN", raising=False)

    token_calls = []

    def fake_urlopen(req, timeout=None):
        token_calls.append(req.full_url)
        return io.BytesIO(json.dumps({"access_token": "abc", "expires_in": 3600}).encode("utf-8"))

    monkeypatch.setattr(identity.urllib.request, "urlopen", fake_urlopen)
    app = create_app()
    user = User(email="reader@example.com", display_name="Reader")

    clients = []
    for _ in range(2):
        with app.test_request_context("/api/documents"):
            ctx = service.context_for(None, user, None, capabilities_for([]))
            client = ctx.collections.authoring.store.client
            assert client.identity.acquire_token() == "abc"
            clients.append(client)

    assert clients[0] is clients[1]
    assert clients[0] is app.extensions["graph_client"]
    assert token_calls == ["https://login.microsoftonline.com/t1/oauth2/v2.0/token"]
