from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.dms.audit import record_event
from app.dms.db import db_session
from app.dms.identity import account_for_user
from app.dms.models import User
from app.dms.rbac import NO_CAPABILITIES, capabilities_for, current_capabilities, preferred_role, require_login
from app.dms.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
api_bp = Blueprint("api_auth", __name__)

_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie and derives
    g.capabilities once for the request.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    g.current_user = None
    g.capabilities = NO_CAPABILITIES
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user
    g.capabilities = capabilities_for(user.role_keys)


def _session_payload(user: User) -> dict:
    roles = sorted(user.role_keys)
    return {
        "user": account_for_user(user).to_dict(),
        "roles": roles,
        "preferredRole": preferred_role(roles),
        "capabilities": capabilities_for(roles).to_dict(),
        "csrfToken": ensure_csrf_token(),
    }


@bp.post("/login")
def login_post():
    body = request.get_json(silent=True) if request.is_json else None
    src = body if isinstance(body, dict) else request.form
    email = (src.get("email") or "").strip().lower()
    password = src.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "invalid_credentials", "message": "Invalid credentials."}), 401

        session.clear()
        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify(_session_payload(user))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return "", 204


@bp.get("/me")
@require_login
def me():
    return jsonify(_session_payload(g.current_user))


@api_bp.get("/roles")
@require_login
def roles():
    caps = current_capabilities()
    ordered = sorted(caps.roles)
    return jsonify({"roles": ordered, "preferredRole": preferred_role(ordered), "capabilities": caps.to_dict()})
