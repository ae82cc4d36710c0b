import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.dms.config import load_config
from app.dms.db import init_db, teardown_db_session
from app.dms.errors import DmsError, PermissionError
from app.dms.routes import bp as routes_bp
from app.dms.auth import api_bp as api_auth_bp, bp as auth_bp, load_current_user
from app.dms.modules.document_registry.admin import bp as documents_bp
from app.dms.modules.document_registry.service import init_graph_client

GRAPH_REQUIRED_KEYS = ("GRAPH_SITE_URL",)
GRAPH_CREDENTIAL_KEYS = ("GRAPH_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_CLIENT_SECRET")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    log_level = app.config.get("LOG_LEVEL") or "INFO"
    logging.getLogger().setLevel(log_level)
    app.logger.setLevel(log_level)

    # CSRF protection (minimal)
    from app.dms.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout carry their own checks
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    if app.config.get("DOCUMENT_STORE") == "graph":
        missing_graph = [k for k in GRAPH_REQUIRED_KEYS if not app.config.get(k)]
        if not app.config.get("GRAPH_ACCESS_TOKEN"):
            missing_graph.extend(k for k in GRAPH_CREDENTIAL_KEYS if not app.config.get(k))
        if missing_graph:
            raise RuntimeError(f"DOCUMENT_STORE=graph needs: {', '.join(missing_graph)}")
    elif app.config.get("DOCUMENT_STORE") != "local":
        raise RuntimeError(f"Unknown DOCUMENT_STORE {app.config.get('DOCUMENT_STORE')!r} (expected local or graph).")

    init_db(app)
    init_graph_client(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("DOCUMENT_STORE") == "local" and app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(api_auth_bp, url_prefix="/api/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(DmsError)
    def _err_dms(e: DmsError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(e, PermissionError):
            app.logger.warning(
                "Forbidden: missing_roles=%s request_id=%s",
                getattr(g, "missing_roles", None),
                rid,
            )
        elif e.status_code >= 500:
            app.logger.error("%s (request_id=%s): %s", e.code, rid, e.message)
        else:
            app.logger.info("%s (request_id=%s): %s", e.code, rid, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed."}), 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = int(app.config["MAX_CONTENT_LENGTH"]) // (1024 * 1024)
        return jsonify({"error": "file_too_large", "message": f"File too large. Maximum size is {limit_mb}MB."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in the logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
