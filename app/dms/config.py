import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    document_store: str
    authoring_library: str
    published_library: str
    graph_base_url: str
    graph_site_url: str
    graph_tenant_id: str
    graph_client_id: str
    graph_client_secret: str
    graph_scopes: str
    graph_access_token: str

    document_code_org: str
    code_allocation_attempts: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///dms.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        document_store=_getenv("DOCUMENT_STORE", "local").lower(),
        authoring_library=_getenv("AUTHORING_LIBRARY", "DM-Authoring"),
        published_library=_getenv("PUBLISHED_LIBRARY", "DM-Published"),
        graph_base_url=_getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0"),
        graph_site_url=_getenv("GRAPH_SITE_URL", ""),
        graph_tenant_id=_getenv("GRAPH_TENANT_ID", ""),
        graph_client_id=_getenv("GRAPH_CLIENT_ID", ""),
        graph_client_secret=_getenv("GRAPH_CLIENT_SECRET", ""),
        graph_scopes=_getenv("GRAPH_SCOPES", "https://graph.microsoft.com/.default"),
        graph_access_token=_getenv("GRAPH_ACCESS_TOKEN", ""),
        document_code_org=_getenv("DOCUMENT_CODE_ORG", "").upper(),
        code_allocation_attempts=_getenv_int("CODE_ALLOCATION_ATTEMPTS", 5),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # document store (local SQL + blob storage, or SharePoint via Graph)
        "DOCUMENT_STORE": s.document_store,
        "AUTHORING_LIBRARY": s.authoring_library,
        "PUBLISHED_LIBRARY": s.published_library,
        "GRAPH_BASE_URL": s.graph_base_url,
        "GRAPH_SITE_URL": s.graph_site_url,
        "GRAPH_TENANT_ID": s.graph_tenant_id,
        "GRAPH_CLIENT_ID": s.graph_client_id,
        "GRAPH_CLIENT_SECRET": s.graph_client_secret,
        "GRAPH_SCOPES": s.graph_scopes,
        "GRAPH_ACCESS_TOKEN": s.graph_access_token,
        # document codes
        "DOCUMENT_CODE_ORG": s.document_code_org,
        "CODE_ALLOCATION_ATTEMPTS": s.code_allocation_attempts,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
