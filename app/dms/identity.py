"""
Identity provider adapters.

The registry never mints credentials itself: it asks an ``IdentityProvider``
for a bearer token before each store call. Tokens are cached in memory only.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field

from app.dms.errors import NetworkError
from app.dms.models import User
from app.dms.modules.document_registry.models import UserRef

logger = logging.getLogger(__name__)


class IdentityProvider:
    def acquire_token(self) -> str:
        raise NotImplementedError

    def current_account(self) -> UserRef | None:
        raise NotImplementedError


def account_for_user(user: User | None) -> UserRef | None:
    if user is None:
        return None
    return UserRef(id=str(user.id), display_name=user.display_name or user.email, email=user.email)


@dataclass(frozen=True)
class StaticTokenIdentity(IdentityProvider):
    """Pre-issued token (local development, scripts run with a device-code token)."""

    token: str
    account: UserRef | None = None

    def acquire_token(self) -> str:
        if not self.token:
            raise NetworkError("No access token configured (GRAPH_ACCESS_TOKEN).")
        return self.token

    def current_account(self) -> UserRef | None:
        return self.account


@dataclass
class ClientCredentialsIdentity(IdentityProvider):
    """
    Entra ID client-credentials flow. Acts as the application itself, so there
    is no signed-in account behind it.
    """

    tenant_id: str
    client_id: str
    client_secret: str
    scope: str = "https://graph.microsoft.com/.default"
    authority: str = "https://login.microsoftonline.com"
    timeout_seconds: int = 30
    # seconds shaved off expires_in so a token is never used right at the edge
    expiry_margin: int = 120

    _token: str | None = field(default=None, init=False, repr=False)
    _expires_at: float = field(default=0.0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _token_url(self) -> str:
        return f"{self.authority.rstrip('/')}/{urllib.parse.quote(self.tenant_id)}/oauth2/v2.0/token"

    def acquire_token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token

            body = urllib.parse.urlencode(
                {
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                }
            ).encode("utf-8")
            req = urllib.request.Request(self._token_url(), data=body, method="POST")
            req.add_header("Content-Type", "application/x-www-form-urlencoded")
            req.add_header("Accept", "application/json")
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    payload = json.loads(resp.read().decode("utf-8"))
            except urllib.error.HTTPError as e:
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                raise NetworkError(f"Token request rejected (HTTP {e.code}): {detail[:300]}") from e
            except (urllib.error.URLError, TimeoutError, ValueError) as e:
                raise NetworkError(f"Token request failed: {e}") from e

            token = payload.get("access_token")
            if not token:
                raise NetworkError("Token endpoint returned no access_token.")
            expires_in = int(payload.get("expires_in") or 3600)
            self._token = token
            self._expires_at = time.monotonic() + max(expires_in - self.expiry_margin, 0)
            logger.info("Acquired Graph token for client_id=%s (expires_in=%ss)", self.client_id, expires_in)
            return token

    def current_account(self) -> UserRef | None:
        return None


def identity_from_config(config: dict) -> IdentityProvider:
    tenant = (config.get("GRAPH_TENANT_ID") or "").strip()
    client_id = (config.get("GRAPH_CLIENT_ID") or "").strip()
    secret = (config.get("GRAPH_CLIENT_SECRET") or "").strip()
    if tenant and client_id and secret:
        return ClientCredentialsIdentity(
            tenant_id=tenant,
            client_id=client_id,
            client_secret=secret,
            scope=(config.get("GRAPH_SCOPES") or "https://graph.microsoft.com/.default").split(",")[0].strip(),
        )
    return StaticTokenIdentity(token=(config.get("GRAPH_ACCESS_TOKEN") or "").strip())
