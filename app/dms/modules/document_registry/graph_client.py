from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.dms.errors import NetworkError, NotFoundError
from app.dms.identity import IdentityProvider

logger = logging.getLogger(__name__)

SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
# Graph requires upload-session chunks in multiples of 320 KiB.
UPLOAD_CHUNK_SIZE = 10 * 320 * 1024


class GraphError(NetworkError):
    pass


class GraphRateLimited(GraphError):
    pass


@dataclass
class GraphClient:
    """
    Thin Microsoft Graph client for SharePoint document libraries.

    Only HTTP 429 is waited out (honouring Retry-After); every other failure
    surfaces immediately as NotFoundError or GraphError.
    """

    identity: IdentityProvider
    site_url: str
    base_url: str = "https://graph.microsoft.com/v1.0"
    timeout_seconds: int = 60
    max_rate_limit_waits: int = 3
    opener: Callable[..., Any] = urllib.request.urlopen
    sleep: Callable[[float], None] = time.sleep

    _site_id: str | None = field(default=None, init=False, repr=False)
    _drive_ids: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    # -- transport -----------------------------------------------------------------

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = path if path.startswith("http") else self.base_url.rstrip("/") + path
        if params:
            sep = "&" if "?" in url else "?"
            url += sep + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        return url

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
        raw: bool = False,
    ) -> Any:
        url = self._url(path, params)
        body = data
        hdrs = dict(headers or {})
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            hdrs.setdefault("Content-Type", "application/json")
        hdrs.setdefault("Accept", "application/json")

        for attempt in range(self.max_rate_limit_waits + 1):
            req = urllib.request.Request(url, data=body, method=method)
            if authenticated:
                req.add_header("Authorization", f"Bearer {self.identity.acquire_token()}")
            for k, v in hdrs.items():
                req.add_header(k, v)
            try:
                with self.opener(req, timeout=self.timeout_seconds) as resp:
                    payload = resp.read()
                    status = getattr(resp, "status", 200)
            except urllib.error.HTTPError as e:
                if e.code == 429 and attempt < self.max_rate_limit_waits:
                    wait = _retry_after(e, attempt)
                    logger.warning("Graph rate limited on %s %s; waiting %ss", method, path, wait)
                    self.sleep(wait)
                    continue
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                if e.code == 404:
                    raise NotFoundError(f"Not found in document store: {path}") from e
                if e.code == 429:
                    raise GraphRateLimited("Rate limited by Microsoft Graph (429).", status=429) from e
                raise GraphError(f"HTTP {e.code} from Microsoft Graph: {detail[:300]}", status=e.code) from e
            except (urllib.error.URLError, TimeoutError) as e:
                raise GraphError(f"Microsoft Graph unreachable: {e}") from e

            if raw:
                return payload
            if status == 204 or not payload:
                return None
            try:
                return json.loads(payload.decode("utf-8"))
            except ValueError as e:
                raise GraphError(f"Invalid JSON from Microsoft Graph ({path})") from e
        raise GraphRateLimited("Rate limited by Microsoft Graph (429).", status=429)

    # -- site / drive resolution --------------------------------------------------------

    def site_id(self) -> str:
        if self._site_id:
            return self._site_id
        parsed = urllib.parse.urlparse(self.site_url)
        if not parsed.hostname:
            raise GraphError("GRAPH_SITE_URL is not a valid SharePoint site URL.")
        j = self.request("GET", f"/sites/{parsed.hostname}:{parsed.path or '/'}")
        self._site_id = j["id"]
        return self._site_id

    def drive_id(self, library_name: str) -> str:
        cached = self._drive_ids.get(library_name)
        if cached:
            return cached
        j = self.request("GET", f"/sites/{self.site_id()}/drives")
        wanted = library_name.lower()
        for drive in j.get("value") or []:
            if (drive.get("name") or "").lower() == wanted:
                self._drive_ids[library_name] = drive["id"]
                return drive["id"]
        raise NotFoundError(f"Library '{library_name}' not found")

    def library_list_id(self, library_name: str) -> str:
        j = self.request("GET", f"/drives/{self.drive_id(library_name)}/list")
        return j["id"]

    # -- drive items ---------------------------------------------------------------------

    def list_children(self, library_name: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = f"/drives/{self.drive_id(library_name)}/root/children"
        params: dict[str, Any] | None = {"$expand": "listItem($expand=fields)"}
        while next_url:
            j = self.request("GET", next_url, params=params) or {}
            value = j.get("value") or []
            items.extend(v for v in value if isinstance(v, dict))
            next_url = j.get("@odata.nextLink")
            params = None  # nextLink already carries the query
        return items

    def get_item(self, library_name: str, item_id: str) -> dict[str, Any]:
        return self.request(
            "GET",
            f"/drives/{self.drive_id(library_name)}/items/{urllib.parse.quote(item_id)}",
            params={"$expand": "listItem($expand=fields)"},
        )

    def upload(self, library_name: str, filename: str, data: bytes, *, content_type: str) -> dict[str, Any]:
        drive = self.drive_id(library_name)
        quoted = urllib.parse.quote(filename)
        if len(data) < SIMPLE_UPLOAD_LIMIT:
            return self.request(
                "PUT",
                f"/drives/{drive}/root:/{quoted}:/content",
                data=data,
                headers={"Content-Type": content_type or "application/octet-stream"},
            )

        session = self.request(
            "POST",
            f"/drives/{drive}/root:/{quoted}:/createUploadSession",
            json_body={"item": {"@microsoft.graph.conflictBehavior": "rename"}},
        )
        upload_url = session["uploadUrl"]
        total = len(data)
        uploaded: dict[str, Any] | None = None
        for start in range(0, total, UPLOAD_CHUNK_SIZE):
            chunk = data[start : start + UPLOAD_CHUNK_SIZE]
            end = start + len(chunk) - 1
            # uploadUrl is pre-authorised; sending a bearer token here is rejected
            j = self.request(
                "PUT",
                upload_url,
                data=chunk,
                headers={"Content-Length": str(len(chunk)), "Content-Range": f"bytes {start}-{end}/{total}"},
                authenticated=False,
            )
            if j and j.get("id"):
                uploaded = j
        if not uploaded:
            raise GraphError("Upload completed but file info not returned")
        return uploaded

    def update_fields(self, library_name: str, item_id: str, fields: dict[str, Any]) -> None:
        self.request(
            "PATCH",
            f"/drives/{self.drive_id(library_name)}/items/{urllib.parse.quote(item_id)}/listItem/fields",
            json_body=fields,
        )

    def delete_item(self, library_name: str, item_id: str) -> None:
        self.request("DELETE", f"/drives/{self.drive_id(library_name)}/items/{urllib.parse.quote(item_id)}")

    def move_item(
        self, source_library: str, item_id: str, target_library: str, new_name: str | None = None
    ) -> dict[str, Any]:
        target_drive = self.drive_id(target_library)
        root = self.request("GET", f"/drives/{target_drive}/root")
        payload: dict[str, Any] = {"parentReference": {"driveId": target_drive, "id": root["id"]}}
        if new_name:
            payload["name"] = new_name
        logger.info("Moving item %s from %s to %s", item_id, source_library, target_library)
        return self.request(
            "PATCH",
            f"/drives/{self.drive_id(source_library)}/items/{urllib.parse.quote(item_id)}",
            json_body=payload,
        )

    def download(self, library_name: str, item_id: str, *, as_pdf: bool = False) -> bytes:
        return self.request(
            "GET",
            f"/drives/{self.drive_id(library_name)}/items/{urllib.parse.quote(item_id)}/content",
            params={"format": "pdf"} if as_pdf else None,
            headers={"Accept": "*/*"},
            raw=True,
        )

    # -- columns (schema) -----------------------------------------------------------------

    def list_columns(self, library_name: str) -> list[dict[str, Any]]:
        j = self.request("GET", f"/sites/{self.site_id()}/lists/{self.library_list_id(library_name)}/columns")
        return j.get("value") or []

    def create_column(self, library_name: str, column: dict[str, Any]) -> dict[str, Any]:
        return self.request(
            "POST",
            f"/sites/{self.site_id()}/lists/{self.library_list_id(library_name)}/columns",
            json_body=column,
        )


def _retry_after(e: urllib.error.HTTPError, attempt: int) -> float:
    raw = (e.headers.get("Retry-After") if e.headers else None) or ""
    try:
        return min(float(raw), 30.0)
    except ValueError:
        return float(min(2 * (attempt + 1), 10))
