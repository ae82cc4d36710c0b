from __future__ import annotations

import logging
from typing import Any

from app.dms.modules.document_registry.graph_client import GraphClient
from app.dms.modules.document_registry.models import DOCUMENT_TYPES, LIFECYCLE_STATUSES
from app.dms.modules.document_registry.projector import FIELD_NAMES

logger = logging.getLogger(__name__)

_DATE_FIELDS = ("effective_date", "next_review_date")
_LONG_TEXT = {"keywords": 1024, "authoring_file_url": 1024, "published_file_url": 1024, "archive_file_url": 1024}


def column_definitions() -> list[dict[str, Any]]:
    """Graph columnDefinition payloads for every dm_* metadata column."""
    cols: list[dict[str, Any]] = []
    for canonical, name in FIELD_NAMES.items():
        if name == "Title":
            continue
        col: dict[str, Any] = {"name": name, "displayName": name}
        if canonical == "document_type":
            col["choice"] = {"choices": list(DOCUMENT_TYPES), "displayAs": "dropDownMenu"}
        elif canonical == "lifecycle_status":
            col["choice"] = {"choices": list(LIFECYCLE_STATUSES), "displayAs": "dropDownMenu"}
        elif canonical in _DATE_FIELDS:
            col["dateTime"] = {"format": "dateOnly"}
        elif canonical == "summary":
            col["text"] = {"allowMultipleLines": True}
        elif canonical.endswith("_email"):
            col["text"] = {"maxLength": 320}
        else:
            col["text"] = {"maxLength": _LONG_TEXT.get(canonical, 255)}
        cols.append(col)
    return cols


def ensure_registry_schema(client: GraphClient, library_name: str) -> list[str]:
    """
    Create any missing metadata columns on a library. Existing columns are
    matched case-insensitively and left untouched. Returns the names created.
    """
    existing = {(c.get("name") or "").lower() for c in client.list_columns(library_name)}
    created: list[str] = []
    for column in column_definitions():
        if column["name"].lower() in existing:
            continue
        client.create_column(library_name, column)
        logger.info("Created column %s on %s", column["name"], library_name)
        created.append(column["name"])
    return created
