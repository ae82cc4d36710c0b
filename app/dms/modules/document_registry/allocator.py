"""
Document code allocation.

Codes look like ``<prefix><NNN>``. The next sequence for a prefix is derived
by scanning both registry collections, since either may hold the highest
code. The scan alone is read-then-decide; ``allocate_code`` closes the race
by reserving each code in a table with a unique constraint.
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.dms.errors import CodeAllocationError, PartialAvailabilityWarning, ValidationError
from app.dms.models import User
from app.dms.modules.document_registry.models import DocumentCodeReservation
from app.dms.modules.document_registry.projector import FIELD_NAMES, strip_extension
from app.dms.modules.document_registry.stores import RegistryCollection, RegistryCollections

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 3
_SEQUENCE_RE = re.compile(r"^(\d{3})")

TYPE_PREFIXES = {
    "Standard": "STD",
    "Procedure": "PROC",
    "SOP": "SOP",
    "Policy": "POL",
    "WorkInstruction": "WI",
    "Manual": "MAN",
    "Form": "FORM",
    "Other": "DOC",
}
DEFAULT_PROCESS_PREFIX = "GEN"
PROCESS_PREFIX_MAX = 4


@dataclass(frozen=True)
class SequenceMatch:
    collection: str
    name: str
    code: str
    sequence: int


def format_sequence(n: int) -> str:
    return str(n).zfill(SEQUENCE_WIDTH)


def _segment(value: str, max_len: int | None = None) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "", value or "").upper()
    return cleaned[:max_len] if max_len else cleaned


def type_prefix(document_type: str) -> str:
    return TYPE_PREFIXES.get(document_type or "", TYPE_PREFIXES["Other"])


def build_prefix(
    document_type: str,
    process_or_function: str = "",
    department_or_site: str = "",
    *,
    org_code: str = "",
) -> str:
    """
    ``[ORG-][SITE-]<TYPE>-<PROCESS>-``, e.g. ``SOP-QMS-`` or ``DPM-HQ-SOP-QMS-``.
    """
    parts = [
        _segment(org_code),
        _segment(department_or_site),
        type_prefix(document_type),
        _segment(process_or_function, PROCESS_PREFIX_MAX) or DEFAULT_PROCESS_PREFIX,
    ]
    return "-".join(p for p in parts if p) + "-"


def sequence_of(prefix: str, metadata_code: str, item_name: str) -> tuple[str, int] | None:
    """
    Resolve which code an item carries and its sequence under ``prefix``.
    The metadata code wins when it is set and carries the prefix; otherwise
    the display name without extension is used.
    """
    code = metadata_code if metadata_code and metadata_code.startswith(prefix) else strip_extension(item_name)
    if not code.startswith(prefix):
        return None
    m = _SEQUENCE_RE.match(code[len(prefix) :])
    if not m:
        return None
    return code, int(m.group(1))


class CodeAllocator:
    def __init__(self, collections: RegistryCollections) -> None:
        self.collections = collections

    def _scan_collection(self, collection: RegistryCollection, prefix: str) -> list[SequenceMatch]:
        try:
            items = collection.list_with_metadata()
        except Exception as e:
            # One unreachable collection must not block allocation.
            logger.warning("Could not read %s collection %r for sequence scan: %s", collection.kind, collection.name, e)
            warnings.warn(
                f"{collection.kind} collection unavailable during code allocation: {e}",
                PartialAvailabilityWarning,
                stacklevel=3,
            )
            return []

        matches: list[SequenceMatch] = []
        code_field = FIELD_NAMES["document_code"]
        for item in items:
            metadata_code = str((item.fields or {}).get(code_field) or "").strip()
            hit = sequence_of(prefix, metadata_code, item.name)
            if hit:
                code, seq = hit
                matches.append(SequenceMatch(collection=collection.kind, name=item.name, code=code, sequence=seq))
        logger.debug("Sequence scan %s: %d items, %d matches for %r", collection.kind, len(items), len(matches), prefix)
        return matches

    def scan(self, prefix: str) -> list[SequenceMatch]:
        if not prefix:
            raise ValidationError("A code prefix is required.")
        out: list[SequenceMatch] = []
        for collection in self.collections.both():
            out.extend(self._scan_collection(collection, prefix))
        return out

    def highest_sequence(self, prefix: str) -> int:
        return max((m.sequence for m in self.scan(prefix)), default=0)

    def next_sequence(self, prefix: str) -> str:
        nxt = format_sequence(self.highest_sequence(prefix) + 1)
        logger.info("Next sequence for prefix %r: %s", prefix, nxt)
        return nxt

    def allocate_code(
        self,
        s: Session,
        prefix: str,
        *,
        actor: User | None = None,
        max_attempts: int = 5,
    ) -> str:
        """
        Reserve and return the next free code for ``prefix``.

        The candidate is one past the highest sequence seen in either collection
        or already reserved. A concurrent reservation of the same code trips the
        unique constraint; the savepoint is rolled back and the next candidate tried.
        """
        floor = self.highest_sequence(prefix)
        for attempt in range(1, max_attempts + 1):
            reserved = (
                s.query(func.max(DocumentCodeReservation.sequence))
                .filter(DocumentCodeReservation.prefix == prefix)
                .scalar()
            ) or 0
            seq = max(floor, reserved) + 1
            if seq >= 10**SEQUENCE_WIDTH:
                raise CodeAllocationError(f"Sequence space exhausted for prefix {prefix!r}.", prefix=prefix)
            code = f"{prefix}{format_sequence(seq)}"
            try:
                with s.begin_nested():
                    s.add(
                        DocumentCodeReservation(
                            document_code=code,
                            prefix=prefix,
                            sequence=seq,
                            reserved_by_user_id=actor.id if actor else None,
                        )
                    )
            except IntegrityError:
                logger.warning("Code %s already reserved (attempt %d/%d); retrying", code, attempt, max_attempts)
                floor = seq
                continue
            return code
        raise CodeAllocationError(f"Could not reserve a document code for prefix {prefix!r}.", prefix=prefix)
