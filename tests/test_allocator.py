import warnings

import pytest

from app.dms.db import make_sessionmaker
from app.dms.errors import CodeAllocationError, NetworkError, PartialAvailabilityWarning, ValidationError
from app.dms.models import Base
from app.dms.modules.document_registry.allocator import CodeAllocator, build_prefix, sequence_of
from app.dms.modules.document_registry.models import DocumentCodeReservation, StoreItem
from app.dms.modules.document_registry.stores import DocumentStore, RegistryCollections

PREFIX = "DPM-HQ-QMS-SOP-"


class FakeStore(DocumentStore):
    def __init__(self, items=None, unreachable=()):
        self.items = items or {}
        self.unreachable = set(unreachable)

    def list_items(self, collection):
        if collection in self.unreachable:
            raise NetworkError(f"{collection} is down")
        return list(self.items.get(collection, []))


def _item(item_id, name, code=None):
    fields = {"dm_document_code": code} if code else {}
    return StoreItem(id=item_id, name=name, fields=fields)


def _allocator(authoring=(), published=(), unreachable=()):
    store = FakeStore({"DM-Authoring": list(authoring), "DM-Published": list(published)}, unreachable)
    return CodeAllocator(RegistryCollections.for_store(store, authoring_name="DM-Authoring", published_name="DM-Published"))


def test_next_sequence_takes_max_across_both_collections():
    allocator = _allocator(
        authoring=[_item("a1", "draft.docx", code=f"{PREFIX}001")],
        published=[_item("p1", f"{PREFIX}003.pdf")],
    )
    assert allocator.next_sequence(PREFIX) == "004"


def test_next_sequence_with_no_matches_is_001():
    allocator = _allocator(authoring=[_item("a1", "SOP-OTHER-009.docx")])
    assert allocator.next_sequence(PREFIX) == "001"


def test_unreachable_collection_is_not_fatal():
    allocator = _allocator(
        authoring=[_item("a1", f"{PREFIX}007.docx")],
        published=[_item("p1", f"{PREFIX}042.pdf")],
        unreachable={"DM-Published"},
    )
    with pytest.warns(PartialAvailabilityWarning):
        assert allocator.next_sequence(PREFIX) == "008"


def test_both_collections_unreachable_still_returns_a_sequence():
    allocator = _allocator(unreachable={"DM-Published", "DM-Authoring"})
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", PartialAvailabilityWarning)
        assert allocator.next_sequence(PREFIX) == "001"


def test_metadata_code_wins_only_when_it_carries_the_prefix():
    # metadata code belongs to another prefix, so the file name is used
    assert sequence_of(PREFIX, "SOP-XYZ-010", f"{PREFIX}005.docx") == (f"{PREFIX}005", 5)
    assert sequence_of(PREFIX, f"{PREFIX}012", "renamed.docx") == (f"{PREFIX}012", 12)
    assert sequence_of(PREFIX, "", "unrelated.docx") is None
    assert sequence_of(PREFIX, "", f"{PREFIX}draft.docx") is None


def test_scan_reports_where_each_match_came_from():
    allocator = _allocator(
        authoring=[_item("a1", f"{PREFIX}001.docx")],
        published=[_item("p1", f"{PREFIX}002.pdf")],
    )
    matches = allocator.scan(PREFIX)
    assert {(m.collection, m.sequence) for m in matches} == {("authoring", 1), ("published", 2)}


def test_empty_prefix_is_rejected():
    with pytest.raises(ValidationError):
        _allocator().next_sequence("")


def test_build_prefix():
    assert build_prefix("SOP", "Quality Management") == "SOP-QUAL-"
    assert build_prefix("Procedure", "") == "PROC-GEN-"
    assert build_prefix("Unknown", "qms") == "DOC-QMS-"
    assert build_prefix("SOP", "QMS", "HQ", org_code="dpm") == "DPM-HQ-SOP-QMS-"


@pytest.fixture()
def session(tmp_path):
    sm = make_sessionmaker(f"sqlite:///{tmp_path/'alloc.db'}")
    Base.metadata.create_all(bind=sm.kw["bind"])
    s = sm()
    try:
        yield s
    finally:
        s.close()


def test_allocate_code_reserves_and_does_not_repeat(session):
    allocator = _allocator(published=[_item("p1", f"{PREFIX}003.pdf")])
    first = allocator.allocate_code(session, PREFIX)
    second = allocator.allocate_code(session, PREFIX)
    session.commit()
    assert first == f"{PREFIX}004"
    assert second == f"{PREFIX}005"
    assert session.query(DocumentCodeReservation).count() == 2


def test_allocate_code_skips_a_code_taken_concurrently(session):
    # Another writer already holds 004 (recorded under a different prefix row).
    session.add(DocumentCodeReservation(document_code=f"{PREFIX}004", prefix="elsewhere", sequence=0))
    session.commit()

    allocator = _allocator(published=[_item("p1", f"{PREFIX}003.pdf")])
    assert allocator.allocate_code(session, PREFIX) == f"{PREFIX}005"


def test_allocate_code_fails_when_sequence_space_is_exhausted(session):
    allocator = _allocator(published=[_item("p1", f"{PREFIX}999.pdf")])
    with pytest.raises(CodeAllocationError):
        allocator.allocate_code(session, PREFIX)
