import pytest

from app.dms.db import make_sessionmaker
from app.dms.errors import NotFoundError, ValidationError
from app.dms.models import Base
from app.dms.modules.document_registry.stores import LocalDocumentStore, RegistryCollections
from app.dms.storage import LocalStorage, StorageError


@pytest.fixture()
def store(tmp_path):
    sm = make_sessionmaker(f"sqlite:///{tmp_path/'store.db'}")
    Base.metadata.create_all(bind=sm.kw["bind"])
    s = sm()
    try:
        yield LocalDocumentStore(s, LocalStorage(root=tmp_path / "blobs"))
    finally:
        s.close()


def test_create_list_and_read(store):
    item = store.create_item(
        "DM-Authoring",
        filename="SOP-QMS-001.docx",
        data=b"hello",
        content_type="application/octet-stream",
        fields={"dm_document_code": "SOP-QMS-001", "dm_summary": None},
    )
    assert item.web_url == f"/api/documents/files/{item.id}"
    assert item.fields == {"dm_document_code": "SOP-QMS-001"}
    assert [i.id for i in store.list_items("DM-Authoring")] == [item.id]
    assert store.list_items("DM-Published") == []
    assert store.read_content("DM-Authoring", item.id).data == b"hello"
    assert store.storage.exists(f"registry/DM-Authoring/{item.id}/SOP-QMS-001.docx")


def test_update_metadata_merges_and_none_removes(store):
    item = store.create_item(
        "DM-Authoring", filename="a.docx", data=b"x", content_type="", fields={"dm_summary": "s", "dm_revision": "0"}
    )
    store.update_metadata("DM-Authoring", item.id, {"dm_summary": None, "dm_revision": "A"})
    assert store.get_item("DM-Authoring", item.id).fields == {"dm_revision": "A"}


def test_items_are_scoped_to_their_collection(store):
    item = store.create_item("DM-Authoring", filename="a.docx", data=b"x", content_type="", fields={})
    with pytest.raises(NotFoundError):
        store.get_item("DM-Published", item.id)

    moved = store.move_item("DM-Authoring", item.id, "DM-Published", "b.docx")
    assert moved.name == "b.docx"
    assert store.get_item("DM-Published", item.id).id == item.id
    with pytest.raises(NotFoundError):
        store.get_item("DM-Authoring", item.id)


def test_pdf_rendition_needs_a_pdf_source(store):
    doc = store.create_item("DM-Authoring", filename="a.docx", data=b"x", content_type="", fields={})
    pdf = store.create_item("DM-Authoring", filename="b.pdf", data=b"%PDF", content_type="application/pdf", fields={})
    with pytest.raises(ValidationError):
        store.read_content("DM-Authoring", doc.id, as_pdf=True)
    assert store.read_content("DM-Authoring", pdf.id, as_pdf=True).data == b"%PDF"


def test_delete_removes_row_and_blob(store):
    item = store.create_item("DM-Authoring", filename="a.docx", data=b"x", content_type="", fields={})
    store.delete_item("DM-Authoring", item.id)
    with pytest.raises(NotFoundError):
        store.get_item("DM-Authoring", item.id)
    assert not store.storage.exists(f"registry/DM-Authoring/{item.id}/a.docx")


def test_registry_collections_project_with_their_kind(store):
    collections = RegistryCollections.for_store(store, authoring_name="DM-Authoring", published_name="DM-Published")
    item = collections.published.create(filename="p.pdf", data=b"%PDF", content_type="application/pdf", fields={})
    record = collections.published.project(item)
    assert record.source == "published"
    assert record.lifecycle_status == "Published"
    assert [c.kind for c in collections.both()] == ["published", "authoring"]


def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalStorage(root=tmp_path)
    with pytest.raises(StorageError):
        storage.put_bytes("../outside.txt", b"x")
    with pytest.raises(StorageError):
        storage.open("missing.bin")
