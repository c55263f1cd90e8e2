from __future__ import annotations

from pathlib import Path

import pytest

from formqueue.errors import StorageError, ValidationError
from formqueue.queue.builder import EntryBuilder
from formqueue.queue.models import Attachment, EntryStatus


def test_add_entry_persists_blobs_entry_and_store(builder, db, store, image) -> None:
    entry = builder.add_entry({"title": "x", "description": "y"}, [image("one.jpg"), image("two.jpg")])

    assert entry.status == EntryStatus.PENDING
    assert entry.retry_count == 0
    assert len(entry.blob_refs) == 2
    assert [db.get_blob(ref).file_name for ref in entry.blob_refs] == ["one.jpg", "two.jpg"]
    assert db.get_entry(entry.id) == entry
    assert store.get(entry.id) == entry


def test_store_only_sees_blob_ids(builder, store, image) -> None:
    entry = builder.add_entry({"title": "x"}, [image()])

    stored = store.get(entry.id)
    assert all(isinstance(ref, str) for ref in stored.blob_refs)
    assert not any(isinstance(v, bytes) for v in stored.to_dict()["data"].values())


def test_created_at_strictly_increases_on_clock_ties(builder, store, clock) -> None:
    first = builder.add_entry({"title": "a"})
    second = builder.add_entry({"title": "b"})
    clock.advance(100)
    third = builder.add_entry({"title": "c"})

    assert first.created_at < second.created_at < third.created_at
    assert [e.id for e in store.entries()] == [first.id, second.id, third.id]


def test_store_matches_persistence_after_many_adds(builder, db, store, clock) -> None:
    for index in range(5):
        builder.add_entry({"title": f"entry {index}"})
        if index % 2:
            clock.advance(3)

    assert list(store.entries()) == db.list_entries()


def test_created_at_continues_after_loaded_entries(db, store, clock) -> None:
    """Entries loaded from a previous run must stay ahead in FIFO order."""
    first_run = EntryBuilder(db, store, required_fields=["title"], clock=lambda: 5_000)
    old = first_run.add_entry({"title": "old"})

    restarted = EntryBuilder(db, store, required_fields=["title"], clock=clock)
    new = restarted.add_entry({"title": "new"})

    assert new.created_at > old.created_at


@pytest.mark.parametrize(
    "fields",
    [
        {},
        {"title": "   "},
        {"title": "ok", "count": 3},
    ],
)
def test_invalid_fields_write_nothing(builder, db, store, fields) -> None:
    with pytest.raises(ValidationError):
        builder.add_entry(fields)

    assert db.count() == 0
    assert store.size() == 0


def test_invalid_attachment_writes_no_blobs(builder, db, image) -> None:
    with pytest.raises(ValidationError):
        builder.add_entry({"title": "x"}, [image(), Attachment(content="text", file_name="a.txt")])

    assert db.count_blobs() == 0


def test_entry_write_failure_leaves_orphan_blobs(builder, db, store, image, monkeypatch) -> None:
    def fail(_entry):
        raise StorageError("disk full")

    monkeypatch.setattr(db, "save_entry", fail)

    with pytest.raises(StorageError):
        builder.add_entry({"title": "x"}, [image()])

    assert db.count_blobs() == 1
    assert store.size() == 0


def test_on_added_callbacks_run_after_store_update(builder, store) -> None:
    sizes: list[int] = []
    builder.on_added(lambda entry: sizes.append(store.size()))

    builder.add_entry({"title": "x"})

    assert sizes == [1]


def test_attachment_from_path(tmp_path: Path) -> None:
    path = tmp_path / "receipt.png"
    path.write_bytes(b"\x89PNG data")

    attachment = Attachment.from_path(path)

    assert attachment.file_name == "receipt.png"
    assert attachment.content_type == "image/png"
    assert attachment.content == b"\x89PNG data"
