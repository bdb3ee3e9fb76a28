"""Tests for the local record store."""

import pytest
from datetime import datetime, timezone

from babysync.context import SyncContext
from babysync.local import LocalDatabase, LocalRecordStore
from babysync.models import PulledRecord, utc_now


@pytest.fixture
def db():
    """Create an in-memory device database."""
    database = LocalDatabase(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return LocalRecordStore(db, SyncContext("alice", "fam-1", "phone"))


def pulled(record_id, payload, updated_at=None, entity_type="feeding"):
    return PulledRecord(
        entity_type=entity_type,
        id=record_id,
        payload=payload,
        updated_at=updated_at or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_module_reloads_cleanly():
    """Class-level annotations must not resolve to the store's own methods."""
    import importlib

    import babysync.local.record_store as record_store

    module = importlib.reload(record_store)

    assert not hasattr(module.LocalRecordStore, "list")
    assert callable(module.LocalRecordStore.list_conflicted)


class TestLocalWrites:
    """Tests for optimistic local writes."""

    def test_put_local_marks_pending(self, store):
        store.put_local("feeding", "f1", {"amount_ml": 120}, updated_at=utc_now())

        record = store.get("feeding", "f1")
        assert record.payload == {"amount_ml": 120}
        assert record.pending_sync is True
        assert record.synced_at is None

    def test_local_delete_hidden_until_acknowledged(self, store):
        store.put_local("feeding", "f1", {"amount_ml": 120}, updated_at=utc_now())
        store.put_local("feeding", "f1", {"amount_ml": 120}, updated_at=utc_now(), deleted=True)

        assert store.get("feeding", "f1") is None
        assert store.get("feeding", "f1", include_deleted=True).deleted is True
        assert store.list_records() == []

    def test_new_edit_clears_conflict(self, store):
        store.put_local("note", "n1", {"text": "a"}, updated_at=utc_now())
        store.mark_conflicted("note", "n1", "forbidden")

        store.put_local("note", "n1", {"text": "b"}, updated_at=utc_now())

        record = store.get("note", "n1")
        assert record.conflicted is False
        assert record.conflict_reason is None

    def test_list_by_entity_type(self, store):
        store.put_local("feeding", "f1", {}, updated_at=utc_now())
        store.put_local("sleep", "s1", {}, updated_at=utc_now())

        assert [r.id for r in store.list_records("sleep")] == ["s1"]
        assert len(store.list_records()) == 2


class TestAcknowledgement:
    """Tests for settling records after push acks."""

    def test_mark_synced(self, store):
        store.put_local("feeding", "f1", {"amount_ml": 90}, updated_at=utc_now())

        store.mark_synced("feeding", "f1")

        record = store.get("feeding", "f1")
        assert record.pending_sync is False
        assert record.synced_at is not None

    def test_mark_synced_removes_acknowledged_delete(self, store):
        store.put_local("feeding", "f1", {"amount_ml": 90}, updated_at=utc_now(), deleted=True)

        store.mark_synced("feeding", "f1")

        assert store.get("feeding", "f1", include_deleted=True) is None

    def test_mark_conflicted_keeps_local_value(self, store):
        store.put_local("medication", "m1", {"dose": "5ml"}, updated_at=utc_now())

        store.mark_conflicted("medication", "m1", "not_found")
        store.clear_pending("medication", "m1")

        record = store.get("medication", "m1")
        assert record.payload == {"dose": "5ml"}
        assert record.conflicted is True
        assert record.conflict_reason == "not_found"
        assert record.pending_sync is False
        assert [r.id for r in store.list_conflicted()] == ["m1"]

    def test_discard_local_forgets_record_and_cursor(self, store):
        store.put_local("medication", "m1", {}, updated_at=utc_now())
        store.mark_conflicted("medication", "m1", "invalid")
        store.clear_pending("medication", "m1")
        store.set_cursor("9")

        store.discard_local("medication", "m1")

        assert store.list_conflicted() == []
        assert store.get("medication", "m1", include_deleted=True) is None
        assert store.get_cursor() is None

    def test_discard_local_ignores_unconflicted_record(self, store):
        store.apply_remote(pulled("f1", {"amount_ml": 60}))

        store.discard_local("feeding", "f1")

        assert store.get("feeding", "f1") is not None


class TestApplyRemote:
    """Tests for records arriving from a pull."""

    def test_insert_new_record(self, store):
        assert store.apply_remote(pulled("f1", {"amount_ml": 60})) is True

        record = store.get("feeding", "f1")
        assert record.payload == {"amount_ml": 60}
        assert record.pending_sync is False
        assert record.synced_at is not None

    def test_overwrite_synced_record(self, store):
        store.apply_remote(pulled("f1", {"amount_ml": 60}))
        store.apply_remote(pulled("f1", {"amount_ml": 80}))

        assert store.get("feeding", "f1").payload == {"amount_ml": 80}

    def test_pending_record_not_overwritten(self, store):
        store.put_local("feeding", "f1", {"amount_ml": 100}, updated_at=utc_now())

        assert store.apply_remote(pulled("f1", {"amount_ml": 60})) is False
        assert store.get("feeding", "f1").payload == {"amount_ml": 100}

    def test_tombstone_deletes(self, store):
        store.apply_remote(pulled("f1", {"amount_ml": 60}))

        assert store.apply_remote(pulled("f1", None)) is True
        assert store.get("feeding", "f1", include_deleted=True) is None

    def test_tombstone_for_unknown_record(self, store):
        assert store.apply_remote(pulled("ghost", None)) is False

    def test_conflicted_record_not_overwritten(self, store):
        store.put_local("note", "n1", {"text": "mine"}, updated_at=utc_now())
        store.mark_conflicted("note", "n1", "forbidden")
        store.clear_pending("note", "n1")

        assert store.apply_remote(pulled("n1", {"text": "server"}, entity_type="note")) is False
        assert store.apply_remote(pulled("n1", None, entity_type="note")) is False

        record = store.get("note", "n1")
        assert record.payload == {"text": "mine"}
        assert record.conflicted is True
        assert record.conflict_reason == "forbidden"

    def test_reapplied_conflict_accepts_later_pull(self, store):
        store.put_local("note", "n1", {"text": "mine"}, updated_at=utc_now())
        store.mark_conflicted("note", "n1", "invalid")
        store.put_local("note", "n1", {"text": "fixed"}, updated_at=utc_now())
        store.mark_synced("note", "n1")

        assert store.apply_remote(pulled("n1", {"text": "server"}, entity_type="note")) is True
        assert store.get("note", "n1").payload == {"text": "server"}


class TestCursor:
    """Tests for the pull cursor."""

    def test_no_cursor_initially(self, store):
        assert store.get_cursor() is None

    def test_set_and_get_cursor(self, store):
        store.set_cursor("7")
        store.set_cursor("12")

        assert store.get_cursor() == "12"

    def test_cursor_is_per_device(self, db, store):
        other = LocalRecordStore(db, SyncContext("alice", "fam-1", "tablet"))
        store.set_cursor("5")

        assert other.get_cursor() is None


class TestFamilyScope:
    """Tests for family isolation inside one device database."""

    def test_other_family_records_invisible(self, db, store):
        other = LocalRecordStore(db, SyncContext("bob", "fam-2"))
        other.apply_remote(pulled("f9", {"amount_ml": 10}))

        assert store.get("feeding", "f9") is None
        assert store.list_records() == []

    def test_same_id_kept_apart_per_family(self, db, store):
        other = LocalRecordStore(db, SyncContext("bob", "fam-2"))
        store.apply_remote(pulled("f1", {"amount_ml": 10}))
        other.apply_remote(pulled("f1", {"amount_ml": 99}))
        other.put_local("feeding", "f1", {"amount_ml": 100}, updated_at=utc_now())

        assert store.get("feeding", "f1").payload == {"amount_ml": 10}
        assert store.get("feeding", "f1").pending_sync is False
        assert other.get("feeding", "f1").payload == {"amount_ml": 100}

    def test_get_stats(self, store):
        store.put_local("feeding", "f1", {}, updated_at=utc_now())
        store.apply_remote(pulled("s1", {}, entity_type="sleep"))
        store.mark_conflicted("feeding", "f1", "invalid")
        store.set_cursor("3")

        stats = store.get_stats()

        assert stats["cursor"] == "3"
        assert stats["record_count"] == 2
        assert stats["pending_records"] == 1
        assert stats["conflicted_records"] == 1
        assert stats["records_by_type"] == {"feeding": 1, "sleep": 1}
