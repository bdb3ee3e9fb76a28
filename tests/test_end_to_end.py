"""End-to-end sync between devices and the real API over ASGI."""

import httpx
import pytest

pytest.importorskip("fastapi")

from babysync.auth import Credentials, RequestGuard
from babysync.config import Config
from babysync.context import SyncContext
from babysync.local import LocalDatabase, LocalRecordStore, PendingEventLog
from babysync.server import InMemoryTokenAuthority, RemoteSyncService, SyncDatastore, create_app
from babysync.sync import RecordMutator, SyncClient, SyncStatus


class Device:
    """One phone or tablet with its own local database."""

    def __init__(self, app, user_id, family_id, device_id, token, batch_size=100):
        self.db = LocalDatabase(":memory:")
        self.db.connect()
        self.issues = []
        context = SyncContext(user_id, family_id, device_id)
        self.store = LocalRecordStore(self.db, context)
        self.log = PendingEventLog(self.db)
        http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        )
        self.guard = RequestGuard(
            "http://testserver", Credentials(token), device_id=device_id, client=http
        )
        self.client = SyncClient(
            self.store,
            self.log,
            self.guard,
            batch_size=batch_size,
            page_size=2,
            on_issue=self.issues.append,
        )
        self.mutator = RecordMutator(self.store, self.log, sync_client=self.client)

    def close(self):
        self.db.close()


@pytest.fixture
def datastore():
    store = SyncDatastore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def app(datastore):
    authority = InMemoryTokenAuthority()
    authority.add_static_token("alice-token", "alice", "fam-1")
    authority.add_static_token("sam-token", "sam", "fam-1")
    authority.add_static_token("bob-token", "bob", "fam-2")
    return create_app(Config(), RemoteSyncService(datastore), authority)


@pytest.fixture
def phone(app):
    device = Device(app, "alice", "fam-1", "phone", "alice-token")
    yield device
    device.close()


@pytest.fixture
def tablet(app):
    device = Device(app, "sam", "fam-1", "tablet", "sam-token")
    yield device
    device.close()


class TestOfflineCreate:
    """A record created offline reaches the server and the other devices."""

    @pytest.mark.asyncio
    async def test_offline_create_then_sync(self, phone, tablet, datastore):
        record = phone.mutator.create("feeding", {"amount_ml": 120, "side": "left"})
        assert phone.store.get("feeding", record.id).pending_sync is True

        result = await phone.client.full_sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.events_applied == 1
        assert phone.log.count() == 0
        assert phone.store.get("feeding", record.id).pending_sync is False
        assert datastore.repository("feeding").get(record.id).payload == {
            "amount_ml": 120,
            "side": "left",
        }

        await tablet.client.full_sync()

        pulled = tablet.store.get("feeding", record.id)
        assert pulled.payload == {"amount_ml": 120, "side": "left"}
        assert pulled.pending_sync is False

    @pytest.mark.asyncio
    async def test_resent_event_not_applied_twice(self, phone, datastore):
        phone.mutator.create("note", {"text": "hello"}, record_id="n1")
        event = phone.log.list_pending()[0]

        await phone.client.push()
        seq = datastore.current_seq()

        # Simulate a lost ack: the same event is queued and pushed again
        phone.log.enqueue(event)
        result = await phone.client.push()

        assert result.events_applied == 1
        assert datastore.current_seq() == seq
        assert phone.log.count() == 0

    @pytest.mark.asyncio
    async def test_many_offline_changes_converge_in_one_full_sync(self, app, datastore):
        device = Device(app, "alice", "fam-1", "watch", "alice-token", batch_size=3)
        try:
            records = [device.mutator.create("note", {"text": str(i)}) for i in range(7)]

            result = await device.client.full_sync()

            assert result.events_applied == 7
            assert device.log.count() == 0
            for record in records:
                local = device.store.get("note", record.id)
                assert local.pending_sync is False
                assert datastore.repository("note").get(record.id).payload == local.payload
        finally:
            device.close()

    @pytest.mark.asyncio
    async def test_submit_pushes_immediately(self, phone, datastore):
        event = await phone.mutator.submit("sleep", "create", payload={"minutes": 25})

        assert phone.log.get(event.id) is None
        assert datastore.repository("sleep").get(event.target_id) is not None


class TestConcurrentEdits:
    """Two devices edit the same record; both converge on the newest write."""

    @pytest.mark.asyncio
    async def test_last_write_wins_and_devices_converge(self, phone, tablet):
        record = phone.mutator.create(
            "feeding", {"amount_ml": 90, "updated_at": "2026-03-01T09:00:00Z"}
        )
        await phone.client.full_sync()
        await tablet.client.full_sync()

        phone.mutator.update(
            "feeding", record.id, {"amount_ml": 100, "updated_at": "2026-03-01T10:00:00Z"}
        )
        tablet.mutator.update(
            "feeding", record.id, {"amount_ml": 150, "updated_at": "2026-03-01T10:05:00Z"}
        )

        await tablet.client.full_sync()
        phone_result = await phone.client.full_sync()

        assert phone_result.events_applied == 1
        assert phone.issues == []
        assert phone.store.get("feeding", record.id).payload["amount_ml"] == 150

        await tablet.client.full_sync()
        assert tablet.store.get("feeding", record.id).payload["amount_ml"] == 150
        assert phone.log.count() == 0
        assert tablet.log.count() == 0


class TestDeleteThenEdit:
    """One device deletes a record while another edits it."""

    @pytest.mark.asyncio
    async def test_edit_of_deleted_record_is_rejected(self, phone, tablet):
        record = phone.mutator.create("medication", {"name": "paracetamol"})
        await phone.client.full_sync()
        await tablet.client.full_sync()

        phone.mutator.delete("medication", record.id)
        await phone.client.full_sync()
        assert phone.store.get("medication", record.id, include_deleted=True) is None

        tablet.mutator.update("medication", record.id, {"name": "paracetamol", "dose": "5ml"})
        push_result = await tablet.client.push()

        assert push_result.events_rejected == 1
        assert [(i.kind, i.reason) for i in tablet.issues] == [("rejected", "not_found")]
        local = tablet.store.get("medication", record.id)
        assert local.conflicted is True
        assert local.pending_sync is False
        assert tablet.log.count() == 0

        # The optimistic value survives later pulls until the user decides
        await tablet.client.pull()
        local = tablet.store.get("medication", record.id)
        assert local.payload == {"name": "paracetamol", "dose": "5ml"}
        assert local.conflicted is True

        tablet.store.discard_local("medication", record.id)
        await tablet.client.pull()
        assert tablet.store.get("medication", record.id, include_deleted=True) is None

    @pytest.mark.asyncio
    async def test_rejected_edit_survives_full_sync(self, phone, tablet):
        record = phone.mutator.create("note", {"text": "draft"})
        await phone.client.full_sync()
        await tablet.client.full_sync()

        phone.mutator.delete("note", record.id)
        await phone.client.full_sync()

        tablet.mutator.update("note", record.id, {"text": "final"})
        result = await tablet.client.full_sync()

        assert result.events_rejected == 1
        assert [(i.kind, i.reason) for i in tablet.issues] == [("rejected", "not_found")]
        local = tablet.store.get("note", record.id)
        assert local.payload == {"text": "final"}
        assert local.conflict_reason == "not_found"


class TestIsolationAndCursors:
    """Family scoping and cursor behaviour across real round trips."""

    @pytest.mark.asyncio
    async def test_other_family_sees_nothing(self, app, phone):
        phone.mutator.create("note", {"text": "private"})
        await phone.client.full_sync()

        outsider = Device(app, "bob", "fam-2", "laptop", "bob-token")
        try:
            result = await outsider.client.full_sync()
            assert result.records_pulled == 0
            assert outsider.store.list_records() == []
        finally:
            outsider.close()

    @pytest.mark.asyncio
    async def test_cursor_monotonic_over_many_pages(self, phone, tablet):
        for i in range(5):
            phone.mutator.create("feeding", {"amount_ml": i * 10})
        await phone.client.full_sync()

        cursors = []
        for _ in range(3):
            result = await tablet.client.pull()
            cursors.append(int(result.cursor))

        assert cursors == sorted(cursors)
        assert len(tablet.store.list_records("feeding")) == 5
