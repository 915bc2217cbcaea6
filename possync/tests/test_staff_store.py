import asyncio
import hashlib

import pytest

from possync.app import security
from possync.app.models import StaffMember
from possync.app.stores import staff as staff_mod
from possync.app.stores.staff import StaffStore
from possync.app.validation import StaffRole


@pytest.fixture
def fast_hash(monkeypatch):
    # bcrypt is slow and irrelevant to the sync behaviour under test.
    monkeypatch.setattr(staff_mod, "hash_pin", lambda pin: f"hashed:{pin}")
    monkeypatch.setattr(staff_mod, "verify_pin", lambda pin, hashed: hashed == f"hashed:{pin}")


def _store(db, cloud, channel=None, **kw):
    return StaffStore(db, cloud, channel, **kw)


def test_pull_keeps_local_pin_hash_when_cloud_omits_it(db, cloud):
    db.staff.upsert(StaffMember(id="s1", name="John", pin_hash="abc", tenant_id="t1"))
    cloud.staff = [{"id": "s1", "name": "John Updated", "role": "manager"}]
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        return await store.sync_from_cloud("t1")

    assert asyncio.run(scenario()) is True
    assert len(store.staff) == 1
    m = store.staff[0]
    assert (m.id, m.name, m.role, m.pin_hash) == ("s1", "John Updated", StaffRole.MANAGER, "abc")
    assert db.staff.query("t1")[0].pin_hash == "abc"
    assert store.last_synced_at is not None
    assert db.get_last_synced("staff", "t1") == store.last_synced_at


def test_empty_cloud_roster_leaves_local_unchanged(db, cloud):
    db.staff.upsert(StaffMember(id="s1", name="John", pin_hash="abc", tenant_id="t1"))
    cloud.staff = []
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        before = list(store.staff)
        await store.sync_from_cloud("t1")
        return before

    before = asyncio.run(scenario())
    assert store.staff == before
    assert [m.id for m in db.staff.query("t1")] == ["s1"]
    assert store.last_synced_at is None


def test_local_only_members_survive_a_pull(db, cloud):
    db.staff.upsert(StaffMember(id="s1", name="A", tenant_id="t1"))
    db.staff.upsert(StaffMember(id="s2", name="B", tenant_id="t1", pin_hash="h2"))
    cloud.staff = [{"id": "s1", "name": "A2"}, {"id": "s3", "name": "C"}]
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        await store.sync_from_cloud("t1")

    asyncio.run(scenario())
    assert [m.id for m in store.staff] == ["s1", "s3", "s2"]
    assert store.get_staff("s2").pin_hash == "h2"
    assert store.get_staff("s3").tenant_id == "t1"
    assert {m.id for m in db.staff.query("t1")} == {"s1", "s2", "s3"}


def test_failed_pull_is_logged_and_changes_nothing(db, cloud, capsys):
    db.staff.upsert(StaffMember(id="s1", name="John", tenant_id="t1"))
    cloud.fail.add("get_staff")
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        return await store.sync_from_cloud("t1")

    assert asyncio.run(scenario()) is False
    assert [m.name for m in store.staff] == ["John"]
    assert store.is_syncing is False
    assert "staff.sync_from_cloud.failed" in capsys.readouterr().err


def test_malformed_cloud_rows_are_a_failed_pull(db, cloud):
    cloud.staff = ["not-a-row"]
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        return await store.sync_from_cloud("t1")

    assert asyncio.run(scenario()) is False
    assert store.staff == []


def test_second_push_while_syncing_is_dropped(db, cloud):
    db.staff.upsert(StaffMember(id="s1", name="John", pin_hash="abc", tenant_id="t1"))
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        cloud.gate = asyncio.Event()
        cloud.entered = asyncio.Event()
        first = asyncio.create_task(store.sync_to_cloud("t1"))
        await cloud.entered.wait()
        assert store.is_syncing is True
        second = await store.sync_to_cloud("t1")
        cloud.gate.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert cloud.count("save_staff") == 1
    assert store.is_syncing is False


def test_push_sends_hashes_never_raw_pins(db, cloud, fast_hash):
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        await store.add_staff("Ann", "cashier", "1234", email="ann@example.com")
        return await store.sync_to_cloud("t1")

    assert asyncio.run(scenario()) is True
    [payload] = cloud.payloads("save_staff")
    assert len(payload) == 1
    row = payload[0]
    assert row["pinHash"] == "hashed:1234"
    assert row["role"] == "server"
    assert "pin" not in row


def test_push_on_wrong_tenant_is_skipped(db, cloud):
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        return await store.sync_to_cloud("t2")

    assert asyncio.run(scenario()) is False
    assert cloud.count("save_staff") == 0


def test_add_update_remove_persist_and_notify(db, cloud, fast_hash):
    store = _store(db, cloud)
    seen = []

    async def scenario():
        await store.init("t1")
        store.subscribe(lambda s: seen.append(len(s.staff)))
        m = await store.add_staff("Ann", "waiter", "1234")
        await store.update_staff(m.id, {"name": "Annie", "pin": "5678", "id": "hijack", "tenantId": "t9"})
        return m.id

    staff_id = asyncio.run(scenario())
    m = store.get_staff(staff_id)
    assert m.name == "Annie"
    assert m.pin_hash == "hashed:5678"
    assert m.tenant_id == "t1"
    assert db.staff.query("t1")[0].name == "Annie"
    assert seen and seen[-1] == 1

    assert asyncio.run(store.remove_staff(staff_id)) is True
    assert asyncio.run(store.remove_staff(staff_id)) is False
    assert db.staff.query("t1") == []


def test_add_staff_rejects_bad_pin_before_touching_state(db, cloud):
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        await store.add_staff("Ann", "manager", "12")

    with pytest.raises(ValueError):
        asyncio.run(scenario())
    assert store.staff == []


def test_authoritative_device_pushes_after_mutation(db, cloud, fast_hash):
    store = _store(db, cloud, is_authoritative=lambda: True)

    async def scenario():
        await store.init("t1")
        await store.add_staff("Ann", "manager", "1234")

    asyncio.run(scenario())
    assert cloud.count("save_staff") == 1


def test_pin_login_only_matches_active_members(db, cloud):
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        ann = await store.add_staff("Ann", "manager", "1234")
        bob = await store.add_staff("Bob", "kitchen", "4321", is_active=False)
        found = await store.get_staff_by_pin("1234")
        inactive = await store.get_staff_by_pin("4321")
        missing = await store.get_staff_by_pin("0000")
        return ann, bob, found, inactive, missing

    ann, bob, found, inactive, missing = asyncio.run(scenario())
    assert found is not None and found.id == ann.id
    assert inactive is None
    assert missing is None
    assert store.list_public()[0]["pin"] == "****"


def test_peer_events_replicate_and_are_idempotent(make_db, cloud, hub, fast_hash):
    a = _store(make_db("a.sqlite"), cloud, hub.channel("device-a"))
    b = _store(make_db("b.sqlite"), cloud, hub.channel("device-b"))

    async def scenario():
        await a.init("t1")
        await b.init("t1")
        m = await a.add_staff("Ann", "manager", "1234")
        # Redeliver the same "added" event: nothing changes on b.
        event = a.channel.sent[-1]
        await b.channel.deliver(event)
        await a.update_staff(m.id, {"name": "Annie", "isActive": False})
        return m.id

    staff_id = asyncio.run(scenario())
    assert [x.id for x in b.staff] == [staff_id]
    assert b.get_staff(staff_id).name == "Annie"
    assert b.get_staff(staff_id).is_active is False
    assert b.get_staff(staff_id).pin_hash == "hashed:1234"
    assert a.channel.sent[-1].payload == {"name": "Annie", "isActive": False}

    asyncio.run(a.remove_staff(staff_id))
    assert b.staff == []
    assert b.db.staff.query("t1") == []


def test_peer_update_or_remove_of_unknown_member_is_dropped(db, cloud):
    store = _store(db, cloud)

    async def scenario():
        await store.init("t1")
        updated = await store.apply_remote_updated("ghost", {"name": "X"})
        removed = await store.apply_remote_removed("ghost")
        return updated, removed

    assert asyncio.run(scenario()) == (False, False)
    assert store.staff == []


def test_peer_events_for_other_tenants_are_ignored(make_db, cloud, hub):
    b = _store(make_db("b.sqlite"), cloud, hub.channel("device-b"))
    a_channel = hub.channel("device-a")

    async def scenario():
        await b.init("t1")
        await a_channel.broadcast_added("staff", "t2", "s9", {"id": "s9", "name": "Other"})

    asyncio.run(scenario())
    assert b.staff == []


def test_changes_landing_during_pull_write_are_kept(db, cloud, write_gate, monkeypatch):
    db.staff.upsert(StaffMember(id="s1", name="Ann", tenant_id="t1"))
    cloud.staff = [{"id": "s1", "name": "Ann B", "role": "manager"}]
    store = _store(db, cloud)
    asyncio.run(store.init("t1"))
    monkeypatch.setattr(db.staff, "upsert_many", write_gate.wrap(db.staff.upsert_many))

    async def scenario():
        pull = asyncio.create_task(store.sync_from_cloud("t1"))
        await write_gate.wait_entered()
        added = asyncio.create_task(store.apply_remote_added({"id": "s9", "name": "Zed", "role": "kitchen"}))
        renamed = asyncio.create_task(store.apply_remote_updated("s1", {"phone": "555-0100"}))
        await asyncio.sleep(0)
        write_gate.release.set()
        return await pull, await added, await renamed

    pulled, added, renamed = asyncio.run(scenario())
    assert (pulled, added, renamed) == (True, True, True)
    assert [m.id for m in store.staff] == ["s1", "s9"]
    assert store.get_staff("s1").name == "Ann B"
    assert store.get_staff("s1").phone == "555-0100"
    on_disk = {m.id: m for m in db.staff.query("t1")}
    assert set(on_disk) == {"s1", "s9"}
    assert on_disk["s1"].phone == "555-0100"


def test_weak_pin_hash_is_upgraded_on_login(db, cloud, hub, monkeypatch):
    monkeypatch.setattr(security.settings, "env", "local")
    weak = security.INSECURE_PREFIX + hashlib.sha256(b"1234").hexdigest()
    db.staff.upsert(StaffMember(id="s1", name="Ann", pin_hash=weak, tenant_id="t1"))
    store = _store(db, cloud, hub.channel("a"), is_authoritative=lambda: True)
    peer_events = []

    async def on_event(event):
        peer_events.append(event)

    hub.channel("b").subscribe("staff", on_event)

    async def scenario():
        await store.init("t1")
        return await store.get_staff_by_pin("1234")

    found = asyncio.run(scenario())
    assert found.id == "s1"
    assert found.pin_hash.startswith("$2")
    assert security.verify_pin("1234", found.pin_hash) is True
    assert db.staff.get("s1", "t1").pin_hash == found.pin_hash
    assert cloud.payloads("save_staff")[-1][0]["pinHash"] == found.pin_hash
    assert [e.action for e in peer_events] == ["updated"]


def test_weak_pin_hash_stays_when_no_secure_backend(db, cloud, monkeypatch):
    monkeypatch.setattr(security.settings, "env", "local")
    weak = security.INSECURE_PREFIX + hashlib.sha256(b"1234").hexdigest()
    db.staff.upsert(StaffMember(id="s1", name="Ann", pin_hash=weak, tenant_id="t1"))
    monkeypatch.setattr(staff_mod, "hash_pin", lambda pin: weak)
    store = _store(db, cloud, is_authoritative=lambda: True)

    async def scenario():
        await store.init("t1")
        return await store.get_staff_by_pin("1234")

    found = asyncio.run(scenario())
    assert found.pin_hash == weak
    assert db.staff.get("s1", "t1").pin_hash == weak
    assert cloud.count("save_staff") == 0
