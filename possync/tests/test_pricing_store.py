import asyncio

import pytest

from possync.app.stores.pricing import DineInPricingStore


def _loaded(db, cloud, channel=None, **kw):
    store = DineInPricingStore(db, cloud, channel, **kw)
    asyncio.run(store.init("t1"))
    return store


def test_bulk_push_sends_exactly_the_three_wire_fields(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.save_override("m1", 150, True)
        return await store.sync_to_cloud("t1")

    assert asyncio.run(scenario()) is True
    [payload] = cloud.payloads("bulk_save_dine_in_overrides")
    assert payload == [{"menuItemId": "m1", "dineInPrice": 150, "dineInAvailable": True}]
    assert store.last_synced_at is not None


def test_bulk_push_failure_is_reported_as_false(db, cloud):
    store = _loaded(db, cloud)
    cloud.fail.add("bulk_save_dine_in_overrides")

    async def scenario():
        await store.save_override("m1", 150, True)
        return await store.sync_to_cloud("t1")

    assert asyncio.run(scenario()) is False
    assert store.get_override("m1").dine_in_price == 150
    assert store.last_synced_at is None


def test_pricing_has_no_pull():
    assert not hasattr(DineInPricingStore, "sync_from_cloud")


def test_effective_price_and_availability(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.save_override("m1", 120)
        await store.save_override("m2", None, False)

    asyncio.run(scenario())
    assert store.effective_price("m1", 100) == 120
    assert store.effective_price("m2", 100) == 100
    assert store.effective_price("m3", 80) == 80
    assert store.is_available("m1") is True
    assert store.is_available("m2") is False
    assert store.is_available("m3") is True


def test_saving_a_noop_override_resets_it(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.save_override("m1", 150, True)
        return await store.save_override("m1", None, True)

    assert asyncio.run(scenario()) is None
    assert store.get_override("m1") is None
    assert db.overrides.query("t1") == []


def test_negative_price_is_rejected(db, cloud):
    store = _loaded(db, cloud)
    with pytest.raises(ValueError):
        asyncio.run(store.save_override("m1", -1))
    assert store.list_overrides() == []


def test_overrides_survive_restart(db, cloud):
    store = _loaded(db, cloud)
    asyncio.run(store.save_override("m1", 99.5, False))

    again = _loaded(db, cloud)
    o = again.get_override("m1")
    assert o.dine_in_price == 99.5
    assert o.dine_in_available is False


def test_reset_all_and_cleanup(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        for mid in ("m1", "m2", "m3"):
            await store.save_override(mid, 10)
        nothing = await store.cleanup_orphaned([])
        removed = await store.cleanup_orphaned(["m1", "m2"])
        count = await store.reset_all()
        return nothing, removed, count

    nothing, removed, count = asyncio.run(scenario())
    assert nothing == 0
    assert removed == 1
    assert count == 2
    assert store.list_overrides() == []
    assert db.overrides.query("t1") == []


def test_authoritative_device_pushes_single_changes_best_effort(db, cloud):
    store = _loaded(db, cloud, is_authoritative=lambda: True)
    cloud.fail.add("save_dine_in_override")

    async def scenario():
        await store.save_override("m1", 150)
        await store.reset_override("m1")

    asyncio.run(scenario())
    assert cloud.count("save_dine_in_override") == 1
    assert cloud.payloads("delete_dine_in_override") == ["m1"]
    assert store.get_override("m1") is None


def test_non_authoritative_device_keeps_changes_local(db, cloud):
    store = _loaded(db, cloud)
    asyncio.run(store.save_override("m1", 150))
    assert cloud.calls == []


def test_peer_events_replicate_overrides(make_db, cloud, hub):
    a = _loaded(make_db("a.sqlite"), cloud, hub.channel("device-a"))
    b = _loaded(make_db("b.sqlite"), cloud, hub.channel("device-b"))

    asyncio.run(a.save_override("m1", 150))
    assert b.effective_price("m1", 100) == 150

    asyncio.run(a.save_override("m1", 175, False))
    assert b.effective_price("m1", 100) == 175
    assert b.is_available("m1") is False
    assert b.db.overrides.get("m1", "t1").dine_in_price == 175

    asyncio.run(a.reset_override("m1"))
    assert b.get_override("m1") is None


def test_repeated_peer_add_is_a_noop(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.save_override("m1", 150)
        return await store.apply_remote_added({"menuItemId": "m1", "dineInPrice": 999, "dineInAvailable": True})

    assert asyncio.run(scenario()) is False
    assert store.effective_price("m1", 100) == 150
