import asyncio

from possync.app.models import AggregatorOrder
from possync.app.stores.aggregator import AggregatorOrderStore


def _order(order_id, **kw):
    data = {"orderId": order_id, "orderNumber": f"N-{order_id}", "aggregator": "swiggy", "total": 100}
    data.update(kw)
    return data


def _loaded(db, cloud, channel=None):
    store = AggregatorOrderStore(db, cloud, channel)
    asyncio.run(store.init("t1"))
    return store


def test_add_order_dedupes_by_id_and_order_number(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        first = await store.add_order(_order("o1"))
        same_id = await store.add_order(_order("o1", orderNumber="N-other"))
        same_number = await store.add_order(_order("o2", orderNumber="N-o1"))
        return first, same_id, same_number

    first, same_id, same_number = asyncio.run(scenario())
    assert first.order_id == "o1"
    assert first.tenant_id == "t1"
    assert same_id is None
    assert same_number is None
    assert len(store.orders) == 1
    assert [o.order_id for o in db.orders.query("t1")] == ["o1"]


def test_pull_only_adds_unseen_orders(db, cloud):
    store = _loaded(db, cloud)
    asyncio.run(store.add_order(_order("o1", status="preparing", createdAt="2024-01-01T10:00:00")))
    cloud.orders = [
        _order("o1", status="pending", createdAt="2024-01-01T10:00:00"),
        _order("o2", createdAt="2024-01-01T11:00:00"),
    ]

    assert asyncio.run(store.sync_from_cloud("t1", limit=50)) is True
    assert store.get_order("o1").status == "preparing"
    assert store.get_order("o2") is not None
    assert cloud.payloads("get_aggregator_orders") == [{"limit": 50}]
    assert {o.order_id for o in db.orders.query("t1")} == {"o1", "o2"}


def test_pull_failure_keeps_orders(db, cloud):
    store = _loaded(db, cloud)
    asyncio.run(store.add_order(_order("o1")))
    cloud.fail.add("get_aggregator_orders")

    assert asyncio.run(store.sync_from_cloud("t1")) is False
    assert [o.order_id for o in store.orders] == ["o1"]


def test_filtered_orders_are_newest_first(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.add_order(_order("o1", createdAt="2024-01-01T09:00:00"))
        await store.add_order(_order("o2", createdAt="2024-01-01T11:00:00", aggregator="zomato"))
        await store.add_order(_order("o3", createdAt="2024-01-01T10:00:00", status="ready"))

    asyncio.run(scenario())
    assert [o.order_id for o in store.get_filtered_orders()] == ["o2", "o3", "o1"]
    assert [o.order_id for o in store.get_filtered_orders(aggregator="swiggy")] == ["o3", "o1"]
    assert [o.order_id for o in store.get_filtered_orders(status="ready")] == ["o3"]
    assert [o.order_id for o in store.get_filtered_orders("all", "all")] == ["o2", "o3", "o1"]


def test_stats(db, cloud):
    store = _loaded(db, cloud)

    async def scenario():
        await store.add_order(_order("o1", total=100))
        await store.add_order(_order("o2", total=50.5, status="delivered", aggregator="zomato"))
        await store.add_order(_order("o3", total=70, status="cancelled"))

    asyncio.run(scenario())
    stats = store.get_stats()
    assert stats["total"] == 3
    assert stats["active"] == 1
    assert stats["by_status"] == {"pending": 1, "delivered": 1, "cancelled": 1}
    assert stats["by_aggregator"] == {"swiggy": 2, "zomato": 1}
    assert stats["revenue"] == 150.5


def test_update_and_remove_replicate_to_peers(make_db, cloud, hub):
    a = _loaded(make_db("a.sqlite"), cloud, hub.channel("device-a"))
    b = _loaded(make_db("b.sqlite"), cloud, hub.channel("device-b"))

    asyncio.run(a.add_order(_order("o1")))
    assert b.get_order("o1") is not None

    updated = asyncio.run(a.update_order("o1", {"status": "Ready", "orderId": "hijack"}))
    assert updated.status == "ready"
    assert updated.order_id == "o1"
    assert a.channel.sent[-1].payload == {"status": "ready"}
    assert b.get_order("o1").status == "ready"
    assert isinstance(b.db.orders.get("o1", "t1"), AggregatorOrder)

    assert asyncio.run(a.remove_order("o1")) is True
    assert b.orders == []
    assert asyncio.run(a.remove_order("o1")) is False


def test_orders_survive_restart(db, cloud):
    store = _loaded(db, cloud)
    asyncio.run(store.add_order(_order("o1", items=[{"name": "Biryani", "quantity": 2}])))

    again = _loaded(db, cloud)
    assert again.get_order("o1").items == [{"name": "Biryani", "quantity": 2}]


def test_orders_added_during_pull_write_are_kept(db, cloud, write_gate, monkeypatch):
    store = _loaded(db, cloud)
    cloud.orders = [_order("o1")]
    monkeypatch.setattr(db.orders, "upsert_many", write_gate.wrap(db.orders.upsert_many))

    async def scenario():
        pull = asyncio.create_task(store.sync_from_cloud("t1"))
        await write_gate.wait_entered()
        local = asyncio.create_task(store.add_order(_order("o8")))
        peer = asyncio.create_task(store.apply_remote_added(_order("o9")))
        await asyncio.sleep(0)
        write_gate.release.set()
        return await pull, await local, await peer

    pulled, local, applied = asyncio.run(scenario())
    assert pulled is True
    assert local is not None
    assert applied is True
    assert {o.order_id for o in store.orders} == {"o1", "o8", "o9"}
    assert {o.order_id for o in db.orders.query("t1")} == {"o1", "o8", "o9"}
