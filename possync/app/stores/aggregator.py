import asyncio
from typing import Optional

from ..db import utcnow_iso
from ..logs import json_log
from ..merge import merge_orders
from ..models import AggregatorOrder, field_name, wire_key, with_updates
from .base import SyncStore

# Statuses still on the kitchen board.
ACTIVE_STATUSES = {"pending", "confirmed", "preparing", "ready", "out_for_delivery"}


class AggregatorOrderStore(SyncStore):
    """Delivery-platform orders. Cloud pulls only ever add orders this device has not seen."""

    entity = "aggregator_orders"

    def __init__(self, db, cloud, channel=None):
        super().__init__(db, cloud, channel)
        self.orders: list[AggregatorOrder] = []

    async def _load_local(self) -> None:
        self.orders = await asyncio.to_thread(self.db.orders.query, self.tenant_id)

    def _index(self, order_id: str) -> int:
        for i, o in enumerate(self.orders):
            if o.order_id == order_id:
                return i
        return -1

    def get_order(self, order_id: str) -> Optional[AggregatorOrder]:
        idx = self._index(order_id)
        return self.orders[idx] if idx >= 0 else None

    def get_filtered_orders(self, aggregator: Optional[str] = None, status: Optional[str] = None) -> list[AggregatorOrder]:
        out = [
            o
            for o in self.orders
            if (not aggregator or aggregator == "all" or o.aggregator == aggregator)
            and (not status or status == "all" or o.status == status)
        ]
        return sorted(out, key=lambda o: o.created_at or "", reverse=True)

    def get_stats(self) -> dict:
        by_status: dict[str, int] = {}
        by_aggregator: dict[str, int] = {}
        revenue = 0.0
        for o in self.orders:
            by_status[o.status] = by_status.get(o.status, 0) + 1
            by_aggregator[o.aggregator] = by_aggregator.get(o.aggregator, 0) + 1
            if o.status != "cancelled":
                revenue += float(o.total or 0)
        return {
            "total": len(self.orders),
            "active": sum(1 for o in self.orders if o.status in ACTIVE_STATUSES),
            "by_status": by_status,
            "by_aggregator": by_aggregator,
            "revenue": round(revenue, 2),
        }

    # Local mutations

    async def add_order(self, order) -> Optional[AggregatorOrder]:
        """Add an order unless one with the same order id or order number is already held."""
        if not isinstance(order, AggregatorOrder):
            order = AggregatorOrder.model_validate(order)
        if not order.tenant_id:
            order = order.model_copy(update={"tenant_id": self.tenant_id})
        if not order.created_at:
            order = order.model_copy(update={"created_at": utcnow_iso()})

        async with self._write_lock:
            for o in self.orders:
                if o.order_id == order.order_id or (order.order_number and o.order_number == order.order_number):
                    json_log("info", "aggregator_orders.add.duplicate", tenant_id=self.tenant_id, order_id=order.order_id)
                    return None
            self.orders = [order, *self.orders]
            await self._persist("add_order", self.db.orders.upsert, order)
        self._notify()
        json_log(
            "info",
            "aggregator_orders.added",
            tenant_id=self.tenant_id,
            order_id=order.order_id,
            aggregator=order.aggregator,
        )
        await self._broadcast("added", order.order_id, order.to_wire())
        return order

    async def update_order(self, order_id: str, updates: dict) -> Optional[AggregatorOrder]:
        clean = {}
        for key, value in (updates or {}).items():
            name = field_name(AggregatorOrder, key)
            if name and name not in {"order_id", "tenant_id"}:
                clean[name] = value
        async with self._write_lock:
            idx = self._index(order_id)
            if idx < 0:
                return None
            if not clean:
                return self.orders[idx]
            updated = with_updates(self.orders[idx], clean)
            orders = list(self.orders)
            orders[idx] = updated
            self.orders = orders
            await self._persist("update_order", self.db.orders.upsert, updated)
        self._notify()

        wire = updated.to_wire()
        partial = {wire_key(AggregatorOrder, n): wire[wire_key(AggregatorOrder, n)] for n in clean}
        await self._broadcast("updated", order_id, partial)
        return updated

    async def remove_order(self, order_id: str) -> bool:
        async with self._write_lock:
            if self._index(order_id) < 0:
                return False
            self.orders = [o for o in self.orders if o.order_id != order_id]
            await self._persist("remove_order", self.db.orders.delete, order_id, self.tenant_id)
        self._notify()
        await self._broadcast("removed", order_id)
        return True

    # Cloud sync

    async def sync_from_cloud(self, tenant_id: str, limit: int = 100) -> bool:
        async def _pull(tid: str) -> None:
            await self._pull(tid, limit)

        return await self._run_sync("sync_from_cloud", tenant_id, _pull)

    async def _pull(self, tenant_id: str, limit: int) -> None:
        rows = await self.cloud.get_aggregator_orders(tenant_id, limit=limit)
        remote = []
        for row in rows:
            if not isinstance(row, dict):
                raise ValueError("malformed order row from cloud")
            order = AggregatorOrder.model_validate(row)
            if not order.tenant_id:
                order = order.model_copy(update={"tenant_id": tenant_id})
            remote.append(order)

        async with self._write_lock:
            merged, added = merge_orders(self.orders, remote)
            if added:
                await asyncio.to_thread(self.db.orders.upsert_many, added)
            self.orders = merged
        json_log("info", "aggregator_orders.pulled", tenant_id=tenant_id, fetched=len(remote), added=len(added))
        await self._mark_synced(tenant_id)

    # Peer events

    async def apply_remote_added(self, payload: dict) -> bool:
        order = AggregatorOrder.model_validate(payload)
        order = order.model_copy(update={"tenant_id": self.tenant_id})
        async with self._write_lock:
            if self._index(order.order_id) >= 0:
                return False
            self.orders = [order, *self.orders]
            await self._persist("apply_remote_added", self.db.orders.upsert, order)
        self._notify()
        return True

    async def apply_remote_updated(self, entity_id: str, partial: dict) -> bool:
        clean = {}
        for key, value in (partial or {}).items():
            name = field_name(AggregatorOrder, key)
            if name and name not in {"order_id", "tenant_id"}:
                clean[name] = value
        if not clean:
            return False
        async with self._write_lock:
            idx = self._index(entity_id)
            if idx < 0:
                return False
            updated = with_updates(self.orders[idx], clean)
            orders = list(self.orders)
            orders[idx] = updated
            self.orders = orders
            await self._persist("apply_remote_updated", self.db.orders.upsert, updated)
        self._notify()
        return True

    async def apply_remote_removed(self, entity_id: str) -> bool:
        async with self._write_lock:
            if self._index(entity_id) < 0:
                return False
            self.orders = [o for o in self.orders if o.order_id != entity_id]
            await self._persist("apply_remote_removed", self.db.orders.delete, entity_id, self.tenant_id)
        self._notify()
        return True
