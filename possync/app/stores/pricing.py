import asyncio
from typing import Callable, Iterable, Optional

from ..db import utcnow_iso
from ..logs import json_log
from ..models import DineInPriceOverride, field_name, with_updates
from .base import SyncStore


class DineInPricingStore(SyncStore):
    """
    Per-menu-item dine-in price and availability overrides.

    Overrides only flow device -> cloud (bulk push). Saving an override that
    changes nothing (no price, still available) removes it instead.
    """

    entity = "dine_in_pricing"

    def __init__(self, db, cloud, channel=None, *, is_authoritative: Optional[Callable[[], bool]] = None):
        super().__init__(db, cloud, channel)
        self.overrides: dict[str, DineInPriceOverride] = {}
        self._is_authoritative = is_authoritative or (lambda: False)

    async def _load_local(self) -> None:
        rows = await asyncio.to_thread(self.db.overrides.query, self.tenant_id)
        self.overrides = {o.menu_item_id: o for o in rows}

    def get_override(self, menu_item_id: str) -> Optional[DineInPriceOverride]:
        return self.overrides.get(menu_item_id)

    def effective_price(self, menu_item_id: str, menu_price: float) -> float:
        o = self.overrides.get(menu_item_id)
        if o is not None and o.dine_in_price is not None:
            return o.dine_in_price
        return menu_price

    def is_available(self, menu_item_id: str) -> bool:
        o = self.overrides.get(menu_item_id)
        return True if o is None else o.dine_in_available

    def list_overrides(self) -> list[DineInPriceOverride]:
        return list(self.overrides.values())

    # Local mutations

    async def save_override(
        self,
        menu_item_id: str,
        dine_in_price: Optional[float] = None,
        dine_in_available: bool = True,
    ) -> Optional[DineInPriceOverride]:
        menu_item_id = (menu_item_id or "").strip()
        if not menu_item_id:
            raise ValueError("menu_item_id is required")
        if dine_in_price is not None and float(dine_in_price) < 0:
            raise ValueError("dine_in_price must be >= 0")

        now = utcnow_iso()
        existing = self.overrides.get(menu_item_id)
        override = DineInPriceOverride(
            menu_item_id=menu_item_id,
            dine_in_price=dine_in_price,
            dine_in_available=dine_in_available,
            tenant_id=self.tenant_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if override.is_noop():
            await self.reset_override(menu_item_id)
            return None

        self.overrides = {**self.overrides, menu_item_id: override}
        await self._persist("save_override", self.db.overrides.upsert, override)
        self._notify()
        json_log("info", "dine_in_pricing.saved", tenant_id=self.tenant_id, menu_item_id=menu_item_id)

        if self._is_authoritative():
            await self._push_single(override)
        await self._broadcast("updated" if existing else "added", menu_item_id, override.to_wire())
        return override

    async def reset_override(self, menu_item_id: str) -> bool:
        if menu_item_id not in self.overrides:
            return False
        self.overrides = {k: v for k, v in self.overrides.items() if k != menu_item_id}
        await self._persist("reset_override", self.db.overrides.delete, menu_item_id, self.tenant_id)
        self._notify()
        json_log("info", "dine_in_pricing.reset", tenant_id=self.tenant_id, menu_item_id=menu_item_id)

        if self._is_authoritative():
            await self._push_delete(menu_item_id)
        await self._broadcast("removed", menu_item_id)
        return True

    async def reset_all(self) -> int:
        ids = list(self.overrides)
        self.overrides = {}
        try:
            count = await asyncio.to_thread(self.db.overrides.delete_all, self.tenant_id)
        except Exception as ex:
            json_log("error", "dine_in_pricing.reset_all.persist_failed", tenant_id=self.tenant_id, error=str(ex))
            count = len(ids)
        self._notify()
        json_log("info", "dine_in_pricing.reset_all", tenant_id=self.tenant_id, count=count)

        if self._is_authoritative():
            try:
                await self.cloud.reset_dine_in_overrides(self.tenant_id)
            except Exception as ex:
                json_log("warning", "dine_in_pricing.cloud_reset.failed", tenant_id=self.tenant_id, error=str(ex))
        for menu_item_id in ids:
            await self._broadcast("removed", menu_item_id)
        return count

    async def cleanup_orphaned(self, valid_menu_item_ids: Iterable[str]) -> int:
        """Drop overrides whose menu item no longer exists. An empty id list removes nothing."""
        valid = set(valid_menu_item_ids or [])
        if not valid:
            return 0
        orphaned = [k for k in self.overrides if k not in valid]
        for menu_item_id in orphaned:
            await self.reset_override(menu_item_id)
        if orphaned:
            json_log("info", "dine_in_pricing.orphans_removed", tenant_id=self.tenant_id, count=len(orphaned))
        return len(orphaned)

    async def _push_single(self, override: DineInPriceOverride) -> None:
        try:
            await self.cloud.save_dine_in_override(self.tenant_id, override.to_wire())
        except Exception as ex:
            json_log(
                "warning",
                "dine_in_pricing.cloud_save.failed",
                tenant_id=self.tenant_id,
                menu_item_id=override.menu_item_id,
                error=str(ex),
            )

    async def _push_delete(self, menu_item_id: str) -> None:
        try:
            await self.cloud.delete_dine_in_override(self.tenant_id, menu_item_id)
        except Exception as ex:
            json_log(
                "warning",
                "dine_in_pricing.cloud_delete.failed",
                tenant_id=self.tenant_id,
                menu_item_id=menu_item_id,
                error=str(ex),
            )

    # Cloud sync

    async def sync_to_cloud(self, tenant_id: str) -> bool:
        return await self._run_sync("sync_to_cloud", tenant_id, self._push)

    async def _push(self, tenant_id: str) -> None:
        payload = [o.to_wire() for o in self.overrides.values()]
        saved = await self.cloud.bulk_save_dine_in_overrides(tenant_id, payload)
        json_log("info", "dine_in_pricing.bulk_pushed", tenant_id=tenant_id, sent=len(payload), saved=saved)
        await self._mark_synced(tenant_id)

    # Peer events

    async def apply_remote_added(self, payload: dict) -> bool:
        override = DineInPriceOverride.model_validate(payload)
        if override.menu_item_id in self.overrides:
            return False
        override = override.model_copy(update={"tenant_id": self.tenant_id})
        self.overrides = {**self.overrides, override.menu_item_id: override}
        await self._persist("apply_remote_added", self.db.overrides.upsert, override)
        self._notify()
        return True

    async def apply_remote_updated(self, entity_id: str, partial: dict) -> bool:
        existing = self.overrides.get(entity_id)
        if existing is None:
            return False
        clean = {}
        for key, value in (partial or {}).items():
            name = field_name(DineInPriceOverride, key)
            if name and name not in {"menu_item_id", "tenant_id"}:
                clean[name] = value
        if not clean:
            return False
        updated = with_updates(existing, {**clean, "updated_at": utcnow_iso()})
        self.overrides = {**self.overrides, entity_id: updated}
        await self._persist("apply_remote_updated", self.db.overrides.upsert, updated)
        self._notify()
        return True

    async def apply_remote_removed(self, entity_id: str) -> bool:
        if entity_id not in self.overrides:
            return False
        self.overrides = {k: v for k, v in self.overrides.items() if k != entity_id}
        await self._persist("apply_remote_removed", self.db.overrides.delete, entity_id, self.tenant_id)
        self._notify()
        return True
