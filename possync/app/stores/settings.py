import asyncio
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..logs import json_log
from ..merge import merge_settings
from ..models import RestaurantSettings, field_name, with_updates
from .base import SyncStore

_CENT = Decimal("0.01")


def _d(v) -> Decimal:
    return Decimal(str(v or 0))


def _money(v: Decimal) -> Decimal:
    return v.quantize(_CENT, rounding=ROUND_HALF_UP)


class RestaurantSettingsStore(SyncStore):
    """
    Tenant-wide restaurant settings.

    - update_settings / reset_settings persist locally only
    - sync_from_cloud is always allowed; the cloud copy replaces the local one
      (deviceRole stays local, the invoice counter never moves backwards)
    - sync_to_cloud needs deviceRole == 'server' and an explicit confirmation
    """

    entity = "settings"
    broadcasts = False

    def __init__(self, db, cloud, channel=None):
        super().__init__(db, cloud, channel)
        self.settings = RestaurantSettings()
        self.is_configured = False

    async def _load_local(self) -> None:
        found = await asyncio.to_thread(self.db.load_settings, self.tenant_id)
        if not found:
            self.settings = RestaurantSettings()
            self.is_configured = False
            return
        try:
            self.settings = RestaurantSettings.model_validate(found["settings"])
            self.is_configured = bool(found["is_configured"])
        except Exception as ex:
            json_log("error", "settings.load.unreadable", tenant_id=self.tenant_id, error=str(ex))
            self.settings = RestaurantSettings()
            self.is_configured = False

    @property
    def device_role(self) -> str:
        return self.settings.device_role

    def is_sync_authoritative(self) -> bool:
        return self.settings.device_role == "server"

    def status(self) -> dict:
        return {**super().status(), "isConfigured": self.is_configured, "deviceRole": self.settings.device_role}

    async def _save_local(self, op: str) -> bool:
        return await self._persist(
            op,
            self.db.save_settings,
            self.tenant_id,
            self.settings.model_dump(mode="json", by_alias=True),
            self.is_configured,
        )

    async def update_settings(self, updates: dict) -> RestaurantSettings:
        unknown = [k for k in (updates or {}) if field_name(RestaurantSettings, k) is None]
        if unknown:
            raise ValueError(f"unknown settings fields: {', '.join(sorted(unknown))}")
        async with self._write_lock:
            self.settings = with_updates(self.settings, updates)
            self.is_configured = True
            await self._save_local("update_settings")
        self._notify()
        return self.settings

    async def reset_settings(self) -> None:
        async with self._write_lock:
            self.settings = RestaurantSettings()
            self.is_configured = False
            await self._save_local("reset_settings")
        self._notify()

    # Invoice numbering

    def get_next_invoice_number(self, today: Optional[date] = None) -> str:
        today = today or date.today()
        s = self.settings
        return f"{s.invoice_prefix}-{today.strftime('%y%m')}-{int(s.current_invoice_number):06d}"

    async def increment_invoice_number(self) -> int:
        async with self._write_lock:
            self.settings = self.settings.model_copy(
                update={"current_invoice_number": self.settings.current_invoice_number + 1}
            )
            issued = self.settings.current_invoice_number
            await self._save_local("increment_invoice_number")
        self._notify()
        return issued

    # Billing math

    def _round_off(self, total: Decimal) -> tuple[Decimal, Decimal]:
        if not self.settings.round_off_enabled:
            return _money(total), Decimal("0.00")
        grand = total.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return grand, _money(grand - total)

    def calculate_taxes(self, subtotal) -> dict:
        s = self.settings
        subtotal = _d(subtotal)
        service_rate = _d(s.service_charge_rate) if s.service_charge_enabled else Decimal("0")

        if not s.tax_enabled:
            service = subtotal * service_rate / 100
            total = subtotal + service
            grand, round_off = self._round_off(total)
            return {
                "cgst": Decimal("0.00"),
                "sgst": Decimal("0.00"),
                "service_charge": _money(service),
                "total": _money(total),
                "round_off": round_off,
                "grand_total": grand,
                "tax_included": False,
                "base_amount": subtotal,
            }

        cgst_rate = _d(s.cgst_rate)
        sgst_rate = _d(s.sgst_rate)

        if s.tax_included_in_price:
            base = subtotal / (1 + (cgst_rate + sgst_rate) / 100)
            service = base * service_rate / 100
            included_tax = subtotal - base
            total = subtotal + service
            grand, round_off = self._round_off(total)
            return {
                "cgst": _money(included_tax / 2),
                "sgst": _money(included_tax / 2),
                "service_charge": _money(service),
                "total": _money(total),
                "round_off": round_off,
                "grand_total": grand,
                "tax_included": True,
                "base_amount": _money(base),
            }

        service = subtotal * service_rate / 100
        taxable = subtotal + service
        cgst = taxable * cgst_rate / 100
        sgst = taxable * sgst_rate / 100
        total = subtotal + service + cgst + sgst
        grand, round_off = self._round_off(total)
        return {
            "cgst": _money(cgst),
            "sgst": _money(sgst),
            "service_charge": _money(service),
            "total": _money(total),
            "round_off": round_off,
            "grand_total": grand,
            "tax_included": False,
            "base_amount": subtotal,
        }

    def calculate_packing_charges(self, items: list[dict], order_type: str) -> dict:
        cfg = self.settings.packing_charges
        if not cfg.enabled or order_type != "takeout":
            return {"items": [], "total_charge": Decimal("0.00")}

        by_category = {str(k).lower(): v for k, v in (cfg.charges_by_category or {}).items()}
        lines = []
        total = Decimal("0")
        for item in items or []:
            category = str(item.get("category") or "")
            per_item = _d(by_category.get(category.lower(), cfg.default_charge))
            if per_item <= 0:
                continue
            qty = int(item.get("quantity") or 0)
            line_total = per_item * qty
            lines.append(
                {
                    "name": item.get("name"),
                    "category": category,
                    "quantity": qty,
                    "charge_per_item": per_item,
                    "total_charge": line_total,
                }
            )
            total += line_total
        return {"items": lines, "total_charge": _money(total)}

    # Cloud sync

    async def sync_from_cloud(self, tenant_id: str) -> bool:
        return await self._run_sync("sync_from_cloud", tenant_id, self._pull)

    async def sync_to_cloud(self, tenant_id: str, *, confirmed: bool = False) -> bool:
        if not self.is_sync_authoritative():
            json_log(
                "warning",
                "settings.sync_to_cloud.rejected",
                tenant_id=tenant_id,
                reason="device_role",
                device_role=self.settings.device_role,
            )
            return False
        if not confirmed:
            json_log("info", "settings.sync_to_cloud.rejected", tenant_id=tenant_id, reason="not_confirmed")
            return False
        return await self._run_sync("sync_to_cloud", tenant_id, self._push)

    async def _pull(self, tenant_id: str) -> None:
        data = await self.cloud.get_settings(tenant_id)
        if data is None:
            json_log("info", "settings.sync_from_cloud.not_found", tenant_id=tenant_id)
            return
        remote = RestaurantSettings.model_validate(data)
        async with self._write_lock:
            merged = merge_settings(self.settings, remote)
            await asyncio.to_thread(
                self.db.save_settings, tenant_id, merged.model_dump(mode="json", by_alias=True), True
            )
            self.settings = merged
            self.is_configured = True
        await self._mark_synced(tenant_id)

    async def _push(self, tenant_id: str) -> None:
        await self.cloud.save_settings(tenant_id, self.settings.to_wire())
        await self._mark_synced(tenant_id)
