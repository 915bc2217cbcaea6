"""
Remote store client.

Thin tenant-scoped wrapper over the cloud REST endpoints. Every call carries the
tenant id (path and `X-Tenant-ID` header). Calls are blocking `urllib` requests
run on a worker thread so the event loop only suspends on the network.
"""

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any, Optional
from urllib.parse import quote, urlencode

from .config import settings


class CloudError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CloudClient:
    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0, device_id: str = ""):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token or ""
        self.timeout = timeout
        self.device_id = device_id or ""

    @classmethod
    def from_settings(cls) -> "CloudClient":
        return cls(settings.cloud_base_url, settings.cloud_token, settings.http_timeout, settings.device_id)

    def _headers(self, tenant_id: str) -> dict:
        headers = {"Accept": "application/json", "X-Tenant-ID": tenant_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    def _request(self, method: str, path: str, tenant_id: str, payload: Any = None, *, allow_404: bool = False):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        url = f"{self.base_url}{path}"
        data = None
        headers = self._headers(tenant_id)
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8") if resp else ""
        except urllib.error.HTTPError as ex:
            if allow_404 and ex.code == 404:
                return None
            try:
                detail = ex.read().decode("utf-8")
            except Exception:
                detail = ""
            msg = f"http {ex.code} {getattr(ex, 'reason', '')}".strip()
            if detail:
                msg = f"{msg}: {detail[:1000]}"
            raise CloudError(msg, status=ex.code) from ex

        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except ValueError as ex:
            raise CloudError(f"invalid JSON response: {body[:200]}") from ex
        if isinstance(parsed, dict) and parsed.get("success") is False:
            raise CloudError(str(parsed.get("error") or f"{method} {path} failed"))
        return parsed

    async def _call(self, method: str, path: str, tenant_id: str, payload: Any = None, *, allow_404: bool = False):
        return await asyncio.to_thread(self._request, method, path, tenant_id, payload, allow_404=allow_404)

    @staticmethod
    def _list(data: Any, key: str) -> list:
        if data is None:
            return []
        value = data.get(key) if isinstance(data, dict) else data
        if value is None:
            return []
        if not isinstance(value, list):
            raise CloudError(f"malformed response: '{key}' is not a list")
        return value

    # Staff

    async def get_staff(self, tenant_id: str) -> list[dict]:
        data = await self._call("GET", f"/api/staff/{quote(tenant_id)}", tenant_id, allow_404=True)
        return self._list(data, "staff")

    async def save_staff(self, tenant_id: str, staff: list[dict]) -> None:
        await self._call("PUT", f"/api/staff/{quote(tenant_id)}", tenant_id, {"staff": staff})

    # Restaurant settings

    async def get_settings(self, tenant_id: str) -> Optional[dict]:
        data = await self._call("GET", f"/api/settings/{quote(tenant_id)}", tenant_id, allow_404=True)
        if not data:
            return None
        found = data.get("settings") if isinstance(data, dict) else None
        if found is not None and not isinstance(found, dict):
            raise CloudError("malformed response: 'settings' is not an object")
        return found

    async def save_settings(self, tenant_id: str, settings_data: dict) -> None:
        await self._call("PUT", f"/api/settings/{quote(tenant_id)}", tenant_id, {"settings": settings_data})

    # Dine-in pricing overrides

    async def bulk_save_dine_in_overrides(self, tenant_id: str, overrides: list[dict]) -> int:
        data = await self._call("POST", "/admin/menu/dine-in-pricing/bulk", tenant_id, {"overrides": overrides})
        data = data or {}
        if data.get("savedCount") is None:
            return len(overrides)
        return int(data["savedCount"])

    async def save_dine_in_override(self, tenant_id: str, override: dict) -> None:
        menu_item_id = quote(str(override["menuItemId"]))
        body = {"dineInPrice": override.get("dineInPrice"), "dineInAvailable": override.get("dineInAvailable", True)}
        await self._call("PUT", f"/admin/menu/dine-in-pricing/{menu_item_id}", tenant_id, body)

    async def delete_dine_in_override(self, tenant_id: str, menu_item_id: str) -> None:
        await self._call("DELETE", f"/admin/menu/dine-in-pricing/{quote(menu_item_id)}", tenant_id)

    async def reset_dine_in_overrides(self, tenant_id: str) -> int:
        data = await self._call("DELETE", "/admin/menu/dine-in-pricing", tenant_id)
        return int((data or {}).get("deletedCount") or 0)

    # Aggregator (delivery platform) orders

    async def get_aggregator_orders(self, tenant_id: str, limit: int = 100) -> list[dict]:
        qs = urlencode({"limit": int(limit)})
        data = await self._call("GET", f"/api/aggregator-orders/{quote(tenant_id)}?{qs}", tenant_id, allow_404=True)
        return self._list(data, "orders")
