import asyncio
import copy
import os
import sys
import threading

import pytest


# Allow running pytest from either the repo root or from within `possync/`.
# Tests import `possync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from possync.app.broadcast import LocalPeerHub  # noqa: E402
from possync.app.cloud import CloudError  # noqa: E402
from possync.app.db import LocalStore  # noqa: E402


class FakeCloud:
    """
    In-memory stand-in for CloudClient.

    - `calls` records (method, tenant_id, payload) for every request
    - names in `fail` raise CloudError
    - when `gate` is an asyncio.Event, requests park on it (after setting `entered`)
    """

    def __init__(self):
        self.staff: list[dict] = []
        self.settings = None
        self.orders: list[dict] = []
        self.calls: list[tuple] = []
        self.fail: set[str] = set()
        self.gate = None
        self.entered = None

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def payloads(self, name: str) -> list:
        return [c[2] for c in self.calls if c[0] == name]

    async def _hit(self, name: str, tenant_id: str, payload=None):
        self.calls.append((name, tenant_id, copy.deepcopy(payload)))
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if name in self.fail:
            raise CloudError(f"{name} failed", status=503)

    async def get_staff(self, tenant_id):
        await self._hit("get_staff", tenant_id)
        return copy.deepcopy(self.staff)

    async def save_staff(self, tenant_id, staff):
        await self._hit("save_staff", tenant_id, staff)

    async def get_settings(self, tenant_id):
        await self._hit("get_settings", tenant_id)
        return copy.deepcopy(self.settings)

    async def save_settings(self, tenant_id, settings_data):
        await self._hit("save_settings", tenant_id, settings_data)

    async def bulk_save_dine_in_overrides(self, tenant_id, overrides):
        await self._hit("bulk_save_dine_in_overrides", tenant_id, overrides)
        return len(overrides)

    async def save_dine_in_override(self, tenant_id, override):
        await self._hit("save_dine_in_override", tenant_id, override)

    async def delete_dine_in_override(self, tenant_id, menu_item_id):
        await self._hit("delete_dine_in_override", tenant_id, menu_item_id)

    async def reset_dine_in_overrides(self, tenant_id):
        await self._hit("reset_dine_in_overrides", tenant_id)
        return 0

    async def get_aggregator_orders(self, tenant_id, limit=100):
        await self._hit("get_aggregator_orders", tenant_id, {"limit": limit})
        return copy.deepcopy(self.orders)


class WriteGate:
    """Parks a wrapped local-store write in its worker thread until `release` is set."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def wrap(self, fn):
        def _held(*args, **kwargs):
            self.entered.set()
            self.release.wait(5)
            return fn(*args, **kwargs)

        return _held

    async def wait_entered(self):
        assert await asyncio.to_thread(self.entered.wait, 5)


@pytest.fixture
def make_db(tmp_path):
    def _make(name: str = "pos.sqlite") -> LocalStore:
        store = LocalStore(str(tmp_path / name))
        store.load()
        return store

    return _make


@pytest.fixture
def db(make_db):
    return make_db()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def hub():
    return LocalPeerHub()


@pytest.fixture
def write_gate():
    return WriteGate()
