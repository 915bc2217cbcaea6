"""
Per-device service object.

Owns the local store, the cloud client, the peer channel and one store per
entity type. Nothing here is module-global: the HTTP app and the worker each
build their own DeviceContext and drive its init/dispose lifecycle.
"""

from typing import Optional

from .broadcast import HttpPeerChannel, PeerChannel
from .cloud import CloudClient
from .config import Settings, settings as default_settings
from .db import LocalStore
from .logs import json_log
from .stores.aggregator import AggregatorOrderStore
from .stores.base import SyncStore
from .stores.pricing import DineInPricingStore
from .stores.settings import RestaurantSettingsStore
from .stores.staff import StaffStore


class DeviceContext:
    def __init__(
        self,
        db: LocalStore,
        cloud: CloudClient,
        channel: Optional[PeerChannel] = None,
        *,
        authoritative: Optional[bool] = None,
    ):
        self.db = db
        self.cloud = cloud
        self.channel = channel
        self._authoritative = authoritative
        self.tenant_id = ""

        self.settings_store = RestaurantSettingsStore(db, cloud, channel)
        self.staff = StaffStore(db, cloud, channel, is_authoritative=self.is_sync_authoritative)
        self.pricing = DineInPricingStore(db, cloud, channel, is_authoritative=self.is_sync_authoritative)
        self.orders = AggregatorOrderStore(db, cloud, channel)

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "DeviceContext":
        cfg = cfg or default_settings
        channel = HttpPeerChannel(cfg.device_id, cfg.peer_urls, cfg.lan_sync_key, timeout=min(cfg.http_timeout, 5.0))
        cloud = CloudClient(cfg.cloud_base_url, cfg.cloud_token, cfg.http_timeout, cfg.device_id)
        return cls(LocalStore(cfg.db_path), cloud, channel, authoritative=cfg.sync_authoritative)

    def is_sync_authoritative(self) -> bool:
        if self._authoritative is not None:
            return self._authoritative
        return self.settings_store.is_sync_authoritative()

    def stores(self) -> list[SyncStore]:
        # Settings first: staff and pricing read the device role from it.
        return [self.settings_store, self.staff, self.pricing, self.orders]

    def store(self, entity: str) -> SyncStore:
        for s in self.stores():
            if s.entity == entity:
                return s
        raise KeyError(entity)

    async def init(self, tenant_id: str) -> None:
        for s in self.stores():
            await s.init(tenant_id)
        self.tenant_id = self.settings_store.tenant_id
        json_log(
            "info",
            "device.init",
            tenant_id=self.tenant_id,
            device_id=self.channel.device_id if self.channel else None,
            authoritative=self.is_sync_authoritative(),
        )

    def dispose(self) -> None:
        for s in self.stores():
            s.dispose()
        self.tenant_id = ""

    async def sync_all_from_cloud(self) -> dict[str, bool]:
        """Pull every entity that has a pull. Each entity succeeds or fails on its own."""
        results = {}
        for s in self.stores():
            pull = getattr(s, "sync_from_cloud", None)
            if pull is None:
                continue
            results[s.entity] = await pull(self.tenant_id)
        return results

    def status(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "authoritative": self.is_sync_authoritative(),
            "stores": [s.status() for s in self.stores()],
        }
