import asyncio
from typing import Awaitable, Callable, Optional

from ..broadcast import BroadcastResult, PeerChannel, PeerEvent
from ..cloud import CloudClient
from ..db import LocalStore, utcnow_iso
from ..logs import json_log
from ..merge import MergePolicy, policy_for

Listener = Callable[["SyncStore"], None]


class SyncStore:
    """
    One per entity type per device. Owns the in-memory collection, keeps the
    local persistent store in step with it, and serializes cloud syncs.

    Sync guard: a second sync requested while one is in flight is dropped
    (not queued). Callers that need fresh data re-trigger afterwards.

    Mutations, peer applies and the merge-and-write step of a pull all run
    under _write_lock, so a change landing while a pull is writing is applied
    on top of the merged collection rather than overwritten by it.
    """

    entity = ""
    # Whether peer mutation events are exchanged for this entity.
    broadcasts = True

    def __init__(self, db: LocalStore, cloud: CloudClient, channel: Optional[PeerChannel] = None):
        self.db = db
        self.cloud = cloud
        self.channel = channel
        self.tenant_id = ""
        self.is_loaded = False
        self.is_syncing = False
        self.last_synced_at: Optional[str] = None
        self._listeners: list[Listener] = []
        self._write_lock = asyncio.Lock()
        self._unsubscribe_peer: Optional[Callable[[], None]] = None

    @property
    def policy(self) -> MergePolicy:
        return policy_for(self.entity)

    # Lifecycle

    async def init(self, tenant_id: str) -> None:
        tenant_id = (tenant_id or "").strip()
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if self.is_loaded and tenant_id != self.tenant_id:
            self.dispose()
        self.tenant_id = tenant_id
        if not self.db.loaded:
            await asyncio.to_thread(self.db.load)
        await self._load_local()
        try:
            self.last_synced_at = await asyncio.to_thread(self.db.get_last_synced, self.entity, tenant_id)
        except Exception as ex:
            json_log("error", f"{self.entity}.load_sync_state.failed", tenant_id=tenant_id, error=str(ex))
        if self.channel is not None and self.broadcasts and self._unsubscribe_peer is None:
            self._unsubscribe_peer = self.channel.subscribe(self.entity, self._on_peer_event)
        self.is_loaded = True
        self._notify()

    def dispose(self) -> None:
        if self._unsubscribe_peer is not None:
            self._unsubscribe_peer()
            self._unsubscribe_peer = None
        self._listeners.clear()
        self.is_loaded = False

    async def _load_local(self) -> None:
        raise NotImplementedError

    # Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as ex:
                json_log("warning", f"{self.entity}.listener.failed", error=str(ex))

    def status(self) -> dict:
        return {
            "entity": self.entity,
            "tenantId": self.tenant_id,
            "isLoaded": self.is_loaded,
            "isSyncing": self.is_syncing,
            "lastSyncedAt": self.last_synced_at,
        }

    # Sync plumbing

    async def _run_sync(self, op: str, tenant_id: str, fn: Callable[[str], Awaitable[None]]) -> bool:
        if self.is_syncing:
            json_log("info", f"{self.entity}.{op}.skipped", tenant_id=tenant_id, reason="sync_in_flight")
            return False
        tenant_id = (tenant_id or "").strip()
        if not tenant_id:
            json_log("warning", f"{self.entity}.{op}.skipped", reason="missing_tenant_id")
            return False
        if self.tenant_id and tenant_id != self.tenant_id:
            json_log(
                "warning",
                f"{self.entity}.{op}.skipped",
                tenant_id=tenant_id,
                loaded_tenant_id=self.tenant_id,
                reason="tenant_mismatch",
            )
            return False

        self.is_syncing = True
        self._notify()
        try:
            await fn(tenant_id)
        except Exception as ex:
            json_log("error", f"{self.entity}.{op}.failed", tenant_id=tenant_id, error=str(ex))
            return False
        finally:
            self.is_syncing = False
            self._notify()
        json_log("info", f"{self.entity}.{op}.done", tenant_id=tenant_id)
        return True

    async def _mark_synced(self, tenant_id: str) -> None:
        synced_at = utcnow_iso()
        self.last_synced_at = synced_at
        try:
            await asyncio.to_thread(self.db.set_last_synced, self.entity, tenant_id, synced_at)
        except Exception as ex:
            json_log("error", f"{self.entity}.save_sync_state.failed", tenant_id=tenant_id, error=str(ex))

    async def _persist(self, op: str, fn, *args) -> bool:
        """Run a local-store write; failures are logged and reported as False."""
        try:
            await asyncio.to_thread(fn, *args)
            return True
        except Exception as ex:
            json_log("error", f"{self.entity}.{op}.persist_failed", tenant_id=self.tenant_id, error=str(ex))
            return False

    # Peers

    async def _broadcast(self, action: str, entity_id: str, payload: Optional[dict] = None) -> BroadcastResult:
        if self.channel is None or not self.broadcasts:
            return BroadcastResult()
        if action == "added":
            return await self.channel.broadcast_added(self.entity, self.tenant_id, entity_id, payload or {})
        if action == "updated":
            return await self.channel.broadcast_updated(self.entity, self.tenant_id, entity_id, payload or {})
        return await self.channel.broadcast_removed(self.entity, self.tenant_id, entity_id)

    async def _on_peer_event(self, event: PeerEvent) -> None:
        if not self.is_loaded:
            return
        if event.tenant_id and event.tenant_id != self.tenant_id:
            return
        if event.action == "added":
            await self.apply_remote_added(event.payload)
        elif event.action == "updated":
            await self.apply_remote_updated(event.entity_id, event.payload)
        elif event.action == "removed":
            await self.apply_remote_removed(event.entity_id)

    async def apply_remote_added(self, payload: dict) -> bool:
        return False

    async def apply_remote_updated(self, entity_id: str, partial: dict) -> bool:
        return False

    async def apply_remote_removed(self, entity_id: str) -> bool:
        return False
