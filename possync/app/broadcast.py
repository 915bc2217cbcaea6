"""
Peer broadcast channel.

Individual mutations (added/updated/removed) are fanned out to other devices of
the same tenant so they can update without a full cloud round-trip.

Delivery is best-effort: nothing is retried and nothing is raised to the
caller. `publish` returns a BroadcastResult instead, and callers are free to
discard it; a lost event is repaired by the next full pull from the cloud.
"""

import asyncio
import json
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import Field

from .db import utcnow_iso
from .logs import json_log
from .models import WireModel
from .validation import PeerAction


class PeerEvent(WireModel):
    entity: str
    action: PeerAction
    entity_id: str
    tenant_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    origin_device_id: str = ""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sent_at: str = Field(default_factory=utcnow_iso)

    @property
    def name(self) -> str:
        return f"{self.entity}.{self.action}"


@dataclass(frozen=True)
class BroadcastError:
    event: str
    message: str


@dataclass(frozen=True)
class BroadcastResult:
    delivered: int = 0
    error: Optional[BroadcastError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PeerDeliveryError(Exception):
    pass


Handler = Callable[[PeerEvent], Awaitable[None]]


class PeerChannel:
    def __init__(self, device_id: str):
        self.device_id = device_id
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, entity: str, handler: Handler) -> Callable[[], None]:
        handlers = self._handlers.setdefault(entity, [])
        handlers.append(handler)

        def _unsubscribe():
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    async def _send(self, event: PeerEvent) -> int:
        raise NotImplementedError

    async def publish(self, event: PeerEvent) -> BroadcastResult:
        if not event.origin_device_id:
            event = event.model_copy(update={"origin_device_id": self.device_id})
        try:
            delivered = await self._send(event)
            return BroadcastResult(delivered=delivered)
        except Exception as ex:
            json_log(
                "warning",
                "broadcast.publish.failed",
                peer_event=event.name,
                entity_id=event.entity_id,
                error=str(ex),
            )
            return BroadcastResult(error=BroadcastError(event=event.name, message=str(ex)))

    async def broadcast_added(self, entity: str, tenant_id: str, entity_id: str, payload: dict) -> BroadcastResult:
        return await self.publish(
            PeerEvent(entity=entity, action="added", entity_id=entity_id, tenant_id=tenant_id, payload=payload)
        )

    async def broadcast_updated(self, entity: str, tenant_id: str, entity_id: str, partial: dict) -> BroadcastResult:
        return await self.publish(
            PeerEvent(entity=entity, action="updated", entity_id=entity_id, tenant_id=tenant_id, payload=partial)
        )

    async def broadcast_removed(self, entity: str, tenant_id: str, entity_id: str) -> BroadcastResult:
        return await self.publish(
            PeerEvent(entity=entity, action="removed", entity_id=entity_id, tenant_id=tenant_id)
        )

    async def deliver(self, event: PeerEvent) -> int:
        """Dispatch an incoming event to local handlers. Returns how many ran cleanly."""
        if event.origin_device_id and event.origin_device_id == self.device_id:
            return 0
        applied = 0
        for handler in list(self._handlers.get(event.entity, [])):
            try:
                await handler(event)
                applied += 1
            except Exception as ex:
                json_log(
                    "warning",
                    "broadcast.apply.failed",
                    peer_event=event.name,
                    entity_id=event.entity_id,
                    origin=event.origin_device_id,
                    error=str(ex),
                )
        return applied


class LocalPeerHub:
    """In-process fan-out between several device channels (tests, multi-window kiosks)."""

    def __init__(self):
        self.channels: list["LocalPeerChannel"] = []

    def channel(self, device_id: str) -> "LocalPeerChannel":
        ch = LocalPeerChannel(device_id, self)
        self.channels.append(ch)
        return ch


class LocalPeerChannel(PeerChannel):
    def __init__(self, device_id: str, hub: LocalPeerHub):
        super().__init__(device_id)
        self.hub = hub
        self.sent: list[PeerEvent] = []

    async def _send(self, event: PeerEvent) -> int:
        self.sent.append(event)
        delivered = 0
        for ch in list(self.hub.channels):
            if ch is self:
                continue
            await ch.deliver(event)
            delivered += 1
        return delivered


class HttpPeerChannel(PeerChannel):
    """POSTs each event to every known LAN peer at `/lan-sync/events`."""

    def __init__(self, device_id: str, peer_urls: list[str], key: str = "", timeout: float = 2.0):
        super().__init__(device_id)
        self.peer_urls = [u.rstrip("/") for u in peer_urls or [] if u]
        self.key = key or ""
        self.timeout = timeout

    def _post(self, base_url: str, body: bytes) -> None:
        req = urllib.request.Request(
            f"{base_url}/lan-sync/events",
            data=body,
            headers={
                "Content-Type": "application/json",
                "X-Lan-Sync-Key": self.key,
                "X-Device-Id": self.device_id,
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            resp.read()

    async def _send(self, event: PeerEvent) -> int:
        if not self.peer_urls:
            return 0
        body = json.dumps(event.to_wire()).encode("utf-8")
        results = await asyncio.gather(
            *(asyncio.to_thread(self._post, url, body) for url in self.peer_urls),
            return_exceptions=True,
        )
        delivered = 0
        for url, res in zip(self.peer_urls, results):
            if isinstance(res, Exception):
                json_log("warning", "broadcast.peer.unreachable", peer=url, peer_event=event.name, error=str(res))
            else:
                delivered += 1
        if delivered == 0:
            raise PeerDeliveryError(f"no peer accepted {event.name}")
        return delivered
