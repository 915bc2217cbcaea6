import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import ValidationError

from ..broadcast import PeerEvent
from ..config import settings
from ..deps import get_device
from ..device import DeviceContext
from ..logs import json_log

router = APIRouter(prefix="/lan-sync", tags=["lan-sync"])


def _require_lan_auth(x_lan_sync_key: Optional[str]) -> None:
    """
    Peers on the same LAN share one key (POS_LAN_SYNC_KEY).
    Production fails closed when no key is configured; local/dev accepts
    unauthenticated events only while the key is left empty.
    """
    expected = (settings.lan_sync_key or "").strip()
    presented = (x_lan_sync_key or "").strip()
    if not expected:
        if settings.is_production:
            raise HTTPException(status_code=403, detail="lan sync not configured")
        return
    if not presented or not hmac.compare_digest(presented, expected):
        raise HTTPException(status_code=403, detail="forbidden")


@router.post("/events")
async def receive_event(
    data: dict[str, Any],
    x_lan_sync_key: Optional[str] = Header(None, alias="X-Lan-Sync-Key"),
    device: DeviceContext = Depends(get_device),
):
    _require_lan_auth(x_lan_sync_key)
    try:
        event = PeerEvent.model_validate(data)
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=f"invalid event: {ex.error_count()} error(s)") from None
    if device.channel is None:
        raise HTTPException(status_code=503, detail="peer channel disabled")
    if event.tenant_id and device.tenant_id and event.tenant_id != device.tenant_id:
        raise HTTPException(status_code=403, detail="tenant mismatch")

    applied = await device.channel.deliver(event)
    json_log(
        "info",
        "lan_sync.event.received",
        peer_event=event.name,
        entity_id=event.entity_id,
        origin=event.origin_device_id,
        applied=applied,
    )
    return {"ok": True, "applied": applied}


@router.get("/status")
def lan_status(device: DeviceContext = Depends(get_device)):
    channel = device.channel
    return {
        "deviceId": channel.device_id if channel else None,
        "peers": list(getattr(channel, "peer_urls", []) or []),
        "keyConfigured": bool(settings.lan_sync_key),
        "tenantId": device.tenant_id,
    }
