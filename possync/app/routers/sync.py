from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_device
from ..device import DeviceContext
from ..merge import ENTITY_POLICIES

router = APIRouter(prefix="/sync", tags=["sync"])


def _store_or_404(device: DeviceContext, entity: str):
    if entity not in ENTITY_POLICIES:
        raise HTTPException(status_code=404, detail=f"unknown entity: {entity}")
    return device.store(entity)


@router.get("/status")
def sync_status(device: DeviceContext = Depends(get_device)):
    return device.status()


@router.post("/{entity}/pull")
async def pull(entity: str, device: DeviceContext = Depends(get_device)):
    store = _store_or_404(device, entity)
    fn = getattr(store, "sync_from_cloud", None)
    if fn is None:
        raise HTTPException(status_code=400, detail=f"{entity} does not pull from cloud")
    ok = await fn(device.tenant_id)
    return {"ok": ok, **store.status()}


@router.post("/{entity}/push")
async def push(entity: str, confirm: bool = False, device: DeviceContext = Depends(get_device)):
    store = _store_or_404(device, entity)
    fn = getattr(store, "sync_to_cloud", None)
    if fn is None:
        raise HTTPException(status_code=400, detail=f"{entity} does not push to cloud")
    if entity == "settings":
        if not device.settings_store.is_sync_authoritative():
            raise HTTPException(status_code=409, detail="only a server device may push settings")
        if not confirm:
            raise HTTPException(status_code=400, detail="confirm=true is required to overwrite cloud settings")
        ok = await fn(device.tenant_id, confirmed=True)
    else:
        ok = await fn(device.tenant_id)
    return {"ok": ok, **store.status()}
