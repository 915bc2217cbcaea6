from fastapi import HTTPException, Request

from .device import DeviceContext


def get_device(request: Request) -> DeviceContext:
    device = getattr(request.app.state, "device", None)
    if device is None:
        raise HTTPException(status_code=503, detail="device not initialized")
    return device
