from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BeforeValidator

from .logs import json_log


class StaffRole(str, Enum):
    MANAGER = "manager"
    KITCHEN = "kitchen"
    SERVER = "server"
    AGGREGATOR = "aggregator"


# Older devices and the first local schema used a wider role vocabulary
# ('cashier', 'waiter', ...). Every string seen in the field is listed here.
LEGACY_ROLE_MAP: dict[str, StaffRole] = {
    "manager": StaffRole.MANAGER,
    "admin": StaffRole.MANAGER,
    "owner": StaffRole.MANAGER,
    "kitchen": StaffRole.KITCHEN,
    "chef": StaffRole.KITCHEN,
    "cook": StaffRole.KITCHEN,
    "server": StaffRole.SERVER,
    "waiter": StaffRole.SERVER,
    "cashier": StaffRole.SERVER,
    "captain": StaffRole.SERVER,
    "aggregator": StaffRole.AGGREGATOR,
    "delivery": StaffRole.AGGREGATOR,
}

DEFAULT_ROLE = StaffRole.SERVER


def normalize_role(raw) -> StaffRole:
    """
    Map any stored/transmitted role value onto the closed StaffRole set.

    Unknown values fall back to DEFAULT_ROLE (least privileged floor role)
    and are logged, never rejected: a roster row with an odd role must still
    load so the member can log in.
    """
    if isinstance(raw, StaffRole):
        return raw
    key = str(raw or "").strip().lower()
    role = LEGACY_ROLE_MAP.get(key)
    if role is not None:
        return role
    json_log("warning", "staff.role.unknown", raw_role=str(raw), fallback=DEFAULT_ROLE.value)
    return DEFAULT_ROLE


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


StaffRoleField = Annotated[StaffRole, BeforeValidator(normalize_role)]
DeviceRole = Annotated[Literal["server", "client"], BeforeValidator(_to_lower_str)]
PaperWidth = Annotated[Literal["58mm", "80mm"], BeforeValidator(_to_lower_str)]
AggregatorOrderStatus = Annotated[
    Literal["pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "completed", "cancelled"],
    BeforeValidator(_to_lower_str),
]
PeerAction = Annotated[Literal["added", "updated", "removed"], BeforeValidator(_to_lower_str)]
