from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .security import PIN_MASK
from .validation import AggregatorOrderStatus, DeviceRole, PaperWidth, StaffRole, StaffRoleField


class WireModel(BaseModel):
    # Cloud and peer payloads are camelCase; python code uses field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def wire_key(model_cls: type[BaseModel], name: str) -> str:
    return model_cls.model_fields[name].alias or to_camel(name)


def field_name(model_cls: type[BaseModel], key: str) -> Optional[str]:
    if key in model_cls.model_fields:
        return key
    for name in model_cls.model_fields:
        if wire_key(model_cls, name) == key:
            return name
    return None


def with_updates(model: BaseModel, updates: dict[str, Any]) -> BaseModel:
    """Return a validated copy of `model` with `updates` (field names or wire aliases) applied."""
    cls = type(model)
    data = model.model_dump()
    for key, value in (updates or {}).items():
        name = field_name(cls, key)
        if name:
            data[name] = value
    return cls.model_validate(data)


class StaffMember(WireModel):
    id: str
    name: str = ""
    role: StaffRoleField = StaffRole.SERVER
    pin_hash: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    joined_at: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def pin(self) -> str:
        # The raw PIN is never held; UI code only ever sees the mask.
        return PIN_MASK

    def to_public(self) -> dict:
        data = self.model_dump(mode="json", by_alias=True, exclude={"pin_hash"})
        data["pin"] = PIN_MASK
        return data


class Address(WireModel):
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""


class PosSettings(WireModel):
    require_staff_pin_for_pos: bool = Field(False, alias="requireStaffPinForPOS")
    filter_tables_by_staff_assignment: bool = False
    pin_session_timeout_minutes: int = 0


class PackingCharges(WireModel):
    enabled: bool = False
    charges_by_category: dict[str, float] = Field(default_factory=dict)
    default_charge: float = 5


class RestaurantSettings(WireModel):
    name: str = "Restaurant Name"
    tagline: str = ""
    address: Address = Field(default_factory=Address)
    phone: str = ""
    email: str = ""
    website: str = ""

    gst_number: str = ""
    fssai_number: str = ""
    pan_number: str = ""
    cin_number: str = ""

    invoice_prefix: str = "INV"
    invoice_start_number: int = 1
    current_invoice_number: int = 1
    invoice_terms: str = "Thank you for dining with us!"
    footer_note: str = "This is a computer generated invoice."

    tax_enabled: bool = True
    cgst_rate: float = 2.5
    sgst_rate: float = 2.5
    service_charge_rate: float = 0
    service_charge_enabled: bool = False
    round_off_enabled: bool = True
    tax_included_in_price: bool = False

    print_logo: bool = False
    logo_url: str = ""
    print_qr_code: bool = Field(False, alias="printQRCode")
    qr_code_url: str = ""
    paper_width: PaperWidth = "80mm"
    show_itemwise_tax: bool = False

    pos_settings: PosSettings = Field(default_factory=PosSettings)

    # Device-local: only a 'server' device may overwrite the cloud copy.
    device_role: DeviceRole = "client"

    packing_charges: PackingCharges = Field(default_factory=PackingCharges)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"device_role"})


class DineInPriceOverride(WireModel):
    menu_item_id: str
    dine_in_price: Optional[float] = None
    dine_in_available: bool = True
    tenant_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def is_noop(self) -> bool:
        """True when the override changes nothing (cloud price, still available)."""
        return self.dine_in_price is None and self.dine_in_available

    def to_wire(self) -> dict:
        return {
            "menuItemId": self.menu_item_id,
            "dineInPrice": self.dine_in_price,
            "dineInAvailable": self.dine_in_available,
        }


class AggregatorOrder(WireModel):
    order_id: str
    order_number: str = ""
    aggregator: str = ""
    aggregator_order_id: Optional[str] = None
    status: AggregatorOrderStatus = "pending"
    order_type: Literal["delivery", "pickup"] = "delivery"
    customer_name: str = "Customer"
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    subtotal: float = 0
    tax: float = 0
    delivery_fee: float = 0
    platform_fee: float = 0
    discount: float = 0
    total: float = 0
    payment_method: str = "online"
    payment_status: str = "pending"
    is_prepaid: bool = False
    special_instructions: Optional[str] = None
    created_at: str = ""
    accepted_at: Optional[str] = None
    ready_at: Optional[str] = None
    delivered_at: Optional[str] = None
    tenant_id: Optional[str] = None
