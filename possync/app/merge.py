"""
Merge engine: pure functions reconciling a local collection with a cloud one.

Each entity type is bound to one named policy in ENTITY_POLICIES.
"""

from enum import Enum
from typing import Optional

from .models import AggregatorOrder, RestaurantSettings, StaffMember


class MergePolicy(str, Enum):
    # Cloud object replaces the local one on pull; local replaces cloud on push.
    REPLACE_WHOLESALE = "replace_wholesale"
    # Cloud wins for business fields, local keeps credential material the cloud lacks.
    MERGE_PREFER_LOCAL_CREDENTIALS = "merge_prefer_local_credentials"
    # Union keyed by id; entries already held locally are never replaced.
    ADDITIVE_BY_ID = "additive_by_id"
    # One-directional local -> cloud bulk push; nothing is pulled.
    PUSH_ONLY = "push_only"


ENTITY_POLICIES: dict[str, MergePolicy] = {
    "staff": MergePolicy.MERGE_PREFER_LOCAL_CREDENTIALS,
    "settings": MergePolicy.REPLACE_WHOLESALE,
    "dine_in_pricing": MergePolicy.PUSH_ONLY,
    "aggregator_orders": MergePolicy.ADDITIVE_BY_ID,
}

# Fields that stay on the device no matter what the cloud sends.
SETTINGS_DEVICE_LOCAL_FIELDS = ("device_role",)
# Counters that only move forward; the larger of local and cloud is kept.
SETTINGS_MONOTONIC_FIELDS = ("current_invoice_number",)

STAFF_CREDENTIAL_FIELDS = ("pin_hash",)


def policy_for(entity: str) -> MergePolicy:
    try:
        return ENTITY_POLICIES[entity]
    except KeyError:
        raise ValueError(f"unknown entity: {entity}") from None


def merge_staff_member(local: StaffMember, remote: StaffMember) -> StaffMember:
    data = local.model_dump()
    for name in remote.model_fields_set:
        if name in STAFF_CREDENTIAL_FIELDS:
            continue
        data[name] = getattr(remote, name)
    for name in STAFF_CREDENTIAL_FIELDS:
        remote_value = getattr(remote, name)
        if remote_value:
            data[name] = remote_value
    return StaffMember.model_validate(data)


def merge_staff(local: list[StaffMember], remote: list[StaffMember]) -> list[StaffMember]:
    """
    Reconcile the local roster with the cloud roster.

    - remote entry with a local twin: remote business fields win, but fields
      the cloud did not send (most importantly `pin_hash`) keep the local value
    - remote-only entry: adopted as-is
    - local-only entry: kept and appended (a merge never deletes)
    - empty remote: local roster returned unchanged
    """
    if not remote:
        return list(local)

    local_by_id = {m.id: m for m in local}
    merged: list[StaffMember] = []
    seen: set[str] = set()
    for r in remote:
        if r.id in seen:
            continue
        seen.add(r.id)
        existing = local_by_id.get(r.id)
        merged.append(merge_staff_member(existing, r) if existing else r)

    for m in local:
        if m.id not in seen:
            merged.append(m)
            seen.add(m.id)
    return merged


def merge_settings(local: RestaurantSettings, remote: Optional[RestaurantSettings]) -> RestaurantSettings:
    if remote is None:
        return local
    data = remote.model_dump()
    for name in SETTINGS_DEVICE_LOCAL_FIELDS:
        data[name] = getattr(local, name)
    for name in SETTINGS_MONOTONIC_FIELDS:
        data[name] = max(getattr(local, name) or 1, getattr(remote, name) or 1)
    return RestaurantSettings.model_validate(data)


def merge_orders(local: list[AggregatorOrder], remote: list[AggregatorOrder]) -> tuple[list[AggregatorOrder], list[AggregatorOrder]]:
    """Return (merged, newly_added). Orders already held locally are left untouched."""
    known = {o.order_id for o in local}
    added: list[AggregatorOrder] = []
    for o in remote:
        if o.order_id in known:
            continue
        known.add(o.order_id)
        added.append(o)
    return list(local) + added, added
