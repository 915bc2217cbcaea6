import asyncio
import uuid
from typing import Callable, Optional

from ..db import utcnow_iso
from ..logs import json_log
from ..merge import merge_staff
from ..models import StaffMember, field_name, wire_key, with_updates
from ..security import PinHashUnavailable, hash_pin, is_insecure_hash, needs_rehash, verify_pin
from .base import SyncStore

# Keys a caller may never set directly on a staff member.
_PROTECTED_FIELDS = {"id", "tenant_id", "pin_hash"}


class StaffStore(SyncStore):
    entity = "staff"

    def __init__(self, db, cloud, channel=None, *, is_authoritative: Optional[Callable[[], bool]] = None):
        super().__init__(db, cloud, channel)
        self.staff: list[StaffMember] = []
        self._is_authoritative = is_authoritative or (lambda: False)

    async def _load_local(self) -> None:
        self.staff = await asyncio.to_thread(self.db.staff.query, self.tenant_id)

    def get_staff(self, staff_id: str) -> Optional[StaffMember]:
        for m in self.staff:
            if m.id == staff_id:
                return m
        return None

    def list_public(self) -> list[dict]:
        return [m.to_public() for m in self.staff]

    def _index(self, staff_id: str) -> int:
        for i, m in enumerate(self.staff):
            if m.id == staff_id:
                return i
        return -1

    async def _push_if_authoritative(self) -> None:
        if self._is_authoritative():
            await self.sync_to_cloud(self.tenant_id)

    # Local mutations

    async def add_staff(
        self,
        name: str,
        role,
        pin: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        is_active: bool = True,
    ) -> StaffMember:
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")
        # bcrypt runs off the event loop.
        pin_hash = await asyncio.to_thread(hash_pin, pin)
        member = StaffMember(
            id=f"staff-{uuid.uuid4().hex[:12]}",
            name=name,
            role=role,
            pin_hash=pin_hash,
            email=email,
            phone=phone,
            is_active=is_active,
            joined_at=utcnow_iso(),
            tenant_id=self.tenant_id,
        )
        async with self._write_lock:
            self.staff = [*self.staff, member]
            await self._persist("add_staff", self.db.staff.upsert, member)
        self._notify()
        json_log("info", "staff.added", tenant_id=self.tenant_id, staff_id=member.id, role=member.role.value)

        await self._push_if_authoritative()
        await self._broadcast("added", member.id, member.to_wire())
        return member

    async def update_staff(self, staff_id: str, updates: dict) -> Optional[StaffMember]:
        if self._index(staff_id) < 0:
            return None
        updates = dict(updates or {})
        pin = updates.pop("pin", None)
        clean = {}
        for key, value in updates.items():
            name = field_name(StaffMember, key)
            if name and name not in _PROTECTED_FIELDS:
                clean[name] = value
        if pin is not None:
            clean["pin_hash"] = await asyncio.to_thread(hash_pin, pin)
        return await self._commit_update("update_staff", staff_id, clean)

    async def _commit_update(self, op: str, staff_id: str, clean: dict) -> Optional[StaffMember]:
        async with self._write_lock:
            idx = self._index(staff_id)
            if idx < 0:
                return None
            if not clean:
                return self.staff[idx]
            updated = with_updates(self.staff[idx], clean)
            staff = list(self.staff)
            staff[idx] = updated
            self.staff = staff
            await self._persist(op, self.db.staff.upsert, updated)
        self._notify()
        json_log("info", "staff.updated", tenant_id=self.tenant_id, staff_id=staff_id, fields=sorted(clean))

        await self._push_if_authoritative()
        wire = updated.to_wire()
        partial = {wire_key(StaffMember, n): wire[wire_key(StaffMember, n)] for n in clean}
        await self._broadcast("updated", staff_id, partial)
        return updated

    async def remove_staff(self, staff_id: str) -> bool:
        async with self._write_lock:
            if self._index(staff_id) < 0:
                return False
            self.staff = [m for m in self.staff if m.id != staff_id]
            await self._persist("remove_staff", self.db.staff.delete, staff_id, self.tenant_id)
        self._notify()
        json_log("info", "staff.removed", tenant_id=self.tenant_id, staff_id=staff_id)

        await self._push_if_authoritative()
        await self._broadcast("removed", staff_id)
        return True

    async def get_staff_by_pin(self, pin: str) -> Optional[StaffMember]:
        candidates = [m for m in self.staff if m.is_active and m.pin_hash]

        def _match():
            for m in candidates:
                if verify_pin(pin, m.pin_hash):
                    return m
            return None

        match = await asyncio.to_thread(_match)
        if match is not None and needs_rehash(match.pin_hash):
            match = await self._upgrade_pin_hash(match, pin)
        return match

    async def _upgrade_pin_hash(self, member: StaffMember, pin: str) -> StaffMember:
        try:
            new_hash = await asyncio.to_thread(hash_pin, pin)
        except PinHashUnavailable:
            return member
        if new_hash == member.pin_hash or is_insecure_hash(new_hash):
            return member
        updated = await self._commit_update("upgrade_pin_hash", member.id, {"pin_hash": new_hash})
        if updated is None:
            return member
        json_log("info", "staff.pin_hash.upgraded", tenant_id=self.tenant_id, staff_id=member.id)
        return updated

    # Cloud sync

    async def sync_from_cloud(self, tenant_id: str) -> bool:
        return await self._run_sync("sync_from_cloud", tenant_id, self._pull)

    async def sync_to_cloud(self, tenant_id: str) -> bool:
        return await self._run_sync("sync_to_cloud", tenant_id, self._push)

    async def _pull(self, tenant_id: str) -> None:
        rows = await self.cloud.get_staff(tenant_id)
        remote = []
        for row in rows:
            if not isinstance(row, dict):
                raise ValueError("malformed staff row from cloud")
            member = StaffMember.model_validate(row)
            if not member.tenant_id:
                member = member.model_copy(update={"tenant_id": tenant_id})
            remote.append(member)

        if not remote:
            # An empty roster from the cloud is never allowed to wipe the local one.
            json_log("info", "staff.sync_from_cloud.empty_remote", tenant_id=tenant_id, local_count=len(self.staff))
            return

        async with self._write_lock:
            merged = merge_staff(self.staff, remote)
            await asyncio.to_thread(self.db.staff.upsert_many, merged)
            self.staff = merged
        await self._mark_synced(tenant_id)

    async def _push(self, tenant_id: str) -> None:
        # Only pin hashes travel; the raw PIN is never held in the first place.
        payload = [m.to_wire() for m in self.staff]
        await self.cloud.save_staff(tenant_id, payload)
        await self._mark_synced(tenant_id)

    # Peer events

    async def apply_remote_added(self, payload: dict) -> bool:
        member = StaffMember.model_validate(payload)
        if not member.tenant_id:
            member = member.model_copy(update={"tenant_id": self.tenant_id})
        async with self._write_lock:
            if self._index(member.id) >= 0:
                return False
            self.staff = [*self.staff, member]
            await self._persist("apply_remote_added", self.db.staff.upsert, member)
        self._notify()
        return True

    async def apply_remote_updated(self, entity_id: str, partial: dict) -> bool:
        clean = {}
        for key, value in (partial or {}).items():
            name = field_name(StaffMember, key)
            if name and name not in {"id", "tenant_id"}:
                clean[name] = value
        if not clean:
            return False
        async with self._write_lock:
            idx = self._index(entity_id)
            if idx < 0:
                return False
            updated = with_updates(self.staff[idx], clean)
            staff = list(self.staff)
            staff[idx] = updated
            self.staff = staff
            await self._persist("apply_remote_updated", self.db.staff.upsert, updated)
        self._notify()
        return True

    async def apply_remote_removed(self, entity_id: str) -> bool:
        async with self._write_lock:
            if self._index(entity_id) < 0:
                return False
            self.staff = [m for m in self.staff if m.id != entity_id]
            await self._persist("apply_remote_removed", self.db.staff.delete, entity_id, self.tenant_id)
        self._notify()
        return True
