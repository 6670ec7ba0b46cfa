# app/services/sync_processor.py
"""
Sync processor: routes entity mutations and sync-module assignment edits
through the change projectors into the ledger, then rings the devices.
"""
from typing import Dict, Any, List, Optional

from app.core.deps import Dependencies
from app.core.exceptions import NotFound
from app.models.fleet import PlatformUser, SyncEntityType
from app.models.sync import SyncHistory
from app.services.command_channel import entity_update_request
from app.services.projectors import ChangeAction, PROJECTORS, Projection, project_change, fan_out
from app.services.sync_initiator import SyncInitiator
from app.services.sync_ledger import SyncAction, build_entry

# Entity types MH keeps its own copy of
MH_ENTITY_TYPES = (SyncEntityType.DEVICE, SyncEntityType.GROUP)

WAVE_DEVICE_TYPE = "Wave"
TACTICAL_DEVICE_TYPE = "Whisper"

INACTIVE_ACTIONS = (int(SyncAction.DELETE), int(SyncAction.REJECT))


def check_if_initiation_needed(assignments: Dict[str, Dict[str, List[int]]]) -> bool:
    """A ring is only needed when some assignment was added or removed."""
    for entity in ("geofences", "pois", "groups"):
        changes = assignments.get(entity) or {}
        if changes.get("added") or changes.get("removed"):
            return True
    return False


def synced_ids(history: Optional[SyncHistory], entity_type: SyncEntityType) -> List[int]:
    """Entity ids the device currently holds according to its History."""
    if history is None:
        return []
    entries = getattr(history, entity_type.value) or {}
    return sorted(int(key) for key, entry in entries.items() if entry.get("action") not in INACTIVE_ACTIONS)


class SyncProcessor:
    def __init__(self, deps: Dependencies, initiator: Optional[SyncInitiator] = None):
        self.deps = deps
        self.initiator = initiator or SyncInitiator(deps)

    # ===========================
    # Ledger writes
    # ===========================

    def record_projection(
        self,
        user: PlatformUser,
        entity_type: SyncEntityType,
        entity_id: int,
        projection: Projection,
        timestamp: int
    ) -> List[int]:
        """Merge a projection into Pending and History for every device. Returns the device ids."""
        if not projection:
            return []
        with self.deps.store.transaction():
            for device_id, change in projection.items():
                entry = build_entry(SyncAction(change["action"]), change["data"], user.comm_id, timestamp)
                self.deps.ledger.record_change(
                    device_id, user.client_id, entity_type.value, entity_id, entry, timestamp
                )
        self.deps.logger.info(
            f"Updated sync ledger for {entity_type.value} {entity_id} on devices {sorted(projection)}"
        )
        return list(projection)

    def project_and_record(
        self,
        user: PlatformUser,
        entity_type: SyncEntityType,
        action: ChangeAction,
        before: Optional[Dict[str, Any]],
        after: Dict[str, Any],
        timestamp: int
    ) -> List[int]:
        projection = project_change(entity_type, action, before, after)
        return self.record_projection(user, entity_type, after["id"], projection, timestamp)

    # ===========================
    # Entity mutations
    # ===========================

    async def process_entity_change(
        self,
        user: PlatformUser,
        entity_type: SyncEntityType,
        action: ChangeAction,
        before: Optional[Dict[str, Any]],
        after: Dict[str, Any],
        timestamp: Optional[int] = None
    ) -> List[int]:
        """Project one entity mutation into the ledger and ring the affected devices."""
        entity_type, action = SyncEntityType(entity_type), ChangeAction(action)
        timestamp = timestamp or self.deps.clock.now_ms()

        if entity_type == SyncEntityType.GROUP:
            devices = self.process_group_change(user, action, before, after, timestamp)
        else:
            devices = self.project_and_record(user, entity_type, action, before, after, timestamp)

        if entity_type in MH_ENTITY_TYPES:
            await self.notify_mh(entity_type, action, after)
        if devices:
            await self.initiator.initiate(user, devices)
        return devices

    async def notify_mh(self, entity_type: SyncEntityType, action: ChangeAction, entity: Dict[str, Any]):
        """Upsert or delete the device or group in MH; failures are queued by the channel."""
        if self.deps.channel is None:
            return
        payload, path, method = entity_update_request(entity_type, entity, deleted=action == ChangeAction.DELETE)
        await self.deps.channel.notify_entity_change(payload, path, method)

    def process_group_change(
        self,
        user: PlatformUser,
        action: ChangeAction,
        before: Optional[Dict[str, Any]],
        after: Dict[str, Any],
        timestamp: int
    ) -> List[int]:
        if action == ChangeAction.DELETE:
            return self.process_delete_groups(user, [after["id"]], timestamp)

        sync_devices = list(after.get("sync_devices", []))
        if action == ChangeAction.PUT and before:
            sync_devices += [d for d in before.get("sync_devices", []) if d not in sync_devices]

        self.project_and_record(user, SyncEntityType.GROUP, action, before, after, timestamp)
        for device_id in sync_devices:
            self.process_inherited_entities(user, device_id, timestamp)
        return sync_devices

    def process_delete_groups(self, user: PlatformUser, group_ids: List[int], timestamp: int) -> List[int]:
        """Remove deleted groups from every device of the client that holds them."""
        devices_with_changes: List[int] = []
        for history in self.deps.ledger.history_for_client(user.client_id):
            held = synced_ids(history, SyncEntityType.GROUP)
            to_delete = [group_id for group_id in group_ids if group_id in held]
            if not to_delete:
                continue
            device_id = history.device_id
            devices_with_changes.append(device_id)
            for group_id in to_delete:
                group_data = dict(history.groups[str(group_id)]["data"])
                group_data["sync_devices"] = [device_id]
                self.project_and_record(user, SyncEntityType.GROUP, ChangeAction.DELETE, None, group_data, timestamp)
            self.process_inherited_entities(user, device_id, timestamp)
        return devices_with_changes

    def process_inherited_entities(self, user: PlatformUser, device_id: int, timestamp: int):
        """
        Bring the users and devices a device inherits from its synced groups in
        line with current group membership.
        """
        store, ledger = self.deps.store, self.deps.ledger
        history = ledger.read(SyncHistory, device_id)
        members = store.users_and_devices_of_groups(synced_ids(history, SyncEntityType.GROUP))

        for entity_type, member_ids in ((SyncEntityType.USER, members["users"]), (SyncEntityType.DEVICE, members["devices"])):
            held = synced_ids(history, entity_type)
            projector = PROJECTORS[entity_type]
            for entity_id in [i for i in member_ids if i not in held]:
                try:
                    entity = store.snapshot(entity_type, entity_id)
                except NotFound:
                    self.deps.logger.warning(f"Inherited {entity_type.value} {entity_id} no longer exists")
                    continue
                projection = fan_out({}, [device_id], projector.insert_payload(entity), SyncAction.INSERT)
                self.record_projection(user, entity_type, entity_id, projection, timestamp)
            for entity_id in [i for i in held if i not in member_ids]:
                data = getattr(history, entity_type.value)[str(entity_id)]["data"]
                payload = {"id": entity_id, "comm_id": data.get("comm_id"), "title": data.get("title")}
                projection = fan_out({}, [device_id], payload, SyncAction.DELETE)
                self.record_projection(user, entity_type, entity_id, projection, timestamp)

    # ===========================
    # Sync module assignments
    # ===========================

    def update_assignment(self, entity_type: SyncEntityType, entity_id: int, device_id: int, assigned: bool):
        store = self.deps.store
        current = store.get_sync_set(entity_type, entity_id)
        if assigned and device_id not in current:
            store.set_sync_set(entity_type, entity_id, current + [device_id])
        elif not assigned and device_id in current:
            store.set_sync_set(entity_type, entity_id, [d for d in current if d != device_id])

    def process_assignment_list(
        self,
        user: PlatformUser,
        device_id: int,
        entity_type: SyncEntityType,
        changes: Dict[str, List[int]],
        timestamp: int
    ):
        store = self.deps.store
        for added, entity_ids in ((True, changes.get("added") or []), (False, changes.get("removed") or [])):
            for entity_id in entity_ids:
                try:
                    entity = store.snapshot(entity_type, entity_id)
                except NotFound:
                    self.deps.logger.warning(f"Skipping assignment of missing {entity_type.value} {entity_id}")
                    continue
                with store.transaction():
                    self.update_assignment(entity_type, entity_id, device_id, added)

                if added:
                    if not self.accepts_assignment(entity_type, entity):
                        continue
                    after = dict(entity, sync_devices=[device_id])
                    self.project_and_record(user, entity_type, ChangeAction.POST, None, after, timestamp)
                else:
                    before = dict(entity, sync_devices=[device_id])
                    after = dict(entity, sync_devices=[])
                    self.project_and_record(user, entity_type, ChangeAction.PUT, before, after, timestamp)

    @staticmethod
    def accepts_assignment(entity_type: SyncEntityType, entity: Dict[str, Any]) -> bool:
        if entity_type == SyncEntityType.GEOFENCE:
            return bool(entity.get("approved") and entity.get("active"))
        if entity_type == SyncEntityType.POI:
            return bool(entity.get("approved") and entity.get("image_id") is None and entity.get("nato_code") is not None)
        return True

    async def process_sync_assignments(
        self,
        user: PlatformUser,
        device_id: int,
        assignments: Dict[str, Dict[str, List[int]]],
        timestamp: Optional[int] = None
    ) -> bool:
        """
        Apply a sync module edit for one device.

        Wave devices only take groups (plus inherited users and devices);
        Whisper devices in SCCT mode take geofences and POIs. Returns whether
        a ring was sent.
        """
        device = self.deps.store.find_device(device_id)
        timestamp = timestamp or self.deps.clock.now_ms()

        if device.device_type == WAVE_DEVICE_TYPE:
            self.process_assignment_list(user, device_id, SyncEntityType.GROUP, assignments.get("groups") or {}, timestamp)
            self.process_inherited_entities(user, device_id, timestamp)
        elif device.device_type == TACTICAL_DEVICE_TYPE and device.mode == self.deps.config.SYNC_DEVICE_MODE:
            self.process_assignment_list(user, device_id, SyncEntityType.GEOFENCE, assignments.get("geofences") or {}, timestamp)
            self.process_assignment_list(user, device_id, SyncEntityType.POI, assignments.get("pois") or {}, timestamp)
        else:
            self.deps.logger.info(f"Device {device_id} of type {device.device_type} takes no sync assignments")

        if check_if_initiation_needed(assignments):
            return await self.initiator.initiate(user, [device_id])
        return False
