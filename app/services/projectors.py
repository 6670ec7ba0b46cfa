# app/services/projectors.py
"""
Change projectors.

Turn "this entity changed" (action + before/after snapshots) into the
per-device sync changes to merge into the ledger. Snapshots are plain dicts
(see EntityStore.snapshot_*) carrying a "sync_devices" list.
"""
import logging
from enum import Enum
from typing import Dict, Any, List, Optional

from app.models.fleet import SyncEntityType
from app.services.sync_ledger import SyncAction

logger = logging.getLogger(__name__)

Projection = Dict[int, Dict[str, Any]]


class ChangeAction(str, Enum):
    """CRUD action performed on the platform."""
    POST = "post"
    PUT = "put"
    DELETE = "delete"


GEOFENCE_TYPE_CODES = {"polygon": "000", "box": "000", "rectangle": "000", "path": "001", "circle": "002"}

COLOR_RED = 0     # active, exclusive
COLOR_GREEN = 1   # active, inclusive
COLOR_GRAY = 2    # inactive


def geofence_color(active: bool, inclusive: bool) -> int:
    if not active:
        return COLOR_GRAY
    return COLOR_GREEN if inclusive else COLOR_RED


def modified_fields(before: Dict[str, Any], after: Dict[str, Any], tracked: List[str]) -> Dict[str, Any]:
    return {key: after.get(key) for key in tracked if key in before and before.get(key) != after.get(key)}


def split_sync_sets(new_devices: List[int], old_devices: List[int]) -> Dict[str, List[int]]:
    """added = new - old, removed = old - new, untouched = old & new (ordered as given)."""
    new_set, old_set = set(new_devices), set(old_devices)
    return {
        "added": [d for d in new_devices if d not in old_set],
        "removed": [d for d in old_devices if d not in new_set],
        "untouched": [d for d in old_devices if d in new_set],
    }


def fan_out(projection: Projection, device_ids: List[int], data: Dict[str, Any], action: SyncAction) -> Projection:
    for device_id in device_ids:
        projection[device_id] = {"action": int(action), "data": data}
    return projection


class EntityProjector:
    """Shared put/post/delete algorithm; subclasses supply the payload builders."""

    entity_type: SyncEntityType
    tracked_fields: List[str] = []

    def insert_payload(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def delete_payload(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_payload(self, entity: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def reclassify(self, sets: Dict[str, List[int]], update: Dict[str, Any], entity: Dict[str, Any]) -> Dict[str, List[int]]:
        return sets

    # ===========================
    # Actions
    # ===========================

    def project(self, action: ChangeAction, before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> Projection:
        action = ChangeAction(action)
        if action == ChangeAction.POST:
            projection = self.project_post(after)
        elif action == ChangeAction.PUT:
            projection = self.project_put(before or {}, after)
        else:
            projection = self.project_delete(after)
        # An empty payload carries nothing for the device
        return {device_id: change for device_id, change in projection.items() if change["data"].get("id")}

    def project_post(self, entity: Dict[str, Any]) -> Projection:
        return fan_out({}, entity.get("sync_devices", []), self.insert_payload(entity), SyncAction.INSERT)

    def project_delete(self, entity: Dict[str, Any]) -> Projection:
        return fan_out({}, entity.get("sync_devices", []), self.delete_payload(entity), SyncAction.DELETE)

    def project_put(self, before: Dict[str, Any], after: Dict[str, Any]) -> Projection:
        modified = modified_fields(before, after, self.tracked_fields)
        update = self.update_payload(after, modified) if modified else {}
        sets = split_sync_sets(after.get("sync_devices", []), before.get("sync_devices", []))
        sets = self.reclassify(sets, update, after)
        return self.generate_put_projection(sets, after, update)

    def generate_put_projection(self, sets: Dict[str, List[int]], entity: Dict[str, Any], update: Dict[str, Any]) -> Projection:
        projection: Projection = {}
        fan_out(projection, sets["added"], self.insert_payload(entity), SyncAction.INSERT)
        fan_out(projection, sets["untouched"], update, SyncAction.UPDATE)
        fan_out(projection, sets["removed"], self.delete_payload(entity), SyncAction.DELETE)
        return projection


# ===========================
# Geofences
# ===========================

class GeofenceProjector(EntityProjector):
    entity_type = SyncEntityType.GEOFENCE
    tracked_fields = ["title", "note", "shape", "width", "coordinates", "active", "inclusive"]

    def insert_payload(self, entity):
        return {
            "id": entity["id"],
            "type": GEOFENCE_TYPE_CODES.get(entity.get("shape")),
            "status": int(bool(entity.get("active"))),
            "type_area": int(bool(entity.get("inclusive"))),
            "color": geofence_color(entity.get("active"), entity.get("inclusive")),
            "title": entity.get("title"),
            "note": entity.get("note"),
            "width": entity.get("width"),
            "coordinates": entity.get("coordinates"),
        }

    def delete_payload(self, entity):
        return {"id": entity["id"], "title": entity.get("title")}

    def update_payload(self, entity, modified):
        update = {
            "id": entity["id"],
            "status": int(bool(entity.get("active"))),
            "type_area": int(bool(entity.get("inclusive"))),
            "color": geofence_color(entity.get("active"), entity.get("inclusive")),
        }
        for key in ("title", "note", "active"):
            if key in modified:
                update[key] = modified[key]
        # MH needs the whole geometry whenever any part of it changes
        if any(key in modified for key in ("shape", "coordinates", "width")):
            update["type"] = GEOFENCE_TYPE_CODES.get(entity.get("shape"))
            update["coordinates"] = entity.get("coordinates")
            update["width"] = entity.get("width")
        return update

    def reclassify(self, sets, update, entity):
        """Re-derive added/removed/untouched from the active flag."""
        is_active = bool(entity.get("active"))
        added, removed, untouched = list(sets["added"]), list(sets["removed"]), list(sets["untouched"])
        if update:
            if "active" in update and is_active:
                added, untouched = added + untouched, []
            elif "active" in update and not is_active:
                removed, added, untouched = removed + untouched, [], []
            elif not is_active:
                added, removed, untouched = [], [], []
        else:
            if not is_active:
                added, removed = [], []
            untouched = []
        return {"added": added, "removed": removed, "untouched": untouched}

    def project_post(self, entity):
        if not entity.get("active"):
            return {}
        return super().project_post(entity)

    def project_delete(self, entity):
        if not entity.get("active"):
            return {}
        return super().project_delete(entity)


# ===========================
# POIs
# ===========================

def nato_code_payload(entity: Dict[str, Any]) -> Dict[str, Any]:
    nato_code = entity.get("nato_code")
    if nato_code is not None and entity.get("image_id") is None:
        return {"affiliation": nato_code[1:2], "area": nato_code[2:3]}
    return {}


class PoiProjector(EntityProjector):
    entity_type = SyncEntityType.POI
    tracked_fields = ["title", "note", "latitude", "longitude", "image_id", "nato_code", "approved"]

    def coordinates(self, entity):
        return [{"latitude": entity.get("latitude"), "longitude": entity.get("longitude")}]

    def insert_payload(self, entity):
        return {
            "id": entity["id"],
            "title": entity.get("title"),
            "note": entity.get("note"),
            "coordinates": self.coordinates(entity),
            "nato_code": nato_code_payload(entity),
            "image_id": None,
        }

    reject_payload = insert_payload

    def delete_payload(self, entity):
        return {"id": entity["id"], "title": entity.get("title")}

    def update_payload(self, entity, modified):
        update: Dict[str, Any] = {"id": entity["id"]}
        for key in ("title", "note"):
            if key in modified:
                update[key] = modified[key]
        if "latitude" in modified or "longitude" in modified:
            update["coordinates"] = self.coordinates(entity)
        if "nato_code" in modified and nato_code_payload(entity):
            update["nato_code"] = nato_code_payload(entity)
        return update

    def project_post(self, entity):
        if not entity.get("approved"):
            return {}
        return super().project_post(entity)

    def project_put(self, before, after):
        was_approved, is_approved = bool(before.get("approved")), bool(after.get("approved"))
        # Approval makes the POI visible: everyone in the sync set gets it as new
        if not was_approved and is_approved:
            return fan_out({}, after.get("sync_devices", []), self.insert_payload(after), SyncAction.INSERT)
        if was_approved and not is_approved:
            return fan_out({}, before.get("sync_devices", []), self.reject_payload(after), SyncAction.REJECT)
        return super().project_put(before, after)

    def project_delete(self, entity):
        if not entity.get("approved"):
            return fan_out({}, entity.get("sync_devices", []), self.reject_payload(entity), SyncAction.REJECT)
        return super().project_delete(entity)


# ===========================
# Groups, devices, users
# ===========================

class GroupProjector(EntityProjector):
    entity_type = SyncEntityType.GROUP
    tracked_fields = ["title"]

    def insert_payload(self, entity):
        return {"id": entity["id"], "comm_id": entity.get("comm_id"), "title": entity.get("title")}

    delete_payload = insert_payload

    def update_payload(self, entity, modified):
        return self.insert_payload(entity)


class DeviceProjector(EntityProjector):
    entity_type = SyncEntityType.DEVICE
    tracked_fields = ["name"]

    def insert_payload(self, entity):
        return {"id": entity["id"], "comm_id": entity.get("comm_id"), "title": entity.get("name")}

    delete_payload = insert_payload

    def update_payload(self, entity, modified):
        return self.insert_payload(entity)


class UserProjector(EntityProjector):
    entity_type = SyncEntityType.USER
    tracked_fields = ["username"]

    def insert_payload(self, entity):
        return {
            "id": entity["id"],
            "comm_id": entity.get("comm_id"),
            "title": entity.get("username"),
            "platform_enabled": entity.get("role") != "Contact User",
            "sms_enabled": entity.get("phone_number") is not None,
        }

    def delete_payload(self, entity):
        return {"id": entity["id"], "comm_id": entity.get("comm_id"), "title": entity.get("username")}

    def update_payload(self, entity, modified):
        return self.insert_payload(entity)


PROJECTORS: Dict[SyncEntityType, EntityProjector] = {
    SyncEntityType.GEOFENCE: GeofenceProjector(),
    SyncEntityType.POI: PoiProjector(),
    SyncEntityType.GROUP: GroupProjector(),
    SyncEntityType.DEVICE: DeviceProjector(),
    SyncEntityType.USER: UserProjector(),
}


def project_change(
    entity_type: SyncEntityType,
    action: ChangeAction,
    before: Optional[Dict[str, Any]],
    after: Dict[str, Any]
) -> Projection:
    """Map of device id -> {action, data} for one entity mutation."""
    projection = PROJECTORS[SyncEntityType(entity_type)].project(action, before, after)
    logger.debug(f"Projected {action} on {entity_type} {after.get('id')} to devices {sorted(projection)}")
    return projection
