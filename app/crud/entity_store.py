# app/crud/entity_store.py
from contextlib import contextmanager
from sqlmodel import Session, select, and_, or_, col
from typing import List, Optional, Dict, Any, Iterator
import logging

from app.core.exceptions import NotFound, TransactionFailure
from app.models.fleet import (
    Client, Feature, ClientFeature, Device, DeviceGroup, GroupDevice, GroupUser,
    PlatformUser, Geofence, GeofenceTrigger, Poi, SyncAssignment, SyncEntityType, Report
)

logger = logging.getLogger(__name__)


class EntityStore:
    """
    Relational access for the sync and alert services.

    Wraps a single Session; every multi-step mutation goes through
    transaction() so that it commits or rolls back as a unit.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on success, roll back and raise TransactionFailure on error."""
        try:
            yield self.db
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise TransactionFailure(str(e)) from e

    # ===========================
    # Lookups
    # ===========================

    def find_device(self, device_id: int) -> Device:
        device = self.db.get(Device, device_id)
        if not device:
            raise NotFound("Device", device_id)
        return device

    def get_device(self, device_id: int) -> Optional[Device]:
        return self.db.get(Device, device_id)

    def find_device_by_comm_id(self, comm_id: int) -> Optional[Device]:
        return self.db.exec(select(Device).where(Device.comm_id == comm_id)).first()

    def find_geofence(self, geofence_id: int) -> Geofence:
        geofence = self.db.get(Geofence, geofence_id)
        if not geofence:
            raise NotFound("Geofence", geofence_id)
        return geofence

    def find_poi(self, poi_id: int) -> Poi:
        poi = self.db.get(Poi, poi_id)
        if not poi:
            raise NotFound("Poi", poi_id)
        return poi

    def find_group(self, group_id: int) -> DeviceGroup:
        group = self.db.get(DeviceGroup, group_id)
        if not group:
            raise NotFound("Group", group_id)
        return group

    def find_user(self, user_id: int) -> PlatformUser:
        user = self.db.get(PlatformUser, user_id)
        if not user:
            raise NotFound("User", user_id)
        return user

    def client_has_feature(self, client_id: int, feature_title: str) -> bool:
        query = select(ClientFeature).join(Feature, Feature.id == ClientFeature.feature_id).where(
            and_(ClientFeature.client_id == client_id, Feature.title == feature_title)
        )
        return self.db.exec(query).first() is not None

    def client_comm_id(self, client_id: int) -> Optional[int]:
        client = self.db.get(Client, client_id)
        return client.comm_id if client else None

    def device_comm_ids(self, device_ids: List[int]) -> List[int]:
        if not device_ids:
            return []
        query = select(Device.comm_id).where(col(Device.id).in_(device_ids))
        return [comm_id for comm_id in self.db.exec(query).all() if comm_id is not None]

    def group_comm_ids(self, group_ids: List[int]) -> List[int]:
        if not group_ids:
            return []
        query = select(DeviceGroup.comm_id).where(col(DeviceGroup.id).in_(group_ids))
        return [comm_id for comm_id in self.db.exec(query).all() if comm_id is not None]

    def users_by_ids(self, user_ids: List[int]) -> List[PlatformUser]:
        if not user_ids:
            return []
        return list(self.db.exec(select(PlatformUser).where(col(PlatformUser.id).in_(user_ids))).all())

    # ===========================
    # Group membership
    # ===========================

    def groups_of_device(self, device_id: int) -> List[int]:
        query = select(GroupDevice.group_id).where(GroupDevice.device_id == device_id)
        return list(self.db.exec(query).all())

    def users_and_devices_of_groups(self, group_ids: List[int]) -> Dict[str, List[int]]:
        """Union of users and devices belonging to any of the given groups."""
        if not group_ids:
            return {"users": [], "devices": []}
        users = self.db.exec(
            select(GroupUser.user_id).where(col(GroupUser.group_id).in_(group_ids))
        ).all()
        devices = self.db.exec(
            select(GroupDevice.device_id).where(col(GroupDevice.group_id).in_(group_ids))
        ).all()
        return {"users": sorted(set(users)), "devices": sorted(set(devices))}

    # ===========================
    # Sync sets
    # ===========================

    def get_sync_set(self, entity_type: SyncEntityType, entity_id: int) -> List[int]:
        query = select(SyncAssignment.device_id).where(
            and_(SyncAssignment.entity_type == entity_type, SyncAssignment.entity_id == entity_id)
        )
        return sorted(self.db.exec(query).all())

    def set_sync_set(self, entity_type: SyncEntityType, entity_id: int, device_ids: List[int]):
        """Replace an entity's sync set. Caller commits."""
        existing = self.db.exec(
            select(SyncAssignment).where(
                and_(SyncAssignment.entity_type == entity_type, SyncAssignment.entity_id == entity_id)
            )
        ).all()
        keep = set(device_ids)
        for assignment in existing:
            if assignment.device_id in keep:
                keep.discard(assignment.device_id)
            else:
                self.db.delete(assignment)
        for device_id in sorted(keep):
            self.db.add(SyncAssignment(entity_type=entity_type, entity_id=entity_id, device_id=device_id))

    # ===========================
    # Geofence triggers & reports
    # ===========================

    def latest_report(self, device_id: int) -> Optional[Report]:
        query = select(Report).where(Report.device_id == device_id).order_by(
            col(Report.report_timestamp).desc(), col(Report.id).desc()
        )
        return self.db.exec(query).first()

    def get_trigger_geofences(self, device_id: int) -> List[Geofence]:
        """Active geofences triggered by the device directly or through one of its groups."""
        group_ids = self.groups_of_device(device_id)
        conditions = [GeofenceTrigger.device_id == device_id]
        if group_ids:
            conditions.append(col(GeofenceTrigger.group_id).in_(group_ids))
        query = select(Geofence).join(GeofenceTrigger, GeofenceTrigger.geofence_id == Geofence.id).where(
            and_(or_(*conditions), Geofence.active == True)  # noqa: E712
        )
        unique: Dict[int, Geofence] = {}
        for geofence in self.db.exec(query).all():
            unique.setdefault(geofence.id, geofence)
        return list(unique.values())

    def get_trigger_device_ids(self, geofence_id: int) -> List[int]:
        triggers = self.db.exec(
            select(GeofenceTrigger).where(GeofenceTrigger.geofence_id == geofence_id)
        ).all()
        device_ids = {t.device_id for t in triggers if t.device_id is not None}
        group_ids = [t.group_id for t in triggers if t.group_id is not None]
        if not device_ids and not group_ids:
            logger.debug(f"No trigger is set for geofence {geofence_id}")
        device_ids.update(self.users_and_devices_of_groups(group_ids)["devices"])
        return sorted(device_ids)

    def get_trigger_eligible_devices(self, geofence_id: int) -> List[Dict[str, Any]]:
        """[{device_id, latest_report}] for every trigger device (direct and via group)."""
        return [
            {"device_id": device_id, "latest_report": self.latest_report(device_id)}
            for device_id in self.get_trigger_device_ids(geofence_id)
        ]

    # ===========================
    # Snapshots consumed by the change projectors
    # ===========================

    def snapshot_geofence(self, geofence: Geofence) -> Dict[str, Any]:
        return {
            "id": geofence.id,
            "client_id": geofence.client_id,
            "title": geofence.title,
            "note": geofence.note,
            "shape": geofence.shape.value if hasattr(geofence.shape, "value") else geofence.shape,
            "width": geofence.width,
            "coordinates": list(geofence.coordinates or []),
            "active": geofence.active,
            "inclusive": geofence.inclusive,
            "approved": geofence.approved,
            "sync_devices": self.get_sync_set(SyncEntityType.GEOFENCE, geofence.id),
        }

    def snapshot_poi(self, poi: Poi) -> Dict[str, Any]:
        return {
            "id": poi.id,
            "client_id": poi.client_id,
            "title": poi.title,
            "note": poi.note,
            "latitude": poi.latitude,
            "longitude": poi.longitude,
            "image_id": poi.image_id,
            "nato_code": poi.nato_code,
            "approved": poi.approved,
            "sync_devices": self.get_sync_set(SyncEntityType.POI, poi.id),
        }

    def snapshot_group(self, group: DeviceGroup) -> Dict[str, Any]:
        members = self.users_and_devices_of_groups([group.id])
        return {
            "id": group.id,
            "client_id": group.client_id,
            "comm_id": group.comm_id,
            "title": group.title,
            "users": members["users"],
            "devices": members["devices"],
            "sync_devices": self.get_sync_set(SyncEntityType.GROUP, group.id),
        }

    def snapshot_device(self, device: Device) -> Dict[str, Any]:
        return {
            "id": device.id,
            "client_id": device.client_id,
            "comm_id": device.comm_id,
            "name": device.name,
            "sync_devices": self.get_sync_set(SyncEntityType.DEVICE, device.id),
        }

    def snapshot_user(self, user: PlatformUser) -> Dict[str, Any]:
        return {
            "id": user.id,
            "client_id": user.client_id,
            "comm_id": user.comm_id,
            "username": user.username,
            "role": user.role,
            "phone_number": user.phone_number,
            "sync_devices": self.get_sync_set(SyncEntityType.USER, user.id),
        }

    def snapshot(self, entity_type: SyncEntityType, entity_id: int) -> Dict[str, Any]:
        if entity_type == SyncEntityType.GEOFENCE:
            return self.snapshot_geofence(self.find_geofence(entity_id))
        if entity_type == SyncEntityType.POI:
            return self.snapshot_poi(self.find_poi(entity_id))
        if entity_type == SyncEntityType.GROUP:
            return self.snapshot_group(self.find_group(entity_id))
        if entity_type == SyncEntityType.DEVICE:
            return self.snapshot_device(self.find_device(entity_id))
        return self.snapshot_user(self.find_user(entity_id))
