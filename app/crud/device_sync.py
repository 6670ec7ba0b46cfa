# app/crud/device_sync.py
from sqlmodel import Session, select, col
from typing import List, Optional

from app.models.fleet import Device
from app.models.sync import DeviceSyncInfo


def for_update_query(model, device_id: int):
    """
    SELECT ... FOR UPDATE of one per-device row.

    The row lock is held until the surrounding transaction ends, so sync work
    for a device is serialized across API workers. populate_existing refreshes
    an instance the session already holds with the row as locked.
    """
    return (
        select(model)
        .where(model.device_id == device_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class DeviceSyncCRUD:
    def get_or_create(self, db: Session, device_id: int, lock: bool = False) -> DeviceSyncInfo:
        """Get the device's sync info, creating it with watermark 0 on first use."""
        if lock:
            info = db.exec(for_update_query(DeviceSyncInfo, device_id)).first()
        else:
            info = db.get(DeviceSyncInfo, device_id)
        if info is None:
            info = DeviceSyncInfo(device_id=device_id, watermark=0)
            db.add(info)
            db.flush()
        return info

    def record_ring(self, db: Session, device_id: int, ring_sent: int) -> DeviceSyncInfo:
        info = self.get_or_create(db, device_id)
        info.ring_sent = ring_sent
        db.add(info)
        db.flush()
        return info

    def record_sync(self, db: Session, device_id: int, watermark: int, now: int) -> int:
        """
        Apply an inbound sync request and return the previously stored watermark.

        Locks the device's sync info row for the rest of the transaction. A
        watermark beyond the stored one acknowledges the last batch, and so
        does 0: the device receives its whole History. The stored watermark
        and sync time are always overwritten.
        """
        info = self.get_or_create(db, device_id, lock=True)
        old_watermark = info.watermark or 0
        if watermark == 0 or watermark > old_watermark:
            info.ack_received = now
        info.watermark = watermark
        info.sync_received = now
        db.add(info)
        db.flush()
        return old_watermark

    def get(self, db: Session, device_id: int) -> Optional[DeviceSyncInfo]:
        return db.get(DeviceSyncInfo, device_id)

    def list_for_client(self, db: Session, client_id: int) -> List[DeviceSyncInfo]:
        device_ids = select(Device.id).where(Device.client_id == client_id)
        query = select(DeviceSyncInfo).where(col(DeviceSyncInfo.device_id).in_(device_ids)).order_by(DeviceSyncInfo.device_id)
        return list(db.exec(query).all())

    def delete(self, db: Session, device_id: int) -> bool:
        info = db.get(DeviceSyncInfo, device_id)
        if info is None:
            return False
        db.delete(info)
        db.flush()
        return True


device_sync_crud = DeviceSyncCRUD()
