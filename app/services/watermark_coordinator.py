# app/services/watermark_coordinator.py
"""
Watermark coordinator: answers a tactical device's sync GET.

The device sends the watermark of the last batch it fully received. Compared
with the stored watermark it tells the platform which ledger tier to serve:

- 0: the device lost its state, serve History and drop Pending and Backup
- greater than stored: previous batch acknowledged, move Pending into Backup
- equal to stored: previous batch not acknowledged, resend Backup
- anything else: the device must reset to 0
"""
import copy
from typing import Dict, Any, List, Optional

from app.core.deps import Dependencies
from app.core.exceptions import InvalidRequest, FeatureDisabled
from app.crud.device_sync import device_sync_crud
from app.models.fleet import Device, Poi, SyncEntityType
from app.models.sync import SyncLedgerBase, SyncPending, SyncBackup, SyncHistory
from app.services.event_bus import EventType
from app.services.sync_ledger import has_entries

WATERMARK_WARNING = "Warning: Platform received watermark that cannot be processed. Please reset watermark to 0"


def validate_watermark(watermark: Any, min_digits: int) -> int:
    """Watermark must be 0 or an epoch-ms integer."""
    try:
        value = int(watermark)
    except (TypeError, ValueError):
        raise InvalidRequest("Invalid Watermark")
    if value != 0 and (value < 0 or len(str(value)) < min_digits):
        raise InvalidRequest("Invalid Watermark")
    return value


def flatten_entries(entries: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Turn an entity id -> entry map into the list MH expects, each entry tagged with its id."""
    flattened = []
    for key, entry in (entries or {}).items():
        item = copy.deepcopy(entry)
        item["id"] = int(key)
        item.setdefault("data", {})["id"] = int(key)
        flattened.append(item)
    return flattened


def restructure_for_device(comm_id: int, client_id: Optional[int], watermark: int, document: Optional[SyncLedgerBase]) -> Dict[str, Any]:
    if document is None:
        return {"device_comm_id": comm_id, "client_id": client_id, "watermark": watermark, "geofences": [], "pois": []}
    return {
        "device_comm_id": comm_id,
        "client_id": document.client_id if document.client_id is not None else client_id,
        "watermark": document.watermark,
        "geofences": flatten_entries(document.geofences),
        "pois": flatten_entries(document.pois),
    }


class WatermarkCoordinator:
    def __init__(self, deps: Dependencies):
        self.deps = deps

    # ===========================
    # Validation
    # ===========================

    def resolve_device(self, comm_id: Any) -> Device:
        """Find the tactical device behind a comm id and check its client may sync."""
        try:
            comm_id = int(comm_id)
        except (TypeError, ValueError):
            raise InvalidRequest("Invalid Comm Id")

        device = self.deps.store.find_device_by_comm_id(comm_id)
        if device is None or device.mode != self.deps.config.SYNC_DEVICE_MODE:
            self.deps.logger.warning(
                f"Platform received sync request with invalid comm id {comm_id}: not a tactical device"
            )
            raise InvalidRequest("Invalid Comm Id")

        feature = self.deps.config.SYNC_FEATURE_TITLE
        if not self.deps.store.client_has_feature(device.client_id, feature):
            raise FeatureDisabled(feature, device.client_id)
        return device

    # ===========================
    # Sync GET
    # ===========================

    async def request_sync(self, comm_id: Any, watermark: Any) -> Dict[str, Any]:
        """Serve the sync payload for a device and advance its watermark state."""
        watermark = validate_watermark(watermark, self.deps.config.MIN_WATERMARK_DIGITS)
        device = self.resolve_device(comm_id)
        self.deps.logger.info(f"Processing sync request for device comm id {device.comm_id} at watermark {watermark}")

        # record_sync locks the device sync info row, serializing requests for this device
        with self.deps.store.transaction() as db:
            old_watermark = device_sync_crud.record_sync(db, device.id, watermark, self.deps.clock.now_ms())
            document = self.select_tier(device.id, watermark, old_watermark)
            if isinstance(document, str):
                return {"message": document}
            payload = restructure_for_device(device.comm_id, device.client_id, watermark, document)

        if self.deps.event_bus is not None:
            await self.deps.event_bus.publish(
                EventType.SYNC_COMPLETED,
                {
                    "device_id": device.id,
                    "watermark": watermark,
                    "geofences": len(payload["geofences"]),
                    "pois": len(payload["pois"]),
                },
                client_id=device.client_id
            )
        return payload

    def select_tier(self, device_id: int, watermark: int, old_watermark: int):
        """
        Pick and move ledger documents for this request.

        Returns the document to serve (possibly None) or the warning text when
        the watermark cannot be processed. Runs inside the caller's transaction.
        """
        ledger = self.deps.ledger

        if watermark == 0:
            history = ledger.read(SyncHistory, device_id)
            ledger.delete(SyncBackup, device_id)
            ledger.delete(SyncPending, device_id)
            self.deps.logger.info(f"Full resync for device {device_id}: serving History")
            return history

        if watermark > old_watermark:
            ledger.delete(SyncBackup, device_id)
            return self.promote_pending(device_id)

        if watermark == old_watermark:
            backup = ledger.read(SyncBackup, device_id)
            if has_entries(backup):
                return backup
            return self.promote_pending(device_id)

        self.deps.logger.warning(
            f"Device {device_id} sent watermark {watermark} older than stored {old_watermark}"
        )
        return WATERMARK_WARNING

    def promote_pending(self, device_id: int) -> Optional[SyncLedgerBase]:
        """Copy Pending into Backup, drop Pending and return what Backup holds."""
        ledger = self.deps.ledger
        pending = ledger.read(SyncPending, device_id, lock=True)
        if has_entries(pending):
            ledger.replace_backup(pending)
            ledger.delete(SyncPending, device_id)
        return ledger.read(SyncBackup, device_id)

    # ===========================
    # Device submitted POIs
    # ===========================

    async def submit_poi(self, comm_id: Any, poi_data: Dict[str, Any]) -> Poi:
        """
        Store a POI created on a tactical device.

        The POI waits for platform approval; until then only the creator holds
        it, so nothing is projected to the ledger.
        """
        device = self.resolve_device(comm_id)
        nato_code = poi_data.get("nato_code")
        image_id = poi_data.get("image_id")
        if nato_code is not None:
            nato_code = f"S{nato_code}---------"
        elif image_id is None:
            image_id = self.deps.config.GENERIC_POI_IMAGE_ID

        poi = Poi(
            client_id=device.client_id,
            title=poi_data["title"],
            note=poi_data.get("note"),
            latitude=poi_data["latitude"],
            longitude=poi_data["longitude"],
            image_id=image_id,
            nato_code=nato_code,
            approved=False,
            creator_device_id=device.id,
        )
        with self.deps.store.transaction() as db:
            db.add(poi)
            db.flush()
            self.deps.store.set_sync_set(SyncEntityType.POI, poi.id, [device.id])
        db.refresh(poi)
        self.deps.logger.info(f"Device {device.id} submitted POI {poi.id} for approval")
        return poi

    # ===========================
    # Platform side
    # ===========================

    def device_sync_status(self, client_id: int) -> List[Dict[str, Any]]:
        return [
            {
                "device_id": info.device_id,
                "watermark": info.watermark,
                "ring_sent": info.ring_sent,
                "ack_received": info.ack_received,
                "sync_received": info.sync_received,
                "status": info.status,
            }
            for info in device_sync_crud.list_for_client(self.deps.store.db, client_id)
        ]

    async def purge_device(self, device_id: int):
        """Forget every ledger tier and the sync info of a deleted device."""
        with self.deps.store.transaction() as db:
            self.deps.ledger.purge_device(device_id)
            device_sync_crud.delete(db, device_id)
        self.deps.logger.info(f"Purged sync state of device {device_id}")
