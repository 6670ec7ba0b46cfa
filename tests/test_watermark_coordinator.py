"""
Tests for the watermark coordinator (device sync GET)
"""

import asyncio
import pytest
from sqlalchemy.dialects import postgresql, sqlite

from app.core.exceptions import InvalidRequest, FeatureDisabled
from app.crud.device_sync import device_sync_crud, for_update_query
from app.models.fleet import ClientFeature, SyncEntityType
from app.models.sync import DeviceSyncInfo, SyncPending, SyncBackup, SyncHistory
from app.services.sync_ledger import SyncAction, build_entry
from app.services.watermark_coordinator import (
    WatermarkCoordinator, WATERMARK_WARNING, validate_watermark, flatten_entries
)

W1 = 1700000000100
W2 = 1700000000200


def record(deps, device, entity_type, entity_id, action, **data):
    entry = build_entry(action, dict(data, id=entity_id), 500, deps.clock.now_ms())
    with deps.store.transaction():
        deps.ledger.record_change(device.id, device.client_id, entity_type, entity_id, entry, deps.clock.now_ms())


def sync(deps, device, watermark):
    return asyncio.run(WatermarkCoordinator(deps).request_sync(str(device.comm_id), str(watermark)))


class TestValidation:
    def test_zero_is_valid(self):
        assert validate_watermark("0", 13) == 0

    def test_epoch_ms_is_valid(self):
        assert validate_watermark(str(W1), 13) == W1

    @pytest.mark.parametrize("watermark", ["abc", "", None, "-5", "12345"])
    def test_invalid_watermarks(self, watermark):
        with pytest.raises(InvalidRequest) as exc:
            validate_watermark(watermark, 13)
        assert exc.value.message == "Invalid Watermark"

    def test_flatten_entries_tags_ids(self):
        entries = {"5": {"action": 0, "data": {"title": "Depot"}}}
        assert flatten_entries(entries) == [{"id": 5, "action": 0, "data": {"title": "Depot", "id": 5}}]


class TestResolveDevice:
    def test_unknown_comm_id(self, deps, fleet):
        with pytest.raises(InvalidRequest) as exc:
            WatermarkCoordinator(deps).resolve_device("4242")
        assert exc.value.message == "Invalid Comm Id"

    def test_non_tactical_device(self, deps, fleet):
        with pytest.raises(InvalidRequest):
            WatermarkCoordinator(deps).resolve_device(str(fleet["tracker"].comm_id))

    def test_client_without_feature(self, deps, session, fleet):
        link = session.get(ClientFeature, (fleet["client"].id, fleet["feature"].id))
        session.delete(link)
        session.commit()
        with pytest.raises(FeatureDisabled):
            WatermarkCoordinator(deps).resolve_device(str(fleet["tactical"].comm_id))


class TestRequestSync:
    def test_newer_watermark_moves_pending_to_backup(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")

        payload = sync(deps, device, W1)

        assert payload["device_comm_id"] == device.comm_id
        assert payload["geofences"][0]["id"] == 5
        assert payload["geofences"][0]["action"] == SyncAction.INSERT
        assert deps.ledger.read(SyncPending, device.id) is None
        assert deps.ledger.read(SyncBackup, device.id).geofences["5"]["data"]["title"] == "Depot"

        info = device_sync_crud.get(deps.store.db, device.id)
        assert info.watermark == W1
        assert info.ack_received == deps.clock.now_ms()

    def test_same_watermark_retransmits_backup(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")
        first = sync(deps, device, W1)
        ack = device_sync_crud.get(deps.store.db, device.id).ack_received

        # A newer change lands in Pending but must not leak into the retransmission
        deps.clock.advance(1000)
        record(deps, device, "pois", 9, SyncAction.INSERT, title="Bridge")
        second = sync(deps, device, W1)

        assert second == first
        assert device_sync_crud.get(deps.store.db, device.id).ack_received == ack
        assert deps.ledger.read(SyncPending, device.id).pois["9"]["action"] == SyncAction.INSERT

    def test_same_watermark_with_empty_backup_pulls_pending(self, deps, fleet):
        device = fleet["tactical"]
        sync(deps, device, W1)
        record(deps, device, "pois", 9, SyncAction.INSERT, title="Bridge")

        payload = sync(deps, device, W1)

        assert [p["id"] for p in payload["pois"]] == [9]
        assert deps.ledger.read(SyncPending, device.id) is None

    def test_acknowledge_then_next_batch(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")
        sync(deps, device, W1)
        record(deps, device, "pois", 9, SyncAction.INSERT, title="Bridge")

        payload = sync(deps, device, W2)

        assert payload["geofences"] == []
        assert [p["id"] for p in payload["pois"]] == [9]
        assert deps.ledger.read(SyncBackup, device.id).geofences == {}

    def test_zero_serves_history_and_clears_buffers(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")
        sync(deps, device, W1)
        record(deps, device, "pois", 9, SyncAction.INSERT, title="Bridge")

        payload = sync(deps, device, 0)

        assert [g["id"] for g in payload["geofences"]] == [5]
        assert [p["id"] for p in payload["pois"]] == [9]
        assert deps.ledger.read(SyncPending, device.id) is None
        assert deps.ledger.read(SyncBackup, device.id) is None
        assert deps.ledger.read(SyncHistory, device.id) is not None

    def test_older_watermark_returns_warning(self, deps, fleet):
        device = fleet["tactical"]
        sync(deps, device, W2)

        payload = sync(deps, device, W1)

        assert payload == {"message": WATERMARK_WARNING}
        assert device_sync_crud.get(deps.store.db, device.id).watermark == W1

    def test_empty_ledger_returns_empty_lists(self, deps, fleet):
        device = fleet["tactical"]
        payload = sync(deps, device, W1)
        assert payload["geofences"] == [] and payload["pois"] == []
        assert payload["watermark"] == W1

    def test_sync_completed_event(self, deps, fleet, events):
        sync(deps, fleet["tactical"], W1)
        assert events[-1]["event_type"] == "sync.completed"
        assert events[-1]["data"]["device_id"] == fleet["tactical"].id


class TestSubmitPoi:
    def test_nato_code_poi_waits_for_approval(self, deps, fleet):
        poi = asyncio.run(WatermarkCoordinator(deps).submit_poi(
            fleet["tactical"].comm_id,
            {"title": "Roadblock", "latitude": 45.0, "longitude": -75.0, "nato_code": "HG"}
        ))
        assert poi.approved is False
        assert poi.nato_code == "SHG---------"
        assert poi.creator_device_id == fleet["tactical"].id
        assert deps.store.get_sync_set(SyncEntityType.POI, poi.id) == [fleet["tactical"].id]
        assert deps.ledger.read(SyncPending, fleet["tactical"].id) is None

    def test_poi_without_symbol_gets_generic_image(self, deps, fleet):
        deps.config = deps.config.model_copy(update={"GENERIC_POI_IMAGE_ID": 42})
        poi = asyncio.run(WatermarkCoordinator(deps).submit_poi(
            fleet["tactical"].comm_id,
            {"title": "Well", "latitude": 45.0, "longitude": -75.0}
        ))
        assert poi.image_id == 42
        assert poi.nato_code is None


class TestDeviceSyncStatus:
    def test_status_follows_ring_and_ack(self, deps, session, fleet):
        device = fleet["tactical"]
        device_sync_crud.record_ring(session, device.id, deps.clock.now_ms())
        session.commit()
        assert WatermarkCoordinator(deps).device_sync_status(fleet["client"].id)[0]["status"] == "pending"

        deps.clock.advance(5)
        sync(deps, device, W1)
        assert WatermarkCoordinator(deps).device_sync_status(fleet["client"].id)[0]["status"] == "synced"

    def test_purge_device(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")
        sync(deps, device, W1)

        asyncio.run(WatermarkCoordinator(deps).purge_device(device.id))

        assert deps.ledger.read(SyncHistory, device.id) is None
        assert device_sync_crud.get(deps.store.db, device.id) is None

    def test_full_resync_counts_as_acknowledgement(self, deps, session, fleet):
        device = fleet["tactical"]
        sync(deps, device, W1)
        deps.clock.advance(10)
        device_sync_crud.record_ring(session, device.id, deps.clock.now_ms())
        session.commit()

        deps.clock.advance(5)
        sync(deps, device, 0)

        status = WatermarkCoordinator(deps).device_sync_status(fleet["client"].id)[0]
        assert status["watermark"] == 0
        assert status["ack_received"] == deps.clock.now_ms()
        assert status["status"] == "synced"


class TestSerialization:
    def test_overlapping_requests_deliver_each_entry_once(self, deps, fleet):
        device = fleet["tactical"]
        record(deps, device, "geofences", 5, SyncAction.INSERT, title="Depot")
        coordinator = WatermarkCoordinator(deps)

        async def overlapping():
            return await asyncio.gather(
                coordinator.request_sync(str(device.comm_id), str(W1)),
                coordinator.request_sync(str(device.comm_id), str(W2)),
            )

        payloads = asyncio.run(overlapping())

        delivered = [g["id"] for payload in payloads for g in payload["geofences"]]
        assert delivered == [5]
        assert device_sync_crud.get(deps.store.db, device.id).watermark == W2

    @pytest.mark.parametrize("model", [DeviceSyncInfo, SyncPending, SyncHistory])
    def test_device_rows_are_locked_on_postgres(self, model):
        statement = for_update_query(model, 7)
        assert "FOR UPDATE" in str(statement.compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE" not in str(statement.compile(dialect=sqlite.dialect()))
