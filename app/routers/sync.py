"""
Sync router for the platform side of tactical device sync
Entity change ingestion, sync module assignments and device sync status
"""

from fastapi import APIRouter, Depends, Query, status
import logging

from app.core.background_tasks import get_non_report_timers
from app.core.deps import Dependencies, get_dependencies, get_current_user
from app.core.exceptions import FleetError, to_http_exception
from app.models.fleet import PlatformUser
from app.schemas.sync import (
    EntityChangeEvent,
    EntityChangeResponse,
    SyncAssignmentsUpdate,
    SyncAssignmentsResponse,
    DeviceSyncStatus,
    DeviceSyncStatusList
)
from app.services.projectors import ChangeAction
from app.services.sync_processor import SyncProcessor
from app.services.watermark_coordinator import WatermarkCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


# ===========================
# Entity changes
# ===========================

@router.post("/events", response_model=EntityChangeResponse)
async def post_entity_change(
    event: EntityChangeEvent,
    current_user: PlatformUser = Depends(get_current_user),
    deps: Dependencies = Depends(get_dependencies)
):
    """
    Project a geofence, POI, group, device or user mutation into the ledger
    of every device syncing it, then ring those devices.

    When no snapshot is sent the current state of the entity is used.
    """
    try:
        after = event.after
        if after is None:
            after = deps.store.snapshot(event.entity_type, event.entity_id)
        after = dict(after, id=event.entity_id)
        before = event.before if event.action == ChangeAction.PUT else None

        devices = await SyncProcessor(deps).process_entity_change(
            current_user, event.entity_type, event.action, before, after, event.timestamp
        )
    except FleetError as e:
        raise to_http_exception(e)
    return EntityChangeResponse(devices=devices)


# ===========================
# Sync module
# ===========================

@router.post("/devices/{device_id}/assignments", response_model=SyncAssignmentsResponse)
async def update_sync_assignments(
    device_id: int,
    assignments: SyncAssignmentsUpdate,
    current_user: PlatformUser = Depends(get_current_user),
    deps: Dependencies = Depends(get_dependencies)
):
    """Add or remove geofences, POIs and groups synced to a device."""
    try:
        ring_sent = await SyncProcessor(deps).process_sync_assignments(
            current_user, device_id, assignments.model_dump()
        )
    except FleetError as e:
        raise to_http_exception(e)
    return SyncAssignmentsResponse(device_id=device_id, ring_sent=ring_sent)


@router.get("/devices", response_model=DeviceSyncStatusList)
async def list_device_sync_status(
    client_id: int = Query(...),
    current_user: PlatformUser = Depends(get_current_user),
    deps: Dependencies = Depends(get_dependencies)
):
    """Sync status of every device of a client: synced once the last ring is acknowledged."""
    devices = [DeviceSyncStatus(**info) for info in WatermarkCoordinator(deps).device_sync_status(client_id)]
    return DeviceSyncStatusList(devices=devices, total=len(devices))


@router.delete("/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge_device_sync(
    device_id: int,
    current_user: PlatformUser = Depends(get_current_user),
    deps: Dependencies = Depends(get_dependencies)
):
    """Forget the sync state of a deleted device and stop its Non-Report timer."""
    try:
        await WatermarkCoordinator(deps).purge_device(device_id)
    except FleetError as e:
        raise to_http_exception(e)

    timers = get_non_report_timers()
    if timers is not None:
        await timers.cancel(device_id)
