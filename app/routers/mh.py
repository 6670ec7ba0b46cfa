"""
Message Handler router: endpoints called by MH on behalf of field devices
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from typing import Union
import logging

from app.core.deps import Dependencies, get_dependencies
from app.core.exceptions import FleetError, to_http_exception
from app.schemas.sync import (
    SyncPayloadResponse,
    SyncWarningResponse,
    SyncPoiCreate,
    SyncPoiResponse,
    PingResponse
)
from app.services.watermark_coordinator import WatermarkCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mh/v1", tags=["Message Handler"])


@router.get("/sync", response_model=Union[SyncPayloadResponse, SyncWarningResponse])
async def get_sync(
    comm_id: str = Query(..., alias="commId"),
    watermark: str = Query(...),
    deps: Dependencies = Depends(get_dependencies)
):
    """
    Sync GET from a tactical device.

    The answer depends on the watermark: 0 returns the full History, the
    stored watermark repeats the last batch, a newer one returns pending
    changes. Errors distinguish a bad watermark, an unknown device and a
    client without the sync module.
    """
    try:
        return await WatermarkCoordinator(deps).request_sync(comm_id, watermark)
    except FleetError as e:
        logger.warning(f"Sync request from comm id {comm_id} rejected: {e.message}")
        raise to_http_exception(e)


@router.post("/sync/poi", response_model=SyncPoiResponse)
async def post_sync_poi(
    poi_data: SyncPoiCreate,
    deps: Dependencies = Depends(get_dependencies)
):
    """A tactical device submits a new POI, stored until approved on the platform."""
    try:
        poi = await WatermarkCoordinator(deps).submit_poi(poi_data.comm_id, poi_data.model_dump(exclude={"comm_id"}))
    except FleetError as e:
        raise to_http_exception(e)
    return SyncPoiResponse(
        id=poi.id,
        title=poi.title,
        approved=poi.approved,
        creator_device_id=poi.creator_device_id,
        nato_code=poi.nato_code,
        image_id=poi.image_id
    )


@router.post("/ping", response_model=PingResponse)
async def ping(
    background_tasks: BackgroundTasks,
    deps: Dependencies = Depends(get_dependencies)
):
    """MH is reachable again: answer at once and replay the queued outbound commands in the background."""
    background_tasks.add_task(deps.channel.flush_queue)
    return PingResponse()
