"""
Sync schemas for offline tactical devices
Covers the device-facing MH endpoints and the platform-facing sync module
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any

from app.models.fleet import SyncEntityType
from app.services.projectors import ChangeAction


# ===========================
# Device facing (MH)
# ===========================

class SyncEntryResponse(BaseModel):
    """One ledger entry handed to the device"""
    id: int
    action: int = Field(..., description="0=insert, 1=update, 2=delete, 3=reject")
    data: Dict[str, Any]
    last_modified_by: Optional[int] = None
    last_modified_time: Optional[int] = None


class SyncPayloadResponse(BaseModel):
    """Answer to a device sync GET"""
    device_comm_id: int
    client_id: Optional[int]
    watermark: int
    geofences: List[SyncEntryResponse] = []
    pois: List[SyncEntryResponse] = []


class SyncWarningResponse(BaseModel):
    """Answer when the watermark cannot be processed"""
    message: str


class SyncPoiCreate(BaseModel):
    """POI submitted by a tactical device"""
    comm_id: int = Field(..., alias="commId")
    title: str = Field(..., max_length=200)
    note: Optional[str] = None
    latitude: float
    longitude: float
    nato_code: Optional[str] = Field(None, max_length=10, description="Short NATO symbol code")
    image_id: Optional[int] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "commId": 1234,
                "title": "Checkpoint",
                "latitude": 45.4215,
                "longitude": -75.6972,
                "nato_code": "FG"
            }
        }


class SyncPoiResponse(BaseModel):
    id: int
    title: str
    approved: bool
    creator_device_id: Optional[int]
    nato_code: Optional[str]
    image_id: Optional[int]


class PingResponse(BaseModel):
    message: str = "Received Ping"


# ===========================
# Platform facing
# ===========================

class EntityChangeEvent(BaseModel):
    """Mutation of a syncable entity, emitted by the CRUD layer"""
    entity_type: SyncEntityType
    action: ChangeAction
    entity_id: int
    before: Optional[Dict[str, Any]] = Field(None, description="Snapshot before the change (put)")
    after: Optional[Dict[str, Any]] = Field(None, description="Snapshot after the change, or at deletion")
    timestamp: Optional[int] = Field(None, description="Epoch ms of the change")


class EntityChangeResponse(BaseModel):
    devices: List[int]
    message: str = "Sync ledger updated"


class AssignmentChanges(BaseModel):
    added: List[int] = []
    removed: List[int] = []


class SyncAssignmentsUpdate(BaseModel):
    """Sync module edit for one device"""
    geofences: AssignmentChanges = AssignmentChanges()
    pois: AssignmentChanges = AssignmentChanges()
    groups: AssignmentChanges = AssignmentChanges()


class SyncAssignmentsResponse(BaseModel):
    device_id: int
    ring_sent: bool


class DeviceSyncStatus(BaseModel):
    device_id: int
    watermark: int
    ring_sent: Optional[int]
    ack_received: Optional[int]
    sync_received: Optional[int]
    status: str


class DeviceSyncStatusList(BaseModel):
    devices: List[DeviceSyncStatus]
    total: int
