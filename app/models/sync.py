"""
Sync models for offline tactical devices.

The sync ledger has three tiers stored as one row per device:

- SyncPending: changes not yet handed to the device
- SyncBackup: the batch last sent to the device and not yet acknowledged
- SyncHistory: every change ever produced for the device, used for full resyncs

Each row keeps one JSON map per entity type: entity id -> sync entry, where an
entry is {action, data, last_modified_by, last_modified_time}.
"""

from sqlmodel import SQLModel, Field, JSON
from sqlalchemy import BigInteger, Text
from typing import Optional, Dict, Any
from datetime import datetime


class SyncLedgerBase(SQLModel):
    """Columns shared by the three ledger tiers."""

    device_id: int = Field(primary_key=True, description="Device the changes are destined to")
    client_id: Optional[int] = Field(default=None, index=True, description="Client owning the device")
    watermark: int = Field(default=0, sa_type=BigInteger, description="Epoch ms of the last write")

    geofences: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    pois: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    users: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    groups: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    devices: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)


class SyncPending(SyncLedgerBase, table=True):
    __tablename__ = "sync_pending"


class SyncBackup(SyncLedgerBase, table=True):
    __tablename__ = "sync_backup"


class SyncHistory(SyncLedgerBase, table=True):
    __tablename__ = "sync_history"


class DeviceSyncInfo(SQLModel, table=True):
    """
    Per-device reconciliation between platform and device clocks.

    Attributes:
        device_id: Device being tracked
        watermark: Last watermark the device claimed
        ring_sent: When the platform last asked the device to sync (epoch ms)
        sync_received: When the device last pulled sync data (epoch ms)
        ack_received: When the device last confirmed receipt (epoch ms)
    """
    __tablename__ = "device_sync_info"

    device_id: int = Field(primary_key=True)
    watermark: int = Field(default=0, sa_type=BigInteger)
    ring_sent: Optional[int] = Field(default=None, sa_type=BigInteger)
    sync_received: Optional[int] = Field(default=None, sa_type=BigInteger)
    ack_received: Optional[int] = Field(default=None, sa_type=BigInteger)

    @property
    def status(self) -> str:
        if (self.ack_received or 0) >= (self.ring_sent or 0):
            return "synced"
        return "pending"


class MhCommandQueue(SQLModel, table=True):
    """Outbound Message Handler call that failed and waits for the next ping."""
    __tablename__ = "mh_command_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    path: str = Field(max_length=255)
    method: str = Field(max_length=10)
    options: Optional[str] = Field(default=None, sa_type=Text)
    data: Optional[str] = Field(default=None, sa_type=Text, description="JSON encoded request body")
    created_at: datetime = Field(default_factory=datetime.utcnow)
