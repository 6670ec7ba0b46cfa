"""
Fleet entity models.

Clients own devices, groups, platform users, geofences and POIs. Devices send
GPS reports; geofences and POIs are pushed to tactical devices through the
sync ledger, while geofence triggers drive the alert engine.
"""

from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import BigInteger, UniqueConstraint
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class SyncEntityType(str, Enum):
    """Entity types that can be synced to a device."""
    GEOFENCE = "geofences"
    POI = "pois"
    USER = "users"
    GROUP = "groups"
    DEVICE = "devices"


class GeofenceShape(str, Enum):
    POLYGON = "polygon"
    BOX = "box"
    RECTANGLE = "rectangle"
    PATH = "path"
    CIRCLE = "circle"


# ===========================
# Clients & features
# ===========================

class Client(SQLModel, table=True):
    __tablename__ = "client"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=200)
    comm_id: Optional[int] = Field(default=None, index=True, description="Comm id used as sender for MH messages")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Feature(SQLModel, table=True):
    __tablename__ = "feature"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=100, unique=True)


class ClientFeature(SQLModel, table=True):
    __tablename__ = "client_feature"

    client_id: int = Field(foreign_key="client.id", primary_key=True)
    feature_id: int = Field(foreign_key="feature.id", primary_key=True)


# ===========================
# Devices, groups, users
# ===========================

class Device(SQLModel, table=True):
    """
    A tracked asset (tactical radio, cellular tracker, IoT container).

    Attributes:
        comm_id: Message Handler address of the device
        device_type: Hardware family (Wave, Whisper...)
        mode: Operating mode; only SCCT devices may pull sync data
        min_speed / max_speed: Device level speed limits (KM/H)
        non_report_threshold: Milliseconds of silence before a Non-Report alert
    """
    __tablename__ = "device"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    name: str = Field(max_length=200)
    comm_id: Optional[int] = Field(default=None, index=True, unique=True)
    device_type: str = Field(default="Whisper", max_length=50)
    mode: Optional[str] = Field(default=None, max_length=50)

    min_speed: Optional[float] = Field(default=None)
    max_speed: Optional[float] = Field(default=None)
    non_report_threshold: Optional[int] = Field(default=None, sa_type=BigInteger)

    created_at: datetime = Field(default_factory=datetime.utcnow)


class DeviceGroup(SQLModel, table=True):
    __tablename__ = "device_group"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    title: str = Field(max_length=200)
    comm_id: Optional[int] = Field(default=None, index=True)


class GroupDevice(SQLModel, table=True):
    __tablename__ = "group_device"

    group_id: int = Field(foreign_key="device_group.id", primary_key=True)
    device_id: int = Field(foreign_key="device.id", primary_key=True)


class GroupUser(SQLModel, table=True):
    __tablename__ = "group_user"

    group_id: int = Field(foreign_key="device_group.id", primary_key=True)
    user_id: int = Field(foreign_key="platform_user.id", primary_key=True)


class PlatformUser(SQLModel, table=True):
    __tablename__ = "platform_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    username: str = Field(max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=50)
    role: str = Field(default="Operator", max_length=50)
    comm_id: Optional[int] = Field(default=None, index=True)


# ===========================
# Geofences & POIs
# ===========================

class Geofence(SQLModel, table=True):
    """
    A geographic area (circle, polygon, rectangle or path).

    Inclusive fences alert when a trigger device leaves them, exclusive fences
    when it enters. Coordinates are a list of {latitude, longitude} points; for
    circles the first point is the centre and width is the radius in meters,
    for paths width is the corridor width in meters.
    """
    __tablename__ = "geofence"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    title: str = Field(max_length=200)
    note: Optional[str] = Field(default=None)
    shape: GeofenceShape = Field(default=GeofenceShape.POLYGON)
    width: Optional[float] = Field(default=None)
    coordinates: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    active: bool = Field(default=True)
    inclusive: bool = Field(default=True)
    approved: bool = Field(default=True)
    min_speed: Optional[float] = Field(default=None)
    max_speed: Optional[float] = Field(default=None)


class GeofenceTrigger(SQLModel, table=True):
    """Device or group whose reports are evaluated against a geofence."""
    __tablename__ = "geofence_trigger"

    id: Optional[int] = Field(default=None, primary_key=True)
    geofence_id: int = Field(foreign_key="geofence.id", index=True)
    device_id: Optional[int] = Field(default=None, foreign_key="device.id", index=True)
    group_id: Optional[int] = Field(default=None, foreign_key="device_group.id", index=True)


class Poi(SQLModel, table=True):
    __tablename__ = "poi"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    title: str = Field(max_length=200)
    note: Optional[str] = Field(default=None)
    latitude: float
    longitude: float
    image_id: Optional[int] = Field(default=None)
    nato_code: Optional[str] = Field(default=None, max_length=20)
    approved: bool = Field(default=True)
    creator_device_id: Optional[int] = Field(default=None, foreign_key="device.id")


class SyncAssignment(SQLModel, table=True):
    """Membership of a device in an entity's sync set."""
    __tablename__ = "sync_assignment"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", "device_id", name="uq_sync_assignment"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: SyncEntityType = Field(index=True)
    entity_id: int = Field(index=True)
    device_id: int = Field(foreign_key="device.id", index=True)


# ===========================
# Telemetry
# ===========================

class Report(SQLModel, table=True):
    """GPS report sent by a device. report_timestamp is in epoch seconds."""
    __tablename__ = "report"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="device.id", index=True)
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)
    speed: Optional[float] = Field(default=None)
    heading: Optional[float] = Field(default=None)
    panic: bool = Field(default=False)
    report_timestamp: int = Field(sa_type=BigInteger, index=True)
