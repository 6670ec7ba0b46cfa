"""
Alert models.

An Alert row is one violation episode for a device. Each alert has exactly one
manager row in the side table of its type, holding the condition fields that
distinguish concurrent episodes (e.g. geofence_id) and report provenance.
"""

from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import BigInteger
from typing import Optional, List, Dict, Any


class AlertType(SQLModel, table=True):
    """Static reference data: Emergency, Speed, Geofence, Cargo, Non-Report, Message."""
    __tablename__ = "alert_type"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(max_length=50, unique=True)


class CargoAlertType(SQLModel, table=True):
    """Static reference data: Door, Humidity, Temperature, Shock, Battery."""
    __tablename__ = "cargo_alert_type"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(max_length=50, unique=True)


class Alert(SQLModel, table=True):
    """
    One open-or-closed violation episode.

    Attributes:
        alert_type_id: Foreign key to alert_type
        device_id: Violating device
        start_timestamp: Epoch seconds when the violation started
        end_timestamp: Epoch seconds when it stopped (None while open)
    """
    __tablename__ = "alert"

    id: Optional[int] = Field(default=None, primary_key=True)
    alert_type_id: int = Field(foreign_key="alert_type.id", index=True)
    device_id: int = Field(index=True)
    start_timestamp: int = Field(sa_type=BigInteger)
    end_timestamp: Optional[int] = Field(default=None, sa_type=BigInteger, index=True)


# ===========================
# Type specific managers
# ===========================

class EmergencyAlertManager(SQLModel, table=True):
    __tablename__ = "emergency_alert_manager"

    alert_id: int = Field(foreign_key="alert.id", primary_key=True)
    is_reset: bool = Field(default=False)
    reset_user_id: Optional[int] = Field(default=None)
    start_report_id: Optional[int] = Field(default=None)
    end_report_id: Optional[int] = Field(default=None)


class SpeedAlertManager(SQLModel, table=True):
    __tablename__ = "speed_alert_manager"

    alert_id: int = Field(foreign_key="alert.id", primary_key=True)
    geofence_id: Optional[int] = Field(default=None, index=True)
    geofence_title: Optional[str] = Field(default=None, max_length=200)
    speed: Optional[float] = Field(default=None)
    min_speed: Optional[float] = Field(default=None)
    max_speed: Optional[float] = Field(default=None)
    start_report_id: Optional[int] = Field(default=None)
    end_report_id: Optional[int] = Field(default=None)


class GeofenceAlertManager(SQLModel, table=True):
    __tablename__ = "geofence_alert_manager"

    alert_id: int = Field(foreign_key="alert.id", primary_key=True)
    geofence_id: int = Field(index=True)
    geofence_title: Optional[str] = Field(default=None, max_length=200)
    geofence_inclusive: Optional[bool] = Field(default=None)
    start_report_id: Optional[int] = Field(default=None)
    end_report_id: Optional[int] = Field(default=None)


class CargoAlertManager(SQLModel, table=True):
    __tablename__ = "cargo_alert_manager"

    alert_id: int = Field(foreign_key="alert.id", primary_key=True)
    cargo_alert_type_id: int = Field(foreign_key="cargo_alert_type.id", index=True)
    cargo_alert_type_title: Optional[str] = Field(default=None, max_length=50)
    cargo_alert_value: Optional[str] = Field(default=None, max_length=50)
    start_status_id: Optional[int] = Field(default=None)
    end_status_id: Optional[int] = Field(default=None)
    start_report_id: Optional[int] = Field(default=None)
    end_report_id: Optional[int] = Field(default=None)


class NonReportAlertManager(SQLModel, table=True):
    __tablename__ = "non_report_alert_manager"

    alert_id: int = Field(foreign_key="alert.id", primary_key=True)
    start_report_id: Optional[int] = Field(default=None)
    end_report_id: Optional[int] = Field(default=None)


# ===========================
# Alert rules (notification subscriptions)
# ===========================

class AlertRule(SQLModel, table=True):
    """
    Notification subscription set up by a client.

    Members are the devices/groups whose alerts the rule watches; subscribers
    receive the notification. subscriber_users maps a user id (as string) to
    {"send_email": bool, "send_sms": bool}.
    """
    __tablename__ = "alert_rule"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    title: str = Field(max_length=200)
    enabled: bool = Field(default=True)
    alert_types: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    member_device_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    member_group_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    subscriber_device_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    subscriber_group_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    subscriber_users: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
