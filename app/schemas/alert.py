"""
Alert schemas
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any


class AlertEvent(BaseModel):
    """Event feeding the alert evaluators"""
    action: str = Field(..., description="report, cargo_status, cargo_settings, geofence, device or report_timeout")
    data: Dict[str, Any]

    class Config:
        json_schema_extra = {
            "example": {
                "action": "report",
                "data": {
                    "device_id": 7,
                    "latitude": 45.4215,
                    "longitude": -75.6972,
                    "speed": 80,
                    "heading": 90,
                    "panic": False,
                    "report_timestamp": 1700000000
                }
            }
        }


class AlertResponse(BaseModel):
    id: int
    alert_type_id: int
    device_id: int
    start_timestamp: int
    end_timestamp: Optional[int]

    class Config:
        from_attributes = True


class AlertEventResponse(BaseModel):
    alerts: List[AlertResponse]
    message: str = "Alert event processed"


class AlertListResponse(BaseModel):
    alerts: List[AlertResponse]
    total: int
