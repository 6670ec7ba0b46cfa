# app/services/__init__.py
"""
Shared services layer: sync ledger, sync processing and the alert engine.
"""

from app.services.event_bus import EventBus, EventType, get_event_bus
from app.services.sync_ledger import SyncLedger
from app.services.command_channel import DeviceCommandChannel, get_command_channel

__all__ = [
    "EventBus",
    "EventType",
    "get_event_bus",
    "SyncLedger",
    "DeviceCommandChannel",
    "get_command_channel",
]
