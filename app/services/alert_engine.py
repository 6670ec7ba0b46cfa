# app/services/alert_engine.py
"""
Alert engine: the start / ongoing / finish state machine shared by every
alert type.

An engine is built around one AlertVariant (see alert_evaluators) which names
the alert type, its manager table and its notification texts. An alert episode
is identified by (device, alert type, condition), where the condition is a set
of manager columns such as {"geofence_id": 3}.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

from sqlmodel import select

from app.core.deps import Dependencies
from app.core.exceptions import NotFound
from app.models.alert import Alert, AlertType
from app.services.event_bus import EventType

logger = logging.getLogger(__name__)

ManagerOptions = Dict[str, Dict[str, Any]]


def format_time(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return "N/A"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def format_short_time(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return "N/A"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%d/%m %H:%M")


class AlertEngine:
    def __init__(self, deps: Dependencies, variant, notifier=None):
        self.deps = deps
        self.variant = variant
        self.notifier = notifier
        self._alert_types: Optional[Dict[str, int]] = None

    @property
    def name(self) -> str:
        return self.variant.name

    # ===========================
    # Reference data
    # ===========================

    def alert_type_id(self, type_name: Optional[str] = None) -> int:
        """Alert type id by name, loaded once per engine."""
        if self._alert_types is None:
            rows = self.deps.store.db.exec(select(AlertType)).all()
            self._alert_types = {row.type: row.id for row in rows}
        type_name = type_name or self.name
        if type_name not in self._alert_types:
            raise NotFound("AlertType", type_name)
        return self._alert_types[type_name]

    # ===========================
    # Queries
    # ===========================

    def open_alerts_query(self, condition: Optional[Dict[str, Any]] = None):
        manager = self.variant.manager_model
        query = select(Alert).join(manager, manager.alert_id == Alert.id).where(
            Alert.alert_type_id == self.alert_type_id(),
            Alert.end_timestamp == None  # noqa: E711
        )
        for column, value in (condition or {}).items():
            attribute = getattr(manager, column)
            query = query.where(attribute.is_(None) if value is None else attribute == value)
        return query

    def was_violated(self, device_id: int, condition: Optional[Dict[str, Any]] = None) -> Optional[Alert]:
        """Open alert of this type for the device matching the condition, if any."""
        query = self.open_alerts_query(condition).where(Alert.device_id == device_id)
        return self.deps.store.db.exec(query).first()

    def open_alerts(self, condition: Optional[Dict[str, Any]] = None) -> List[Alert]:
        return list(self.deps.store.db.exec(self.open_alerts_query(condition)).all())

    def get_manager(self, alert: Alert):
        return self.deps.store.db.get(self.variant.manager_model, alert.id)

    # ===========================
    # Transitions
    # ===========================

    async def start_alert(self, device_id: int, options: Dict[str, Any]) -> Alert:
        """Create the Alert row and its manager row in one transaction, then notify."""
        fields = dict(options)
        start_timestamp = fields.pop("start_timestamp", None)
        if start_timestamp is None:
            start_timestamp = self.deps.clock.now_seconds()

        with self.deps.store.transaction() as db:
            alert = Alert(alert_type_id=self.alert_type_id(), device_id=device_id, start_timestamp=start_timestamp)
            db.add(alert)
            db.flush()
            manager = self.variant.manager_model(alert_id=alert.id, **fields)
            db.add(manager)

        logger.info(f"New {self.name} alert is started for device {device_id}: {fields}")
        await self.publish(EventType.ALERT_STARTED, alert)
        await self.notify(alert, manager)
        return alert

    async def finish_alert(self, alert: Alert, options: Dict[str, Any]) -> Alert:
        """Close the alert and merge the finish fields into its manager row in one transaction."""
        fields = dict(options)
        end_timestamp = fields.pop("end_timestamp", None)
        if end_timestamp is None:
            end_timestamp = self.deps.clock.now_seconds()

        with self.deps.store.transaction() as db:
            alert.end_timestamp = end_timestamp
            db.add(alert)
            manager = self.get_manager(alert)
            if manager is not None:
                for key, value in fields.items():
                    setattr(manager, key, value)
                db.add(manager)

        logger.info(f"{self.name} alert {alert.id} is ended for device {alert.device_id}: {fields}")
        await self.publish(EventType.ALERT_FINISHED, alert)
        return alert

    async def process_violation(self, device_id: int, is_violated: bool, options: ManagerOptions) -> Optional[Alert]:
        """
        Move the (device, condition) episode to the state matching is_violated.

        Returns the started or finished alert, or None when nothing changed.
        """
        condition = options.get("condition") or {}
        alert = self.was_violated(device_id, condition)

        if is_violated:
            if alert is None:
                logger.info(f"{self.name} Alert: Device {device_id} has started violating {condition}")
                return await self.start_alert(device_id, options.get("start") or {})
            logger.info(f"{self.name} Alert: Device {device_id} is already violating. {condition}")
            return None

        if alert is not None:
            logger.info(f"{self.name} Alert: Device {device_id} has stopped violating {condition}")
            return await self.finish_alert(alert, options.get("finish") or {})
        logger.info(f"{self.name} Alert: Device {device_id} is not violating {condition}")
        return None

    # ===========================
    # Side effects after commit
    # ===========================

    async def publish(self, event_type: EventType, alert: Alert):
        if self.deps.event_bus is None:
            return
        device = self.deps.store.get_device(alert.device_id)
        await self.deps.event_bus.publish(
            event_type,
            {
                "alert_id": alert.id,
                "alert_type": self.name,
                "device_id": alert.device_id,
                "start_timestamp": alert.start_timestamp,
                "end_timestamp": alert.end_timestamp,
            },
            client_id=device.client_id if device else None
        )

    async def notify(self, alert: Alert, manager):
        """Send alert notifications. Failures are logged and dropped."""
        if self.notifier is None:
            return
        try:
            message = self.variant.message(manager)
            start_time = {
                "regular": format_time(alert.start_timestamp),
                "sms": format_short_time(alert.start_timestamp),
            }
            await self.notifier.send_alert_notification(alert.device_id, self.name, message, start_time)
        except Exception as e:
            logger.error(f"Failed to send {self.name} alert notification for device {alert.device_id}: {e}")
