# app/services/alert_evaluators.py
"""
Alert type variants and the event dispatcher that drives them.

A variant is the closed description of one alert type: its name, manager
table, violation predicate and notification texts. The AlertEngine applies the
shared state machine; the AlertDispatcher maps inbound events to evaluations.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Type

from sqlmodel import SQLModel, select

from app.core.deps import Dependencies
from app.core.exceptions import InvalidRequest, NotFound
from app.models.alert import (
    Alert, CargoAlertType, EmergencyAlertManager, SpeedAlertManager,
    GeofenceAlertManager, CargoAlertManager, NonReportAlertManager
)
from app.models.fleet import Device, Geofence, GeofenceShape, Report
from app.services.alert_engine import AlertEngine
from app.services.geometry import inside_circle, inside_polygon, distance_to_path

logger = logging.getLogger(__name__)


# ===========================
# Variants
# ===========================

class AlertVariant:
    name: str
    short_name: Optional[str] = None
    manager_model: Type[SQLModel]

    def message(self, manager) -> Dict[str, str]:
        return {"regular": self.name, "sms": self.short_name or self.name}


class EmergencyVariant(AlertVariant):
    name = "Emergency"
    short_name = "Emgcy"
    manager_model = EmergencyAlertManager

    def is_violated(self, report: Report) -> bool:
        return bool(report.panic)


@dataclass
class SpeedLimits:
    """Speed limits of a geofence, or of the device itself when geofence_id is None."""
    geofence_id: Optional[int]
    title: Optional[str]
    min_speed: Optional[float]
    max_speed: Optional[float]
    active: bool = True


class SpeedVariant(AlertVariant):
    name = "Speed"
    manager_model = SpeedAlertManager

    def is_violated(self, limits: SpeedLimits, report: Report) -> bool:
        if report.speed is None:
            return False
        too_slow = limits.min_speed is not None and report.speed < limits.min_speed
        too_fast = limits.max_speed is not None and report.speed > limits.max_speed
        return too_slow or too_fast

    def message(self, manager):
        speed, min_speed, max_speed = manager.speed, manager.min_speed, manager.max_speed
        bound = ""
        if speed is not None and min_speed is not None and speed < min_speed:
            bound = f"(<{min_speed})"
        elif speed is not None and max_speed is not None and speed > max_speed:
            bound = f"(>{max_speed})"

        message = {"regular": f"Speed at {speed}KM/H {bound}", "sms": f"Speed {speed}"}
        if manager.geofence_id:
            message["regular"] += f" For Geo <{manager.geofence_title}>"
            message["sms"] += f" {manager.geofence_title}"
        return message


class GeofenceVariant(AlertVariant):
    name = "Geofence"
    manager_model = GeofenceAlertManager

    def is_inside(self, geofence: Geofence, location: Dict[str, float]) -> bool:
        coordinates = geofence.coordinates or []
        shape = GeofenceShape(geofence.shape)
        if shape == GeofenceShape.CIRCLE:
            return bool(coordinates) and inside_circle(location, coordinates[0], geofence.width or 0)
        return inside_polygon(location, coordinates)

    def is_violated(self, geofence: Geofence, report: Report) -> bool:
        """Inclusive fences are violated outside, exclusive fences inside. Inactive fences never are."""
        if not geofence.active or report.latitude is None or report.longitude is None:
            return False
        location = {"latitude": report.latitude, "longitude": report.longitude}

        if GeofenceShape(geofence.shape) == GeofenceShape.PATH:
            half_width = (geofence.width or 0) / 2
            distance = distance_to_path(location, geofence.coordinates or [])
            return distance > half_width if geofence.inclusive else distance < half_width

        inside = self.is_inside(geofence, location)
        return not inside if geofence.inclusive else inside

    def message(self, manager):
        direction = "OUT" if manager.geofence_inclusive else "IN"
        return {
            "regular": f"{direction} Geo <{manager.geofence_title}>",
            "sms": f"Geo {direction} {manager.geofence_title}",
        }


# Cargo sub-type -> status field holding its value
CARGO_STATUS_FIELDS = {
    "Door": "door_open",
    "Humidity": "humidity",
    "Temperature": "temperature",
    "Shock": "shock_alert",
    "Battery": "battery_charge",
}

CARGO_SHORT_NAMES = {
    "Door": "Door",
    "Humidity": "Hum",
    "Temperature": "Temp",
    "Shock": "Shock",
    "Battery": "Btry",
}


def _greater(value, limit) -> bool:
    return value is not None and limit is not None and value > limit


def _lower(value, limit) -> bool:
    return value is not None and limit is not None and value < limit


class CargoVariant(AlertVariant):
    name = "Cargo"
    manager_model = CargoAlertManager

    def is_violated(self, status: Dict[str, Any], settings: Dict[str, Any], cargo_type: str) -> bool:
        if cargo_type == "Door":
            return bool(status.get("door_open"))
        if cargo_type == "Humidity":
            return _greater(status.get("humidity"), settings.get("humidity_high"))
        if cargo_type == "Temperature":
            temperature = status.get("temperature")
            return _lower(temperature, settings.get("temp_low")) or _greater(temperature, settings.get("temp_high"))
        if cargo_type == "Shock":
            return _greater(status.get("shock"), settings.get("shock_high"))
        if cargo_type == "Battery":
            return status.get("battery_charge") == 0
        return False

    def value(self, status: Dict[str, Any], cargo_type: str) -> Optional[str]:
        value = status.get(CARGO_STATUS_FIELDS.get(cargo_type, ""))
        return None if value is None else str(value)

    def message(self, manager):
        title = manager.cargo_alert_type_title
        return {
            "regular": f"Cargo <{title} ({manager.cargo_alert_value})>",
            "sms": f"Cargo {CARGO_SHORT_NAMES.get(title, title)}",
        }


class NonReportVariant(AlertVariant):
    name = "Non-Report"
    short_name = "NR"
    manager_model = NonReportAlertManager

    def is_violated(self, report: Optional[Report], threshold_ms: Optional[int], now_seconds: int) -> bool:
        """
        Silence longer than the device threshold.

        With no report at all the silence is measured from the epoch, so any
        device that never reported is violating as soon as it has a threshold.
        """
        if threshold_ms is None:
            return False
        if report is None:
            return now_seconds > threshold_ms / 1000
        return now_seconds - report.report_timestamp > threshold_ms / 1000


VARIANTS: List[AlertVariant] = [
    EmergencyVariant(), SpeedVariant(), GeofenceVariant(), CargoVariant(), NonReportVariant()
]


# ===========================
# Dispatcher
# ===========================

class AlertDispatcher:
    """
    Routes alert events to the evaluators.

    Actions: report, cargo_status, cargo_settings, geofence, device and
    report_timeout. Every evaluation returns the alerts it started or finished.
    """

    ACTIONS = ("report", "cargo_status", "cargo_settings", "geofence", "device", "report_timeout")

    def __init__(self, deps: Dependencies, notifier=None, timers=None):
        self.deps = deps
        self.timers = timers
        self.engines: Dict[str, AlertEngine] = {
            variant.name: AlertEngine(deps, variant, notifier) for variant in VARIANTS
        }
        self._cargo_types: Optional[Dict[str, int]] = None

    @property
    def emergency(self) -> AlertEngine:
        return self.engines["Emergency"]

    @property
    def speed(self) -> AlertEngine:
        return self.engines["Speed"]

    @property
    def geofence(self) -> AlertEngine:
        return self.engines["Geofence"]

    @property
    def cargo(self) -> AlertEngine:
        return self.engines["Cargo"]

    @property
    def non_report(self) -> AlertEngine:
        return self.engines["Non-Report"]

    async def dispatch(self, action: str, data: Dict[str, Any]) -> List[Alert]:
        if action == "report":
            return await self.on_report(self.ingest_report(data))
        if action in ("cargo_status", "cargo_settings"):
            return await self.evaluate_cargo(data)
        if action == "geofence":
            return await self.on_geofence_update(data["id"])
        if action == "device":
            return await self.on_device_update(data["id"])
        if action == "report_timeout":
            return await self.evaluate_non_report_timeout(data["id"])
        raise InvalidRequest(f"Action {action} is not recognized by the alert plugins")

    # ===========================
    # Event handlers
    # ===========================

    def ingest_report(self, data: Dict[str, Any]) -> Report:
        """Load a stored report by id, or store the one carried by the event."""
        report_id = data.get("report_id") or data.get("id")
        if report_id is not None:
            report = self.deps.store.db.get(Report, report_id)
            if report is None:
                raise NotFound("Report", report_id)
            return report

        self.deps.store.find_device(data["device_id"])
        report = Report(
            device_id=data["device_id"],
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            speed=data.get("speed"),
            heading=data.get("heading"),
            panic=bool(data.get("panic", False)),
            report_timestamp=data.get("report_timestamp") or self.deps.clock.now_seconds(),
        )
        with self.deps.store.transaction() as db:
            db.add(report)
        return report

    async def reset_timer(self, device_id: int):
        if self.timers is None:
            return
        device = self.deps.store.get_device(device_id)
        if device is not None:
            await self.timers.reset(device_id, device.non_report_threshold)

    async def on_report(self, report: Report) -> List[Alert]:
        alerts = []
        alerts += await self.evaluate_emergency(report)
        alerts += await self.evaluate_non_report(report.device_id, report)
        await self.reset_timer(report.device_id)
        # Geofence first: speed skips fences the device is already violating
        alerts += await self.evaluate_geofences_for_report(report)
        alerts += await self.evaluate_speed_for_report(report)
        return alerts

    async def on_geofence_update(self, geofence_id: int) -> List[Alert]:
        alerts = await self.evaluate_geofence_update(geofence_id)
        alerts += await self.evaluate_speed_for_geofence_update(geofence_id)
        return alerts

    async def on_device_update(self, device_id: int) -> List[Alert]:
        alerts = await self.evaluate_speed_for_device_update(device_id)
        report = self.deps.store.latest_report(device_id)
        if report is not None:
            alerts += await self.evaluate_non_report(device_id, report)
        await self.reset_timer(device_id)
        return alerts

    # ===========================
    # Emergency
    # ===========================

    async def evaluate_emergency(self, report: Report) -> List[Alert]:
        logger.info(f"Processing emergency alert triggered by device report {report.id}")
        options = {
            "condition": {},
            "start": {"start_report_id": report.id, "start_timestamp": report.report_timestamp},
            "finish": {"is_reset": True, "end_report_id": report.id, "end_timestamp": report.report_timestamp},
        }
        alert = await self.emergency.process_violation(
            report.device_id, self.emergency.variant.is_violated(report), options
        )
        return [alert] if alert else []

    # ===========================
    # Geofence
    # ===========================

    def geofence_options(self, geofence: Geofence, report: Report) -> Dict[str, Dict[str, Any]]:
        now = self.deps.clock.now_seconds()
        return {
            "condition": {"geofence_id": geofence.id},
            "start": {
                "geofence_id": geofence.id,
                "geofence_title": geofence.title,
                "geofence_inclusive": geofence.inclusive,
                "start_report_id": report.id,
                "start_timestamp": now,
            },
            "finish": {"end_report_id": report.id, "end_timestamp": now},
        }

    async def evaluate_geofence(self, geofence: Geofence, reports: List[Report]) -> List[Alert]:
        alerts = []
        variant = self.geofence.variant
        for report in reports:
            alert = await self.geofence.process_violation(
                report.device_id, variant.is_violated(geofence, report), self.geofence_options(geofence, report)
            )
            if alert:
                alerts.append(alert)
        return alerts

    async def evaluate_geofences_for_report(self, report: Report) -> List[Alert]:
        logger.info(f"Processing geofence alert triggered by device report {report.id}")
        alerts = []
        for geofence in self.deps.store.get_trigger_geofences(report.device_id):
            alerts += await self.evaluate_geofence(geofence, [report])
        return alerts

    def trigger_reports(self, geofence_id: int) -> List[Report]:
        """Latest reports of the fence's trigger devices; devices that never reported are left out."""
        return [
            entry["latest_report"]
            for entry in self.deps.store.get_trigger_eligible_devices(geofence_id)
            if entry["latest_report"] is not None
        ]

    async def close_untracked(self, engine: AlertEngine, geofence_id: int, title: Optional[str], tracked: List[int]) -> List[Alert]:
        """Force-close open alerts of a fence for devices that no longer trigger it."""
        alerts = []
        for alert in engine.open_alerts({"geofence_id": geofence_id}):
            if alert.device_id in tracked:
                continue
            logger.info(f"Device {alert.device_id} is no longer a trigger of geofence '{title}' ( Geofence ID: {geofence_id} )")
            report = self.deps.store.latest_report(alert.device_id)
            finish = {"end_report_id": report.id if report else None, "end_timestamp": self.deps.clock.now_seconds()}
            alerts.append(await engine.finish_alert(alert, finish))
        return alerts

    async def evaluate_geofence_update(self, geofence_id: int) -> List[Alert]:
        logger.info(f"Processing geofence alert triggered by geofence update {geofence_id}")
        geofence = self.deps.store.db.get(Geofence, geofence_id)
        if geofence is None:
            return await self.close_untracked(self.geofence, geofence_id, None, [])

        reports = self.trigger_reports(geofence_id)
        alerts = await self.evaluate_geofence(geofence, reports)
        alerts += await self.close_untracked(self.geofence, geofence_id, geofence.title, [r.device_id for r in reports])
        return alerts

    def open_geofence_ids(self, device_id: int) -> List[int]:
        """Fences the device is currently violating."""
        manager = GeofenceAlertManager
        query = select(manager.geofence_id).join(Alert, Alert.id == manager.alert_id).where(
            Alert.device_id == device_id,
            Alert.alert_type_id == self.geofence.alert_type_id(),
            Alert.end_timestamp == None  # noqa: E711
        )
        return list(self.deps.store.db.exec(query).all())

    # ===========================
    # Speed
    # ===========================

    def speed_options(self, limits: SpeedLimits, report: Report) -> Dict[str, Dict[str, Any]]:
        now = self.deps.clock.now_seconds()
        return {
            "condition": {"geofence_id": limits.geofence_id},
            "start": {
                "geofence_id": limits.geofence_id,
                "geofence_title": limits.title,
                "start_report_id": report.id,
                "speed": report.speed,
                "min_speed": limits.min_speed,
                "max_speed": limits.max_speed,
                "start_timestamp": now,
            },
            "finish": {"end_report_id": report.id, "end_timestamp": now},
        }

    async def evaluate_speed(self, limits: List[SpeedLimits], reports: List[Report], skip_geofence_ids: Optional[List[int]] = None) -> List[Alert]:
        skip_geofence_ids = skip_geofence_ids or []
        variant = self.speed.variant
        alerts = []
        for limit in limits:
            for report in reports:
                is_violated = (
                    limit.active
                    and variant.is_violated(limit, report)
                    and limit.geofence_id not in skip_geofence_ids
                )
                alert = await self.speed.process_violation(report.device_id, is_violated, self.speed_options(limit, report))
                if alert:
                    alerts.append(alert)
        return alerts

    @staticmethod
    def geofence_limits(geofence: Geofence) -> SpeedLimits:
        return SpeedLimits(geofence.id, geofence.title, geofence.min_speed, geofence.max_speed, geofence.active)

    @staticmethod
    def device_limits(device: Device) -> SpeedLimits:
        return SpeedLimits(None, None, device.min_speed, device.max_speed)

    async def evaluate_speed_for_report(self, report: Report) -> List[Alert]:
        logger.info(f"Processing speed alert triggered by device report {report.id}")
        device = self.deps.store.find_device(report.device_id)
        limits = [self.geofence_limits(g) for g in self.deps.store.get_trigger_geofences(device.id)]
        limits.append(self.device_limits(device))
        return await self.evaluate_speed(limits, [report], self.open_geofence_ids(device.id))

    async def evaluate_speed_for_device_update(self, device_id: int) -> List[Alert]:
        logger.info(f"Processing speed alert triggered by device update {device_id}")
        device = self.deps.store.find_device(device_id)
        report = self.deps.store.latest_report(device_id)
        if report is None:
            return []
        return await self.evaluate_speed([self.device_limits(device)], [report])

    async def evaluate_speed_for_geofence_update(self, geofence_id: int) -> List[Alert]:
        logger.info(f"Processing speed alert triggered by geofence update {geofence_id}")
        geofence = self.deps.store.db.get(Geofence, geofence_id)
        if geofence is None:
            return await self.close_untracked(self.speed, geofence_id, None, [])

        violating_devices = {alert.device_id for alert in self.geofence.open_alerts({"geofence_id": geofence_id})}
        reports = [r for r in self.trigger_reports(geofence_id) if r.device_id not in violating_devices]
        alerts = await self.evaluate_speed([self.geofence_limits(geofence)], reports)
        alerts += await self.close_untracked(self.speed, geofence_id, geofence.title, [r.device_id for r in reports])
        return alerts

    # ===========================
    # Cargo
    # ===========================

    def cargo_types(self) -> Dict[str, int]:
        if self._cargo_types is None:
            rows = self.deps.store.db.exec(select(CargoAlertType)).all()
            self._cargo_types = {row.type: row.id for row in rows}
        return self._cargo_types

    async def evaluate_cargo(self, data: Dict[str, Any]) -> List[Alert]:
        """Evaluate each cargo sub-type independently from one status + settings pair."""
        status, settings = data.get("status"), data.get("settings") or {}
        if status is None:
            return []
        device_id = data["device_id"]
        logger.info(f"Processing cargo alert triggered by a status report for device {device_id}")

        report = self.deps.store.latest_report(device_id)
        report_id = report.id if report else None
        status_id = status.get("id")
        variant = self.cargo.variant

        alerts = []
        for cargo_type, cargo_type_id in self.cargo_types().items():
            now = self.deps.clock.now_seconds()
            options = {
                "condition": {"cargo_alert_type_id": cargo_type_id},
                "start": {
                    "start_report_id": report_id,
                    "start_status_id": status_id,
                    "cargo_alert_type_id": cargo_type_id,
                    "cargo_alert_type_title": cargo_type,
                    "cargo_alert_value": variant.value(status, cargo_type),
                    "start_timestamp": now,
                },
                "finish": {"end_status_id": status_id, "end_report_id": report_id, "end_timestamp": now},
            }
            alert = await self.cargo.process_violation(device_id, variant.is_violated(status, settings, cargo_type), options)
            if alert:
                alerts.append(alert)
        return alerts

    # ===========================
    # Non-Report
    # ===========================

    async def evaluate_non_report(self, device_id: int, report: Optional[Report]) -> List[Alert]:
        device = self.deps.store.find_device(device_id)
        now = self.deps.clock.now_seconds()
        report_id = report.id if report else None
        options = {
            "condition": {},
            "start": {"start_report_id": report_id, "start_timestamp": now},
            "finish": {"end_report_id": report_id, "end_timestamp": now},
        }
        is_violated = self.non_report.variant.is_violated(report, device.non_report_threshold, now)
        alert = await self.non_report.process_violation(device_id, is_violated, options)
        return [alert] if alert else []

    async def evaluate_non_report_timeout(self, device_id: int) -> List[Alert]:
        logger.info(f"Processing Non-Report alert triggered by timeout for device {device_id}")
        if self.deps.store.get_device(device_id) is None:
            logger.warning(f"This device has been deleted on platform, id: {device_id}")
            return []
        return await self.evaluate_non_report(device_id, self.deps.store.latest_report(device_id))
