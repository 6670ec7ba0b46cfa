# app/services/alert_notification.py
"""
Alert notification sink.

When an alert starts, every enabled alert rule of the device's client that
watches the alert type and has the device (directly or through one of its
groups) as a member is collected. Its subscribers are notified: devices and
groups through one MH text message, users by email and/or SMS.
"""
import logging
from typing import Dict, Any, List, Optional

from sqlmodel import select

from app.core.deps import Dependencies
from app.core.email import send_alert_email
from app.core.sms import send_sms
from app.models.alert import AlertRule
from app.models.fleet import Report

logger = logging.getLogger(__name__)

COMPASS_POINTS = ["North", "North East", "East", "South East", "South", "South West", "West", "North West"]


def heading_to_compass(heading: Optional[float]) -> str:
    """Eight-point compass word for a heading in degrees."""
    if heading is None:
        return "N/A"
    sector = int(((heading % 360) + 22.5) // 45) % 8
    return COMPASS_POINTS[sector]


def report_location(report: Optional[Report]) -> Dict[str, Any]:
    info = {"speed": "N/A", "heading": "N/A", "location": "N/A", "google_link": ""}
    if report is None:
        return info
    if report.latitude is not None and report.longitude is not None:
        lat, lon = f"{report.latitude:.5f}", f"{report.longitude:.5f}"
        info["location"] = f"{lat}/{lon}"
        info["google_link"] = f"http://maps.google.com/maps?q=loc:{lat},{lon}"
    if report.speed is not None:
        info["speed"] = report.speed
    info["heading"] = heading_to_compass(report.heading)
    return info


def format_text_notification(notification: Dict[str, Any]) -> str:
    """MH text message: short format followed by the SCC pocket format."""
    message = notification.get("message") or ""
    short = (
        f"F: {notification['device_name']}"
        f"\n G: {notification['location']} head {notification['heading']}"
        f"\n T: {message}"
        f"\n {notification['start_time']}"
    )
    label = "Text" if notification["alert_type"] == "Message" else "Type"
    pocket = (
        f"From: {notification['device_name']}"
        f"\nGPS: {notification['location']} head {notification['heading']}"
        f"\n{label}: {message}"
        f"\nDate: {notification['start_time']}\n{notification['google_link']}"
    )
    return f"{short}\n|SCC POCKET FORMAT|\n{pocket}"


def format_sms_notification(notification: Dict[str, Any]) -> str:
    body = f"{notification['sms_message']}>{notification['device_name']}\n{notification['sms_start_time']}"
    if notification["alert_type"] != "Message":
        body += f"\n{notification['google_link']}"
    return body


class AlertNotifier:
    def __init__(self, deps: Dependencies):
        self.deps = deps

    def matching_rules(self, client_id: int, device_id: int, group_ids: List[int], alert_type: str) -> List[AlertRule]:
        rules = self.deps.store.db.exec(
            select(AlertRule).where(AlertRule.client_id == client_id, AlertRule.enabled == True)  # noqa: E712
        ).all()
        matching = []
        for rule in rules:
            if alert_type not in (rule.alert_types or []):
                continue
            if device_id in (rule.member_device_ids or []) or set(group_ids) & set(rule.member_group_ids or []):
                matching.append(rule)
        return matching

    async def send_alert_notification(
        self,
        device_id: int,
        alert_type: str,
        message: Dict[str, str],
        start_time: Dict[str, str]
    ) -> bool:
        """Notify the subscribers of every rule watching this device and alert type."""
        store = self.deps.store
        logger.info(f"Sending alert notification for device {device_id}, alert type {alert_type}, start time {start_time['regular']}")
        device = store.get_device(device_id)
        if device is None:
            logger.warning(f"This device has been deleted on platform, id: {device_id}")
            return False

        rules = self.matching_rules(device.client_id, device_id, store.groups_of_device(device_id), alert_type)
        if not rules:
            logger.info(f"No alert rule is available for device {device_id} and alert type {alert_type}")
            return False

        notification = {
            "message": message.get("regular"),
            "sms_message": message.get("sms"),
            "start_time": start_time["regular"],
            "sms_start_time": f"{start_time['sms']} GMT",
            "alert_type": alert_type,
            "device_id": device_id,
            "device_name": device.name,
            "client_id": device.client_id,
            **report_location(store.latest_report(device_id)),
        }

        await self.notify_devices_and_groups(rules, notification)
        emails, numbers = self.user_recipients(rules)
        for email in emails:
            await send_alert_email(email, notification)
        sms_body = format_sms_notification(notification)
        for number in numbers:
            await send_sms(number, sms_body, client_id=device.client_id)
        return True

    async def notify_devices_and_groups(self, rules: List[AlertRule], notification: Dict[str, Any]):
        device_ids = sorted({d for rule in rules for d in (rule.subscriber_device_ids or [])})
        group_ids = sorted({g for rule in rules for g in (rule.subscriber_group_ids or [])})
        recipients = self.deps.store.device_comm_ids(device_ids) + self.deps.store.group_comm_ids(group_ids)
        if not recipients or self.deps.channel is None:
            return

        logger.info(f"Sending notifications to devices with comm ids {recipients}")
        await self.deps.channel.send_message({
            "client_id": notification["client_id"],
            "canned_number": None,
            "message": format_text_notification(notification),
            "source_message_id": None,
            "is_alert_message": True,
            "recipient_comm_ids": recipients,
            "sender_comm_id": self.deps.store.client_comm_id(notification["client_id"]),
        })

    def user_recipients(self, rules: List[AlertRule]):
        """Email addresses and phone numbers of subscribed users, one entry per rule flag."""
        user_ids = sorted({int(uid) for rule in rules for uid in (rule.subscriber_users or {})})
        emails: List[str] = []
        numbers: List[str] = []
        for user in self.deps.store.users_by_ids(user_ids):
            for rule in rules:
                flags = (rule.subscriber_users or {}).get(str(user.id))
                if not flags:
                    continue
                if flags.get("send_email") and user.email:
                    emails.append(user.email)
                if flags.get("send_sms") and user.phone_number:
                    numbers.append(user.phone_number)
        logger.info(f"Alert notification recipients: emails {emails}, sms {numbers}")
        return emails, numbers
