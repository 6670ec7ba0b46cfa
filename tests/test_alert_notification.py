"""
Tests for alert notifications (MH text messages, email and SMS)
"""

import asyncio
import json
import httpx
import pytest

from app.core.config import settings
from app.core.email import render_alert_email
from app.core.sms import send_sms
from app.models.alert import AlertRule
from app.models.fleet import Report
from app.services.alert_engine import format_time, format_short_time
from app.services.alert_evaluators import AlertDispatcher
from app.services.alert_notification import (
    AlertNotifier, heading_to_compass, report_location, format_text_notification, format_sms_notification
)


def notification(**overrides):
    base = {
        "message": "OUT Geo <Depot>",
        "sms_message": "Geo OUT Depot",
        "start_time": "2023-11-14 22:13:20",
        "sms_start_time": "14/11 22:13 GMT",
        "alert_type": "Geofence",
        "device_id": 2,
        "device_name": "Tracker 1",
        "client_id": 1,
        "speed": 40,
        "heading": "East",
        "location": "45.00000/-75.00000",
        "google_link": "http://maps.google.com/maps?q=loc:45.00000,-75.00000",
    }
    base.update(overrides)
    return base


@pytest.fixture(name="rule")
def rule_fixture(session, fleet):
    rule = AlertRule(
        client_id=fleet["client"].id,
        title="Panic watch",
        alert_types=["Emergency"],
        member_device_ids=[],
        member_group_ids=[fleet["group"].id],
        subscriber_device_ids=[fleet["tactical"].id],
        subscriber_group_ids=[fleet["group"].id],
        subscriber_users={str(fleet["user"].id): {"send_email": True, "send_sms": True}},
    )
    session.add(rule)
    session.commit()
    session.refresh(rule)
    return rule


class TestFormatting:
    @pytest.mark.parametrize("heading,expected", [
        (0, "North"), (44, "North East"), (90, "East"), (135, "South East"),
        (180, "South"), (225, "South West"), (270, "West"), (315, "North West"), (350, "North"),
    ])
    def test_heading_to_compass(self, heading, expected):
        assert heading_to_compass(heading) == expected

    def test_heading_missing(self):
        assert heading_to_compass(None) == "N/A"

    def test_report_location(self):
        info = report_location(Report(device_id=1, latitude=45.0, longitude=-75.0, speed=40, heading=90,
                                      report_timestamp=0))
        assert info["location"] == "45.00000/-75.00000"
        assert info["google_link"] == "http://maps.google.com/maps?q=loc:45.00000,-75.00000"
        assert info["heading"] == "East"

    def test_report_location_without_report(self):
        assert report_location(None)["location"] == "N/A"

    def test_time_formats(self):
        assert format_time(1700000000) == "2023-11-14 22:13:20"
        assert format_short_time(1700000000) == "14/11 22:13"
        assert format_time(None) == "N/A"

    def test_text_notification_carries_pocket_format(self):
        text = format_text_notification(notification())
        short, pocket = text.split("\n|SCC POCKET FORMAT|\n")
        assert short.startswith("F: Tracker 1")
        assert "Type: OUT Geo <Depot>" in pocket
        assert pocket.endswith("http://maps.google.com/maps?q=loc:45.00000,-75.00000")

    def test_sms_notification(self):
        body = format_sms_notification(notification())
        assert body.startswith("Geo OUT Depot>Tracker 1\n14/11 22:13 GMT")
        assert "maps.google.com" in body

    def test_sms_for_text_message_has_no_link(self):
        assert "maps.google.com" not in format_sms_notification(notification(alert_type="Message"))

    def test_email_rendering(self):
        email = render_alert_email(notification())
        assert email["subject"] == "Geofence: Tracker 1"
        assert "From: Tracker 1" in email["body"]
        assert "Type: OUT Geo <Depot>" in email["body"]


class TestAlertNotifier:
    def test_recipients_from_rules(self, deps, fleet, rule):
        emails, numbers = AlertNotifier(deps).user_recipients([rule])
        assert emails == ["dispatch@example.com"]
        assert numbers == ["+15550100"]

    def test_rule_matches_through_group(self, deps, fleet, rule):
        rules = AlertNotifier(deps).matching_rules(fleet["client"].id, fleet["tracker"].id, [fleet["group"].id], "Emergency")
        assert [r.id for r in rules] == [rule.id]
        assert AlertNotifier(deps).matching_rules(fleet["client"].id, fleet["tracker"].id, [], "Emergency") == []

    def test_emergency_notifies_devices_and_groups(self, deps, fleet, alert_types, rule, channel):
        data = {"device_id": fleet["tracker"].id, "latitude": 45.0, "longitude": -75.0, "speed": 0,
                "heading": 0, "panic": True, "report_timestamp": deps.clock.now_seconds()}
        asyncio.run(AlertDispatcher(deps, notifier=AlertNotifier(deps)).dispatch("report", data))

        assert len(channel.messages) == 1
        message = channel.messages[0]
        assert message["is_alert_message"] is True
        assert message["recipient_comm_ids"] == [fleet["tactical"].comm_id, fleet["group"].comm_id]
        assert message["sender_comm_id"] == fleet["client"].comm_id
        assert "T: Emergency" in message["message"]

    def test_no_rule_no_notification(self, deps, fleet, alert_types, channel):
        sent = asyncio.run(AlertNotifier(deps).send_alert_notification(
            fleet["tracker"].id, "Speed", {"regular": "Speed", "sms": "Speed"}, {"regular": "x", "sms": "y"}
        ))
        assert sent is False
        assert channel.messages == []


class TestSms:
    def test_gateway_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "SMS_GATEWAY_URL", None)
        assert asyncio.run(send_sms("+15550100", "hello")) is False

    def test_gateway_post(self, monkeypatch):
        monkeypatch.setattr(settings, "SMS_GATEWAY_URL", "http://sms.test/send")
        monkeypatch.setattr(settings, "SMS_GATEWAY_TOKEN", "secret")
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"queued": True})

        sent = asyncio.run(send_sms("+15550100", "hello", client_id=3, transport=httpx.MockTransport(handler)))

        assert sent is True
        assert captured[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(captured[0].content) == {"client_id": 3, "to": "+15550100", "body": "hello"}

    def test_gateway_error(self, monkeypatch):
        monkeypatch.setattr(settings, "SMS_GATEWAY_URL", "http://sms.test/send")
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        assert asyncio.run(send_sms("+15550100", "hello", transport=transport)) is False
