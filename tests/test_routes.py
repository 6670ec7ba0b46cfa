"""
Tests for the HTTP routes (MH, sync module, alerts)
"""

from fastapi.testclient import TestClient

from app.models.fleet import ClientFeature, SyncEntityType
from app.models.sync import SyncPending
from app.services.watermark_coordinator import WATERMARK_WARNING

W1 = "1700000000100"


class TestRootRoutes:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root_lists_modules(self, client: TestClient):
        assert set(client.get("/").json()["modules"]) == {"mh", "sync", "alerts"}


class TestMhRoutes:
    def test_sync_get(self, client: TestClient, fleet):
        response = client.get("/mh/v1/sync", params={"commId": 1001, "watermark": W1})
        assert response.status_code == 200
        data = response.json()
        assert data["device_comm_id"] == 1001
        assert data["geofences"] == []

    def test_bad_watermark(self, client: TestClient, fleet):
        response = client.get("/mh/v1/sync", params={"commId": 1001, "watermark": "abc"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid Watermark"

    def test_unknown_device(self, client: TestClient, fleet):
        response = client.get("/mh/v1/sync", params={"commId": 4242, "watermark": W1})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid Comm Id"

    def test_feature_not_available(self, client: TestClient, session, fleet):
        session.delete(session.get(ClientFeature, (fleet["client"].id, fleet["feature"].id)))
        session.commit()
        response = client.get("/mh/v1/sync", params={"commId": 1001, "watermark": W1})
        assert response.status_code == 403
        assert response.json()["detail"] == "Module not available"

    def test_stale_watermark_warning(self, client: TestClient, fleet):
        client.get("/mh/v1/sync", params={"commId": 1001, "watermark": "1700000000200"})
        response = client.get("/mh/v1/sync", params={"commId": 1001, "watermark": W1})
        assert response.status_code == 200
        assert response.json() == {"message": WATERMARK_WARNING}

    def test_submit_poi(self, client: TestClient, fleet):
        response = client.post("/mh/v1/sync/poi", json={
            "commId": 1001, "title": "Roadblock", "latitude": 45.0, "longitude": -75.0, "nato_code": "HG"
        })
        assert response.status_code == 200
        data = response.json()
        assert data["approved"] is False
        assert data["creator_device_id"] == fleet["tactical"].id

    def test_ping_answers_and_replays_queue(self, client: TestClient, fleet, channel):
        response = client.post("/mh/v1/ping")
        assert response.status_code == 200
        assert response.json() == {"message": "Received Ping"}
        assert channel.flushes == 1

    def test_sync_entries_follow_response_schema(self, client: TestClient, fleet, square_geofence, auth_headers):
        client.post(
            f"/sync/devices/{fleet['tactical'].id}/assignments",
            headers=auth_headers,
            json={"geofences": {"added": [square_geofence.id]}}
        )
        data = client.get("/mh/v1/sync", params={"commId": 1001, "watermark": W1}).json()

        assert set(data) == {"device_comm_id", "client_id", "watermark", "geofences", "pois"}
        entry = data["geofences"][0]
        assert set(entry) == {"id", "action", "data", "last_modified_by", "last_modified_time"}
        assert entry["id"] == square_geofence.id
        assert entry["action"] == 0
        assert entry["last_modified_by"] == fleet["user"].comm_id


class TestSyncRoutes:
    def test_requires_user(self, client: TestClient, fleet):
        response = client.get("/sync/devices", params={"client_id": fleet["client"].id})
        assert response.status_code == 401

    def test_entity_change_with_snapshots(self, client: TestClient, deps, fleet, synced_geofence, auth_headers, channel):
        before = deps.store.snapshot(SyncEntityType.GEOFENCE, synced_geofence.id)
        after = dict(before, note="moved gate")
        response = client.post("/sync/events", headers=auth_headers, json={
            "entity_type": "geofences", "action": "put", "entity_id": synced_geofence.id,
            "before": before, "after": after,
        })
        assert response.status_code == 200
        assert response.json()["devices"] == [fleet["tactical"].id]
        assert channel.rings[-1]["comm_ids"] == [1001]

    def test_entity_change_uses_current_state(self, client: TestClient, deps, fleet, synced_geofence, auth_headers):
        response = client.post("/sync/events", headers=auth_headers, json={
            "entity_type": "geofences", "action": "post", "entity_id": synced_geofence.id,
        })
        assert response.status_code == 200
        pending = deps.ledger.read(SyncPending, fleet["tactical"].id)
        assert pending.geofences[str(synced_geofence.id)]["data"]["title"] == "Checkpoint"

    def test_entity_change_unknown_entity(self, client: TestClient, fleet, auth_headers):
        response = client.post("/sync/events", headers=auth_headers, json={
            "entity_type": "pois", "action": "post", "entity_id": 9999,
        })
        assert response.status_code == 404

    def test_assignments(self, client: TestClient, fleet, square_geofence, auth_headers):
        response = client.post(
            f"/sync/devices/{fleet['tactical'].id}/assignments",
            headers=auth_headers,
            json={"geofences": {"added": [square_geofence.id]}}
        )
        assert response.status_code == 200
        assert response.json() == {"device_id": fleet["tactical"].id, "ring_sent": True}

    def test_device_sync_status(self, client: TestClient, fleet, square_geofence, auth_headers):
        client.post(
            f"/sync/devices/{fleet['tactical'].id}/assignments",
            headers=auth_headers,
            json={"geofences": {"added": [square_geofence.id]}}
        )
        response = client.get("/sync/devices", headers=auth_headers, params={"client_id": fleet["client"].id})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["devices"][0]["status"] == "pending"

        client.get("/mh/v1/sync", params={"commId": 1001, "watermark": "1800000000000"})
        data = client.get("/sync/devices", headers=auth_headers, params={"client_id": fleet["client"].id}).json()
        assert data["devices"][0]["status"] == "synced"

    def test_purge_device(self, client: TestClient, deps, fleet, synced_geofence, auth_headers):
        client.post("/sync/events", headers=auth_headers, json={
            "entity_type": "geofences", "action": "post", "entity_id": synced_geofence.id,
        })
        response = client.delete(f"/sync/devices/{fleet['tactical'].id}", headers=auth_headers)
        assert response.status_code == 204
        assert deps.ledger.read(SyncPending, fleet["tactical"].id) is None


class TestAlertRoutes:
    def report(self, fleet, panic):
        return {"action": "report", "data": {
            "device_id": fleet["tracker"].id, "latitude": 45.0, "longitude": -75.0,
            "speed": 10, "heading": 0, "panic": panic, "report_timestamp": 1700000000,
        }}

    def test_report_event_opens_alert(self, client: TestClient, fleet, alert_types):
        response = client.post("/alerts/events", json=self.report(fleet, panic=True))
        assert response.status_code == 200
        alerts = response.json()["alerts"]
        assert len(alerts) == 1
        assert alerts[0]["alert_type_id"] == alert_types["Emergency"].id
        assert alerts[0]["end_timestamp"] is None

    def test_list_open_alerts(self, client: TestClient, fleet, alert_types):
        client.post("/alerts/events", json=self.report(fleet, panic=True))
        response = client.get("/alerts", params={"device_id": fleet["tracker"].id, "open_only": True})
        assert response.json()["total"] == 1

        client.post("/alerts/events", json=self.report(fleet, panic=False))
        response = client.get("/alerts", params={"device_id": fleet["tracker"].id, "open_only": True})
        assert response.json()["total"] == 0

    def test_unknown_action(self, client: TestClient, fleet, alert_types):
        response = client.post("/alerts/events", json={"action": "bogus", "data": {}})
        assert response.status_code == 400

    def test_report_for_unknown_device(self, client: TestClient, fleet, alert_types):
        response = client.post("/alerts/events", json={"action": "report", "data": {"device_id": 9999}})
        assert response.status_code == 404
