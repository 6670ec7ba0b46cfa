"""
Tests for the change projectors
"""

from app.models.fleet import SyncEntityType
from app.services.projectors import (
    ChangeAction, GEOFENCE_TYPE_CODES, geofence_color, modified_fields, split_sync_sets, project_change,
    COLOR_GRAY, COLOR_GREEN, COLOR_RED
)
from app.services.sync_ledger import SyncAction


def geofence(**overrides):
    base = {
        "id": 7,
        "title": "Depot",
        "note": "north gate",
        "shape": "polygon",
        "width": None,
        "coordinates": [{"latitude": 1, "longitude": 1}, {"latitude": 2, "longitude": 2}, {"latitude": 1, "longitude": 2}],
        "active": True,
        "inclusive": True,
        "approved": True,
        "sync_devices": [1, 2],
    }
    base.update(overrides)
    return base


def poi(**overrides):
    base = {
        "id": 9,
        "title": "Bridge",
        "note": None,
        "latitude": 45.0,
        "longitude": -75.0,
        "image_id": None,
        "nato_code": "SFGP",
        "approved": True,
        "sync_devices": [1],
    }
    base.update(overrides)
    return base


class TestHelpers:
    def test_split_sync_sets(self):
        sets = split_sync_sets([2, 3], [1, 2])
        assert sets == {"added": [3], "removed": [1], "untouched": [2]}

    def test_modified_fields_only_tracks_allow_list(self):
        before = {"title": "a", "note": "x", "secret": 1}
        after = {"title": "b", "note": "x", "secret": 2}
        assert modified_fields(before, after, ["title", "note"]) == {"title": "b"}

    def test_geofence_color(self):
        assert geofence_color(False, True) == COLOR_GRAY
        assert geofence_color(True, True) == COLOR_GREEN
        assert geofence_color(True, False) == COLOR_RED

    def test_geofence_type_codes(self):
        assert GEOFENCE_TYPE_CODES["circle"] == "002"
        assert GEOFENCE_TYPE_CODES["path"] == "001"
        assert GEOFENCE_TYPE_CODES["rectangle"] == "000"


# ============================================================
# GEOFENCES
# ============================================================


class TestGeofenceProjector:
    def test_post_fans_out_insert(self):
        projection = project_change(SyncEntityType.GEOFENCE, ChangeAction.POST, None, geofence())
        assert sorted(projection) == [1, 2]
        assert projection[1]["action"] == SyncAction.INSERT
        assert projection[1]["data"]["type"] == "000"
        assert projection[1]["data"]["color"] == COLOR_GREEN

    def test_post_inactive_sends_nothing(self):
        assert project_change(SyncEntityType.GEOFENCE, ChangeAction.POST, None, geofence(active=False)) == {}

    def test_delete_inactive_sends_nothing(self):
        assert project_change(SyncEntityType.GEOFENCE, ChangeAction.DELETE, None, geofence(active=False)) == {}

    def test_delete_fans_out_delete(self):
        projection = project_change(SyncEntityType.GEOFENCE, ChangeAction.DELETE, None, geofence())
        assert projection[2] == {"action": SyncAction.DELETE, "data": {"id": 7, "title": "Depot"}}

    def test_note_change_is_update_for_untouched(self):
        projection = project_change(
            SyncEntityType.GEOFENCE, ChangeAction.PUT, geofence(), geofence(note="south gate")
        )
        assert projection[1]["action"] == SyncAction.UPDATE
        assert projection[1]["data"]["note"] == "south gate"
        assert "coordinates" not in projection[1]["data"]

    def test_activation_turns_untouched_into_insert(self):
        projection = project_change(
            SyncEntityType.GEOFENCE, ChangeAction.PUT, geofence(active=False), geofence(active=True, note="open")
        )
        assert sorted(projection) == [1, 2]
        assert all(change["action"] == SyncAction.INSERT for change in projection.values())
        assert projection[1]["data"]["coordinates"] == geofence()["coordinates"]

    def test_deactivation_removes_from_everyone(self):
        before = geofence(sync_devices=[1, 2])
        after = geofence(active=False, sync_devices=[2, 3])
        projection = project_change(SyncEntityType.GEOFENCE, ChangeAction.PUT, before, after)
        assert sorted(projection) == [1, 2]
        assert all(change["action"] == SyncAction.DELETE for change in projection.values())

    def test_inactive_without_changes_sends_nothing(self):
        before = geofence(active=False, sync_devices=[1])
        after = geofence(active=False, sync_devices=[2])
        assert project_change(SyncEntityType.GEOFENCE, ChangeAction.PUT, before, after) == {}

    def test_sync_set_change_without_field_change(self):
        before = geofence(sync_devices=[1, 2])
        after = geofence(sync_devices=[2, 3])
        projection = project_change(SyncEntityType.GEOFENCE, ChangeAction.PUT, before, after)
        assert projection[3]["action"] == SyncAction.INSERT
        assert projection[1]["action"] == SyncAction.DELETE
        assert 2 not in projection

    def test_geometry_change_sends_whole_geometry(self):
        after = geofence(shape="circle", width=300, coordinates=[{"latitude": 1, "longitude": 1}])
        projection = project_change(SyncEntityType.GEOFENCE, ChangeAction.PUT, geofence(), after)
        data = projection[1]["data"]
        assert data["type"] == "002"
        assert data["width"] == 300
        assert data["coordinates"] == [{"latitude": 1, "longitude": 1}]


# ============================================================
# POIS
# ============================================================


class TestPoiProjector:
    def test_approval_is_insert(self):
        before = poi(approved=False, sync_devices=[])
        after = poi(approved=True, sync_devices=[4])
        projection = project_change(SyncEntityType.POI, ChangeAction.PUT, before, after)
        assert projection == {4: {"action": SyncAction.INSERT, "data": projection[4]["data"]}}
        assert projection[4]["data"]["nato_code"] == {"affiliation": "F", "area": "G"}

    def test_unapproval_is_reject(self):
        projection = project_change(SyncEntityType.POI, ChangeAction.PUT, poi(), poi(approved=False))
        assert projection[1]["action"] == SyncAction.REJECT

    def test_post_unapproved_sends_nothing(self):
        assert project_change(SyncEntityType.POI, ChangeAction.POST, None, poi(approved=False)) == {}

    def test_delete_unapproved_is_reject(self):
        projection = project_change(SyncEntityType.POI, ChangeAction.DELETE, None, poi(approved=False))
        assert projection[1]["action"] == SyncAction.REJECT

    def test_move_sends_coordinates(self):
        projection = project_change(SyncEntityType.POI, ChangeAction.PUT, poi(), poi(latitude=46.0))
        assert projection[1]["data"] == {"id": 9, "coordinates": [{"latitude": 46.0, "longitude": -75.0}]}

    def test_image_poi_has_no_nato_code(self):
        projection = project_change(SyncEntityType.POI, ChangeAction.POST, None, poi(image_id=3))
        assert projection[1]["data"]["nato_code"] == {}


# ============================================================
# GROUPS, DEVICES, USERS
# ============================================================


class TestMemberProjectors:
    def test_device_rename_is_update(self):
        before = {"id": 3, "comm_id": 1002, "name": "Old", "sync_devices": [1]}
        after = {"id": 3, "comm_id": 1002, "name": "New", "sync_devices": [1]}
        projection = project_change(SyncEntityType.DEVICE, ChangeAction.PUT, before, after)
        assert projection[1] == {"action": SyncAction.UPDATE, "data": {"id": 3, "comm_id": 1002, "title": "New"}}

    def test_user_insert_payload(self):
        user = {"id": 4, "comm_id": 500, "username": "dispatch", "role": "Contact User",
                "phone_number": "+1555", "sync_devices": [1]}
        data = project_change(SyncEntityType.USER, ChangeAction.POST, None, user)[1]["data"]
        assert data["platform_enabled"] is False
        assert data["sms_enabled"] is True

    def test_group_untracked_change_sends_nothing(self):
        before = {"id": 2, "comm_id": 700, "title": "Convoy", "users": [1], "sync_devices": [1]}
        after = {"id": 2, "comm_id": 700, "title": "Convoy", "users": [1, 2], "sync_devices": [1]}
        assert project_change(SyncEntityType.GROUP, ChangeAction.PUT, before, after) == {}
