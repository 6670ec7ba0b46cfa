import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.main import app
from app.database.engine import get_db
from app.core.deps import Clock, Dependencies, get_dependencies, get_current_user
from app.models.fleet import (
    Client, Feature, ClientFeature, Device, DeviceGroup, GroupDevice, GroupUser,
    PlatformUser, Geofence, GeofenceShape, GeofenceTrigger, Poi, SyncAssignment, SyncEntityType
)
from app.models.alert import AlertType, CargoAlertType
from app.services.event_bus import EventBus

NOW_MS = 1700000000000


class FixedClock(Clock):
    """Clock frozen at a given epoch ms, moved forward by tests."""

    def __init__(self, now_ms: int = NOW_MS):
        self.current_ms = now_ms

    def now_ms(self) -> int:
        return self.current_ms

    def now_seconds(self) -> int:
        return self.current_ms // 1000

    def advance(self, ms: int):
        self.current_ms += ms


class FakeChannel:
    """Records what would have been sent to the Message Handler."""

    def __init__(self):
        self.rings = []
        self.messages = []
        self.calls = []
        self.flushes = 0

    async def send_ring(self, client_id, comm_ids):
        self.rings.append({"client_id": client_id, "comm_ids": list(comm_ids)})
        return True

    async def send_message(self, payload):
        self.messages.append(payload)
        return True

    async def notify_entity_change(self, payload, path, method):
        self.calls.append((method, path, payload))
        return True

    async def flush_queue(self):
        self.flushes += 1
        return 0


# Test database setup
@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture():
    return FixedClock()


@pytest.fixture(name="channel")
def channel_fixture():
    return FakeChannel()


@pytest.fixture(name="events")
def events_fixture():
    return []


@pytest.fixture(name="event_bus")
def event_bus_fixture(events):
    bus = EventBus()
    bus.subscribe_all(events.append)
    return bus


@pytest.fixture(name="deps")
def deps_fixture(session: Session, clock, channel, event_bus):
    return Dependencies.from_session(session, channel=channel, event_bus=event_bus, clock=clock)


@pytest.fixture(name="client")
def client_fixture(session: Session, deps, fleet):
    def get_session_override():
        return session

    def get_dependencies_override():
        return deps

    app.dependency_overrides[get_db] = get_session_override
    app.dependency_overrides[get_dependencies] = get_dependencies_override
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="auth_headers")
def auth_headers_fixture(fleet):
    return {"X-User-Id": str(fleet["user"].id)}


# ===========================
# Fleet data
# ===========================

def add_all(session: Session, *rows):
    for row in rows:
        session.add(row)
    session.commit()
    for row in rows:
        session.refresh(row)
    return rows


@pytest.fixture(name="fleet")
def fleet_fixture(session: Session):
    """
    One client with the sync feature:
    - tactical: SCCT Whisper device (comm id 1001)
    - tracker: plain Whisper device (comm id 1002)
    - wave: Wave device (comm id 1003)
    - group holding tracker and user
    """
    feature = Feature(title="Asset Syncing")
    client = Client(name="Acme", comm_id=900)
    add_all(session, feature, client)
    session.add(ClientFeature(client_id=client.id, feature_id=feature.id))

    tactical = Device(client_id=client.id, name="Tactical 1", comm_id=1001, device_type="Whisper", mode="SCCT")
    tracker = Device(client_id=client.id, name="Tracker 1", comm_id=1002, device_type="Whisper")
    wave = Device(client_id=client.id, name="Wave 1", comm_id=1003, device_type="Wave")
    user = PlatformUser(client_id=client.id, username="dispatch", email="dispatch@example.com",
                        phone_number="+15550100", comm_id=500)
    group = DeviceGroup(client_id=client.id, title="Convoy", comm_id=700)
    add_all(session, tactical, tracker, wave, user, group)

    session.add(GroupDevice(group_id=group.id, device_id=tracker.id))
    session.add(GroupUser(group_id=group.id, user_id=user.id))
    session.commit()

    return {
        "client": client,
        "feature": feature,
        "tactical": tactical,
        "tracker": tracker,
        "wave": wave,
        "user": user,
        "group": group,
    }


@pytest.fixture(name="alert_types")
def alert_types_fixture(session: Session):
    rows = add_all(session, *[AlertType(type=name) for name in
                              ("Emergency", "Speed", "Geofence", "Cargo", "Non-Report", "Message")])
    return {row.type: row for row in rows}


@pytest.fixture(name="cargo_types")
def cargo_types_fixture(session: Session):
    rows = add_all(session, *[CargoAlertType(type=name) for name in
                              ("Door", "Humidity", "Temperature", "Shock", "Battery")])
    return {row.type: row for row in rows}


@pytest.fixture(name="square_geofence")
def square_geofence_fixture(session: Session, fleet):
    """Active inclusive square around (45, -75), triggered by the tracker."""
    geofence = Geofence(
        client_id=fleet["client"].id,
        title="Depot",
        shape=GeofenceShape.POLYGON,
        coordinates=[
            {"latitude": 44.9, "longitude": -75.1},
            {"latitude": 44.9, "longitude": -74.9},
            {"latitude": 45.1, "longitude": -74.9},
            {"latitude": 45.1, "longitude": -75.1},
        ],
        active=True,
        inclusive=True,
        max_speed=60,
    )
    add_all(session, geofence)
    session.add(GeofenceTrigger(geofence_id=geofence.id, device_id=fleet["tracker"].id))
    session.commit()
    return geofence


@pytest.fixture(name="synced_geofence")
def synced_geofence_fixture(session: Session, fleet):
    """Active geofence already in the tactical device's sync set."""
    geofence = Geofence(
        client_id=fleet["client"].id,
        title="Checkpoint",
        shape=GeofenceShape.CIRCLE,
        width=500,
        coordinates=[{"latitude": 45.0, "longitude": -75.0}],
        active=True,
        inclusive=False,
    )
    add_all(session, geofence)
    session.add(SyncAssignment(entity_type=SyncEntityType.GEOFENCE, entity_id=geofence.id,
                               device_id=fleet["tactical"].id))
    session.commit()
    return geofence


@pytest.fixture(name="poi")
def poi_fixture(session: Session, fleet):
    poi = Poi(client_id=fleet["client"].id, title="Bridge", latitude=45.01, longitude=-75.02,
              nato_code="SFGP", approved=True)
    add_all(session, poi)
    return poi
