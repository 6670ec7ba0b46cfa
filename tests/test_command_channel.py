"""
Tests for the Message Handler command channel and its retry queue
"""

import asyncio
import json
import httpx
import pytest
from sqlmodel import Session, select

from app.models.sync import MhCommandQueue
from app.services.command_channel import DeviceCommandChannel, RING_PATH, MESSAGE_PATH


@pytest.fixture(name="mh_requests")
def mh_requests_fixture():
    return []


def make_channel(session, mh_requests, status_code=200):
    engine = session.get_bind()

    def handler(request):
        mh_requests.append(request)
        return httpx.Response(status_code, json={})

    return DeviceCommandChannel(
        base_url="http://mh.test",
        session_factory=lambda: Session(engine),
        transport=httpx.MockTransport(handler)
    )


def queued(session):
    session.expire_all()
    return session.exec(select(MhCommandQueue)).all()


class TestDeviceCommandChannel:
    def test_ring_payload(self, session, mh_requests):
        channel = make_channel(session, mh_requests)
        assert asyncio.run(channel.send_ring(3, [1001, 1002])) is True

        request = mh_requests[0]
        assert request.method == "POST"
        assert request.url.path == RING_PATH
        assert json.loads(request.content) == {"clientId": 3, "commIds": [1001, 1002]}
        assert queued(session) == []

    def test_failure_is_queued(self, session, mh_requests):
        channel = make_channel(session, mh_requests, status_code=502)
        assert asyncio.run(channel.send_message({"message": "hi"})) is False

        rows = queued(session)
        assert len(rows) == 1
        assert rows[0].path == MESSAGE_PATH
        assert json.loads(rows[0].data) == {"message": "hi"}

    def test_no_queue_on_fail(self, session, mh_requests):
        channel = make_channel(session, mh_requests, status_code=500)
        assert asyncio.run(channel.call({"a": 1}, "/mh/v1/device", "PUT", no_queue_on_fail=True)) is False
        assert queued(session) == []

    def test_unreachable_mh_is_queued(self, session):
        engine = session.get_bind()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        channel = DeviceCommandChannel("http://mh.test", lambda: Session(engine), transport=httpx.MockTransport(handler))
        assert asyncio.run(channel.send_ring(3, [1001])) is False
        assert len(queued(session)) == 1

    def test_flush_queue_replays_and_empties(self, session, mh_requests):
        failing = make_channel(session, [], status_code=503)
        asyncio.run(failing.send_ring(3, [1001]))
        asyncio.run(failing.notify_entity_change({"id": 4}, "/mh/v1/group", "PUT"))

        channel = make_channel(session, mh_requests)
        assert asyncio.run(channel.flush_queue()) == 2

        assert [r.url.path for r in mh_requests] == [RING_PATH, "/mh/v1/group"]
        assert mh_requests[1].method == "PUT"
        assert queued(session) == []

    def test_flush_drops_calls_that_fail_again(self, session):
        failing = make_channel(session, [], status_code=503)
        asyncio.run(failing.send_ring(3, [1001]))

        assert asyncio.run(failing.flush_queue()) == 1
        assert queued(session) == []
