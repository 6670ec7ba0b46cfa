# app/services/command_channel.py
"""
Device Command Channel: outbound calls to the Message Handler (MH) web service.

Every call is best effort. When MH answers with an error or cannot be reached
the request is written to the mh_command_queue table and replayed the next
time MH pings the platform.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from sqlmodel import Session, select

from app.core.config import settings
from app.core.exceptions import ExternalServiceFailure
from app.database.engine import session_factory
from app.models.fleet import SyncEntityType
from app.models.sync import MhCommandQueue

logger = logging.getLogger(__name__)

RING_PATH = "/mh/v1/sync/ring"
DEVICE_PATH = "/mh/v1/device"
GROUP_PATH = "/mh/v1/group"
MESSAGE_PATH = "/mh/v1/message"


def entity_update_request(entity_type: SyncEntityType, entity: Dict[str, Any], deleted: bool) -> Tuple[Dict[str, Any], str, str]:
    """
    Payload, path and method that keep MH's copy of a device or group current.

    Upserts POST the entity snapshot; deletes address the entity in the path
    and carry no body.
    """
    if entity_type == SyncEntityType.DEVICE:
        if deleted:
            return {}, f"{DEVICE_PATH}/{entity['comm_id']}/{entity['client_id']}", "DELETE"
        return mh_entity(entity), DEVICE_PATH, "POST"
    if entity_type == SyncEntityType.GROUP:
        if deleted:
            return {}, f"{GROUP_PATH}/{entity['id']}/{entity['client_id']}/{entity['comm_id']}", "DELETE"
        return mh_entity(entity), GROUP_PATH, "POST"
    raise ValueError(f"MH keeps no copy of {entity_type.value}")


def mh_entity(entity: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in entity.items() if key != "sync_devices"}


class DeviceCommandChannel:
    """httpx based client for the MH web service with a durable retry queue."""

    def __init__(
        self,
        base_url: str,
        session_factory: Callable[[], Session],
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url
        self.session_factory = session_factory
        self.auth = httpx.BasicAuth(user, password) if user else None
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "DeviceCommandChannel":
        return cls(
            base_url=settings.mh_base_url,
            session_factory=session_factory,
            user=settings.MH_WS_USER,
            password=settings.MH_WS_PASSWORD,
            timeout=settings.MH_WS_TIMEOUT_SECONDS,
        )

    async def _request(self, data: Any, path: str, method: str) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=self.auth,
            timeout=self.timeout,
            transport=self.transport
        ) as client:
            response = await client.request(method, path, json=data)
        if response.is_error:
            raise ExternalServiceFailure(path, method, f"status {response.status_code}")
        return response

    async def call(self, data: Any, path: str, method: str, no_queue_on_fail: bool = False) -> bool:
        """
        Send one request to MH.

        Returns True when MH accepted it. Failures are logged and, unless
        no_queue_on_fail is set, queued for replay. Never raises.
        """
        try:
            await self._request(data, path, method)
            logger.info(f"MH call {method} {path} succeeded")
            return True
        except (httpx.HTTPError, ExternalServiceFailure) as e:
            logger.error(f"MH call {method} {path} failed: {e}")
            if not no_queue_on_fail:
                self.enqueue(data, path, method)
            return False

    def enqueue(self, data: Any, path: str, method: str):
        with self.session_factory() as db:
            db.add(MhCommandQueue(path=path, method=method, data=json.dumps(data, default=str)))
            db.commit()
        logger.info(f"Queued MH call {method} {path} for retry")

    async def flush_queue(self) -> int:
        """Replay every queued call once, deleting each row after the attempt."""
        replayed = 0
        with self.session_factory() as db:
            rows = db.exec(select(MhCommandQueue).order_by(MhCommandQueue.id)).all()
            for row in rows:
                data = json.loads(row.data) if row.data else None
                await self.call(data, row.path, row.method, no_queue_on_fail=True)
                db.delete(row)
                db.commit()
                replayed += 1
        if replayed:
            logger.info(f"Replayed {replayed} queued MH calls")
        return replayed

    # ===========================
    # Operations
    # ===========================

    async def send_ring(self, client_id: int, comm_ids: List[int]) -> bool:
        return await self.call({"clientId": client_id, "commIds": comm_ids}, RING_PATH, "POST")

    async def notify_entity_change(self, payload: Dict[str, Any], path: str, method: str) -> bool:
        return await self.call(payload, path, method)

    async def send_message(self, payload: Dict[str, Any]) -> bool:
        return await self.call(payload, MESSAGE_PATH, "POST")


# Global channel instance (initialized in main.py, created on first use otherwise)
command_channel: Optional[DeviceCommandChannel] = None


def get_command_channel() -> DeviceCommandChannel:
    global command_channel
    if command_channel is None:
        command_channel = DeviceCommandChannel.from_settings()
    return command_channel
