# app/services/sync_initiator.py
"""
Sync initiator: after a batch of ledger changes, ring the affected devices so
they come and pull their pending data.
"""
from typing import List

from app.core.deps import Dependencies
from app.crud.device_sync import device_sync_crud
from app.models.fleet import PlatformUser
from app.services.event_bus import EventType


class SyncInitiator:
    def __init__(self, deps: Dependencies):
        self.deps = deps

    async def initiate(self, user: PlatformUser, device_ids: List[int]) -> bool:
        """
        Record ring_sent for every existing device and ring them through MH.

        Returns True when at least one device comm id was rung.
        """
        store, log = self.deps.store, self.deps.logger
        now = self.deps.clock.now_ms()

        ringable: List[int] = []
        with store.transaction() as db:
            for device_id in device_ids:
                # The ledger may still reference a device deleted on the platform
                if store.get_device(device_id) is None:
                    log.warning(f"This device has been deleted on platform, id: {device_id}")
                    continue
                device_sync_crud.record_ring(db, device_id, now)
                ringable.append(device_id)

        comm_ids = store.device_comm_ids(ringable)
        if not comm_ids:
            return False

        if self.deps.channel is not None:
            await self.deps.channel.send_ring(user.client_id, comm_ids)
        if self.deps.event_bus is not None:
            await self.deps.event_bus.publish(
                EventType.SYNC_RING_SENT,
                {"device_ids": ringable, "comm_ids": comm_ids, "action": "put"},
                client_id=user.client_id
            )
        log.info(f"Sync ring sent to devices {ringable}")
        return True
