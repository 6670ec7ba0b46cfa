# app/services/event_bus.py
"""
Fleet event bus.

Sync rings, completed device syncs and alert transitions are announced here.
Local subscribers get every event straight away; when Redis is configured the
event is also fanned out to the other API workers, which relay it to their
own subscribers. Each worker ignores the copies of its own events coming back
from Redis.
"""
import json
import uuid
import asyncio
import logging
from typing import Callable, Dict, Any, List, Optional
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "fleet:events:"


class EventType(str, Enum):
    # Sync
    SYNC_RING_SENT = "sync.ring_sent"
    SYNC_COMPLETED = "sync.completed"

    # Alerts
    ALERT_STARTED = "alert.started"
    ALERT_FINISHED = "alert.finished"


def channel_for(event_type: EventType) -> str:
    return f"{CHANNEL_PREFIX}{event_type.value}"


class EventBus:
    def __init__(self, redis_client: Optional[Any] = None):
        self.redis = redis_client
        self.worker_id = uuid.uuid4().hex
        self.subscribers: Dict[EventType, List[Callable]] = {}
        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None

    async def initialize(self):
        if self.redis:
            try:
                self._pubsub = self.redis.pubsub()
                logger.info(f"EventBus worker {self.worker_id} attached to Redis pub/sub")
            except Exception as e:
                logger.warning(f"Redis pub/sub unavailable ({e}), fleet events stay in this worker")
                self.redis = None

    # ===========================
    # Subscriptions
    # ===========================

    def subscribe(self, event_type: EventType, callback: Callable):
        """Register a sync or async callable receiving the event envelope."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def subscribe_all(self, callback: Callable):
        for event_type in EventType:
            self.subscribe(event_type, callback)

    async def _dispatch(self, event_type: EventType, envelope: Dict[str, Any]):
        for callback in self.subscribers.get(event_type, []):
            try:
                result = callback(envelope)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Subscriber {getattr(callback, '__name__', callback)} failed on {event_type.value}: {e}")

    # ===========================
    # Publishing
    # ===========================

    async def publish(self, event_type: EventType, data: Dict[str, Any], client_id: Optional[int] = None):
        """
        Announce a fleet event.

        Args:
            event_type: What happened
            data: Event specific payload (device ids, alert fields...)
            client_id: Owning client, used by consumers to filter per tenant
        """
        envelope = {
            "event_type": event_type.value,
            "client_id": client_id,
            "data": data,
            "origin": self.worker_id,
            "timestamp": datetime.utcnow().isoformat(),
        }

        if self.redis and self._pubsub:
            try:
                await self.redis.publish(channel_for(event_type), json.dumps(envelope, default=str))
            except Exception as e:
                logger.error(f"Could not forward {event_type.value} to Redis: {e}")

        await self._dispatch(event_type, envelope)

    # ===========================
    # Redis relay
    # ===========================

    async def relay_redis_events(self):
        """Deliver events published by the other workers to local subscribers."""
        if not self.redis or not self._pubsub:
            logger.warning("Redis not available, event relay not started")
            return

        try:
            await self._pubsub.subscribe(*[channel_for(event_type) for event_type in EventType])
            logger.info("Redis event relay started")

            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                await self._relay(message)
        except Exception as e:
            logger.error(f"Redis event relay stopped: {e}")

    async def _relay(self, message: Dict[str, Any]):
        try:
            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")
            envelope = json.loads(message["data"])
            if envelope.get("origin") == self.worker_id:
                return
            await self._dispatch(EventType(channel[len(CHANNEL_PREFIX):]), envelope)
        except (ValueError, KeyError) as e:
            logger.error(f"Dropping malformed event from Redis: {e}")

    async def start_listener(self):
        if self.redis and not self._listener_task:
            self._listener_task = asyncio.create_task(self.relay_redis_events())

    async def stop_listener(self):
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self._pubsub:
            await self._pubsub.unsubscribe()
            await self._pubsub.close()
            self._pubsub = None

        logger.info("EventBus stopped")


# Global event bus instance, set in the application lifespan
event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    if event_bus is None:
        raise RuntimeError("EventBus not initialized.")
    return event_bus
