# app/core/deps.py
"""
Shared dependencies for routers and services.

Services never reach for module globals: they receive a Dependencies bundle
holding the entity store, the sync ledger, a clock and a logger, plus the
outbound collaborators (command channel, event bus).
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Any

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from app.core.config import settings, Settings
from app.crud.entity_store import EntityStore
from app.database.engine import get_db
from app.models.fleet import PlatformUser
from app.services.sync_ledger import SyncLedger
from app.services.command_channel import get_command_channel
import app.services.event_bus as event_bus_module


class Clock:
    """Wall clock. Sync code works in epoch milliseconds, alert code in epoch seconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now_seconds(self) -> int:
        return int(time.time())


@dataclass
class Dependencies:
    store: EntityStore
    ledger: SyncLedger
    clock: Clock = field(default_factory=Clock)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("app.services"))
    channel: Optional[Any] = None
    event_bus: Optional[Any] = None
    config: Settings = field(default_factory=lambda: settings)

    @classmethod
    def from_session(
        cls,
        db: Session,
        channel: Optional[Any] = None,
        event_bus: Optional[Any] = None,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None
    ) -> "Dependencies":
        config = config or settings
        return cls(
            store=EntityStore(db),
            ledger=SyncLedger(db, history_annihilate=config.SYNC_HISTORY_ANNIHILATE),
            clock=clock or Clock(),
            channel=channel,
            event_bus=event_bus,
            config=config,
        )


def get_dependencies(db: Session = Depends(get_db)) -> Dependencies:
    return Dependencies.from_session(db, channel=get_command_channel(), event_bus=event_bus_module.event_bus)


def get_current_user(
    x_user_id: Optional[int] = Header(None),
    db: Session = Depends(get_db)
) -> PlatformUser:
    """
    Resolve the acting platform user.

    Authentication happens upstream; the gateway forwards the user id in the
    X-User-Id header.
    """
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    user = db.get(PlatformUser, x_user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user
