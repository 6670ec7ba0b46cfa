# app/services/sync_ledger.py
"""
Sync ledger: the Pending / Backup / History document tiers and the merge rule
that folds a new change into an already buffered one.
"""
import copy
import logging
from enum import IntEnum
from typing import Dict, Any, Optional, List, Type

from sqlmodel import Session, select

from app.crud.device_sync import for_update_query
from app.models.fleet import SyncEntityType
from app.models.sync import SyncLedgerBase, SyncPending, SyncBackup, SyncHistory

logger = logging.getLogger(__name__)


class SyncAction(IntEnum):
    """Action codes understood by tactical devices."""
    INSERT = 0
    UPDATE = 1
    DELETE = 2
    REJECT = 3


ENTITY_FIELDS = [t.value for t in SyncEntityType]

LedgerTier = Type[SyncLedgerBase]


# ===========================
# Merge rule
# ===========================

def deep_merge(dest: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge source into a copy of dest. Lists and scalars from source replace."""
    merged = copy.deepcopy(dest)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_entry(
    source: Dict[str, Any],
    dest: Optional[Dict[str, Any]],
    annihilate: bool = True
) -> Optional[Dict[str, Any]]:
    """
    Fold an incoming change (source) into the buffered entry (dest).

    Returns the entry to store, or None when the two cancel out and the
    buffered entry must be removed. With annihilate=False the cancelling
    combinations fall back to "source wins".
    """
    if dest is None:
        return copy.deepcopy(source)

    source_action = source["action"]
    dest_action = dest["action"]

    if source_action == SyncAction.UPDATE and dest_action == SyncAction.INSERT:
        merged = deep_merge(dest, {k: v for k, v in source.items() if k != "action"})
        merged["action"] = int(SyncAction.INSERT)
        return merged

    if source_action == SyncAction.UPDATE and dest_action == SyncAction.UPDATE:
        return deep_merge(dest, source)

    if source_action == SyncAction.DELETE and dest_action == SyncAction.INSERT and annihilate:
        return None

    if source_action == SyncAction.INSERT and dest_action == SyncAction.DELETE and annihilate:
        return None

    # Reject over Insert and every remaining combination: source wins
    return copy.deepcopy(source)


def build_entry(action: SyncAction, data: Dict[str, Any], modified_by: Optional[int], timestamp: int) -> Dict[str, Any]:
    return {
        "last_modified_by": modified_by,
        "last_modified_time": timestamp,
        "action": int(action),
        "data": copy.deepcopy(data),
    }


# ===========================
# Ledger store
# ===========================

class SyncLedger:
    """
    Keyed-document access to the three tiers.

    Methods stage changes on the session; callers commit through
    EntityStore.transaction().
    """

    def __init__(self, db: Session, history_annihilate: bool = True):
        self.db = db
        self.history_annihilate = history_annihilate

    def read(self, tier: LedgerTier, device_id: int, lock: bool = False) -> Optional[SyncLedgerBase]:
        """Load a device document; with lock the row stays locked until the transaction ends."""
        if lock:
            return self.db.exec(for_update_query(tier, device_id)).first()
        return self.db.get(tier, device_id)

    def delete(self, tier: LedgerTier, device_id: int) -> bool:
        document = self.db.get(tier, device_id)
        if document is None:
            return False
        self.db.delete(document)
        self.db.flush()
        return True

    def merge_change(
        self,
        tier: LedgerTier,
        device_id: int,
        client_id: Optional[int],
        entity_type: str,
        entity_id: int,
        entry: Dict[str, Any],
        timestamp: int
    ) -> Optional[Dict[str, Any]]:
        """Merge one entry into a device document of the given tier. Returns what was stored."""
        document = self.read(tier, device_id, lock=True)
        if document is None:
            document = tier(device_id=device_id, client_id=client_id, watermark=timestamp)

        annihilate = self.history_annihilate if tier is SyncHistory else True
        entities = dict(getattr(document, entity_type) or {})
        key = str(entity_id)
        result = merge_entry(entry, entities.get(key), annihilate=annihilate)
        if result is None:
            entities.pop(key, None)
        else:
            entities[key] = result

        # Reassign so the JSON column is flagged as modified
        setattr(document, entity_type, entities)
        document.watermark = timestamp
        if client_id is not None:
            document.client_id = client_id
        self.db.add(document)
        self.db.flush()
        return result

    def record_change(
        self,
        device_id: int,
        client_id: Optional[int],
        entity_type: str,
        entity_id: int,
        entry: Dict[str, Any],
        timestamp: int
    ):
        """Apply a change to both Pending and History."""
        self.merge_change(SyncPending, device_id, client_id, entity_type, entity_id, entry, timestamp)
        self.merge_change(SyncHistory, device_id, client_id, entity_type, entity_id, entry, timestamp)

    def replace_backup(self, source: SyncLedgerBase) -> SyncBackup:
        """Overwrite the device's Backup with the content of another tier's document."""
        self.delete(SyncBackup, source.device_id)
        backup = SyncBackup(
            device_id=source.device_id,
            client_id=source.client_id,
            watermark=source.watermark,
            **{field: copy.deepcopy(getattr(source, field) or {}) for field in ENTITY_FIELDS}
        )
        self.db.add(backup)
        self.db.flush()
        return backup

    def history_for_client(self, client_id: int) -> List[SyncHistory]:
        return list(self.db.exec(select(SyncHistory).where(SyncHistory.client_id == client_id)).all())

    def purge_device(self, device_id: int):
        for tier in (SyncPending, SyncBackup, SyncHistory):
            self.delete(tier, device_id)


def has_entries(document: Optional[SyncLedgerBase]) -> bool:
    if document is None:
        return False
    return any(getattr(document, field) for field in ENTITY_FIELDS)

