"""
RECORD HISTORY

Insert-only trail of every mutation applied to funding records, audit
decisions and withdrawal requests. Entries are written inside the same
transaction as the change they describe; a failed history write fails the
operation.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
import uuid
import logging

from funding_engine.store import DocumentStore

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "record_history"


class RecordHistoryService:
    """Service for immutable record history."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: Dict[str, Any],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        remarks: Optional[str] = None,
        session=None
    ) -> str:
        entry = {
            "_id": str(uuid.uuid4()),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "old_value": old_value,
            "new_value": new_value,
            "user_id": actor.get("user_id"),
            "role": actor.get("role"),
            "remarks": remarks,
            "timestamp": datetime.utcnow()
        }
        await self.store.insert_one(HISTORY_COLLECTION, entry, session=session)
        logger.info(f"[HISTORY] {action} on {entity_type}:{entity_id} by user:{actor.get('user_id')}")
        return entry["_id"]

    async def get_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Entries for one entity, newest first."""
        return await self.store.find_many(
            HISTORY_COLLECTION,
            {"entity_type": entity_type, "entity_id": entity_id},
            sort=[("timestamp", -1)],
            limit=limit
        )
