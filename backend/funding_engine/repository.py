"""
FUNDING RECORD REPOSITORY

Per-kind adapter over the document store. One implementation serves
Predicted, ActualUser and ActualFinance records; the kind only selects the
collection.

Rules enforced here:
- (fund_need_key, year, month) is unique per kind
- APPROVED records cannot be updated or deleted
- updates are compare-and-set on the status the caller read
"""

from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple
import uuid
import logging

from funding_engine.errors import NotFoundError, ConflictError
from funding_engine.lifecycle import RecordKind, RecordStatus
from funding_engine.store import DocumentStore, DuplicateDocumentError, Sort

logger = logging.getLogger(__name__)

KEY_FIELDS = ["fund_need_key", "year", "month"]

# (record_id, fields, expected_status)
RecordUpdate = Tuple[str, Dict[str, Any], Optional[str]]


class FundingRecordRepository:
    """CRUD and query access to one kind of funding record."""

    def __init__(self, store: DocumentStore, kind: RecordKind):
        self.store = store
        self.kind = kind
        self.collection = kind.collection

    async def ensure_indexes(self) -> None:
        await self.store.ensure_unique(self.collection, KEY_FIELDS)

    # =========================================================================
    # READS
    # =========================================================================

    async def find(self, record_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(self.collection, {"_id": record_id}, session=session)

    async def get(self, record_id: str, session=None) -> Dict[str, Any]:
        record = await self.find(record_id, session=session)
        if not record:
            raise NotFoundError(
                f"{self.kind.value} record not found: {record_id}",
                record_id=record_id,
                kind=self.kind.value
            )
        return record

    async def find_by_key(self, fund_need_key: str, year: int, month: int, session=None) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(
            self.collection,
            {"fund_need_key": fund_need_key, "year": year, "month": month},
            session=session
        )

    async def find_many(
        self,
        filters: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        session=None
    ) -> List[Dict[str, Any]]:
        sort = sort or [("year", -1), ("month", -1), ("fund_need_key", 1)]
        return await self.store.find_many(
            self.collection, filters or {}, sort=sort, limit=limit, skip=skip, session=session
        )

    async def count(self, filters: Optional[Dict[str, Any]] = None, session=None) -> int:
        return await self.store.count(self.collection, filters or {}, session=session)

    async def count_by_status(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        counts = {}
        for status in RecordStatus:
            query = dict(filters or {})
            query["status"] = status.value
            counts[status.value] = await self.store.count(self.collection, query)
        return counts

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create(self, fields: Dict[str, Any], session=None) -> Dict[str, Any]:
        existing = await self.find_by_key(fields["fund_need_key"], fields["year"], fields["month"], session=session)
        if existing:
            raise ConflictError(
                f"{self.kind.value} record already exists for "
                f"{fields['fund_need_key']} {fields['year']}-{fields['month']:02d}",
                current_status=existing.get("status"),
                record_id=existing["_id"]
            )

        now = datetime.utcnow()
        doc = {
            "_id": str(uuid.uuid4()),
            "kind": self.kind.value,
            "amount": None,
            "remark": None,
            "status": RecordStatus.UNFILLED.value,
            "submitted_by": None,
            "submitted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(fields)

        try:
            await self.store.insert_one(self.collection, doc, session=session)
        except DuplicateDocumentError:
            raise ConflictError(
                f"{self.kind.value} record already exists for "
                f"{fields['fund_need_key']} {fields['year']}-{fields['month']:02d}"
            )

        logger.info(f"[STORE] Created {self.kind.value} record {doc['_id']} ({doc['status']})")
        return doc

    async def update(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Apply `fields` to a record.

        `expected_status` defaults to the status read here; if another writer
        changed it in between, nothing is written and ConflictError is raised.
        """
        record = await self.get(record_id, session=session)
        if record["status"] == RecordStatus.APPROVED.value:
            raise ConflictError(
                f"Approved {self.kind.value} record cannot be modified: {record_id}",
                current_status=record["status"],
                record_id=record_id
            )
        expected = expected_status or record["status"]
        if record["status"] != expected:
            raise ConflictError(
                f"{self.kind.value} record {record_id} is {record['status']}, expected {expected}",
                current_status=record["status"],
                record_id=record_id
            )

        fields = dict(fields)
        fields["updated_at"] = datetime.utcnow()
        matched = await self.store.update_one(
            self.collection,
            {"_id": record_id, "status": expected},
            fields,
            session=session
        )
        if not matched:
            latest = await self.get(record_id, session=session)
            logger.warning(
                f"[STORE] Lost update race on {self.kind.value} {record_id}: "
                f"expected {expected}, found {latest['status']}"
            )
            raise ConflictError(
                f"{self.kind.value} record {record_id} changed concurrently",
                current_status=latest["status"],
                record_id=record_id
            )

        record.update(fields)
        return record

    async def delete(self, record_id: str, session=None) -> Dict[str, Any]:
        record = await self.get(record_id, session=session)
        if record["status"] == RecordStatus.APPROVED.value:
            raise ConflictError(
                f"Approved {self.kind.value} record cannot be deleted: {record_id}",
                current_status=record["status"],
                record_id=record_id
            )
        deleted = await self.store.delete_one(
            self.collection,
            {"_id": record_id, "status": record["status"]},
            session=session
        )
        if not deleted:
            latest = await self.get(record_id, session=session)
            raise ConflictError(
                f"{self.kind.value} record {record_id} changed concurrently",
                current_status=latest["status"],
                record_id=record_id
            )
        logger.info(f"[STORE] Deleted {self.kind.value} record {record_id}")
        return record

    async def batch_update(self, updates: List[RecordUpdate], session=None) -> List[Dict[str, Any]]:
        """Apply several updates as one unit; any failure aborts all of them."""
        if session is not None:
            return [await self.update(rid, fields, expected, session=session) for rid, fields, expected in updates]

        async with self.store.transaction() as tx:
            return [await self.update(rid, fields, expected, session=tx) for rid, fields, expected in updates]
