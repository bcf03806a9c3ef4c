"""
FUNDING RECORD SERVICE

Save/submit lifecycle for Predicted, ActualUser and ActualFinance records,
parameterized by RecordKind.

- Every status change goes through FUNDING_LIFECYCLE
- Every mutation is one transaction and writes a history entry
- Batch save/submit are all-or-nothing
"""

from datetime import datetime
from typing import Dict, Any, List, Optional
import math
import logging

from funding_engine.access import PermissionGate, ensure_permitted
from funding_engine.errors import ValidationError
from funding_engine.history import RecordHistoryService
from funding_engine.lifecycle import FUNDING_LIFECYCLE, RecordKind, Trigger
from funding_engine.money import parse_amount
from funding_engine.repository import FundingRecordRepository
from funding_engine.store import DocumentStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("amount", "remark")


def snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
    """The fields of a record worth keeping in history."""
    return {
        "status": record.get("status"),
        "amount": record.get("amount"),
        "remark": record.get("remark"),
    }


def validate_period(year: int, month: int) -> None:
    if not isinstance(year, int) or year < 1900 or year > 9999:
        raise ValidationError(f"Invalid year: {year}", year=year)
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}", month=month)


class FundingRecordService:
    """
    Record operations shared by the three record kinds.

    Other services (audit commit, withdrawal) use transition() so that the
    status table and history stay in one place.
    """

    def __init__(self, store: DocumentStore, gate: PermissionGate, history: RecordHistoryService):
        self.store = store
        self.gate = gate
        self.history = history
        self.repositories = {kind: FundingRecordRepository(store, kind) for kind in RecordKind}

    def repository(self, kind: RecordKind) -> FundingRecordRepository:
        return self.repositories[RecordKind(kind)]

    async def ensure_indexes(self) -> None:
        for repo in self.repositories.values():
            await repo.ensure_indexes()

    # =========================================================================
    # SHARED TRANSITION
    # =========================================================================

    async def transition(
        self,
        kind: RecordKind,
        record_id: str,
        trigger: Trigger,
        actor: Dict[str, Any],
        fields: Optional[Dict[str, Any]] = None,
        remarks: Optional[str] = None,
        stamp_submitter: bool = False,
        session=None
    ) -> Dict[str, Any]:
        """
        Move one record along the lifecycle inside `session`.

        `fields` are written together with the status change (and seen by the
        transition guard, so a save that supplies an amount can be followed by
        a submit).
        """
        repo = self.repository(kind)
        record = await repo.get(record_id, session=session)
        fields = dict(fields or {})

        update = FUNDING_LIFECYCLE.plan({**record, **fields}, trigger)
        update.update(fields)
        if stamp_submitter:
            update["submitted_by"] = actor.get("user_id")
            update["submitted_at"] = datetime.utcnow()
        else:
            update["status_changed_by"] = actor.get("user_id")

        updated = await repo.update(record_id, update, expected_status=record["status"], session=session)
        await self.history.log_action(
            entity_type=kind.value,
            entity_id=record_id,
            action=trigger.value,
            actor=actor,
            old_value=snapshot(record),
            new_value=snapshot(updated),
            remarks=remarks,
            session=session
        )
        logger.info(
            f"[LIFECYCLE] {kind.value} {record_id}: {record['status']} -> {updated['status']} "
            f"({trigger.value}) by user:{actor.get('user_id')}"
        )
        return updated

    def _check(self, actor: Dict[str, Any], kind: RecordKind, action: str, record: Optional[Dict[str, Any]] = None):
        scope = {"kind": kind.value}
        if record:
            scope.update({"record_id": record.get("_id"), "fund_need_key": record.get("fund_need_key")})
        ensure_permitted(self.gate, actor, kind.value, action, scope)

    @staticmethod
    def _editable_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        parsed = {}
        if "amount" in changes:
            parsed["amount"] = parse_amount(changes["amount"])
        if "remark" in changes:
            parsed["remark"] = changes["remark"]
        return parsed

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_record(
        self,
        kind: RecordKind,
        fund_need_key: str,
        year: int,
        month: int,
        actor: Dict[str, Any],
        amount: Any = None,
        remark: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create an UNFILLED record; an initial amount/remark is applied as a save."""
        kind = RecordKind(kind)
        self._check(actor, kind, "create", {"fund_need_key": fund_need_key})
        validate_period(year, month)
        if not fund_need_key:
            raise ValidationError("fund_need_key is required")

        changes = {}
        if amount is not None:
            changes["amount"] = amount
        if remark is not None:
            changes["remark"] = remark
        changes = self._editable_changes(changes)

        async with self.store.transaction() as session:
            record = await self.repository(kind).create(
                {"fund_need_key": fund_need_key, "year": year, "month": month},
                session=session
            )
            await self.history.log_action(
                kind.value, record["_id"], "create", actor, new_value=snapshot(record), session=session
            )
            if changes:
                record = await self.transition(
                    kind, record["_id"], Trigger.SAVE, actor,
                    fields=changes, stamp_submitter=True, session=session
                )
        return record

    async def generate_period_records(
        self,
        kind: RecordKind,
        fund_need_keys: List[str],
        year: int,
        month: int,
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create UNFILLED records for every key that has none in the period."""
        kind = RecordKind(kind)
        self._check(actor, kind, "generate")
        validate_period(year, month)
        repo = self.repository(kind)

        created, skipped = [], []
        async with self.store.transaction() as session:
            for key in dict.fromkeys(fund_need_keys):
                if await repo.find_by_key(key, year, month, session=session):
                    skipped.append(key)
                    continue
                record = await repo.create({"fund_need_key": key, "year": year, "month": month}, session=session)
                await self.history.log_action(
                    kind.value, record["_id"], "create", actor, new_value=snapshot(record), session=session
                )
                created.append(record)

        logger.info(
            f"[LIFECYCLE] Generated {len(created)} {kind.value} records for {year}-{month:02d} "
            f"({len(skipped)} already present)"
        )
        return {"created": len(created), "skipped": len(skipped), "records": created}

    # =========================================================================
    # SAVE / SUBMIT
    # =========================================================================

    async def save(self, kind: RecordKind, record_id: str, changes: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        """UNFILLED/DRAFT/WITHDRAWN -> DRAFT with the given amount/remark."""
        kind = RecordKind(kind)
        fields = self._editable_changes(changes)
        async with self.store.transaction() as session:
            record = await self.repository(kind).get(record_id, session=session)
            self._check(actor, kind, "save", record)
            return await self.transition(
                kind, record_id, Trigger.SAVE, actor, fields=fields, stamp_submitter=True, session=session
            )

    async def submit(self, kind: RecordKind, record_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        """DRAFT -> SUBMITTED; the record must carry an amount."""
        kind = RecordKind(kind)
        async with self.store.transaction() as session:
            record = await self.repository(kind).get(record_id, session=session)
            self._check(actor, kind, "submit", record)
            return await self.transition(
                kind, record_id, Trigger.SUBMIT, actor, stamp_submitter=True, session=session
            )

    async def batch_save(self, kind: RecordKind, items: List[Dict[str, Any]], actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Save several records at once. Items are {"id": ..., "amount"?: ..., "remark"?: ...}."""
        kind = RecordKind(kind)
        if not items:
            raise ValidationError("No records to save")
        parsed = []
        for item in items:
            item = dict(item)
            record_id = item.pop("id", None)
            if not record_id:
                raise ValidationError("Every item needs an id")
            parsed.append((record_id, self._editable_changes(item)))

        async with self.store.transaction() as session:
            results = []
            for record_id, fields in parsed:
                record = await self.repository(kind).get(record_id, session=session)
                self._check(actor, kind, "save", record)
                results.append(await self.transition(
                    kind, record_id, Trigger.SAVE, actor, fields=fields, stamp_submitter=True, session=session
                ))
        logger.info(f"[BATCH] Saved {len(results)} {kind.value} records")
        return results

    async def batch_submit(self, kind: RecordKind, record_ids: List[str], actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Submit several records at once; one failure rejects the whole batch."""
        kind = RecordKind(kind)
        if not record_ids:
            raise ValidationError("No records to submit")

        async with self.store.transaction() as session:
            results = []
            for record_id in dict.fromkeys(record_ids):
                record = await self.repository(kind).get(record_id, session=session)
                self._check(actor, kind, "submit", record)
                results.append(await self.transition(
                    kind, record_id, Trigger.SUBMIT, actor, stamp_submitter=True, session=session
                ))
        logger.info(f"[BATCH] Submitted {len(results)} {kind.value} records")
        return results

    # =========================================================================
    # OTHER MUTATIONS
    # =========================================================================

    async def update_remark(self, kind: RecordKind, record_id: str, remark: Optional[str], actor: Dict[str, Any]) -> Dict[str, Any]:
        """Change the remark without touching status. Not allowed once APPROVED."""
        kind = RecordKind(kind)
        repo = self.repository(kind)
        async with self.store.transaction() as session:
            record = await repo.get(record_id, session=session)
            self._check(actor, kind, "save", record)
            updated = await repo.update(
                record_id,
                {"remark": remark, "submitted_by": actor.get("user_id"), "submitted_at": datetime.utcnow()},
                expected_status=record["status"],
                session=session
            )
            await self.history.log_action(
                kind.value, record_id, "remark", actor,
                old_value=snapshot(record), new_value=snapshot(updated), session=session
            )
        return updated

    async def delete(self, kind: RecordKind, record_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        kind = RecordKind(kind)
        repo = self.repository(kind)
        async with self.store.transaction() as session:
            record = await repo.get(record_id, session=session)
            self._check(actor, kind, "delete", record)
            await repo.delete(record_id, session=session)
            await self.history.log_action(
                kind.value, record_id, "delete", actor, old_value=snapshot(record), session=session
            )
        return record

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, kind: RecordKind, record_id: str) -> Dict[str, Any]:
        return await self.repository(kind).get(record_id)

    async def list_records(
        self,
        kind: RecordKind,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Dict[str, Any]:
        repo = self.repository(kind)
        query = {k: v for k, v in (filters or {}).items() if v is not None}
        if "status" in query:
            query["status"] = str(query["status"]).upper()
        page = max(page, 1)
        total = await repo.count(query)
        items = await repo.find_many(query, limit=page_size, skip=(page - 1) * page_size)
        return {
            "items": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if page_size else 0,
        }

    async def stats(self, kind: RecordKind, year: Optional[int] = None, month: Optional[int] = None) -> Dict[str, Any]:
        filters = {}
        if year is not None:
            filters["year"] = year
        if month is not None:
            filters["month"] = month
        by_status = await self.repository(kind).count_by_status(filters)
        return {"kind": RecordKind(kind).value, "total": sum(by_status.values()), "by_status": by_status}

    async def history_of(self, kind: RecordKind, record_id: str) -> List[Dict[str, Any]]:
        await self.repository(kind).get(record_id)
        return await self.history.get_history(RecordKind(kind).value, record_id)

