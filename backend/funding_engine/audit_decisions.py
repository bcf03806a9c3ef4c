"""
AUDIT DECISION ENGINE

Turns auditor input into decisions and checks them before commit:
- propose_decision(): strict parse of a free-text amount
- validate_for_submit(): every selected row that needs audit has an amount
- commit_draft(): persist decisions without changing any record status
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Mapping, Iterable, Union
import uuid
import logging

from funding_engine.access import PermissionGate, ensure_permitted
from funding_engine.errors import (
    ConflictError, NotFoundError, ValidationError,
    IncompleteDecisionError, NotAuditableError
)
from funding_engine.history import RecordHistoryService
from funding_engine.lifecycle import RecordStatus
from funding_engine.money import parse_amount
from funding_engine.reconciliation import (
    AUDIT_COLLECTION, AuditStatus, ReconciliationRow, ReconciliationViewBuilder
)
from funding_engine.store import DocumentStore, DuplicateDocumentError

logger = logging.getLogger(__name__)

# Record statuses a draft decision may still be saved against
DRAFTABLE_STATUSES = {
    RecordStatus.UNFILLED.value,
    RecordStatus.DRAFT.value,
    RecordStatus.SUBMITTED.value,
}


@dataclass
class AuditDecision:
    row_id: str
    amount: Optional[Decimal] = None
    remark: Optional[str] = None

    @property
    def is_cleared(self) -> bool:
        return self.amount is None


DecisionInput = Union[AuditDecision, Decimal, None]


def _decision_amount(decision: DecisionInput) -> Optional[Decimal]:
    if isinstance(decision, AuditDecision):
        return decision.amount
    return decision


class AuditRecordRepository:
    """Audit decisions, one per (fund_need_key, year, month)."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def ensure_indexes(self) -> None:
        await self.store.ensure_unique(AUDIT_COLLECTION, ["fund_need_key", "year", "month"])

    async def find_by_key(self, fund_need_key: str, year: int, month: int, session=None) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(
            AUDIT_COLLECTION,
            {"fund_need_key": fund_need_key, "year": year, "month": month},
            session=session
        )

    async def upsert(
        self,
        fund_need_key: str,
        year: int,
        month: int,
        fields: Dict[str, Any],
        session=None
    ) -> Dict[str, Any]:
        existing = await self.find_by_key(fund_need_key, year, month, session=session)
        now = datetime.utcnow()

        if existing is None:
            doc = {
                "_id": str(uuid.uuid4()),
                "fund_need_key": fund_need_key,
                "year": year,
                "month": month,
                "created_at": now,
                "updated_at": now,
            }
            doc.update(fields)
            try:
                await self.store.insert_one(AUDIT_COLLECTION, doc, session=session)
            except DuplicateDocumentError:
                raise ConflictError(f"Audit decision for {fund_need_key} was created concurrently")
            return doc

        fields = dict(fields)
        fields["updated_at"] = now
        matched = await self.store.update_one(
            AUDIT_COLLECTION,
            {"_id": existing["_id"], "status": existing.get("status")},
            fields,
            session=session
        )
        if not matched:
            raise ConflictError(
                f"Audit decision for {fund_need_key} changed concurrently",
                current_status=existing.get("status")
            )
        existing.update(fields)
        return existing


class AuditDecisionEngine:
    """Decision parsing, completeness checks and draft persistence."""

    def __init__(
        self,
        store: DocumentStore,
        gate: PermissionGate,
        history: RecordHistoryService,
        view_builder: ReconciliationViewBuilder
    ):
        self.store = store
        self.gate = gate
        self.history = history
        self.view_builder = view_builder
        self.audit_records = AuditRecordRepository(store)

    # =========================================================================
    # PROPOSE
    # =========================================================================

    def propose_decision(self, row_id: str, raw_value: Optional[str], remark: Optional[str] = None) -> AuditDecision:
        """
        Parse auditor input for one row.

        Blank input clears the decision (amount and remark both None). Text
        that is not a number raises ValidationError; it is never read as 0.
        """
        text = "" if raw_value is None else str(raw_value).strip()
        if not text:
            return AuditDecision(row_id=row_id)
        try:
            amount = parse_amount(text)
        except ValidationError as e:
            raise ValidationError(e.message, row_id=row_id, value=text)
        return AuditDecision(row_id=row_id, amount=amount, remark=remark)

    # =========================================================================
    # VALIDATE
    # =========================================================================

    def validate_for_submit(
        self,
        rows: Mapping[str, ReconciliationRow],
        selected_row_ids: Iterable[str],
        decisions: Optional[Mapping[str, DecisionInput]] = None
    ) -> Dict[str, Optional[Decimal]]:
        """
        Check the selected rows and return the amount each would commit.

        An explicit decision overrides the row's seeded/saved audit amount (a
        cleared decision leaves the row without one). Unselected rows are not
        checked.

        Raises:
            NotFoundError: a selected row is not in the view
            NotAuditableError: a selected row has no finance record
            IncompleteDecisionError: a selected row needing audit lacks an amount
        """
        decisions = decisions or {}
        selected = list(dict.fromkeys(selected_row_ids))
        if not selected:
            raise ValidationError("No rows selected")

        missing = [row_id for row_id in selected if row_id not in rows]
        if missing:
            raise NotFoundError(f"Rows not found: {', '.join(missing)}", record_ids=missing)

        not_auditable = [row_id for row_id in selected if not rows[row_id].auditable]
        if not_auditable:
            raise NotAuditableError(not_auditable)

        amounts: Dict[str, Optional[Decimal]] = {}
        incomplete: List[str] = []
        for row_id in selected:
            row = rows[row_id]
            if row_id in decisions:
                amount = _decision_amount(decisions[row_id])
            else:
                amount = row.audit_amount
            if row.needs_audit and amount is None:
                incomplete.append(row_id)
            amounts[row_id] = amount

        if incomplete:
            logger.warning(f"[AUDIT] Incomplete decisions for rows: {incomplete}")
            raise IncompleteDecisionError(incomplete)
        return amounts

    # =========================================================================
    # DRAFT COMMIT
    # =========================================================================

    async def commit_draft(
        self,
        year: int,
        month: int,
        decisions: Iterable[AuditDecision],
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Save decisions as DRAFT audit records; record statuses are untouched.

        All decisions are written in one transaction. A row already approved,
        or whose records have moved past SUBMITTED, fails the whole call.
        """
        ensure_permitted(self.gate, actor, "audit", "save", {"year": year, "month": month})
        decisions = list(decisions)
        if not decisions:
            raise ValidationError("No decisions to save")

        saved = []
        async with self.store.transaction() as session:
            rows = await self.view_builder.rows_for_period(
                year, month, [d.row_id for d in decisions], session=session
            )
            for decision in decisions:
                row = rows.get(decision.row_id)
                if row is None:
                    raise NotFoundError(f"Row not found: {decision.row_id}", record_ids=[decision.row_id])
                if not row.auditable:
                    raise NotAuditableError([decision.row_id])
                if row.audit_status == AuditStatus.APPROVED:
                    raise ConflictError(
                        f"Audit for {decision.row_id} is already approved",
                        current_status=row.audit_status,
                        record_ids=[decision.row_id]
                    )
                for status in (row.user_status, row.finance_status):
                    if status is not None and status not in DRAFTABLE_STATUSES:
                        raise ConflictError(
                            f"Cannot save audit draft for {decision.row_id}: record is {status}",
                            current_status=status,
                            record_ids=[decision.row_id]
                        )

                audit_record = await self.audit_records.upsert(
                    row.fund_need_key, year, month,
                    {
                        "amount": decision.amount,
                        "remark": decision.remark if not decision.is_cleared else None,
                        "status": AuditStatus.DRAFT,
                        "user_record_id": row.user_record_id,
                        "finance_record_id": row.finance_record_id,
                        "submitted_by": actor.get("user_id"),
                        "submitted_at": datetime.utcnow(),
                    },
                    session=session
                )
                await self.history.log_action(
                    "audit", audit_record["_id"], "save_draft", actor,
                    old_value={"amount": row.audit_amount, "status": row.audit_status},
                    new_value={"amount": audit_record.get("amount"), "status": audit_record["status"]},
                    session=session
                )
                saved.append(audit_record)

        logger.info(f"[AUDIT] Saved {len(saved)} draft decisions for {year}-{month:02d}")
        return {"saved": len(saved), "records": saved}
