"""
RECONCILIATION VIEW

Joins the ActualUser and ActualFinance records of one period on
fund_need_key and compares the two independently submitted amounts.

Rows are never stored; every read recomputes them from the current records
and audit decisions, so a stale view is corrected by the next read.

Row rules:
- has_difference: both amounts present and not equal (exact, at 2 places)
- auditable: a finance record exists
- needs_audit: auditable and the audit decision is not APPROVED
- audit_amount: equals finance_amount whenever needs_audit is False; seeded
  from finance_amount when the channels agree; otherwise the saved decision
  or unset
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, Any, List, Optional, Iterable
import logging

from funding_engine.lifecycle import RecordKind
from funding_engine.money import amounts_equal
from funding_engine.repository import FundingRecordRepository
from funding_engine.store import DocumentStore

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_records"


class AuditStatus:
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class ReconciliationRow:
    row_id: str
    fund_need_key: str
    year: int
    month: int
    user_record_id: Optional[str] = None
    finance_record_id: Optional[str] = None
    user_amount: Optional[Decimal] = None
    finance_amount: Optional[Decimal] = None
    user_status: Optional[str] = None
    finance_status: Optional[str] = None
    has_difference: bool = False
    auditable: bool = False
    needs_audit: bool = False
    audit_record_id: Optional[str] = None
    audit_amount: Optional[Decimal] = None
    audit_status: Optional[str] = None
    audit_remark: Optional[str] = None

    @property
    def requires_attention(self) -> bool:
        return self.needs_audit and self.audit_amount is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["requires_attention"] = self.requires_attention
        return data


def build_row(
    fund_need_key: str,
    year: int,
    month: int,
    user_record: Optional[Dict[str, Any]] = None,
    finance_record: Optional[Dict[str, Any]] = None,
    audit_record: Optional[Dict[str, Any]] = None
) -> ReconciliationRow:
    """Build one comparison row. Either source record may be absent."""
    user_amount = user_record.get("amount") if user_record else None
    finance_amount = finance_record.get("amount") if finance_record else None

    has_difference = (
        user_amount is not None
        and finance_amount is not None
        and not amounts_equal(user_amount, finance_amount)
    )
    auditable = finance_record is not None
    audit_status = audit_record.get("status") if audit_record else None
    needs_audit = auditable and audit_status != AuditStatus.APPROVED

    decided_amount = audit_record.get("amount") if audit_record else None
    if not needs_audit:
        audit_amount = finance_amount
    elif decided_amount is not None:
        audit_amount = decided_amount
    elif not has_difference:
        audit_amount = finance_amount
    else:
        audit_amount = None

    return ReconciliationRow(
        row_id=fund_need_key,
        fund_need_key=fund_need_key,
        year=year,
        month=month,
        user_record_id=user_record["_id"] if user_record else None,
        finance_record_id=finance_record["_id"] if finance_record else None,
        user_amount=user_amount,
        finance_amount=finance_amount,
        user_status=user_record.get("status") if user_record else None,
        finance_status=finance_record.get("status") if finance_record else None,
        has_difference=has_difference,
        auditable=auditable,
        needs_audit=needs_audit,
        audit_record_id=audit_record["_id"] if audit_record else None,
        audit_amount=audit_amount,
        audit_status=audit_status,
        audit_remark=audit_record.get("remark") if audit_record else None,
    )


class ReconciliationViewBuilder:
    """Read-only projection over ActualUser, ActualFinance and audit records."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.user_records = FundingRecordRepository(store, RecordKind.ACTUAL_USER)
        self.finance_records = FundingRecordRepository(store, RecordKind.ACTUAL_FINANCE)

    async def rows_for_period(
        self,
        year: int,
        month: int,
        fund_need_keys: Optional[Iterable[str]] = None,
        session=None
    ) -> Dict[str, ReconciliationRow]:
        """Rows keyed by fund_need_key, for every key with at least one record."""
        query: Dict[str, Any] = {"year": year, "month": month}
        if fund_need_keys is not None:
            query["fund_need_key"] = {"$in": list(fund_need_keys)}

        users = await self.user_records.find_many(query, session=session)
        finances = await self.finance_records.find_many(query, session=session)
        audits = await self.store.find_many(AUDIT_COLLECTION, query, session=session)

        user_by_key = {r["fund_need_key"]: r for r in users}
        finance_by_key = {r["fund_need_key"]: r for r in finances}
        audit_by_key = {r["fund_need_key"]: r for r in audits}

        keys = sorted(set(user_by_key) | set(finance_by_key))
        rows = {
            key: build_row(
                key, year, month,
                user_record=user_by_key.get(key),
                finance_record=finance_by_key.get(key),
                audit_record=audit_by_key.get(key)
            )
            for key in keys
        }
        logger.debug(f"[RECONCILE] Built {len(rows)} rows for {year}-{month:02d}")
        return rows

    async def build_view(
        self,
        year: int,
        month: int,
        fund_need_keys: Optional[Iterable[str]] = None,
        only_needs_audit: bool = False,
        only_differences: bool = False
    ) -> Dict[str, Any]:
        rows = list((await self.rows_for_period(year, month, fund_need_keys)).values())

        summary = {
            "total": len(rows),
            "needs_audit": sum(1 for r in rows if r.needs_audit),
            "with_difference": sum(1 for r in rows if r.has_difference),
            "requires_attention": sum(1 for r in rows if r.requires_attention),
            "not_auditable": sum(1 for r in rows if not r.auditable),
            "approved": sum(1 for r in rows if r.audit_status == AuditStatus.APPROVED),
        }

        if only_needs_audit:
            rows = [r for r in rows if r.needs_audit]
        if only_differences:
            rows = [r for r in rows if r.has_difference]

        return {"year": year, "month": month, "rows": rows, "summary": summary}
