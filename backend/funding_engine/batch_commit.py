"""
BATCH AUDIT COMMIT

Applies a selection of reconciliation rows as one unit:
    SUBMITTED -> APPROVED  (action="approve", amounts required)
    SUBMITTED -> REJECTED  (action="reject", remark required)

Every member is checked before anything is written and the writes run in a
single transaction, so one bad member leaves every record of the batch in its
pre-call state. Re-submitting an approved row is rejected.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Mapping, Iterable
import logging

from funding_engine.access import PermissionGate, ensure_permitted
from funding_engine.audit_decisions import AuditDecision, AuditDecisionEngine, DecisionInput
from funding_engine.errors import ConflictError, NotFoundError, NotAuditableError, ValidationError
from funding_engine.history import RecordHistoryService
from funding_engine.lifecycle import RecordKind, RecordStatus, Trigger
from funding_engine.reconciliation import AuditStatus, ReconciliationRow, ReconciliationViewBuilder
from funding_engine.record_service import FundingRecordService
from funding_engine.store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_APPROVE_REMARK = "Batch audit approved"

ACTIONS = {
    "approve": (Trigger.AUDIT_APPROVE, AuditStatus.APPROVED),
    "reject": (Trigger.AUDIT_REJECT, AuditStatus.REJECTED),
}


def _append_remark(existing: Optional[str], audit_remark: Optional[str]) -> Optional[str]:
    if not audit_remark:
        return existing
    note = f"Audit: {audit_remark}"
    return f"{existing} | {note}" if existing else note


class BatchCommitCoordinator:
    """All-or-nothing audit commit over reconciliation rows."""

    def __init__(
        self,
        store: DocumentStore,
        gate: PermissionGate,
        history: RecordHistoryService,
        records: FundingRecordService,
        view_builder: ReconciliationViewBuilder,
        decision_engine: AuditDecisionEngine
    ):
        self.store = store
        self.gate = gate
        self.history = history
        self.records = records
        self.view_builder = view_builder
        self.decision_engine = decision_engine

    @staticmethod
    def _backing_records(row: ReconciliationRow) -> List[tuple]:
        backing = []
        if row.user_record_id:
            backing.append((RecordKind.ACTUAL_USER, row.user_record_id, row.user_status))
        if row.finance_record_id:
            backing.append((RecordKind.ACTUAL_FINANCE, row.finance_record_id, row.finance_status))
        return backing

    def _check_statuses(self, rows: Mapping[str, ReconciliationRow], selection: List[str]) -> None:
        conflicts = []
        for row_id in selection:
            row = rows[row_id]
            if row.audit_status == AuditStatus.APPROVED:
                conflicts.append({"row_id": row_id, "record_id": row.audit_record_id,
                                  "current_status": row.audit_status})
                continue
            for kind, record_id, status in self._backing_records(row):
                if status != RecordStatus.SUBMITTED.value:
                    conflicts.append({"row_id": row_id, "record_id": record_id,
                                      "kind": kind.value, "current_status": status})
        if conflicts:
            logger.warning(f"[BATCH] Audit batch rejected, {len(conflicts)} member(s) not SUBMITTED")
            first = conflicts[0]
            raise ConflictError(
                f"{len(conflicts)} selected record(s) cannot be audited from their current status "
                f"(first: {first['record_id']} is {first['current_status']})",
                current_status=first["current_status"],
                conflicts=conflicts,
                record_ids=[c["row_id"] for c in conflicts]
            )

    async def submit_audit(
        self,
        year: int,
        month: int,
        selection: Iterable[str],
        actor: Dict[str, Any],
        decisions: Optional[Mapping[str, DecisionInput]] = None,
        remark: Optional[str] = None,
        action: str = "approve"
    ) -> Dict[str, Any]:
        """
        Commit the audit of the selected rows of one period.

        Args:
            year, month: the period the rows belong to
            selection: row ids (fund_need_key) to commit
            decisions: per-row amounts overriding the seeded/saved audit amount
            remark: batch remark, used where a decision carries none
            action: "approve" or "reject"

        Raises:
            IncompleteDecisionError, NotAuditableError, NotFoundError,
            ConflictError, ValidationError, PermissionDeniedError
        """
        ensure_permitted(self.gate, actor, "audit", "submit", {"year": year, "month": month})
        if action not in ACTIONS:
            raise ValidationError(f"Unknown audit action: {action}", action=action)
        trigger, audit_status = ACTIONS[action]
        remark = remark.strip() if remark else None
        if action == "reject" and not remark:
            raise ValidationError("A remark is required to reject an audit")

        selection = list(dict.fromkeys(selection))
        if not selection:
            raise ValidationError("No rows selected")
        decisions = dict(decisions or {})

        committed = []
        async with self.store.transaction() as session:
            rows = await self.view_builder.rows_for_period(year, month, selection, session=session)

            if action == "approve":
                amounts = self.decision_engine.validate_for_submit(rows, selection, decisions)
            else:
                missing = [r for r in selection if r not in rows]
                if missing:
                    raise NotFoundError(f"Rows not found: {', '.join(missing)}", record_ids=missing)
                not_auditable = [r for r in selection if not rows[r].auditable]
                if not_auditable:
                    raise NotAuditableError(not_auditable)
                amounts = {r: rows[r].audit_amount for r in selection}

            self._check_statuses(rows, selection)

            now = datetime.utcnow()
            for row_id in selection:
                row = rows[row_id]
                decision = decisions.get(row_id)
                row_remark = (decision.remark if isinstance(decision, AuditDecision) else None) or remark
                if action == "approve":
                    row_remark = row_remark or DEFAULT_APPROVE_REMARK
                amount: Optional[Decimal] = amounts[row_id]

                for kind, record_id, _ in self._backing_records(row):
                    record = await self.records.repository(kind).get(record_id, session=session)
                    fields = {
                        "remark": _append_remark(record.get("remark"), row_remark),
                        "audited_by": actor.get("user_id"),
                        "audited_at": now,
                    }
                    if action == "approve":
                        fields["submitted_amount"] = record.get("amount")
                        fields["amount"] = amount
                    await self.records.transition(
                        kind, record_id, trigger, actor,
                        fields=fields, remarks=row_remark, session=session
                    )

                audit_record = await self.decision_engine.audit_records.upsert(
                    row.fund_need_key, year, month,
                    {
                        "amount": amount,
                        "remark": row_remark,
                        "status": audit_status,
                        "user_record_id": row.user_record_id,
                        "finance_record_id": row.finance_record_id,
                        "submitted_by": actor.get("user_id"),
                        "submitted_at": now,
                    },
                    session=session
                )
                await self.history.log_action(
                    "audit", audit_record["_id"], trigger.value, actor,
                    old_value={"amount": row.audit_amount, "status": row.audit_status},
                    new_value={"amount": amount, "status": audit_status},
                    remarks=row_remark,
                    session=session
                )
                committed.append(row_id)

        logger.info(
            f"[BATCH] Audit {action} committed for {len(committed)} rows of {year}-{month:02d} "
            f"by user:{actor.get('user_id')}"
        )
        refreshed = await self.view_builder.rows_for_period(year, month, committed)
        return {
            "action": action,
            "committed": len(committed),
            "rows": [refreshed[r] for r in committed if r in refreshed],
        }
