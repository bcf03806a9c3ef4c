"""
Wiring for the funding engine.

FundingServices builds every service over one store and one permission gate;
the API layer keeps a single instance on app.state.
"""

import logging

from funding_engine.access import PermissionGate
from funding_engine.audit_decisions import AuditDecisionEngine
from funding_engine.batch_commit import BatchCommitCoordinator
from funding_engine.history import RecordHistoryService
from funding_engine.reconciliation import ReconciliationViewBuilder
from funding_engine.record_service import FundingRecordService
from funding_engine.store import DocumentStore
from funding_engine.withdrawal import (
    DEFAULT_REASON_MIN_LENGTH, WithdrawalPolicyRepository, WithdrawalWorkflow
)

logger = logging.getLogger(__name__)


class FundingServices:

    def __init__(self, store: DocumentStore, gate: PermissionGate,
                 reason_min_length: int = DEFAULT_REASON_MIN_LENGTH):
        self.store = store
        self.gate = gate
        self.history = RecordHistoryService(store)
        self.records = FundingRecordService(store, gate, self.history)
        self.view_builder = ReconciliationViewBuilder(store)
        self.decisions = AuditDecisionEngine(store, gate, self.history, self.view_builder)
        self.batch = BatchCommitCoordinator(
            store, gate, self.history, self.records, self.view_builder, self.decisions
        )
        self.policies = WithdrawalPolicyRepository(store)
        self.withdrawals = WithdrawalWorkflow(
            store, gate, self.history, self.records, self.policies,
            reason_min_length=reason_min_length
        )

    async def ensure_indexes(self) -> None:
        await self.records.ensure_indexes()
        await self.decisions.audit_records.ensure_indexes()
        await self.withdrawals.ensure_indexes()
        logger.info("[STORE] Funding indexes ready")
