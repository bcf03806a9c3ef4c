"""
Funding record lifecycle, reconciliation and audit engine
"""
from .errors import (
    FundingEngineError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    ValidationError,
    IncompleteDecisionError,
    NotAuditableError,
    PermissionDeniedError
)

from .lifecycle import (
    RecordKind,
    RecordStatus,
    Trigger,
    LifecycleStateMachine,
    FUNDING_LIFECYCLE
)

from .store import (
    DocumentStore,
    MotorDocumentStore,
    InMemoryDocumentStore
)

from .access import (
    PermissionGate,
    ensure_permitted
)

from .reconciliation import (
    ReconciliationRow,
    ReconciliationViewBuilder,
    AuditStatus
)

from .audit_decisions import (
    AuditDecision,
    AuditDecisionEngine
)

from .batch_commit import BatchCommitCoordinator

from .withdrawal import (
    WithdrawalPolicy,
    WithdrawalPolicyRepository,
    WithdrawalWorkflow,
    RequestStatus
)

from .services import FundingServices
