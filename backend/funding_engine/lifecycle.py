"""
FUNDING RECORD LIFECYCLE

One state machine shared by the three record kinds (Predicted, ActualUser,
ActualFinance). Every status change in the engine goes through
FUNDING_LIFECYCLE.plan(); no service writes `status` directly.

    UNFILLED -> DRAFT -> SUBMITTED -> {PENDING_WITHDRAWAL | APPROVED | REJECTED}
    PENDING_WITHDRAWAL -> {SUBMITTED | WITHDRAWN}
    WITHDRAWN -> DRAFT

Usage:
    update = FUNDING_LIFECYCLE.plan(record_doc, Trigger.SUBMIT)
    await repository.update(record_id, update, expected_status=record_doc["status"])
"""

from typing import Dict, Any, Optional, Callable, List, Set, Tuple
from datetime import datetime
from enum import Enum
import logging

from funding_engine.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    PREDICTED = "predict"
    ACTUAL_USER = "actual_user"
    ACTUAL_FINANCE = "actual_fin"

    @property
    def collection(self) -> str:
        return COLLECTIONS[self]


COLLECTIONS = {
    RecordKind.PREDICTED: "predict_records",
    RecordKind.ACTUAL_USER: "actual_user_records",
    RecordKind.ACTUAL_FINANCE: "actual_fin_records",
}


class RecordStatus(str, Enum):
    UNFILLED = "UNFILLED"
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PENDING_WITHDRAWAL = "PENDING_WITHDRAWAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class Trigger(str, Enum):
    SAVE = "save"
    SUBMIT = "submit"
    REQUEST_WITHDRAWAL = "request_withdrawal"
    CANCEL_WITHDRAWAL = "cancel_withdrawal"
    APPROVE_WITHDRAWAL = "approve_withdrawal"
    REJECT_WITHDRAWAL = "reject_withdrawal"
    AUDIT_APPROVE = "audit_approve"
    AUDIT_REJECT = "audit_reject"


# Guard signature: def guard(record_doc, context) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any]], Tuple[bool, str]]


class Transition:
    """Definition of a legal status change."""

    def __init__(
        self,
        from_state: RecordStatus,
        to_state: RecordStatus,
        trigger: Trigger,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.trigger = trigger
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state.value} -[{self.trigger.value}]-> {self.to_state.value})"


class LifecycleStateMachine:
    """
    Table-driven state machine for funding records.

    Transitions are indexed by (from_state, trigger). Validation is pure:
    the caller persists the returned update with a compare-and-set on the
    status it read, so a concurrent writer surfaces as a ConflictError.
    """

    def __init__(self, entity_name: str, status_field: str = "status"):
        self.entity_name = entity_name
        self.status_field = status_field
        self._transitions: Dict[Tuple[RecordStatus, Trigger], Transition] = {}
        self._states: Set[RecordStatus] = set()

    def register(
        self,
        from_state: RecordStatus,
        to_state: RecordStatus,
        trigger: Trigger,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "LifecycleStateMachine":
        key = (from_state, trigger)
        if key in self._transitions:
            logger.warning(
                f"[LIFECYCLE] Overwriting transition {self.entity_name}: "
                f"'{from_state.value}' on '{trigger.value}'"
            )
        self._transitions[key] = Transition(from_state, to_state, trigger, guard, description)
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_triggers(self, from_state: RecordStatus) -> List[str]:
        return [trigger.value for (src, trigger) in self._transitions if src == from_state]

    def can_transition(self, from_state: RecordStatus, trigger: Trigger) -> bool:
        return (from_state, trigger) in self._transitions

    def target_of(self, from_state: RecordStatus, trigger: Trigger) -> RecordStatus:
        """Return the destination status, raising ConflictError if illegal."""
        transition = self._transitions.get((from_state, trigger))
        if transition is None:
            allowed = self.get_allowed_triggers(from_state)
            raise ConflictError(
                f"Cannot {trigger.value} {self.entity_name} in status {from_state.value}",
                current_status=from_state.value,
                trigger=trigger.value,
                allowed_triggers=allowed
            )
        return transition.to_state

    def plan(
        self,
        record_doc: Dict[str, Any],
        trigger: Trigger,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validate `trigger` against the record's current status and return the
        field update that performs the transition.

        Raises:
            ConflictError: transition not in the table
            ValidationError: a guard refused the transition
        """
        context = context or {}
        from_state = current_status(record_doc, self.status_field)
        to_state = self.target_of(from_state, trigger)
        transition = self._transitions[(from_state, trigger)]

        if transition.guard:
            allowed, reason = transition.guard(record_doc, context)
            if not allowed:
                raise ValidationError(
                    f"Cannot {trigger.value} {self.entity_name}: {reason}",
                    current_status=from_state.value,
                    record_id=record_doc.get("_id")
                )

        logger.debug(
            f"[LIFECYCLE] {self.entity_name} {record_doc.get('_id')}: "
            f"'{from_state.value}' -> '{to_state.value}' ({trigger.value})"
        )
        return self.get_status_update(to_state)

    def get_status_update(self, to_state: RecordStatus) -> Dict[str, Any]:
        return {
            self.status_field: to_state.value,
            f"{self.status_field}_changed_at": datetime.utcnow()
        }

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "from": t.from_state.value,
                "to": t.to_state.value,
                "trigger": t.trigger.value,
                "description": t.description,
                "has_guard": t.guard is not None
            }
            for t in self._transitions.values()
        ]

    def get_graph(self) -> Dict[str, List[str]]:
        graph = {state.value: [] for state in self._states}
        for t in self._transitions.values():
            if t.to_state.value not in graph[t.from_state.value]:
                graph[t.from_state.value].append(t.to_state.value)
        return graph

    def __repr__(self):
        return (
            f"LifecycleStateMachine({self.entity_name}, "
            f"states={len(self._states)}, transitions={len(self._transitions)})"
        )


def current_status(record_doc: Dict[str, Any], status_field: str = "status") -> RecordStatus:
    raw = record_doc.get(status_field)
    if raw is None:
        raise ConflictError(f"Record missing status field: {status_field}")
    try:
        return RecordStatus(str(raw).upper())
    except ValueError:
        raise ConflictError(f"Unknown record status: {raw}", current_status=str(raw))


def _guard_amount_present(record_doc: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
    if record_doc.get("amount") is None:
        return (False, "amount is required before submission")
    return (True, "")


def create_funding_lifecycle() -> LifecycleStateMachine:
    machine = LifecycleStateMachine("funding_record")
    S = RecordStatus

    machine.register(S.UNFILLED, S.DRAFT, Trigger.SAVE, description="First save")
    machine.register(S.DRAFT, S.DRAFT, Trigger.SAVE, description="Save draft")
    machine.register(S.WITHDRAWN, S.DRAFT, Trigger.SAVE, description="Edit after approved withdrawal")
    machine.register(S.DRAFT, S.SUBMITTED, Trigger.SUBMIT, guard=_guard_amount_present,
                     description="Submit for audit")
    machine.register(S.SUBMITTED, S.PENDING_WITHDRAWAL, Trigger.REQUEST_WITHDRAWAL,
                     description="Withdrawal requested")
    machine.register(S.PENDING_WITHDRAWAL, S.SUBMITTED, Trigger.CANCEL_WITHDRAWAL,
                     description="Withdrawal cancelled by requester")
    machine.register(S.PENDING_WITHDRAWAL, S.SUBMITTED, Trigger.REJECT_WITHDRAWAL,
                     description="Withdrawal rejected by admin")
    machine.register(S.PENDING_WITHDRAWAL, S.WITHDRAWN, Trigger.APPROVE_WITHDRAWAL,
                     description="Withdrawal approved by admin")
    machine.register(S.SUBMITTED, S.APPROVED, Trigger.AUDIT_APPROVE, description="Audit approved")
    machine.register(S.SUBMITTED, S.REJECTED, Trigger.AUDIT_REJECT, description="Audit rejected")

    logger.info(f"[LIFECYCLE] Initialized {machine}")
    return machine


FUNDING_LIFECYCLE = create_funding_lifecycle()
