"""
WITHDRAWAL WORKFLOW

Lets a submitter pull a SUBMITTED record back for editing:

    request   SUBMITTED          -> PENDING_WITHDRAWAL
    cancel    PENDING_WITHDRAWAL -> SUBMITTED
    approve   PENDING_WITHDRAWAL -> WITHDRAWN   (admin; record is editable again)
    reject    PENDING_WITHDRAWAL -> SUBMITTED   (admin)

Eligibility is a membership test against the module's WithdrawalPolicy,
read on every call. Policies live in `withdrawal_configs` and are maintained
through the admin surface.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
import math
import uuid
import logging

from funding_engine.access import PermissionGate, ensure_permitted
from funding_engine.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from funding_engine.history import RecordHistoryService
from funding_engine.lifecycle import RecordKind, RecordStatus, Trigger
from funding_engine.record_service import FundingRecordService
from funding_engine.store import DocumentStore

logger = logging.getLogger(__name__)

POLICY_COLLECTION = "withdrawal_configs"
REQUEST_COLLECTION = "withdrawal_requests"

DEFAULT_REASON_MIN_LENGTH = 5

# Module type -> record kinds it covers
MODULE_KINDS = {
    "predict": (RecordKind.PREDICTED,),
    "actual_user": (RecordKind.ACTUAL_USER,),
    "actual_fin": (RecordKind.ACTUAL_FINANCE,),
    "actual": (RecordKind.ACTUAL_USER, RecordKind.ACTUAL_FINANCE),
}


class RequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


def module_kinds(module_type: str) -> Tuple[RecordKind, ...]:
    try:
        return MODULE_KINDS[module_type]
    except KeyError:
        raise ValidationError(
            f"Unknown module type: {module_type}",
            module_type=module_type,
            allowed=sorted(MODULE_KINDS)
        )


# =============================================================================
# POLICY
# =============================================================================

@dataclass
class WithdrawalPolicy:
    module_type: str
    allowed_statuses: List[str] = field(default_factory=list)
    time_limit: int = 0
    max_attempts: int = 0
    require_approval: bool = True

    def __post_init__(self):
        self.allowed_statuses = [str(s).strip().upper() for s in self.allowed_statuses if str(s).strip()]
        if self.time_limit < 0 or self.max_attempts < 0:
            raise ValidationError("time_limit and max_attempts cannot be negative")

    def allows(self, status: str) -> bool:
        return str(status).upper() in self.allowed_statuses

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "WithdrawalPolicy":
        return cls(
            module_type=doc["module_type"],
            allowed_statuses=doc.get("allowed_statuses") or [],
            time_limit=int(doc.get("time_limit") or 0),
            max_attempts=int(doc.get("max_attempts") or 0),
            require_approval=bool(doc.get("require_approval", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WithdrawalPolicyRepository:
    """Per-module withdrawal policies."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def ensure_indexes(self) -> None:
        await self.store.ensure_unique(POLICY_COLLECTION, ["module_type"])

    async def get(self, module_type: str) -> WithdrawalPolicy:
        """A module without a stored policy allows nothing."""
        doc = await self.store.find_one(POLICY_COLLECTION, {"module_type": module_type})
        if doc is None:
            return WithdrawalPolicy(module_type=module_type)
        return WithdrawalPolicy.from_doc(doc)

    async def list(self) -> List[WithdrawalPolicy]:
        docs = await self.store.find_many(POLICY_COLLECTION, {}, sort=[("module_type", 1)])
        return [WithdrawalPolicy.from_doc(d) for d in docs]

    async def upsert(self, policy: WithdrawalPolicy, actor: Optional[Dict[str, Any]] = None) -> WithdrawalPolicy:
        module_kinds(policy.module_type)
        unknown = [s for s in policy.allowed_statuses if s not in RecordStatus.__members__]
        if unknown:
            raise ValidationError(f"Unknown statuses: {', '.join(unknown)}", statuses=unknown)

        fields = policy.to_dict()
        fields["updated_at"] = datetime.utcnow()
        fields["updated_by"] = actor.get("user_id") if actor else None

        async with self.store.transaction() as session:
            existing = await self.store.find_one(
                POLICY_COLLECTION, {"module_type": policy.module_type}, session=session
            )
            if existing:
                await self.store.update_one(POLICY_COLLECTION, {"_id": existing["_id"]}, fields, session=session)
            else:
                fields["_id"] = str(uuid.uuid4())
                await self.store.insert_one(POLICY_COLLECTION, fields, session=session)

        logger.info(
            f"[WITHDRAWAL] Policy for '{policy.module_type}' set to {policy.allowed_statuses} "
            f"(time_limit={policy.time_limit}h, max_attempts={policy.max_attempts}, "
            f"require_approval={policy.require_approval})"
        )
        return policy


# =============================================================================
# WORKFLOW
# =============================================================================

class WithdrawalWorkflow:
    """Request, cancel and process withdrawals of submitted records."""

    def __init__(
        self,
        store: DocumentStore,
        gate: PermissionGate,
        history: RecordHistoryService,
        records: FundingRecordService,
        policies: WithdrawalPolicyRepository,
        reason_min_length: int = DEFAULT_REASON_MIN_LENGTH
    ):
        self.store = store
        self.gate = gate
        self.history = history
        self.records = records
        self.policies = policies
        self.reason_min_length = reason_min_length

    async def ensure_indexes(self) -> None:
        await self.policies.ensure_indexes()

    async def _locate(self, record_id: str, kinds: Tuple[RecordKind, ...], session=None):
        for kind in kinds:
            record = await self.records.repository(kind).find(record_id, session=session)
            if record:
                return kind, record
        raise NotFoundError(f"Record not found: {record_id}", record_id=record_id)

    async def _pending_request(self, record_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(
            REQUEST_COLLECTION,
            {"record_id": record_id, "request_status": RequestStatus.PENDING},
            session=session
        )

    async def _close_request(self, request: Dict[str, Any], status: str, actor: Dict[str, Any],
                             comment: Optional[str], session) -> Dict[str, Any]:
        fields = {
            "request_status": status,
            "processed_by": actor.get("user_id"),
            "processed_at": datetime.utcnow(),
            "comment": comment,
        }
        matched = await self.store.update_one(
            REQUEST_COLLECTION,
            {"_id": request["_id"], "request_status": RequestStatus.PENDING},
            fields,
            session=session
        )
        if not matched:
            raise ConflictError(
                f"Withdrawal request {request['_id']} is no longer pending",
                request_id=request["_id"]
            )
        request.update(fields)
        return request

    # =========================================================================
    # REQUEST
    # =========================================================================

    async def request_withdrawal(
        self,
        record_id: str,
        module_type: str,
        reason: str,
        actor: Dict[str, Any],
        policy: Optional[WithdrawalPolicy] = None
    ) -> Dict[str, Any]:
        """
        Ask for a SUBMITTED record to be returned for editing.

        `policy` defaults to the stored policy of `module_type`, read now.

        Raises:
            ValidationError: reason too short, unknown module, time limit or
                attempt limit exceeded
            NotFoundError: no such record in the module's kinds
            InvalidStateError: record status not withdrawable for the module
            ConflictError: a request is already pending, or a concurrent
                writer moved the record first
        """
        reason = (reason or "").strip()
        if len(reason) < self.reason_min_length:
            raise ValidationError(
                f"Withdrawal reason must be at least {self.reason_min_length} characters",
                min_length=self.reason_min_length
            )
        kinds = module_kinds(module_type)
        ensure_permitted(self.gate, actor, "withdrawal", "request", {"module_type": module_type})

        if policy is None:
            policy = await self.policies.get(module_type)

        async with self.store.transaction() as session:
            kind, record = await self._locate(record_id, kinds, session=session)

            if not policy.allows(record["status"]):
                logger.warning(
                    f"[WITHDRAWAL] Rejected request on {kind.value} {record_id}: "
                    f"{record['status']} not in {policy.allowed_statuses}"
                )
                raise InvalidStateError(record["status"], policy.allowed_statuses, module_type)

            pending = await self._pending_request(record_id, session=session)
            if pending:
                raise ConflictError(
                    f"A withdrawal request is already pending for record {record_id}",
                    current_status=record["status"],
                    request_id=pending["_id"]
                )

            if policy.time_limit and record.get("submitted_at"):
                deadline = record["submitted_at"] + timedelta(hours=policy.time_limit)
                if datetime.utcnow() > deadline:
                    raise ValidationError(
                        f"Withdrawal window of {policy.time_limit}h has passed",
                        record_id=record_id,
                        time_limit=policy.time_limit
                    )

            if policy.max_attempts:
                attempts = await self.store.count(REQUEST_COLLECTION, {"record_id": record_id}, session=session)
                if attempts >= policy.max_attempts:
                    raise ValidationError(
                        f"Maximum of {policy.max_attempts} withdrawal requests reached",
                        record_id=record_id,
                        max_attempts=policy.max_attempts
                    )

            request = {
                "_id": str(uuid.uuid4()),
                "record_id": record_id,
                "record_kind": kind.value,
                "module_type": module_type,
                "reason": reason,
                "requested_by": actor.get("user_id"),
                "requested_at": datetime.utcnow(),
                "request_status": RequestStatus.PENDING,
                "previous_status": record["status"],
                "processed_by": None,
                "processed_at": None,
                "comment": None,
            }
            await self.store.insert_one(REQUEST_COLLECTION, request, session=session)
            updated = await self.records.transition(
                kind, record_id, Trigger.REQUEST_WITHDRAWAL, actor, remarks=reason, session=session
            )

            if not policy.require_approval:
                request = await self._close_request(
                    request, RequestStatus.APPROVED, actor, "Approval not required", session
                )
                updated = await self.records.transition(
                    kind, record_id, Trigger.APPROVE_WITHDRAWAL, actor,
                    remarks="Approval not required", session=session
                )

            await self.history.log_action(
                "withdrawal", request["_id"], "request", actor,
                new_value={"record_id": record_id, "request_status": request["request_status"]},
                remarks=reason,
                session=session
            )

        logger.info(
            f"[WITHDRAWAL] Request {request['_id']} on {kind.value} {record_id} by user:{actor.get('user_id')} "
            f"({request['request_status']})"
        )
        return {"request": request, "record": updated}

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel_withdrawal(self, record_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Withdraw a pending request; the record returns to SUBMITTED.

        Raises NotFoundError when the record has no pending request, so a
        second cancel fails. The actor must be allowed to cancel within the
        request's module, and anyone but the requester must also be allowed
        to process withdrawals.
        """
        async with self.store.transaction() as session:
            request = await self._pending_request(record_id, session=session)
            if request is None:
                raise NotFoundError(
                    f"No pending withdrawal request for record {record_id}",
                    record_id=record_id
                )
            ensure_permitted(
                self.gate, actor, "withdrawal", "cancel",
                {"record_id": record_id, "module_type": request["module_type"]}
            )
            if request["requested_by"] != actor.get("user_id"):
                ensure_permitted(self.gate, actor, "withdrawal", "process", {"record_id": record_id})

            kind = RecordKind(request["record_kind"])
            request = await self._close_request(request, RequestStatus.CANCELLED, actor, None, session)
            updated = await self.records.transition(
                kind, record_id, Trigger.CANCEL_WITHDRAWAL, actor, session=session
            )
            await self.history.log_action(
                "withdrawal", request["_id"], "cancel", actor,
                old_value={"request_status": RequestStatus.PENDING},
                new_value={"request_status": RequestStatus.CANCELLED},
                session=session
            )

        logger.info(f"[WITHDRAWAL] Request {request['_id']} cancelled by user:{actor.get('user_id')}")
        return {"request": request, "record": updated}

    # =========================================================================
    # PROCESS (ADMIN)
    # =========================================================================

    async def process_withdrawal(
        self,
        request_id: str,
        decision: str,
        actor: Dict[str, Any],
        comment: Optional[str] = None
    ) -> Dict[str, Any]:
        """approved -> record WITHDRAWN; rejected -> record SUBMITTED."""
        ensure_permitted(self.gate, actor, "withdrawal", "process", {"request_id": request_id})
        decision = str(decision).lower()
        triggers = {
            RequestStatus.APPROVED: Trigger.APPROVE_WITHDRAWAL,
            RequestStatus.REJECTED: Trigger.REJECT_WITHDRAWAL,
        }
        if decision not in triggers:
            raise ValidationError(
                f"Decision must be one of: {', '.join(triggers)}",
                decision=decision
            )

        async with self.store.transaction() as session:
            request = await self.store.find_one(REQUEST_COLLECTION, {"_id": request_id}, session=session)
            if request is None:
                raise NotFoundError(f"Withdrawal request not found: {request_id}", request_id=request_id)
            if request["request_status"] != RequestStatus.PENDING:
                raise ConflictError(
                    f"Withdrawal request {request_id} is already {request['request_status']}",
                    current_status=request["request_status"],
                    request_id=request_id
                )

            kind = RecordKind(request["record_kind"])
            request = await self._close_request(request, decision, actor, comment, session)
            updated = await self.records.transition(
                kind, request["record_id"], triggers[decision], actor, remarks=comment, session=session
            )
            await self.history.log_action(
                "withdrawal", request_id, decision, actor,
                old_value={"request_status": RequestStatus.PENDING},
                new_value={"request_status": decision},
                remarks=comment,
                session=session
            )

        logger.info(
            f"[WITHDRAWAL] Request {request_id} {decision} by user:{actor.get('user_id')}; "
            f"record {request['record_id']} now {updated['status']}"
        )
        return {"request": request, "record": updated}

    # =========================================================================
    # READS
    # =========================================================================

    async def get_withdrawal_request(self, request_id: str, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request = await self.store.find_one(REQUEST_COLLECTION, {"_id": request_id})
        if request is None:
            raise NotFoundError(f"Withdrawal request not found: {request_id}", request_id=request_id)
        if actor is not None and request["requested_by"] != actor.get("user_id"):
            ensure_permitted(self.gate, actor, "withdrawal", "process", {"request_id": request_id})
        return request

    async def list_withdrawal_requests(
        self,
        actor: Dict[str, Any],
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Dict[str, Any]:
        """
        Newest first. Actors who may not process withdrawals only see the
        requests they made themselves, whatever `requested_by` they pass.
        """
        query = {k: v for k, v in (filters or {}).items() if v is not None}
        if not self.gate.can_perform(actor, "withdrawal", "process", {}):
            query["requested_by"] = actor.get("user_id")
        page = max(page, 1)
        total = await self.store.count(REQUEST_COLLECTION, query)
        items = await self.store.find_many(
            REQUEST_COLLECTION, query, sort=[("requested_at", -1)],
            limit=page_size, skip=(page - 1) * page_size
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if page_size else 0,
        }
