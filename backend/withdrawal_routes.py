"""
WITHDRAWAL API ROUTES

- /api/withdrawal-requests   request, cancel, process (admin), list, get
- /api/withdrawal-config     per-module withdrawal policy (admin writes)
"""

from fastapi import APIRouter, status, Depends, Query
from typing import Optional
import logging

from auth import get_current_user
from api_common import serialize_doc, engine_http_error, get_services
from funding_engine import FundingEngineError, FundingServices, WithdrawalPolicy
from funding_engine.access import ensure_permitted
from funding_engine.withdrawal import module_kinds
from models import WithdrawalRequestCreate, WithdrawalCancel, WithdrawalProcess, WithdrawalPolicyUpdate

logger = logging.getLogger(__name__)

withdrawal_router = APIRouter(prefix="/api", tags=["Withdrawal"])


# =============================================================================
# SECTION 1: WITHDRAWAL REQUESTS
# =============================================================================

@withdrawal_router.post("/withdrawal-requests", status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    payload: WithdrawalRequestCreate,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """
    Request withdrawal of a submitted record.

    RULES:
    - Reason is MANDATORY
    - Record status must be allowed by the module's policy
    """
    try:
        result = await services.withdrawals.request_withdrawal(
            payload.record_id, payload.module_type, payload.reason, current_user
        )
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)


@withdrawal_router.post("/withdrawal-requests/cancel")
async def cancel_withdrawal(
    payload: WithdrawalCancel,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        result = await services.withdrawals.cancel_withdrawal(payload.record_id, current_user)
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)


@withdrawal_router.post("/withdrawal-requests/{request_id}/process")
async def process_withdrawal(
    request_id: str,
    payload: WithdrawalProcess,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Admin decision on a pending request"""
    try:
        result = await services.withdrawals.process_withdrawal(
            request_id, payload.decision, current_user, comment=payload.comment
        )
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)


@withdrawal_router.get("/withdrawal-requests")
async def list_withdrawal_requests(
    record_id: Optional[str] = None,
    module_type: Optional[str] = None,
    request_status: Optional[str] = None,
    requested_by: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Admins see every request; everyone else only their own."""
    filters = {
        "record_id": record_id,
        "module_type": module_type,
        "request_status": request_status,
        "requested_by": requested_by,
    }
    result = await services.withdrawals.list_withdrawal_requests(
        current_user, filters, page=page, page_size=page_size
    )
    return serialize_doc(result)


@withdrawal_router.get("/withdrawal-requests/{request_id}")
async def get_withdrawal_request(
    request_id: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        return serialize_doc(await services.withdrawals.get_withdrawal_request(request_id, current_user))
    except FundingEngineError as e:
        raise engine_http_error(e)


# =============================================================================
# SECTION 2: WITHDRAWAL POLICY
# =============================================================================

@withdrawal_router.get("/withdrawal-config")
async def list_withdrawal_policies(
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    return {"policies": serialize_doc(await services.policies.list())}


@withdrawal_router.get("/withdrawal-config/{module_type}")
async def get_withdrawal_policy(
    module_type: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        module_kinds(module_type)
        return serialize_doc(await services.policies.get(module_type))
    except FundingEngineError as e:
        raise engine_http_error(e)


@withdrawal_router.put("/withdrawal-config/{module_type}")
async def update_withdrawal_policy(
    module_type: str,
    payload: WithdrawalPolicyUpdate,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Admin only. Takes effect on the next withdrawal request."""
    try:
        ensure_permitted(services.gate, current_user, "withdrawal_config", "update", {"module_type": module_type})
        policy = WithdrawalPolicy(module_type=module_type, **payload.model_dump())
        return serialize_doc(await services.policies.upsert(policy, actor=current_user))
    except FundingEngineError as e:
        raise engine_http_error(e)
