"""
AUDIT API ROUTES

Reconciliation view and audit decisions for one period:
- GET  /api/audit/view      ActualUser vs ActualFinance rows + summary
- POST /api/audit/propose   strict parse of one auditor input
- POST /api/audit/draft     save decisions without changing record status
- POST /api/audit/submit    approve or reject the selected rows (all-or-nothing)
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional, List
import logging

from auth import get_current_user
from api_common import serialize_doc, engine_http_error, get_services
from funding_engine import FundingEngineError, FundingServices
from funding_engine.record_service import validate_period
from models import AuditProposeRequest, AuditDraftRequest, AuditSubmitRequest

logger = logging.getLogger(__name__)

audit_router = APIRouter(prefix="/api/audit", tags=["Audit"])


@audit_router.get("/view")
async def reconciliation_view(
    year: int,
    month: int,
    fund_need_key: Optional[List[str]] = Query(default=None),
    only_needs_audit: bool = False,
    only_differences: bool = False,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """
    Rows are recomputed from current records on every call.
    """
    try:
        validate_period(year, month)
        view = await services.view_builder.build_view(
            year, month,
            fund_need_keys=fund_need_key,
            only_needs_audit=only_needs_audit,
            only_differences=only_differences
        )
        return serialize_doc(view)
    except FundingEngineError as e:
        raise engine_http_error(e)


@audit_router.post("/propose")
async def propose_decision(
    payload: AuditProposeRequest,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Validate one auditor input; blank clears the decision"""
    try:
        decision = services.decisions.propose_decision(payload.row_id, payload.raw_value, payload.remark)
        return {
            "row_id": decision.row_id,
            "amount": serialize_doc(decision.amount),
            "remark": decision.remark,
            "is_cleared": decision.is_cleared,
        }
    except FundingEngineError as e:
        raise engine_http_error(e)


@audit_router.post("/draft")
async def save_draft(
    payload: AuditDraftRequest,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        decisions = [
            services.decisions.propose_decision(d.row_id, d.amount, d.remark)
            for d in payload.decisions
        ]
        result = await services.decisions.commit_draft(payload.year, payload.month, decisions, current_user)
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)


@audit_router.post("/submit")
async def submit_audit(
    payload: AuditSubmitRequest,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """
    Commit the audit of the selected rows.

    RULES:
    - approve: every selected row needing audit must carry an amount
    - reject: remark is MANDATORY
    - any failing row rejects the whole batch
    """
    try:
        decisions = {
            d.row_id: services.decisions.propose_decision(d.row_id, d.amount, d.remark)
            for d in payload.decisions
        }
        result = await services.batch.submit_audit(
            payload.year,
            payload.month,
            payload.row_ids,
            current_user,
            decisions=decisions,
            remark=payload.remark,
            action=payload.action
        )
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)
