"""
FUNDING RECORD API ROUTES

One set of routes for the three record kinds, selected by path:
    /api/funding/predict
    /api/funding/actual_user
    /api/funding/actual_fin

All routes require authentication. Permission checks and status rules are
applied by the engine; engine errors are returned with their payload.
"""

from fastapi import APIRouter, status, Depends, Query
from typing import Optional
import logging

from auth import get_current_user
from api_common import serialize_doc, engine_http_error, get_services
from funding_engine import FundingEngineError, FundingServices, RecordKind
from models import (
    FundingRecordCreate, FundingRecordSave, FundingBatchSave, FundingBatchSubmit,
    FundingPeriodGenerate, RemarkUpdate
)

logger = logging.getLogger(__name__)

funding_router = APIRouter(prefix="/api/funding", tags=["Funding Records"])


# =============================================================================
# READS
# =============================================================================

@funding_router.get("/{kind}")
async def list_records(
    kind: RecordKind,
    year: Optional[int] = None,
    month: Optional[int] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    fund_need_key: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    filters = {"year": year, "month": month, "status": status_filter, "fund_need_key": fund_need_key}
    result = await services.records.list_records(kind, filters, page=page, page_size=page_size)
    return serialize_doc(result)


@funding_router.get("/{kind}/stats")
async def record_stats(
    kind: RecordKind,
    year: Optional[int] = None,
    month: Optional[int] = None,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Record counts by status"""
    return await services.records.stats(kind, year=year, month=month)


@funding_router.get("/{kind}/{record_id}")
async def get_record(
    kind: RecordKind,
    record_id: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        return serialize_doc(await services.records.get(kind, record_id))
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.get("/{kind}/{record_id}/history")
async def get_record_history(
    kind: RecordKind,
    record_id: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Insert-only change history, newest first"""
    try:
        history = await services.records.history_of(kind, record_id)
        return {"record_id": record_id, "history": serialize_doc(history)}
    except FundingEngineError as e:
        raise engine_http_error(e)


# =============================================================================
# CREATE
# =============================================================================

@funding_router.post("/{kind}", status_code=status.HTTP_201_CREATED)
async def create_record(
    kind: RecordKind,
    payload: FundingRecordCreate,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        record = await services.records.create_record(
            kind,
            payload.fund_need_key,
            payload.year,
            payload.month,
            current_user,
            amount=payload.amount,
            remark=payload.remark
        )
        return serialize_doc(record)
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.post("/{kind}/generate", status_code=status.HTTP_201_CREATED)
async def generate_period_records(
    kind: RecordKind,
    payload: FundingPeriodGenerate,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """Create UNFILLED records for a period; existing keys are skipped"""
    try:
        result = await services.records.generate_period_records(
            kind, payload.fund_need_keys, payload.year, payload.month, current_user
        )
        return serialize_doc(result)
    except FundingEngineError as e:
        raise engine_http_error(e)


# =============================================================================
# SAVE / SUBMIT
# =============================================================================

@funding_router.post("/{kind}/batch-save")
async def batch_save(
    kind: RecordKind,
    payload: FundingBatchSave,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """All-or-nothing save of several records"""
    items = [item.model_dump(exclude_unset=True) for item in payload.items]
    try:
        records = await services.records.batch_save(kind, items, current_user)
        return {"saved": len(records), "records": serialize_doc(records)}
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.post("/{kind}/batch-submit")
async def batch_submit(
    kind: RecordKind,
    payload: FundingBatchSubmit,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    """All-or-nothing submit of several records"""
    try:
        records = await services.records.batch_submit(kind, payload.record_ids, current_user)
        return {"submitted": len(records), "records": serialize_doc(records)}
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.put("/{kind}/{record_id}")
async def save_record(
    kind: RecordKind,
    record_id: str,
    payload: FundingRecordSave,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        record = await services.records.save(
            kind, record_id, payload.model_dump(exclude_unset=True), current_user
        )
        return serialize_doc(record)
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.post("/{kind}/{record_id}/submit")
async def submit_record(
    kind: RecordKind,
    record_id: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        return serialize_doc(await services.records.submit(kind, record_id, current_user))
    except FundingEngineError as e:
        raise engine_http_error(e)


# =============================================================================
# REMARK / DELETE
# =============================================================================

@funding_router.patch("/{kind}/{record_id}/remark")
async def update_remark(
    kind: RecordKind,
    record_id: str,
    payload: RemarkUpdate,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        record = await services.records.update_remark(kind, record_id, payload.remark, current_user)
        return serialize_doc(record)
    except FundingEngineError as e:
        raise engine_http_error(e)


@funding_router.delete("/{kind}/{record_id}")
async def delete_record(
    kind: RecordKind,
    record_id: str,
    current_user: dict = Depends(get_current_user),
    services: FundingServices = Depends(get_services)
):
    try:
        await services.records.delete(kind, record_id, current_user)
        return {"status": "success", "record_id": record_id, "message": "Record deleted"}
    except FundingEngineError as e:
        raise engine_http_error(e)
