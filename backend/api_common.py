"""
Helpers shared by the funding API routers.
"""

from fastapi import HTTPException, Request
from bson import Decimal128
from datetime import datetime
from decimal import Decimal
from typing import Any
import logging

from funding_engine import FundingEngineError, FundingServices, ReconciliationRow, WithdrawalPolicy
from funding_engine.money import to_float

logger = logging.getLogger(__name__)


def serialize_doc(obj: Any) -> Any:
    """Recursively serialize engine values for JSON response (Decimal, Decimal128, datetime, rows)"""
    if isinstance(obj, (ReconciliationRow, WithdrawalPolicy)):
        return serialize_doc(obj.to_dict())
    elif isinstance(obj, Decimal128):
        return to_float(obj.to_decimal())
    elif isinstance(obj, Decimal):
        return to_float(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {k: serialize_doc(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize_doc(item) for item in obj]
    else:
        return obj


def engine_http_error(error: FundingEngineError) -> HTTPException:
    """Translate an engine error into an HTTPException carrying its payload"""
    if error.status_code >= 500:
        logger.error(f"[API] Engine failure: {error.message}")
    return HTTPException(status_code=error.status_code, detail=serialize_doc(error.to_dict()))


def get_services(request: Request) -> FundingServices:
    return request.app.state.services
