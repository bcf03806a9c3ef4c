"""
FUNDING ENGINE ERRORS

Typed failures raised by every engine operation. Each error carries an
HTTP-class status code and a payload so the calling layer can show the
offending record ids or current status instead of a generic message.
"""

from typing import Optional, List, Dict, Any


class FundingEngineError(Exception):
    """Base exception for funding engine errors."""
    status_code = 500
    error_type = "engine_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"type": self.error_type, "message": self.message}
        payload.update(self.details)
        return payload


class NotFoundError(FundingEngineError):
    """Raised when a record or pending request is absent."""
    status_code = 404
    error_type = "not_found"


class ConflictError(FundingEngineError):
    """Raised when a transition is not legal from the current status."""
    status_code = 409
    error_type = "conflict"

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        self.current_status = current_status
        super().__init__(message, current_status=current_status, **details)


class InvalidStateError(ConflictError):
    """Raised when a record's status is not eligible for withdrawal."""
    error_type = "invalid_status"

    def __init__(self, current_status: str, allowed_statuses: List[str], module_type: str):
        self.allowed_statuses = list(allowed_statuses)
        self.module_type = module_type
        allowed = ", ".join(self.allowed_statuses) or "none"
        super().__init__(
            f"Status {current_status} does not allow withdrawal for module "
            f"'{module_type}'. Allowed: {allowed}",
            current_status=current_status,
            allowed_statuses=self.allowed_statuses,
            module_type=module_type
        )


class ValidationError(FundingEngineError):
    """Raised for malformed input: bad amounts, short reasons, missing fields."""
    status_code = 400
    error_type = "validation_error"


class IncompleteDecisionError(ValidationError):
    """Raised when selected rows that need audit lack a decision."""
    error_type = "incomplete_decision"

    def __init__(self, record_ids: List[str]):
        self.record_ids = list(record_ids)
        super().__init__(
            f"Audit decision missing for {len(self.record_ids)} selected row(s): "
            f"{', '.join(self.record_ids)}",
            record_ids=self.record_ids
        )


class NotAuditableError(ValidationError):
    """Raised when a batch selects rows that have no finance counterpart."""
    error_type = "not_auditable"

    def __init__(self, record_ids: List[str]):
        self.record_ids = list(record_ids)
        super().__init__(
            f"Rows without a finance record cannot be audited: {', '.join(self.record_ids)}",
            record_ids=self.record_ids
        )


class PermissionDeniedError(FundingEngineError):
    """Raised when the permission gate refuses an operation."""
    status_code = 403
    error_type = "permission_denied"

    def __init__(self, resource: str, action: str, user_id: Optional[str] = None):
        self.resource = resource
        self.action = action
        super().__init__(
            f"Not permitted to {action} {resource}",
            resource=resource,
            action=action,
            user_id=user_id
        )
