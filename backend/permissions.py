"""
Role matrix behind the engine's permission gate.

RULES:
1. ADMIN may perform every action
2. REPORTER owns Predicted and ActualUser records
3. FINANCE owns ActualFinance records
4. AUDITOR saves and submits audit decisions
5. OBSERVER is read-only
6. Withdrawals may be requested or cancelled by whoever may save a record of
   the module; processing them (and editing policies) is ADMIN only
"""

from typing import Dict, Any, Optional
import logging

from funding_engine.access import PermissionGate
from funding_engine.withdrawal import MODULE_KINDS

logger = logging.getLogger(__name__)

ADMIN = "ADMIN"
REPORTER = "REPORTER"
FINANCE = "FINANCE"
AUDITOR = "AUDITOR"
OBSERVER = "OBSERVER"

ROLES = (ADMIN, REPORTER, FINANCE, AUDITOR, OBSERVER)

RECORD_ACTIONS = {"create", "generate", "save", "submit", "delete"}

ROLE_MATRIX = {
    REPORTER: {
        "predict": RECORD_ACTIONS,
        "actual_user": RECORD_ACTIONS,
    },
    FINANCE: {
        "actual_fin": RECORD_ACTIONS,
    },
    AUDITOR: {
        "audit": {"save", "submit"},
    },
    OBSERVER: {},
}


class RolePermissionGate(PermissionGate):
    """Answers can_perform() from the static role matrix."""

    def __init__(self, matrix: Optional[Dict[str, Dict[str, set]]] = None):
        self.matrix = matrix if matrix is not None else ROLE_MATRIX

    def _allowed(self, role: str, resource: str, action: str) -> bool:
        return action in self.matrix.get(role, {}).get(resource, set())

    def can_perform(
        self,
        user: Dict[str, Any],
        resource: str,
        action: str,
        scope: Optional[Dict[str, Any]] = None
    ) -> bool:
        role = str(user.get("role") or "").upper()
        if role == ADMIN:
            return True
        if role not in ROLES:
            logger.warning(f"[ACCESS] Unknown role '{role}' for user:{user.get('user_id')}")
            return False

        if resource == "withdrawal" and action in ("request", "cancel"):
            module_type = (scope or {}).get("module_type")
            kinds = MODULE_KINDS.get(module_type, ())
            return any(self._allowed(role, kind.value, "save") for kind in kinds)

        return self._allowed(role, resource, action)
