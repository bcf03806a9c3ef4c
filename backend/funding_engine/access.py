"""
Permission gate consumed by the engine.

The engine only asks yes/no questions; the role matrix itself lives outside
the engine (see permissions.RolePermissionGate).
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import logging

from funding_engine.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


class PermissionGate(ABC):

    @abstractmethod
    def can_perform(
        self,
        user: Dict[str, Any],
        resource: str,
        action: str,
        scope: Optional[Dict[str, Any]] = None
    ) -> bool: ...


def ensure_permitted(
    gate: PermissionGate,
    user: Dict[str, Any],
    resource: str,
    action: str,
    scope: Optional[Dict[str, Any]] = None
) -> None:
    """Raise PermissionDeniedError unless the gate allows the action."""
    if not gate.can_perform(user, resource, action, scope or {}):
        logger.warning(
            f"[ACCESS] Denied {action} on {resource} for user:{user.get('user_id')} "
            f"role:{user.get('role')}"
        )
        raise PermissionDeniedError(resource, action, user.get("user_id"))
