"""
Enforcement helpers: turn a denied decision into ``AccessDeniedError``.
"""

from __future__ import annotations

import logging

from .engine import PolicyEngine
from .exceptions import AccessDeniedError
from .models import CheckResult

logger = logging.getLogger(__name__)


async def require_permission(
    engine: PolicyEngine, user_id: str, action: str, resource_type: str, resource_id: str
) -> CheckResult:
    result = await engine.check(user_id, action, resource_type, resource_id)
    if not result.allowed:
        logger.debug("Denied %s on %s:%s for %s", action, resource_type, resource_id, user_id)
        raise AccessDeniedError(f"Insufficient permissions: {result.message}")
    return result


async def require_role(
    engine: PolicyEngine, resource_type: str, role_name: str, user_id: str, resource_id: str
) -> CheckResult:
    result = await engine.check_role(resource_type, role_name, user_id, resource_id)
    if not result.allowed:
        logger.debug("Role %s missing on %s:%s for %s", role_name, resource_type, resource_id, user_id)
        raise AccessDeniedError(f"Insufficient role: {result.message}")
    return result


__all__ = ["require_permission", "require_role"]
