"""Convenience exports for the authorization kernel.

The HTTP adapters live in ``authz_kernel.api`` and ``authz_kernel.client``
and are imported explicitly.
"""

from .builder import AccessControl, RoleRef, RoleSet, create_access_control
from .cache import DecisionCache
from .config import EngineSettings
from .engine import PolicyEngine
from .exceptions import (
    AccessDeniedError,
    AuthzError,
    ConditionEvaluationError,
    CyclicPolicyError,
    EngineNotBoundError,
    EvaluationError,
    PolicyDepthExceededError,
    ResourceTypeNotFoundError,
    RoleNotFoundError,
    SchemaError,
    UnknownResourceTypeError,
    UnknownRoleError,
)
from .guards import require_permission, require_role
from .models import (
    CheckOptions,
    CheckRequest,
    CheckResult,
    ConditionPredicate,
    ResourceInfo,
    Role,
    RoleCheckRequest,
    RoleInfo,
)
from .relationships import ParentRef, all_of, any_of, global_role, inherit_role, is_self, member_with_role, owned_by
from .schema import Schema

__version__ = "0.1.0"

__all__ = [
    "AccessControl",
    "RoleRef",
    "RoleSet",
    "create_access_control",
    "DecisionCache",
    "EngineSettings",
    "PolicyEngine",
    "AccessDeniedError",
    "AuthzError",
    "ConditionEvaluationError",
    "CyclicPolicyError",
    "EngineNotBoundError",
    "EvaluationError",
    "PolicyDepthExceededError",
    "ResourceTypeNotFoundError",
    "RoleNotFoundError",
    "SchemaError",
    "UnknownResourceTypeError",
    "UnknownRoleError",
    "require_permission",
    "require_role",
    "CheckOptions",
    "CheckRequest",
    "CheckResult",
    "ConditionPredicate",
    "ResourceInfo",
    "Role",
    "RoleCheckRequest",
    "RoleInfo",
    "ParentRef",
    "all_of",
    "any_of",
    "global_role",
    "inherit_role",
    "is_self",
    "member_with_role",
    "owned_by",
    "Schema",
]
