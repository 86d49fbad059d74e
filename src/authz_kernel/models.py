"""
Value types shared by the schema, the engine and the adapters.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

ConditionPredicate = Callable[[str, str], Union[Awaitable[bool], bool]]


@dataclass(frozen=True)
class Role:
    name: str
    actions: Tuple[str, ...]
    condition: ConditionPredicate = field(compare=False, repr=False)

    def grants(self, action: str) -> bool:
        return action in self.actions


@dataclass(frozen=True)
class ResourceDefinition:
    """Actions and ordered roles of one resource type."""

    name: str
    actions: Tuple[str, ...]
    roles: Tuple[Role, ...] = ()

    def has_action(self, action: str) -> bool:
        return action in self.actions

    def get_role(self, role_name: str) -> Optional[Role]:
        for role in self.roles:
            if role.name == role_name:
                return role
        return None

    def roles_for_action(self, action: str) -> List[Role]:
        # Declared order is evaluation order.
        return [role for role in self.roles if role.grants(action)]


@dataclass(frozen=True)
class CheckResult:
    allowed: bool
    message: str
    detail: Optional[str] = None

    def without_detail(self) -> "CheckResult":
        if self.detail is None:
            return self
        return replace(self, detail=None)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"allowed": self.allowed, "message": self.message}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(frozen=True)
class CheckOptions:
    debug: bool = False
    include_details: bool = False


DEFAULT_OPTIONS = CheckOptions()


@dataclass(frozen=True)
class CheckRequest:
    user_id: str
    action: str
    resource_type: str
    resource_id: str


@dataclass(frozen=True)
class RoleCheckRequest:
    resource_type: str
    role_name: str
    user_id: str
    resource_id: str


BatchRequest = Union[CheckRequest, RoleCheckRequest]


@dataclass(frozen=True)
class RoleInfo:
    """Public view of a role; the condition is never exposed."""

    name: str
    actions: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "actions": list(self.actions)}


@dataclass(frozen=True)
class ResourceInfo:
    name: str
    actions: Tuple[str, ...]
    roles: Tuple[RoleInfo, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "actions": list(self.actions),
            "roles": [role.to_dict() for role in self.roles],
        }


__all__ = [
    "BatchRequest",
    "CheckOptions",
    "CheckRequest",
    "CheckResult",
    "ConditionPredicate",
    "DEFAULT_OPTIONS",
    "ResourceDefinition",
    "ResourceInfo",
    "Role",
    "RoleCheckRequest",
    "RoleInfo",
]
