# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/builder.py

Project: authz-kernel
Package: authz_kernel

Description:
    Three-step schema builder and typed role proxy.

    1. ``create_access_control(resources)`` declares resource types and their
       actions.
    2. ``.resource_roles(roles)`` groups actions into ordered, named roles.
    3. ``.role_conditions(conditions)`` attaches one predicate per role and
       returns a registered ``Schema``.

    Every step validates eagerly and raises ``SchemaError`` at definition
    time. The ``RoleSet`` returned by step 2 doubles as a typed proxy for
    role checks once an engine is bound to it; parametrize it with
    ``Literal`` aliases to let a type checker reject undeclared names.

Usage:
    >>> ac = create_access_control({"doc": ["read", "edit"]})
    >>> roles = ac.resource_roles({"doc": [{"name": "owner", "actions": ["read", "edit"]}]})
    >>> schema = roles.role_conditions({"doc": {"owner": is_owner}})
    >>> engine = PolicyEngine(schema)
    >>> roles.bind(engine)
    >>> await roles.has_role("doc", "owner", "u1", "d1")

"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Generic, Mapping, Optional, Sequence, Tuple, TypeVar

from .exceptions import EngineNotBoundError, SchemaError, UnknownResourceTypeError, UnknownRoleError
from .models import CheckOptions, CheckResult, ConditionPredicate, Role
from .schema import Schema

if TYPE_CHECKING:
    from .engine import PolicyEngine

logger = logging.getLogger(__name__)

RT = TypeVar("RT", bound=str)
RN = TypeVar("RN", bound=str)

RoleSpec = Mapping[str, object]


class AccessControl:
    """First builder stage: resource types and their actions."""

    def __init__(self, resources: Mapping[str, Sequence[str]]) -> None:
        normalized: Dict[str, Tuple[str, ...]] = {}
        for resource_type, actions in resources.items():
            action_list = tuple(actions)
            if not action_list:
                raise SchemaError(f"Resource '{resource_type}' must declare at least one action.", resource_type)
            if len(set(action_list)) != len(action_list):
                raise SchemaError(f"Resource '{resource_type}' declares duplicate actions.", resource_type)
            normalized[resource_type] = action_list
        self._resources = normalized

    @property
    def resources(self) -> Dict[str, Tuple[str, ...]]:
        return dict(self._resources)

    def resource_roles(self, roles: Mapping[str, Sequence[RoleSpec]]) -> "RoleSet[str, str]":
        """Group actions into named roles, in evaluation order.

        Raises:
            SchemaError: for an unknown resource type, an action the resource
                type does not declare, a role without actions or a role name
                used twice on one resource type.
        """
        normalized: Dict[str, Tuple[Tuple[str, Tuple[str, ...]], ...]] = {}
        for resource_type, role_list in roles.items():
            if resource_type not in self._resources:
                raise SchemaError(f"Unknown resource '{resource_type}' in roles", resource_type)
            allowed = set(self._resources[resource_type])
            entries = []
            seen = set()
            for spec in role_list:
                name = spec["name"]
                actions = tuple(spec["actions"])  # type: ignore[arg-type]
                if name in seen:
                    raise SchemaError(f"Role '{name}' is declared twice for resource '{resource_type}'", resource_type)
                if not actions:
                    raise SchemaError(f"Role '{name}' for resource '{resource_type}' grants no actions", resource_type)
                for action in actions:
                    if action not in allowed:
                        raise SchemaError(f"Unknown action '{action}' for resource '{resource_type}'", resource_type)
                seen.add(name)
                entries.append((name, actions))
            normalized[resource_type] = tuple(entries)
        return RoleSet(self._resources, normalized)


def create_access_control(resources: Mapping[str, Sequence[str]]) -> AccessControl:
    return AccessControl(resources)


@dataclass(frozen=True)
class RoleRef:
    """A validated (resource type, role) pair bound to a ``RoleSet``."""

    resource_type: str
    role_name: str
    role_set: "RoleSet[str, str]"

    async def check(self, user_id: str, resource_id: str) -> bool:
        return await self.role_set.has_role(self.resource_type, self.role_name, user_id, resource_id)

    def __str__(self) -> str:
        return f"{self.resource_type}.{self.role_name}"


class RoleSet(Generic[RT, RN]):
    """Declared roles per resource type; also the typed proxy for role checks.

    Holds no decision state of its own: every check is delegated to the bound
    engine, which owns the cache.
    """

    def __init__(
        self,
        resources: Mapping[str, Tuple[str, ...]],
        roles: Mapping[str, Tuple[Tuple[str, Tuple[str, ...]], ...]],
    ) -> None:
        self._resources = dict(resources)
        self._roles = dict(roles)
        self._engine: Optional["PolicyEngine"] = None

    def role_names(self, resource_type: str) -> Tuple[str, ...]:
        return tuple(name for name, _ in self._roles.get(resource_type, ()))

    def role_conditions(
        self,
        conditions: Mapping[str, Mapping[str, ConditionPredicate]],
        schema: Optional[Schema] = None,
    ) -> Schema:
        """Attach a predicate to every declared role and register the result.

        Role names and predicates must match exactly per resource type: a
        role without a predicate is as much an error as a predicate for an
        undeclared role.
        """
        for resource_type in conditions:
            if resource_type not in self._resources:
                raise SchemaError(f"Unknown resource '{resource_type}' in conditions", resource_type)

        for resource_type in self._resources:
            declared = self.role_names(resource_type)
            supplied = conditions.get(resource_type, {})
            extra = [name for name in supplied if name not in declared]
            if extra:
                raise SchemaError(
                    f"Unknown role '{extra[0]}' for resource '{resource_type}' in conditions", resource_type
                )
            missing = [name for name in declared if name not in supplied]
            if missing:
                raise SchemaError(
                    f"Missing condition for role '{missing[0]}' on resource '{resource_type}'", resource_type
                )

        if schema is None:
            schema = Schema()
        for resource_type, actions in self._resources.items():
            supplied = conditions.get(resource_type, {})
            schema.register_resource_type(
                resource_type,
                actions,
                [Role(name, role_actions, supplied[name]) for name, role_actions in self._roles.get(resource_type, ())],
            )
        logger.debug("Built schema with resource types: %s", ", ".join(self._resources))
        return schema

    # --- Typed proxy ---

    def bind(self, engine: "PolicyEngine") -> "RoleSet[RT, RN]":
        self._engine = engine
        return self

    @property
    def engine(self) -> "PolicyEngine":
        if self._engine is None:
            raise EngineNotBoundError()
        return self._engine

    def _validate(self, resource_type: str, role_name: str) -> None:
        if resource_type not in self._resources:
            raise UnknownResourceTypeError(resource_type)
        if role_name not in self.role_names(resource_type):
            raise UnknownRoleError(resource_type, role_name)

    def role(self, resource_type: RT, role_name: RN) -> RoleRef:
        self._validate(resource_type, role_name)
        return RoleRef(resource_type, role_name, self)  # type: ignore[arg-type]

    async def check_role(
        self,
        resource_type: RT,
        role_name: RN,
        user_id: str,
        resource_id: str,
        options: Optional[CheckOptions] = None,
    ) -> CheckResult:
        self._validate(resource_type, role_name)
        return await self.engine.check_role(resource_type, role_name, user_id, resource_id, options)

    async def has_role(self, resource_type: RT, role_name: RN, user_id: str, resource_id: str) -> bool:
        return (await self.check_role(resource_type, role_name, user_id, resource_id)).allowed


__all__ = ["AccessControl", "RoleRef", "RoleSet", "create_access_control"]
