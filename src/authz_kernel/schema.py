# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/schema.py

Project: authz-kernel
Package: authz_kernel

Description:
    Schema model: per resource type, the ordered set of valid actions and the
    ordered list of roles. Every invariant is checked when a resource type is
    registered, so an engine can never start on an inconsistent schema.
    Once an engine has served a check the schema is frozen and read-only,
    which lets any number of concurrent checks read it without locking.

"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional

from .exceptions import ResourceTypeNotFoundError, RoleNotFoundError, SchemaError
from .models import ResourceDefinition, ResourceInfo, Role, RoleInfo

logger = logging.getLogger(__name__)


def _validate_name(kind: str, name: str, resource_type: Optional[str] = None) -> None:
    if not isinstance(name, str) or not name or name.strip() != name:
        raise SchemaError(f"{kind} name must be a non-empty string without surrounding whitespace.", resource_type)


class Schema:
    def __init__(self) -> None:
        self._resources: Dict[str, ResourceDefinition] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        with self._lock:
            if not self._frozen:
                self._frozen = True
                logger.debug("Schema frozen with %d resource types", len(self._resources))

    def register_resource_type(self, name: str, actions: Iterable[str], roles: Iterable[Role] = ()) -> ResourceDefinition:
        """Validate and register a resource type.

        Raises:
            SchemaError: if the name is invalid, if the action list is empty or
                has duplicates, if two roles share a name, if a role has no
                actions, repeats an action or grants an action the resource
                type does not declare, or if the schema is frozen.

        Registering a name again before the schema is frozen replaces the
        earlier definition.
        """
        _validate_name("Resource type", name)
        action_list = list(actions)
        if not action_list:
            raise SchemaError(f"Resource type '{name}' must declare at least one action.", name)
        for action in action_list:
            _validate_name("Action", action, name)
        if len(set(action_list)) != len(action_list):
            raise SchemaError(f"Resource type '{name}' declares duplicate actions.", name)
        declared = set(action_list)

        role_list: List[Role] = []
        seen_roles = set()
        for role in roles:
            _validate_name("Role", role.name, name)
            if role.name in seen_roles:
                raise SchemaError(f"Role '{role.name}' is declared twice for '{name}'.", name)
            role_actions = tuple(role.actions)
            if not role_actions:
                raise SchemaError(f"Role '{role.name}' on '{name}' grants no actions.", name)
            if len(set(role_actions)) != len(role_actions):
                raise SchemaError(f"Role '{role.name}' on '{name}' grants duplicate actions.", name)
            unknown = [action for action in role_actions if action not in declared]
            if unknown:
                raise SchemaError(
                    f"Role '{role.name}' on '{name}' grants undeclared actions: {', '.join(unknown)}.",
                    name,
                )
            if not callable(role.condition):
                raise SchemaError(f"Role '{role.name}' on '{name}' has a non-callable condition.", name)
            seen_roles.add(role.name)
            role_list.append(Role(role.name, role_actions, role.condition))

        definition = ResourceDefinition(name=name, actions=tuple(action_list), roles=tuple(role_list))
        with self._lock:
            if self._frozen:
                raise SchemaError(f"Schema is frozen; cannot register '{name}' after checks were served.", name)
            replaced = name in self._resources
            self._resources[name] = definition
        if replaced:
            logger.debug("Replaced resource type %s before first use", name)
        logger.debug("Registered resource type %s (%d actions, %d roles)", name, len(action_list), len(role_list))
        return definition

    def get(self, resource_type: str) -> Optional[ResourceDefinition]:
        return self._resources.get(resource_type)

    def require(self, resource_type: str) -> ResourceDefinition:
        definition = self._resources.get(resource_type)
        if definition is None:
            raise ResourceTypeNotFoundError(resource_type)
        return definition

    def names(self) -> List[str]:
        return list(self._resources.keys())

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    # --- Introspection ---

    def list_resource_types(self) -> List[ResourceInfo]:
        return [
            ResourceInfo(
                name=definition.name,
                actions=definition.actions,
                roles=tuple(RoleInfo(role.name, role.actions) for role in definition.roles),
            )
            for definition in self._resources.values()
        ]

    def list_roles(self, resource_type: str) -> List[RoleInfo]:
        definition = self.require(resource_type)
        return [RoleInfo(role.name, role.actions) for role in definition.roles]

    def get_resource_actions(self, resource_type: str) -> List[str]:
        return list(self.require(resource_type).actions)

    def get_role_actions(self, resource_type: str, role_name: str) -> List[str]:
        role = self.require(resource_type).get_role(role_name)
        if role is None:
            raise RoleNotFoundError(resource_type, role_name)
        return list(role.actions)


__all__ = ["Schema"]
