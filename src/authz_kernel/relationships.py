# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/relationships.py

Project: authz-kernel
Package: authz_kernel

Description:
    Storage-agnostic factories for common condition predicates. Each factory
    takes async lookup callables (typically thin wrappers over a repository)
    and returns a ``ConditionPredicate`` ready for ``role_conditions``.

    - ``owned_by``: the resource's owner id equals the user.
    - ``member_with_role``: the user's membership role on the resource is one
      of the given roles.
    - ``global_role``: the user's account-wide role is one of the given roles.
    - ``is_self``: the resource is the user.
    - ``inherit_role``: the user holds a role on the resource's parent, checked
      through the engine so the parent decision is cached as well.
    - ``any_of`` / ``all_of``: short-circuit combinators in declared order.

"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .models import ConditionPredicate

OwnerLookup = Callable[[str], Awaitable[Optional[str]]]
MemberRoleLookup = Callable[[str, str], Awaitable[Optional[str]]]
UserRoleLookup = Callable[[str], Awaitable[Optional[str]]]
ExistsLookup = Callable[[str], Awaitable[bool]]
RoleChecker = Callable[[str, str, str, str], Awaitable[bool]]


@dataclass(frozen=True)
class ParentRef:
    resource_type: str
    resource_id: str


ParentLookup = Callable[[str], Awaitable[Optional[ParentRef]]]


async def _evaluate(condition: ConditionPredicate, user_id: str, resource_id: str) -> bool:
    outcome = condition(user_id, resource_id)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return bool(outcome)


def owned_by(lookup_owner: OwnerLookup) -> ConditionPredicate:
    async def condition(user_id: str, resource_id: str) -> bool:
        owner_id = await lookup_owner(resource_id)
        return owner_id is not None and owner_id == user_id

    return condition


def member_with_role(lookup_member_role: MemberRoleLookup, *roles: str) -> ConditionPredicate:
    """``lookup_member_role(resource_id, user_id)`` returns the membership role or ``None``."""
    if not roles:
        raise ValueError("member_with_role needs at least one role.")
    accepted = frozenset(roles)

    async def condition(user_id: str, resource_id: str) -> bool:
        role = await lookup_member_role(resource_id, user_id)
        return role is not None and role in accepted

    return condition


def global_role(lookup_user_role: UserRoleLookup, *roles: str) -> ConditionPredicate:
    if not roles:
        raise ValueError("global_role needs at least one role.")
    accepted = frozenset(roles)

    async def condition(user_id: str, resource_id: str) -> bool:
        role = await lookup_user_role(user_id)
        return role is not None and role in accepted

    return condition


def is_self(user_exists: Optional[ExistsLookup] = None) -> ConditionPredicate:
    async def condition(user_id: str, resource_id: str) -> bool:
        if user_id != resource_id:
            return False
        if user_exists is None:
            return True
        return bool(await user_exists(user_id))

    return condition


def inherit_role(checker: RoleChecker, lookup_parent: ParentLookup, role_name: str) -> ConditionPredicate:
    """Grant the role when the user holds ``role_name`` on the resource's parent.

    ``checker`` has the signature of ``PolicyEngine.has_role`` /
    ``RoleSet.has_role``: ``(resource_type, role_name, user_id, resource_id)``.
    """

    async def condition(user_id: str, resource_id: str) -> bool:
        parent = await lookup_parent(resource_id)
        if parent is None:
            return False
        return bool(await checker(parent.resource_type, role_name, user_id, parent.resource_id))

    return condition


def any_of(*conditions: ConditionPredicate) -> ConditionPredicate:
    async def condition(user_id: str, resource_id: str) -> bool:
        for candidate in conditions:
            if await _evaluate(candidate, user_id, resource_id):
                return True
        return False

    return condition


def all_of(*conditions: ConditionPredicate) -> ConditionPredicate:
    async def condition(user_id: str, resource_id: str) -> bool:
        for candidate in conditions:
            if not await _evaluate(candidate, user_id, resource_id):
                return False
        return True

    return condition


__all__ = [
    "ParentRef",
    "all_of",
    "any_of",
    "global_role",
    "inherit_role",
    "is_self",
    "member_with_role",
    "owned_by",
]
