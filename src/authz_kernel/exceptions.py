# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/exceptions.py

Project: authz-kernel
Package: authz_kernel

Description:
    Exception taxonomy for the authorization kernel. Policy-domain denials are
    never exceptions (they are ordinary ``CheckResult`` values); what remains
    here are configuration faults raised at registration time, evaluation
    faults raised while a condition runs, and lookup errors for introspection.
    Every error renders as an RFC 7807 Problem Details dictionary.

"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional, Sequence


class AuthzError(Exception):
    """Base exception for all errors raised by the authorization kernel."""

    def __init__(
        self, message: str, status_code: int = 500, error_code: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.error_id = f"err_{secrets.token_hex(8)}"
        self.timestamp = time.time()

    def to_problem_detail(self) -> Dict[str, Any]:
        """Generates an RFC 7807-compliant Problem Details dictionary."""
        return {
            "type": f"urn:authz-kernel:error:{self.error_code}",
            "title": self.error_code,
            "status": self.status_code,
            "detail": self.message,
            "instance": self.error_id,
        }

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message} (ID: {self.error_id})"


# --- Configuration faults ---

class SchemaError(AuthzError):
    """Raised when a schema invariant is violated at registration time."""

    def __init__(self, message: str, resource_type: Optional[str] = None) -> None:
        super().__init__(message, status_code=500, error_code="SchemaError")
        self.resource_type = resource_type

    def to_problem_detail(self) -> Dict[str, Any]:
        problem = super().to_problem_detail()
        if self.resource_type:
            problem["resource_type"] = self.resource_type
        return problem


class EngineNotBoundError(AuthzError):
    """Raised when a role proxy is used before an engine was bound to it."""

    def __init__(self) -> None:
        super().__init__(
            "Policy engine not initialized: bind an engine first.",
            status_code=500,
            error_code="EngineNotBoundError",
        )


# --- Introspection lookups ---

class ResourceTypeNotFoundError(KeyError, AuthzError):
    """Raised when introspection is asked about an unregistered resource type."""

    def __init__(self, resource_type: str) -> None:
        message = f"Resource type '{resource_type}' is not registered."
        # KeyError comes first in the MRO, so AuthzError is initialised explicitly.
        AuthzError.__init__(self, message, status_code=404, error_code="ResourceTypeNotFoundError")
        self.resource_type = resource_type

    __str__ = AuthzError.__str__


class RoleNotFoundError(KeyError, AuthzError):
    """Raised when introspection is asked about an undeclared role."""

    def __init__(self, resource_type: str, role_name: str) -> None:
        message = f"Role '{role_name}' is not declared for resource type '{resource_type}'."
        AuthzError.__init__(self, message, status_code=404, error_code="RoleNotFoundError")
        self.resource_type = resource_type
        self.role_name = role_name

    __str__ = AuthzError.__str__


# --- Typed proxy misuse ---

class UnknownResourceTypeError(AuthzError):
    """Raised by the typed role proxy for an undeclared resource type."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(
            f"Unknown resource '{resource_type}'",
            status_code=400,
            error_code="UnknownResourceTypeError",
        )
        self.resource_type = resource_type


class UnknownRoleError(AuthzError):
    """Raised by the typed role proxy for a role not declared on a resource type."""

    def __init__(self, resource_type: str, role_name: str) -> None:
        super().__init__(
            f"Unknown role '{role_name}' for resource '{resource_type}'",
            status_code=400,
            error_code="UnknownRoleError",
        )
        self.resource_type = resource_type
        self.role_name = role_name


# --- Evaluation faults (never cached) ---

class EvaluationError(AuthzError):
    """The engine could not determine access; callers should answer 5xx, not 403."""

    def __init__(self, message: str, error_code: Optional[str] = None) -> None:
        super().__init__(message, status_code=503, error_code=error_code or "EvaluationError")


class ConditionEvaluationError(EvaluationError):
    """A condition predicate raised while deciding a role."""

    def __init__(self, resource_type: str, role_name: str, user_id: str, resource_id: str) -> None:
        super().__init__(
            f"Condition for role '{role_name}' on '{resource_type}' failed "
            f"(user={user_id!r}, resource={resource_id!r}).",
            error_code="ConditionEvaluationError",
        )
        self.resource_type = resource_type
        self.role_name = role_name
        self.user_id = user_id
        self.resource_id = resource_id


class CyclicPolicyError(EvaluationError):
    """A nested check re-entered a decision that is still being evaluated."""

    def __init__(self, chain: Sequence[str]) -> None:
        self.chain = tuple(chain)
        super().__init__(
            "Cyclic policy: " + " -> ".join(self.chain),
            error_code="CyclicPolicyError",
        )


class PolicyDepthExceededError(EvaluationError):
    """Nested checks went deeper than the configured maximum."""

    def __init__(self, max_depth: int, chain: Sequence[str]) -> None:
        self.max_depth = max_depth
        self.chain = tuple(chain)
        super().__init__(
            f"Policy evaluation exceeded max depth {max_depth}.",
            error_code="PolicyDepthExceededError",
        )


# --- Enforcement ---

class AccessDeniedError(PermissionError, AuthzError):
    """Raised by guards when a decision denies access."""

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        AuthzError.__init__(self, message, status_code=403, error_code="AccessDeniedError")
        self.detail = detail
