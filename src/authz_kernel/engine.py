# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/engine.py

Project: authz-kernel
Package: authz_kernel

Description:
    Decision engine. Answers "may this user perform this action on this
    resource" (``check``) and "does this user hold this role on this resource"
    (``check_role``) by evaluating the schema's role conditions, which may
    themselves call back into the engine for a related resource.

Overview
--------
- Cache first: every terminal result, denials included, is memoized in the
  ``DecisionCache`` for the configured TTL.
- Unknown resource types, actions and roles are ordinary denied results.
- Roles granting the requested action are evaluated strictly in declared
  order; the first condition returning true wins and later roles never run.
- A condition that raises becomes ``ConditionEvaluationError``. Faults are
  never cached, so a transient outage cannot turn into a durable denial.
- Recursive checks carry the chain of in-progress keys in a context
  variable. A key that reappears raises ``CyclicPolicyError``, a chain longer
  than ``max_depth`` raises ``PolicyDepthExceededError``.
- Concurrent identical top-level misses share one evaluation. Nested calls
  never wait on another task's evaluation, so tasks cannot deadlock on each
  other.

"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextvars import ContextVar
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from opentelemetry import trace

from . import metrics
from .cache import CHECK_KIND, ROLE_KIND, DecisionCache, check_key, role_key
from .config import EngineSettings
from .exceptions import (
    AuthzError,
    ConditionEvaluationError,
    CyclicPolicyError,
    PolicyDepthExceededError,
)
from .models import (
    DEFAULT_OPTIONS,
    BatchRequest,
    CheckOptions,
    CheckRequest,
    CheckResult,
    ResourceInfo,
    Role,
    RoleCheckRequest,
    RoleInfo,
)
from .schema import Schema

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UNKNOWN_RESOURCE_TYPE = "Unknown resource type"
UNKNOWN_ACTION = "Unknown action"
UNKNOWN_ROLE = "Unknown role"

# Metric label for resource types the schema does not declare.
UNKNOWN_TYPE_LABEL = "unknown"

_CALL_CHAIN: ContextVar[Tuple[str, ...]] = ContextVar("authz_call_chain", default=())

Evaluation = Callable[[], Awaitable[CheckResult]]


def _consume_exception(future: "asyncio.Future[CheckResult]") -> None:
    # Marks the exception as retrieved when no other task joined the evaluation.
    if not future.cancelled():
        future.exception()


class PolicyEngine:
    """Relationship-aware RBAC decision engine over a ``Schema``."""

    def __init__(
        self,
        schema: Schema,
        settings: Optional[EngineSettings] = None,
        *,
        caching_enabled: Optional[bool] = None,
        cache: Optional[DecisionCache] = None,
    ) -> None:
        settings = settings or EngineSettings()
        if caching_enabled is not None:
            settings = settings.model_copy(update={"caching_enabled": caching_enabled})
        self.schema = schema
        self.settings = settings
        self._cache = cache if cache is not None else DecisionCache(
            ttl_seconds=settings.cache_ttl_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
        )
        self._inflight: Dict[str, "asyncio.Future[CheckResult]"] = {}

    @property
    def cache(self) -> DecisionCache:
        return self._cache

    @property
    def caching_enabled(self) -> bool:
        return self.settings.caching_enabled

    # --- Lifecycle ---

    async def start(self) -> None:
        if self.caching_enabled:
            self._cache.start()

    async def close(self) -> None:
        await self._cache.close()

    async def __aenter__(self) -> "PolicyEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Decisions ---

    async def check(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        options: Optional[CheckOptions] = None,
    ) -> CheckResult:
        """Decide whether ``user_id`` may perform ``action`` on a resource."""
        options = options or DEFAULT_OPTIONS
        key = check_key(user_id, action, resource_type, resource_id)
        result, cached = await self._decide(
            CHECK_KIND,
            key,
            lambda: self._evaluate_check(user_id, action, resource_type, resource_id),
        )
        metrics.DECISIONS.labels(CHECK_KIND, self._type_label(resource_type), str(result.allowed).lower()).inc()
        if options.debug or self.settings.debug:
            self._trace(
                CHECK_KIND,
                result,
                cached,
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return result if options.include_details else result.without_detail()

    async def check_role(
        self,
        resource_type: str,
        role_name: str,
        user_id: str,
        resource_id: str,
        options: Optional[CheckOptions] = None,
    ) -> CheckResult:
        """Decide whether ``user_id`` holds ``role_name`` on a resource."""
        options = options or DEFAULT_OPTIONS
        key = role_key(resource_type, role_name, user_id, resource_id)
        result, cached = await self._decide(
            ROLE_KIND,
            key,
            lambda: self._evaluate_role(resource_type, role_name, user_id, resource_id),
        )
        metrics.DECISIONS.labels(ROLE_KIND, self._type_label(resource_type), str(result.allowed).lower()).inc()
        if options.debug or self.settings.debug:
            self._trace(
                ROLE_KIND,
                result,
                cached,
                user_id=user_id,
                role=role_name,
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return result if options.include_details else result.without_detail()

    async def is_allowed(self, user_id: str, action: str, resource_type: str, resource_id: str) -> bool:
        return (await self.check(user_id, action, resource_type, resource_id)).allowed

    async def has_role(self, resource_type: str, role_name: str, user_id: str, resource_id: str) -> bool:
        return (await self.check_role(resource_type, role_name, user_id, resource_id)).allowed

    async def batch_check(
        self,
        requests: Mapping[str, BatchRequest],
        *,
        options: Optional[CheckOptions] = None,
        return_exceptions: bool = False,
    ) -> Dict[str, Union[CheckResult, BaseException]]:
        """Evaluate named requests concurrently and return results under the same names.

        With ``return_exceptions=False`` the first evaluation fault propagates;
        otherwise faults are returned in place of the failed entries.
        """
        names = list(requests)
        results = await asyncio.gather(
            *(self._dispatch(requests[name], options) for name in names),
            return_exceptions=return_exceptions,
        )
        return dict(zip(names, results))

    async def _dispatch(self, request: BatchRequest, options: Optional[CheckOptions]) -> CheckResult:
        if isinstance(request, CheckRequest):
            return await self.check(
                request.user_id, request.action, request.resource_type, request.resource_id, options
            )
        if isinstance(request, RoleCheckRequest):
            return await self.check_role(
                request.resource_type, request.role_name, request.user_id, request.resource_id, options
            )
        raise TypeError(f"Unsupported batch request: {type(request).__name__}")

    # --- Introspection ---

    def list_resource_types(self) -> List[ResourceInfo]:
        return self.schema.list_resource_types()

    def list_roles(self, resource_type: str) -> List[RoleInfo]:
        return self.schema.list_roles(resource_type)

    def get_resource_actions(self, resource_type: str) -> List[str]:
        return self.schema.get_resource_actions(resource_type)

    def get_role_actions(self, resource_type: str, role_name: str) -> List[str]:
        return self.schema.get_role_actions(resource_type, role_name)

    # --- Resolution pipeline ---

    async def _decide(self, kind: str, key: str, evaluate: Evaluation) -> Tuple[CheckResult, bool]:
        if not self.schema.frozen:
            self.schema.freeze()

        if self.caching_enabled:
            cached = self._cache.get(key)
            if cached is not None:
                metrics.CACHE_LOOKUPS.labels(kind, "hit").inc()
                return cached, True
            metrics.CACHE_LOOKUPS.labels(kind, "miss").inc()

        chain = _CALL_CHAIN.get()
        if key in chain:
            metrics.EVALUATION_ERRORS.labels(kind, "CyclicPolicyError").inc()
            raise CyclicPolicyError(chain + (key,))
        if len(chain) >= self.settings.max_depth:
            metrics.EVALUATION_ERRORS.labels(kind, "PolicyDepthExceededError").inc()
            raise PolicyDepthExceededError(self.settings.max_depth, chain + (key,))

        if chain or not self.settings.deduplicate_inflight:
            return await self._run(key, chain, evaluate), False
        return await self._run_shared(kind, key, evaluate), False

    async def _run(self, key: str, chain: Tuple[str, ...], evaluate: Evaluation) -> CheckResult:
        token = _CALL_CHAIN.set(chain + (key,))
        try:
            result = await evaluate()
        finally:
            _CALL_CHAIN.reset(token)
        if self.caching_enabled:
            self._cache.set(key, result)
        return result

    async def _run_shared(self, kind: str, key: str, evaluate: Evaluation) -> CheckResult:
        pending = self._inflight.get(key)
        if pending is not None:
            metrics.INFLIGHT_JOINS.labels(kind).inc()
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if not pending.cancelled() or (task is not None and task.cancelling()):
                    raise
            # The owning task was cancelled; reuse a cached result or evaluate on our own.
            if self.caching_enabled:
                cached = self._cache.get(key)
                if cached is not None:
                    metrics.CACHE_LOOKUPS.labels(kind, "hit").inc()
                    return cached
            return await self._run_shared(kind, key, evaluate)

        future: "asyncio.Future[CheckResult]" = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._inflight[key] = future
        try:
            result = await self._run(key, (), evaluate)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    async def _evaluate_check(
        self, user_id: str, action: str, resource_type: str, resource_id: str
    ) -> CheckResult:
        definition = self.schema.get(resource_type)
        if definition is None:
            return CheckResult(False, UNKNOWN_RESOURCE_TYPE, detail=resource_type)
        if not definition.has_action(action):
            return CheckResult(False, UNKNOWN_ACTION, detail=f"{resource_type}.{action}")

        with tracer.start_as_current_span("authz.check") as span:
            span.set_attribute("authz.resource_type", resource_type)
            span.set_attribute("authz.action", action)
            for role in definition.roles_for_action(action):
                if await self._call_condition(CHECK_KIND, resource_type, role, user_id, resource_id):
                    span.set_attribute("authz.role", role.name)
                    span.set_attribute("authz.allowed", True)
                    return CheckResult(
                        True,
                        f"Action '{action}' allowed on {resource_type}",
                        detail=f"{resource_type}.{role.name}",
                    )
            span.set_attribute("authz.allowed", False)
        return CheckResult(
            False,
            f"Action '{action}' denied on {resource_type}",
            detail=f"{resource_type}.{action}",
        )

    async def _evaluate_role(
        self, resource_type: str, role_name: str, user_id: str, resource_id: str
    ) -> CheckResult:
        definition = self.schema.get(resource_type)
        if definition is None:
            return CheckResult(False, UNKNOWN_RESOURCE_TYPE, detail=resource_type)
        role = definition.get_role(role_name)
        if role is None:
            return CheckResult(False, UNKNOWN_ROLE, detail=f"{resource_type}.{role_name}")

        with tracer.start_as_current_span("authz.check_role") as span:
            span.set_attribute("authz.resource_type", resource_type)
            span.set_attribute("authz.role", role_name)
            granted = await self._call_condition(ROLE_KIND, resource_type, role, user_id, resource_id)
            span.set_attribute("authz.allowed", granted)
        if granted:
            message = f"Role '{role_name}' granted on {resource_type}"
        else:
            message = f"Role '{role_name}' not granted on {resource_type}"
        return CheckResult(granted, message, detail=f"{resource_type}.{role_name}")

    async def _call_condition(
        self, kind: str, resource_type: str, role: Role, user_id: str, resource_id: str
    ) -> bool:
        try:
            outcome = role.condition(user_id, resource_id)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except AuthzError:
            # Faults from nested checks already carry their own context.
            raise
        except Exception as exc:
            metrics.EVALUATION_ERRORS.labels(kind, "ConditionEvaluationError").inc()
            logger.warning(
                "Condition %s.%s failed for user=%s resource=%s: %s",
                resource_type,
                role.name,
                user_id,
                resource_id,
                exc,
            )
            raise ConditionEvaluationError(resource_type, role.name, user_id, resource_id) from exc
        return bool(outcome)

    def _type_label(self, resource_type: str) -> str:
        return resource_type if self.schema.get(resource_type) is not None else UNKNOWN_TYPE_LABEL

    def _trace(self, kind: str, result: CheckResult, cached: bool, **fields: str) -> None:
        payload = dict(fields, kind=kind, allowed=result.allowed, cached=cached, detail=result.detail)
        logger.info(
            "authz %s %s -> %s%s",
            kind,
            " ".join(f"{name}={value}" for name, value in fields.items()),
            "allow" if result.allowed else "deny",
            " (cached)" if cached else "",
            extra={"authz": payload},
        )


__all__ = ["PolicyEngine", "UNKNOWN_ACTION", "UNKNOWN_RESOURCE_TYPE", "UNKNOWN_ROLE", "UNKNOWN_TYPE_LABEL"]
