# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/api.py

Project: authz-kernel
Package: authz_kernel

Description:
    Optional HTTP surface over a ``PolicyEngine`` (FastAPI).

    Routes (prefix ``/authz``):
    - ``POST /check``: decision for the calling user.
    - ``POST /check-detailed``: same, with evaluation options.
    - ``POST /check-role``: role decision for the calling user.
    - ``POST /batch``: named checks evaluated concurrently.
    - ``GET /policies``: resource types, actions and roles (no conditions).
    - ``GET /policies/{resource_type}/roles``: roles of one resource type.
    - ``GET /ping``: liveness.

    The kernel does no authentication: the caller passes a ``current_user``
    dependency that resolves the user id. Evaluation faults answer 503 with an
    RFC 7807 body, never 403, so an outage is not mistaken for a denial.
    JSON fields are camelCase on the wire; snake_case is accepted too.

"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .engine import PolicyEngine
from .exceptions import AuthzError, EvaluationError, ResourceTypeNotFoundError
from .models import CheckOptions, CheckRequest, CheckResult, RoleCheckRequest

logger = logging.getLogger(__name__)

CurrentUser = Callable[..., Union[str, Awaitable[str]]]


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckBody(_Payload):
    action: str = Field(..., min_length=1, description="Action to check")
    resource_type: str = Field(..., min_length=1, description="Resource type")
    resource_id: str = Field(..., description="Resource instance id")


class OptionsBody(_Payload):
    debug: bool = Field(False, description="Emit a structured trace log for the decision")
    include_details: bool = Field(False, description="Add the deciding role or action to the result")


class DetailedCheckBody(CheckBody):
    options: OptionsBody = Field(default_factory=OptionsBody)


class RoleCheckBody(_Payload):
    resource_type: str = Field(..., min_length=1)
    role_name: str = Field(..., min_length=1)
    resource_id: str


class BatchEntry(_Payload):
    """Either an action check (``action``) or a role check (``roleName``)."""

    resource_type: str = Field(..., min_length=1)
    resource_id: str
    action: Optional[str] = None
    role_name: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "BatchEntry":
        if (self.action is None) == (self.role_name is None):
            raise ValueError("Exactly one of 'action' or 'roleName' must be set.")
        return self


class BatchBody(_Payload):
    checks: Dict[str, BatchEntry]
    options: OptionsBody = Field(default_factory=OptionsBody)


class Decision(_Payload):
    allowed: bool
    message: str
    detail: Optional[str] = None

    @classmethod
    def from_result(cls, result: CheckResult) -> "Decision":
        return cls(allowed=result.allowed, message=result.message, detail=result.detail)


class BatchResponse(_Payload):
    results: Dict[str, Decision]


def _options(body: OptionsBody) -> CheckOptions:
    return CheckOptions(debug=body.debug, include_details=body.include_details)


def _unavailable(exc: EvaluationError) -> HTTPException:
    logger.error("Authorization evaluation failed: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=exc.to_problem_detail())


def build_router(engine: PolicyEngine, current_user: CurrentUser) -> APIRouter:
    router = APIRouter(prefix="/authz", tags=["authz"])

    @router.post("/check", response_model=Decision, response_model_exclude_none=True)
    async def check(body: CheckBody, user_id: str = Depends(current_user)) -> Decision:
        try:
            result = await engine.check(user_id, body.action, body.resource_type, body.resource_id)
        except EvaluationError as exc:
            raise _unavailable(exc) from exc
        return Decision.from_result(result)

    @router.post("/check-detailed", response_model=Decision, response_model_exclude_none=True)
    async def check_detailed(body: DetailedCheckBody, user_id: str = Depends(current_user)) -> Decision:
        try:
            result = await engine.check(
                user_id, body.action, body.resource_type, body.resource_id, _options(body.options)
            )
        except EvaluationError as exc:
            raise _unavailable(exc) from exc
        return Decision.from_result(result)

    @router.post("/check-role", response_model=Decision, response_model_exclude_none=True)
    async def check_role(body: RoleCheckBody, user_id: str = Depends(current_user)) -> Decision:
        try:
            result = await engine.check_role(body.resource_type, body.role_name, user_id, body.resource_id)
        except EvaluationError as exc:
            raise _unavailable(exc) from exc
        return Decision.from_result(result)

    @router.post("/batch", response_model=BatchResponse, response_model_exclude_none=True)
    async def batch(body: BatchBody, user_id: str = Depends(current_user)) -> BatchResponse:
        requests: Dict[str, Union[CheckRequest, RoleCheckRequest]] = {}
        for name, entry in body.checks.items():
            if entry.action is not None:
                requests[name] = CheckRequest(user_id, entry.action, entry.resource_type, entry.resource_id)
            else:
                requests[name] = RoleCheckRequest(entry.resource_type, entry.role_name, user_id, entry.resource_id)
        try:
            results = await engine.batch_check(requests, options=_options(body.options))
        except EvaluationError as exc:
            raise _unavailable(exc) from exc
        return BatchResponse(results={name: Decision.from_result(result) for name, result in results.items()})

    @router.get("/policies")
    async def policies() -> Dict[str, List[Dict[str, Any]]]:
        return {"resources": [info.to_dict() for info in engine.list_resource_types()]}

    @router.get("/policies/{resource_type}/roles")
    async def roles(resource_type: str) -> Dict[str, Any]:
        try:
            infos = engine.list_roles(resource_type)
        except ResourceTypeNotFoundError as exc:
            raise HTTPException(status_code=404, detail=exc.to_problem_detail()) from exc
        return {"resourceType": resource_type, "roles": [info.to_dict() for info in infos]}

    @router.get("/ping")
    async def ping() -> Dict[str, str]:
        return {"status": "ok"}

    return router


def create_app(engine: PolicyEngine, current_user: CurrentUser) -> FastAPI:
    """Standalone app: the router plus engine lifecycle and error handlers."""
    app = FastAPI(title="authz-kernel", version="0.1.0")
    app.include_router(build_router(engine, current_user))

    @app.on_event("startup")
    async def startup() -> None:
        await engine.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await engine.close()

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        if isinstance(exc, AuthzError):
            return JSONResponse(status_code=exc.status_code, content=exc.to_problem_detail())
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(AuthzError)
    async def authz_error_handler(request: Request, exc: AuthzError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_problem_detail())

    return app


__all__ = ["build_router", "create_app"]
