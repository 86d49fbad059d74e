# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/client.py

Project: authz-kernel
Package: authz_kernel

Description:
    Async HTTP client for the ``/authz`` router. The server resolves the
    calling user from the request credentials, so checks carry no user id.

    Transient failures (connection errors, timeouts, 5xx) are retried with
    exponential backoff via ``tenacity``. Error statuses (4xx at once, 5xx once
    retries run out) raise ``AuthzClientError`` carrying the server's problem
    detail; transport errors surface as ``httpx`` exceptions after the last
    attempt.

"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx
from httpx import ConnectError, ConnectTimeout, HTTPStatusError, PoolTimeout, ReadTimeout
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import AuthzError
from .models import CheckOptions, CheckResult, ResourceInfo, RoleInfo

logger = logging.getLogger(__name__)

RETRYABLE_EXCEPTIONS = (
    ConnectError,
    ReadTimeout,
    ConnectTimeout,
    PoolTimeout,
)


@retry_if_exception
def _is_server_error(exc: BaseException) -> bool:
    return isinstance(exc, HTTPStatusError) and exc.response.status_code >= 500


class AuthzClientError(AuthzError):
    """The authorization server answered with an error status."""

    def __init__(self, status_code: int, problem: Optional[Dict[str, Any]] = None) -> None:
        self.problem = problem or {}
        message = str(self.problem.get("detail") or f"Authorization server returned HTTP {status_code}")
        super().__init__(message, status_code=status_code, error_code="AuthzClientError")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "AuthzClientError":
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        # HTTPException wraps the problem document under "detail".
        if isinstance(body, dict) and isinstance(body.get("detail"), dict):
            body = body["detail"]
        return cls(response.status_code, body if isinstance(body, dict) else {"detail": body})


def _result(payload: Mapping[str, Any]) -> CheckResult:
    return CheckResult(
        allowed=bool(payload["allowed"]),
        message=str(payload["message"]),
        detail=payload.get("detail"),
    )


class AuthzClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        prefix: str = "/authz",
        timeout: httpx.Timeout = httpx.Timeout(5.0, read=15.0),
        client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = 3,
        retry_wait_multiplier: float = 0.5,
        retry_max_wait: float = 4.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )
        if client is not None and headers:
            self._client.headers.update(headers)
        self._prefix = prefix.rstrip("/")
        self._retry_attempts = retry_attempts
        self._retry_wait_multiplier = retry_wait_multiplier
        self._retry_max_wait = retry_max_wait

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "AuthzClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_wait_multiplier, max=self._retry_max_wait),
            retry=(retry_if_exception_type(RETRYABLE_EXCEPTIONS) | _is_server_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.request(method, f"{self._prefix}{path}", json=payload)
                    response.raise_for_status()
        except HTTPStatusError as exc:
            logger.error("Authorization server returned HTTP %s for %s %s", exc.response.status_code, method, path)
            raise AuthzClientError.from_response(exc.response) from exc
        return response.json()

    async def check(self, action: str, resource_type: str, resource_id: str) -> CheckResult:
        payload = {"action": action, "resourceType": resource_type, "resourceId": resource_id}
        return _result(await self._request("POST", "/check", payload))

    async def check_detailed(
        self, action: str, resource_type: str, resource_id: str, options: Optional[CheckOptions] = None
    ) -> CheckResult:
        options = options or CheckOptions()
        payload = {
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            "options": {"debug": options.debug, "includeDetails": options.include_details},
        }
        return _result(await self._request("POST", "/check-detailed", payload))

    async def check_role(self, resource_type: str, role_name: str, resource_id: str) -> CheckResult:
        payload = {"resourceType": resource_type, "roleName": role_name, "resourceId": resource_id}
        return _result(await self._request("POST", "/check-role", payload))

    async def batch_check(
        self, checks: Mapping[str, Mapping[str, str]], options: Optional[CheckOptions] = None
    ) -> Dict[str, CheckResult]:
        """``checks`` maps a name to ``{"resourceType", "resourceId"}`` plus ``"action"`` or ``"roleName"``."""
        payload: Dict[str, Any] = {"checks": {name: dict(entry) for name, entry in checks.items()}}
        if options is not None:
            payload["options"] = {"debug": options.debug, "includeDetails": options.include_details}
        data = await self._request("POST", "/batch", payload)
        return {name: _result(result) for name, result in data["results"].items()}

    async def get_policies(self) -> List[ResourceInfo]:
        data = await self._request("GET", "/policies")
        return [
            ResourceInfo(
                name=item["name"],
                actions=tuple(item["actions"]),
                roles=tuple(RoleInfo(role["name"], tuple(role["actions"])) for role in item["roles"]),
            )
            for item in data["resources"]
        ]

    async def get_roles(self, resource_type: str) -> List[RoleInfo]:
        data = await self._request("GET", f"/policies/{resource_type}/roles")
        return [RoleInfo(role["name"], tuple(role["actions"])) for role in data["roles"]]

    async def ping(self) -> bool:
        data = await self._request("GET", "/ping")
        return data.get("status") == "ok"


__all__ = ["AuthzClient", "AuthzClientError"]
