from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import quote

import httpx

from grantline.core.config import get_settings
from grantline.providers.base import (
    ERROR_KIND_AUTH,
    ERROR_KIND_HTTP,
    ERROR_KIND_INVALID,
    ERROR_KIND_NETWORK,
    ERROR_KIND_NOT_CONFIGURED,
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_UPSTREAM_5XX,
    PROVIDER_API,
    GrantParams,
    ProvisioningResult,
    RevokeParams,
    UsernameCheck,
)
from grantline.services.credentials import ActiveCredentials
from grantline.services.provisioning_state import is_auth_error
from grantline.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class _CallFailure(Exception):
    def __init__(self, error_kind: str, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.error_kind = error_kind
        self.http_status = http_status

    @property
    def auth_error(self) -> bool:
        return self.error_kind == ERROR_KIND_AUTH


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class UpstreamApiProvider:
    """Provisioning through the self-hosted upstream access-management API.

    Every call carries the session secret headers and an explicit timeout.
    Network failures never raise out of this class; they come back as results
    with an ``error_kind`` so the job processor can classify them.
    """

    name = PROVIDER_API

    def __init__(
        self,
        credentials: ActiveCredentials | None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._credentials = credentials
        self._transport = transport
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().upstream_timeout_s

    @property
    def credential_id(self) -> str | None:
        return self._credentials.credential_id if self._credentials else None

    def is_configured(self) -> bool:
        return self._credentials is not None

    def _headers(self) -> dict[str, str]:
        assert self._credentials is not None
        return {
            "Content-Type": "application/json",
            "X-Session-Id": self._credentials.session_id,
            "X-Signature": self._credentials.signature,
        }

    async def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        assert self._credentials is not None
        url = f"{self._credentials.api_url.rstrip('/')}{path}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), json=json_body)
        except httpx.TimeoutException as exc:
            record_external_call(
                integration=f"upstream.{operation}",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            raise _CallFailure(ERROR_KIND_TIMEOUT, f"upstream {operation} timed out") from exc
        except httpx.HTTPError as exc:
            record_external_call(
                integration=f"upstream.{operation}",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            raise _CallFailure(
                ERROR_KIND_NETWORK, f"upstream {operation} failed: {type(exc).__name__}"
            ) from exc
        success = response.status_code < 400
        record_external_call(
            integration=f"upstream.{operation}",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
        if response.status_code in (401, 403):
            raise _CallFailure(
                ERROR_KIND_AUTH,
                f"upstream rejected session credentials (HTTP {response.status_code})",
                http_status=response.status_code,
            )
        if response.status_code >= 500:
            raise _CallFailure(
                ERROR_KIND_UPSTREAM_5XX,
                f"upstream {operation} returned HTTP {response.status_code}",
                http_status=response.status_code,
            )
        return response

    def _not_configured(self) -> ProvisioningResult:
        return ProvisioningResult(
            ok=False,
            message="upstream API credentials are not configured",
            error_kind=ERROR_KIND_NOT_CONFIGURED,
            provider=self.name,
        )

    async def validate_username(self, username: str) -> UsernameCheck:
        if not self.is_configured():
            return UsernameCheck(
                ok=False,
                error="upstream API credentials are not configured",
                error_kind=ERROR_KIND_NOT_CONFIGURED,
            )
        try:
            response = await self._call("GET", f"/validate/{quote(username, safe='')}", operation="validate")
        except _CallFailure as failure:
            return UsernameCheck(
                ok=False,
                auth_error=failure.auth_error,
                error=str(failure),
                http_status=failure.http_status,
                error_kind=failure.error_kind,
            )
        if response.status_code == 404:
            return UsernameCheck(
                ok=False,
                invalid=True,
                error="username does not exist on the upstream platform",
                http_status=404,
                error_kind=ERROR_KIND_INVALID,
            )
        data = _json_body(response)
        if response.status_code >= 400:
            text = response.text
            return UsernameCheck(
                ok=False,
                auth_error=is_auth_error(text),
                error=f"validation failed: {text[:200]}",
                http_status=response.status_code,
                error_kind=ERROR_KIND_AUTH if is_auth_error(text) else ERROR_KIND_HTTP,
            )
        if data.get("success") is False or data.get("error"):
            message = str(data.get("error") or "username validation failed")
            if is_auth_error(message):
                return UsernameCheck(
                    ok=False,
                    auth_error=True,
                    error=message,
                    http_status=response.status_code,
                    error_kind=ERROR_KIND_AUTH,
                )
            return UsernameCheck(
                ok=False,
                invalid=True,
                error=message,
                http_status=response.status_code,
                error_kind=ERROR_KIND_INVALID,
            )
        return UsernameCheck(ok=True, username=str(data.get("username") or username), http_status=response.status_code)

    async def _mutate(
        self,
        method: str,
        *,
        operation: str,
        username: str,
        json_body: dict[str, Any],
        default_message: str,
    ) -> ProvisioningResult:
        if not self.is_configured():
            return self._not_configured()
        try:
            response = await self._call(
                method,
                f"/access/{quote(username, safe='')}",
                operation=operation,
                json_body=json_body,
            )
        except _CallFailure as failure:
            return ProvisioningResult(
                ok=False,
                message=str(failure),
                auth_error=failure.auth_error,
                http_status=failure.http_status,
                error_kind=failure.error_kind,
                provider=self.name,
            )
        if response.status_code >= 400:
            text = response.text
            auth = is_auth_error(text)
            return ProvisioningResult(
                ok=False,
                message=f"{operation} failed: {text[:200]}",
                auth_error=auth,
                http_status=response.status_code,
                error_kind=ERROR_KIND_AUTH if auth else ERROR_KIND_HTTP,
                provider=self.name,
            )
        data = _json_body(response)
        return ProvisioningResult(
            ok=True,
            message=str(data.get("message") or default_message),
            http_status=response.status_code,
            provider=self.name,
        )

    async def grant_access(self, params: GrantParams) -> ProvisioningResult:
        logger.info(
            "upstream_grant_requested access_grant_id=%s external_id=%s",
            params.access_grant_id,
            params.external_id,
        )
        return await self._mutate(
            "POST",
            operation="grant",
            username=params.username,
            json_body={"pine_id": params.external_id, "duration": params.duration},
            default_message="access granted via API",
        )

    async def revoke_access(self, params: RevokeParams) -> ProvisioningResult:
        logger.info(
            "upstream_revoke_requested access_grant_id=%s external_id=%s",
            params.access_grant_id,
            params.external_id,
        )
        return await self._mutate(
            "DELETE",
            operation="revoke",
            username=params.username,
            json_body={"pine_id": params.external_id},
            default_message="access revoked via API",
        )
