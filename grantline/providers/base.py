from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


PROVIDER_API = "api"
PROVIDER_BROWSER = "browser"
PROVIDER_MANUAL = "manual"
PROVIDER_MODES = (PROVIDER_API, PROVIDER_BROWSER, PROVIDER_MANUAL)

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_NETWORK = "network_error"
ERROR_KIND_UPSTREAM_5XX = "upstream_5xx"
ERROR_KIND_HTTP = "http_error"
ERROR_KIND_AUTH = "auth_error"
ERROR_KIND_INVALID = "invalid"
ERROR_KIND_NOT_CONFIGURED = "not_configured"
ERROR_KIND_EXCEPTION = "provider_exception"


@dataclass(frozen=True)
class UsernameCheck:
    ok: bool
    username: str | None = None
    # The upstream says the name does not exist; not retryable.
    invalid: bool = False
    auth_error: bool = False
    error: str | None = None
    http_status: int | None = None
    error_kind: str | None = None


@dataclass(frozen=True)
class ProvisioningResult:
    ok: bool
    message: str = ""
    # The request is legitimate but an operator has to carry it out.
    requires_manual: bool = False
    auth_error: bool = False
    http_status: int | None = None
    error_kind: str | None = None
    provider: str | None = None
    task_id: str | None = None


@dataclass(frozen=True)
class GrantParams:
    username: str
    external_id: str
    duration: str
    resource_id: str
    access_grant_id: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class RevokeParams:
    username: str
    external_id: str
    resource_id: str
    access_grant_id: str | None = None
    user_id: str | None = None


class ProvisioningProvider(Protocol):
    name: str

    def is_configured(self) -> bool: ...

    async def validate_username(self, username: str) -> UsernameCheck: ...

    async def grant_access(self, params: GrantParams) -> ProvisioningResult: ...

    async def revoke_access(self, params: RevokeParams) -> ProvisioningResult: ...
