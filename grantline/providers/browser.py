from __future__ import annotations

from grantline.providers.base import (
    ERROR_KIND_NOT_CONFIGURED,
    PROVIDER_BROWSER,
    GrantParams,
    ProvisioningResult,
    RevokeParams,
    UsernameCheck,
)


_DISABLED_MESSAGE = "browser automation is disabled: the upstream requires interactive two-factor login"


class BrowserAutomationProvider:
    """Headless-browser provisioning, kept registered but permanently disabled.

    ``is_configured`` ignores any environment so selection can never route
    work here.
    """

    name = PROVIDER_BROWSER

    def is_configured(self) -> bool:
        return False

    async def validate_username(self, username: str) -> UsernameCheck:
        return UsernameCheck(ok=False, error=_DISABLED_MESSAGE, error_kind=ERROR_KIND_NOT_CONFIGURED)

    async def grant_access(self, params: GrantParams) -> ProvisioningResult:
        return ProvisioningResult(
            ok=False,
            message=_DISABLED_MESSAGE,
            error_kind=ERROR_KIND_NOT_CONFIGURED,
            provider=self.name,
        )

    async def revoke_access(self, params: RevokeParams) -> ProvisioningResult:
        return ProvisioningResult(
            ok=False,
            message=_DISABLED_MESSAGE,
            error_kind=ERROR_KIND_NOT_CONFIGURED,
            provider=self.name,
        )
