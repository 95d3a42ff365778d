from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.core.errors import ProviderConfigError
from grantline.providers.api import UpstreamApiProvider
from grantline.providers.base import (
    ERROR_KIND_EXCEPTION,
    ERROR_KIND_NOT_CONFIGURED,
    PROVIDER_API,
    PROVIDER_BROWSER,
    PROVIDER_MANUAL,
    PROVIDER_MODES,
    ProvisioningProvider,
    ProvisioningResult,
)
from grantline.providers.browser import BrowserAutomationProvider
from grantline.providers.manual import ManualProvider
from grantline.services.credentials import get_active_credentials


logger = logging.getLogger(__name__)

ProviderOperation = Callable[[ProvisioningProvider], Awaitable[ProvisioningResult]]


@dataclass(frozen=True)
class ProviderRegistry:
    providers: dict[str, ProvisioningProvider]
    primary_mode: str
    fallback_mode: str

    def get(self, mode: str) -> ProvisioningProvider:
        try:
            return self.providers[mode]
        except KeyError as exc:
            raise ProviderConfigError(f"unknown provisioning mode: {mode}") from exc

    @property
    def primary(self) -> ProvisioningProvider:
        return self.get(self.primary_mode)

    @property
    def credential_id(self) -> str | None:
        api = self.providers.get(PROVIDER_API)
        return api.credential_id if isinstance(api, UpstreamApiProvider) else None


@dataclass(frozen=True)
class FallbackOutcome:
    result: ProvisioningResult
    provider: str
    used_fallback: bool


def _normalize_mode(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized not in PROVIDER_MODES:
        raise ProviderConfigError(
            f"unknown provisioning mode '{value}'; expected one of {', '.join(PROVIDER_MODES)}"
        )
    return normalized


def resolve_primary_mode(providers: dict[str, ProvisioningProvider]) -> str:
    """Pick the primary provider: explicit setting first, else the first configured automation."""
    explicit = _normalize_mode(get_settings().provisioning_mode)
    if explicit is not None:
        return explicit
    for mode in (PROVIDER_BROWSER, PROVIDER_API):
        provider = providers.get(mode)
        if provider is not None and provider.is_configured():
            return mode
    return PROVIDER_MANUAL


def resolve_fallback_mode() -> str:
    return _normalize_mode(get_settings().provisioning_fallback_mode) or PROVIDER_MANUAL


async def build_provider_registry(
    session: AsyncSession,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    # Credentials are resolved once per job so every call in it uses the same pair.
    credentials = await get_active_credentials(session)
    providers: dict[str, ProvisioningProvider] = {
        PROVIDER_API: UpstreamApiProvider(credentials, transport=transport),
        PROVIDER_BROWSER: BrowserAutomationProvider(),
        PROVIDER_MANUAL: ManualProvider(session),
    }
    return ProviderRegistry(
        providers=providers,
        primary_mode=resolve_primary_mode(providers),
        fallback_mode=resolve_fallback_mode(),
    )


async def _run(provider: ProvisioningProvider, operation: ProviderOperation) -> ProvisioningResult:
    try:
        return await operation(provider)
    except Exception as exc:  # noqa: BLE001 - classified by the job processor
        logger.exception("provider_operation_failed provider=%s", provider.name)
        return ProvisioningResult(
            ok=False,
            message=f"{provider.name} provider raised {type(exc).__name__}: {exc}",
            error_kind=ERROR_KIND_EXCEPTION,
            provider=provider.name,
        )


async def execute_with_fallback(registry: ProviderRegistry, operation: ProviderOperation) -> FallbackOutcome:
    """Run ``operation`` on the primary provider with the asymmetric fallback policy.

    A failed primary is returned unchanged when the fallback is the manual
    provider (or the primary itself), so auth failures reach the DEGRADED
    logic instead of turning into operator tasks. Only a distinct, configured,
    non-manual fallback is tried automatically.
    """
    primary = registry.primary
    if primary.is_configured():
        result = await _run(primary, operation)
        if result.ok:
            return FallbackOutcome(result=result, provider=primary.name, used_fallback=False)
    else:
        result = ProvisioningResult(
            ok=False,
            message=f"{primary.name} provider is not configured",
            error_kind=ERROR_KIND_NOT_CONFIGURED,
            provider=primary.name,
        )

    fallback_mode = registry.fallback_mode
    if fallback_mode in (PROVIDER_MANUAL, registry.primary_mode):
        return FallbackOutcome(result=result, provider=primary.name, used_fallback=False)
    fallback = registry.get(fallback_mode)
    if not fallback.is_configured():
        return FallbackOutcome(result=result, provider=primary.name, used_fallback=False)

    logger.warning(
        "provider_fallback primary=%s fallback=%s error_kind=%s",
        primary.name,
        fallback.name,
        result.error_kind,
    )
    fallback_result = await _run(fallback, operation)
    return FallbackOutcome(result=fallback_result, provider=fallback.name, used_fallback=True)


def check_provider_health(registry: ProviderRegistry) -> dict[str, Any]:
    primary_configured = registry.primary.is_configured()
    fallback_configured = registry.get(registry.fallback_mode).is_configured()
    if registry.primary_mode != PROVIDER_MANUAL and primary_configured:
        status = "healthy"
    elif registry.fallback_mode != PROVIDER_MANUAL and fallback_configured:
        status = "degraded"
    else:
        status = "manual-only"
    return {
        "mode": registry.primary_mode,
        "configured": primary_configured,
        "fallback_mode": registry.fallback_mode,
        "fallback_configured": fallback_configured,
        "status": status,
    }
