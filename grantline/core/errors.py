from __future__ import annotations


class GrantlineError(Exception):
    """Base error for grantline."""


class ProviderConfigError(GrantlineError):
    """Missing or invalid provider configuration."""


class EncryptionConfigError(GrantlineError):
    """Credential encryption key missing or malformed."""


class CredentialValidationError(GrantlineError):
    """Upstream rejected credentials during validation."""

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        error_kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.error_kind = error_kind


class AccessGrantNotFoundError(GrantlineError):
    """Access grant does not exist."""


class AccessGrantStateError(GrantlineError):
    """Access grant is not in a state that allows the requested action."""


class ManualTaskNotFoundError(GrantlineError):
    """Manual task does not exist."""


class ManualTaskStateError(GrantlineError):
    """Manual task is no longer pending."""


class ResourceNotFoundError(GrantlineError):
    """Protected resource does not exist."""


class WebhookSignatureError(GrantlineError):
    """Payment webhook signature missing or invalid."""


class PurchaseNotFoundError(GrantlineError):
    """Purchase does not exist."""


class CredentialDecryptionError(GrantlineError):
    """Stored credentials could not be decrypted with the configured key."""


class ProvisioningStateError(GrantlineError):
    """Provisioning state transition was requested without the required proof."""
