from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.core.errors import (
    CredentialDecryptionError,
    CredentialValidationError,
    EncryptionConfigError,
)
from grantline.domain.models import ProvisioningCredential
from grantline.domain.state import CredentialCheck
from grantline.services.audit import ACTOR_ADMIN, ACTOR_SYSTEM, record_event
from grantline.services.crypto.cipher import (
    EncryptedCredentials,
    decrypt_credentials,
    encrypt_credentials,
    load_encryption_key,
)
from grantline.services.provisioning_state import (
    HealthyTransition,
    record_health_probe,
    transition_to_healthy,
)
from grantline.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

CredentialAgeStatus = Literal["ok", "warning", "critical", "unknown"]


@dataclass(frozen=True)
class ActiveCredentials:
    session_id: str = field(repr=False)
    signature: str = field(repr=False)
    api_url: str
    # None when the credentials come from the environment.
    credential_id: str | None
    source: Literal["database", "environment"]


@dataclass(frozen=True)
class CredentialMetadata:
    id: str
    api_url: str
    is_active: bool
    validated_at: datetime | None
    last_used_at: datetime | None
    created_at: datetime
    created_by: str | None


@dataclass(frozen=True)
class StoredCredentialsResult:
    credential: CredentialMetadata
    transition: HealthyTransition


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _metadata(row: ProvisioningCredential) -> CredentialMetadata:
    return CredentialMetadata(
        id=row.id,
        api_url=row.api_url,
        is_active=row.is_active,
        validated_at=_as_utc(row.validated_at),
        last_used_at=_as_utc(row.last_used_at),
        created_at=_as_utc(row.created_at) or _utc_now(),
        created_by=row.created_by,
    )


def _encrypted(row: ProvisioningCredential) -> EncryptedCredentials:
    return EncryptedCredentials(
        session_id_encrypted=row.session_id_encrypted,
        signature_encrypted=row.signature_encrypted,
        iv=row.iv,
        auth_tag=row.auth_tag,
    )


async def validate_upstream_credentials(
    session_id: str,
    signature: str,
    api_url: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CredentialCheck:
    """Probe the upstream API with a credential pair.

    A timeout or network failure is reported the same way as a non-2xx
    response: ``ok`` is False and ``error_kind`` names what happened.
    """
    settings = get_settings()
    url = f"{api_url.rstrip('/')}/validate/{settings.upstream_probe_username}"
    headers = {"X-Session-Id": session_id, "X-Signature": signature}
    started = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=settings.upstream_timeout_s, transport=transport) as client:
            response = await client.get(url, headers=headers)
    except httpx.TimeoutException:
        latency_ms = (time.monotonic() - started) * 1000.0
        record_external_call(integration="upstream.validate", latency_ms=latency_ms, success=False)
        return CredentialCheck(
            ok=False,
            error_kind="timeout",
            message="upstream validation timed out",
            latency_ms=latency_ms,
        )
    except httpx.HTTPError as exc:
        latency_ms = (time.monotonic() - started) * 1000.0
        record_external_call(integration="upstream.validate", latency_ms=latency_ms, success=False)
        return CredentialCheck(
            ok=False,
            error_kind="network_error",
            message=f"upstream validation failed: {type(exc).__name__}",
            latency_ms=latency_ms,
        )
    latency_ms = (time.monotonic() - started) * 1000.0
    ok = 200 <= response.status_code < 300
    record_external_call(integration="upstream.validate", latency_ms=latency_ms, success=ok)
    if ok:
        return CredentialCheck(ok=True, http_status=response.status_code, latency_ms=latency_ms)
    error_kind = "auth_error" if response.status_code in (401, 403) else "http_error"
    return CredentialCheck(
        ok=False,
        http_status=response.status_code,
        error_kind=error_kind,
        message=f"upstream rejected credentials with HTTP {response.status_code}",
        latency_ms=latency_ms,
    )


async def store_credentials(
    session: AsyncSession,
    *,
    session_id: str,
    signature: str,
    api_url: str,
    created_by: str | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StoredCredentialsResult:
    """Validate, encrypt and activate a new credential pair, then recover provisioning.

    Nothing is written unless the upstream accepts the pair. The previous
    active credential is deactivated in the same transaction that inserts the
    new one.
    """
    # Fail on a missing key before touching the upstream.
    key = load_encryption_key()
    check = await validate_upstream_credentials(session_id, signature, api_url, transport=transport)
    if not check.ok:
        increment_counter("credentials.update_rejected")
        await record_event(
            session=session,
            actor_type=ACTOR_ADMIN,
            actor_id=created_by,
            event_type="credentials.update_validation_failed",
            outcome="failure",
            resource_type="provisioning_credential",
            metadata={
                "api_url": api_url,
                "http_status": check.http_status,
                "error_kind": check.error_kind,
            },
            error_code=check.error_kind,
            commit=True,
        )
        logger.warning(
            "credentials_update_rejected http_status=%s error_kind=%s",
            check.http_status,
            check.error_kind,
        )
        raise CredentialValidationError(
            check.message or "credential validation failed",
            http_status=check.http_status,
            error_kind=check.error_kind,
        )

    encrypted = encrypt_credentials(session_id, signature, key=key)
    now = _utc_now()
    await session.execute(
        update(ProvisioningCredential)
        .where(ProvisioningCredential.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    row = ProvisioningCredential(
        id=uuid4().hex,
        session_id_encrypted=encrypted.session_id_encrypted,
        signature_encrypted=encrypted.signature_encrypted,
        iv=encrypted.iv,
        auth_tag=encrypted.auth_tag,
        api_url=api_url,
        is_active=True,
        validated_at=now,
        created_by=created_by,
        created_at=now,
    )
    session.add(row)
    await session.flush()
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=created_by,
        event_type="credentials.updated",
        outcome="success",
        resource_type="provisioning_credential",
        resource_id=row.id,
        metadata={"api_url": api_url, "validated_at": now.isoformat()},
        best_effort=False,
    )
    await session.commit()
    increment_counter("credentials.updated")
    logger.info("credentials_updated credential_id=%s created_by=%s", row.id, created_by)

    transition = await transition_to_healthy(
        session,
        proof=check,
        triggered_by=created_by,
        credential_id=row.id,
    )
    return StoredCredentialsResult(credential=_metadata(row), transition=transition)


async def _active_row(session: AsyncSession) -> ProvisioningCredential | None:
    return (
        await session.execute(
            select(ProvisioningCredential)
            .where(ProvisioningCredential.is_active.is_(True))
            .order_by(ProvisioningCredential.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


def _environment_credentials() -> ActiveCredentials | None:
    settings = get_settings()
    if settings.upstream_api_url and settings.upstream_session_id and settings.upstream_signature:
        return ActiveCredentials(
            session_id=settings.upstream_session_id,
            signature=settings.upstream_signature,
            api_url=settings.upstream_api_url,
            credential_id=None,
            source="environment",
        )
    return None


async def get_active_credentials(session: AsyncSession) -> ActiveCredentials | None:
    """Return decrypted active credentials, falling back to the environment.

    A stored record that cannot be decrypted (for example after a key rotation
    without re-encryption) is treated as absent. Returns None when neither
    source is usable.
    """
    row = await _active_row(session)
    if row is not None:
        try:
            session_id, signature = decrypt_credentials(_encrypted(row))
        except (CredentialDecryptionError, EncryptionConfigError) as exc:
            logger.error(
                "credentials_decrypt_failed credential_id=%s error=%s",
                row.id,
                type(exc).__name__,
            )
        else:
            return ActiveCredentials(
                session_id=session_id,
                signature=signature,
                api_url=row.api_url,
                credential_id=row.id,
                source="database",
            )
    env_credentials = _environment_credentials()
    if env_credentials is not None:
        logger.info("credentials_using_environment")
    return env_credentials


async def revalidate_active_credentials(
    session: AsyncSession,
    *,
    triggered_by: str | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[CredentialCheck, HealthyTransition | None]:
    # Operator-initiated check of the stored pair; success is the recovery proof.
    credentials = await get_active_credentials(session)
    if credentials is None:
        check = CredentialCheck(ok=False, error_kind="not_configured", message="no usable credentials")
    else:
        check = await validate_upstream_credentials(
            credentials.session_id,
            credentials.signature,
            credentials.api_url,
            transport=transport,
        )
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN if triggered_by else ACTOR_SYSTEM,
        actor_id=triggered_by,
        event_type="credentials.validated",
        outcome="success" if check.ok else "failure",
        resource_type="provisioning_credential",
        resource_id=credentials.credential_id if credentials else None,
        metadata={
            "http_status": check.http_status,
            "error_kind": check.error_kind,
            "source": credentials.source if credentials else None,
        },
        error_code=None if check.ok else check.error_kind,
        commit=True,
    )
    if not check.ok:
        logger.warning(
            "credentials_revalidation_failed http_status=%s error_kind=%s",
            check.http_status,
            check.error_kind,
        )
        return check, None
    if credentials is not None and credentials.credential_id is not None:
        await session.execute(
            update(ProvisioningCredential)
            .where(ProvisioningCredential.id == credentials.credential_id)
            .values(validated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    transition = await transition_to_healthy(
        session,
        proof=check,
        triggered_by=triggered_by,
        credential_id=credentials.credential_id if credentials else None,
    )
    return check, transition


async def probe_active_credentials(
    session: AsyncSession,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CredentialCheck:
    """Scheduled health probe; records the outcome but never changes state."""
    credentials = await get_active_credentials(session)
    if credentials is None:
        check = CredentialCheck(ok=False, error_kind="not_configured", message="no usable credentials")
    else:
        check = await validate_upstream_credentials(
            credentials.session_id,
            credentials.signature,
            credentials.api_url,
            transport=transport,
        )
    await record_health_probe(session, check=check)
    logger.info(
        "credentials_probe ok=%s http_status=%s error_kind=%s",
        check.ok,
        check.http_status,
        check.error_kind,
    )
    return check


async def mark_credentials_used(session: AsyncSession, credential_id: str | None) -> None:
    if credential_id is None:
        return
    await session.execute(
        update(ProvisioningCredential)
        .where(ProvisioningCredential.id == credential_id)
        .values(last_used_at=_utc_now())
        .execution_options(synchronize_session=False)
    )


async def get_active_credential_metadata(session: AsyncSession) -> CredentialMetadata | None:
    row = await _active_row(session)
    return _metadata(row) if row is not None else None


async def get_credential_history(session: AsyncSession, *, limit: int = 10) -> list[CredentialMetadata]:
    rows = (
        await session.execute(
            select(ProvisioningCredential)
            .order_by(ProvisioningCredential.created_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    return [_metadata(row) for row in rows]


def credential_age_hours(created_at: datetime | None, *, now: datetime | None = None) -> int | None:
    if created_at is None:
        return None
    reference = now or _utc_now()
    return int((reference - _as_utc(created_at)).total_seconds() // 3600)


def credential_age_status(age_hours: int | None) -> CredentialAgeStatus:
    if age_hours is None:
        return "unknown"
    settings = get_settings()
    if age_hours >= settings.credential_critical_age_days * 24:
        return "critical"
    if age_hours >= settings.credential_warning_age_days * 24:
        return "warning"
    return "ok"
