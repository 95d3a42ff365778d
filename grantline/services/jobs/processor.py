from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from grantline.core.config import get_settings
from grantline.domain.models import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_PENDING,
    ACCESS_REVOKED,
    TASK_TYPE_GRANT,
    TASK_TYPE_REVOKE,
    AccessGrant,
)
from grantline.persistence.db import SessionLocal
from grantline.providers.base import (
    ERROR_KIND_AUTH,
    ERROR_KIND_INVALID,
    ERROR_KIND_NOT_CONFIGURED,
    PROVIDER_API,
    GrantParams,
    ProvisioningProvider,
    ProvisioningResult,
    RevokeParams,
)
from grantline.providers.factory import build_provider_registry, execute_with_fallback
from grantline.services.audit import ACTOR_WORKER, record_event
from grantline.services.credentials import mark_credentials_used
from grantline.services.jobs.queue import (
    JOB_AWAITING_MANUAL,
    JOB_COMPLETED,
    JOB_DEFER,
    JOB_FAILED,
    JOB_RETRY,
    AccessJobPayload,
    JobResult,
    compute_backoff_s,
)
from grantline.services.manual_tasks import (
    SOURCE_AUTO_PROVISION_DISABLED,
    close_tasks_for_grant,
    ensure_manual_task,
)
from grantline.services.notifications import (
    URGENCY_CRITICAL,
    URGENCY_HIGH,
    notify_access_failed,
    notify_access_granted,
    notify_access_revoked,
    send_operator_alert,
)
from grantline.services.provisioning_state import get_state, transition_to_degraded
from grantline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MISSING_USERNAME_REASON = "User has not set a platform username"
AWAITING_MANUAL_REASON = "Awaiting manual provisioning"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_auth_failure(result: ProvisioningResult) -> bool:
    if result.auth_error or result.error_kind == ERROR_KIND_AUTH:
        return True
    # Missing or undecryptable upstream credentials recover the same way as rejected ones.
    return result.provider == PROVIDER_API and result.error_kind == ERROR_KIND_NOT_CONFIGURED


def _stamp_attempt(grant: AccessGrant, *, job_id: str, now: datetime) -> None:
    grant.last_attempt_at = now
    grant.job_id = job_id


async def _claim_grant(session: AsyncSession, payload: AccessJobPayload, *, job_id: str) -> bool:
    """Make ``job_id`` the grant's current job, if it is entitled to run.

    A job may run when the grant points at it, at a job it continues, or at
    nothing yet. Every scheduler points the grant at the job it enqueues, so
    a job that was replaced in the meantime loses the claim and stops. The
    conditional UPDATE keeps concurrent claims to one winner.
    """
    accepted = [job_id, *payload.supersedes]
    result = await session.execute(
        update(AccessGrant)
        .where(AccessGrant.id == payload.access_grant_id)
        .where(or_(AccessGrant.job_id.is_(None), AccessGrant.job_id.in_(accepted)))
        .values(job_id=job_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def _mark_resolved(
    session: AsyncSession,
    grant: AccessGrant,
    *,
    expected_status: str,
    values: dict[str, Any],
) -> bool:
    # Only the first writer moves the grant on; later writers see a changed status.
    result = await session.execute(
        update(AccessGrant)
        .where(AccessGrant.id == grant.id, AccessGrant.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        return False
    for key, value in values.items():
        set_committed_value(grant, key, value)
    return True


def _set_failure_context(grant: AccessGrant, reason: str) -> None:
    # A GRANTED grant never carries a failure reason, even while its revocation is failing.
    if grant.status != ACCESS_GRANTED:
        grant.failure_reason = reason


async def process_access_job(payload: AccessJobPayload, *, job_id: str, attempt: int) -> JobResult:
    """Run one provisioning attempt for an access grant.

    This is the only place that turns provider outcomes into grant and
    provisioning-state mutations. The returned kind tells the scheduler what
    to do next: RETRY (bounded, same job id), DEFER (unbounded, fresh job id)
    or a terminal kind.
    """
    async with SessionLocal() as session:
        try:
            claimed = await _claim_grant(session, payload, job_id=job_id)
            grant = await session.get(AccessGrant, payload.access_grant_id)
            if grant is None:
                logger.warning(
                    "provisioning_job_grant_missing access_grant_id=%s job_id=%s",
                    payload.access_grant_id,
                    job_id,
                )
                return JobResult(
                    kind=JOB_FAILED,
                    access_grant_id=payload.access_grant_id,
                    message="access grant not found",
                )
            if not claimed:
                increment_counter("jobs.superseded")
                logger.info(
                    "provisioning_job_superseded access_grant_id=%s job_id=%s current_job_id=%s",
                    grant.id,
                    job_id,
                    grant.job_id,
                )
                return JobResult(
                    kind=JOB_COMPLETED,
                    access_grant_id=grant.id,
                    message=f"superseded by job {grant.job_id}",
                )
            if payload.action == "revoke":
                return await _process_revoke(session, grant, payload, job_id=job_id, attempt=attempt)
            return await _process_grant(session, grant, payload, job_id=job_id, attempt=attempt)
        except SQLAlchemyError:
            await session.rollback()
            logger.exception(
                "provisioning_job_storage_error access_grant_id=%s job_id=%s attempt=%s",
                payload.access_grant_id,
                job_id,
                attempt,
            )
            # Storage trouble is not the request's fault; retry without touching retry_count.
            # The scheduler bounds these through job tries and continuations.
            return JobResult(
                kind=JOB_RETRY,
                access_grant_id=payload.access_grant_id,
                message="storage error",
                retry_in_s=compute_backoff_s(attempt, payload.backoff_base_s),
                storage_error=True,
            )


async def _defer_while_degraded(
    session: AsyncSession,
    grant: AccessGrant,
    *,
    job_id: str,
    now: datetime,
) -> JobResult | None:
    state = await get_state(session)
    if not state.is_degraded:
        return None
    # Status and retry_count stay untouched; only the failure context is refreshed.
    _set_failure_context(
        grant,
        f"Deferred while provisioning is DEGRADED ({state.incident_id}): {state.reason}",
    )
    _stamp_attempt(grant, job_id=job_id, now=now)
    await session.commit()
    increment_counter("jobs.deferred_degraded")
    logger.info(
        "provisioning_job_deferred_degraded access_grant_id=%s job_id=%s incident_id=%s retry_count=%s",
        grant.id,
        job_id,
        state.incident_id,
        grant.retry_count,
    )
    return JobResult(
        kind=JOB_DEFER,
        access_grant_id=grant.id,
        message="provisioning is degraded",
        incident_id=state.incident_id,
    )


async def _degrade_and_defer(
    session: AsyncSession,
    grant: AccessGrant,
    result: ProvisioningResult,
    *,
    job_id: str,
    now: datetime,
) -> JobResult:
    _set_failure_context(grant, result.message or "Upstream rejected provisioning credentials")
    _stamp_attempt(grant, job_id=job_id, now=now)
    if result.error_kind == ERROR_KIND_NOT_CONFIGURED:
        reason = "Upstream credentials are not configured or cannot be decrypted"
    else:
        reason = f"Upstream authentication failed: {result.message}"
    # Commits the grant changes together with the state change.
    transition = await transition_to_degraded(
        session,
        reason,
        metadata={
            "access_grant_id": grant.id,
            "job_id": job_id,
            "provider": result.provider,
            "http_status": result.http_status,
        },
    )
    increment_counter("jobs.auth_failures")
    logger.warning(
        "provisioning_job_auth_failure access_grant_id=%s job_id=%s incident_id=%s http_status=%s",
        grant.id,
        job_id,
        transition.snapshot.incident_id,
        result.http_status,
    )
    return JobResult(
        kind=JOB_DEFER,
        access_grant_id=grant.id,
        message=reason,
        incident_id=transition.snapshot.incident_id,
    )


async def _fail_grant_terminal(
    session: AsyncSession,
    grant: AccessGrant,
    *,
    reason: str,
    job_id: str,
    now: datetime,
    error_code: str,
) -> JobResult:
    grant.status = ACCESS_FAILED
    grant.failure_reason = reason
    _stamp_attempt(grant, job_id=job_id, now=now)
    await record_event(
        session=session,
        actor_type=ACTOR_WORKER,
        actor_id=job_id,
        event_type="access.failed",
        outcome="failure",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        metadata={
            "resource_id": grant.resource_id,
            "resource_name": grant.resource.name,
            "reason": reason,
            "retry_count": grant.retry_count,
        },
        error_code=error_code,
    )
    await session.commit()
    increment_counter("jobs.failed")
    logger.error(
        "provisioning_job_failed access_grant_id=%s job_id=%s retry_count=%s error_code=%s",
        grant.id,
        job_id,
        grant.retry_count,
        error_code,
    )
    await notify_access_failed(
        email=grant.user.email,
        username=grant.user.platform_username,
        resource_name=grant.resource.name,
        reason=reason,
    )
    await send_operator_alert(
        subject="Access provisioning failed",
        message="An access grant reached a terminal failure and needs review.",
        details=_grant_details(grant, reason=reason),
        urgency=URGENCY_CRITICAL,
        action_path=f"/admin/access?grant={grant.id}",
    )
    return JobResult(kind=JOB_FAILED, access_grant_id=grant.id, message=reason)


def _grant_details(grant: AccessGrant, *, reason: str | None = None) -> dict[str, Any]:
    return {
        "access_grant_id": grant.id,
        "user_id": grant.user_id,
        "user_email": grant.user.email,
        "username": grant.user.platform_username,
        "resource": grant.resource.name,
        "external_id": grant.resource.external_id,
        "retry_count": grant.retry_count,
        "reason": reason,
    }


async def _record_ordinary_failure(
    session: AsyncSession,
    grant: AccessGrant,
    result: ProvisioningResult,
    *,
    action: str,
    job_id: str,
    now: datetime,
    backoff_base_s: int | None,
) -> JobResult:
    settings = get_settings()
    grant.retry_count = int(grant.retry_count or 0) + 1
    reason = result.message or f"{action} failed"
    if grant.retry_count >= settings.provisioning_max_attempts:
        if action == "revoke":
            return await _fail_revoke_terminal(session, grant, reason=reason, job_id=job_id, now=now)
        return await _fail_grant_terminal(
            session,
            grant,
            reason=reason,
            job_id=job_id,
            now=now,
            error_code=result.error_kind or "provider_error",
        )

    _set_failure_context(grant, reason)
    _stamp_attempt(grant, job_id=job_id, now=now)
    await record_event(
        session=session,
        actor_type=ACTOR_WORKER,
        actor_id=job_id,
        event_type=f"access.{action}_attempt_failed",
        outcome="failure",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        metadata={
            "retry_count": grant.retry_count,
            "error_kind": result.error_kind,
            "http_status": result.http_status,
            "provider": result.provider,
        },
        error_code=result.error_kind,
    )
    await session.commit()
    increment_counter("jobs.retried")
    retry_in_s = compute_backoff_s(grant.retry_count, backoff_base_s)
    logger.warning(
        "provisioning_job_attempt_failed access_grant_id=%s job_id=%s retry_count=%s error_kind=%s retry_in_s=%s",
        grant.id,
        job_id,
        grant.retry_count,
        result.error_kind,
        retry_in_s,
    )
    if grant.retry_count >= settings.operator_escalation_retry_count:
        await send_operator_alert(
            subject=f"Provisioning {action} keeps failing",
            message=(
                f"Attempt {grant.retry_count} of {settings.provisioning_max_attempts} failed; "
                "the grant will be marked FAILED when attempts run out."
            ),
            details=_grant_details(grant, reason=reason),
            urgency=URGENCY_HIGH,
            action_path=f"/admin/access?grant={grant.id}",
        )
    return JobResult(kind=JOB_RETRY, access_grant_id=grant.id, message=reason, retry_in_s=retry_in_s)


async def _process_grant(
    session: AsyncSession,
    grant: AccessGrant,
    payload: AccessJobPayload,
    *,
    job_id: str,
    attempt: int,
) -> JobResult:
    if grant.status == ACCESS_GRANTED:
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message="access already granted")
    if grant.status != ACCESS_PENDING:
        # Stale job for a grant an operator already resolved.
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message=f"grant is {grant.status}; skipped")

    now = _utc_now()
    deferred = await _defer_while_degraded(session, grant, job_id=job_id, now=now)
    if deferred is not None:
        return deferred

    user = grant.user
    resource = grant.resource
    username = (user.platform_username or "").strip()
    if not username:
        return await _fail_grant_terminal(
            session,
            grant,
            reason=MISSING_USERNAME_REASON,
            job_id=job_id,
            now=now,
            error_code="missing_username",
        )

    if not resource.auto_provision:
        ensured = await ensure_manual_task(
            session,
            task_type=TASK_TYPE_GRANT,
            username=username,
            resource_id=resource.id,
            access_grant_id=grant.id,
            user_id=user.id,
            source=SOURCE_AUTO_PROVISION_DISABLED,
            notes=AWAITING_MANUAL_REASON,
        )
        _stamp_attempt(grant, job_id=job_id, now=now)
        await session.commit()
        logger.info(
            "provisioning_job_awaiting_manual access_grant_id=%s task_id=%s reason=auto_provision_disabled",
            grant.id,
            ensured.task.id,
        )
        return JobResult(kind=JOB_AWAITING_MANUAL, access_grant_id=grant.id, message=AWAITING_MANUAL_REASON)

    registry = await build_provider_registry(session)
    params = GrantParams(
        username=username,
        external_id=resource.external_id,
        duration=get_settings().grant_duration,
        resource_id=resource.id,
        access_grant_id=grant.id,
        user_id=user.id,
    )

    async def grant_operation(provider: ProvisioningProvider) -> ProvisioningResult:
        check = await provider.validate_username(username)
        if not check.ok:
            return ProvisioningResult(
                ok=False,
                message=check.error or "username validation failed",
                auth_error=check.auth_error,
                http_status=check.http_status,
                error_kind=ERROR_KIND_INVALID if check.invalid else check.error_kind,
                provider=provider.name,
            )
        return await provider.grant_access(params)

    outcome = await execute_with_fallback(registry, grant_operation)
    result = outcome.result
    now = _utc_now()

    if _is_auth_failure(result):
        return await _degrade_and_defer(session, grant, result, job_id=job_id, now=now)

    if result.ok and result.requires_manual:
        _stamp_attempt(grant, job_id=job_id, now=now)
        await session.commit()
        logger.info(
            "provisioning_job_awaiting_manual access_grant_id=%s task_id=%s provider=%s",
            grant.id,
            result.task_id,
            outcome.provider,
        )
        return JobResult(kind=JOB_AWAITING_MANUAL, access_grant_id=grant.id, message=result.message)

    if result.ok:
        granted = await _mark_resolved(
            session,
            grant,
            expected_status=ACCESS_PENDING,
            values={
                "status": ACCESS_GRANTED,
                "granted_at": now,
                "revoked_at": None,
                "failure_reason": None,
                "last_attempt_at": now,
                "job_id": job_id,
            },
        )
        if not granted:
            logger.info("provisioning_job_grant_already_resolved access_grant_id=%s job_id=%s", grant.id, job_id)
            return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message="grant already resolved")
        await close_tasks_for_grant(session, grant.id, task_type=TASK_TYPE_GRANT)
        if outcome.provider == PROVIDER_API:
            await mark_credentials_used(session, registry.credential_id)
        await record_event(
            session=session,
            actor_type=ACTOR_WORKER,
            actor_id=job_id,
            event_type="access.granted",
            outcome="success",
            resource_type="access_grant",
            resource_id=grant.id,
            user_id=user.id,
            metadata={
                "resource_id": resource.id,
                "resource_name": resource.name,
                "external_id": resource.external_id,
                "username": username,
                "provider": outcome.provider,
                "used_fallback": outcome.used_fallback,
                "attempt": attempt,
                "is_resume": payload.is_resume,
            },
        )
        await session.commit()
        increment_counter("jobs.granted")
        logger.info(
            "provisioning_job_granted access_grant_id=%s job_id=%s provider=%s attempt=%s",
            grant.id,
            job_id,
            outcome.provider,
            attempt,
        )
        await notify_access_granted(email=user.email, username=username, resource_name=resource.name)
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message=result.message)

    if result.error_kind == ERROR_KIND_INVALID:
        return await _fail_grant_terminal(
            session,
            grant,
            reason=f"Invalid platform username: {result.message}",
            job_id=job_id,
            now=now,
            error_code="invalid_username",
        )

    return await _record_ordinary_failure(
        session,
        grant,
        result,
        action="grant",
        job_id=job_id,
        now=now,
        backoff_base_s=payload.backoff_base_s,
    )


async def _fail_revoke_terminal(
    session: AsyncSession,
    grant: AccessGrant,
    *,
    reason: str,
    job_id: str,
    now: datetime,
) -> JobResult:
    # Access is still live upstream, so the grant stays GRANTED for an operator to resolve.
    _stamp_attempt(grant, job_id=job_id, now=now)
    await record_event(
        session=session,
        actor_type=ACTOR_WORKER,
        actor_id=job_id,
        event_type="access.revoke_failed",
        outcome="failure",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        metadata={"reason": reason, "retry_count": grant.retry_count},
        error_code="revoke_failed",
    )
    await session.commit()
    increment_counter("jobs.revoke_failed")
    logger.error("provisioning_revoke_failed access_grant_id=%s job_id=%s", grant.id, job_id)
    await send_operator_alert(
        subject="Access revocation failed",
        message="Automated revocation gave up; access is still active upstream.",
        details=_grant_details(grant, reason=reason),
        urgency=URGENCY_CRITICAL,
        action_path=f"/admin/access?grant={grant.id}",
    )
    return JobResult(kind=JOB_FAILED, access_grant_id=grant.id, message=reason)


async def _process_revoke(
    session: AsyncSession,
    grant: AccessGrant,
    payload: AccessJobPayload,
    *,
    job_id: str,
    attempt: int,
) -> JobResult:
    if grant.status == ACCESS_REVOKED:
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message="access already revoked")
    if grant.status != ACCESS_GRANTED:
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message=f"grant is {grant.status}; skipped")

    now = _utc_now()
    deferred = await _defer_while_degraded(session, grant, job_id=job_id, now=now)
    if deferred is not None:
        return deferred

    user = grant.user
    resource = grant.resource
    username = (user.platform_username or "").strip()
    if not username:
        return await _fail_revoke_terminal(
            session, grant, reason=MISSING_USERNAME_REASON, job_id=job_id, now=now
        )

    registry = await build_provider_registry(session)
    params = RevokeParams(
        username=username,
        external_id=resource.external_id,
        resource_id=resource.id,
        access_grant_id=grant.id,
        user_id=user.id,
    )

    async def revoke_operation(provider: ProvisioningProvider) -> ProvisioningResult:
        return await provider.revoke_access(params)

    outcome = await execute_with_fallback(registry, revoke_operation)
    result = outcome.result
    now = _utc_now()

    if _is_auth_failure(result):
        return await _degrade_and_defer(session, grant, result, job_id=job_id, now=now)

    if result.ok and result.requires_manual:
        _stamp_attempt(grant, job_id=job_id, now=now)
        await session.commit()
        return JobResult(kind=JOB_AWAITING_MANUAL, access_grant_id=grant.id, message=result.message)

    if result.ok:
        revoked = await _mark_resolved(
            session,
            grant,
            expected_status=ACCESS_GRANTED,
            values={
                "status": ACCESS_REVOKED,
                "revoked_at": now,
                "failure_reason": None,
                "last_attempt_at": now,
                "job_id": job_id,
            },
        )
        if not revoked:
            logger.info("provisioning_job_revoke_already_resolved access_grant_id=%s job_id=%s", grant.id, job_id)
            return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message="grant already resolved")
        await close_tasks_for_grant(session, grant.id, task_type=TASK_TYPE_REVOKE)
        if outcome.provider == PROVIDER_API:
            await mark_credentials_used(session, registry.credential_id)
        await record_event(
            session=session,
            actor_type=ACTOR_WORKER,
            actor_id=job_id,
            event_type="access.revoked",
            outcome="success",
            resource_type="access_grant",
            resource_id=grant.id,
            user_id=user.id,
            metadata={
                "resource_id": resource.id,
                "username": username,
                "provider": outcome.provider,
                "attempt": attempt,
            },
        )
        await session.commit()
        increment_counter("jobs.revoked")
        logger.info("provisioning_job_revoked access_grant_id=%s job_id=%s", grant.id, job_id)
        await notify_access_revoked(email=user.email, username=username, resource_name=resource.name)
        return JobResult(kind=JOB_COMPLETED, access_grant_id=grant.id, message=result.message)

    return await _record_ordinary_failure(
        session,
        grant,
        result,
        action="revoke",
        job_id=job_id,
        now=now,
        backoff_base_s=payload.backoff_base_s,
    )
