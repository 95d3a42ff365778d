from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.core.errors import AccessGrantNotFoundError, AccessGrantStateError, GrantlineError
from grantline.domain.models import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_PENDING,
    ACCESS_REVOKED,
    TASK_TYPE_GRANT,
    TASK_TYPE_REVOKE,
    AccessGrant,
)
from grantline.persistence.db import pool_stats
from grantline.providers.factory import build_provider_registry, check_provider_health
from grantline.services.audit import ACTOR_ADMIN, record_event
from grantline.services.credentials import (
    credential_age_hours,
    credential_age_status,
    get_active_credential_metadata,
)
from grantline.services.jobs.queue import (
    AccessJobPayload,
    enqueue_access_job,
    get_queue_depth,
    get_worker_heartbeat,
    new_job_id,
)
from grantline.services.manual_tasks import (
    SOURCE_OPERATOR,
    EnsuredTask,
    count_pending_tasks,
    ensure_manual_task,
)
from grantline.services.provisioning_state import get_state
from grantline.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    set_gauge,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def get_grant(session: AsyncSession, grant_id: str) -> AccessGrant:
    grant = await session.get(AccessGrant, grant_id)
    if grant is None:
        raise AccessGrantNotFoundError(f"access grant not found: {grant_id}")
    return grant


async def retry_failed_grant(
    session: AsyncSession,
    grant_id: str,
    *,
    actor: str,
    request_id: str | None = None,
) -> str:
    """Put a FAILED grant back to PENDING with a fresh attempt budget and enqueue it.

    Returns the new job id.
    """
    grant = await get_grant(session, grant_id)
    if grant.status != ACCESS_FAILED:
        raise AccessGrantStateError(f"only FAILED grants can be retried; grant is {grant.status}")
    previous_reason = grant.failure_reason
    job_id = new_job_id("retry", grant.id)
    grant.status = ACCESS_PENDING
    grant.retry_count = 0
    grant.failure_reason = None
    grant.job_id = job_id
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=actor,
        event_type="access.retry_requested",
        outcome="success",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        request_id=request_id,
        metadata={"previous_failure_reason": previous_reason, "job_id": job_id},
        best_effort=False,
    )
    await session.commit()
    logger.info("access_retry_requested access_grant_id=%s job_id=%s actor=%s", grant.id, job_id, actor)
    await enqueue_access_job(
        AccessJobPayload(access_grant_id=grant.id, action="grant", request_id=request_id or uuid4().hex),
        job_id=job_id,
    )
    return job_id


async def request_revocation(
    session: AsyncSession,
    grant_id: str,
    *,
    actor: str,
    reason: str | None = None,
    request_id: str | None = None,
) -> str:
    # Revocation gets its own attempt budget; the grant stays GRANTED until the upstream call succeeds.
    grant = await get_grant(session, grant_id)
    if grant.status != ACCESS_GRANTED:
        raise AccessGrantStateError(f"only GRANTED grants can be revoked; grant is {grant.status}")
    job_id = new_job_id("revoke", grant.id)
    grant.retry_count = 0
    grant.job_id = job_id
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=actor,
        event_type="access.revoke_requested",
        outcome="success",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        request_id=request_id,
        metadata={"reason": reason, "job_id": job_id},
        best_effort=False,
    )
    await session.commit()
    logger.info("access_revoke_requested access_grant_id=%s job_id=%s actor=%s", grant.id, job_id, actor)
    await enqueue_access_job(
        AccessJobPayload(access_grant_id=grant.id, action="revoke", request_id=request_id or uuid4().hex),
        job_id=job_id,
    )
    return job_id


async def create_manual_fallback(
    session: AsyncSession,
    grant_id: str,
    *,
    actor: str,
    task_type: str = TASK_TYPE_GRANT,
    notes: str | None = None,
) -> EnsuredTask:
    """Hand a grant to the operator queue explicitly.

    This is the only way a failed automated grant turns into a manual task;
    the job processor never falls back to manual on its own.
    """
    grant = await get_grant(session, grant_id)
    username = (grant.user.platform_username or "").strip()
    if not username:
        raise AccessGrantStateError("user has no platform username; a manual task cannot be created")
    if task_type == TASK_TYPE_GRANT:
        if grant.status not in (ACCESS_PENDING, ACCESS_FAILED):
            raise AccessGrantStateError(f"cannot create a manual grant task for a {grant.status} grant")
        if grant.status == ACCESS_FAILED:
            grant.status = ACCESS_PENDING
            grant.retry_count = 0
            grant.failure_reason = None
    elif task_type == TASK_TYPE_REVOKE:
        if grant.status != ACCESS_GRANTED:
            raise AccessGrantStateError(f"cannot create a manual revoke task for a {grant.status} grant")
    else:
        raise AccessGrantStateError(f"unsupported manual task type: {task_type}")

    ensured = await ensure_manual_task(
        session,
        task_type=task_type,
        username=username,
        resource_id=grant.resource_id,
        access_grant_id=grant.id,
        user_id=grant.user_id,
        source=SOURCE_OPERATOR,
        notes=notes,
    )
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=actor,
        event_type="access.manual_fallback_created",
        outcome="success",
        resource_type="access_grant",
        resource_id=grant.id,
        user_id=grant.user_id,
        metadata={"task_id": ensured.task.id, "type": task_type, "created": ensured.created},
        best_effort=False,
    )
    await session.commit()
    return ensured


async def grant_stats(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(select(AccessGrant.status, func.count()).group_by(AccessGrant.status))
    ).all()
    by_status = {str(status): int(count) for status, count in rows}
    return {
        "pending": by_status.get(ACCESS_PENDING, 0),
        "failed": by_status.get(ACCESS_FAILED, 0),
        "granted": by_status.get(ACCESS_GRANTED, 0),
        "revoked": by_status.get(ACCESS_REVOKED, 0),
        "manual_task_count": await count_pending_tasks(session),
    }


async def _provider_health(session: AsyncSession) -> dict[str, Any]:
    try:
        registry = await build_provider_registry(session)
    except GrantlineError as exc:
        return {"status": "misconfigured", "error": str(exc)}
    return check_provider_health(registry)


async def _queue_health() -> dict[str, Any]:
    settings = get_settings()
    heartbeat = await get_worker_heartbeat()
    stale = True
    if heartbeat is not None:
        age_s = (_utc_now() - _as_utc(heartbeat)).total_seconds()
        stale = age_s > settings.worker_heartbeat_stale_after_s
    return {
        "mode": settings.job_execution_mode,
        "depth": await get_queue_depth(),
        "worker_heartbeat_at": heartbeat.isoformat() if heartbeat else None,
        "worker_heartbeat_stale": stale if settings.job_execution_mode.lower() != "inline" else None,
    }


async def get_provisioning_health(session: AsyncSession) -> dict[str, Any]:
    """Operator status view: state, grant counts, providers, credentials and queue."""
    state = await get_state(session)
    credential = await get_active_credential_metadata(session)
    credential_view: dict[str, Any] | None = None
    if credential is not None:
        age_hours = credential_age_hours(credential.created_at)
        credential_view = {
            "id": credential.id,
            "api_url": credential.api_url,
            "created_by": credential.created_by,
            "created_at": _as_utc(credential.created_at).isoformat() if credential.created_at else None,
            "validated_at": _as_utc(credential.validated_at).isoformat() if credential.validated_at else None,
            "last_used_at": _as_utc(credential.last_used_at).isoformat() if credential.last_used_at else None,
            "age_hours": age_hours,
            "age_status": credential_age_status(age_hours),
        }
    stats = await grant_stats(session)
    queue = await _queue_health()
    set_gauge("grants.pending", stats["pending"])
    set_gauge("grants.failed", stats["failed"])
    set_gauge("manual_tasks.pending", stats["manual_task_count"])
    if queue["depth"] is not None:
        set_gauge("queue.depth", queue["depth"])
    return {
        "state": state.state,
        "reason": state.reason,
        "incident_id": state.incident_id,
        "degraded_at": state.degraded_at.isoformat() if state.degraded_at else None,
        "healthy_at": state.healthy_at.isoformat() if state.healthy_at else None,
        "last_checked_at": state.last_checked_at.isoformat() if state.last_checked_at else None,
        "stats": stats,
        "providers": await _provider_health(session),
        "credentials": credential_view,
        "queue": queue,
        "database": pool_stats(),
        "telemetry": {
            "counters": counters_snapshot(),
            "gauges": gauges_snapshot(),
            "upstream_latency": external_latency_by_integration(3600),
        },
    }
