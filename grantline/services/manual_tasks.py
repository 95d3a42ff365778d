from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.errors import ManualTaskNotFoundError, ManualTaskStateError
from grantline.domain.models import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_REVOKED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_TYPE_GRANT,
    TASK_TYPE_REVOKE,
    AccessGrant,
    ManualTask,
    Resource,
)
from grantline.services.audit import ACTOR_ADMIN, ACTOR_SYSTEM, record_event
from grantline.services.notifications import (
    URGENCY_NORMAL,
    notify_access_failed,
    notify_access_granted,
    notify_access_revoked,
    send_operator_alert,
)
from grantline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SOURCE_PROVIDER = "provider"
SOURCE_AUTO_PROVISION_DISABLED = "auto_provision_disabled"
SOURCE_OPERATOR = "operator"


@dataclass(frozen=True)
class EnsuredTask:
    task: ManualTask
    created: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _find_pending_for_grant(
    session: AsyncSession,
    *,
    access_grant_id: str,
    task_type: str,
) -> ManualTask | None:
    return (
        await session.execute(
            select(ManualTask).where(
                ManualTask.access_grant_id == access_grant_id,
                ManualTask.type == task_type,
                ManualTask.status == TASK_PENDING,
            )
        )
    ).scalar_one_or_none()


async def ensure_manual_task(
    session: AsyncSession,
    *,
    task_type: str,
    username: str,
    resource_id: str,
    access_grant_id: str | None = None,
    user_id: str | None = None,
    source: str = SOURCE_PROVIDER,
    notes: str | None = None,
    notify: bool = True,
) -> EnsuredTask:
    """Return the open task for a grant and action, creating it when missing.

    Repeated dispatch of the same grant reuses the pending task, so the
    operator is notified once per task rather than once per job attempt. The
    task is flushed into the caller's transaction, not committed.
    """
    if task_type not in (TASK_TYPE_GRANT, TASK_TYPE_REVOKE):
        raise ValueError(f"unsupported manual task type: {task_type}")
    if access_grant_id is not None:
        existing = await _find_pending_for_grant(
            session, access_grant_id=access_grant_id, task_type=task_type
        )
        if existing is not None:
            return EnsuredTask(task=existing, created=False)

    task = ManualTask(
        id=f"manual_{task_type}_{uuid4().hex[:16]}",
        type=task_type,
        username=username,
        resource_id=resource_id,
        access_grant_id=access_grant_id,
        user_id=user_id,
        status=TASK_PENDING,
        source=source,
        notes=notes,
        created_at=_utc_now(),
    )
    try:
        async with session.begin_nested():
            session.add(task)
    except IntegrityError:
        # A concurrent caller opened the task first.
        existing = await _find_pending_for_grant(
            session, access_grant_id=access_grant_id or "", task_type=task_type
        )
        if existing is None:
            raise
        return EnsuredTask(task=existing, created=False)

    await record_event(
        session=session,
        actor_type=ACTOR_SYSTEM,
        event_type="provisioning.manual_task_created",
        outcome="success",
        resource_type="manual_task",
        resource_id=task.id,
        user_id=user_id,
        metadata={
            "type": task_type,
            "username": username,
            "resource_id": resource_id,
            "access_grant_id": access_grant_id,
            "source": source,
        },
    )
    increment_counter(f"manual_tasks.created.{task_type}")
    logger.info(
        "manual_task_created task_id=%s type=%s access_grant_id=%s source=%s",
        task.id,
        task_type,
        access_grant_id,
        source,
    )
    if notify:
        resource = await session.get(Resource, resource_id)
        await send_operator_alert(
            subject=(
                "Manual provisioning required"
                if task_type == TASK_TYPE_GRANT
                else "Manual access revocation required"
            ),
            message=f"A manual {task_type} task has been created and needs an operator.",
            details={
                "task_id": task.id,
                "username": username,
                "resource": resource.name if resource is not None else resource_id,
                "external_id": resource.external_id if resource is not None else None,
                "source": source,
            },
            urgency=URGENCY_NORMAL,
            action_path="/admin/provisioning",
        )
    return EnsuredTask(task=task, created=True)


async def get_task(session: AsyncSession, task_id: str) -> ManualTask:
    task = await session.get(ManualTask, task_id)
    if task is None:
        raise ManualTaskNotFoundError(f"manual task not found: {task_id}")
    return task


async def list_pending_tasks(session: AsyncSession, *, limit: int = 100) -> list[ManualTask]:
    rows = (
        await session.execute(
            select(ManualTask)
            .where(ManualTask.status == TASK_PENDING)
            .order_by(ManualTask.created_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    return list(rows)


async def count_pending_tasks(session: AsyncSession) -> int:
    return int(
        (
            await session.execute(
                select(func.count()).select_from(ManualTask).where(ManualTask.status == TASK_PENDING)
            )
        ).scalar_one()
    )


async def has_pending_task(session: AsyncSession, access_grant_id: str) -> bool:
    count = (
        await session.execute(
            select(func.count())
            .select_from(ManualTask)
            .where(ManualTask.access_grant_id == access_grant_id, ManualTask.status == TASK_PENDING)
        )
    ).scalar_one()
    return int(count) > 0


async def _claim_task(
    session: AsyncSession,
    task_id: str,
    *,
    status: str,
    actor: str,
    notes: str | None,
) -> ManualTask:
    # Conditional update so two operators cannot both resolve one task.
    task = await get_task(session, task_id)
    if task.status != TASK_PENDING:
        raise ManualTaskStateError(f"manual task {task_id} is already {task.status}")
    now = _utc_now()
    result = await session.execute(
        update(ManualTask)
        .where(ManualTask.id == task_id, ManualTask.status == TASK_PENDING)
        .values(status=status, completed_by=actor, completed_at=now, notes=notes)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await session.rollback()
        raise ManualTaskStateError(f"manual task {task_id} was resolved concurrently")
    await session.refresh(task)
    return task


async def complete_task(
    session: AsyncSession,
    task_id: str,
    *,
    completed_by: str,
    notes: str | None = None,
) -> ManualTask:
    """Mark a task done and reconcile its linked access grant."""
    task = await _claim_task(session, task_id, status=TASK_COMPLETED, actor=completed_by, notes=notes)
    grant = await session.get(AccessGrant, task.access_grant_id) if task.access_grant_id else None
    now = _utc_now()
    if grant is not None:
        if task.type == TASK_TYPE_GRANT:
            grant.status = ACCESS_GRANTED
            grant.granted_at = now
            grant.revoked_at = None
        else:
            grant.status = ACCESS_REVOKED
            grant.revoked_at = now
        grant.failure_reason = None
        grant.last_attempt_at = now
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=completed_by,
        event_type="provisioning.manual_task_completed",
        outcome="success",
        resource_type="manual_task",
        resource_id=task.id,
        user_id=task.user_id,
        metadata={
            "type": task.type,
            "username": task.username,
            "resource_id": task.resource_id,
            "access_grant_id": task.access_grant_id,
            "notes": notes,
        },
        best_effort=False,
    )
    await session.commit()
    increment_counter(f"manual_tasks.completed.{task.type}")
    logger.info("manual_task_completed task_id=%s completed_by=%s", task.id, completed_by)

    if grant is not None:
        if task.type == TASK_TYPE_GRANT:
            await notify_access_granted(
                email=grant.user.email,
                username=task.username,
                resource_name=grant.resource.name,
            )
        else:
            await notify_access_revoked(
                email=grant.user.email,
                username=task.username,
                resource_name=grant.resource.name,
            )
    return task


async def fail_task(
    session: AsyncSession,
    task_id: str,
    *,
    failed_by: str,
    reason: str,
) -> ManualTask:
    """Mark a task failed; a failed grant task also fails its linked grant."""
    task = await _claim_task(session, task_id, status=TASK_FAILED, actor=failed_by, notes=reason)
    grant = await session.get(AccessGrant, task.access_grant_id) if task.access_grant_id else None
    failed_grant = grant is not None and task.type == TASK_TYPE_GRANT and grant.status != ACCESS_GRANTED
    if failed_grant:
        grant.status = ACCESS_FAILED
        grant.failure_reason = f"Manual provisioning failed: {reason}"
        grant.last_attempt_at = _utc_now()
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN,
        actor_id=failed_by,
        event_type="provisioning.manual_task_failed",
        outcome="failure",
        resource_type="manual_task",
        resource_id=task.id,
        user_id=task.user_id,
        metadata={
            "type": task.type,
            "username": task.username,
            "resource_id": task.resource_id,
            "access_grant_id": task.access_grant_id,
            "reason": reason,
        },
        best_effort=False,
    )
    await session.commit()
    increment_counter(f"manual_tasks.failed.{task.type}")
    logger.info("manual_task_failed task_id=%s failed_by=%s", task.id, failed_by)

    if failed_grant:
        await notify_access_failed(
            email=grant.user.email,
            username=task.username,
            resource_name=grant.resource.name,
            reason=reason,
        )
    return task


async def close_tasks_for_grant(
    session: AsyncSession,
    access_grant_id: str,
    *,
    task_type: str,
    closed_by: str = "automation",
) -> int:
    # Automation finished the work; pending tasks for it are now moot. Caller commits.
    result = await session.execute(
        update(ManualTask)
        .where(
            ManualTask.access_grant_id == access_grant_id,
            ManualTask.type == task_type,
            ManualTask.status == TASK_PENDING,
        )
        .values(
            status=TASK_COMPLETED,
            completed_by=closed_by,
            completed_at=_utc_now(),
            notes="Completed by automated provisioning",
        )
        .execution_options(synchronize_session=False)
    )
    closed = int(result.rowcount or 0)
    if closed:
        logger.info(
            "manual_tasks_closed access_grant_id=%s type=%s count=%s",
            access_grant_id,
            task_type,
            closed,
        )
    return closed
