from __future__ import annotations

import pytest

from grantline.core.errors import (
    AccessGrantNotFoundError,
    AccessGrantStateError,
    ManualTaskNotFoundError,
    ManualTaskStateError,
)
from grantline.domain.models import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_PENDING,
    ACCESS_REVOKED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_TYPE_GRANT,
    TASK_TYPE_REVOKE,
)
from grantline.persistence.db import SessionLocal
from grantline.services.access_grants import create_manual_fallback, request_revocation, retry_failed_grant
from grantline.services.manual_tasks import (
    SOURCE_OPERATOR,
    complete_task,
    count_pending_tasks,
    ensure_manual_task,
    fail_task,
    has_pending_task,
    list_pending_tasks,
)
from grantline.services.notifications import EVENT_ACCESS_FAILED, EVENT_ACCESS_GRANTED, EVENT_OPERATOR_ALERT
from grantline.tests.utils.seed import audit_events, load_grant, load_tasks_for_grant, seed_grant, seed_resource, seed_user


async def _grant(status: str = ACCESS_PENDING, **kwargs) -> tuple[str, str, str]:
    user_id = await seed_user(username="trader_one")
    resource_id = await seed_resource()
    grant_id = await seed_grant(user_id, resource_id, status=status, **kwargs)
    return user_id, resource_id, grant_id


async def _open_task(grant_id: str, user_id: str, resource_id: str, *, task_type: str = TASK_TYPE_GRANT):
    async with SessionLocal() as session:
        ensured = await ensure_manual_task(
            session,
            task_type=task_type,
            username="trader_one",
            resource_id=resource_id,
            access_grant_id=grant_id,
            user_id=user_id,
        )
        await session.commit()
    return ensured


@pytest.mark.asyncio
async def test_ensure_reuses_the_pending_task(notifications) -> None:
    user_id, resource_id, grant_id = await _grant()

    first = await _open_task(grant_id, user_id, resource_id)
    second = await _open_task(grant_id, user_id, resource_id)

    assert first.created is True
    assert second.created is False
    assert second.task.id == first.task.id
    alerts = [payload for event_type, payload in notifications if event_type == EVENT_OPERATOR_ALERT]
    assert len(alerts) == 1
    assert alerts[0]["details"]["task_id"] == first.task.id
    assert len(await audit_events("provisioning.manual_task_created")) == 1

    async with SessionLocal() as session:
        assert await has_pending_task(session, grant_id) is True
        assert await count_pending_tasks(session) == 1
        assert [task.id for task in await list_pending_tasks(session)] == [first.task.id]


@pytest.mark.asyncio
async def test_grant_and_revoke_tasks_are_tracked_separately() -> None:
    user_id, resource_id, grant_id = await _grant(status=ACCESS_GRANTED)

    grant_task = await _open_task(grant_id, user_id, resource_id)
    revoke_task = await _open_task(grant_id, user_id, resource_id, task_type=TASK_TYPE_REVOKE)

    assert grant_task.task.id != revoke_task.task.id
    assert len(await load_tasks_for_grant(grant_id)) == 2


@pytest.mark.asyncio
async def test_completing_a_grant_task_grants_access(notifications) -> None:
    user_id, resource_id, grant_id = await _grant(failure_reason="Awaiting manual provisioning")
    ensured = await _open_task(grant_id, user_id, resource_id)

    async with SessionLocal() as session:
        task = await complete_task(session, ensured.task.id, completed_by="operator-1", notes="added by hand")

    assert task.status == TASK_COMPLETED
    assert task.completed_by == "operator-1"
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.granted_at is not None
    assert grant.failure_reason is None
    assert any(event_type == EVENT_ACCESS_GRANTED for event_type, _ in notifications)

    async with SessionLocal() as session:
        with pytest.raises(ManualTaskStateError):
            await complete_task(session, ensured.task.id, completed_by="operator-2")


@pytest.mark.asyncio
async def test_completing_a_revoke_task_revokes_access() -> None:
    user_id, resource_id, grant_id = await _grant(status=ACCESS_GRANTED)
    ensured = await _open_task(grant_id, user_id, resource_id, task_type=TASK_TYPE_REVOKE)

    async with SessionLocal() as session:
        await complete_task(session, ensured.task.id, completed_by="operator-1")

    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_REVOKED
    assert grant.revoked_at is not None


@pytest.mark.asyncio
async def test_failing_a_grant_task_fails_the_grant(notifications) -> None:
    user_id, resource_id, grant_id = await _grant()
    ensured = await _open_task(grant_id, user_id, resource_id)

    async with SessionLocal() as session:
        task = await fail_task(session, ensured.task.id, failed_by="operator-1", reason="user not found")

    assert task.status == TASK_FAILED
    assert task.notes == "user not found"
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_FAILED
    assert grant.failure_reason == "Manual provisioning failed: user not found"
    assert any(event_type == EVENT_ACCESS_FAILED for event_type, _ in notifications)


@pytest.mark.asyncio
async def test_failing_a_revoke_task_keeps_access_granted() -> None:
    user_id, resource_id, grant_id = await _grant(status=ACCESS_GRANTED)
    ensured = await _open_task(grant_id, user_id, resource_id, task_type=TASK_TYPE_REVOKE)

    async with SessionLocal() as session:
        await fail_task(session, ensured.task.id, failed_by="operator-1", reason="upstream unreachable")

    assert (await load_grant(grant_id)).status == ACCESS_GRANTED


@pytest.mark.asyncio
async def test_unknown_task_is_reported() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ManualTaskNotFoundError):
            await complete_task(session, "manual_grant_missing", completed_by="operator-1")


@pytest.mark.asyncio
async def test_manual_fallback_reopens_a_failed_grant() -> None:
    _, _, grant_id = await _grant(status=ACCESS_FAILED, retry_count=5, failure_reason="upstream timed out")

    async with SessionLocal() as session:
        first = await create_manual_fallback(session, grant_id, actor="admin-1", notes="customer escalated")
    async with SessionLocal() as session:
        second = await create_manual_fallback(session, grant_id, actor="admin-1")

    assert first.created is True
    assert second.created is False
    assert first.task.source == SOURCE_OPERATOR
    assert first.task.status == TASK_PENDING
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0
    assert grant.failure_reason is None
    assert len(await audit_events("access.manual_fallback_created")) == 2


@pytest.mark.asyncio
async def test_manual_fallback_checks_grant_state() -> None:
    _, _, granted_id = await _grant(status=ACCESS_GRANTED)
    _, _, pending_id = await _grant()

    async with SessionLocal() as session:
        with pytest.raises(AccessGrantStateError):
            await create_manual_fallback(session, granted_id, actor="admin-1")
    async with SessionLocal() as session:
        with pytest.raises(AccessGrantStateError):
            await create_manual_fallback(session, pending_id, actor="admin-1", task_type=TASK_TYPE_REVOKE)
    async with SessionLocal() as session:
        with pytest.raises(AccessGrantNotFoundError):
            await create_manual_fallback(session, "grant-missing", actor="admin-1")


@pytest.mark.asyncio
async def test_manual_fallback_needs_a_username() -> None:
    user_id = await seed_user(username=None)
    grant_id = await seed_grant(user_id, await seed_resource(), status=ACCESS_FAILED)

    async with SessionLocal() as session:
        with pytest.raises(AccessGrantStateError, match="platform username"):
            await create_manual_fallback(session, grant_id, actor="admin-1")


@pytest.mark.asyncio
async def test_retry_resets_a_failed_grant(inline_jobs) -> None:
    _, _, grant_id = await _grant(status=ACCESS_FAILED, retry_count=5, failure_reason="upstream timed out")

    async with SessionLocal() as session:
        job_id = await retry_failed_grant(session, grant_id, actor="admin-1")

    assert job_id.startswith(f"retry-{grant_id}-")
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0
    assert grant.job_id == job_id
    assert [(payload.access_grant_id, queued_id) for payload, queued_id in inline_jobs] == [(grant_id, job_id)]
    events = await audit_events("access.retry_requested")
    assert events[0].metadata_json["previous_failure_reason"] == "upstream timed out"


@pytest.mark.asyncio
async def test_retry_rejects_grants_that_have_not_failed(inline_jobs) -> None:
    _, _, grant_id = await _grant()

    async with SessionLocal() as session:
        with pytest.raises(AccessGrantStateError):
            await retry_failed_grant(session, grant_id, actor="admin-1")

    assert inline_jobs == []


@pytest.mark.asyncio
async def test_revocation_is_queued_for_granted_access(inline_jobs) -> None:
    _, _, granted_id = await _grant(status=ACCESS_GRANTED, retry_count=2)
    _, _, pending_id = await _grant()

    async with SessionLocal() as session:
        job_id = await request_revocation(session, granted_id, actor="admin-1", reason="refund")
    async with SessionLocal() as session:
        with pytest.raises(AccessGrantStateError):
            await request_revocation(session, pending_id, actor="admin-1")

    assert job_id.startswith(f"revoke-{granted_id}-")
    payload, queued_id = inline_jobs[0]
    assert payload.action == "revoke"
    assert queued_id == job_id
    grant = await load_grant(granted_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.retry_count == 0
