from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from grantline.core.config import get_settings
from grantline.domain.models import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_PENDING,
    ACCESS_REVOKED,
    STATE_DEGRADED,
    STATE_HEALTHY,
    TASK_COMPLETED,
    TASK_PENDING,
    TASK_TYPE_GRANT,
    AccessGrant,
)
from grantline.persistence.db import SessionLocal
from grantline.services.jobs.processor import AWAITING_MANUAL_REASON, MISSING_USERNAME_REASON, process_access_job
from grantline.services.jobs.queue import (
    JOB_AWAITING_MANUAL,
    JOB_COMPLETED,
    JOB_DEFER,
    JOB_FAILED,
    JOB_RETRY,
    AccessJobPayload,
    enqueue_access_job,
    job_max_tries,
)
from grantline.services.manual_tasks import SOURCE_AUTO_PROVISION_DISABLED, SOURCE_OPERATOR, SOURCE_PROVIDER, ensure_manual_task
from grantline.services.notifications import EVENT_ACCESS_FAILED, EVENT_ACCESS_GRANTED, EVENT_OPERATOR_ALERT
from grantline.services.provisioning_state import get_state
from grantline.tests.utils.seed import (
    audit_events,
    load_grant,
    load_tasks_for_grant,
    seed_grant,
    seed_resource,
    seed_user,
)
from grantline.tests.utils.upstream import MODE_AUTH, MODE_INVALID_USER, MODE_OK, MODE_SERVER_ERROR, MODE_TIMEOUT


async def _run(grant_id: str, *, attempt: int = 1, action: str = "grant"):
    payload = AccessJobPayload(access_grant_id=grant_id, action=action, request_id="req-test")
    return await process_access_job(payload, job_id=f"{action}-{grant_id}", attempt=attempt)


async def _current_state():
    async with SessionLocal() as session:
        return await get_state(session)


def _alerts(notifications) -> list[dict]:
    return [payload for event_type, payload in notifications if event_type == EVENT_OPERATOR_ALERT]


async def _pending_grant(*, username: str | None = "trader_one", auto_provision: bool = True) -> str:
    user_id = await seed_user(username=username)
    resource_id = await seed_resource(auto_provision=auto_provision)
    return await seed_grant(user_id, resource_id)


@pytest.mark.asyncio
async def test_transient_failures_retry_until_the_attempt_cap(upstream, notifications) -> None:
    upstream.mode = MODE_TIMEOUT
    grant_id = await _pending_grant()

    for attempt in range(1, 5):
        result = await _run(grant_id, attempt=attempt)
        assert result.kind == JOB_RETRY
        grant = await load_grant(grant_id)
        assert grant.status == ACCESS_PENDING
        assert grant.retry_count == attempt
        assert (await _current_state()).state == STATE_HEALTHY

    result = await _run(grant_id, attempt=5)

    assert result.kind == JOB_FAILED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_FAILED
    assert grant.retry_count == 5
    assert "timed out" in (grant.failure_reason or "")
    assert (await _current_state()).state == STATE_HEALTHY
    assert [alert["urgency"] for alert in _alerts(notifications)] == ["HIGH", "HIGH", "CRITICAL"]
    assert any(event_type == EVENT_ACCESS_FAILED for event_type, _ in notifications)
    assert len(await audit_events("access.failed")) == 1


@pytest.mark.asyncio
async def test_retry_backoff_grows_with_retry_count(upstream) -> None:
    upstream.mode = MODE_SERVER_ERROR
    grant_id = await _pending_grant()
    base = get_settings().provisioning_backoff_base_s

    first = await _run(grant_id, attempt=1)
    second = await _run(grant_id, attempt=2)

    assert first.retry_in_s == base
    assert second.retry_in_s == base * 2


@pytest.mark.asyncio
async def test_auth_failure_degrades_and_defers_other_grants(upstream, notifications) -> None:
    upstream.mode = MODE_AUTH
    first_grant = await _pending_grant()
    second_grant = await _pending_grant(username="trader_two")

    result = await _run(first_grant)

    assert result.kind == JOB_DEFER
    state = await _current_state()
    assert state.state == STATE_DEGRADED
    assert state.incident_id is not None
    assert result.incident_id == state.incident_id
    grant = await load_grant(first_grant)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0
    assert grant.failure_reason
    degraded_alerts = [alert for alert in _alerts(notifications) if "DEGRADED" in alert["subject"]]
    assert len(degraded_alerts) == 1
    assert degraded_alerts[0]["urgency"] == "CRITICAL"
    assert degraded_alerts[0]["details"]["pending_grants"] == 2

    calls_before = len(upstream.calls)
    deferred = await _run(second_grant)

    assert deferred.kind == JOB_DEFER
    assert deferred.incident_id == state.incident_id
    assert len(upstream.calls) == calls_before
    other = await load_grant(second_grant)
    assert other.status == ACCESS_PENDING
    assert other.retry_count == 0
    assert state.incident_id in (other.failure_reason or "")
    assert len(await audit_events("provisioning.state_degraded")) == 1


@pytest.mark.asyncio
async def test_deferrals_never_exhaust_the_attempt_budget(upstream) -> None:
    upstream.mode = MODE_AUTH
    grant_id = await _pending_grant()
    await _run(grant_id)
    max_attempts = get_settings().provisioning_max_attempts

    for attempt in range(1, max_attempts * 3):
        result = await _run(grant_id, attempt=attempt)
        assert result.kind == JOB_DEFER

    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0


@pytest.mark.asyncio
async def test_worker_never_recovers_the_state_on_its_own(upstream) -> None:
    upstream.mode = MODE_AUTH
    grant_id = await _pending_grant()
    await _run(grant_id)
    incident_id = (await _current_state()).incident_id

    # The upstream is healthy again, but nobody has validated credentials.
    upstream.mode = MODE_OK
    calls_before = len(upstream.calls)
    for attempt in range(1, 6):
        assert (await _run(grant_id, attempt=attempt)).kind == JOB_DEFER

    state = await _current_state()
    assert state.state == STATE_DEGRADED
    assert state.incident_id == incident_id
    assert len(upstream.calls) == calls_before
    assert (await load_grant(grant_id)).status == ACCESS_PENDING


@pytest.mark.asyncio
async def test_missing_api_credentials_degrade_like_a_rejection(monkeypatch) -> None:
    monkeypatch.setenv("PROVISIONING_MODE", "api")
    get_settings.cache_clear()
    grant_id = await _pending_grant()

    result = await _run(grant_id)

    assert result.kind == JOB_DEFER
    state = await _current_state()
    assert state.state == STATE_DEGRADED
    assert "not configured" in (state.reason or "")
    assert (await load_grant(grant_id)).retry_count == 0


@pytest.mark.asyncio
async def test_auto_provision_disabled_waits_for_an_operator(upstream, notifications) -> None:
    grant_id = await _pending_grant(auto_provision=False)

    for attempt in range(1, 8):
        result = await _run(grant_id, attempt=attempt)
        assert result.kind == JOB_AWAITING_MANUAL

    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0
    tasks = await load_tasks_for_grant(grant_id)
    assert len(tasks) == 1
    assert tasks[0].status == TASK_PENDING
    assert tasks[0].source == SOURCE_AUTO_PROVISION_DISABLED
    assert tasks[0].notes == AWAITING_MANUAL_REASON
    assert upstream.calls == []
    manual_alerts = [alert for alert in _alerts(notifications) if alert["subject"].endswith("Manual provisioning required")]
    assert len(manual_alerts) == 1


@pytest.mark.asyncio
async def test_manual_primary_creates_one_task_per_grant() -> None:
    # No credentials anywhere and no explicit mode: the manual provider is primary.
    grant_id = await _pending_grant()

    first = await _run(grant_id)
    second = await _run(grant_id, attempt=2)

    assert first.kind == JOB_AWAITING_MANUAL
    assert second.kind == JOB_AWAITING_MANUAL
    tasks = await load_tasks_for_grant(grant_id)
    assert len(tasks) == 1
    assert tasks[0].source == SOURCE_PROVIDER
    assert (await _current_state()).state == STATE_HEALTHY


@pytest.mark.asyncio
async def test_successful_grant_closes_open_manual_task(upstream, notifications) -> None:
    user_id = await seed_user(username="trader_one")
    resource_id = await seed_resource()
    grant_id = await seed_grant(user_id, resource_id, failure_reason="earlier timeout")
    async with SessionLocal() as session:
        await ensure_manual_task(
            session,
            task_type=TASK_TYPE_GRANT,
            username="trader_one",
            resource_id=resource_id,
            access_grant_id=grant_id,
            user_id=user_id,
            source=SOURCE_OPERATOR,
            notify=False,
        )
        await session.commit()

    result = await _run(grant_id)

    assert result.kind == JOB_COMPLETED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.granted_at is not None
    assert grant.failure_reason is None
    assert upstream.granted == ["trader_one"]
    tasks = await load_tasks_for_grant(grant_id)
    assert [task.status for task in tasks] == [TASK_COMPLETED]
    assert any(event_type == EVENT_ACCESS_GRANTED for event_type, _ in notifications)
    granted = await audit_events("access.granted")
    assert len(granted) == 1
    assert granted[0].metadata_json["provider"] == "api"


@pytest.mark.asyncio
async def test_already_granted_or_resolved_grants_are_skipped(upstream) -> None:
    user_id = await seed_user()
    granted_id = await seed_grant(user_id, await seed_resource(), status=ACCESS_GRANTED)
    failed_id = await seed_grant(user_id, await seed_resource(), status=ACCESS_FAILED)

    assert (await _run(granted_id)).kind == JOB_COMPLETED
    assert (await _run(failed_id)).kind == JOB_COMPLETED
    assert upstream.calls == []
    assert (await load_grant(failed_id)).status == ACCESS_FAILED


@pytest.mark.asyncio
async def test_missing_grant_fails_the_job() -> None:
    result = await _run("grant-does-not-exist")
    assert result.kind == JOB_FAILED


@pytest.mark.asyncio
async def test_missing_username_fails_immediately(upstream) -> None:
    grant_id = await _pending_grant(username=None)

    result = await _run(grant_id)

    assert result.kind == JOB_FAILED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_FAILED
    assert grant.failure_reason == MISSING_USERNAME_REASON
    assert grant.retry_count == 0
    assert upstream.calls == []
    events = await audit_events("access.failed")
    assert events[0].error_code == "missing_username"


@pytest.mark.asyncio
async def test_rejected_username_fails_without_retry(upstream) -> None:
    upstream.mode = MODE_INVALID_USER
    grant_id = await _pending_grant(username="no_such_trader")

    result = await _run(grant_id)

    assert result.kind == JOB_FAILED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_FAILED
    assert grant.retry_count == 0
    assert (grant.failure_reason or "").startswith("Invalid platform username")
    assert upstream.granted == []


@pytest.mark.asyncio
async def test_revoke_marks_grant_revoked(upstream) -> None:
    user_id = await seed_user(username="trader_one")
    grant_id = await seed_grant(user_id, await seed_resource(), status=ACCESS_GRANTED)

    result = await _run(grant_id, action="revoke")

    assert result.kind == JOB_COMPLETED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_REVOKED
    assert grant.revoked_at is not None
    assert upstream.revoked == ["trader_one"]


@pytest.mark.asyncio
async def test_exhausted_revoke_keeps_access_granted(upstream, notifications) -> None:
    upstream.mode = MODE_SERVER_ERROR
    user_id = await seed_user()
    grant_id = await seed_grant(user_id, await seed_resource(), status=ACCESS_GRANTED)

    kinds = [(await _run(grant_id, attempt=attempt, action="revoke")).kind for attempt in range(1, 6)]

    assert kinds == [JOB_RETRY, JOB_RETRY, JOB_RETRY, JOB_RETRY, JOB_FAILED]
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.failure_reason is None
    assert len(await audit_events("access.revoke_failed")) == 1
    assert _alerts(notifications)[-1]["urgency"] == "CRITICAL"


@pytest.mark.asyncio
async def test_replaced_job_stops_before_calling_upstream(upstream) -> None:
    upstream.delay_s = 0.05
    current_job_id = "resume-current"
    grant_id = await seed_grant(await seed_user(username="trader_one"), await seed_resource(), job_id=current_job_id)
    parked = AccessJobPayload(
        access_grant_id=grant_id,
        request_id="req-parked",
        deferrals=1,
        supersedes=["grant-original"],
    )
    resumed = AccessJobPayload(access_grant_id=grant_id, request_id="req-resume", is_resume=True)

    parked_result, resumed_result = await asyncio.gather(
        process_access_job(parked, job_id="deferred-parked", attempt=1),
        process_access_job(resumed, job_id=current_job_id, attempt=1),
    )

    assert parked_result.kind == JOB_COMPLETED
    assert parked_result.message == f"superseded by job {current_job_id}"
    assert resumed_result.kind == JOB_COMPLETED
    assert upstream.granted == ["trader_one"]
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.job_id == current_job_id
    assert len(await audit_events("access.granted")) == 1


@pytest.mark.asyncio
async def test_only_one_of_two_fresh_jobs_claims_a_grant(upstream) -> None:
    upstream.delay_s = 0.05
    grant_id = await _pending_grant()
    payload = AccessJobPayload(access_grant_id=grant_id, request_id="req-test")

    results = await asyncio.gather(
        process_access_job(payload, job_id="grant-first", attempt=1),
        process_access_job(payload, job_id="grant-second", attempt=1),
    )

    assert sorted(result.message.startswith("superseded") for result in results) == [False, True]
    assert upstream.granted == ["trader_one"]
    assert (await load_grant(grant_id)).job_id in {"grant-first", "grant-second"}


@pytest.mark.asyncio
async def test_continuation_takes_over_from_the_job_it_continues(upstream) -> None:
    grant_id = await seed_grant(await seed_user(), await seed_resource(), job_id="grant-original")
    payload = AccessJobPayload(
        access_grant_id=grant_id,
        request_id="req-test",
        supersedes=["grant-original"],
        continuations=1,
    )

    result = await process_access_job(payload, job_id="continue-next", attempt=1)

    assert result.kind == JOB_COMPLETED
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_GRANTED
    assert grant.job_id == "continue-next"


@pytest.mark.asyncio
async def test_grant_resolved_during_the_upstream_call_is_left_alone(upstream, notifications) -> None:
    upstream.delay_s = 0.05
    grant_id = await _pending_grant()

    async def _operator_completes_by_hand() -> None:
        while not upstream.calls:
            await asyncio.sleep(0.005)
        async with SessionLocal() as session:
            grant = await session.get(AccessGrant, grant_id)
            grant.status = ACCESS_GRANTED
            await session.commit()

    result, _ = await asyncio.gather(_run(grant_id), _operator_completes_by_hand())

    assert result.kind == JOB_COMPLETED
    assert result.message == "grant already resolved"
    assert await audit_events("access.granted") == []
    assert not any(event_type == EVENT_ACCESS_GRANTED for event_type, _ in notifications)
    assert (await load_grant(grant_id)).status == ACCESS_GRANTED


@pytest.mark.asyncio
async def test_inline_storage_errors_stop_and_alert(notifications, monkeypatch) -> None:
    grant_id = await _pending_grant()
    tries: list[str] = []

    async def _locked_claim(session, payload, *, job_id):
        tries.append(job_id)
        raise OperationalError("UPDATE access_grants", {}, Exception("database is locked"))

    monkeypatch.setattr("grantline.services.jobs.processor._claim_grant", _locked_claim)

    await enqueue_access_job(
        AccessJobPayload(access_grant_id=grant_id, request_id="req-test"),
        job_id=f"grant-{grant_id}",
    )

    assert len(tries) == job_max_tries()
    alerts = _alerts(notifications)
    assert len(alerts) == 1
    assert alerts[0]["urgency"] == "CRITICAL"
    assert alerts[0]["details"]["storage_error"] is True
    assert alerts[0]["details"]["access_grant_id"] == grant_id
    grant = await load_grant(grant_id)
    assert grant.status == ACCESS_PENDING
    assert grant.retry_count == 0
