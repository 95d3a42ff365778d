from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from grantline.core.config import get_settings
from grantline.services.notifications import URGENCY_CRITICAL, send_operator_alert
from grantline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for status endpoint lookups.
WORKER_HEARTBEAT_KEY = "grantline:worker:heartbeat"
PROVISION_ACCESS_TASK = "provision_access"
GRANT_EXISTING_CUSTOMERS_TASK = "grant_existing_customers"

JOB_COMPLETED = "COMPLETED"
JOB_AWAITING_MANUAL = "AWAITING_MANUAL"
JOB_FAILED = "FAILED"
# Ordinary retryable failure: same job id, bounded by the attempt cap.
JOB_RETRY = "RETRY"
# Deferred until provisioning is HEALTHY again: fresh job id, never counted.
JOB_DEFER = "DEFER"


class AccessJobPayload(BaseModel):
    access_grant_id: str
    action: Literal["grant", "revoke"] = "grant"
    request_id: str
    is_resume: bool = False
    # Number of DEGRADED deferrals so far; only drives the delay.
    deferrals: int = 0
    backoff_base_s: int | None = None
    # Job ids this job continues; the grant may still point at any of them.
    supersedes: list[str] = []
    continuations: int = 0


@dataclass(frozen=True)
class JobResult:
    kind: str
    access_grant_id: str
    message: str = ""
    retry_in_s: int | None = None
    incident_id: str | None = None
    storage_error: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _inline_mode() -> bool:
    return get_settings().job_execution_mode.lower() == "inline"


def new_job_id(prefix: str, access_grant_id: str) -> str:
    return f"{prefix}-{access_grant_id}-{int(time.time() * 1000)}-{uuid4().hex[:6]}"


def compute_backoff_s(attempt: int, base_s: int | None = None) -> int:
    # Exponential: base, 2*base, 4*base, ... for attempts 1, 2, 3, ...
    base = base_s if base_s is not None else get_settings().provisioning_backoff_base_s
    exponent = min(max(attempt, 1) - 1, 16)
    return int(base * (2**exponent))


def job_max_tries() -> int:
    # One try beyond the attempt cap so the terminal attempt always runs.
    return get_settings().provisioning_max_attempts + 1


def compute_defer_s(deferrals: int) -> int:
    # The delay is capped, the number of deferrals is not.
    settings = get_settings()
    exponent = min(max(deferrals, 0), 16)
    return int(min(settings.degraded_defer_base_s * (2**exponent), settings.degraded_defer_max_s))


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provisioning_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the status surface.
    settings = get_settings()
    if _inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.provisioning_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - status endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if _inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - status endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def enqueue_access_job(
    payload: AccessJobPayload,
    *,
    job_id: str | None = None,
    defer_s: int | None = None,
) -> str:
    """Hand one access-grant job to the queue and return its job id.

    In inline mode the job runs immediately in-process and any delay is
    ignored; there is no scheduler to honour it.
    """
    resolved_job_id = job_id or new_job_id(payload.action, payload.access_grant_id)
    settings = get_settings()
    if _inline_mode():
        await _run_inline_job(payload, job_id=resolved_job_id)
        return resolved_job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        PROVISION_ACCESS_TASK,
        payload.model_dump(),
        _job_id=resolved_job_id,
        _queue_name=settings.provisioning_queue_name,
        _defer_by=defer_s,
    )
    increment_counter("jobs.enqueued")
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else resolved_job_id


async def enqueue_resource_grant(resource_id: str, *, triggered_by: str | None = None) -> str | None:
    """Queue the new-resource fan-out; one job per resource while it is queued or running."""
    job_id = f"new-resource-grant-{resource_id}"
    if _inline_mode():
        from grantline.persistence.db import SessionLocal
        from grantline.services.purchases import grant_resource_to_existing_customers

        async with SessionLocal() as session:
            await grant_resource_to_existing_customers(session, resource_id, triggered_by=triggered_by)
        return job_id
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        GRANT_EXISTING_CUSTOMERS_TASK,
        resource_id,
        triggered_by,
        _job_id=job_id,
        _queue_name=get_settings().provisioning_queue_name,
    )
    # None means the same fan-out is already queued or running.
    return job.job_id if job else None


async def _report_stranded_job(payload: AccessJobPayload, result: JobResult, *, job_id: str) -> None:
    increment_counter("jobs.stranded")
    logger.error(
        "provisioning_job_stranded access_grant_id=%s job_id=%s continuations=%s storage_error=%s message=%s",
        payload.access_grant_id,
        job_id,
        payload.continuations,
        result.storage_error,
        result.message,
    )
    # Storage may be the failing part, so the alert is the only record of this.
    await send_operator_alert(
        subject="Provisioning job stopped without an outcome",
        message=(
            "A provisioning job ran out of tries and continuations; the grant is still PENDING "
            "and needs a resume once the cause is fixed."
        ),
        details={
            "access_grant_id": payload.access_grant_id,
            "action": payload.action,
            "job_id": job_id,
            "continuations": payload.continuations,
            "storage_error": result.storage_error,
            "reason": result.message,
        },
        urgency=URGENCY_CRITICAL,
        action_path=f"/admin/access/{payload.access_grant_id}",
    )


async def _continue_in_fresh_job(
    payload: AccessJobPayload,
    result: JobResult,
    *,
    job_id: str,
    defer_s: int,
) -> dict[str, Any]:
    # arq drops a job after its last try; the grant moves to a new job id instead.
    if payload.continuations >= get_settings().job_continuation_limit:
        await _report_stranded_job(payload, result, job_id=job_id)
        return {**result.as_dict(), "stranded": True}
    next_payload = payload.model_copy(
        update={
            "continuations": payload.continuations + 1,
            "supersedes": [*payload.supersedes, job_id],
        }
    )
    next_job_id = await enqueue_access_job(
        next_payload,
        job_id=new_job_id("continue", payload.access_grant_id),
        defer_s=defer_s,
    )
    increment_counter("jobs.continued")
    logger.warning(
        "provisioning_job_continued access_grant_id=%s job_id=%s next_job_id=%s defer_s=%s storage_error=%s",
        payload.access_grant_id,
        job_id,
        next_job_id,
        defer_s,
        result.storage_error,
    )
    return {**result.as_dict(), "next_job_id": next_job_id, "defer_s": defer_s}


async def apply_job_result(
    payload: AccessJobPayload,
    result: JobResult,
    *,
    job_id: str,
    attempt: int,
) -> dict[str, Any]:
    """Translate a processor result into queue behaviour.

    RETRY re-runs the same job id after exponential backoff, so arq's try
    counter applies; on the last try the grant continues in a fresh job, a
    bounded number of times. DEFER finishes this job and schedules a fresh
    job id, so no attempt limit ever applies to deferrals. Follow-up jobs
    list this job in ``supersedes`` so the grant accepts them.
    """
    increment_counter(f"jobs.result.{result.kind.lower()}")
    if result.kind == JOB_RETRY:
        defer = result.retry_in_s or compute_backoff_s(attempt, payload.backoff_base_s)
        if attempt >= job_max_tries():
            return await _continue_in_fresh_job(payload, result, job_id=job_id, defer_s=defer)
        logger.info(
            "provisioning_job_retry access_grant_id=%s job_id=%s attempt=%s defer_s=%s",
            payload.access_grant_id,
            job_id,
            attempt,
            defer,
        )
        raise Retry(defer=defer)
    if result.kind == JOB_DEFER:
        delay = compute_defer_s(payload.deferrals)
        # The deferring job already owns the grant, so only it needs to be accepted.
        next_payload = payload.model_copy(
            update={"deferrals": payload.deferrals + 1, "supersedes": [job_id], "continuations": 0}
        )
        next_job_id = await enqueue_access_job(
            next_payload,
            job_id=new_job_id("deferred", payload.access_grant_id),
            defer_s=delay,
        )
        logger.info(
            "provisioning_job_deferred access_grant_id=%s job_id=%s next_job_id=%s defer_s=%s incident_id=%s",
            payload.access_grant_id,
            job_id,
            next_job_id,
            delay,
            result.incident_id,
        )
        return {**result.as_dict(), "next_job_id": next_job_id, "defer_s": delay}
    return result.as_dict()


async def _run_inline_job(payload: AccessJobPayload, *, job_id: str) -> JobResult:
    # Inline mode mimics worker retries without requiring Redis.
    from grantline.services.jobs.processor import process_access_job

    max_tries = job_max_tries()
    attempt = 1
    while True:
        result = await process_access_job(payload, job_id=job_id, attempt=attempt)
        if result.kind == JOB_RETRY:
            if attempt >= max_tries:
                await _report_stranded_job(payload, result, job_id=job_id)
                return result
            attempt += 1
            continue
        if result.kind == JOB_DEFER:
            logger.info(
                "inline_job_deferred access_grant_id=%s job_id=%s incident_id=%s",
                payload.access_grant_id,
                job_id,
                result.incident_id,
            )
        return result
