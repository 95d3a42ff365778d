from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from grantline.core.config import get_settings
from grantline.core.logging import configure_logging
from grantline.persistence.db import SessionLocal
from grantline.services.credentials import probe_active_credentials
from grantline.services.jobs.processor import process_access_job
from grantline.services.jobs.queue import (
    AccessJobPayload,
    apply_job_result,
    job_max_tries,
    set_worker_heartbeat,
)
from grantline.services.purchases import grant_resource_to_existing_customers


logger = logging.getLogger(__name__)


async def provision_access(ctx, payload: dict) -> dict[str, Any]:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = AccessJobPayload.model_validate(payload)
    job_id = ctx.get("job_id") or job_payload.request_id
    attempt = ctx.get("job_try", 1)
    result = await process_access_job(job_payload, job_id=job_id, attempt=attempt)
    return await apply_job_result(job_payload, result, job_id=job_id, attempt=attempt)


async def grant_existing_customers(ctx, resource_id: str, triggered_by: str | None = None) -> dict[str, Any]:
    async with SessionLocal() as session:
        summary = await grant_resource_to_existing_customers(session, resource_id, triggered_by=triggered_by)
    return {
        "resource_id": summary.resource_id,
        "total": summary.total,
        "succeeded": summary.succeeded,
        "skipped": summary.skipped,
        "failed": summary.failed,
    }


async def probe_credentials(ctx) -> dict[str, Any]:
    async with SessionLocal() as session:
        check = await probe_active_credentials(session)
    return {"ok": check.ok, "http_status": check.http_status, "error_kind": check.error_kind}


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - a missed heartbeat shows up as stale, not as a crash
            logger.warning("worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("provisioning_worker_started queue=%s", get_settings().provisioning_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


def _probe_minutes(interval: int) -> set[int]:
    step = min(max(interval, 1), 60)
    return set(range(0, 60, step))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    # Ordinary retries re-run the same job id; deferrals and continuations start a fresh job.
    max_tries = job_max_tries()
    max_jobs = settings.worker_concurrency
    functions = [provision_access, grant_existing_customers]
    cron_jobs = [
        cron(
            probe_credentials,
            minute=_probe_minutes(settings.credential_probe_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
