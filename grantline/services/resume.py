from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.domain.models import ACCESS_PENDING, AccessGrant
from grantline.services.audit import ACTOR_ADMIN, ACTOR_SYSTEM, record_event
from grantline.services.jobs.queue import AccessJobPayload, enqueue_access_job, new_job_id
from grantline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class ResumeSummary:
    requeued: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    job_ids: dict[str, str] = field(default_factory=dict)


async def _requeue(
    session: AsyncSession,
    grant_ids: Iterable[str],
    *,
    summary: ResumeSummary,
) -> None:
    backoff_base_s = get_settings().resume_backoff_base_s
    for grant_id in grant_ids:
        job_id = new_job_id("resume", grant_id)
        payload = AccessJobPayload(
            access_grant_id=grant_id,
            action="grant",
            request_id=uuid4().hex,
            is_resume=True,
            backoff_base_s=backoff_base_s,
        )
        # Point the grant at its new job before enqueueing; inline jobs write the same row.
        await session.execute(
            update(AccessGrant)
            .where(AccessGrant.id == grant_id)
            .values(job_id=job_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        try:
            await enqueue_access_job(payload, job_id=job_id)
        except Exception as exc:  # noqa: BLE001 - one failed enqueue must not stop the rest
            summary.failed += 1
            summary.errors.append(f"{grant_id}: {type(exc).__name__}: {exc}")
            logger.error("resume_enqueue_failed access_grant_id=%s error=%s", grant_id, type(exc).__name__)
            continue
        summary.requeued += 1
        summary.job_ids[grant_id] = job_id


async def _pending_grant_ids(session: AsyncSession, grant_ids: list[str] | None = None) -> list[str]:
    stmt = select(AccessGrant.id).where(AccessGrant.status == ACCESS_PENDING).order_by(AccessGrant.created_at.asc())
    if grant_ids is not None:
        stmt = stmt.where(AccessGrant.id.in_(grant_ids))
    return list((await session.execute(stmt)).scalars().all())


async def resume_pending_grants(
    session: AsyncSession,
    *,
    triggered_by: str | None,
    incident_id: str | None = None,
) -> ResumeSummary:
    """Re-enqueue every PENDING grant with a fresh job id and short backoff.

    Runs after provisioning returns to HEALTHY. Each grant is pointed at its
    new job first, so a job parked by deferral finds itself superseded and
    stops without calling the provider.
    """
    summary = ResumeSummary()
    pending_ids = await _pending_grant_ids(session)
    if pending_ids:
        logger.info("resume_pending_started count=%s incident_id=%s", len(pending_ids), incident_id)
        await _requeue(session, pending_ids, summary=summary)
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN if triggered_by else ACTOR_SYSTEM,
        actor_id=triggered_by,
        event_type="provisioning.jobs_resumed",
        outcome="success" if summary.failed == 0 else "partial",
        resource_type="provisioning_state",
        resource_id=incident_id,
        metadata={
            "total_pending": len(pending_ids),
            "requeued": summary.requeued,
            "failed": summary.failed,
            "errors": summary.errors or None,
            "incident_id": incident_id,
        },
    )
    await session.commit()
    increment_counter("resume.requeued", summary.requeued)
    logger.info(
        "resume_pending_completed requeued=%s failed=%s incident_id=%s",
        summary.requeued,
        summary.failed,
        incident_id,
    )
    return summary


async def resume_specific_grants(
    session: AsyncSession,
    grant_ids: list[str],
    *,
    triggered_by: str | None,
) -> ResumeSummary:
    # Only PENDING grants among the requested ids are re-enqueued.
    summary = ResumeSummary()
    if not grant_ids:
        return summary
    pending_ids = await _pending_grant_ids(session, grant_ids)
    await _requeue(session, pending_ids, summary=summary)
    if summary.requeued or summary.failed:
        await record_event(
            session=session,
            actor_type=ACTOR_ADMIN if triggered_by else ACTOR_SYSTEM,
            actor_id=triggered_by,
            event_type="provisioning.jobs_resumed_specific",
            outcome="success" if summary.failed == 0 else "partial",
            metadata={
                "requested_ids": grant_ids,
                "requeued": summary.requeued,
                "failed": summary.failed,
            },
        )
    await session.commit()
    return summary
