from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.errors import ProvisioningStateError
from grantline.domain.models import (
    ACCESS_PENDING,
    PROVISIONING_STATE_ROW_ID,
    STATE_DEGRADED,
    STATE_HEALTHY,
    AccessGrant,
    ProvisioningStateRecord,
)
from grantline.domain.state import CredentialCheck, ProvisioningSnapshot
from grantline.services.audit import ACTOR_ADMIN, ACTOR_SYSTEM, record_event
from grantline.services.notifications import URGENCY_CRITICAL, send_operator_alert

if TYPE_CHECKING:
    from grantline.services.resume import ResumeSummary


logger = logging.getLogger(__name__)

_AUTH_ERROR_MARKERS = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "session expired",
    "invalid credentials",
    "auth_error",
    "authentication failed",
    "invalid session",
    "session invalid",
)
_BASE36 = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class DegradedTransition:
    snapshot: ProvisioningSnapshot
    # False when the system was already DEGRADED and only diagnostics changed.
    started_incident: bool


@dataclass(frozen=True)
class HealthyTransition:
    previous: ProvisioningSnapshot
    snapshot: ProvisioningSnapshot
    resume: ResumeSummary | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; treat naive values as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_incident_id() -> str:
    # INC-<millis base36>-<6 random base36 chars>, upper-cased.
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"INC-{_to_base36(int(time.time() * 1000))}-{suffix}"


def format_duration(start: datetime, end: datetime) -> str:
    total_minutes = max(0, int((end - start).total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def is_auth_error(message: str | None) -> bool:
    """Return True when free-form provider text describes a credential rejection."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_ERROR_MARKERS)


def _snapshot(record: ProvisioningStateRecord | None) -> ProvisioningSnapshot:
    if record is None:
        return ProvisioningSnapshot(state=STATE_HEALTHY)
    return ProvisioningSnapshot(
        state=record.state,
        reason=record.reason,
        incident_id=record.incident_id,
        degraded_at=_as_utc(record.degraded_at),
        healthy_at=_as_utc(record.healthy_at),
        last_checked_at=_as_utc(record.last_checked_at),
        metadata=dict(record.metadata_json or {}),
    )


async def _load_record(session: AsyncSession) -> ProvisioningStateRecord | None:
    # Always refresh from the database; other workers write this row.
    return (
        await session.execute(
            select(ProvisioningStateRecord)
            .where(ProvisioningStateRecord.id == PROVISIONING_STATE_ROW_ID)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _ensure_state_row(session: AsyncSession) -> None:
    # The migration seeds the row; this covers fresh databases created without it.
    if await _load_record(session) is not None:
        return
    try:
        async with session.begin_nested():
            session.add(
                ProvisioningStateRecord(
                    id=PROVISIONING_STATE_ROW_ID,
                    state=STATE_HEALTHY,
                    healthy_at=_utc_now(),
                    metadata_json={},
                )
            )
    except IntegrityError:
        # Another writer seeded it first.
        pass


async def get_state(session: AsyncSession) -> ProvisioningSnapshot:
    """Read the singleton provisioning state; HEALTHY when no row exists yet."""
    return _snapshot(await _load_record(session))


async def count_pending_grants(session: AsyncSession) -> int:
    return int(
        (
            await session.execute(
                select(func.count()).select_from(AccessGrant).where(AccessGrant.status == ACCESS_PENDING)
            )
        ).scalar_one()
    )


async def transition_to_degraded(
    session: AsyncSession,
    reason: str,
    *,
    metadata: dict[str, Any] | None = None,
    notify: bool = True,
    request_id: str | None = None,
) -> DegradedTransition:
    """Move provisioning to DEGRADED, first writer wins.

    The HEALTHY -> DEGRADED flip is a single conditional UPDATE, so concurrent
    workers detecting the same outage agree on one ``incident_id`` and
    ``degraded_at``. Later callers only refresh ``reason`` and diagnostics.
    Commits the caller's session, so pending grant changes made by the caller
    are persisted together with the state change.
    """
    await _ensure_state_row(session)
    now = _utc_now()
    incident_id = generate_incident_id()
    result = await session.execute(
        update(ProvisioningStateRecord)
        .where(
            ProvisioningStateRecord.id == PROVISIONING_STATE_ROW_ID,
            ProvisioningStateRecord.state == STATE_HEALTHY,
        )
        .values(
            state=STATE_DEGRADED,
            reason=reason,
            incident_id=incident_id,
            degraded_at=now,
            last_checked_at=now,
            metadata_json=dict(metadata or {}),
        )
        .execution_options(synchronize_session=False)
    )
    started_incident = int(result.rowcount or 0) == 1

    if started_incident:
        await record_event(
            session=session,
            actor_type=ACTOR_SYSTEM,
            event_type="provisioning.state_degraded",
            outcome="success",
            resource_type="provisioning_state",
            resource_id=incident_id,
            request_id=request_id,
            metadata={
                "previous_state": STATE_HEALTHY,
                "new_state": STATE_DEGRADED,
                "reason": reason,
                "incident_id": incident_id,
                **(metadata or {}),
            },
            best_effort=False,
        )
    else:
        record = await _load_record(session)
        merged = dict(record.metadata_json or {}) if record is not None else {}
        merged.update(metadata or {})
        await session.execute(
            update(ProvisioningStateRecord)
            .where(
                ProvisioningStateRecord.id == PROVISIONING_STATE_ROW_ID,
                ProvisioningStateRecord.state == STATE_DEGRADED,
            )
            .values(reason=reason, last_checked_at=now, metadata_json=merged)
            .execution_options(synchronize_session=False)
        )
    await session.commit()

    snapshot = await get_state(session)
    if started_incident:
        logger.error(
            "provisioning_state_degraded incident_id=%s reason=%s",
            snapshot.incident_id,
            reason,
        )
        if notify:
            pending = await count_pending_grants(session)
            await send_operator_alert(
                subject="Provisioning system DEGRADED",
                message=(
                    "Automated provisioning is paused until upstream credentials are "
                    "updated and validated. Pending grants resume automatically afterwards."
                ),
                details={
                    "reason": reason,
                    "incident_id": snapshot.incident_id,
                    "pending_grants": pending,
                },
                urgency=URGENCY_CRITICAL,
                action_path="/admin/credentials",
            )
    else:
        logger.info(
            "provisioning_state_already_degraded incident_id=%s reason=%s",
            snapshot.incident_id,
            reason,
        )
    return DegradedTransition(snapshot=snapshot, started_incident=started_incident)


async def transition_to_healthy(
    session: AsyncSession,
    *,
    proof: CredentialCheck,
    triggered_by: str | None,
    credential_id: str | None = None,
    resume: bool = True,
) -> HealthyTransition:
    """Return provisioning to HEALTHY after an operator-confirmed credential check.

    Only the credential validation path calls this, with the successful check
    as ``proof``. Job processing never recovers the state on its own.
    """
    if not proof.ok:
        raise ProvisioningStateError("recovery requires a successful credential validation")
    await _ensure_state_row(session)
    previous = await get_state(session)
    now = _utc_now()
    await session.execute(
        update(ProvisioningStateRecord)
        .where(ProvisioningStateRecord.id == PROVISIONING_STATE_ROW_ID)
        .values(
            state=STATE_HEALTHY,
            reason=None,
            incident_id=None,
            degraded_at=None,
            healthy_at=now,
            last_checked_at=now,
            metadata_json={},
        )
        .execution_options(synchronize_session=False)
    )
    was_incident = previous.state == STATE_DEGRADED
    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN if triggered_by else ACTOR_SYSTEM,
        actor_id=triggered_by,
        event_type="provisioning.state_healthy",
        outcome="success",
        resource_type="provisioning_state",
        resource_id=previous.incident_id,
        metadata={
            "previous_state": previous.state,
            "new_state": STATE_HEALTHY,
            "was_incident": was_incident,
            "incident_id": previous.incident_id,
            "incident_duration": (
                format_duration(previous.degraded_at, now) if previous.degraded_at else None
            ),
            "credential_id": credential_id,
        },
        best_effort=False,
    )
    await session.commit()
    logger.info(
        "provisioning_state_healthy previous_state=%s incident_id=%s triggered_by=%s",
        previous.state,
        previous.incident_id,
        triggered_by,
    )

    summary = None
    if resume:
        from grantline.services.resume import resume_pending_grants

        summary = await resume_pending_grants(
            session,
            triggered_by=triggered_by,
            incident_id=previous.incident_id,
        )
    return HealthyTransition(previous=previous, snapshot=await get_state(session), resume=summary)


async def record_health_probe(session: AsyncSession, *, check: CredentialCheck) -> None:
    # Stamp the probe outcome for the status surface; never changes the state itself.
    await _ensure_state_row(session)
    record = await _load_record(session)
    merged = dict(record.metadata_json or {}) if record is not None else {}
    merged["last_probe"] = {
        "ok": check.ok,
        "http_status": check.http_status,
        "error_kind": check.error_kind,
        "checked_at": _utc_now().isoformat(),
    }
    await session.execute(
        update(ProvisioningStateRecord)
        .where(ProvisioningStateRecord.id == PROVISIONING_STATE_ROW_ID)
        .values(last_checked_at=_utc_now(), metadata_json=merged)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
