from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.core.config import get_settings
from grantline.core.errors import PurchaseNotFoundError, ResourceNotFoundError, WebhookSignatureError
from grantline.domain.models import (
    ACCESS_GRANTED,
    ACCESS_PENDING,
    PURCHASE_COMPLETED,
    PURCHASE_FAILED,
    AccessGrant,
    Purchase,
    Resource,
    User,
)
from grantline.services.audit import ACTOR_ADMIN, ACTOR_SYSTEM, ACTOR_WEBHOOK, record_event
from grantline.services.jobs.queue import AccessJobPayload, enqueue_access_job, new_job_id
from grantline.services.notifications import (
    URGENCY_NORMAL,
    notify_purchase_confirmed,
    send_operator_alert,
)
from grantline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"


class CheckoutCompleted(BaseModel):
    # Checkout session id from the payment provider; the idempotency key.
    session_id: str
    user_id: str | None = None
    payment_intent_id: str | None = None
    customer_id: str | None = None
    amount_cents: int = 0


@dataclass
class FanOutResult:
    outcome: str
    purchase_id: str | None = None
    grant_ids: list[str] = field(default_factory=list)
    job_ids: dict[str, str] = field(default_factory=dict)
    enqueue_failures: int = 0


@dataclass
class GrantBatchSummary:
    resource_id: str
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failed_users: list[dict[str, str]] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def verify_payment_signature(
    body: bytes,
    header: str | None,
    *,
    secret: str | None = None,
    now: float | None = None,
) -> None:
    """Check a ``t=<unix>,v1=<hex>`` HMAC-SHA256 signature over ``"<t>.<body>"``.

    Raises WebhookSignatureError when the header is missing, malformed, stale
    or signed with a different secret.
    """
    settings = get_settings()
    resolved_secret = secret or settings.payment_webhook_secret
    if not resolved_secret:
        raise WebhookSignatureError("payment webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("missing payment signature header")
    timestamp: str | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not timestamp.isdigit() or not candidates:
        raise WebhookSignatureError("malformed payment signature header")
    current = now if now is not None else time.time()
    if abs(current - int(timestamp)) > settings.payment_webhook_tolerance_s:
        raise WebhookSignatureError("payment signature timestamp outside tolerance")
    signed = timestamp.encode("utf-8") + b"." + body
    expected = hmac.new(resolved_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise WebhookSignatureError("payment signature mismatch")


def sign_payment_payload(body: bytes, *, secret: str, timestamp: int | None = None) -> str:
    # Counterpart of verify_payment_signature for local tooling and tests.
    ts = str(timestamp if timestamp is not None else int(time.time()))
    digest = hmac.new(secret.encode("utf-8"), ts.encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


async def _claim_purchase(session: AsyncSession, event: CheckoutCompleted, *, now: datetime) -> Purchase | None:
    # Returns the claimed purchase, or None when another delivery already completed it.
    existing = (
        await session.execute(select(Purchase).where(Purchase.external_session_id == event.session_id))
    ).scalar_one_or_none()
    if existing is not None:
        if existing.status == PURCHASE_COMPLETED:
            return None
        result = await session.execute(
            update(Purchase)
            .where(Purchase.id == existing.id, Purchase.status != PURCHASE_COMPLETED)
            .values(
                status=PURCHASE_COMPLETED,
                payment_intent_id=event.payment_intent_id or existing.payment_intent_id,
                customer_id=event.customer_id or existing.customer_id,
                amount_cents=event.amount_cents or existing.amount_cents,
                purchased_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            await session.rollback()
            return None
        await session.refresh(existing)
        return existing

    if not event.user_id or await session.get(User, event.user_id) is None:
        raise PurchaseNotFoundError(
            f"no purchase for checkout session {event.session_id} and no known user to create one"
        )
    purchase = Purchase(
        id=uuid4().hex,
        user_id=event.user_id,
        external_session_id=event.session_id,
        payment_intent_id=event.payment_intent_id,
        customer_id=event.customer_id,
        status=PURCHASE_COMPLETED,
        amount_cents=event.amount_cents,
        purchased_at=now,
        created_at=now,
    )
    session.add(purchase)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent delivery created the purchase first.
        await session.rollback()
        return None
    return purchase


async def _upsert_pending_grant(
    session: AsyncSession,
    *,
    user_id: str,
    resource_id: str,
    now: datetime,
) -> AccessGrant | None:
    """Make sure a PENDING grant exists for the pair; GRANTED grants are left alone."""
    grant = (
        await session.execute(
            select(AccessGrant).where(AccessGrant.user_id == user_id, AccessGrant.resource_id == resource_id)
        )
    ).unique().scalar_one_or_none()
    if grant is None:
        grant = AccessGrant(
            id=uuid4().hex,
            user_id=user_id,
            resource_id=resource_id,
            status=ACCESS_PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with session.begin_nested():
                session.add(grant)
        except IntegrityError:
            grant = (
                await session.execute(
                    select(AccessGrant).where(
                        AccessGrant.user_id == user_id, AccessGrant.resource_id == resource_id
                    )
                )
            ).unique().scalar_one()
        else:
            return grant
    if grant.status == ACCESS_GRANTED:
        return None
    grant.status = ACCESS_PENDING
    grant.retry_count = 0
    grant.failure_reason = None
    grant.revoked_at = None
    return grant


async def handle_payment_completed(
    session: AsyncSession,
    event: CheckoutCompleted,
    *,
    request_id: str | None = None,
) -> FanOutResult:
    """Fan one payment completion out into per-resource provisioning jobs.

    The purchase claim, grant upserts and audit row commit together; jobs are
    enqueued only after that commit. A duplicate delivery (already COMPLETED,
    or losing the race on the unique session id) returns a duplicate outcome
    without side effects.
    """
    now = _utc_now()
    purchase = await _claim_purchase(session, event, now=now)
    if purchase is None:
        increment_counter("payments.duplicate")
        logger.info("payment_completed_duplicate session_id=%s request_id=%s", event.session_id, request_id)
        return FanOutResult(outcome=OUTCOME_DUPLICATE)

    resources = list(
        (
            await session.execute(select(Resource).where(Resource.is_active.is_(True)).order_by(Resource.created_at))
        ).scalars().all()
    )
    grants: list[AccessGrant] = []
    for resource in resources:
        grant = await _upsert_pending_grant(session, user_id=purchase.user_id, resource_id=resource.id, now=now)
        if grant is not None:
            grant.job_id = new_job_id("grant", grant.id)
            grants.append(grant)

    await record_event(
        session=session,
        actor_type=ACTOR_WEBHOOK,
        event_type="purchase.completed",
        outcome="success",
        resource_type="purchase",
        resource_id=purchase.id,
        user_id=purchase.user_id,
        request_id=request_id,
        metadata={
            "external_session_id": event.session_id,
            "amount_cents": purchase.amount_cents,
            "resources_count": len(resources),
            "grants_enqueued": len(grants),
        },
        best_effort=False,
    )
    await session.commit()
    increment_counter("payments.completed")
    logger.info(
        "payment_completed purchase_id=%s user_id=%s grants=%s request_id=%s",
        purchase.id,
        purchase.user_id,
        len(grants),
        request_id,
    )

    result = FanOutResult(outcome=OUTCOME_PROCESSED, purchase_id=purchase.id)
    pending_jobs = [(grant.id, grant.job_id) for grant in grants]
    for grant_id, job_id in pending_jobs:
        result.grant_ids.append(grant_id)
        payload = AccessJobPayload(access_grant_id=grant_id, action="grant", request_id=request_id or uuid4().hex)
        try:
            result.job_ids[grant_id] = await enqueue_access_job(payload, job_id=job_id)
        except Exception as exc:  # noqa: BLE001 - grant stays PENDING and is picked up by resume
            result.enqueue_failures += 1
            logger.error(
                "payment_enqueue_failed access_grant_id=%s job_id=%s error=%s",
                grant_id,
                job_id,
                type(exc).__name__,
            )

    user = await session.get(User, purchase.user_id)
    if user is not None:
        await notify_purchase_confirmed(
            email=user.email,
            name=user.name,
            amount_cents=purchase.amount_cents,
            resource_count=len(resources),
            purchased_at=purchase.purchased_at or now,
        )
        await send_operator_alert(
            subject="New purchase",
            message="A payment completed and provisioning jobs were queued.",
            details={
                "user_id": user.id,
                "email": user.email,
                "username": user.platform_username or "N/A",
                "amount": f"${purchase.amount_cents / 100:.2f}",
                "resources_count": len(resources),
            },
            urgency=URGENCY_NORMAL,
        )
    return result


async def handle_payment_failed(
    session: AsyncSession,
    *,
    payment_intent_id: str,
    message: str | None = None,
    request_id: str | None = None,
) -> int:
    # A completed purchase is never downgraded by a late failure event.
    purchases = list(
        (
            await session.execute(
                select(Purchase).where(
                    Purchase.payment_intent_id == payment_intent_id,
                    Purchase.status != PURCHASE_COMPLETED,
                )
            )
        ).scalars().all()
    )
    for purchase in purchases:
        purchase.status = PURCHASE_FAILED
        await record_event(
            session=session,
            actor_type=ACTOR_WEBHOOK,
            event_type="purchase.failed",
            outcome="failure",
            resource_type="purchase",
            resource_id=purchase.id,
            user_id=purchase.user_id,
            request_id=request_id,
            metadata={"payment_intent_id": payment_intent_id, "failure_message": message},
            error_code="payment_failed",
        )
    await session.commit()
    if purchases:
        increment_counter("payments.failed", len(purchases))
        logger.info("payment_failed payment_intent_id=%s purchases=%s", payment_intent_id, len(purchases))
    return len(purchases)


async def grant_resource_to_existing_customers(
    session: AsyncSession,
    resource_id: str,
    *,
    triggered_by: str | None = None,
) -> GrantBatchSummary:
    """Create PENDING grants for a newly activated resource for every paying customer.

    Only customers with a completed purchase, a platform username and no
    grant for the resource are included. Jobs are staggered so the upstream
    API is not hit in a burst. Re-running is safe: existing grants count as
    skipped.
    """
    resource = await session.get(Resource, resource_id)
    if resource is None:
        raise ResourceNotFoundError(f"resource not found: {resource_id}")

    has_completed_purchase = exists().where(Purchase.user_id == User.id, Purchase.status == PURCHASE_COMPLETED)
    has_grant = exists().where(AccessGrant.user_id == User.id, AccessGrant.resource_id == resource_id)
    users = list(
        (
            await session.execute(
                select(User)
                .where(has_completed_purchase, User.platform_username.is_not(None), ~has_grant)
                .order_by(User.created_at)
            )
        ).scalars().all()
    )
    # Plain values only; a rollback on conflict expires loaded instances.
    user_ids = [user.id for user in users]
    resource_name = resource.name
    summary = GrantBatchSummary(resource_id=resource_id, total=len(user_ids))
    logger.info("resource_grant_batch_started resource_id=%s eligible=%s", resource_id, len(user_ids))
    stagger_s = get_settings().new_resource_grant_stagger_s

    for index, user_id in enumerate(user_ids):
        now = _utc_now()
        job_id = f"new-resource-{resource_id}-{user_id}"
        grant = AccessGrant(
            id=uuid4().hex,
            user_id=user_id,
            resource_id=resource_id,
            status=ACCESS_PENDING,
            retry_count=0,
            job_id=job_id,
            created_at=now,
            updated_at=now,
        )
        session.add(grant)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            summary.skipped += 1
            logger.info("resource_grant_skipped resource_id=%s user_id=%s", resource_id, user_id)
            continue
        try:
            await enqueue_access_job(
                AccessJobPayload(access_grant_id=grant.id, action="grant", request_id=uuid4().hex),
                job_id=job_id,
                defer_s=index * stagger_s or None,
            )
        except Exception as exc:  # noqa: BLE001 - grant stays PENDING and is picked up by resume
            summary.failed += 1
            summary.failed_users.append({"user_id": user_id, "error": f"{type(exc).__name__}: {exc}"})
            logger.error(
                "resource_grant_enqueue_failed resource_id=%s user_id=%s error=%s",
                resource_id,
                user_id,
                type(exc).__name__,
            )
            continue
        summary.succeeded += 1

    await record_event(
        session=session,
        actor_type=ACTOR_ADMIN if triggered_by else ACTOR_SYSTEM,
        actor_id=triggered_by,
        event_type="resource.auto_grant_batch",
        outcome="success" if summary.failed == 0 else "partial",
        resource_type="resource",
        resource_id=resource_id,
        metadata={
            "resource_name": resource_name,
            "total": summary.total,
            "succeeded": summary.succeeded,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "failed_users": summary.failed_users or None,
        },
        commit=True,
    )
    logger.info(
        "resource_grant_batch_completed resource_id=%s succeeded=%s skipped=%s failed=%s",
        resource_id,
        summary.succeeded,
        summary.skipped,
        summary.failed,
    )
    return summary
