from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx

from grantline.core.config import get_settings
from grantline.services.audit import sanitize_metadata


logger = logging.getLogger(__name__)

URGENCY_NORMAL = "NORMAL"
URGENCY_HIGH = "HIGH"
URGENCY_CRITICAL = "CRITICAL"

EVENT_OPERATOR_ALERT = "operator.alert"
EVENT_ACCESS_GRANTED = "user.access_granted"
EVENT_ACCESS_FAILED = "user.access_failed"
EVENT_ACCESS_REVOKED = "user.access_revoked"
EVENT_PURCHASE_CONFIRMED = "user.purchase_confirmed"


def _serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes so receivers can verify the signature.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


async def deliver_notification(
    event_type: str,
    payload: dict[str, Any],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Post one signed notification to the configured webhook.

    Delivery is best-effort: returns False when no webhook is configured or the
    receiver fails, and never raises into provisioning flows.
    """
    settings = get_settings()
    notification_id = uuid4().hex
    if not settings.notify_webhook_url:
        logger.info(
            "notification_not_configured event_type=%s notification_id=%s",
            event_type,
            notification_id,
        )
        return False
    body = _serialize_payload(
        {
            "id": notification_id,
            "event_type": event_type,
            "sent_at": datetime.now(timezone.utc).isoformat(),
            "data": sanitize_metadata(payload),
        }
    )
    headers = {
        "Content-Type": "application/json",
        "X-Notification-Id": notification_id,
        "X-Notification-Event-Type": event_type,
    }
    if settings.notify_webhook_secret:
        headers["X-Notification-Signature"] = compute_signature(body, settings.notify_webhook_secret)
    timeout_s = max(0.2, settings.notify_timeout_ms / 1000.0)
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.post(settings.notify_webhook_url, content=body, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "notification_delivery_failed event_type=%s notification_id=%s error=%s",
            event_type,
            notification_id,
            type(exc).__name__,
        )
        return False
    logger.info("notification_delivered event_type=%s notification_id=%s", event_type, notification_id)
    return True


async def send_operator_alert(
    *,
    subject: str,
    message: str,
    details: dict[str, Any] | None = None,
    urgency: str = URGENCY_NORMAL,
    action_path: str | None = None,
) -> bool:
    settings = get_settings()
    payload: dict[str, Any] = {
        "to": settings.operator_email,
        "subject": f"[{urgency}] {subject}",
        "message": message,
        "urgency": urgency,
        "details": details or {},
    }
    if action_path:
        payload["action_url"] = f"{settings.app_url.rstrip('/')}{action_path}"
    if urgency == URGENCY_CRITICAL:
        logger.error("operator_alert urgency=%s subject=%s", urgency, subject)
    else:
        logger.warning("operator_alert urgency=%s subject=%s", urgency, subject)
    return await deliver_notification(EVENT_OPERATOR_ALERT, payload)


async def notify_access_granted(*, email: str, username: str, resource_name: str) -> bool:
    return await deliver_notification(
        EVENT_ACCESS_GRANTED,
        {"to": email, "username": username, "resource_name": resource_name},
    )


async def notify_access_failed(*, email: str, username: str | None, resource_name: str, reason: str) -> bool:
    return await deliver_notification(
        EVENT_ACCESS_FAILED,
        {"to": email, "username": username, "resource_name": resource_name, "reason": reason},
    )


async def notify_access_revoked(*, email: str, username: str, resource_name: str) -> bool:
    return await deliver_notification(
        EVENT_ACCESS_REVOKED,
        {"to": email, "username": username, "resource_name": resource_name},
    )


async def notify_purchase_confirmed(
    *,
    email: str,
    name: str | None,
    amount_cents: int,
    resource_count: int,
    purchased_at: datetime,
) -> bool:
    return await deliver_notification(
        EVENT_PURCHASE_CONFIRMED,
        {
            "to": email,
            "name": name,
            "amount_cents": amount_cents,
            "resource_count": resource_count,
            "purchased_at": purchased_at.isoformat(),
        },
    )
