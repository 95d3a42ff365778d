from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.apps.api.deps import get_db
from grantline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantline.apps.api.response import get_request_id, success_response
from grantline.services.purchases import (
    CheckoutCompleted,
    handle_payment_completed,
    handle_payment_failed,
    verify_payment_signature,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": "Event is missing data.object"},
        )
    return obj


def _checkout_from_object(obj: dict[str, Any]) -> CheckoutCompleted:
    session_id = obj.get("id")
    if not session_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": "Checkout session id is missing"},
        )
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    try:
        return CheckoutCompleted.model_validate(
            {
                "session_id": str(session_id),
                "user_id": metadata.get("user_id") or obj.get("client_reference_id"),
                "payment_intent_id": obj.get("payment_intent"),
                "customer_id": obj.get("customer"),
                "amount_cents": obj.get("amount_total") or 0,
            }
        )
    except ValidationError as exc:
        fields = ", ".join(sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()}))
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": f"Checkout session has invalid fields: {fields}"},
        ) from exc


@router.post("/payments")
async def payment_webhook(
    request: Request,
    x_payment_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Receive signed payment events; duplicates are acknowledged without side effects."""
    body = await request.body()
    verify_payment_signature(body, x_payment_signature)
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": "Body is not valid JSON"},
        ) from exc
    if not isinstance(event, dict):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": "Event must be a JSON object"},
        )

    request_id = get_request_id(request)
    event_type = event.get("type")
    if event_type == EVENT_CHECKOUT_COMPLETED:
        result = await handle_payment_completed(
            db, _checkout_from_object(_event_object(event)), request_id=request_id
        )
        data: dict[str, Any] = {
            "received": True,
            "outcome": result.outcome,
            "purchase_id": result.purchase_id,
            "grants": len(result.grant_ids),
        }
    elif event_type == EVENT_PAYMENT_FAILED:
        obj = _event_object(event)
        if not obj.get("id"):
            raise HTTPException(
                status_code=400,
                detail={"code": "INVALID_PAYLOAD", "message": "Payment intent id is missing"},
            )
        last_error = obj.get("last_payment_error") if isinstance(obj.get("last_payment_error"), dict) else {}
        updated = await handle_payment_failed(
            db,
            payment_intent_id=str(obj["id"]),
            message=last_error.get("message"),
            request_id=request_id,
        )
        data = {"received": True, "outcome": "recorded", "purchases_failed": updated}
    else:
        logger.info("payment_webhook_ignored event_type=%s", event_type)
        data = {"received": True, "outcome": "ignored"}
    return success_response(request=request, data=data)
