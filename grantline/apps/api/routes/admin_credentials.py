from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.apps.api.deps import AdminPrincipal, get_db, require_admin
from grantline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantline.apps.api.response import SuccessEnvelope, success_response
from grantline.core.config import get_settings
from grantline.services.credentials import (
    CredentialMetadata,
    credential_age_hours,
    credential_age_status,
    get_active_credential_metadata,
    get_credential_history,
    revalidate_active_credentials,
    store_credentials,
)
from grantline.services.provisioning_state import get_state
from grantline.services.resume import ResumeSummary


router = APIRouter(prefix="/admin/credentials", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)


class CredentialView(BaseModel):
    # Metadata only; plaintext secrets never leave the credential service.
    id: str
    api_url: str
    is_active: bool
    validated_at: datetime | None
    last_used_at: datetime | None
    created_at: datetime | None
    created_by: str | None
    age_hours: int | None
    age_status: str


class CredentialStatusResponse(BaseModel):
    state: str
    incident_id: str | None
    active: CredentialView | None
    history: list[CredentialView]


class StoreCredentialsRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=4096)
    signature: str = Field(min_length=1, max_length=4096)
    api_url: str | None = Field(default=None, max_length=2048)


def _view(meta: CredentialMetadata) -> CredentialView:
    age_hours = credential_age_hours(meta.created_at)
    return CredentialView(
        id=meta.id,
        api_url=meta.api_url,
        is_active=meta.is_active,
        validated_at=meta.validated_at,
        last_used_at=meta.last_used_at,
        created_at=meta.created_at,
        created_by=meta.created_by,
        age_hours=age_hours,
        age_status=credential_age_status(age_hours),
    )


def _resume_payload(summary: ResumeSummary | None) -> dict[str, Any] | None:
    if summary is None:
        return None
    return {"requeued": summary.requeued, "failed": summary.failed}


@router.get("/status", response_model=SuccessEnvelope[CredentialStatusResponse])
async def credentials_status(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    state = await get_state(db)
    active = await get_active_credential_metadata(db)
    history = await get_credential_history(db, limit=10)
    payload = CredentialStatusResponse(
        state=state.state,
        incident_id=state.incident_id,
        active=_view(active) if active else None,
        history=[_view(meta) for meta in history],
    )
    return success_response(request=request, data=payload)


@router.post("", response_model=SuccessEnvelope[dict[str, Any]])
async def submit_credentials(
    request: Request,
    payload: StoreCredentialsRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_url = payload.api_url or get_settings().upstream_api_url
    if not api_url:
        raise HTTPException(
            status_code=422,
            detail={"code": "API_URL_REQUIRED", "message": "api_url is required when UPSTREAM_API_URL is not set"},
        )
    result = await store_credentials(
        db,
        session_id=payload.session_id,
        signature=payload.signature,
        api_url=api_url,
        created_by=principal.actor_id,
    )
    transition = result.transition
    return success_response(
        request=request,
        data={
            "credential": _view(result.credential).model_dump(mode="json"),
            "state": transition.snapshot.state,
            "resolved_incident_id": transition.previous.incident_id,
            "resume": _resume_payload(transition.resume),
        },
    )


@router.post("/validate", response_model=SuccessEnvelope[dict[str, Any]])
async def validate_credentials(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    check, transition = await revalidate_active_credentials(db, triggered_by=principal.actor_id)
    state = transition.snapshot if transition else await get_state(db)
    return success_response(
        request=request,
        data={
            "valid": check.ok,
            "http_status": check.http_status,
            "error_kind": check.error_kind,
            "latency_ms": check.latency_ms,
            "state": state.state,
            "resume": _resume_payload(transition.resume if transition else None),
        },
    )
