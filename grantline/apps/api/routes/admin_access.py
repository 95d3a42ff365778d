from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.apps.api.deps import AdminPrincipal, get_db, require_admin
from grantline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantline.apps.api.response import get_request_id, success_response
from grantline.core.errors import ResourceNotFoundError
from grantline.domain.models import ACCESS_PENDING, Resource
from grantline.services.access_grants import (
    create_manual_fallback,
    get_grant,
    request_revocation,
    retry_failed_grant,
)
from grantline.services.jobs.queue import enqueue_resource_grant
from grantline.services.manual_tasks import has_pending_task


router = APIRouter(prefix="/admin", tags=["access"], responses=DEFAULT_ERROR_RESPONSES)


class RevokeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ManualFallbackRequest(BaseModel):
    type: Literal["grant", "revoke"] = "grant"
    notes: str | None = Field(default=None, max_length=2000)


async def _grant_view(db: AsyncSession, grant_id: str) -> dict:
    # Inline execution may already have moved the grant on; report what is stored now.
    db.expire_all()
    grant = await get_grant(db, grant_id)
    return {
        "id": grant.id,
        "status": grant.status,
        "retry_count": grant.retry_count,
        "failure_reason": grant.failure_reason,
        "job_id": grant.job_id,
        # PENDING with an open operator task is what "awaiting manual" means.
        "awaiting_manual": grant.status == ACCESS_PENDING and await has_pending_task(db, grant.id),
    }


@router.get("/access/{grant_id}")
async def get_access_grant(
    request: Request,
    grant_id: str,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await _grant_view(db, grant_id))


@router.post("/access/{grant_id}/retry")
async def retry_grant(
    request: Request,
    grant_id: str,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await retry_failed_grant(db, grant_id, actor=principal.actor_id, request_id=get_request_id(request))
    return success_response(request=request, data=await _grant_view(db, grant_id))


@router.post("/access/{grant_id}/revoke")
async def revoke_grant(
    request: Request,
    grant_id: str,
    payload: RevokeRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await request_revocation(
        db,
        grant_id,
        actor=principal.actor_id,
        reason=payload.reason,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=await _grant_view(db, grant_id))


@router.post("/access/{grant_id}/manual")
async def manual_fallback(
    request: Request,
    grant_id: str,
    payload: ManualFallbackRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensured = await create_manual_fallback(
        db,
        grant_id,
        actor=principal.actor_id,
        task_type=payload.type,
        notes=payload.notes,
    )
    return success_response(
        request=request,
        data={"task_id": ensured.task.id, "created": ensured.created, "access_grant_id": grant_id},
    )


@router.post("/resources/{resource_id}/grant-existing", status_code=202)
async def grant_existing_customers(
    request: Request,
    resource_id: str,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resource = await db.get(Resource, resource_id)
    if resource is None:
        raise ResourceNotFoundError(f"resource not found: {resource_id}")
    job_id = await enqueue_resource_grant(resource_id, triggered_by=principal.actor_id)
    return success_response(
        request=request,
        data={"resource_id": resource_id, "job_id": job_id, "already_queued": job_id is None},
    )
