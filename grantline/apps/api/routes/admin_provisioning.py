from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.apps.api.deps import AdminPrincipal, get_db, require_admin
from grantline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantline.apps.api.response import SuccessEnvelope, success_response
from grantline.domain.models import ManualTask
from grantline.services.access_grants import get_provisioning_health
from grantline.services.manual_tasks import complete_task, fail_task, list_pending_tasks
from grantline.services.resume import resume_pending_grants, resume_specific_grants


router = APIRouter(prefix="/admin/provisioning", tags=["provisioning"], responses=DEFAULT_ERROR_RESPONSES)


class ManualTaskResponse(BaseModel):
    id: str
    type: str
    username: str
    resource_id: str
    access_grant_id: str | None
    user_id: str | None
    status: str
    source: str
    completed_by: str | None
    completed_at: datetime | None
    notes: str | None
    created_at: datetime | None


class CompleteTaskRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class FailTaskRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class ResumeRequest(BaseModel):
    # Empty means every PENDING grant.
    access_grant_ids: list[str] = Field(default_factory=list, max_length=500)


def _task_payload(task: ManualTask) -> ManualTaskResponse:
    return ManualTaskResponse(
        id=task.id,
        type=task.type,
        username=task.username,
        resource_id=task.resource_id,
        access_grant_id=task.access_grant_id,
        user_id=task.user_id,
        status=task.status,
        source=task.source,
        completed_by=task.completed_by,
        completed_at=task.completed_at,
        notes=task.notes,
        created_at=task.created_at,
    )


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def provisioning_health(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await get_provisioning_health(db))


@router.get("/tasks", response_model=SuccessEnvelope[list[ManualTaskResponse]])
async def list_tasks(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tasks = await list_pending_tasks(db, limit=limit)
    return success_response(
        request=request,
        data=[_task_payload(task).model_dump(mode="json") for task in tasks],
    )


@router.post("/tasks/{task_id}/complete", response_model=SuccessEnvelope[ManualTaskResponse])
async def complete_manual_task(
    request: Request,
    task_id: str,
    payload: CompleteTaskRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    task = await complete_task(db, task_id, completed_by=principal.actor_id, notes=payload.notes)
    return success_response(request=request, data=_task_payload(task))


@router.post("/tasks/{task_id}/fail", response_model=SuccessEnvelope[ManualTaskResponse])
async def fail_manual_task(
    request: Request,
    task_id: str,
    payload: FailTaskRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    task = await fail_task(db, task_id, failed_by=principal.actor_id, reason=payload.reason)
    return success_response(request=request, data=_task_payload(task))


@router.post("/resume", response_model=SuccessEnvelope[dict[str, Any]])
async def resume_jobs(
    request: Request,
    payload: ResumeRequest,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.access_grant_ids:
        summary = await resume_specific_grants(db, payload.access_grant_ids, triggered_by=principal.actor_id)
    else:
        summary = await resume_pending_grants(db, triggered_by=principal.actor_id)
    return success_response(
        request=request,
        data={"requeued": summary.requeued, "failed": summary.failed, "errors": summary.errors},
    )
