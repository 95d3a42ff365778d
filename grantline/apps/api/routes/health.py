from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from grantline.apps.api.deps import get_db
from grantline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from grantline.apps.api.response import SuccessEnvelope, success_response
from grantline.services.provisioning_state import get_state

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class PublicStatusResponse(BaseModel):
    state: str
    reason: str | None
    incident_id: str | None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/provisioning/status", response_model=SuccessEnvelope[PublicStatusResponse])
async def provisioning_status(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Read-only view for the storefront; it may hold new checkouts while DEGRADED.
    state = await get_state(db)
    payload = PublicStatusResponse(state=state.state, reason=state.reason, incident_id=state.incident_id)
    return success_response(request=request, data=payload)
