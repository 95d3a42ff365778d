from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from grantline.domain.models import TASK_TYPE_GRANT, TASK_TYPE_REVOKE
from grantline.providers.base import (
    PROVIDER_MANUAL,
    GrantParams,
    ProvisioningResult,
    RevokeParams,
    UsernameCheck,
)
from grantline.services.manual_tasks import SOURCE_PROVIDER, ensure_manual_task


logger = logging.getLogger(__name__)


class ManualProvider:
    """Turns grant and revoke requests into operator tasks."""

    name = PROVIDER_MANUAL

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def is_configured(self) -> bool:
        return True

    async def validate_username(self, username: str) -> UsernameCheck:
        # Operators verify the name when they carry out the task.
        logger.info("manual_provider_username_accepted")
        return UsernameCheck(ok=True, username=username)

    async def grant_access(self, params: GrantParams) -> ProvisioningResult:
        ensured = await ensure_manual_task(
            self._session,
            task_type=TASK_TYPE_GRANT,
            username=params.username,
            resource_id=params.resource_id,
            access_grant_id=params.access_grant_id,
            user_id=params.user_id,
            source=SOURCE_PROVIDER,
        )
        return ProvisioningResult(
            ok=True,
            requires_manual=True,
            message=f"manual grant task {ensured.task.id} is pending",
            provider=self.name,
            task_id=ensured.task.id,
        )

    async def revoke_access(self, params: RevokeParams) -> ProvisioningResult:
        ensured = await ensure_manual_task(
            self._session,
            task_type=TASK_TYPE_REVOKE,
            username=params.username,
            resource_id=params.resource_id,
            access_grant_id=params.access_grant_id,
            user_id=params.user_id,
            source=SOURCE_PROVIDER,
        )
        return ProvisioningResult(
            ok=True,
            requires_manual=True,
            message=f"manual revoke task {ensured.task.id} is pending",
            provider=self.name,
            task_id=ensured.task.id,
        )
