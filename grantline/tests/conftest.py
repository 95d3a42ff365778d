from __future__ import annotations

import base64
import os
import tempfile
from typing import Any, AsyncIterator, Iterator

import pytest

# Settings are read at import time by the engine, so the test environment is fixed first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="grantline-tests-")
TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
TEST_ADMIN_TOKEN = "test-admin-token"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

os.environ["DATABASE_URL"] = os.getenv(
    "GRANTLINE_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/grantline.db"
)
os.environ["JOB_EXECUTION_MODE"] = "inline"
os.environ["CREDENTIAL_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["ADMIN_API_TOKEN"] = TEST_ADMIN_TOKEN
os.environ["PAYMENT_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET
os.environ["NOTIFY_WEBHOOK_URL"] = ""
os.environ["PROVISIONING_MODE"] = ""
for _name in ("UPSTREAM_API_URL", "UPSTREAM_SESSION_ID", "UPSTREAM_SIGNATURE"):
    os.environ[_name] = ""

from grantline.core.config import get_settings  # noqa: E402
from grantline.domain.models import (  # noqa: E402
    PROVISIONING_STATE_ROW_ID,
    STATE_HEALTHY,
    Base,
    ProvisioningStateRecord,
)
from grantline.persistence.db import SessionLocal, engine  # noqa: E402
from grantline.services import credentials as credentials_service  # noqa: E402
from grantline.services.jobs import processor as processor_module  # noqa: E402
from grantline.services.jobs.queue import JOB_COMPLETED, AccessJobPayload, JobResult  # noqa: E402
from grantline.services.telemetry import reset_telemetry  # noqa: E402
from grantline.tests.utils.upstream import UPSTREAM_URL, FakeUpstream  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_database() -> AsyncIterator[None]:
    # Every test starts from an empty schema with the singleton state row seeded.
    get_settings.cache_clear()
    reset_telemetry()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as session:
        session.add(ProvisioningStateRecord(id=PROVISIONING_STATE_ROW_ID, state=STATE_HEALTHY, metadata_json={}))
        await session.commit()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
def notifications(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict[str, Any]]]:
    """Capture outbound notifications instead of posting them."""
    sent: list[tuple[str, dict[str, Any]]] = []

    async def _record(event_type: str, payload: dict[str, Any], *, transport=None) -> bool:
        sent.append((event_type, payload))
        return True

    monkeypatch.setattr("grantline.services.notifications.deliver_notification", _record)
    return sent


@pytest.fixture
def inline_jobs(monkeypatch: pytest.MonkeyPatch) -> list[tuple[AccessJobPayload, str]]:
    """Record enqueued access jobs without running them."""
    enqueued: list[tuple[AccessJobPayload, str]] = []

    async def _record(payload: AccessJobPayload, *, job_id: str) -> JobResult:
        enqueued.append((payload, job_id))
        return JobResult(kind=JOB_COMPLETED, access_grant_id=payload.access_grant_id, message="recorded")

    monkeypatch.setattr("grantline.services.jobs.queue._run_inline_job", _record)
    return enqueued


@pytest.fixture
def upstream(monkeypatch: pytest.MonkeyPatch) -> Iterator[FakeUpstream]:
    """Route every upstream call through an in-memory fake with environment credentials."""
    fake = FakeUpstream()
    monkeypatch.setenv("UPSTREAM_API_URL", UPSTREAM_URL)
    monkeypatch.setenv("UPSTREAM_SESSION_ID", "env-session-id")
    monkeypatch.setenv("UPSTREAM_SIGNATURE", "env-signature")
    get_settings.cache_clear()

    build_registry = processor_module.build_provider_registry
    validate = credentials_service.validate_upstream_credentials

    async def _build_registry(session, *, transport=None):
        return await build_registry(session, transport=fake.transport)

    async def _validate(session_id: str, signature: str, api_url: str, *, transport=None):
        return await validate(session_id, signature, api_url, transport=fake.transport)

    monkeypatch.setattr(processor_module, "build_provider_registry", _build_registry)
    monkeypatch.setattr(credentials_service, "validate_upstream_credentials", _validate)
    yield fake
    get_settings.cache_clear()
