from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from grantline.apps.api.main import create_app
from grantline.core.config import get_settings
from grantline.domain.models import ACCESS_GRANTED, ACCESS_PENDING, STATE_DEGRADED, STATE_HEALTHY, TASK_TYPE_GRANT
from grantline.persistence.db import SessionLocal
from grantline.services.manual_tasks import ensure_manual_task
from grantline.services.provisioning_state import transition_to_degraded
from grantline.services.purchases import sign_payment_payload
from grantline.tests.utils.seed import load_grant, load_purchases, seed_grant, seed_resource, seed_user
from grantline.tests.utils.upstream import MODE_AUTH, UPSTREAM_URL


def _client() -> AsyncClient:
    get_settings.cache_clear()
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {get_settings().admin_api_token}", "X-Actor-Id": "operator-1"}


def _signed(event: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(event).encode("utf-8")
    signature = sign_payment_payload(body, secret=get_settings().payment_webhook_secret)
    return body, {"X-Payment-Signature": signature, "Content-Type": "application/json"}


def _checkout_event(session_id: str, user_id: str) -> dict:
    return {
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "client_reference_id": user_id,
                "payment_intent": f"pi_{session_id}",
                "amount_total": 4900,
            }
        },
    }


async def _degrade() -> str:
    async with SessionLocal() as session:
        transition = await transition_to_degraded(session, "Upstream authentication failed", notify=False)
    return transition.snapshot.incident_id


@pytest.mark.asyncio
async def test_health_and_public_status() -> None:
    async with _client() as client:
        health = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
        healthy = await client.get("/v1/provisioning/status")
        incident_id = await _degrade()
        degraded = await client.get("/v1/provisioning/status")

    assert health.status_code == 200
    assert health.json()["data"] == {"status": "ok"}
    assert health.json()["meta"]["request_id"] == "req-123"
    assert health.headers["X-Request-Id"] == "req-123"
    assert healthy.json()["data"]["state"] == STATE_HEALTHY
    assert degraded.json()["data"] == {
        "state": STATE_DEGRADED,
        "reason": "Upstream authentication failed",
        "incident_id": incident_id,
    }


@pytest.mark.asyncio
async def test_admin_routes_require_the_token() -> None:
    async with _client() as client:
        missing = await client.get("/v1/admin/provisioning/health")
        wrong = await client.get("/v1/admin/provisioning/health", headers={"Authorization": "Bearer nope"})
        malformed = await client.get("/v1/admin/provisioning/tasks", headers={"Authorization": "Token abc"})

    for response in (missing, wrong, malformed):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_admin_health_reports_state_and_counts() -> None:
    user_id = await seed_user()
    await seed_grant(user_id, await seed_resource())
    await seed_grant(user_id, await seed_resource(), status=ACCESS_GRANTED)
    incident_id = await _degrade()

    async with _client() as client:
        response = await client.get("/v1/admin/provisioning/health", headers=_admin_headers())

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["state"] == STATE_DEGRADED
    assert data["incident_id"] == incident_id
    assert data["stats"]["pending"] == 1
    assert data["stats"]["granted"] == 1
    assert data["stats"]["manual_task_count"] == 0
    assert data["providers"]["status"] == "manual-only"
    assert data["credentials"] is None
    assert data["queue"]["mode"] == "inline"
    assert data["telemetry"]["gauges"]["grants.pending"] == 1
    assert data["telemetry"]["gauges"]["queue.depth"] == 0
    assert set(data["database"]) == {"size", "checked_out", "overflow"}


@pytest.mark.asyncio
async def test_operator_completes_a_manual_task() -> None:
    user_id = await seed_user(username="trader_one")
    resource_id = await seed_resource(auto_provision=False)
    grant_id = await seed_grant(user_id, resource_id)
    async with SessionLocal() as session:
        ensured = await ensure_manual_task(
            session,
            task_type=TASK_TYPE_GRANT,
            username="trader_one",
            resource_id=resource_id,
            access_grant_id=grant_id,
            user_id=user_id,
            notify=False,
        )
        await session.commit()

    async with _client() as client:
        listed = await client.get("/v1/admin/provisioning/tasks", headers=_admin_headers())
        completed = await client.post(
            f"/v1/admin/provisioning/tasks/{ensured.task.id}/complete",
            headers=_admin_headers(),
            json={"notes": "added in the upstream dashboard"},
        )
        again = await client.post(
            f"/v1/admin/provisioning/tasks/{ensured.task.id}/complete",
            headers=_admin_headers(),
            json={},
        )
        missing = await client.post(
            "/v1/admin/provisioning/tasks/manual_grant_missing/fail",
            headers=_admin_headers(),
            json={"reason": "n/a"},
        )

    assert [task["id"] for task in listed.json()["data"]] == [ensured.task.id]
    assert completed.status_code == 200
    assert completed.json()["data"]["status"] == "completed"
    assert completed.json()["data"]["completed_by"] == "operator-1"
    assert (await load_grant(grant_id)).status == ACCESS_GRANTED
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "MANUAL_TASK_INVALID_STATE"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "MANUAL_TASK_NOT_FOUND"


@pytest.mark.asyncio
async def test_fail_task_requires_a_reason() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/admin/provisioning/tasks/manual_grant_any/fail",
            headers=_admin_headers(),
            json={"reason": ""},
        )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_signed_payment_webhook_is_processed_once(inline_jobs) -> None:
    user_id = await seed_user()
    await seed_resource()
    body, headers = _signed(_checkout_event("cs_api", user_id))

    async with _client() as client:
        first = await client.post("/v1/webhooks/payments", content=body, headers=headers)
        second = await client.post("/v1/webhooks/payments", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["data"]["outcome"] == "processed"
    assert first.json()["data"]["grants"] == 1
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "duplicate"
    assert len(await load_purchases("cs_api")) == 1
    assert len(inline_jobs) == 1


@pytest.mark.asyncio
async def test_payment_webhook_rejects_bad_signatures(inline_jobs) -> None:
    user_id = await seed_user()
    body, headers = _signed(_checkout_event("cs_forged", user_id))
    tampered = body.replace(b"4900", b"1")

    async with _client() as client:
        forged = await client.post("/v1/webhooks/payments", content=tampered, headers=headers)
        unsigned = await client.post(
            "/v1/webhooks/payments", content=body, headers={"Content-Type": "application/json"}
        )

    for response in (forged, unsigned):
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert await load_purchases("cs_forged") == []
    assert inline_jobs == []


@pytest.mark.asyncio
async def test_payment_webhook_rejects_a_malformed_amount(inline_jobs) -> None:
    user_id = await seed_user()
    await seed_resource()
    event = _checkout_event("cs_bad_amount", user_id)
    event["data"]["object"]["amount_total"] = "forty-nine"
    body, headers = _signed(event)

    async with _client() as client:
        response = await client.post("/v1/webhooks/payments", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_PAYLOAD"
    assert "amount_cents" in response.json()["error"]["message"]
    assert await load_purchases("cs_bad_amount") == []
    assert inline_jobs == []


@pytest.mark.asyncio
async def test_payment_webhook_ignores_other_events() -> None:
    body, headers = _signed({"type": "customer.created", "data": {"object": {"id": "cus_1"}}})

    async with _client() as client:
        response = await client.post("/v1/webhooks/payments", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_submitting_credentials_recovers_provisioning(upstream, inline_jobs) -> None:
    await _degrade()

    async with _client() as client:
        response = await client.post(
            "/v1/admin/credentials",
            headers=_admin_headers(),
            json={"session_id": "fresh-session-id", "signature": "fresh-signature", "api_url": UPSTREAM_URL},
        )
        status_response = await client.get("/v1/admin/credentials/status", headers=_admin_headers())

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["state"] == STATE_HEALTHY
    assert data["resolved_incident_id"]
    assert data["resume"] == {"requeued": 0, "failed": 0}
    assert data["credential"]["created_by"] == "operator-1"
    assert "fresh-session-id" not in response.text
    assert "fresh-signature" not in response.text
    status_data = status_response.json()["data"]
    assert status_data["state"] == STATE_HEALTHY
    assert status_data["active"]["id"] == data["credential"]["id"]
    assert status_data["active"]["age_status"] == "ok"


@pytest.mark.asyncio
async def test_rejected_credentials_return_422(upstream) -> None:
    upstream.mode = MODE_AUTH
    await _degrade()

    async with _client() as client:
        response = await client.post(
            "/v1/admin/credentials",
            headers=_admin_headers(),
            json={"session_id": "stale-session", "signature": "stale-signature", "api_url": UPSTREAM_URL},
        )
        public = await client.get("/v1/provisioning/status")

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "CREDENTIALS_INVALID"
    assert error["details"]["error_kind"] == "auth_error"
    assert public.json()["data"]["state"] == STATE_DEGRADED


@pytest.mark.asyncio
async def test_retry_and_revoke_check_grant_state(inline_jobs) -> None:
    user_id = await seed_user()
    grant_id = await seed_grant(user_id, await seed_resource())

    async with _client() as client:
        retry = await client.post(f"/v1/admin/access/{grant_id}/retry", headers=_admin_headers())
        revoke = await client.post(f"/v1/admin/access/{grant_id}/revoke", headers=_admin_headers(), json={})
        missing = await client.post("/v1/admin/access/grant-missing/retry", headers=_admin_headers())

    assert retry.status_code == 409
    assert retry.json()["error"]["code"] == "ACCESS_GRANT_INVALID_STATE"
    assert revoke.status_code == 409
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "ACCESS_GRANT_NOT_FOUND"
    assert inline_jobs == []


@pytest.mark.asyncio
async def test_manual_fallback_route_creates_operator_task() -> None:
    user_id = await seed_user(username="trader_one")
    grant_id = await seed_grant(user_id, await seed_resource(), status="FAILED")

    async with _client() as client:
        response = await client.post(
            f"/v1/admin/access/{grant_id}/manual",
            headers=_admin_headers(),
            json={"notes": "customer escalated"},
        )

    assert response.status_code == 200
    assert response.json()["data"]["created"] is True
    assert (await load_grant(grant_id)).status == ACCESS_PENDING

    async with _client() as client:
        detail = await client.get(f"/v1/admin/access/{grant_id}", headers=_admin_headers())

    assert detail.status_code == 200
    assert detail.json()["data"]["status"] == ACCESS_PENDING
    assert detail.json()["data"]["awaiting_manual"] is True


@pytest.mark.asyncio
async def test_grant_existing_customers_is_accepted(inline_jobs) -> None:
    resource_id = await seed_resource()

    async with _client() as client:
        accepted = await client.post(f"/v1/admin/resources/{resource_id}/grant-existing", headers=_admin_headers())
        unknown = await client.post("/v1/admin/resources/res-missing/grant-existing", headers=_admin_headers())

    assert accepted.status_code == 202
    assert accepted.json()["data"]["job_id"] == f"new-resource-grant-{resource_id}"
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


@pytest.mark.asyncio
async def test_resume_route_requeues_pending_grants(inline_jobs) -> None:
    user_id = await seed_user()
    first = await seed_grant(user_id, await seed_resource())
    second = await seed_grant(user_id, await seed_resource())

    async with _client() as client:
        everything = await client.post("/v1/admin/provisioning/resume", headers=_admin_headers(), json={})
        specific = await client.post(
            "/v1/admin/provisioning/resume",
            headers=_admin_headers(),
            json={"access_grant_ids": [second]},
        )

    assert everything.json()["data"]["requeued"] == 2
    assert specific.json()["data"]["requeued"] == 1
    assert [payload.access_grant_id for payload, _ in inline_jobs] == [first, second, second]
