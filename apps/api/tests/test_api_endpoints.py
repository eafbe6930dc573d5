from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from tokenlife_api.models.subscription import SubscriptionProvider
from tokenlife_api.scheduling import TaskScheduler
from tokenlife_api.services.subscriptions import SubscriptionService


@pytest.mark.asyncio
async def test_health_and_readiness(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        health = await client.get("/api/v1/healthz")
        readiness = await client.get("/api/v1/readyz")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    assert readiness.status_code == 200
    payload = readiness.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["task_scheduler"]["status"] == "disabled"
    assert payload["components"]["task_recovery"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_credit_debit_and_balance(app_with_db, make_user) -> None:
    app, _ = app_with_db
    user = await make_user("api@example.com")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        credit = await client.post(
            f"/api/v1/tokens/users/{user.id}/credit",
            json={"amount": 250, "tokenType": "bonus", "source": "promo"},
        )
        debit = await client.post(
            f"/api/v1/tokens/users/{user.id}/debit",
            json={"amount": 100, "source": "api_call"},
        )
        overdraw = await client.post(
            f"/api/v1/tokens/users/{user.id}/debit",
            json={"amount": 1_000, "source": "api_call"},
        )
        rejected = await client.post(
            f"/api/v1/tokens/users/{user.id}/credit",
            json={"amount": 5, "tokenType": "debit"},
        )
        balance = await client.get(f"/api/v1/tokens/users/{user.id}/balance")
        history = await client.get(f"/api/v1/tokens/users/{user.id}/transactions", params={"types": ["debit"]})
        missing = await client.get(f"/api/v1/tokens/users/{uuid4()}/balance")

    assert credit.status_code == 201
    assert credit.json()["balanceAfter"] == 250
    assert credit.json()["tokenType"] == "bonus"

    assert debit.status_code == 201
    assert debit.json()["amount"] == -100
    assert debit.json()["balanceAfter"] == 150

    assert overdraw.status_code == 409
    assert rejected.status_code == 400

    assert balance.status_code == 200
    assert balance.json()["total"] == 150
    assert balance.json()["breakdown"]["bonus"] == 250

    assert [entry["amount"] for entry in history.json()] == [-100]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_subscription_endpoints(app_with_db, make_user, make_plan, clock) -> None:
    app, session_factory = app_with_db
    user = await make_user("subs-api@example.com")
    pro = await make_plan("pro", token_quota=3_000, duration_days=30)

    # Created against the fixed 2024 clock, so the period is long over by wall-clock time.
    async with session_factory() as session:
        expired = await SubscriptionService(session, clock=clock).create_subscription(
            user.id, pro, provider=SubscriptionProvider.STRIPE, days=30
        )
        await session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sweep = await client.post("/api/v1/subscriptions/process-expired")
        listing = await client.get(f"/api/v1/subscriptions/users/{user.id}")
        trial = await client.post(f"/api/v1/subscriptions/users/{user.id}/trial")
        second_trial = await client.post(f"/api/v1/subscriptions/users/{user.id}/trial")
        cancel_expired = await client.post(f"/api/v1/subscriptions/{expired.id}/cancel")
        cancel_missing = await client.post(f"/api/v1/subscriptions/{uuid4()}/cancel")

        trial_id = trial.json()["id"]
        lapse = await client.post(f"/api/v1/subscriptions/{trial_id}/cancel", json={"atPeriodEnd": True})
        reactivate = await client.post(f"/api/v1/subscriptions/{trial_id}/reactivate")

    assert sweep.status_code == 200
    body = sweep.json()
    assert body["processed"] == 1
    assert body["expired"] == 1
    assert body["results"][0]["subscriptionId"] == str(expired.id)
    assert body["results"][0]["removedTokens"] == 3_000
    assert body["results"][0]["fallbackSubscriptionId"] is not None

    statuses = sorted(subscription["status"] for subscription in listing.json())
    assert statuses == ["active", "expired"]

    assert trial.status_code == 201
    assert trial.json()["provider"] == "trial"
    assert second_trial.status_code == 409

    assert cancel_expired.status_code == 400
    assert cancel_missing.status_code == 404

    assert lapse.status_code == 200
    assert lapse.json()["cancelAtPeriodEnd"] is True
    assert reactivate.status_code == 200
    assert reactivate.json()["cancelAtPeriodEnd"] is False


@pytest.mark.asyncio
async def test_invitation_endpoints(app_with_db, make_user, make_plan) -> None:
    app, _ = app_with_db
    inviter = await make_user("api-inviter@example.com")
    invitee = await make_user("api-invitee@example.com")
    await make_plan("pro", token_quota=500, duration_days=30)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post("/api/v1/invitations", json={"inviterId": str(inviter.id)})
        code = created.json()["code"]
        self_accept = await client.post(
            "/api/v1/invitations/accept", json={"code": code, "inviteeId": str(inviter.id)}
        )
        accepted = await client.post(
            "/api/v1/invitations/accept", json={"code": code, "inviteeId": str(invitee.id)}
        )
        unknown = await client.post(
            "/api/v1/invitations/accept", json={"code": "ZZZZZZZZZZ", "inviteeId": str(invitee.id)}
        )
        queued = await client.get(f"/api/v1/invitations/users/{inviter.id}/queued-rewards")
        missing_inviter = await client.post("/api/v1/invitations", json={"inviterId": str(uuid4())})

    assert created.status_code == 201
    assert created.json()["status"] == "pending"

    assert self_accept.status_code == 400
    assert accepted.status_code == 200
    body = accepted.json()
    assert body["invitee"]["status"] == "granted"
    assert body["invitee"]["tokensGranted"] == 500
    assert body["inviter"]["status"] == "granted"

    assert unknown.status_code == 404
    assert queued.json() == {"userId": str(inviter.id), "totalDays": 0, "pending": []}
    assert missing_inviter.status_code == 404


@pytest.mark.asyncio
async def test_task_endpoints(app_with_db, clock) -> None:
    app, session_factory = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unavailable = await client.get("/api/v1/tasks")
    assert unavailable.status_code == 503

    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)

    async def token_sweep(*, session_factory, clock) -> dict:
        return {"entries_expired": 0}

    async def failing(*, session_factory, clock) -> None:
        raise RuntimeError("handler exploded")

    scheduler.register("token_sweep", "30 0 * * *", token_sweep, description="Expire subscription tokens")
    scheduler.register("failing", "0 * * * *", failing)
    app.state.task_scheduler = scheduler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        listing = await client.get("/api/v1/tasks")
        triggered = await client.post("/api/v1/tasks/token_sweep/trigger")
        failed = await client.post("/api/v1/tasks/failing/trigger")
        disabled = await client.post("/api/v1/tasks/token_sweep/disable")
        enabled = await client.post("/api/v1/tasks/token_sweep/enable")
        detail = await client.get("/api/v1/tasks/token_sweep", params={"history": 5})
        health = await client.get("/api/v1/tasks/health")
        missing = await client.post("/api/v1/tasks/nope/trigger")

    assert listing.status_code == 200
    assert {task["id"] for task in listing.json()} == {"token_sweep", "failing"}

    assert triggered.status_code == 200
    assert triggered.json()["status"] == "completed"
    assert triggered.json()["summary"] == {"entries_expired": 0}

    assert failed.status_code == 500
    assert "handler exploded" in failed.json()["detail"]

    assert disabled.json()["enabled"] is False
    assert enabled.json()["enabled"] is True

    assert detail.status_code == 200
    assert detail.json()["description"] == "Expire subscription tokens"
    assert {entry["status"] for entry in detail.json()["history"]} == {"started", "completed"}

    assert health.json()["configured_jobs"] == 2
    assert missing.status_code == 404
