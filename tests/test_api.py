"""HTTP surface checks through the FastAPI test client."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from mealgate.api.main import create_app
from mealgate.core.settings import get_settings


@pytest.fixture()
def client(database):
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


def _webhook(client, event):
    return client.post("/api/v1/billing/webhook", content=json.dumps(event))


def _checkout_event(event_id, user_id, plan="premium"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1773144000,
        "data": {"object": {"subscription": f"sub_{user_id}", "metadata": {"user_id": user_id, "plan": plan}}},
    }


def test_healthcheck(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_rate_limiter_is_configured(client):
    assert hasattr(client.app.state, "limiter")


def test_plans_are_listed(client):
    response = client.get("/api/v1/plans")
    assert response.status_code == 200
    assert [plan["id"] for plan in response.json()] == ["free", "premium", "pro", "vip"]
    assert client.get("/api/v1/plans/platinum").status_code == 422


def test_reserve_denies_after_free_quota(client):
    statuses = [
        client.post("/api/v1/users/u-api/actions/dailyAnalyses/reserve").status_code for _ in range(4)
    ]
    assert statuses == [200, 200, 200, 429]

    quota = client.get("/api/v1/users/u-api/quota").json()
    assert quota["plan_id"] == "free"
    assert quota["remaining"]["dailyAnalyses"] == 0
    assert client.post("/api/v1/users/u-api/actions/selfies/reserve").status_code == 404


def test_command_endpoint_classifies_and_reserves(client):
    body = client.post("/api/v1/users/u-cmd/commands", json={"text": "Frango com batata doce"}).json()
    assert body["kind"] == "meal_description"
    assert body["reservation"]["allowed"] is True

    body = client.post("/api/v1/users/u-cmd/commands", json={"text": "ajuda"}).json()
    assert body["kind"] == "help"
    assert body["reservation"] is None


def test_webhook_activates_and_deduplicates(client):
    event = _checkout_event("evt_api_1", "u-paid")
    first = _webhook(client, event)
    second = _webhook(client, event)

    assert first.status_code == 202
    assert first.json()["outcome"] == "applied"
    assert second.json()["outcome"] == "duplicate"

    sub = client.get("/api/v1/users/u-paid/subscription").json()
    assert sub["status"] == "active"
    assert sub["active_plan"] == "premium"


def test_webhook_ignores_unknown_types(client):
    response = _webhook(client, {"id": "evt_other", "type": "customer.created", "data": {"object": {}}})
    assert response.status_code == 202
    assert response.json()["outcome"] == "ignored"


def test_webhook_rejects_malformed_body(client):
    response = client.post("/api/v1/billing/webhook", content=b"{not json")
    assert response.status_code == 400


def test_cancel_endpoint(client):
    _webhook(client, _checkout_event("evt_api_cancel", "u-cancel", plan="pro"))
    response = client.post("/api/v1/users/u-cancel/subscription/cancel")
    assert response.status_code == 200
    assert response.json()["plan_id"] == "free"
    assert client.post("/api/v1/users/u-cancel/subscription/cancel").status_code == 404


def test_referral_flow(client):
    code = client.post("/api/v1/users/5511900004321/referral-code").json()["code"]
    assert code.startswith("REF4321")
    assert client.get(f"/api/v1/referrals/{code}").json()["valid"] is True

    redeem = client.post("/api/v1/referrals/redeem", json={"code": code, "user_id": "5511900008765"})
    assert redeem.status_code == 200
    assert redeem.json()["plan_id"] == "premium"

    again = client.post("/api/v1/referrals/redeem", json={"code": code, "user_id": "5511900008765"})
    assert again.status_code == 409
    assert again.json()["error"] == "DuplicateReferralPair"

    stats = client.get("/api/v1/users/5511900004321/referrals").json()
    assert stats["total_referrals"] == 1
    assert stats["points"] == 100

    board = client.get("/api/v1/referrals/leaderboard").json()
    assert board[0]["position"] == 1
    assert board[0]["referrer"] == "4321***"


def test_throttled_redeem_returns_retry_after(client):
    settings = get_settings()
    for _ in range(settings.referral_max_failures):
        assert (
            client.post("/api/v1/referrals/redeem", json={"code": "REFXXXX0000", "user_id": "u-guess"}).status_code
            == 404
        )
    locked = client.post("/api/v1/referrals/redeem", json={"code": "REFXXXX0000", "user_id": "u-guess"})
    assert locked.status_code == 429
    assert int(locked.headers["Retry-After"]) > 0


def test_admin_endpoints_require_service_token(database, monkeypatch):
    monkeypatch.setenv("MEALGATE_SERVICE_TOKEN", "s3cret")
    get_settings.cache_clear()
    try:
        with TestClient(create_app()) as client:
            assert client.get("/api/v1/admin/tasks").status_code == 401
            assert client.get("/api/v1/admin/tasks", headers={"X-Service-Token": "s3cret"}).json() == []
            ok = client.post("/api/v1/admin/tasks/sweep", headers={"X-Service-Token": "s3cret"})
            assert ok.status_code == 200
            assert ok.json()["claimed"] == 0
    finally:
        get_settings.cache_clear()
