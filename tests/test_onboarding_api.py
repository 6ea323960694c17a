"""Tests for the onboarding HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from careflow.api.dependencies import (
    FlowRegistry,
    get_auth_gateway,
    get_db_client,
    get_flow_registry,
    get_redis_client,
)
from careflow.core.exceptions import ProfileNotFoundError
from careflow.domain.schemas import AuthOutcome
from careflow.main import app

BASE = "/api/v1/onboarding/flows"


@pytest.fixture
def registry():
    return FlowRegistry(ttl_seconds=600)


@pytest.fixture
def client(registry, mock_db, mock_gateway, fake_redis):
    app.dependency_overrides[get_flow_registry] = lambda: registry
    app.dependency_overrides[get_db_client] = lambda: mock_db
    app.dependency_overrides[get_auth_gateway] = lambda: mock_gateway
    app.dependency_overrides[get_redis_client] = lambda: fake_redis
    yield TestClient(app)
    app.dependency_overrides.clear()


def open_family_flow(client):
    response = client.post(BASE, json={"intent": "family", "draft_scope": "api-test"})
    assert response.status_code == 201
    return response.json()


def test_open_flow_returns_view(client, registry):
    body = open_family_flow(client)

    assert body["result"]["ok"] is True
    assert body["view"]["step"] == "family_info"
    assert body["view"]["title"] == "Who needs care?"
    assert body["view"]["progress"] == {"step_number": 1, "total_steps": 3}
    assert len(registry) == 1


def test_update_and_submit(client):
    flow_id = open_family_flow(client)["view"]["flow_id"]

    response = client.patch(f"{BASE}/{flow_id}/data", json={"data": {"display_name": "Pat"}})
    assert response.json()["view"]["data"]["display_name"] == "Pat"

    response = client.post(f"{BASE}/{flow_id}/submit", json={})
    assert response.status_code == 200
    assert response.json()["view"]["step"] == "family_needs"


def test_validation_failure_is_typed_result(client):
    flow_id = open_family_flow(client)["view"]["flow_id"]

    body = client.post(f"{BASE}/{flow_id}/submit", json={}).json()

    assert body["result"]["ok"] is False
    assert body["result"]["error_code"] == "VALIDATION_ERROR"
    assert "display_name" in body["result"]["field_errors"]
    assert body["view"]["step"] == "family_info"


def test_unknown_field_is_rejected(client):
    flow_id = open_family_flow(client)["view"]["flow_id"]
    body = client.patch(f"{BASE}/{flow_id}/data", json={"data": {"favorite_color": "blue"}}).json()
    assert body["result"]["error_code"] == "VALIDATION_ERROR"


def test_password_never_returned(client):
    flow_id = open_family_flow(client)["view"]["flow_id"]
    body = client.patch(
        f"{BASE}/{flow_id}/data", json={"data": {"password": "longenough1"}}
    ).json()
    assert "password" not in body["view"]["data"]


def test_back_and_auth_mode(client, mock_gateway):
    flow_id = client.post(BASE, json={}).json()["view"]["flow_id"]
    client.patch(f"{BASE}/{flow_id}/data", json={"data": {"intent": "family"}})
    assert client.post(f"{BASE}/{flow_id}/submit", json={}).json()["view"]["step"] == "family_info"

    body = client.post(f"{BASE}/{flow_id}/back").json()
    assert body["view"]["step"] == "intent"

    # Auth mode only applies on the auth step
    body = client.post(f"{BASE}/{flow_id}/auth-mode", json={"mode": "sign_in"}).json()
    assert body["result"]["ignored"] is True


def test_sign_up_then_resend_respects_cooldown(client, mock_gateway):
    flow_id = open_family_flow(client)["view"]["flow_id"]
    client.patch(f"{BASE}/{flow_id}/data", json={"data": {"display_name": "Pat"}})
    client.post(f"{BASE}/{flow_id}/submit", json={})
    client.post(f"{BASE}/{flow_id}/submit", json={})
    client.patch(
        f"{BASE}/{flow_id}/data",
        json={"data": {"email": "pat@example.com", "password": "longenough1"}},
    )
    mock_gateway.sign_up.return_value = AuthOutcome(user_id="user-1", requires_verification=True)

    body = client.post(f"{BASE}/{flow_id}/submit", json={}).json()
    assert body["view"]["step"] == "verify_code"
    assert 0 < body["view"]["resend_cooldown_seconds"] <= 30

    body = client.post(f"{BASE}/{flow_id}/resend").json()
    assert body["result"]["error_code"] == "RESEND_COOLDOWN"


def test_unknown_flow_is_404(client):
    response = client.get(f"{BASE}/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"] == "HTTP_ERROR"


def test_close_removes_flow(client, registry):
    flow_id = open_family_flow(client)["view"]["flow_id"]

    assert client.delete(f"{BASE}/{flow_id}").status_code == 204
    assert len(registry) == 0
    assert client.get(f"{BASE}/{flow_id}").status_code == 404


def test_claim_of_missing_listing_is_404(client, mock_db):
    mock_db.get_profile.side_effect = ProfileNotFoundError("Profile not found: p-x")
    response = client.post(BASE, json={"claim_profile_id": "p-x"})
    assert response.status_code == 404


def test_claim_of_claimed_listing_is_409(client, mock_db, sunrise_listing):
    mock_db.get_profile.return_value = {**sunrise_listing.model_dump(), "claim_state": "claimed"}
    response = client.post(BASE, json={"claim_profile_id": sunrise_listing.id})
    assert response.status_code == 409


def test_claim_opens_at_auth(client, mock_db, sunrise_listing):
    mock_db.get_profile.return_value = sunrise_listing.model_dump()
    body = client.post(BASE, json={"claim_profile_id": sunrise_listing.id}).json()
    assert body["view"]["step"] == "auth"
    assert body["view"]["can_go_back"] is False


def test_bad_request_body_is_422(client):
    response = client.post(BASE, json={"intent": "astronaut"})
    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_trace_id_is_echoed(client):
    response = client.get("/health", headers={"X-Trace-Id": "trace-123"})
    assert response.status_code == 200
    assert response.headers["X-Trace-Id"] == "trace-123"


def test_patch_cannot_link_a_listing(client, mock_db):
    flow_id = client.post(
        BASE, json={"intent": "provider", "provider_type": "organization"}
    ).json()["view"]["flow_id"]

    body = client.patch(
        f"{BASE}/{flow_id}/data", json={"data": {"claimed_profile_id": "profile-other"}}
    ).json()

    assert body["result"]["error_code"] == "VALIDATION_ERROR"
    assert body["view"]["selected_profile_id"] is None
