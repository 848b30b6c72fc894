"""
Tests for the SLA routes
"""
import httpx
import pytest
from fastapi import FastAPI

from conftest import T0
from helpdesk_sla.shared.api.middleware import register_exception_handlers
from helpdesk_sla.sla.interfaces import sla_router

POLICY = {
    "name": "Standard",
    "description": "Standard support",
    "first_response_time": "30m",
    "resolution_time": "4h",
    "next_response_time": "1h",
    "notifications": [
        {"type": "breach", "recipients": ["assigned_user"]},
    ],
}


@pytest.fixture
async def client(sla_service, seed):
    app = FastAPI()
    app.include_router(sla_router)
    register_exception_handlers(app)
    app.state.sla_service = sla_service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_policy_routes(client):
    response = await client.post("/sla/policies", json=POLICY)
    assert response.status_code == 201
    created = response.json()
    assert created["notifications"][0]["time_delay_type"] == "immediately"
    assert created["notifications"][0]["metric"] == "all"

    response = await client.get(f"/sla/policies/{created['id']}")
    assert response.status_code == 200
    assert response.json()["first_response_time"] == "30m"

    response = await client.put(
        f"/sla/policies/{created['id']}",
        json={**POLICY, "name": "Premium", "resolution_time": ""},
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Premium"
    assert response.json()["resolution_time"] is None

    response = await client.get("/sla/policies")
    assert [p["name"] for p in response.json()] == ["Premium"]

    response = await client.delete(f"/sla/policies/{created['id']}")
    assert response.status_code == 204

    response = await client.get(f"/sla/policies/{created['id']}")
    assert response.status_code == 404


async def test_invalid_duration_is_rejected(client):
    response = await client.post("/sla/policies", json={**POLICY, "first_response_time": "soon"})

    assert response.status_code == 422
    errors = response.json()["details"]["errors"]
    assert any(e.startswith("first_response_time") for e in errors)


async def test_request_body_is_validated(client):
    response = await client.post("/sla/policies", json={**POLICY, "notifications": [{"type": "page"}]})

    assert response.status_code == 422


async def test_sla_lifecycle_routes(client):
    """Test apply, next response event and met through the API"""
    policy_id = (await client.post("/sla/policies", json=POLICY)).json()["id"]

    response = await client.post(
        "/sla/apply",
        json={"conversation_id": 1, "policy_id": policy_id, "start_time": T0.isoformat()},
    )
    assert response.status_code == 201
    assert response.json()["id"] == policy_id

    # The seeded database holds a single applied SLA
    body = {"conversation_id": 1, "policy_id": policy_id}
    response = await client.post("/sla/applied/1/next-response", json=body)
    assert response.status_code == 201
    assert response.json()["deadline_at"].startswith("2026-03-02T11:00:00")

    response = await client.post("/sla/applied/1/next-response", json=body)
    assert response.status_code == 409

    response = await client.post("/sla/applied/1/met", json={})
    assert response.status_code == 200
    assert response.json()["met_at"].startswith("2026-03-02T10:00:00")

    response = await client.post("/sla/applied/1/met", json={})
    assert response.status_code == 404


async def test_next_response_not_configured(client):
    policy = {**POLICY, "next_response_time": None}
    policy_id = (await client.post("/sla/policies", json=policy)).json()["id"]
    await client.post(
        "/sla/apply",
        json={"conversation_id": 2, "policy_id": policy_id, "start_time": T0.isoformat()},
    )

    response = await client.post(
        "/sla/applied/1/next-response",
        json={"conversation_id": 2, "policy_id": policy_id},
    )

    assert response.status_code == 422


async def test_apply_unknown_policy(client):
    response = await client.post("/sla/apply", json={"conversation_id": 1, "policy_id": 99})

    assert response.status_code == 404
    assert "detail" in response.json()
