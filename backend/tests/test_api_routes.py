# backend/tests/test_api_routes.py
from __future__ import annotations

from fastapi.testclient import TestClient

from repairflow.auth import jwt_sign
from repairflow.main import app

client = TestClient(app)


def _headers(w, who: str) -> dict[str, str]:
    p = getattr(w, who)
    return {"X-Org-Slug": w.org_slug, "X-User-Email": p.email, "X-User-Role": p.role}


def _submit(w, **over):
    body = {
        "property_id": w.property_id,
        "title": "Dishwasher not draining",
        "description": "Stops mid cycle",
        "category": "appliance",
        "estimated_cost": 900,
    }
    body.update(over)
    return client.post("/api/maintenance/requests", json=body, headers=_headers(w, "tenant"))


def test_health_and_slas():
    r = client.get("/api/meta/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers.get("X-Request-ID")

    slas = client.get("/api/meta/slas").json()
    assert slas["water"] == 15
    assert slas["safety"] == 10


def test_submit_then_manual_approval(world):
    r = _submit(world)
    assert r.status_code == 201
    body = r.json()
    assert body["workflow_status"] == "submitted"
    assert body["approval_status"] == "pending"
    rid = body["id"]

    r = client.post(f"/api/maintenance/requests/{rid}/approve", json={}, headers=_headers(world, "tenant"))
    assert r.status_code == 403
    assert r.json()["error"] == "permission_denied"
    assert r.json()["retryable"] is False

    r = client.post(f"/api/maintenance/requests/{rid}/approve", json={"notes": "fine"}, headers=_headers(world, "landlord"))
    assert r.status_code == 200
    assert r.json()["workflow_status"] == "approved"

    r = client.post(f"/api/maintenance/requests/{rid}/approve", json={}, headers=_headers(world, "landlord"))
    assert r.status_code == 409
    assert r.json()["error"] == "illegal_transition"

    events = client.get(f"/api/maintenance/requests/{rid}/events", headers=_headers(world, "landlord")).json()
    assert {"request_submitted", "request_approved"} <= {e["event_type"] for e in events}


def test_request_body_validation(world):
    r = _submit(world, estimated_cost=-5)
    assert r.status_code == 422


def test_cross_org_request_is_hidden(world, make_world):
    other = make_world("org-b")
    rid = _submit(world).json()["id"]

    r = client.get(f"/api/maintenance/requests/{rid}", headers=_headers(other, "landlord"))
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_tenant_sees_only_own_requests(world):
    rid = _submit(world).json()["id"]
    h = {"X-Org-Slug": world.org_slug, "X-User-Email": "neighbour@org-a.local", "X-User-Role": "tenant"}
    assert client.get(f"/api/maintenance/requests/{rid}", headers=h).status_code == 403
    assert client.get("/api/maintenance/requests", headers=h).json() == []


def test_missing_org_header_is_unauthorized():
    r = client.get("/api/maintenance/requests", headers={"X-User-Email": "a@b.c"})
    assert r.status_code == 401


def test_bearer_token_auth(world):
    token = jwt_sign({"sub": str(world.landlord.user_id)})
    h = {"X-Org-Slug": world.org_slug, "Authorization": f"Bearer {token}"}
    r = client.get(f"/api/policies/{world.property_id}", headers=h)
    assert r.status_code == 200
    assert r.json()["approval_mode"] == "over_amount"

    bad = {"X-Org-Slug": world.org_slug, "Authorization": "Bearer not-a-token"}
    assert client.get(f"/api/policies/{world.property_id}", headers=bad).status_code == 401


def test_bid_selection_over_http(world):
    rid = _submit(world, estimated_cost=100).json()["id"]

    r = client.post(
        f"/api/maintenance/requests/{rid}/bids",
        json={"amount": 95, "estimated_hours": 2, "available_dates": ["2026-06-01"]},
        headers=_headers(world, "provider"),
    )
    assert r.status_code == 201
    bid = r.json()
    assert bid["available_dates"] == ["2026-06-01"]

    r = client.post(f"/api/maintenance/bids/{bid['id']}/select", headers=_headers(world, "landlord"))
    assert r.status_code == 200
    assert r.json()["workflow_status"] == "assigned"
    assert r.json()["assigned_provider_id"] == world.provider.user_id


def test_policy_update_requires_manager(world):
    r = client.put(f"/api/policies/{world.property_id}", json={"approval_mode": "all"}, headers=_headers(world, "tenant"))
    assert r.status_code == 403

    r = client.put(
        f"/api/policies/{world.property_id}", json={"approval_mode": "all"}, headers=_headers(world, "landlord")
    )
    assert r.status_code == 200
    assert r.json()["approval_mode"] == "all"
    assert r.json()["auto_approval_limit"] == 250.0


def test_sweep_endpoint_is_manager_only(world):
    assert client.post("/api/escalations/sweep", headers=_headers(world, "tenant")).status_code == 403
    r = client.post("/api/escalations/sweep", headers=_headers(world, "landlord"))
    assert r.status_code == 200
    assert r.json()["due"] == 0


def test_provider_reliability_visibility(world):
    own = client.get(f"/api/providers/{world.provider.user_id}/reliability", headers=_headers(world, "provider"))
    assert own.status_code == 200
    assert own.json()["reliability_score"] == 100.0

    other = client.get(f"/api/providers/{world.provider2.user_id}/reliability", headers=_headers(world, "provider"))
    assert other.status_code == 403


def test_metrics_text(world):
    _submit(world)
    r = client.get("/api/meta/metrics")
    assert r.status_code == 200
    assert "requests_submitted" in r.text
