"""
End-to-end HTTP tests against the FastAPI app with in-memory backends.
"""

import pytest
from conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    MECHANIC_ID,
    OTHER_CUSTOMER_ID,
    OTHER_MECHANIC_ID,
    auth_header,
)
from fastapi.testclient import TestClient

from app.main import create_app

CUSTOMER = auth_header(CUSTOMER_ID, "customer")
OTHER_CUSTOMER = auth_header(OTHER_CUSTOMER_ID, "customer")
MECHANIC = auth_header(MECHANIC_ID, "mechanic")
OTHER_MECHANIC = auth_header(OTHER_MECHANIC_ID, "mechanic")
ADMIN = auth_header(ADMIN_ID, "admin")

JOB_REQUEST = {
    "service_type": "brake_repair",
    "description": "Squeaking front brakes",
    "location": {"address": "1 Main St", "latitude": 40.0, "longitude": -74.0},
    "vehicle": {"make": "Honda", "model": "Civic", "year": 2015},
    "urgency": "HIGH",
}


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _create_job(client) -> dict:
    response = client.post("/jobs", json=JOB_REQUEST, headers=CUSTOMER)
    assert response.status_code == 201, response.text
    return response.json()


def _quote(client, job_id: str, headers=MECHANIC) -> dict:
    response = client.post(
        "/quotes",
        json={"job_id": job_id, "description": "Replace pads", "labor_cost": "50.00", "parts_cost": "30.00"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _accepted_job(client) -> dict:
    job = _create_job(client)
    quote = _quote(client, job["id"])
    response = client.post(f"/quotes/{quote['id']}/accept", headers=CUSTOMER)
    assert response.status_code == 200, response.text
    return response.json()["job"]


def _completed_job(client) -> dict:
    job = _accepted_job(client)
    for target in ("in-progress", "completed"):
        response = client.patch(f"/jobs/{job['id']}/status", json={"status": target}, headers=MECHANIC)
        assert response.status_code == 200, response.text
    return response.json()


def test_requests_need_a_valid_token(client):
    assert client.get("/jobs").status_code == 401
    assert client.get("/jobs", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/healthz").headers["X-Request-ID"]


def test_customer_opens_service_request(client):
    job = _create_job(client)

    assert job["status"] == "PENDING"
    assert job["customer_id"] == CUSTOMER_ID
    assert job["urgency"] == "HIGH"
    assert client.get(f"/jobs/{job['id']}", headers=CUSTOMER).json()["id"] == job["id"]
    assert [j["id"] for j in client.get("/jobs", headers=CUSTOMER).json()] == [job["id"]]


def test_mechanic_cannot_open_service_request(client):
    response = client.post("/jobs", json=JOB_REQUEST, headers=MECHANIC)

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "FORBIDDEN"


def test_open_jobs_listing_is_for_mechanics(client):
    job = _create_job(client)

    assert [j["id"] for j in client.get("/jobs/open", headers=MECHANIC).json()] == [job["id"]]
    assert client.get("/jobs/open", headers=CUSTOMER).status_code == 403


def test_quote_and_accept_flow(client):
    job = _create_job(client)
    quote = _quote(client, job["id"])
    competitor = _quote(client, job["id"], headers=OTHER_MECHANIC)

    assert quote["amount"] == "86.40"
    assert client.get(f"/jobs/{job['id']}", headers=CUSTOMER).json()["status"] == "QUOTED"
    assert len(client.get(f"/jobs/{job['id']}/quotes", headers=CUSTOMER).json()) == 2

    assert client.post(f"/quotes/{quote['id']}/accept", headers=OTHER_CUSTOMER).status_code == 403

    response = client.post(f"/quotes/{quote['id']}/accept", headers=CUSTOMER)
    assert response.status_code == 200
    body = response.json()
    assert body["job"]["status"] == "ACCEPTED"
    assert body["job"]["mechanic_id"] == MECHANIC_ID
    assert body["quote"]["status"] == "ACCEPTED"

    assert client.get(f"/quotes/{competitor['id']}", headers=OTHER_MECHANIC).json()["status"] == "REJECTED"
    # Accepting again is a no-op
    assert client.post(f"/quotes/{quote['id']}/accept", headers=CUSTOMER).status_code == 200


def test_rejecting_only_quote_reopens_job(client):
    job = _create_job(client)
    quote = _quote(client, job["id"])

    response = client.post(f"/quotes/{quote['id']}/reject", json={"reason": "Too pricey"}, headers=CUSTOMER)

    assert response.status_code == 200
    assert response.json()["status"] == "REJECTED"
    assert client.get(f"/jobs/{job['id']}", headers=CUSTOMER).json()["status"] == "PENDING"


def test_negative_quote_is_unprocessable(client):
    job = _create_job(client)

    response = client.post(
        "/quotes",
        json={"job_id": job["id"], "description": "Refund", "labor_cost": "-10"},
        headers=MECHANIC,
    )

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_status_changes_map_to_http_errors(client):
    job = _accepted_job(client)

    skip = client.patch(f"/jobs/{job['id']}/status", json={"status": "completed"}, headers=MECHANIC)
    assert skip.status_code == 409
    assert skip.json()["detail"]["code"] == "INVALID_TRANSITION"

    unknown = client.patch(f"/jobs/{job['id']}/status", json={"status": "teleported"}, headers=MECHANIC)
    assert unknown.status_code == 422

    outsider = client.patch(f"/jobs/{job['id']}/status", json={"status": "in-progress"}, headers=OTHER_MECHANIC)
    assert outsider.status_code == 403

    assert client.get("/jobs/missing", headers=CUSTOMER).status_code == 404
    assert client.get("/jobs", params={"status": "bogus"}, headers=CUSTOMER).status_code == 422


def test_mechanic_work_log(client):
    job = _accepted_job(client)
    job_id = job["id"]

    located = client.post(f"/jobs/{job_id}/location", json={"lat": 40.1, "lng": -74.1, "eta_minutes": 15}, headers=MECHANIC)
    assert located.status_code == 200
    assert located.json()["current_location"] == {"latitude": 40.1, "longitude": -74.1}
    assert located.json()["eta"] is not None

    client.patch(f"/jobs/{job_id}/status", json={"status": "in-progress"}, headers=MECHANIC)

    parts = client.post(f"/jobs/{job_id}/parts", json={"name": "Brake pads", "quantity": 2, "unit_price": "12.50"}, headers=MECHANIC)
    assert parts.json()["totals"]["parts"] == "25.00"

    totals = client.patch(f"/jobs/{job_id}/totals", json={"labor": "60.00", "discounts": "5.00"}, headers=MECHANIC)
    assert totals.json()["totals"]["total"] == "80.00"

    assert client.post(f"/jobs/{job_id}/timer", json={"action": "START"}, headers=MECHANIC).status_code == 200
    assert client.post(f"/jobs/{job_id}/timer", json={"action": "RESUME"}, headers=MECHANIC).status_code == 409

    photo = client.post(f"/jobs/{job_id}/photos", json={"url": "https://cdn.example.com/p.jpg"}, headers=MECHANIC)
    assert photo.json()["photos"][0]["uploaded_by"] == MECHANIC_ID

    events = [e["event"] for e in client.get(f"/jobs/{job_id}/timeline", headers=CUSTOMER).json()]
    assert events[:4] == ["JOB_CREATED", "QUOTE_SENT", "QUOTE_ACCEPTED", "SERVICE_STARTED"]


def test_reviews_after_completion(client):
    job = _completed_job(client)

    response = client.post("/reviews", json={"job_id": job["id"], "rating": 4, "comment": "Quick and tidy"}, headers=CUSTOMER)
    assert response.status_code == 201
    review = response.json()

    duplicate = client.post("/reviews", json={"job_id": job["id"], "rating": 5}, headers=CUSTOMER)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "ALREADY_REVIEWED"

    summary = client.get(f"/reviews/mechanics/{MECHANIC_ID}/summary", headers=CUSTOMER).json()
    assert summary["stats"]["average_rating"] == 4.0
    assert summary["recent"][0]["reviewer_name"] == "Carla D."

    assert [j["id"] for j in client.get("/reviews/pending", headers=MECHANIC).json()] == [job["id"]]

    hidden = client.patch(f"/reviews/{review['id']}/moderation", json={"is_hidden": True}, headers=ADMIN)
    assert hidden.json()["is_hidden"] is True
    page = client.get(f"/reviews/users/{MECHANIC_ID}", headers=CUSTOMER).json()
    assert page["reviews"] == []
    assert page["stats"]["total_reviews"] == 0


def test_notifications_and_chat(client):
    job = _accepted_job(client)

    sent = client.post(f"/messages/{job['id']}", json={"content": "Running 5 min late"}, headers=MECHANIC)
    assert sent.status_code == 201
    assert [m["content"] for m in client.get(f"/messages/{job['id']}", headers=CUSTOMER).json()] == ["Running 5 min late"]
    assert client.post(f"/messages/{job['id']}/read", headers=CUSTOMER).json() == {"count": 1}

    unread = client.get("/notifications/unread-count", headers=CUSTOMER).json()["count"]
    assert unread >= 1
    notification = client.get("/notifications", headers=CUSTOMER).json()[0]
    read = client.post(f"/notifications/{notification['id']}/read", headers=CUSTOMER)
    assert read.json()["read"] is True
    assert client.post(f"/notifications/{notification['id']}/read", headers=MECHANIC).status_code == 404

    client.post("/notifications/read-all", headers=CUSTOMER)
    assert client.get("/notifications/unread-count", headers=CUSTOMER).json() == {"count": 0}

    token = client.post("/notifications/push-tokens", json={"token": "ExponentPushToken[x]", "platform": "android"}, headers=CUSTOMER)
    assert token.status_code == 201


def test_payment_intent(client, payment_gateway):
    job = _accepted_job(client)

    response = client.post("/payments/intents", json={"job_id": job["id"], "kind": "DEPOSIT"}, headers=CUSTOMER)

    assert response.status_code == 201
    body = response.json()
    assert body["client_secret"] == "pi_1_secret"
    assert body["payment"]["amount"] == "17.28"
    assert [p["intent_id"] for p in client.get(f"/payments/jobs/{job['id']}", headers=MECHANIC).json()] == ["pi_1"]
    assert client.get(f"/payments/jobs/{job['id']}", headers=OTHER_CUSTOMER).status_code == 403
