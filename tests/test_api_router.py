"""
Tests for the referral HTTP API — auth, status codes and error bodies.
"""

import pytest
from fastapi.testclient import TestClient

from handoff_core.api_gateway.main import create_app
from handoff_core.auth.security import create_access_token

from .conftest import OTHER_PROVIDER, PATIENT, RECEIVER, SENDER, FakeScheduler


def bearer(**claims) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


SENDER_AUTH = bearer(user_id="user_sender", role="clinician", provider_id=SENDER)
RECEIVER_AUTH = bearer(user_id="user_receiver", role="clinician", provider_id=RECEIVER)
OUTSIDER_AUTH = bearer(user_id="user_outsider", role="clinician", provider_id=OTHER_PROVIDER)
OPERATOR_AUTH = bearer(user_id="user_desk", role="operator", represented_provider_ids=[RECEIVER])


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client(config, scheduler):
    app = create_app(config=config, scheduler=scheduler)
    with TestClient(app) as test_client:
        yield test_client


def send(client, **overrides) -> dict:
    body = {
        "to_provider_id": RECEIVER,
        "patient_id": PATIENT,
        "reason": "Chest pain on exertion",
        "urgency": "EMERGENCY",
    }
    body.update(overrides)
    response = client.post("/referrals", json=body, headers=SENDER_AUTH)
    assert response.status_code == 201, response.text
    return response.json()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Service
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestService:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_requires_token(self, client):
        assert client.get("/referrals").status_code in (401, 403)

    def test_rejects_bad_token(self, client):
        response = client.get("/referrals", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401

    def test_rejects_system_token(self, client):
        response = client.get(
            "/referrals", headers=bearer(user_id="system:expiry-sweeper", role="system")
        )
        assert response.status_code == 403


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Referral flow
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestReferralFlow:

    def test_create_defaults_sender_to_caller(self, client):
        referral = send(client)
        assert referral["from_provider_id"] == SENDER
        assert referral["status"] == "PENDING"
        assert referral["version"] == 1

    def test_create_validation_error_body(self, client):
        response = client.post(
            "/referrals",
            json={"to_provider_id": SENDER, "patient_id": PATIENT, "reason": "x"},
            headers=SENDER_AUTH,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["field"] == "to_provider_id"

    def test_operator_auto_convert(self, client, scheduler):
        referral = send(client)
        response = client.post(
            f"/referrals/{referral['referral_id']}/accept",
            json={"expected_version": 1, "auto_convert": {"date_time": "2026-03-03T10:00:00Z"}},
            headers=OPERATOR_AUTH,
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "CONVERTED"
        assert body["appointment_id"] == "appt_001"
        assert body["accepted_at"] is not None
        assert body["resolved_at"] is not None

    def test_reject_then_accept_is_finalized(self, client):
        referral = send(client, urgency="ROUTINE")
        path = f"/referrals/{referral['referral_id']}"

        rejected = client.post(
            f"{path}/reject",
            json={"expected_version": 1, "reason": "Not my specialty"},
            headers=RECEIVER_AUTH,
        )
        assert rejected.status_code == 200
        assert rejected.json()["rejected_reason"] == "Not my specialty"
        assert rejected.json()["appointment_id"] is None

        response = client.post(f"{path}/accept", json={"expected_version": 2}, headers=RECEIVER_AUTH)
        assert response.status_code == 409
        assert response.json()["error"] == "already_finalized"
        assert response.json()["current"]["status"] == "REJECTED"

    def test_stale_version_conflict_body(self, client):
        referral = send(client)
        path = f"/referrals/{referral['referral_id']}"
        client.post(f"{path}/accept", json={"expected_version": 1}, headers=OPERATOR_AUTH)

        response = client.post(
            f"{path}/reject",
            json={"expected_version": 1, "reason": "Refer elsewhere"},
            headers=RECEIVER_AUTH,
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "conflict"
        assert body["current"]["status"] == "ACCEPTED"
        assert body["current"]["version"] == 2

    def test_scheduling_conflict(self, client, scheduler):
        referral = send(client)
        scheduler.conflict = True
        response = client.post(
            f"/referrals/{referral['referral_id']}/convert",
            json={"expected_version": 1, "date_time": "2026-03-03T10:00:00Z"},
            headers=RECEIVER_AUTH,
        )
        assert response.status_code == 409
        assert response.json()["error"] == "scheduling_conflict"

    def test_scheduler_unavailable(self, client, scheduler):
        referral = send(client)
        scheduler.unavailable = True
        response = client.post(
            f"/referrals/{referral['referral_id']}/convert",
            json={"expected_version": 1, "date_time": "2026-03-03T10:00:00Z"},
            headers=RECEIVER_AUTH,
        )
        assert response.status_code == 503

    def test_forbidden_and_not_found(self, client):
        referral = send(client)
        response = client.post(
            f"/referrals/{referral['referral_id']}/accept",
            json={"expected_version": 1},
            headers=OUTSIDER_AUTH,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

        missing = client.get("/referrals/ref_missing", headers=RECEIVER_AUTH)
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

    def test_operator_create_forbidden_even_when_malformed(self, client):
        response = client.post(
            "/referrals",
            json={"to_provider_id": RECEIVER, "patient_id": PATIENT, "reason": ""},
            headers=OPERATOR_AUTH,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_missing_expected_version_is_422(self, client):
        referral = send(client)
        response = client.post(
            f"/referrals/{referral['referral_id']}/accept", json={}, headers=RECEIVER_AUTH
        )
        assert response.status_code == 422


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Listings
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestListings:

    def test_triage_queue_order(self, client):
        routine = send(client, urgency="ROUTINE")
        emergency = send(client, urgency="EMERGENCY")
        urgent = send(client, urgency="URGENT")

        response = client.get("/referrals/triage-queue", headers=RECEIVER_AUTH)

        assert response.status_code == 200
        ids = [entry["referral"]["referral_id"] for entry in response.json()["entries"]]
        assert ids == [emergency["referral_id"], urgent["referral_id"], routine["referral_id"]]

    def test_list_sent_and_received(self, client):
        referral = send(client)

        sent = client.get("/referrals", params={"direction": "sent"}, headers=SENDER_AUTH)
        received = client.get("/referrals", params={"direction": "received"}, headers=SENDER_AUTH)

        assert [r["referral_id"] for r in sent.json()["referrals"]] == [referral["referral_id"]]
        assert received.json()["referrals"] == []

    def test_audit_trail_for_operator(self, client):
        referral = send(client)
        path = f"/referrals/{referral['referral_id']}"
        client.post(f"{path}/accept", json={"expected_version": 1}, headers=OPERATOR_AUTH)

        response = client.get(f"{path}/audit", headers=OPERATOR_AUTH)

        assert response.status_code == 200
        actions = [log["action"] for log in response.json()["logs"]]
        assert set(actions) == {"referral.create", "referral.accept"}

    def test_audit_trail_closed_to_clinicians(self, client):
        referral = send(client)
        response = client.get(f"/referrals/{referral['referral_id']}/audit", headers=SENDER_AUTH)
        assert response.status_code == 403
