"""API endpoint tests"""
import json
from unittest.mock import patch

import pytest

from conftest import make_payment, sign
from loyalty_processor.core.security import SIGNATURE_HEADER
from loyalty_processor.db.task_queue import JOB_STATUS_WAITING
from loyalty_processor.models.event import Event
from loyalty_processor.models.user import User
from loyalty_processor.services.loyalty_service import LoyaltyService


@pytest.mark.critical
class TestPaymentWebhook:
    """Test POST /webhooks/payment"""

    def test_valid_webhook_accepted_and_queued(self, post_webhook, queue, db_session):
        response = post_webhook(make_payment())

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Event received and queued for processing"
        assert body["eventId"] == "evt_test_001"
        assert body["jobId"]

        job = queue.get_job(body["jobId"])
        assert job["name"] == "process-payment"
        assert job["status"] == JOB_STATUS_WAITING
        assert job["data"] == {
            "eventId": "evt_test_001",
            "type": "payment.succeeded",
            "payload": {
                "userId": "user-alice",
                "amount": 10000,
                "currency": "USD",
                "timestamp": "2024-01-15T10:30:00Z",
            },
        }

        event = db_session.query(Event).filter(Event.event_id == "evt_test_001").one()
        assert event.status == "pending"
        assert event.job_id == body["jobId"]

    def test_duplicate_webhook_acknowledged_without_new_job(self, post_webhook, queue):
        first = post_webhook(make_payment())
        second = post_webhook(make_payment())

        assert first.status_code == 202
        assert second.status_code == 200
        assert second.json() == {
            "success": True,
            "message": "Event already received and processed",
            "eventId": "evt_test_001",
        }
        assert queue.counts()[JOB_STATUS_WAITING] == 1

    def test_missing_signature_rejected(self, client, db_session):
        response = client.post("/webhooks/payment", json=make_payment())

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": "MISSING_SIGNATURE",
            "message": "Webhook signature is required",
        }
        assert db_session.query(Event).count() == 0

    def test_invalid_signature_rejected(self, post_webhook, db_session, queue):
        response = post_webhook(make_payment(), secret="not-the-right-secret-at-all")

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_SIGNATURE"
        assert db_session.query(Event).count() == 0
        assert queue.counts()[JOB_STATUS_WAITING] == 0

    def test_signature_over_different_bytes_rejected(self, client, db_session):
        signed = json.dumps(make_payment()).encode("utf-8")
        sent = json.dumps(make_payment(), indent=2).encode("utf-8")

        response = client.post("/webhooks/payment", content=sent, headers=sign(signed))

        assert response.status_code == 401
        assert db_session.query(Event).count() == 0

    def test_malformed_signature_header_rejected(self, client):
        raw = json.dumps(make_payment()).encode("utf-8")
        response = client.post("/webhooks/payment", content=raw, headers={SIGNATURE_HEADER: "md5=abc"})

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_SIGNATURE"

    def test_non_json_body_rejected(self, client):
        raw = b"not json at all"
        response = client.post("/webhooks/payment", content=raw, headers=sign(raw))

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    @pytest.mark.parametrize("overrides", [
        {"amount": 0},
        {"amount": -500},
        {"amount": "1000"},
        {"amount": True},
        {"amount": None},
        {"currency": "US"},
        {"currency": "DOLLARS"},
        {"timestamp": "yesterday"},
        {"eventId": ""},
        {"userId": ""},
    ])
    def test_invalid_payload_rejected(self, post_webhook, db_session, overrides):
        response = post_webhook(make_payment(**overrides))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "INVALID_PAYLOAD"
        assert db_session.query(Event).count() == 0

    @pytest.mark.parametrize("amount,stored", [(150.5, 150.5), (10000.0, 10000)])
    def test_fractional_amount_accepted(self, post_webhook, queue, amount, stored):
        response = post_webhook(make_payment(amount=amount))

        assert response.status_code == 202
        job = queue.get_job(response.json()["jobId"])
        assert job["data"]["payload"]["amount"] == stored

    def test_missing_field_rejected(self, post_webhook):
        payload = make_payment()
        del payload["userId"]

        assert post_webhook(payload).status_code == 400

    def test_enqueue_failure_returns_internal_error(self, post_webhook, queue, db_session):
        with patch.object(queue, "enqueue", side_effect=ConnectionError("redis down")):
            response = post_webhook(make_payment())

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "INTERNAL_ERROR",
            "message": "Failed to process webhook",
        }
        # Stored but without a job; the worker re-enqueues it later
        event = db_session.query(Event).filter(Event.event_id == "evt_test_001").one()
        assert event.job_id is None


@pytest.mark.high
class TestReadEndpoints:
    """Test user, transaction and monitoring endpoints"""

    def test_get_user(self, client, db_session):
        db_session.add(User(id="user-bob", email="bob@example.com", name="Bob", points=42))
        db_session.commit()

        response = client.get("/users/user-bob")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "user-bob"
        assert body["email"] == "bob@example.com"
        assert body["name"] == "Bob"
        assert body["points"] == 42
        assert "createdAt" in body
        assert "updatedAt" in body

    def test_get_unknown_user(self, client):
        response = client.get("/users/nobody")

        assert response.status_code == 404
        assert response.json() == {"error": "NOT_FOUND", "message": "User not found"}

    def test_list_transactions(self, client, db_session):
        service = LoyaltyService()
        service.process_event("evt_1", "user-alice", 250, "payment.succeeded", db_session)
        service.process_event("evt_2", "user-bob", 1000, "payment.succeeded", db_session)
        service.process_event("evt_3", "user-alice", 10000, "payment.succeeded", db_session)

        response = client.get("/transactions", params={"userId": "user-alice"})

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert body["limit"] == 100
        assert body["offset"] == 0
        assert [t["eventId"] for t in body["transactions"]] == ["evt_3", "evt_1"]
        assert body["transactions"][0]["points"] == 100
        assert body["transactions"][0]["amount"] == 10000

    def test_list_transactions_pagination(self, client, db_session):
        service = LoyaltyService()
        for i in range(5):
            service.process_event(f"evt_{i}", "user-alice", 100, "payment.succeeded", db_session)

        body = client.get("/transactions", params={"limit": 2, "offset": 1}).json()

        assert body["count"] == 2
        assert [t["eventId"] for t in body["transactions"]] == ["evt_3", "evt_2"]

    @pytest.mark.parametrize("params", [
        {"limit": "0"},
        {"limit": "abc"},
        {"offset": "-1"},
        {"offset": "x"},
    ])
    def test_list_transactions_invalid_params(self, client, params):
        response = client.get("/transactions", params=params)

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PARAMS"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["database"]["status"] == "up"
        assert body["services"]["redis"]["status"] == "up"

    def test_health_reports_redis_down(self, client, queue):
        with patch.object(queue, "ping", side_effect=ConnectionError("redis down")):
            response = client.get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["services"]["redis"]["status"] == "down"
        assert body["services"]["database"]["status"] == "up"

    def test_metrics(self, client, post_webhook):
        post_webhook(make_payment())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'queue_size{state="waiting"} 1.0' in response.text
        assert "webhook_requests_total" in response.text

    def test_root_banner(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_unknown_route(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"