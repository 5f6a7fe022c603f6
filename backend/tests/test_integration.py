"""End-to-end flow: signed webhook -> queue -> worker -> points"""
import asyncio
import json

import pytest

from conftest import make_payment, sign
from loyalty_processor.models.event import Event
from loyalty_processor.models.transaction import Transaction


@pytest.mark.critical
class TestPaymentFlow:
    """Test the full happy path and redelivery"""

    def test_payment_awards_points_once(self, client, post_webhook, pool, db_session):
        payload = make_payment(event_id="test-payment-12345", user_id="user-alice", amount=10000)

        response = post_webhook(payload)
        assert response.status_code == 202

        assert asyncio.run(pool.run_until_empty()) == 1

        user = client.get("/users/user-alice").json()
        assert user["points"] == 100
        transactions = client.get("/transactions", params={"userId": "user-alice"}).json()
        assert transactions["count"] == 1
        assert transactions["transactions"][0]["eventId"] == "test-payment-12345"

        # Provider redelivers the same event
        again = post_webhook(payload)
        assert again.status_code == 200
        assert again.json()["message"] == "Event already received and processed"
        assert asyncio.run(pool.run_until_empty()) == 0

        assert client.get("/users/user-alice").json()["points"] == 100
        db_session.expire_all()
        assert db_session.query(Transaction).count() == 1
        event = db_session.query(Event).filter(Event.event_id == "test-payment-12345").one()
        assert event.status == "processed"
        assert event.attempts == 1

    def test_unsigned_request_changes_nothing(self, client, pool, db_session):
        raw = json.dumps(make_payment(event_id="evt_forged")).encode("utf-8")

        response = client.post("/webhooks/payment", content=raw, headers=sign(raw, "forged-secret-0000000000"))
        assert response.status_code == 401
        assert asyncio.run(pool.run_until_empty()) == 0

        assert client.get("/users/user-alice").status_code == 404
        assert db_session.query(Event).count() == 0

    def test_many_events_for_one_user(self, client, post_webhook, pool):
        amounts = [250, 99, 10000, 1234]
        for i, amount in enumerate(amounts):
            assert post_webhook(make_payment(event_id=f"evt_{i}", amount=amount)).status_code == 202

        assert asyncio.run(pool.run_until_empty()) == len(amounts)

        assert client.get("/users/user-alice").json()["points"] == 2 + 0 + 100 + 12
        assert client.get("/transactions").json()["count"] == len(amounts)

    def test_fractional_amount_is_floored(self, client, post_webhook, pool):
        response = post_webhook(make_payment(event_id="evt_fraction", amount=150.5))
        assert response.status_code == 202

        assert asyncio.run(pool.run_until_empty()) == 1

        assert client.get("/users/user-alice").json()["points"] == 1
        transaction = client.get("/transactions").json()["transactions"][0]
        assert transaction["amount"] == 150.5
        assert transaction["points"] == 1
