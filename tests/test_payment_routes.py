import hashlib
import hmac
import json
import threading
import time
from urllib.parse import parse_qs, urlparse

import pytest

from app.services.khalti_service import KhaltiService, get_khalti_service
from app.services.payment_service import ActivePaymentExists, payment_service
from app.main import app
from helpers import FakeResponse, FakeSession

PAYLOAD = {
    "bookingId": 42,
    "amount": 2500,
    "productName": "Gallery Night",
    "customerInfo": {"name": "Sita Sharma", "email": "sita@example.com", "phone": "9800000001"},
}


def gateway_initiated(pidx="bZQLD9wRVWo4CdESSfuSsB"):
    return FakeResponse(200, {
        "pidx": pidx,
        "payment_url": f"https://test-pay.khalti.com/?pidx={pidx}",
        "expires_at": "2024-10-05T15:00:00+05:45",
        "expires_in": 1800,
    })


def gateway_lookup(status, pidx="bZQLD9wRVWo4CdESSfuSsB", transaction_id=None):
    return FakeResponse(200, {
        "pidx": pidx,
        "total_amount": 250000,
        "status": status,
        "transaction_id": transaction_id,
    })


def redirect_query(response):
    assert response.status_code == 303
    location = urlparse(response.headers["location"])
    assert location.path == "/payment/status"
    return {k: v[0] for k, v in parse_qs(location.query).items()}


@pytest.fixture
def initiated(client, khalti_session):
    khalti_session.queue(gateway_initiated())
    response = client.post("/api/payment/initiate", json=PAYLOAD)
    assert response.status_code == 200
    return response.json()


def test_initiate_payment(client, khalti_session, db):
    khalti_session.queue(gateway_initiated())

    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 200
    body = response.json()
    assert body["paymentUrl"] == "https://test-pay.khalti.com/?pidx=bZQLD9wRVWo4CdESSfuSsB"
    assert body["pidx"] == "bZQLD9wRVWo4CdESSfuSsB"
    assert body["amount"] == "NPR 2,500.00"
    assert body["amountInPaisa"] == 250000

    sent = khalti_session.calls[0]["json"]
    assert sent["amount"] == 250000
    assert sent["purchase_order_id"].startswith("REART-")

    payment = payment_service.get_payment(db, body["paymentId"])
    assert payment.status == "initiated"
    assert payment.amount == 250000
    assert payment.booking_id == 42


@pytest.mark.parametrize("payload, message", [
    ({**PAYLOAD, "bookingId": None}, "Booking ID, amount, product name, and customer info are required"),
    ({k: v for k, v in PAYLOAD.items() if k != "customerInfo"},
     "Booking ID, amount, product name, and customer info are required"),
    ({**PAYLOAD, "amount": -5}, "Amount must be greater than zero"),
    ({**PAYLOAD, "customerInfo": {"name": "Sita Sharma"}}, "Customer name and email are required"),
])
def test_initiate_validation(client, khalti_session, payload, message):
    response = client.post("/api/payment/initiate", json=payload)

    assert response.status_code == 400
    assert response.json()["message"] == message
    assert khalti_session.calls == []


def test_one_active_payment_per_booking(client, khalti_session, initiated):
    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 409
    assert response.json()["message"] == "This booking already has an active payment"


def test_failed_payment_allows_retry(client, khalti_session, initiated, db):
    payment = payment_service.get_payment(db, initiated["paymentId"])
    payment_service.update_status(db, payment, "failed")
    khalti_session.queue(gateway_initiated(pidx="second-pidx"))

    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 200
    assert response.json()["pidx"] == "second-pidx"


def test_gateway_rejection_is_bad_gateway(client, khalti_session):
    khalti_session.queue(FakeResponse(401, {"detail": "Invalid token."}))

    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 502
    assert response.json()["message"] == "Payment initiation failed: Invalid token."


def test_unconfigured_gateway(client):
    app.dependency_overrides[get_khalti_service] = lambda: KhaltiService(secret_key="", session=FakeSession())

    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 503
    assert response.json()["message"] == "Payment service not configured"


def test_status_not_found(client):
    response = client.get("/api/payment/status/999")

    assert response.status_code == 404
    assert response.json()["message"] == "Payment not found"


def test_status_by_id_and_pidx_rechecks_gateway(client, khalti_session, initiated):
    khalti_session.queue(gateway_lookup("Pending"))
    by_id = client.get(f"/api/payment/status/{initiated['paymentId']}")

    assert by_id.status_code == 200
    assert by_id.json()["status"] == "pending"
    assert by_id.json()["amount"] == 250000
    assert by_id.json()["customerName"] == "Sita Sharma"

    khalti_session.queue(gateway_lookup("Completed", transaction_id="GFq9PFS7b2iYvL8Lir9oXe"))
    by_pidx = client.get(f"/api/payment/status/{initiated['pidx']}")

    assert by_pidx.json()["status"] == "completed"
    assert by_pidx.json()["transactionId"] == "GFq9PFS7b2iYvL8Lir9oXe"


def test_terminal_status_skips_lookup(client, khalti_session, initiated, db):
    payment = payment_service.get_payment(db, initiated["paymentId"])
    payment_service.update_status(db, payment, "completed")
    calls = len(khalti_session.calls)

    response = client.get(f"/api/payment/status/{initiated['paymentId']}")

    assert response.json()["status"] == "completed"
    assert len(khalti_session.calls) == calls


def test_status_serves_stored_record_when_lookup_fails(client, khalti_session, initiated):
    khalti_session.queue(FakeResponse(503, None))

    response = client.get(f"/api/payment/status/{initiated['paymentId']}")

    assert response.status_code == 200
    assert response.json()["status"] == "initiated"


def test_callback_without_pidx(client):
    query = redirect_query(client.get("/payment/callback", follow_redirects=False))
    assert query == {"payment": "failed", "error": "missing_pidx"}


def test_callback_completed(client, khalti_session, initiated, db):
    khalti_session.queue(gateway_lookup("Completed", transaction_id="T-1"))

    response = client.get(f"/payment/callback?pidx={initiated['pidx']}", follow_redirects=False)

    assert redirect_query(response) == {"payment": "success", "booking": "42"}
    payment = payment_service.get_payment(db, initiated["paymentId"])
    assert payment.status == "completed"
    assert payment.transaction_id == "T-1"


@pytest.mark.parametrize("gateway_status, error", [
    ("User canceled", "user_canceled"),
    ("Expired", "payment_expired"),
])
def test_callback_failed(client, khalti_session, initiated, gateway_status, error):
    khalti_session.queue(gateway_lookup(gateway_status))

    response = client.get(f"/payment/callback?pidx={initiated['pidx']}", follow_redirects=False)

    assert redirect_query(response) == {"payment": "failed", "booking": "42", "error": error}


def test_callback_pending(client, khalti_session, initiated):
    khalti_session.queue(gateway_lookup("Pending"))

    response = client.get(f"/payment/callback?pidx={initiated['pidx']}", follow_redirects=False)

    assert redirect_query(response) == {"payment": "pending", "booking": "42"}


def test_callback_unknown_pidx(client, khalti_session):
    khalti_session.queue(gateway_lookup("Completed", pidx="nope"))

    response = client.get("/payment/callback?pidx=nope", follow_redirects=False)

    assert redirect_query(response) == {"payment": "failed", "error": "payment_not_found"}


def test_callback_lookup_error(client, khalti_session, initiated):
    khalti_session.queue(FakeResponse(500, None))

    response = client.get(f"/payment/callback?pidx={initiated['pidx']}", follow_redirects=False)

    assert redirect_query(response) == {"payment": "failed", "error": "callback_failed"}


def signed(body):
    raw = json.dumps(body)
    signature = hmac.new(b"test_secret_key", raw.encode(), hashlib.sha256).hexdigest()
    return raw, {"X-Khalti-Signature": signature, "Content-Type": "application/json"}


def test_webhook_updates_status(client, initiated, db):
    raw, headers = signed({"pidx": initiated["pidx"], "status": "Completed", "transaction_id": "T-9"})

    response = client.post("/api/payment/webhook", content=raw, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "completed"}
    assert payment_service.get_payment(db, initiated["paymentId"]).transaction_id == "T-9"


def test_webhook_cannot_reopen_settled_payment(client, initiated, db):
    payment = payment_service.get_payment(db, initiated["paymentId"])
    payment_service.update_status(db, payment, "completed")
    raw, headers = signed({"pidx": initiated["pidx"], "status": "Pending"})

    response = client.post("/api/payment/webhook", content=raw, headers=headers)

    assert response.json()["status"] == "completed"


def test_webhook_rejects_bad_signature(client, initiated):
    response = client.post(
        "/api/payment/webhook",
        content=json.dumps({"pidx": initiated["pidx"], "status": "Completed"}),
        headers={"X-Khalti-Signature": "forged"}
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid webhook signature"


def test_webhook_malformed_and_unknown(client):
    raw, headers = signed({"status": "Completed"})
    assert client.post("/api/payment/webhook", content=raw, headers=headers).status_code == 400

    raw, headers = signed({"pidx": "missing", "status": "Completed"})
    assert client.post("/api/payment/webhook", content=raw, headers=headers).status_code == 404


def test_store_rejects_second_active_payment(db):
    fields = dict(
        booking_id=42,
        amount_in_paisa=250000,
        purchase_order_id="REART-1",
        product_name="Gallery Night",
        customer_name="Sita Sharma",
        customer_email="sita@example.com",
    )
    first = payment_service.create_payment(db, pidx="first-pidx", **fields)

    with pytest.raises(ActivePaymentExists):
        payment_service.create_payment(db, pidx="second-pidx", **fields)

    payment_service.update_status(db, first, "failed")
    retry = payment_service.create_payment(db, pidx="third-pidx", **fields)
    assert retry.status == "initiated"


def test_initiate_conflict_detected_at_insert(client, khalti_session, initiated, monkeypatch):
    # The other checkout stored its payment after this one passed the pre-check
    monkeypatch.setattr(payment_service, "get_active_payment_for_booking", lambda db, booking_id: None)
    khalti_session.queue(gateway_initiated(pidx="late-pidx"))

    response = client.post("/api/payment/initiate", json=PAYLOAD)

    assert response.status_code == 409
    assert response.json()["message"] == "This booking already has an active payment"


class SlowSession(FakeSession):
    def __init__(self, *responses, delay=0.3):
        super().__init__(*responses)
        self.delay = delay
        self.lock = threading.Lock()

    def _next(self, method, url, **kwargs):
        with self.lock:
            response = super()._next(method, url, **kwargs)
        time.sleep(self.delay)
        return response


def test_concurrent_initiations_leave_one_active_payment(client, db):
    session = SlowSession(gateway_initiated(pidx="pidx-a"), gateway_initiated(pidx="pidx-b"))
    khalti = KhaltiService(secret_key="test_secret_key", environment="test", session=session)
    app.dependency_overrides[get_khalti_service] = lambda: khalti

    codes = []

    def checkout():
        codes.append(client.post("/api/payment/initiate", json=PAYLOAD).status_code)

    threads = [threading.Thread(target=checkout) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(codes) == [200, 409]
    assert len(payment_service.list_payments(db)) == 1
