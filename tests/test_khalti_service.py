import hashlib
import hmac
import re

import pytest
import requests

from app.services.khalti_service import KhaltiService, KhaltiServiceError
from helpers import FakeResponse, FakeSession


def test_base_url_follows_environment():
    assert KhaltiService(secret_key="k", environment="test", session=FakeSession()).base_url == \
        "https://dev.khalti.com/api/v2/epayment"
    assert KhaltiService(secret_key="k", environment="production", session=FakeSession()).base_url == \
        "https://khalti.com/api/v2/epayment"


def test_missing_key_leaves_service_unconfigured():
    service = KhaltiService(secret_key="", environment="production", session=FakeSession())
    assert not service.is_configured


def test_create_payment_request_uses_paisa_everywhere(khalti):
    request = khalti.create_payment_request(
        booking_id=42,
        amount_in_paisa=250000,
        purchase_order_id="REART-1-abc",
        product_name="Gallery Night",
        customer_name="Sita Sharma",
        customer_email="sita@example.com",
    )
    assert request["amount"] == 250000
    assert request["return_url"] == "http://testserver/payment/callback"
    assert request["customer_info"] == {"name": "Sita Sharma", "email": "sita@example.com", "phone": ""}
    assert request["product_details"][0]["identity"] == "42"
    assert request["product_details"][0]["total_price"] == 250000


def test_initiate_payment_sends_secret_key(khalti, khalti_session):
    khalti_session.queue(FakeResponse(200, {"pidx": "abc", "payment_url": "https://pay.khalti.com/?pidx=abc"}))

    body = khalti.initiate_payment({"purchase_order_id": "REART-1", "amount": 1000})

    assert body["pidx"] == "abc"
    call = khalti_session.calls[0]
    assert call["url"] == "https://dev.khalti.com/api/v2/epayment/initiate/"
    assert call["headers"]["Authorization"] == "Key test_secret_key"


def test_initiate_payment_surfaces_gateway_detail(khalti, khalti_session):
    khalti_session.queue(FakeResponse(400, {"detail": "Invalid token."}))

    with pytest.raises(KhaltiServiceError, match="Payment initiation failed: Invalid token."):
        khalti.initiate_payment({"amount": 1000})


def test_initiate_payment_without_body_reports_http_code(khalti, khalti_session):
    khalti_session.queue(FakeResponse(500, None, text="<html>oops</html>"))

    with pytest.raises(KhaltiServiceError, match="HTTP 500"):
        khalti.initiate_payment({"amount": 1000})


def test_initiate_payment_requires_pidx_and_url(khalti, khalti_session):
    khalti_session.queue(FakeResponse(200, {"pidx": "abc"}))

    with pytest.raises(KhaltiServiceError):
        khalti.initiate_payment({"amount": 1000})


def test_network_error_becomes_service_error(khalti, khalti_session):
    khalti_session.queue(requests.ConnectionError("connection refused"))

    with pytest.raises(KhaltiServiceError, match="Payment lookup failed"):
        khalti.lookup_payment("abc")


def test_lookup_posts_pidx(khalti, khalti_session):
    khalti_session.queue(FakeResponse(200, {"pidx": "abc", "status": "Completed", "transaction_id": "T1"}))

    body = khalti.lookup_payment("abc")

    assert body["status"] == "Completed"
    assert khalti_session.calls[0]["url"].endswith("/lookup/")
    assert khalti_session.calls[0]["json"] == {"pidx": "abc"}


def test_verify_webhook(khalti):
    data = '{"pidx": "abc", "status": "Completed"}'
    signature = hmac.new(b"test_secret_key", data.encode(), hashlib.sha256).hexdigest()

    assert khalti.verify_webhook(data, signature)
    assert not khalti.verify_webhook(data, "0" * 64)
    assert not khalti.verify_webhook(data, None)


def test_payment_reference_format():
    reference = KhaltiService.generate_payment_reference()
    assert re.fullmatch(r"REART-\d{13}-[0-9a-z]{9}", reference)
    assert reference != KhaltiService.generate_payment_reference()


def test_amount_conversion():
    assert KhaltiService.npr_to_paisa(2500) == 250000
    assert KhaltiService.npr_to_paisa(10.01) == 1001
    assert KhaltiService.paisa_to_npr(250000) == 2500
    assert KhaltiService.format_amount(2500) == "NPR 2,500.00"
    assert KhaltiService.format_amount(250000, in_paisa=True) == "NPR 2,500.00"


@pytest.mark.parametrize("gateway_status, expected", [
    ("Completed", "completed"),
    ("Pending", "pending"),
    ("Initiated", "initiated"),
    ("Expired", "failed"),
    ("User canceled", "failed"),
    ("Refunded", None),
    ("Partially Refunded", None),
    (None, None),
])
def test_map_gateway_status(gateway_status, expected):
    assert KhaltiService.map_gateway_status(gateway_status) == expected
