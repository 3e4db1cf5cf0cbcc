"""Browser-facing HTTP surface: CORS, method guards, request checks, pass-through."""

import json

import pytest
from fastapi.testclient import TestClient

from pesapush.services.api_gateway.main import app, get_orchestrator
from pesapush.services.checkout.client import (
    MOBILE_MONEY_PATH,
    SUBMIT_ORDER_PATH,
    TOKEN_PATH,
    TRANSACTION_STATUS_PATH,
)

from conftest import TRACKING_ID

ORDER_DATA = {
    "id": "visa_expert_1729000000000",
    "currency": "KES",
    "amount": 1500,
    "description": "Visa application fee",
    "callback_url": "https://visa.example/api/ipn",
    "notification_id": "",
    "branch": "Visa Expert",
    "payment_method": "MPESA",
    "phone_number": "+254712345678",
    "billing_address": {
        "email_address": "jane@example.com",
        "phone_number": "+254712345678",
        "country_code": "KE",
        "first_name": "Jane",
        "middle_name": "",
        "last_name": "Doe",
        "line_1": "Nairobi",
        "line_2": "",
        "city": "Nairobi",
        "state": "",
        "postal_code": "",
        "zip_code": "",
    },
}


@pytest.fixture
def http(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.parametrize(
    "path, verb",
    [
        ("/api/get-token", "GET"),
        ("/api/submit-order", "POST"),
        ("/api/check-payment", "GET"),
        ("/api/initiate-payment", "POST"),
        ("/api/ipn", "POST"),
    ],
)
def test_preflight_advertises_endpoint_verb(http, path, verb):
    resp = http.options(path)

    assert resp.status_code == 200
    assert resp.content == b""
    assert verb in resp.headers["Access-Control-Allow-Methods"]
    assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.parametrize(
    "method, path",
    [("POST", "/api/get-token"), ("GET", "/api/submit-order"), ("DELETE", "/api/check-payment")],
)
def test_wrong_method_is_405_with_message(http, method, path):
    resp = http.request(method, path)

    assert resp.status_code == 405
    assert resp.json() == {"message": "Method not allowed"}
    assert "Access-Control-Allow-Methods" in resp.headers


def test_get_token(http, provider):
    resp = http.get("/api/get-token")

    assert resp.status_code == 200
    assert resp.json()["token"] == "tok-123"
    assert resp.headers["Access-Control-Allow-Methods"] == "GET, OPTIONS"


def test_get_token_provider_failure(http, provider):
    provider.script(TOKEN_PATH, (500, {"error": "boom"}))

    resp = http.get("/api/get-token")

    assert resp.status_code == 500
    body = resp.json()
    assert body["message"]
    assert body["details"] == {"error": "boom"}


def test_submit_order_requires_token(http):
    resp = http.post("/api/submit-order", json={"orderData": ORDER_DATA})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Token is required"}


def test_submit_order_requires_order_data(http):
    resp = http.post("/api/submit-order", json={"token": "tok-123"})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Order data is required"}


def test_submit_order_rejects_malformed_order(http, provider):
    resp = http.post("/api/submit-order", json={"token": "tok-123", "orderData": {"description": "no amount"}})

    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid request"
    assert provider.requests == []


def test_submit_order_mpesa_push(http, provider):
    resp = http.post("/api/submit-order", json={"token": "tok-123", "orderData": ORDER_DATA})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["order_tracking_id"] == TRACKING_ID
    assert body["stk_status"] == {"status": "200", "message": "STK push sent"}
    order = json.loads(provider.requests[1].content)
    assert order["branch"] == "Visa Expert"
    assert order["notification_id"] == "ipn-1"
    assert provider.called(MOBILE_MONEY_PATH) == 1


def test_submit_order_hosted_checkout(http, provider):
    order_data = dict(ORDER_DATA, payment_method="CARD")

    resp = http.post("/api/submit-order", json={"token": "tok-123", "orderData": order_data})

    assert resp.status_code == 200
    assert resp.json()["redirect_url"].endswith(f"OrderTrackingId={TRACKING_ID}")
    assert provider.called(MOBILE_MONEY_PATH) == 0


def test_submit_order_invalid_phone(http, provider):
    order_data = dict(ORDER_DATA, phone_number="0812345678")

    resp = http.post("/api/submit-order", json={"token": "tok-123", "orderData": order_data})

    assert resp.status_code == 400
    assert resp.json()["message"] == "Please enter a valid Kenyan phone number"
    assert provider.requests == []


def test_submit_order_provider_rejection(http, provider):
    provider.script(SUBMIT_ORDER_PATH, (401, {"message": "invalid token"}))

    resp = http.post("/api/submit-order", json={"token": "stale", "orderData": ORDER_DATA})

    assert resp.status_code == 401
    assert resp.json()["details"] == {"message": "invalid token"}


def test_check_payment_requires_order_id(http):
    resp = http.get("/api/check-payment", headers={"Authorization": "Bearer tok-123"})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Order ID is required"}


def test_check_payment_requires_token(http):
    resp = http.get("/api/check-payment", params={"orderId": TRACKING_ID})

    assert resp.status_code == 400
    assert resp.json() == {"message": "Authorization token is required"}


def test_check_payment_passes_status_through(http, provider):
    status_body = {"payment_status_description": "Completed", "status": "200", "amount": 1500}
    provider.script(TRANSACTION_STATUS_PATH, (200, status_body))

    resp = http.get(
        "/api/check-payment",
        params={"orderId": TRACKING_ID},
        headers={"Authorization": "Bearer tok-123"},
    )

    assert resp.status_code == 200
    assert resp.json() == status_body
    assert provider.requests[0].headers["Authorization"] == "Bearer tok-123"
    assert provider.requests[0].url.params["orderTrackingId"] == TRACKING_ID


def test_initiate_payment_redirect(http, provider):
    resp = http.post(
        "/api/initiate-payment",
        json={"amount": "99.50", "description": "Fee", "email": "a@b.co", "payment_method": "CARD"},
    )

    assert resp.status_code == 200
    assert resp.json()["order_tracking_id"] == TRACKING_ID
    assert provider.called(TOKEN_PATH) == 1


def test_initiate_payment_rejects_non_positive_amount(http, provider):
    resp = http.post("/api/initiate-payment", json={"amount": "0", "description": "Fee"})

    assert resp.status_code == 400
    assert "details" in resp.json()
    assert provider.requests == []


def test_ipn_acknowledges_post(http, provider):
    provider.script(TRANSACTION_STATUS_PATH, (200, {"status": "200", "payment_status_description": "Completed"}))

    resp = http.post(
        "/api/ipn",
        json={
            "OrderTrackingId": TRACKING_ID,
            "OrderMerchantReference": "visa_expert_1",
            "OrderNotificationType": "IPNCHANGE",
        },
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "orderNotificationType": "IPNCHANGE",
        "orderTrackingId": TRACKING_ID,
        "orderMerchantReference": "visa_expert_1",
        "status": 200,
    }
    assert provider.called(TOKEN_PATH) == 1


def test_ipn_accepts_query_parameters(http):
    resp = http.get("/api/ipn", params={"OrderTrackingId": TRACKING_ID, "OrderMerchantReference": "ref"})

    assert resp.status_code == 200
    assert resp.json()["status"] == 200


def test_ipn_missing_ids(http):
    resp = http.post("/api/ipn", json={"OrderTrackingId": TRACKING_ID})

    assert resp.status_code == 400


def test_ipn_status_failure_asks_for_resend(http, provider):
    provider.script(TRANSACTION_STATUS_PATH, (500, {"message": "down"}))

    resp = http.post("/api/ipn", json={"OrderTrackingId": TRACKING_ID, "OrderMerchantReference": "ref"})

    assert resp.status_code == 200
    assert resp.json()["status"] == 500


def test_health(http):
    assert http.get("/health").json() == {"ok": True}
