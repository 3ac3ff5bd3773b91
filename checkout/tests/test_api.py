"""API tests for the checkout HTTP surface.

These tests drive the FastAPI app through ``TestClient`` with the
in-process payment gateway: identity headers, cart and order endpoints,
Idempotency-Key replay and conflicts, admin-only routes, webhook signature
checks and the request size limit.
"""

import hashlib
import hmac
import json
import time
from dataclasses import replace

from fastapi.testclient import TestClient

from checkout.api import create_app
from checkout.providers import build_services

CUSTOMER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
ADDRESS = {
    "full_name": "Grace Hopper",
    "line1": "1 Compiler Way",
    "city": "Arlington",
    "state": "VA",
    "postal_code": "22201",
    "country": "us",
}
ORDER_PAYLOAD = {"shipping_address": ADDRESS, "shipping_method": "express", "shipping_cost_cents": 500}
SECRET = "whsec_test"


def sign_payload(body, secret, timestamp=None):
    """Build the Stripe-Signature header the provider would send for ``body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def _client_with(settings, engine, gateway, **overrides):
    services = build_services(replace(settings, **overrides), engine=engine, gateway=gateway)
    return TestClient(create_app(services=services))


def _order(client, make_product, headers=CUSTOMER, **payload):
    pid = make_product(stock=5, price_cents=1000)
    r = client.post("/cart/items", json={"product_id": pid, "quantity": 2}, headers=headers)
    assert r.status_code == 200
    r = client.post("/orders", json={**ORDER_PAYLOAD, **payload}, headers=headers)
    assert r.status_code == 201
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "components": {"db": {"ok": True}}}
    assert r.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_missing_identity_is_401(client):
    r = client.get("/cart")
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHENTICATED"


def test_cart_endpoints(client, make_product):
    pid = make_product(stock=3, price_cents=750)
    r = client.post(
        "/cart/items",
        json={"product_id": pid, "quantity": 1},
        headers=CUSTOMER,
    )
    assert r.status_code == 200
    item_id = r.json()["items"][0]["item_id"]

    r = client.put(f"/cart/items/{item_id}", json={"quantity": 3}, headers=CUSTOMER)
    body = r.json()
    assert body["subtotal_cents"] == 2250 and body["item_count"] == 3

    r = client.put(f"/cart/items/{item_id}", json={"quantity": 4}, headers=CUSTOMER)
    assert r.status_code == 409
    assert r.json()["detail"] == "INSUFFICIENT_STOCK"
    assert r.json()["available_stock"] == 3

    r = client.delete(f"/cart/items/{item_id}", headers=CUSTOMER)
    assert r.json()["items"] == []
    assert client.delete(f"/cart/items/{item_id}", headers=CUSTOMER).status_code == 404


def test_cart_rejects_duplicate_variant_names(client, make_product):
    pid = make_product()
    r = client.post(
        "/cart/items",
        json={
            "product_id": pid,
            "quantity": 1,
            "selected_variants": [{"name": "Size", "value": "M"}, {"name": "Size", "value": "L"}],
        },
        headers=CUSTOMER,
    )
    assert r.status_code == 422


def test_create_order_returns_201_and_clears_cart(client, make_product):
    body = _order(client, make_product)
    assert body["status"] == "pending"
    assert body["total_cents"] == 2500
    assert body["payment"]["status"] == "pending"
    assert body["order_number"].startswith("ORD-")
    assert client.get("/cart", headers=CUSTOMER).json()["items"] == []


def test_idempotent_same_payload_replays_response(client, make_product):
    pid = make_product(stock=5)
    client.post("/cart/items", json={"product_id": pid, "quantity": 1}, headers=CUSTOMER)
    headers = {**CUSTOMER, "Idempotency-Key": "idem-same-1"}

    r1 = client.post("/orders", json=ORDER_PAYLOAD, headers=headers)
    assert r1.status_code == 201
    r2 = client.post("/orders", json=ORDER_PAYLOAD, headers=headers)
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert client.get("/orders", headers=CUSTOMER).json()["count"] == 1


def test_idempotent_conflict_on_different_payload(client, make_product):
    pid = make_product(stock=5)
    client.post("/cart/items", json={"product_id": pid, "quantity": 1}, headers=CUSTOMER)
    headers = {**CUSTOMER, "Idempotency-Key": "idem-conflict-1"}

    assert client.post("/orders", json=ORDER_PAYLOAD, headers=headers).status_code == 201
    r = client.post("/orders", json={**ORDER_PAYLOAD, "notes": "leave at door"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"


def test_idempotency_keys_are_scoped_per_user(client, make_product):
    pid = make_product(stock=5)
    for h in (CUSTOMER, OTHER):
        client.post("/cart/items", json={"product_id": pid, "quantity": 1}, headers=h)
        r = client.post("/orders", json=ORDER_PAYLOAD, headers={**h, "Idempotency-Key": "shared"})
        assert r.status_code == 201
        assert "Idempotent-Replay" not in r.headers


def test_idempotent_replay_preserves_422(client):
    headers = {**CUSTOMER, "Idempotency-Key": "idem-422"}
    r1 = client.post("/orders", json=ORDER_PAYLOAD, headers=headers)
    assert r1.status_code == 422
    assert r1.json()["detail"] == "EMPTY_CART"

    r2 = client.post("/orders", json=ORDER_PAYLOAD, headers=headers)
    assert r2.status_code == 422
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


def test_create_order_validation_error(client):
    bad = {"shipping_address": {**ADDRESS, "country": "GBR"}, "shipping_method": "teleport"}
    assert client.post("/orders", json=bad, headers=CUSTOMER).status_code == 422


def test_order_access_and_listing(client, make_product):
    order = _order(client, make_product)
    assert client.get(f"/orders/{order['id']}", headers=CUSTOMER).status_code == 200

    r = client.get(f"/orders/{order['id']}", headers=OTHER)
    assert r.status_code == 403
    assert r.json()["detail"] == "FORBIDDEN"
    assert client.get("/orders/nope", headers=ADMIN).status_code == 404

    assert client.get("/orders", headers=OTHER).json()["count"] == 0
    listing = client.get("/orders", params={"status": "pending"}, headers=ADMIN).json()
    assert [o["id"] for o in listing["results"]] == [order["id"]]


def test_admin_only_routes(client, make_product):
    order = _order(client, make_product)
    url = f"/orders/{order['id']}/status"

    r = client.put(url, json={"status": "processing"}, headers=CUSTOMER)
    assert r.status_code == 403
    r = client.put(url, json={"status": "processing", "admin_notes": "packed"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "processing" and r.json()["processing_at"]

    r = client.put(url, json={"status": "delivered"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_TRANSITION"

    r = client.put(f"/orders/{order['id']}/shipping", json={"tracking_number": "1Z", "carrier": "UPS"}, headers=ADMIN)
    assert r.json()["tracking_number"] == "1Z"
    assert client.post(f"/payments/{order['id']}/refund", headers=CUSTOMER).status_code == 403


def test_cancel_endpoint(client, make_product, stock_of):
    order = _order(client, make_product)
    pid = order["items"][0]["product_id"]
    assert stock_of(pid) == 3

    r = client.post(f"/orders/{order['id']}/cancel", json={"reason": "duplicate"}, headers=CUSTOMER)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert stock_of(pid) == 5

    r = client.post(f"/orders/{order['id']}/cancel", headers=CUSTOMER)
    assert r.status_code == 409
    assert r.json()["detail"] == "ALREADY_CANCELLED"


def test_payment_intent_verify_and_refund(client, gateway, make_product):
    order = _order(client, make_product)
    r = client.post("/payments/create-intent", json={"order_id": order["id"]}, headers=CUSTOMER)
    assert r.status_code == 200
    intent = r.json()
    assert intent["amount_cents"] == 2500 and intent["reused"] is False

    r = client.post(
        "/payments/verify",
        json={"order_id": order["id"], "payment_intent_id": "pi_forged"},
        headers=CUSTOMER,
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "INTENT_MISMATCH"

    gateway.mark_succeeded(intent["payment_intent_id"])
    r = client.post(
        "/payments/verify",
        json={"order_id": order["id"], "payment_intent_id": intent["payment_intent_id"]},
        headers=CUSTOMER,
    )
    assert r.json()["payment"]["status"] == "paid"

    r = client.post("/payments/create-intent", json={"order_id": order["id"]}, headers=CUSTOMER)
    assert r.status_code == 409
    assert r.json()["detail"] == "ALREADY_PAID"

    r = client.post(f"/payments/{order['id']}/refund", headers=ADMIN)
    assert r.json()["payment"]["status"] == "refunded"


def test_webhook_unsigned_mode_applies_event(client, gateway, make_product):
    order = _order(client, make_product)
    intent = client.post("/payments/create-intent", json={"order_id": order["id"]}, headers=CUSTOMER).json()
    payload = gateway.mark_succeeded(intent["payment_intent_id"])

    r = client.post("/payments/webhook/stripe", json=payload)
    assert r.json() == {"received": True, "outcome": "applied"}
    r = client.post("/payments/webhook/stripe", json=payload)
    assert r.json() == {"received": True, "outcome": "duplicate"}
    assert client.get(f"/orders/{order['id']}", headers=CUSTOMER).json()["status"] == "processing"


def test_webhook_signature_is_enforced(settings, engine, gateway, make_product):
    with _client_with(settings, engine, gateway, stripe_webhook_secret=SECRET) as client:
        order = _order(client, make_product)
        intent = client.post("/payments/create-intent", json={"order_id": order["id"]}, headers=CUSTOMER).json()
        body = json.dumps(gateway.mark_succeeded(intent["payment_intent_id"])).encode("utf-8")

        r = client.post("/payments/webhook/stripe", content=body)
        assert r.status_code == 400
        assert r.json()["detail"] == "INVALID_SIGNATURE"

        r = client.post("/payments/webhook/stripe", content=body, headers={"Stripe-Signature": sign_payload(body, "wrong")})
        assert r.status_code == 400

        stale = sign_payload(body, SECRET, timestamp=1)
        assert client.post("/payments/webhook/stripe", content=body, headers={"Stripe-Signature": stale}).status_code == 400

        r = client.post("/payments/webhook/stripe", content=body, headers={"Stripe-Signature": sign_payload(body, SECRET)})
        assert r.status_code == 200
        assert r.json()["outcome"] == "applied"


def test_webhook_without_secret_is_rejected_for_live_gateway(settings, engine, gateway):
    with _client_with(settings, engine, gateway, use_http_adapters=True, stripe_webhook_secret="") as client:
        payload = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
        r = client.post("/payments/webhook/stripe", json=payload)
        assert r.status_code == 400
        assert r.json()["detail"] == "INVALID_SIGNATURE"


def test_signed_webhook_with_bad_json_is_rejected(settings, engine, gateway):
    with _client_with(settings, engine, gateway, stripe_webhook_secret=SECRET) as client:
        body = b"not json"
        r = client.post("/payments/webhook/stripe", content=body, headers={"Stripe-Signature": sign_payload(body, SECRET)})
        assert r.status_code == 400
        assert r.json()["detail"] == "INVALID_PAYLOAD"


def test_webhook_unknown_provider_and_bad_payload(client):
    assert client.post("/payments/webhook/paypal", json={}).status_code == 404
    r = client.post("/payments/webhook/stripe", content=b"not json")
    assert r.status_code == 400


def test_webhook_processing_error_is_acknowledged(client, services, monkeypatch):
    def boom(provider, payload):
        raise RuntimeError("db down")

    monkeypatch.setattr(services.payments, "handle_webhook", boom)
    r = client.post("/payments/webhook/stripe", json={"id": "evt_1", "type": "payment_intent.succeeded"})
    assert r.status_code == 200
    assert r.json() == {"received": True, "outcome": "error"}


def test_request_size_limit(settings, engine, gateway):
    with _client_with(settings, engine, gateway, api_max_bytes=1024) as client:
        r = client.post("/orders", content=b"x" * 2048, headers={**CUSTOMER, "Content-Type": "application/json"})
        assert r.status_code == 413
        assert r.json()["detail"] == "PAYLOAD_TOO_LARGE"
