"""In-process payment gateway and Stripe wire helpers.

``FakePaymentGateway`` implements ``PaymentGateway`` without any network
calls. It is used for tests and local development where deterministic
behavior is useful and no provider account is available; its
``mark_succeeded``/``mark_failed`` helpers simulate the customer completing
payment and return the webhook payload the provider would send.

The Stripe helpers (event normalization, intent status mapping and webhook
signature verification) are shared with the HTTP gateway.
"""

import threading
import time
import uuid
from typing import Optional

import stripe

from .domain import PaymentGateway, PaymentIntent, PaymentStatus, RefundResult, WebhookEvent
from .errors import InvalidSignature, PaymentProviderError

# Stripe event type -> internal event type
STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded": "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
    "charge.refunded": "payment.refunded",
    "payment_intent.canceled": "payment.cancelled",
}


def intent_status(obj: dict) -> PaymentStatus:
    """Map a Stripe PaymentIntent object's status to ``PaymentStatus``."""
    status = obj.get("status")
    if status == "succeeded":
        return PaymentStatus.PAID
    if status == "canceled":
        return PaymentStatus.CANCELLED
    if status == "requires_payment_method" and obj.get("last_payment_error"):
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def to_intent(obj: dict) -> PaymentIntent:
    return PaymentIntent(
        id=obj["id"],
        client_secret=obj.get("client_secret"),
        status=intent_status(obj),
        amount_cents=int(obj.get("amount") or 0),
        currency=obj.get("currency") or "",
        transaction_id=obj.get("latest_charge"),
    )


def parse_stripe_event(payload: dict) -> Optional[WebhookEvent]:
    """Normalize a Stripe event payload.

    Args:
        payload: Decoded webhook body.

    Returns:
        WebhookEvent with an internal ``payment.*`` type, or None when the
        event type is not one the checkout core reacts to.
    """
    provider_type = payload.get("type")
    internal = STRIPE_EVENT_TYPES.get(provider_type)
    if internal is None or not payload.get("id"):
        return None
    obj = (payload.get("data") or {}).get("object") or {}
    if provider_type == "charge.refunded":
        return WebhookEvent(
            id=payload["id"],
            type=internal,
            intent_id=obj.get("payment_intent"),
            provider_type=provider_type,
            transaction_id=obj.get("id"),
            amount_cents=obj.get("amount_refunded"),
        )
    return WebhookEvent(
        id=payload["id"],
        type=internal,
        intent_id=obj.get("id"),
        provider_type=provider_type,
        transaction_id=obj.get("latest_charge"),
        amount_cents=obj.get("amount_received", obj.get("amount")),
    )


def verify_signature(body: bytes, header: Optional[str], secret: str, tolerance: int) -> None:
    """Verify a ``Stripe-Signature`` header with the Stripe SDK.

    Raises:
        InvalidSignature: Missing or malformed header, no matching ``v1``
            signature, or a timestamp outside ``tolerance`` seconds.
        ValueError: The signed body is not valid JSON.
    """
    if not header:
        raise InvalidSignature("missing signature header")
    try:
        stripe.Webhook.construct_event(body, header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(e.user_message or "signature mismatch") from e


class FakePaymentGateway(PaymentGateway):
    """Deterministic in-memory implementation of ``PaymentGateway``.

    Intents are kept as Stripe-shaped dicts so the same event parsing is
    exercised as with the real provider. A repeated ``idempotency_key``
    returns the intent created for it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._intents: dict[str, dict] = {}
        self._by_key: dict[str, str] = {}
        self._refund_keys: dict[str, RefundResult] = {}
        self.refunds: list[RefundResult] = []

    def create_intent(self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None) -> PaymentIntent:
        if amount_cents <= 0:
            raise PaymentProviderError("amount must be positive")
        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return to_intent(self._intents[self._by_key[idempotency_key]])
            intent_id = f"pi_{uuid.uuid4().hex[:24]}"
            obj = {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount_cents,
                "currency": currency,
                "status": "requires_payment_method",
                "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:16]}",
                "metadata": dict(metadata),
                "latest_charge": None,
                "last_payment_error": None,
            }
            self._intents[intent_id] = obj
            if idempotency_key:
                self._by_key[idempotency_key] = intent_id
            return to_intent(obj)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            obj = self._intents.get(intent_id)
            if obj is None:
                raise PaymentProviderError(f"no such payment intent: {intent_id}")
            return to_intent(obj)

    def refund(self, intent_id: str, amount_cents: Optional[int] = None, idempotency_key: Optional[str] = None) -> RefundResult:
        with self._lock:
            if idempotency_key and idempotency_key in self._refund_keys:
                return self._refund_keys[idempotency_key]
            obj = self._intents.get(intent_id)
            if obj is None or obj["status"] != "succeeded":
                raise PaymentProviderError("payment intent cannot be refunded")
            amount = obj["amount"] if amount_cents is None else amount_cents
            if amount <= 0 or amount > obj["amount"]:
                raise PaymentProviderError("refund amount out of range")
            result = RefundResult(id=f"re_{uuid.uuid4().hex[:24]}", intent_id=intent_id, amount_cents=amount, status="succeeded")
            self.refunds.append(result)
            if idempotency_key:
                self._refund_keys[idempotency_key] = result
            return result

    def parse_event(self, payload: dict) -> Optional[WebhookEvent]:
        return parse_stripe_event(payload)

    # ---- simulation helpers ----
    def mark_succeeded(self, intent_id: str) -> dict:
        """Complete the payment and return the ``payment_intent.succeeded`` event."""
        with self._lock:
            obj = self._intents[intent_id]
            obj["status"] = "succeeded"
            obj["latest_charge"] = obj["latest_charge"] or f"ch_{uuid.uuid4().hex[:24]}"
            obj["amount_received"] = obj["amount"]
            return _event("payment_intent.succeeded", dict(obj))

    def mark_failed(self, intent_id: str) -> dict:
        """Fail the payment attempt and return the ``payment_intent.payment_failed`` event."""
        with self._lock:
            obj = self._intents[intent_id]
            obj["status"] = "requires_payment_method"
            obj["last_payment_error"] = {"code": "card_declined"}
            return _event("payment_intent.payment_failed", dict(obj))


def _event(event_type: str, obj: dict) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }
