"""HTTP payment gateway with retries, a circuit breaker and context headers.

This module implements ``PaymentGateway`` against a Stripe-compatible REST
API using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set by
  the gateway middleware.
- A circuit breaker per gateway instance to avoid hammering an unhealthy
  provider, with HALF_OPEN probing after a timeout.
- A retry policy with capped exponential backoff for transport errors and
  5xx responses. 4xx responses are business outcomes: they are not retried
  and do not count as circuit failures.
- ``Idempotency-Key`` propagation on intent creation.
"""

import logging
import threading
import time
from typing import Optional

import httpx

from gateway.middleware import REQUEST_ID_CTX

from .adapters import parse_stripe_event, to_intent
from .config import Settings
from .domain import PaymentGateway, PaymentIntent, RefundResult, WebhookEvent
from .errors import PaymentProviderError

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN -> CLOSED on a successful probe, back to OPEN on failure;
      only one probe may be in flight.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._set_state("HALF_OPEN")
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check the breaker before a protected call.

        Raises:
            PaymentProviderError: When OPEN, or HALF_OPEN with a probe busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise PaymentProviderError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise PaymentProviderError("CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._set_state("CLOSED")
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._set_state("OPEN")
                self._opened_at = time.monotonic()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False

    def _set_state(self, new: str) -> None:
        if new != self._state:
            logger.warning("circuit state changed", extra={"circuit": self.name, "from": self._state, "to": new})
            self._state = new


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers including X-Request-ID (when inside a request) and extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _error_message(resp) -> str:
    try:
        err = resp.json().get("error") or {}
        return err.get("message") or err.get("code") or f"provider returned {resp.status_code}"
    except Exception:
        return f"provider returned {resp.status_code}"


# ---------------- Payment Gateway ---------------- #

class HttpPaymentGateway(PaymentGateway):
    """Stripe-compatible HTTP client with retry and circuit breaker.

    Args:
        settings: Process settings (API base, key, timeouts, retry and
            circuit parameters).
    """

    def __init__(self, settings: Settings):
        self.base_url = settings.stripe_api_base
        self.api_key = settings.stripe_secret_key
        self.timeout = settings.http_timeout_secs
        self.max_retries = max(1, settings.http_retry_max)
        self.backoff = settings.http_retry_backoff_base
        self.max_sleep = settings.http_retry_max_sleep
        self.circuit = CircuitBreaker(
            "payments",
            settings.http_circuit_fail_threshold,
            settings.http_circuit_reset_timeout,
        )

    def create_intent(self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None) -> PaymentIntent:
        data = {
            "amount": str(amount_cents),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)
        extra = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return to_intent(self._call("POST", "/v1/payment_intents", data=data, extra=extra))

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        return to_intent(self._call("GET", f"/v1/payment_intents/{intent_id}"))

    def refund(self, intent_id: str, amount_cents: Optional[int] = None, idempotency_key: Optional[str] = None) -> RefundResult:
        data = {"payment_intent": intent_id}
        if amount_cents is not None:
            data["amount"] = str(amount_cents)
        extra = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        body = self._call("POST", "/v1/refunds", data=data, extra=extra)
        return RefundResult(
            id=body["id"],
            intent_id=body.get("payment_intent") or intent_id,
            amount_cents=int(body.get("amount") or 0),
            status=body.get("status") or "pending",
        )

    def parse_event(self, payload: dict) -> Optional[WebhookEvent]:
        return parse_stripe_event(payload)

    def _call(self, method: str, path: str, data: Optional[dict] = None, extra: Optional[dict] = None) -> dict:
        """Send one provider request with circuit precheck and retries.

        Returns:
            dict: Decoded JSON body of a 2xx response.

        Raises:
            PaymentProviderError: On 4xx business errors (not retried), an
                open circuit, or when retries are exhausted.
        """
        tries = 0
        state = self.circuit.before_call()
        headers = _request_headers({"Authorization": f"Bearer {self.api_key}", **(extra or {})})
        headers["X-Circuit-State"] = state
        headers["X-Retry-Count"] = "0"
        url = f"{self.base_url}{path}"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        if method == "GET":
                            resp = client.get(url, headers=headers)
                        else:
                            resp = client.post(url, data=data, headers=headers)
                        if 200 <= resp.status_code < 300:
                            self.circuit.on_success()
                            return resp.json()
                        if 400 <= resp.status_code < 500:
                            # business outcome, not a circuit failure
                            self.circuit.on_success()
                            raise PaymentProviderError(_error_message(resp), provider_status=resp.status_code)
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)
                    if tries >= self.max_retries or not _should_retry(resp, exc):
                        self.circuit.on_failure()
                        logger.error(
                            "payment provider call failed",
                            extra={"path": path, "tries": tries, "error": str(exc) if exc else resp.status_code},
                        )
                        raise PaymentProviderError("payment provider unavailable") from exc

                    logger.info("retrying payment provider call", extra={"path": path, "tries": tries})
                    time.sleep(min(self.backoff * (2 ** (tries - 1)), self.max_sleep))
        finally:
            self.circuit.on_finish()
