"""HTTP API for the checkout core built with FastAPI.

Handlers are kept intentionally small: they validate requests (via
Pydantic), resolve the caller from the identity headers, delegate to the
services built at startup, and map results to JSON. Checkout errors are
rendered as ``{"detail": CODE, "message": ..., ...}`` with the status the
error class declares.

Idempotency: ``POST /orders`` honours an ``Idempotency-Key`` header. The
first request is processed and its response stored; retries with the same
payload replay it with ``Idempotent-Replay: true``; the same key with a
different payload is a 409.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from gateway.logging_filters import configure_logging
from gateway.middleware import ApiSizeLimitMiddleware, RequestIdMiddleware

from .adapters import verify_signature
from .config import Settings
from .db import init_db, wait_for_db
from .domain import Actor, Order, OrderStatus, PaymentStatus, Role
from .errors import CheckoutError, InsufficientStock, InvalidSignature, PermissionDenied
from .idempotency import finalize, get_or_create_idempotent, release, scoped_key
from .providers import Services, build_services
from .schemas import (
    AddCartItemIn,
    CancelIn,
    CartOut,
    CreateIntentIn,
    CreateOrderIn,
    OrderOut,
    RefundIn,
    ShippingUpdateIn,
    StatusUpdateIn,
    UpdateCartItemIn,
    VerifyPaymentIn,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {"stripe"}

router = APIRouter()


# ---- dependencies ----
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """Caller identity as supplied by the identity layer in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="UNAUTHENTICATED")
    try:
        role = Role((x_user_role or Role.CUSTOMER.value).lower())
    except ValueError:
        raise HTTPException(status_code=401, detail="UNAUTHENTICATED")
    return Actor(user_id=x_user_id, role=role)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise PermissionDenied("admin role required")
    return actor


def _order_body(order: Order) -> dict:
    return OrderOut.from_domain(order).model_dump(mode="json")


# ---- health ----
@router.get("/health")
def health(services: Services = Depends(get_services)):
    """Liveness probe including a database round trip."""
    db_ok = False
    try:
        with services.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health check: database unreachable")
    return JSONResponse({"ok": db_ok, "components": {"db": {"ok": db_ok}}}, status_code=200 if db_ok else 503)


# ---- cart ----
@router.get("/cart")
def get_cart(actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return CartOut.from_view(services.carts.get_cart(actor.user_id)).model_dump(mode="json")


@router.post("/cart/items")
def add_cart_item(body: AddCartItemIn, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    view = services.carts.add_item(actor.user_id, body.product_id, body.quantity, body.selection)
    return CartOut.from_view(view).model_dump(mode="json")


@router.put("/cart/items/{item_id}")
def update_cart_item(
    item_id: str,
    body: UpdateCartItemIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    view = services.carts.update_item(actor.user_id, item_id, body.quantity)
    return CartOut.from_view(view).model_dump(mode="json")


@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return CartOut.from_view(services.carts.remove_item(actor.user_id, item_id)).model_dump(mode="json")


@router.delete("/cart")
def clear_cart(actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    services.carts.clear(actor.user_id)
    return CartOut.from_view(services.carts.get_cart(actor.user_id)).model_dump(mode="json")


# ---- orders ----
def place_order(services: Services, user_id: str, body: CreateOrderIn) -> Order:
    """Run checkout, re-running it when a concurrent buyer won the stock race."""
    attempts = services.settings.checkout_race_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return services.builder.create_from_cart(user_id, body.to_details())
        except InsufficientStock as e:
            logger.warning(
                "checkout lost stock race",
                extra={"user_id": user_id, "product_id": e.product_id, "attempt": attempt},
            )
            if attempt == attempts:
                raise
    raise AssertionError("unreachable")


@router.post("/orders")
def create_order(
    body: CreateOrderIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    """Create an order from the caller's cart.

    Returns:
        201 with the order; 200-class replay of the stored response for an
        idempotent retry; 409 ``IDEMPOTENCY_CONFLICT`` when the key is reused
        with a different payload; checkout errors with their own status.
    """
    payload = body.model_dump(mode="json")
    key = None
    if idempotency_key:
        with services.sessions.begin() as s:
            try:
                existing, rec = get_or_create_idempotent(s, idempotency_key, actor.user_id, payload)
            except ValueError:
                return JSONResponse({"detail": "IDEMPOTENCY_CONFLICT"}, status_code=409)
            if existing:
                if not rec.response_status:
                    return JSONResponse({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status_code=409)
                resp = JSONResponse(rec.response_body, status_code=rec.response_status)
                resp.headers["Idempotent-Replay"] = "true"
                return resp
        key = scoped_key(actor.user_id, idempotency_key)

    try:
        order = place_order(services, actor.user_id, body)
    except CheckoutError as e:
        if key:
            with services.sessions.begin() as s:
                finalize(s, key, e.status_code, e.to_dict())
        raise
    except Exception:
        if key:
            with services.sessions.begin() as s:
                release(s, key)
        raise

    out = _order_body(order)
    if key:
        with services.sessions.begin() as s:
            finalize(s, key, 201, out, order_id=order.id)
    return JSONResponse(out, status_code=201)


@router.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    result = services.orders.list(actor, status=status, payment_status=payment_status, page=page, page_size=page_size)
    return {
        "count": result.count,
        "page": result.page,
        "page_size": result.page_size,
        "results": [_order_body(o) for o in result.items],
    }


@router.get("/orders/{order_id}")
def retrieve_order(order_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return _order_body(services.orders.get(order_id, actor))


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdateIn,
    _admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return _order_body(services.state_machine.transition(order_id, body.status, body.admin_notes))


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    body: Optional[CancelIn] = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    reason = body.reason if body else None
    return _order_body(services.state_machine.cancel(order_id, actor, reason))


@router.put("/orders/{order_id}/shipping")
def update_shipping(
    order_id: str,
    body: ShippingUpdateIn,
    _admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = services.state_machine.update_shipping(order_id, body.tracking_number, body.carrier, body.shipping_method)
    return _order_body(order)


# ---- payments ----
@router.post("/payments/create-intent")
def create_payment_intent(body: CreateIntentIn, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    result = services.payments.create_intent(body.order_id, actor, body.payment_method)
    return {
        "payment_intent_id": result.intent_id,
        "client_secret": result.client_secret,
        "amount_cents": result.amount_cents,
        "currency": result.currency,
        "reused": result.reused,
    }


@router.post("/payments/verify")
def verify_payment(body: VerifyPaymentIn, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return _order_body(services.payments.verify(body.order_id, body.payment_intent_id, actor))


@router.post("/payments/{order_id}/refund")
def refund_payment(
    order_id: str,
    body: Optional[RefundIn] = None,
    _admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    amount = body.amount_cents if body else None
    return _order_body(services.payments.refund(order_id, amount))


@router.post("/payments/webhook/{provider}")
async def payment_webhook(provider: str, request: Request, services: Services = Depends(get_services)):
    """Receive a provider webhook.

    The signature is checked before anything else (400 on failure). Every
    other outcome, including processing errors, is acknowledged with 200 so
    the provider does not enter a retry storm.
    """
    if provider not in SUPPORTED_PROVIDERS:
        return JSONResponse({"detail": "NOT_FOUND", "message": f"unknown provider {provider}"}, status_code=404)
    raw = await request.body()
    settings = services.settings
    secret = settings.stripe_webhook_secret
    if not secret and settings.use_http_adapters:
        raise InvalidSignature("webhook signing secret is not configured")
    try:
        if secret:
            verify_signature(raw, request.headers.get("Stripe-Signature"), secret, settings.webhook_tolerance_secs)
        payload = json.loads(raw)
    except ValueError:
        return JSONResponse({"detail": "INVALID_PAYLOAD"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"detail": "INVALID_PAYLOAD"}, status_code=400)

    try:
        result = await run_in_threadpool(services.payments.handle_webhook, provider, payload)
    except Exception:
        logger.exception("webhook processing failed", extra={"provider": provider, "event_id": payload.get("id")})
        return {"received": True, "outcome": "error"}
    return {"received": True, "outcome": result.outcome}


# ---- app factory ----
def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Process settings; read from the environment when omitted.
        services: Pre-built services (tests); built from settings otherwise.
    """
    settings = settings or (services.settings if services else Settings.from_env())
    configure_logging(settings.log_level)
    services = services or build_services(settings)

    app = FastAPI(title="Storefront Checkout")
    app.state.services = services
    app.add_middleware(ApiSizeLimitMiddleware, max_bytes=settings.api_max_bytes)
    app.add_middleware(RequestIdMiddleware)

    @app.on_event("startup")
    def _startup_db():
        wait_for_db(services.engine)
        init_db(services.engine)

    @app.exception_handler(CheckoutError)
    async def _checkout_error(_request: Request, exc: CheckoutError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    app.include_router(router)
    return app
