"""Service wiring.

``build_services`` constructs every checkout service once at process start
from ``Settings`` and returns them in a ``Services`` container that request
handlers receive explicitly. The payment gateway is the HTTP client when
``USE_HTTP_ADAPTERS`` is enabled, and the in-process fake otherwise (tests
and local development).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .adapters import FakePaymentGateway
from .cart import CartService, CartValidator
from .config import Settings
from .db import make_engine, make_session_factory
from .domain import PaymentGateway
from .http_adapters import HttpPaymentGateway
from .inventory import StockLedger
from .orders import OrderBuilder, OrderStateMachine
from .payments import PaymentCoordinator
from .repository import OrderRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    sessions: sessionmaker
    gateway: PaymentGateway
    ledger: StockLedger
    validator: CartValidator
    carts: CartService
    builder: OrderBuilder
    state_machine: OrderStateMachine
    orders: OrderRepository
    payments: PaymentCoordinator


def build_gateway(settings: Settings) -> PaymentGateway:
    """Return the payment gateway selected by ``settings.use_http_adapters``."""
    if settings.use_http_adapters:
        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; inbound payment webhooks will be rejected")
        return HttpPaymentGateway(settings)
    return FakePaymentGateway()


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Services:
    """Construct the checkout services.

    Args:
        settings: Process settings.
        engine: Existing engine to reuse (tests); created from
            ``settings.database_url`` otherwise.
        gateway: Payment gateway override; chosen from settings otherwise.

    Returns:
        Services: The wired container.
    """
    engine = engine or make_engine(settings.database_url)
    sessions = make_session_factory(engine)
    gateway = gateway or build_gateway(settings)

    ledger = StockLedger(sessions)
    validator = CartValidator(sessions)
    carts = CartService(sessions, validator, ledger, ttl_days=settings.cart_ttl_days)
    services = Services(
        settings=settings,
        engine=engine,
        sessions=sessions,
        gateway=gateway,
        ledger=ledger,
        validator=validator,
        carts=carts,
        builder=OrderBuilder(sessions, validator, ledger, carts, currency=settings.currency),
        state_machine=OrderStateMachine(sessions, ledger),
        orders=OrderRepository(sessions),
        payments=PaymentCoordinator(sessions, gateway),
    )
    logger.info("services built", extra={"gateway": type(gateway).__name__})
    return services
