"""Shared fixtures: a file-backed SQLite store per test, wired services with
the in-process payment gateway, catalog seeding helpers and an API client."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from checkout.adapters import FakePaymentGateway
from checkout.api import create_app
from checkout.config import Settings
from checkout.db import init_db, make_engine
from checkout.domain import CheckoutDetails
from checkout.models import ProductModel, VariantOptionModel
from checkout.providers import build_services

ADDRESS = {
    "full_name": "Ada Lovelace",
    "line1": "12 Analytical St",
    "city": "London",
    "postal_code": "N1 9GU",
    "country": "GB",
}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'checkout.db'}",
        use_http_adapters=False,
        checkout_race_retries=0,
        workers=1,
        log_level="WARNING",
    )


@pytest.fixture
def engine(settings):
    eng = make_engine(settings.database_url)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def services(settings, engine, gateway):
    return build_services(settings, engine=engine, gateway=gateway)


@pytest.fixture
def make_product(services):
    """Insert a catalog product and return its id.

    ``options`` is a list of dicts with ``variant_name``, ``value`` and
    optionally ``variant_position``, ``price_cents``, ``stock`` and ``sku``.
    """

    def _make(
        price_cents=1000,
        stock=10,
        name="Widget",
        track_inventory=True,
        allow_backorder=False,
        status="active",
        options=(),
        sku=None,
    ):
        with services.sessions.begin() as s:
            product = ProductModel(
                name=name,
                sku=sku,
                price_cents=price_cents,
                stock=stock,
                track_inventory=track_inventory,
                allow_backorder=allow_backorder,
                status=status,
            )
            for opt in options:
                product.options.append(VariantOptionModel(**opt))
            s.add(product)
            s.flush()
            return product.id

    return _make


@pytest.fixture
def stock_of(services):
    """Read the current stock of a product, or of one of its options."""

    def _stock(product_id, variant_name=None, value=None):
        with services.sessions() as s:
            if variant_name is None:
                return s.execute(select(ProductModel.stock).where(ProductModel.id == product_id)).scalar_one()
            return s.execute(
                select(VariantOptionModel.stock).where(
                    VariantOptionModel.product_id == product_id,
                    VariantOptionModel.variant_name == variant_name,
                    VariantOptionModel.value == value,
                )
            ).scalar_one()

    return _stock


@pytest.fixture
def set_stock(services):
    def _set(product_id, stock):
        with services.sessions.begin() as s:
            s.get(ProductModel, product_id).stock = stock

    return _set


@pytest.fixture
def details():
    return CheckoutDetails(shipping_address=dict(ADDRESS))


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c
