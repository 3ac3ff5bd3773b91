"""SQLAlchemy tables for the checkout core.

Products and their variant options are owned by the catalog; the core only
reads them and changes ``stock`` through the stock ledger. Orders embed their
payment sub-record as ``payment_*`` columns and carry a version column used
for optimistic locking of per-order writes.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import mapped_column, relationship

from .db import Base
from .domain import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class ProductModel(Base):
    """Catalog product as seen by the checkout core.

    Attributes:
        price_cents: Base unit price in minor units.
        stock: Flat stock cell, used when the product has no variant options.
        track_inventory: When False the product is always available and its
            stock is never touched.
        allow_backorder: Allows selling beyond the on-hand quantity.
    """

    __tablename__ = "products"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    name = mapped_column(String(200), nullable=False)
    sku = mapped_column(String(64), unique=True, nullable=True)
    price_cents = mapped_column(Integer, nullable=False)
    status = mapped_column(String(16), nullable=False, default="active")
    track_inventory = mapped_column(Boolean, nullable=False, default=True)
    allow_backorder = mapped_column(Boolean, nullable=False, default=False)
    stock = mapped_column(Integer, nullable=False, default=0)
    image_url = mapped_column(String(500), nullable=True)

    options = relationship(
        "VariantOptionModel",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by=lambda: [VariantOptionModel.variant_position, VariantOptionModel.id],
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_nonneg"),)


class VariantOptionModel(Base):
    """One option of a variant dimension (e.g. Size=M), with its own stock cell."""

    __tablename__ = "product_variant_options"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id = mapped_column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    variant_name = mapped_column(String(64), nullable=False)
    variant_position = mapped_column(Integer, nullable=False, default=0)
    value = mapped_column(String(64), nullable=False)
    price_cents = mapped_column(Integer, nullable=False, default=0)
    sku = mapped_column(String(64), nullable=True)
    stock = mapped_column(Integer, nullable=False, default=0)
    image_url = mapped_column(String(500), nullable=True)

    product = relationship("ProductModel", back_populates="options")

    __table_args__ = (
        UniqueConstraint("product_id", "variant_name", "value", name="ux_variant_option"),
        CheckConstraint("stock >= 0", name="ck_variant_options_stock_nonneg"),
    )


class CartModel(Base):
    __tablename__ = "carts"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id = mapped_column(String(64), unique=True, nullable=False)
    expires_at = mapped_column(DateTime, nullable=False, index=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItemModel",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItemModel.added_at",
    )


class CartItemModel(Base):
    """A cart line. ``product_id`` is deliberately not a foreign key: products
    may disappear from the catalog and the validator reports that."""

    __tablename__ = "cart_items"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    cart_id = mapped_column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    product_id = mapped_column(String(36), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    selected_variants = mapped_column(JSON, nullable=False, default=list)
    unit_price_cents = mapped_column(Integer, nullable=False)
    added_at = mapped_column(DateTime, nullable=False, default=utcnow)

    cart = relationship("CartModel", back_populates="items")

    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_cart_items_quantity"),)


class OrderModel(Base):
    __tablename__ = "orders"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number = mapped_column(String(32), unique=True, nullable=False)
    user_id = mapped_column(String(64), nullable=False, index=True)
    status = mapped_column(String(16), nullable=False, default="pending", index=True)

    subtotal_cents = mapped_column(Integer, nullable=False)
    tax_cents = mapped_column(Integer, nullable=False, default=0)
    shipping_cost_cents = mapped_column(Integer, nullable=False, default=0)
    discount_cents = mapped_column(Integer, nullable=False, default=0)
    total_cents = mapped_column(Integer, nullable=False)
    currency = mapped_column(String(3), nullable=False)

    shipping_address = mapped_column(JSON, nullable=False)
    billing_address = mapped_column(JSON, nullable=False)
    shipping_method = mapped_column(String(32), nullable=False, default="standard")
    tracking_number = mapped_column(String(100), nullable=True)
    carrier = mapped_column(String(64), nullable=True)

    notes = mapped_column(Text, nullable=True)
    admin_notes = mapped_column(Text, nullable=True)
    cancelled_reason = mapped_column(Text, nullable=True)
    stock_restored = mapped_column(Boolean, nullable=False, default=False)

    processing_at = mapped_column(DateTime, nullable=True)
    shipped_at = mapped_column(DateTime, nullable=True)
    delivered_at = mapped_column(DateTime, nullable=True)
    cancelled_at = mapped_column(DateTime, nullable=True)

    # Embedded payment sub-record
    payment_method = mapped_column(String(16), nullable=False, default="stripe")
    payment_status = mapped_column(String(16), nullable=False, default="pending", index=True)
    payment_intent_id = mapped_column(String(255), unique=True, nullable=True)
    payment_transaction_id = mapped_column(String(255), nullable=True)
    payment_amount_cents = mapped_column(Integer, nullable=False)
    payment_refunded_cents = mapped_column(Integer, nullable=True)
    payment_paid_at = mapped_column(DateTime, nullable=True)
    payment_refunded_at = mapped_column(DateTime, nullable=True)

    created_at = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = mapped_column(Integer, nullable=False)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.id",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "total_cents = subtotal_cents + tax_cents + shipping_cost_cents - discount_cents",
            name="ck_orders_total",
        ),
        CheckConstraint("total_cents >= 0", name="ck_orders_total_nonneg"),
    )


class OrderItemModel(Base):
    """Frozen line snapshot. ``reserved_quantity`` is what was drawn from stock."""

    __tablename__ = "order_items"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = mapped_column(String(36), nullable=False)
    selected_variants = mapped_column(JSON, nullable=False, default=list)
    name = mapped_column(String(200), nullable=False)
    sku = mapped_column(String(64), nullable=True)
    image_url = mapped_column(String(500), nullable=True)
    unit_price_cents = mapped_column(Integer, nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    subtotal_cents = mapped_column(Integer, nullable=False)
    reserved_quantity = mapped_column(Integer, nullable=False, default=0)

    order = relationship("OrderModel", back_populates="items")


class OrderSequenceModel(Base):
    """Per-year order number counter, incremented atomically in the
    order-creation transaction."""

    __tablename__ = "order_sequences"

    year = mapped_column(Integer, primary_key=True)
    last_value = mapped_column(Integer, nullable=False, default=0)


class ProcessedEventModel(Base):
    """Webhook deliveries already applied, keyed by ``provider:event_id``."""

    __tablename__ = "processed_webhook_events"

    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    event_type = mapped_column(String(64), nullable=False)
    intent_id = mapped_column(String(255), nullable=True)
    outcome = mapped_column(String(32), nullable=False)
    received_at = mapped_column(DateTime, nullable=False, default=utcnow)


class IdempotencyKeyModel(Base):
    """Stored responses for ``POST /orders`` retried with an Idempotency-Key.

    Attributes:
        key: Client key, scoped per user.
        request_hash: Canonical SHA-256 hex digest of the original request.
        response_status: HTTP status of the stored response, 0 while the
            first request is still in flight.
    """

    __tablename__ = "checkout_idempotency_keys"

    key = mapped_column(String(200), primary_key=True)
    user_id = mapped_column(String(64), nullable=False)
    request_hash = mapped_column(String(64), nullable=False)
    response_status = mapped_column(Integer, nullable=False, default=0)
    response_body = mapped_column(JSON, nullable=False, default=dict)
    order_id = mapped_column(String(36), nullable=True)
    created_at = mapped_column(DateTime, nullable=False, default=utcnow)
