"""Pydantic schemas for the checkout API.

Request schemas validate and normalize incoming payloads (variant selections
are parsed once here into their canonical form); response schemas map the
domain read models to JSON.
"""

import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from .cart import CartView
from .domain import (
    CheckoutDetails,
    Order,
    OrderStatus,
    PaymentStatus,
    PricedLine,
    Selection,
    parse_selection,
)

COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
SHIPPING_METHODS = {"standard", "express", "overnight", "pickup"}
PAYMENT_METHODS = {"stripe", "paypal", "cash_on_delivery"}


class VariantSelectionMixin(BaseModel):
    selected_variants: Any = None

    @field_validator("selected_variants")
    @classmethod
    def validate_selection(cls, v: Any) -> list:
        """Normalize the selection to a name-sorted list of ``{name, value}``.

        Raises:
            ValueError: On duplicate or empty variant names.
        """
        return parse_selection(v).to_list()

    @property
    def selection(self) -> Selection:
        return parse_selection(self.selected_variants)


class AddCartItemIn(VariantSelectionMixin):
    """Body of ``POST /cart/items``.

    Attributes:
        product_id: Catalog product id.
        quantity: Units to add (merged with an identical existing line).
        selected_variants: ``[{"name", "value"}]`` or ``{name: value}``.
    """

    product_id: str = Field(min_length=1, max_length=36)
    quantity: int = Field(gt=0, le=999)


class UpdateCartItemIn(BaseModel):
    quantity: int = Field(le=999)


class AddressIn(BaseModel):
    """Postal address; country is an ISO 3166-1 alpha-2 code."""

    full_name: str = Field(min_length=1, max_length=200)
    line1: str = Field(min_length=1, max_length=200)
    line2: Optional[str] = Field(default=None, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=2)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        v2 = v.upper()
        if not COUNTRY_RE.match(v2):
            raise ValueError("Invalid country code")
        return v2


class CreateOrderIn(BaseModel):
    """Body of ``POST /orders``.

    Tax, shipping cost and discount come from pricing collaborators and are
    given in integer cents.
    """

    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    shipping_method: str = "standard"
    shipping_cost_cents: int = Field(default=0, ge=0)
    tax_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    payment_method: str = "stripe"

    @field_validator("shipping_method")
    @classmethod
    def validate_shipping_method(cls, v: str) -> str:
        v2 = v.lower()
        if v2 not in SHIPPING_METHODS:
            raise ValueError("Unsupported shipping method")
        return v2

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        v2 = v.lower()
        if v2 not in PAYMENT_METHODS:
            raise ValueError("Unsupported payment method")
        return v2

    def to_details(self) -> CheckoutDetails:
        return CheckoutDetails(
            shipping_address=self.shipping_address.model_dump(),
            billing_address=self.billing_address.model_dump() if self.billing_address else None,
            shipping_method=self.shipping_method,
            shipping_cost_cents=self.shipping_cost_cents,
            tax_cents=self.tax_cents,
            discount_cents=self.discount_cents,
            notes=self.notes,
            payment_method=self.payment_method,
        )


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ShippingUpdateIn(BaseModel):
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    carrier: Optional[str] = Field(default=None, max_length=64)
    shipping_method: Optional[str] = None

    @field_validator("shipping_method")
    @classmethod
    def validate_shipping_method(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v2 = v.lower()
        if v2 not in SHIPPING_METHODS:
            raise ValueError("Unsupported shipping method")
        return v2


class CreateIntentIn(BaseModel):
    order_id: str = Field(min_length=1, max_length=36)
    payment_method: str = "stripe"


class VerifyPaymentIn(BaseModel):
    order_id: str = Field(min_length=1, max_length=36)
    payment_intent_id: str = Field(min_length=1, max_length=255)


class RefundIn(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)


# ---- responses ----
class LineOut(BaseModel):
    item_id: Optional[str] = None
    product_id: str
    selected_variants: List[dict]
    name: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    unit_price_cents: int
    quantity: int
    subtotal_cents: int
    reserved_quantity: Optional[int] = None

    @classmethod
    def from_priced(cls, line: PricedLine) -> "LineOut":
        return cls(
            item_id=line.item_id,
            product_id=line.product_id,
            selected_variants=line.selection.to_list(),
            name=line.name,
            sku=line.sku,
            image_url=line.image_url,
            unit_price_cents=line.unit_price_cents,
            quantity=line.quantity,
            subtotal_cents=line.subtotal_cents,
        )


class CartOut(BaseModel):
    user_id: str
    items: List[LineOut]
    warnings: List[dict]
    subtotal_cents: int
    item_count: int
    expires_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: CartView) -> "CartOut":
        return cls(
            user_id=view.user_id,
            items=[LineOut.from_priced(line) for line in view.items],
            warnings=[w.to_dict() for w in view.warnings],
            subtotal_cents=view.subtotal_cents,
            item_count=view.item_count,
            expires_at=view.expires_at,
        )


class PaymentOut(BaseModel):
    method: str
    status: PaymentStatus
    amount_cents: int
    currency: str
    intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    refunded_cents: Optional[int] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class OrderOut(BaseModel):
    """Read DTO for an order."""

    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    items: List[LineOut]
    subtotal_cents: int
    tax_cents: int
    shipping_cost_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    shipping_address: dict
    billing_address: dict
    shipping_method: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    cancelled_reason: Optional[str] = None
    payment: PaymentOut
    processing_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status,
            items=[
                LineOut(
                    product_id=line.product_id,
                    selected_variants=line.selection.to_list(),
                    name=line.name,
                    sku=line.sku,
                    image_url=line.image_url,
                    unit_price_cents=line.unit_price_cents,
                    quantity=line.quantity,
                    subtotal_cents=line.subtotal_cents,
                    reserved_quantity=line.reserved_quantity,
                )
                for line in order.lines
            ],
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            shipping_cost_cents=order.shipping_cost_cents,
            discount_cents=order.discount_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            shipping_method=order.shipping_method,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            notes=order.notes,
            admin_notes=order.admin_notes,
            cancelled_reason=order.cancelled_reason,
            payment=PaymentOut(**vars(order.payment)),
            processing_at=order.processing_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
