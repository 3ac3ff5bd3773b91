"""Domain models, ports and pure transition rules for checkout.

This module contains the dataclasses passed between the checkout services
(variant selections, stock draws, validated cart lines, orders and their
payment sub-record), the explicit order and payment transition tables, the
pure payment-update function applied by the payment coordinator, and the
``PaymentGateway`` port implemented by the provider adapters. Nothing here
performs I/O.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Union


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store keeps naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of an order after creation."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Status of the payment sub-record embedded in an order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Caller identity supplied by the identity layer.

    Attributes:
        user_id: Authenticated user identifier.
        role: Customer or admin.
    """

    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


# ---- Variant selection ----
@dataclass(frozen=True)
class VariantChoice:
    name: str
    value: str


@dataclass(frozen=True)
class NoVariants:
    """Selection for a product that has no variant dimensions."""

    def to_list(self) -> list:
        return []


@dataclass(frozen=True)
class VariantSelection:
    """One chosen option per variant dimension, sorted by dimension name.

    Build instances through ``parse_selection`` so that two selections of the
    same options compare equal regardless of the order they were sent in.
    """

    choices: tuple

    def to_list(self) -> List[dict]:
        return [{"name": c.name, "value": c.value} for c in self.choices]

    def as_dict(self) -> dict:
        return {c.name: c.value for c in self.choices}


Selection = Union[NoVariants, VariantSelection]
NO_VARIANTS = NoVariants()


def _choice_pair(raw: Any) -> tuple:
    if isinstance(raw, VariantChoice):
        return raw.name, raw.value
    if isinstance(raw, Mapping):
        name = raw.get("name", raw.get("variantName"))
        value = raw.get("value", raw.get("optionValue"))
        return name, value
    if isinstance(raw, (tuple, list)) and len(raw) == 2:
        return raw[0], raw[1]
    raise ValueError("INVALID_VARIANT_SELECTION")


def parse_selection(raw: Any) -> Selection:
    """Normalize a loosely shaped variant selection into a ``Selection``.

    Accepts ``None`` or an empty collection (no variants), a mapping of
    ``{name: value}``, or a list of ``{"name", "value"}`` objects (the
    ``variantName``/``optionValue`` spelling is accepted too).

    Args:
        raw: Selection as received from a client or loaded from storage.

    Returns:
        NoVariants or a VariantSelection with stripped, name-sorted choices.

    Raises:
        ValueError: On empty names or values, duplicate names, or an
            unrecognized shape.
    """
    if isinstance(raw, (NoVariants, VariantSelection)):
        return raw
    if raw is None:
        return NO_VARIANTS
    if isinstance(raw, Mapping):
        pairs: Iterable = raw.items()
    elif isinstance(raw, (list, tuple)):
        pairs = [_choice_pair(item) for item in raw]
    else:
        raise ValueError("INVALID_VARIANT_SELECTION")

    seen: dict[str, str] = {}
    for name, value in pairs:
        if not isinstance(name, str) or not isinstance(value, (str, int, float)):
            raise ValueError("INVALID_VARIANT_SELECTION")
        name = name.strip()
        value = str(value).strip()
        if not name or not value:
            raise ValueError("INVALID_VARIANT_SELECTION")
        if name in seen:
            raise ValueError("DUPLICATE_VARIANT_NAME")
        seen[name] = value
    if not seen:
        return NO_VARIANTS
    return VariantSelection(tuple(VariantChoice(n, seen[n]) for n in sorted(seen)))


# ---- Stock ----
@dataclass(frozen=True)
class Availability:
    """Result of a read-only availability check.

    ``sellable`` is the single backorder rule used by cart add, cart
    validation, checkout re-verification and decrement.
    """

    available: bool
    available_stock: int
    can_backorder: bool = False

    @property
    def sellable(self) -> bool:
        return self.available or self.can_backorder


@dataclass(frozen=True)
class StockRequest:
    product_id: str
    quantity: int
    selection: Selection = NO_VARIANTS


@dataclass(frozen=True)
class StockDraw:
    """Outcome of a successful decrement.

    Attributes:
        available_stock: Stock left in the cell after the write.
        reserved: Units actually taken from the cell.
        backordered: Units sold beyond the on-hand quantity.
    """

    product_id: str
    available_stock: int
    reserved: int
    backordered: int = 0


@dataclass(frozen=True)
class StockFailure:
    product_id: str
    requested: int
    available_stock: int
    selection: Selection = NO_VARIANTS

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "available_stock": self.available_stock,
            "selected_variants": self.selection.to_list(),
        }


# ---- Cart ----
@dataclass(frozen=True)
class CartLine:
    """A stored cart line as intent: never the source of price or stock."""

    id: Optional[str]
    product_id: str
    quantity: int
    selection: Selection = NO_VARIANTS
    unit_price_cents: int = 0
    added_at: Optional[datetime] = None


@dataclass(frozen=True)
class PricedLine:
    """A cart line reconciled with the current catalog state."""

    item_id: Optional[str]
    product_id: str
    selection: Selection
    quantity: int
    unit_price_cents: int
    name: str
    sku: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_request(self) -> StockRequest:
        return StockRequest(self.product_id, self.quantity, self.selection)


class WarningCode(str, Enum):
    UNAVAILABLE = "UNAVAILABLE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    QUANTITY_ADJUSTED = "QUANTITY_ADJUSTED"
    PRICE_CHANGED = "PRICE_CHANGED"


@dataclass(frozen=True)
class CartWarning:
    item_id: Optional[str]
    product_id: str
    code: WarningCode
    message: str
    requested: int = 0
    available_stock: int = 0
    selection: Selection = NO_VARIANTS

    @property
    def blocks_checkout(self) -> bool:
        return self.code != WarningCode.PRICE_CHANGED

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "code": self.code.value,
            "message": self.message,
            "requested": self.requested,
            "available_stock": self.available_stock,
            "selected_variants": self.selection.to_list(),
        }


@dataclass
class CartValidation:
    valid_items: List[PricedLine] = field(default_factory=list)
    warnings: List[CartWarning] = field(default_factory=list)

    @property
    def subtotal_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.valid_items)


@dataclass(frozen=True)
class Violation:
    """One cart line that cannot be checked out as requested."""

    item_id: Optional[str]
    product_id: str
    reason: str
    requested: int
    available_stock: int
    selection: Selection = NO_VARIANTS

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "reason": self.reason,
            "requested": self.requested,
            "available_stock": self.available_stock,
            "selected_variants": self.selection.to_list(),
        }


# ---- Orders ----
@dataclass(frozen=True)
class CheckoutDetails:
    """Everything checkout needs besides the cart itself.

    Tax, shipping cost and discount are computed by pricing collaborators and
    passed in as integer cents.
    """

    shipping_address: dict
    billing_address: Optional[dict] = None
    shipping_method: str = "standard"
    shipping_cost_cents: int = 0
    tax_cents: int = 0
    discount_cents: int = 0
    notes: Optional[str] = None
    payment_method: str = "stripe"


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    selection: Selection
    name: str
    sku: Optional[str]
    image_url: Optional[str]
    unit_price_cents: int
    quantity: int
    subtotal_cents: int
    reserved_quantity: int


@dataclass(frozen=True)
class Payment:
    method: str
    status: PaymentStatus
    amount_cents: int
    currency: str
    intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    refunded_cents: Optional[int] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


@dataclass(frozen=True)
class Order:
    """Read model of a persisted order."""

    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    lines: List[OrderLine]
    subtotal_cents: int
    tax_cents: int
    shipping_cost_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    shipping_address: dict
    billing_address: dict
    shipping_method: str
    payment: Payment
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    cancelled_reason: Optional[str] = None
    stock_restored: bool = False
    processing_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


ORDER_TRANSITIONS: dict = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Timestamp column stamped (once) when an order enters the status.
ORDER_TIMESTAMPS: dict = {
    OrderStatus.PROCESSING: "processing_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


# ---- Payment transitions ----
PAYMENT_TRANSITIONS: dict = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID, PaymentStatus.PENDING, PaymentStatus.CANCELLED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

# Internal event type -> payment status it moves to.
EVENT_STATUS: dict = {
    "payment.succeeded": PaymentStatus.PAID,
    "payment.failed": PaymentStatus.FAILED,
    "payment.refunded": PaymentStatus.REFUNDED,
    "payment.cancelled": PaymentStatus.CANCELLED,
}


class UpdateOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentSnapshot:
    """The slice of an order the payment transition reads and writes."""

    order_status: OrderStatus
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentUpdate:
    outcome: UpdateOutcome
    snapshot: PaymentSnapshot
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome == UpdateOutcome.APPLIED


def resolve_payment_update(snapshot: PaymentSnapshot, target: PaymentStatus, now: datetime) -> PaymentUpdate:
    """Compute the effect of moving a payment to ``target``.

    Pure function over an immutable snapshot. Re-applying the current status
    is a duplicate (no-op); moves not listed in ``PAYMENT_TRANSITIONS`` are
    ignored, so a late ``failed`` never downgrades a ``paid`` payment. A first
    ``paid`` advances a pending order to processing; ``paid_at``,
    ``processing_at`` and ``refunded_at`` are only ever stamped once.

    Args:
        snapshot: Current payment/order state.
        target: Requested payment status.
        now: Timestamp used for any stamps.

    Returns:
        PaymentUpdate: Outcome plus the resulting snapshot (unchanged unless
        the outcome is ``applied``).
    """
    current = PaymentStatus(snapshot.payment_status)
    target = PaymentStatus(target)
    if target == current:
        return PaymentUpdate(UpdateOutcome.DUPLICATE, snapshot)
    if target not in PAYMENT_TRANSITIONS[current]:
        return PaymentUpdate(
            UpdateOutcome.IGNORED,
            snapshot,
            reason=f"{current.value}->{target.value} not allowed",
        )

    new = replace(snapshot, payment_status=target)
    if target == PaymentStatus.PAID:
        new = replace(new, paid_at=snapshot.paid_at or now)
        if snapshot.order_status == OrderStatus.PENDING:
            new = replace(
                new,
                order_status=OrderStatus.PROCESSING,
                processing_at=snapshot.processing_at or now,
            )
    elif target == PaymentStatus.REFUNDED:
        new = replace(new, refunded_at=snapshot.refunded_at or now)
    return PaymentUpdate(UpdateOutcome.APPLIED, new)


# ---- Payment provider port ----
@dataclass(frozen=True)
class PaymentIntent:
    """Provider payment intent, with its status mapped to ``PaymentStatus``."""

    id: str
    client_secret: Optional[str]
    status: PaymentStatus
    amount_cents: int
    currency: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    id: str
    intent_id: str
    amount_cents: int
    status: str


@dataclass(frozen=True)
class WebhookEvent:
    """Provider event normalized to an internal ``payment.*`` type."""

    id: str
    type: str
    intent_id: Optional[str]
    provider_type: str
    transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None


class PaymentGateway(Protocol):
    """Port describing the payment provider operations used by the core."""

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Create a payment intent for the given amount.

        Raises:
            PaymentProviderError: When the provider cannot be reached or
                rejects the request.
        """
        raise NotImplementedError()

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError()

    def refund(self, intent_id: str, amount_cents: Optional[int] = None, idempotency_key: Optional[str] = None) -> RefundResult:
        """Refund a succeeded intent; a repeated ``idempotency_key`` returns the first refund."""
        raise NotImplementedError()

    def parse_event(self, payload: dict) -> Optional[WebhookEvent]:
        """Normalize a webhook payload, or return None for unrelated events."""
        raise NotImplementedError()
