"""Order creation and the order state machine.

``OrderBuilder`` turns a validated cart into an immutable order: the stock
decrement, the order insert (with frozen line snapshots and a freshly
allocated order number) and the cart clear commit as one transaction, so an
aborted checkout leaves nothing behind.

``OrderStateMachine`` applies the explicit transition table, stamps each
status timestamp once, and restores stock exactly once on cancellation.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .cart import CartService, CartValidator
from .domain import (
    ORDER_TIMESTAMPS,
    Actor,
    CheckoutDetails,
    Order,
    OrderStatus,
    PaymentStatus,
    Violation,
    can_transition,
    parse_selection,
    utcnow,
)
from .errors import (
    AlreadyCancelled,
    CartItemsUnavailable,
    EmptyCart,
    InvalidCheckout,
    InvalidTransition,
    PermissionDenied,
)
from .inventory import StockLedger
from .models import OrderItemModel, OrderModel, OrderSequenceModel
from .repository import mutate_order, to_domain

logger = logging.getLogger(__name__)


def next_order_number(s: Session, year: int) -> str:
    """Allocate the next ``ORD-<year>-<seq>`` inside the caller's transaction.

    The per-year counter row is incremented with a single UPDATE ... RETURNING;
    the first order of a year inserts the row under a savepoint and falls back
    to the increment if a concurrent transaction inserted it first.
    """

    def bump() -> Optional[int]:
        return s.execute(
            update(OrderSequenceModel)
            .where(OrderSequenceModel.year == year)
            .values(last_value=OrderSequenceModel.last_value + 1)
            .returning(OrderSequenceModel.last_value)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

    value = bump()
    if value is None:
        try:
            with s.begin_nested():
                s.add(OrderSequenceModel(year=year, last_value=1))
            value = 1
        except IntegrityError:
            value = bump()
    return f"ORD-{year}-{value:06d}"


class OrderBuilder:
    """Creates orders from carts.

    Args:
        sessions: Session factory bound to the primary store.
        validator: Cart validator run before anything is written.
        ledger: Stock ledger used for re-verification and the batch decrement.
        carts: Cart service that supplies and clears the cart.
        currency: Currency of new orders.
    """

    def __init__(
        self,
        sessions: sessionmaker,
        validator: CartValidator,
        ledger: StockLedger,
        carts: CartService,
        currency: str = "usd",
    ):
        self.sessions = sessions
        self.validator = validator
        self.ledger = ledger
        self.carts = carts
        self.currency = currency

    def create_from_cart(self, user_id: str, details: CheckoutDetails) -> Order:
        """Create an order from the user's cart.

        Steps: validate the cart; fail with ``EmptyCart`` when nothing is
        orderable; collect every line that was dropped or clamped by
        validation or that fails a second availability check and fail with
        ``CartItemsUnavailable``; then, in one transaction, allocate the order
        number, decrement stock for every line, insert the order and clear
        the cart.

        Args:
            user_id: Owner of the cart.
            details: Shipping/billing information and pricing adjustments.

        Returns:
            Order: The created order, status pending, payment pending.

        Raises:
            EmptyCart: No valid items remain.
            CartItemsUnavailable: One or more lines cannot be ordered; lists
                all of them.
            InsufficientStock: A concurrent buyer won the stock race after
                validation; nothing was applied.
            InvalidCheckout: The discount exceeds the order amount.
        """
        lines = self.carts.load_lines(user_id)
        validation = self.validator.validate(lines)
        if not validation.valid_items:
            raise EmptyCart(validation.warnings)

        violations = self._collect_violations(validation)
        if violations:
            logger.info("checkout rejected", extra={"user_id": user_id, "violations": len(violations)})
            raise CartItemsUnavailable(violations)

        subtotal = validation.subtotal_cents
        total = subtotal + details.tax_cents + details.shipping_cost_cents - details.discount_cents
        if total < 0:
            raise InvalidCheckout("discount exceeds the order amount")

        now = utcnow()
        with self.sessions.begin() as s:
            number = next_order_number(s, now.year)
            draws = self.ledger.batch_decrement([line.to_request() for line in validation.valid_items], session=s)
            row = OrderModel(
                order_number=number,
                user_id=user_id,
                status=OrderStatus.PENDING.value,
                subtotal_cents=subtotal,
                tax_cents=details.tax_cents,
                shipping_cost_cents=details.shipping_cost_cents,
                discount_cents=details.discount_cents,
                total_cents=total,
                currency=self.currency,
                shipping_address=details.shipping_address,
                billing_address=details.billing_address or details.shipping_address,
                shipping_method=details.shipping_method,
                notes=details.notes,
                payment_method=details.payment_method,
                payment_status=PaymentStatus.PENDING.value,
                payment_amount_cents=total,
                created_at=now,
                updated_at=now,
            )
            for line, draw in zip(validation.valid_items, draws):
                row.items.append(
                    OrderItemModel(
                        product_id=line.product_id,
                        selected_variants=line.selection.to_list(),
                        name=line.name,
                        sku=line.sku,
                        image_url=line.image_url,
                        unit_price_cents=line.unit_price_cents,
                        quantity=line.quantity,
                        subtotal_cents=line.subtotal_cents,
                        reserved_quantity=draw.reserved,
                    )
                )
            s.add(row)
            self.carts.clear(user_id, session=s)
            s.flush()
            order = to_domain(row)

        logger.info(
            "order created",
            extra={"order_id": order.id, "order_number": order.order_number, "total_cents": order.total_cents},
        )
        return order

    def _collect_violations(self, validation) -> List[Violation]:
        violations = [
            Violation(
                item_id=w.item_id,
                product_id=w.product_id,
                reason=w.code.value,
                requested=w.requested,
                available_stock=w.available_stock,
                selection=w.selection,
            )
            for w in validation.warnings
            if w.blocks_checkout
        ]
        flagged = {v.item_id for v in violations}
        lines = validation.valid_items
        availabilities = self.ledger.check_demand([line.to_request() for line in lines])
        for line, availability in zip(lines, availabilities):
            if line.item_id in flagged:
                continue
            if availability is None:
                violations.append(
                    Violation(line.item_id, line.product_id, "UNAVAILABLE", line.quantity, 0, line.selection)
                )
            elif not availability.sellable:
                violations.append(
                    Violation(
                        line.item_id,
                        line.product_id,
                        "OUT_OF_STOCK",
                        line.quantity,
                        availability.available_stock,
                        line.selection,
                    )
                )
        return violations


class OrderStateMachine:
    """Explicit order status transitions and their side effects."""

    def __init__(self, sessions: sessionmaker, ledger: StockLedger, attempts: int = 3):
        self.sessions = sessions
        self.ledger = ledger
        self.attempts = attempts

    def transition(self, order_id: str, status: OrderStatus, admin_notes: Optional[str] = None) -> Order:
        """Move an order to ``status`` (admin operation).

        Raises:
            NotFound: Unknown order.
            AlreadyCancelled: Cancelling a cancelled order.
            InvalidTransition: Any edge not in the transition table.
        """
        target = OrderStatus(status)

        def apply(s: Session, row: OrderModel) -> Order:
            if target == OrderStatus.CANCELLED:
                self._cancel_row(s, row, reason=None, now=utcnow())
            else:
                self.apply_transition(row, target, utcnow())
            if admin_notes is not None:
                row.admin_notes = admin_notes
            return to_domain(row)

        order = mutate_order(self.sessions, order_id, apply, self.attempts)
        logger.info("order status changed", extra={"order_id": order_id, "status": target.value})
        return order

    def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """Cancel an order and restore its stock, exactly once.

        Raises:
            NotFound: Unknown order.
            PermissionDenied: Caller is neither the owner nor an admin.
            AlreadyCancelled: The order is already cancelled.
            InvalidTransition: The order was delivered.
        """

        def apply(s: Session, row: OrderModel) -> Order:
            if not actor.can_access(row.user_id):
                raise PermissionDenied("not allowed to cancel this order")
            self._cancel_row(s, row, reason=reason, now=utcnow())
            return to_domain(row)

        order = mutate_order(self.sessions, order_id, apply, self.attempts)
        logger.info("order cancelled", extra={"order_id": order_id, "stock_restored": order.stock_restored})
        return order

    def update_shipping(
        self,
        order_id: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
        method: Optional[str] = None,
    ) -> Order:
        """Update tracking info; rejected for cancelled or delivered orders."""

        def apply(s: Session, row: OrderModel) -> Order:
            if row.status in (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value):
                raise InvalidTransition(f"cannot update shipping of a {row.status} order")
            if tracking_number is not None:
                row.tracking_number = tracking_number
            if carrier is not None:
                row.carrier = carrier
            if method is not None:
                row.shipping_method = method
            return to_domain(row)

        return mutate_order(self.sessions, order_id, apply, self.attempts)

    @staticmethod
    def apply_transition(row: OrderModel, target: OrderStatus, now: datetime) -> None:
        """Validate and apply a non-cancel transition on a loaded row."""
        current = OrderStatus(row.status)
        if not can_transition(current, target):
            raise InvalidTransition(f"cannot move order from {current.value} to {target.value}")
        row.status = target.value
        attr = ORDER_TIMESTAMPS.get(target)
        if attr and getattr(row, attr) is None:
            setattr(row, attr, now)

    def _cancel_row(self, s: Session, row: OrderModel, reason: Optional[str], now: datetime) -> None:
        current = OrderStatus(row.status)
        if current == OrderStatus.CANCELLED:
            raise AlreadyCancelled(f"order {row.order_number} is already cancelled")
        if not can_transition(current, OrderStatus.CANCELLED):
            raise InvalidTransition(f"cannot cancel a {current.value} order")

        row.status = OrderStatus.CANCELLED.value
        if row.cancelled_at is None:
            row.cancelled_at = now
        if reason:
            row.cancelled_reason = reason
        if not row.stock_restored:
            for it in row.items:
                self.ledger.restore(it.product_id, it.reserved_quantity, parse_selection(it.selected_variants), session=s)
            row.stock_restored = True

