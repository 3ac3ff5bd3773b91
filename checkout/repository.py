"""Repository layer for reading and mutating persisted orders.

Maps ``OrderModel`` rows to the ``Order`` read model, serves the order read
accessors (ownership and role filtering, pagination), and provides
``mutate_order``: the single way per-order writes are applied, under a row
lock where the database supports it and with optimistic version checks that
re-run the mutation from a fresh read on conflict.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .db import transaction
from .domain import Actor, Order, OrderLine, OrderStatus, Payment, PaymentStatus, parse_selection
from .errors import NotFound, PermissionDenied
from .models import OrderModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_domain(row: OrderModel) -> Order:
    """Map an ``OrderModel`` (with items loaded) to the ``Order`` read model."""
    return Order(
        id=row.id,
        order_number=row.order_number,
        user_id=row.user_id,
        status=OrderStatus(row.status),
        lines=[
            OrderLine(
                product_id=it.product_id,
                selection=parse_selection(it.selected_variants),
                name=it.name,
                sku=it.sku,
                image_url=it.image_url,
                unit_price_cents=it.unit_price_cents,
                quantity=it.quantity,
                subtotal_cents=it.subtotal_cents,
                reserved_quantity=it.reserved_quantity,
            )
            for it in row.items
        ],
        subtotal_cents=row.subtotal_cents,
        tax_cents=row.tax_cents,
        shipping_cost_cents=row.shipping_cost_cents,
        discount_cents=row.discount_cents,
        total_cents=row.total_cents,
        currency=row.currency,
        shipping_address=row.shipping_address,
        billing_address=row.billing_address,
        shipping_method=row.shipping_method,
        payment=Payment(
            method=row.payment_method,
            status=PaymentStatus(row.payment_status),
            amount_cents=row.payment_amount_cents,
            currency=row.currency,
            intent_id=row.payment_intent_id,
            transaction_id=row.payment_transaction_id,
            refunded_cents=row.payment_refunded_cents,
            paid_at=row.payment_paid_at,
            refunded_at=row.payment_refunded_at,
        ),
        tracking_number=row.tracking_number,
        carrier=row.carrier,
        notes=row.notes,
        admin_notes=row.admin_notes,
        cancelled_reason=row.cancelled_reason,
        stock_restored=row.stock_restored,
        processing_at=row.processing_at,
        shipped_at=row.shipped_at,
        delivered_at=row.delivered_at,
        cancelled_at=row.cancelled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def lock_order(s: Session, order_id: Optional[str] = None, intent_id: Optional[str] = None) -> Optional[OrderModel]:
    """Load an order row for update, by id or by payment intent id."""
    stmt = select(OrderModel).options(selectinload(OrderModel.items))
    if order_id is not None:
        stmt = stmt.where(OrderModel.id == order_id)
    else:
        stmt = stmt.where(OrderModel.payment_intent_id == intent_id)
    stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return s.execute(stmt).scalar_one_or_none()


def mutate_order(
    sessions: sessionmaker,
    order_id: str,
    fn: Callable[[Session, OrderModel], T],
    attempts: int = 3,
) -> T:
    """Apply ``fn`` to a locked order row inside its own transaction.

    The version column makes a concurrent writer's flush fail with
    ``StaleDataError``; the whole mutation is then re-run from a fresh read,
    up to ``attempts`` times.

    Args:
        sessions: Session factory.
        order_id: Order to mutate.
        fn: Callback receiving the session and the locked row. Its return
            value is returned after commit.
        attempts: Bound on optimistic retries.

    Raises:
        NotFound: When the order does not exist.
        StaleDataError: When every attempt lost the race.
    """
    for attempt in range(1, attempts + 1):
        try:
            with sessions.begin() as s:
                row = lock_order(s, order_id=order_id)
                if row is None:
                    raise NotFound(f"order {order_id} not found")
                result = fn(s, row)
                s.flush()
            return result
        except StaleDataError:
            logger.info("order write conflict, retrying", extra={"order_id": order_id, "attempt": attempt})
            if attempt == attempts:
                raise
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class OrderPage:
    items: List[Order]
    count: int
    page: int
    page_size: int


class OrderRepository:
    """Read accessors with ownership and role filtering."""

    def __init__(self, sessions: sessionmaker):
        self.sessions = sessions

    def get(self, order_id: str, actor: Actor, session: Optional[Session] = None) -> Order:
        """Return an order the actor may see.

        Raises:
            NotFound: Unknown order.
            PermissionDenied: Customer reading another user's order.
        """
        with transaction(self.sessions, session) as s:
            row = s.execute(
                select(OrderModel)
                .where(OrderModel.id == order_id)
                .options(selectinload(OrderModel.items))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row is None:
                raise NotFound(f"order {order_id} not found")
            if not actor.can_access(row.user_id):
                raise PermissionDenied("not allowed to access this order")
            return to_domain(row)

    def list(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> OrderPage:
        """List orders newest first; customers only see their own.

        Args:
            actor: Caller; admins see every order.
            status: Optional order status filter.
            payment_status: Optional payment status filter.
            page: 1-based page number.
            page_size: Items per page.

        Returns:
            OrderPage: The page and the total matching count.
        """
        page = max(1, page)
        conds = []
        if not actor.is_admin:
            conds.append(OrderModel.user_id == actor.user_id)
        if status is not None:
            conds.append(OrderModel.status == OrderStatus(status).value)
        if payment_status is not None:
            conds.append(OrderModel.payment_status == PaymentStatus(payment_status).value)

        with self.sessions() as s:
            count = s.execute(select(func.count()).select_from(OrderModel).where(*conds)).scalar_one()
            rows = s.execute(
                select(OrderModel)
                .where(*conds)
                .options(selectinload(OrderModel.items))
                .order_by(OrderModel.created_at.desc(), OrderModel.order_number.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars().all()
            return OrderPage(items=[to_domain(r) for r in rows], count=count, page=page, page_size=page_size)
