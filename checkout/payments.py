"""Payment coordinator.

Creates provider payment intents for orders, verifies client-reported
results, applies payment status updates from verification and webhooks, and
issues refunds. Webhook handling is split in two layers: a dedup layer keyed
by the provider event id (``ProcessedEventModel``), and the pure
``resolve_payment_update`` transition applied to the locked order row. The
dedup record and the order change commit in the same transaction.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .domain import (
    EVENT_STATUS,
    Actor,
    Order,
    OrderStatus,
    PaymentGateway,
    PaymentSnapshot,
    PaymentStatus,
    PaymentUpdate,
    UpdateOutcome,
    resolve_payment_update,
    utcnow,
)
from .errors import AlreadyPaid, IntentMismatch, InvalidTransition, NotFound, PermissionDenied
from .idempotency import canonical_hash
from .models import OrderModel, ProcessedEventModel
from .repository import lock_order, mutate_order, to_domain

logger = logging.getLogger(__name__)

ORDER_NOT_FOUND = "order_not_found"
UNKNOWN_EVENT = "unknown_event"


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    client_secret: Optional[str]
    amount_cents: int
    currency: str
    reused: bool = False


@dataclass(frozen=True)
class EventResult:
    """How a payment event was handled; every outcome is acknowledged."""

    outcome: str
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    order_status: Optional[OrderStatus] = None


def snapshot_of(row: OrderModel) -> PaymentSnapshot:
    return PaymentSnapshot(
        order_status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        paid_at=row.payment_paid_at,
        processing_at=row.processing_at,
        refunded_at=row.payment_refunded_at,
    )


def apply_update(row: OrderModel, update: PaymentUpdate) -> None:
    """Write an applied ``PaymentUpdate`` back onto the order row."""
    if not update.changed:
        return
    snap = update.snapshot
    row.payment_status = snap.payment_status.value
    row.status = snap.order_status.value
    row.payment_paid_at = snap.paid_at
    row.processing_at = snap.processing_at
    row.payment_refunded_at = snap.refunded_at


class PaymentCoordinator:
    """Payment intents, verification, idempotent status updates and refunds.

    Args:
        sessions: Session factory bound to the primary store.
        gateway: Payment provider port.
        attempts: Bound on optimistic retries of per-order writes.
    """

    def __init__(self, sessions: sessionmaker, gateway: PaymentGateway, attempts: int = 3):
        self.sessions = sessions
        self.gateway = gateway
        self.attempts = attempts

    # ---- intents ----
    def create_intent(self, order_id: str, actor: Actor, method: str = "stripe") -> IntentResult:
        """Create (or reuse) the provider intent for an order.

        A pending intent already stored on the order is retrieved and
        returned instead of creating a second one. After a failed payment a
        new intent replaces the old one and the payment returns to pending.
        The intent id is persisted before returning.

        Raises:
            NotFound: Unknown order.
            PermissionDenied: Caller does not own the order.
            AlreadyPaid: The order is already paid.
            InvalidTransition: The order is cancelled or its payment was
                refunded or cancelled.
            PaymentProviderError: The provider call failed.
        """
        with self.sessions() as s:
            row = s.get(OrderModel, order_id)
            if row is None:
                raise NotFound(f"order {order_id} not found")
            if not actor.can_access(row.user_id):
                raise PermissionDenied("not allowed to pay this order")
            self._check_payable(row)
            existing_id = row.payment_intent_id
            amount, currency, number, version = row.payment_amount_cents, row.currency, row.order_number, row.version
            payment_status = PaymentStatus(row.payment_status)

        if existing_id and payment_status == PaymentStatus.PENDING:
            intent = self.gateway.retrieve_intent(existing_id)
            if intent.status == PaymentStatus.PENDING:
                return IntentResult(intent.id, intent.client_secret, intent.amount_cents, intent.currency, reused=True)
            if intent.status == PaymentStatus.PAID:
                self.apply_payment_event("payment.succeeded", intent.id, transaction_id=intent.transaction_id)
                raise AlreadyPaid(f"order {number} is already paid")

        intent = self.gateway.create_intent(
            amount,
            currency,
            metadata={"order_id": order_id, "order_number": number},
            idempotency_key=f"order-{order_id}-v{version}",
        )

        def persist(s: Session, row: OrderModel) -> None:
            self._check_payable(row)
            row.payment_intent_id = intent.id
            row.payment_method = method
            if row.payment_status == PaymentStatus.FAILED.value:
                apply_update(row, resolve_payment_update(snapshot_of(row), PaymentStatus.PENDING, utcnow()))

        mutate_order(self.sessions, order_id, persist, self.attempts)
        logger.info("payment intent created", extra={"order_id": order_id, "intent_id": intent.id})
        return IntentResult(intent.id, intent.client_secret, intent.amount_cents, intent.currency)

    @staticmethod
    def _check_payable(row: OrderModel) -> None:
        if row.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"order {row.order_number} is already paid")
        if row.status == OrderStatus.CANCELLED.value:
            raise InvalidTransition(f"order {row.order_number} is cancelled")
        if row.payment_status in (PaymentStatus.REFUNDED.value, PaymentStatus.CANCELLED.value):
            raise InvalidTransition(f"payment of order {row.order_number} is {row.payment_status}")

    # ---- verification ----
    def verify(self, order_id: str, intent_id: str, actor: Actor) -> Order:
        """Check a client-reported intent against the order and apply its status.

        Raises:
            NotFound: Unknown order.
            PermissionDenied: Caller does not own the order.
            IntentMismatch: ``intent_id`` is not the intent stored on the order.
        """
        with self.sessions() as s:
            row = s.get(OrderModel, order_id)
            if row is None:
                raise NotFound(f"order {order_id} not found")
            if not actor.can_access(row.user_id):
                raise PermissionDenied("not allowed to verify this order")
            stored = row.payment_intent_id
        if not stored or stored != intent_id:
            logger.warning("intent mismatch on verify", extra={"order_id": order_id})
            raise IntentMismatch("payment intent does not belong to this order")

        intent = self.gateway.retrieve_intent(intent_id)
        target = intent.status

        def apply(s: Session, row: OrderModel) -> Order:
            if target != PaymentStatus.PENDING:
                self._apply(row, target, intent.transaction_id)
            return to_domain(row)

        return mutate_order(self.sessions, order_id, apply, self.attempts)

    # ---- events ----
    def apply_payment_event(
        self,
        event_type: str,
        intent_id: Optional[str],
        transaction_id: Optional[str] = None,
        session: Optional[Session] = None,
        amount_cents: Optional[int] = None,
    ) -> EventResult:
        """Apply a normalized ``payment.*`` event to the order owning ``intent_id``.

        Unknown event types and unknown intents are logged and reported as
        outcomes, never raised: webhook senders must always be acknowledged.

        Args:
            event_type: Internal event type (``payment.succeeded`` ...).
            intent_id: Provider intent id stored on the order.
            transaction_id: Provider charge/transaction id, when present.
            session: Optional session of an enclosing transaction.
            amount_cents: Refunded amount carried by ``payment.refunded``.

        Returns:
            EventResult: applied / duplicate / ignored / order_not_found /
            unknown_event.
        """
        target = EVENT_STATUS.get(event_type)
        if target is None:
            logger.info("payment event ignored", extra={"event_type": event_type})
            return EventResult(UNKNOWN_EVENT)
        if session is not None:
            return self._apply_event(session, target, intent_id, transaction_id, amount_cents)

        for attempt in range(1, self.attempts + 1):
            try:
                with self.sessions.begin() as s:
                    result = self._apply_event(s, target, intent_id, transaction_id, amount_cents)
                    s.flush()
                return result
            except StaleDataError:
                if attempt == self.attempts:
                    raise
        raise AssertionError("unreachable")

    def _apply_event(
        self,
        s: Session,
        target: PaymentStatus,
        intent_id: Optional[str],
        transaction_id: Optional[str],
        amount_cents: Optional[int] = None,
    ) -> EventResult:
        row = lock_order(s, intent_id=intent_id) if intent_id else None
        if row is None:
            logger.warning("payment event for unknown intent", extra={"intent_id": intent_id, "outcome": ORDER_NOT_FOUND})
            return EventResult(ORDER_NOT_FOUND)
        update = self._apply(row, target, transaction_id)
        if update.changed and target == PaymentStatus.REFUNDED and amount_cents is not None:
            row.payment_refunded_cents = amount_cents
        return EventResult(
            update.outcome.value,
            order_id=row.id,
            payment_status=PaymentStatus(row.payment_status),
            order_status=OrderStatus(row.status),
        )

    def _apply(self, row: OrderModel, target: PaymentStatus, transaction_id: Optional[str]) -> PaymentUpdate:
        update = resolve_payment_update(snapshot_of(row), target, utcnow())
        apply_update(row, update)
        if update.changed:
            if transaction_id and target == PaymentStatus.PAID:
                row.payment_transaction_id = transaction_id
            if target == PaymentStatus.PAID and row.status == OrderStatus.CANCELLED.value:
                logger.warning("payment received for cancelled order", extra={"order_id": row.id})
            logger.info(
                "payment status changed",
                extra={"order_id": row.id, "payment_status": row.payment_status, "order_status": row.status},
            )
        elif update.outcome == UpdateOutcome.IGNORED:
            logger.warning(
                "payment update ignored",
                extra={"order_id": row.id, "target": target.value, "reason": update.reason},
            )
        return update

    def handle_webhook(self, provider: str, payload: dict) -> EventResult:
        """Deduplicate and apply a (signature-checked) provider webhook.

        A delivery whose ``provider:event_id`` was already processed is a
        duplicate; the same id with a different payload is logged as a
        conflict and ignored. The dedup record commits with the order change.

        Returns:
            EventResult: Outcome of the delivery.
        """
        event = self.gateway.parse_event(payload)
        if event is None:
            logger.info("webhook ignored", extra={"provider": provider, "event_type": payload.get("type")})
            return EventResult(UNKNOWN_EVENT)

        key = f"{provider}:{event.id}"
        request_hash = canonical_hash(payload)
        for attempt in range(1, self.attempts + 1):
            try:
                with self.sessions.begin() as s:
                    seen = s.get(ProcessedEventModel, key)
                    if seen is not None:
                        if seen.request_hash != request_hash:
                            logger.warning("webhook event id reused with different payload", extra={"event_key": key})
                        else:
                            logger.info("duplicate webhook delivery", extra={"event_key": key})
                        return EventResult(UpdateOutcome.DUPLICATE.value)

                    result = self.apply_payment_event(
                        event.type, event.intent_id, event.transaction_id, session=s, amount_cents=event.amount_cents
                    )
                    s.add(
                        ProcessedEventModel(
                            key=key,
                            request_hash=request_hash,
                            event_type=event.provider_type,
                            intent_id=event.intent_id,
                            outcome=result.outcome,
                        )
                    )
                    s.flush()
                return result
            except IntegrityError:
                # A concurrent delivery of the same event committed first.
                logger.info("duplicate webhook delivery", extra={"event_key": key})
                return EventResult(UpdateOutcome.DUPLICATE.value)
            except StaleDataError:
                if attempt == self.attempts:
                    raise
        raise AssertionError("unreachable")

    # ---- refunds ----
    def refund(self, order_id: str, amount_cents: Optional[int] = None) -> Order:
        """Refund a paid order through the provider (admin operation).

        The provider call carries ``refund-{order_id}-v{version}`` as its
        idempotency key, so concurrent refunds of the same paid order collapse
        into one provider refund; only the first of them records it.

        Raises:
            NotFound: Unknown order.
            InvalidTransition: The payment is not ``paid``, or it was
                refunded while this request was in flight.
            PaymentProviderError: The provider rejected the refund.
        """
        with self.sessions() as s:
            row = s.get(OrderModel, order_id)
            if row is None:
                raise NotFound(f"order {order_id} not found")
            if row.payment_status != PaymentStatus.PAID.value or not row.payment_intent_id:
                raise InvalidTransition(f"payment of order {row.order_number} is {row.payment_status}, not paid")
            intent_id, version = row.payment_intent_id, row.version

        result = self.gateway.refund(intent_id, amount_cents, idempotency_key=f"refund-{order_id}-v{version}")

        def apply(s: Session, row: OrderModel) -> Order:
            update = self._apply(row, PaymentStatus.REFUNDED, None)
            if update.outcome == UpdateOutcome.IGNORED:
                raise InvalidTransition(update.reason)
            if update.outcome == UpdateOutcome.DUPLICATE:
                raise InvalidTransition(f"payment of order {row.order_number} was already refunded")
            row.payment_refunded_cents = result.amount_cents
            return to_domain(row)

        order = mutate_order(self.sessions, order_id, apply, self.attempts)
        logger.info("order refunded", extra={"order_id": order_id, "amount_cents": result.amount_cents})
        return order
