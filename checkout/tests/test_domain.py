"""Unit tests for the pure domain rules.

Covers variant selection normalization, the order transition table and the
payment update function used by verification and webhooks. Nothing here
touches the database.
"""

from datetime import datetime

import pytest

from checkout.domain import (
    NO_VARIANTS,
    Availability,
    OrderStatus,
    PaymentSnapshot,
    PaymentStatus,
    UpdateOutcome,
    VariantSelection,
    can_transition,
    parse_selection,
    resolve_payment_update,
)

T0 = datetime(2024, 5, 1, 12, 0, 0)
T1 = datetime(2024, 5, 1, 12, 5, 0)


def test_parse_selection_empty_inputs_mean_no_variants():
    assert parse_selection(None) is NO_VARIANTS
    assert parse_selection([]) is NO_VARIANTS
    assert parse_selection({}) is NO_VARIANTS


def test_parse_selection_is_order_insensitive():
    a = parse_selection([{"name": "Size", "value": "M"}, {"name": "Color", "value": "Red"}])
    b = parse_selection({"Color": "Red", "Size": "M"})
    assert a == b
    assert isinstance(a, VariantSelection)
    assert a.to_list() == [{"name": "Color", "value": "Red"}, {"name": "Size", "value": "M"}]


def test_parse_selection_accepts_alternate_spelling_and_strips():
    sel = parse_selection([{"variantName": " Size ", "optionValue": " L "}])
    assert sel.as_dict() == {"Size": "L"}


@pytest.mark.parametrize(
    "raw, code",
    [
        ([{"name": "Size", "value": "M"}, {"name": "Size", "value": "L"}], "DUPLICATE_VARIANT_NAME"),
        ([{"name": "", "value": "M"}], "INVALID_VARIANT_SELECTION"),
        ([{"name": "Size", "value": "  "}], "INVALID_VARIANT_SELECTION"),
        ("Size=M", "INVALID_VARIANT_SELECTION"),
    ],
)
def test_parse_selection_rejects_bad_input(raw, code):
    with pytest.raises(ValueError) as ei:
        parse_selection(raw)
    assert str(ei.value) == code


def test_availability_sellable_includes_backorder():
    assert Availability(True, 5).sellable
    assert Availability(False, 0, can_backorder=True).sellable
    assert not Availability(False, 1).sellable


def test_order_transition_table():
    assert can_transition(OrderStatus.PENDING, OrderStatus.PROCESSING)
    assert can_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.SHIPPED)
    assert not can_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED)
    assert not can_transition(OrderStatus.CANCELLED, OrderStatus.PENDING)


def _snap(order=OrderStatus.PENDING, payment=PaymentStatus.PENDING, **kw):
    return PaymentSnapshot(order_status=order, payment_status=payment, **kw)


def test_first_paid_moves_pending_order_to_processing():
    upd = resolve_payment_update(_snap(), PaymentStatus.PAID, T0)
    assert upd.outcome == UpdateOutcome.APPLIED
    assert upd.snapshot.payment_status == PaymentStatus.PAID
    assert upd.snapshot.order_status == OrderStatus.PROCESSING
    assert upd.snapshot.paid_at == T0
    assert upd.snapshot.processing_at == T0


def test_repeated_paid_is_duplicate_and_keeps_stamps():
    first = resolve_payment_update(_snap(), PaymentStatus.PAID, T0).snapshot
    again = resolve_payment_update(first, PaymentStatus.PAID, T1)
    assert again.outcome == UpdateOutcome.DUPLICATE
    assert not again.changed
    assert again.snapshot == first


def test_failed_after_paid_is_ignored():
    paid = _snap(order=OrderStatus.PROCESSING, payment=PaymentStatus.PAID, paid_at=T0, processing_at=T0)
    upd = resolve_payment_update(paid, PaymentStatus.FAILED, T1)
    assert upd.outcome == UpdateOutcome.IGNORED
    assert upd.snapshot.payment_status == PaymentStatus.PAID
    assert "paid->failed" in upd.reason


def test_paid_after_failed_is_applied():
    upd = resolve_payment_update(_snap(payment=PaymentStatus.FAILED), PaymentStatus.PAID, T1)
    assert upd.changed
    assert upd.snapshot.order_status == OrderStatus.PROCESSING


def test_paid_on_cancelled_order_keeps_order_cancelled():
    upd = resolve_payment_update(_snap(order=OrderStatus.CANCELLED), PaymentStatus.PAID, T0)
    assert upd.changed
    assert upd.snapshot.order_status == OrderStatus.CANCELLED
    assert upd.snapshot.processing_at is None


def test_refund_stamps_refunded_at_once():
    paid = _snap(order=OrderStatus.PROCESSING, payment=PaymentStatus.PAID, paid_at=T0, processing_at=T0)
    upd = resolve_payment_update(paid, PaymentStatus.REFUNDED, T1)
    assert upd.snapshot.refunded_at == T1
    assert upd.snapshot.paid_at == T0
    assert resolve_payment_update(upd.snapshot, PaymentStatus.REFUNDED, T0).outcome == UpdateOutcome.DUPLICATE
