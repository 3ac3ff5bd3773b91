"""Tests for cart validation and the cart service."""

from datetime import timedelta

import pytest

from checkout.domain import CartLine, WarningCode, parse_selection, utcnow
from checkout.errors import InsufficientStock, NotFound

USER = "user-1"


def _codes(warnings):
    return [w.code for w in warnings]


# ---- validator ----
def test_validator_drops_missing_and_inactive_products(services, make_product):
    archived = make_product(status="archived")
    res = services.validator.validate([CartLine("i1", "missing", 1), CartLine("i2", archived, 1)])
    assert res.valid_items == []
    assert _codes(res.warnings) == [WarningCode.UNAVAILABLE, WarningCode.UNAVAILABLE]
    assert all(w.blocks_checkout for w in res.warnings)


def test_validator_out_of_stock_and_clamp(services, make_product):
    empty = make_product(stock=0)
    low = make_product(stock=2, price_cents=700)
    res = services.validator.validate([CartLine("i1", empty, 1), CartLine("i2", low, 5)])
    assert _codes(res.warnings) == [WarningCode.OUT_OF_STOCK, WarningCode.QUANTITY_ADJUSTED]
    assert len(res.valid_items) == 1
    line = res.valid_items[0]
    assert line.item_id == "i2" and line.quantity == 2
    assert res.subtotal_cents == 1400


def test_validator_refreshes_price_without_blocking(services, make_product):
    pid = make_product(price_cents=1000)
    res = services.validator.validate([CartLine("i1", pid, 2, unit_price_cents=900)])
    assert _codes(res.warnings) == [WarningCode.PRICE_CHANGED]
    assert not res.warnings[0].blocks_checkout
    assert res.valid_items[0].unit_price_cents == 1000


def test_validator_keeps_backorderable_lines(services, make_product):
    pid = make_product(stock=0, allow_backorder=True)
    res = services.validator.validate([CartLine("i1", pid, 4)])
    assert res.warnings == []
    assert res.valid_items[0].quantity == 4


def test_validator_prices_variant_selection(services, make_product):
    pid = make_product(
        price_cents=1000,
        options=[
            {"variant_name": "Size", "value": "L", "stock": 4, "price_cents": 150, "sku": "SKU-L"},
            {"variant_name": "Size", "value": "S", "stock": 0},
        ],
    )
    res = services.validator.validate(
        [CartLine("i1", pid, 1, parse_selection({"Size": "L"})), CartLine("i2", pid, 1, parse_selection({"Size": "XL"}))]
    )
    assert [line.unit_price_cents for line in res.valid_items] == [1150]
    assert res.valid_items[0].sku == "SKU-L"
    assert _codes(res.warnings) == [WarningCode.UNAVAILABLE]


# ---- service ----
def test_add_item_merges_same_product_and_selection(services, make_product):
    pid = make_product(stock=10, price_cents=500)
    services.carts.add_item(USER, pid, 2)
    view = services.carts.add_item(USER, pid, 3)
    assert len(view.items) == 1
    assert view.items[0].quantity == 5
    assert view.subtotal_cents == 2500
    assert view.item_count == 5
    assert view.expires_at > utcnow()


def test_add_item_keeps_distinct_selections_apart(services, make_product):
    pid = make_product(
        options=[
            {"variant_name": "Size", "value": "S", "stock": 5},
            {"variant_name": "Size", "value": "M", "stock": 5},
        ]
    )
    services.carts.add_item(USER, pid, 1, parse_selection({"Size": "S"}))
    view = services.carts.add_item(USER, pid, 1, parse_selection([{"name": "Size", "value": "M"}]))
    assert len(view.items) == 2


def test_add_item_beyond_stock_is_rejected(services, make_product):
    pid = make_product(stock=3)
    services.carts.add_item(USER, pid, 2)
    with pytest.raises(InsufficientStock) as ei:
        services.carts.add_item(USER, pid, 2)
    assert ei.value.available_stock == 3
    assert services.carts.load_lines(USER)[0].quantity == 2


def test_add_item_unknown_product(services):
    with pytest.raises(NotFound):
        services.carts.add_item(USER, "missing", 1)


def test_update_and_remove_items(services, make_product):
    pid = make_product(stock=10)
    view = services.carts.add_item(USER, pid, 1)
    item_id = view.items[0].item_id

    view = services.carts.update_item(USER, item_id, 4)
    assert view.items[0].quantity == 4

    with pytest.raises(InsufficientStock):
        services.carts.update_item(USER, item_id, 11)

    view = services.carts.update_item(USER, item_id, 0)
    assert view.items == []

    with pytest.raises(NotFound):
        services.carts.remove_item(USER, item_id)


def test_get_cart_persists_cleanup(services, make_product, set_stock):
    keep = make_product(stock=5)
    gone = make_product(stock=5)
    services.carts.add_item(USER, keep, 5)
    services.carts.add_item(USER, gone, 1)
    set_stock(keep, 2)
    set_stock(gone, 0)

    view = services.carts.get_cart(USER)
    assert _codes(view.warnings) == [WarningCode.QUANTITY_ADJUSTED, WarningCode.OUT_OF_STOCK]
    lines = services.carts.load_lines(USER)
    assert [(line.product_id, line.quantity) for line in lines] == [(keep, 2)]


def test_clear_empties_cart(services, make_product):
    pid = make_product()
    services.carts.add_item(USER, pid, 1)
    services.carts.clear(USER)
    assert services.carts.load_lines(USER) == []
    services.carts.clear("nobody")


def test_purge_expired_carts(services, make_product):
    pid = make_product()
    services.carts.add_item(USER, pid, 1)
    services.carts.add_item("user-2", pid, 1)
    assert services.carts.purge_expired() == 0
    assert services.carts.purge_expired(now=utcnow() + timedelta(days=31)) == 2
    assert services.carts.load_lines(USER) == []


SHARED_CELL = [
    {"variant_name": "Size", "variant_position": 0, "value": "M", "stock": 3},
    {"variant_name": "Color", "variant_position": 1, "value": "Red"},
    {"variant_name": "Color", "variant_position": 1, "value": "Blue"},
]


def test_add_item_counts_lines_sharing_a_stock_cell(services, make_product):
    pid = make_product(options=SHARED_CELL)
    services.carts.add_item(USER, pid, 2, parse_selection({"Size": "M", "Color": "Red"}))
    with pytest.raises(InsufficientStock) as ei:
        services.carts.add_item(USER, pid, 2, parse_selection({"Size": "M", "Color": "Blue"}))
    assert ei.value.available_stock == 1
    assert ei.value.requested == 2
    assert len(services.carts.load_lines(USER)) == 1


def test_update_item_counts_lines_sharing_a_stock_cell(services, make_product):
    pid = make_product(options=SHARED_CELL)
    services.carts.add_item(USER, pid, 2, parse_selection({"Size": "M", "Color": "Red"}))
    view = services.carts.add_item(USER, pid, 1, parse_selection({"Size": "M", "Color": "Blue"}))
    red = next(line for line in view.items if line.selection.as_dict()["Color"] == "Red")
    with pytest.raises(InsufficientStock):
        services.carts.update_item(USER, red.item_id, 3)
    assert sorted(line.quantity for line in services.carts.load_lines(USER)) == [1, 2]
