"""Tests for the stock ledger.

The ledger is exercised against a real SQLite store: conditional
decrements, the backorder draw, variant stock cells, all-or-nothing
batches, restores, and concurrent decrements of one stock cell.
"""

import threading

import pytest

from checkout.domain import NO_VARIANTS, StockRequest, parse_selection
from checkout.errors import InsufficientStock, NotFound

SIZES = [
    {"variant_name": "Size", "variant_position": 0, "value": "S", "stock": 3},
    {"variant_name": "Size", "variant_position": 0, "value": "M", "stock": 1, "price_cents": 200, "sku": "TEE-M"},
    {"variant_name": "Color", "variant_position": 1, "value": "Red", "stock": 0, "price_cents": 50},
    {"variant_name": "Color", "variant_position": 1, "value": "Blue", "stock": 0},
]


def test_check_availability_is_read_only(services, make_product, stock_of):
    pid = make_product(stock=3)
    av = services.ledger.check_availability(pid, 2)
    assert av.available and av.available_stock == 3 and not av.can_backorder
    av = services.ledger.check_availability(pid, 4)
    assert not av.available and not av.sellable
    assert stock_of(pid) == 3


def test_decrement_takes_units(services, make_product, stock_of):
    pid = make_product(stock=3)
    draw = services.ledger.decrement(pid, 2)
    assert draw.available_stock == 1
    assert draw.reserved == 2 and draw.backordered == 0
    assert stock_of(pid) == 1


def test_decrement_beyond_stock_raises_and_writes_nothing(services, make_product, stock_of):
    pid = make_product(stock=1)
    with pytest.raises(InsufficientStock) as ei:
        services.ledger.decrement(pid, 2)
    assert ei.value.available_stock == 1
    assert ei.value.requested == 2
    assert stock_of(pid) == 1


def test_backorder_draw_takes_on_hand_and_backorders_rest(services, make_product, stock_of):
    pid = make_product(stock=2, allow_backorder=True)
    av = services.ledger.check_availability(pid, 5)
    assert not av.available and av.can_backorder
    draw = services.ledger.decrement(pid, 5)
    assert draw.reserved == 2
    assert draw.backordered == 3
    assert stock_of(pid) == 0
    draw = services.ledger.decrement(pid, 1)
    assert draw.reserved == 0 and draw.backordered == 1


def test_untracked_product_is_never_touched(services, make_product, stock_of):
    pid = make_product(stock=0, track_inventory=False)
    assert services.ledger.check_availability(pid, 100).available
    draw = services.ledger.decrement(pid, 100)
    assert draw.reserved == 0
    assert stock_of(pid) == 0
    assert services.ledger.restore(pid, 5) is False


def test_inactive_or_missing_product_not_found(services, make_product):
    pid = make_product(status="archived")
    with pytest.raises(NotFound):
        services.ledger.check_availability(pid, 1)
    with pytest.raises(NotFound):
        services.ledger.decrement("missing", 1)


def test_variant_stock_cell_is_first_dimension(services, make_product, stock_of):
    pid = make_product(price_cents=1500, stock=0, options=SIZES)
    sel = parse_selection({"Size": "M", "Color": "Red"})
    av = services.ledger.check_availability(pid, 1, sel)
    assert av.available and av.available_stock == 1

    services.ledger.decrement(pid, 1, sel)
    assert stock_of(pid, "Size", "M") == 0
    assert stock_of(pid, "Size", "S") == 3
    assert stock_of(pid, "Color", "Red") == 0


def test_variant_selection_must_cover_every_dimension(services, make_product):
    pid = make_product(options=SIZES)
    with pytest.raises(NotFound):
        services.ledger.check_availability(pid, 1, parse_selection({"Size": "M"}))
    with pytest.raises(NotFound):
        services.ledger.check_availability(pid, 1, NO_VARIANTS)
    with pytest.raises(NotFound):
        services.ledger.check_availability(pid, 1, parse_selection({"Size": "XL", "Color": "Red"}))


def test_selection_on_plain_product_not_found(services, make_product):
    pid = make_product()
    with pytest.raises(NotFound):
        services.ledger.check_availability(pid, 1, parse_selection({"Size": "M"}))


def test_batch_decrement_reports_every_failure_and_rolls_back(services, make_product, stock_of):
    a = make_product(stock=5)
    b = make_product(stock=1)
    c = make_product(stock=0)
    with pytest.raises(InsufficientStock) as ei:
        services.ledger.batch_decrement([StockRequest(a, 2), StockRequest(b, 3), StockRequest(c, 1)])
    failed = {f.product_id: f.available_stock for f in ei.value.failures}
    assert failed == {b: 1, c: 0}
    assert ei.value.to_dict()["failures"][0]["product_id"] == b
    assert stock_of(a) == 5
    assert stock_of(b) == 1


def test_batch_decrement_success_returns_draws_in_order(services, make_product, stock_of):
    a = make_product(stock=5)
    b = make_product(stock=2)
    draws = services.ledger.batch_decrement([StockRequest(a, 1), StockRequest(b, 2)])
    assert [d.product_id for d in draws] == [a, b]
    assert stock_of(a) == 4 and stock_of(b) == 0


def test_restore_adds_back_even_for_inactive_product(services, make_product, stock_of):
    pid = make_product(stock=1, status="archived")
    assert services.ledger.restore(pid, 2) is True
    assert stock_of(pid) == 3


def test_restore_skips_missing_product_or_option(services, make_product):
    pid = make_product(options=SIZES)
    assert services.ledger.restore("missing", 2) is False
    assert services.ledger.restore(pid, 1, parse_selection({"Size": "XXL", "Color": "Red"})) is False
    assert services.ledger.restore(pid, 0) is False


def test_concurrent_decrements_never_oversell(services, make_product, stock_of):
    pid = make_product(stock=5)
    results = []
    lock = threading.Lock()

    def buy():
        try:
            services.ledger.decrement(pid, 1)
            outcome = "ok"
        except InsufficientStock:
            outcome = "short"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=buy) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 5
    assert results.count("short") == 7
    assert stock_of(pid) == 0


def test_check_demand_sums_lines_of_one_stock_cell(services, make_product, stock_of):
    pid = make_product(options=SIZES)
    other = make_product(stock=5)
    red_m = parse_selection({"Size": "M", "Color": "Red"})
    blue_m = parse_selection({"Size": "M", "Color": "Blue"})

    alone = services.ledger.check_demand([StockRequest(pid, 1, red_m), StockRequest(other, 2)])
    assert [a.sellable for a in alone] == [True, True]

    shared = services.ledger.check_demand(
        [StockRequest(pid, 1, red_m), StockRequest(pid, 1, blue_m), StockRequest(other, 2), StockRequest("missing", 1)]
    )
    assert [a.sellable for a in shared[:3]] == [False, False, True]
    assert shared[0].available_stock == 1
    assert shared[3] is None
    assert stock_of(pid, "Size", "M") == 1
