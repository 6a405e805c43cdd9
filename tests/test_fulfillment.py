"""Tests for the sale fulfillment engine.

Covers the all-or-nothing guarantee, total correctness, input validation,
conflict retries, and the no-oversell property under concurrent sales.
"""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from stockledger import constants, data_manager, fulfillment, ledger
from stockledger.errors import BusinessRuleViolation, Conflict, InsufficientStock, NotFound, ValidationError


def _run_concurrently(workers: int, target) -> list[object]:
    """Start ``workers`` threads on ``target`` at once and collect their outcomes."""

    barrier = threading.Barrier(workers)
    outcomes: list[object] = []
    guard = threading.Lock()

    def runner(index: int) -> None:
        barrier.wait()
        try:
            result = target(index)
        except Exception as exc:  # collected and asserted on by the caller
            result = exc
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=runner, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def _sale_entries(context, order_id):
    return ledger.list_entries(context, reference_id=order_id)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_sale_within_stock_commits_everything(runtime_context, make_product, user):
    """Alice buys 3 of the 5 units on hand at 9.99."""

    product = make_product(opening_stock=5)

    order = fulfillment.create_sale(
        runtime_context,
        user.user_id,
        "Alice",
        [fulfillment.SaleItem(product.product_id, 3, Decimal("9.99"))],
    )

    assert ledger.current_stock(runtime_context, product.product_id) == 2
    entries = _sale_entries(runtime_context, order.order_id)
    assert len(entries) == 1
    assert entries[0].quantity == -3
    assert entries[0].kind == constants.TransactionKind.SALE.value
    assert entries[0].notes == constants.SALE_LINE_NOTE
    assert entries[0].product_id == product.product_id
    assert order.total_amount == Decimal("29.97")
    assert order.customer_name == "Alice"
    assert order.user_id == user.user_id
    assert order.status == constants.OrderStatus.PENDING.value
    assert order.payment_status == constants.PaymentStatus.PENDING.value
    assert [(line.product_id, line.quantity, line.unit_price) for line in order.lines] == [
        (product.product_id, 3, Decimal("9.99"))
    ]


def test_sale_beyond_stock_is_rejected_without_effects(runtime_context, make_product):
    """Bob asks for 5 units when only 2 are on hand."""

    product = make_product(opening_stock=2)

    with pytest.raises(InsufficientStock) as excinfo:
        fulfillment.create_sale(runtime_context, None, "Bob", [(product.product_id, 5, "9.99")])

    assert excinfo.value.product_id == product.product_id
    assert excinfo.value.requested == 5
    assert excinfo.value.available == 2
    assert ledger.current_stock(runtime_context, product.product_id) == 2
    assert fulfillment.list_sales(runtime_context) == []
    assert len(ledger.list_entries(runtime_context, product_id=product.product_id)) == 1


def test_short_second_item_rejects_whole_order(runtime_context, make_product):
    """The first item fits but the second does not; nothing may commit."""

    plenty = make_product(opening_stock=10)
    scarce = make_product(opening_stock=1)

    with pytest.raises(InsufficientStock) as excinfo:
        fulfillment.create_sale(
            runtime_context,
            None,
            "Carol",
            [(plenty.product_id, 2, "1.00"), (scarce.product_id, 3, "1.00")],
        )

    assert excinfo.value.product_id == scarce.product_id
    assert ledger.current_stock(runtime_context, plenty.product_id) == 10
    assert ledger.current_stock(runtime_context, scarce.product_id) == 1
    assert fulfillment.list_sales(runtime_context) == []
    assert all(entry.kind != "sale" for entry in ledger.list_entries(runtime_context))


def test_first_short_item_in_request_order_is_reported(runtime_context, make_product):
    first = make_product(opening_stock=0)
    second = make_product(opening_stock=0)

    with pytest.raises(InsufficientStock) as excinfo:
        fulfillment.create_sale(
            runtime_context,
            None,
            None,
            [(second.product_id, 1, "1.00"), (first.product_id, 1, "1.00")],
        )

    assert excinfo.value.product_id == second.product_id


def test_repeated_product_lines_draw_from_the_same_stock(runtime_context, make_product):
    product = make_product(opening_stock=5)

    with pytest.raises(InsufficientStock) as excinfo:
        fulfillment.create_sale(
            runtime_context,
            None,
            None,
            [(product.product_id, 3, "1.00"), (product.product_id, 3, "1.00")],
        )

    assert excinfo.value.requested == 3
    assert excinfo.value.available == 2
    assert ledger.current_stock(runtime_context, product.product_id) == 5


def test_total_is_sum_of_line_amounts(runtime_context, make_product):
    first = make_product(opening_stock=10)
    second = make_product(opening_stock=10)

    order = fulfillment.create_sale(
        runtime_context,
        None,
        "Dana",
        [
            {"product_id": first.product_id, "quantity": 2, "unit_price": "4.25"},
            {"product_id": second.product_id, "quantity": 3, "unit_price": 0.1},
        ],
    )

    assert order.total_amount == Decimal("8.80")
    assert order.total_amount == sum((line.line_total for line in order.lines), Decimal("0"))
    assert [line.product_id for line in order.lines] == [first.product_id, second.product_id]
    assert ledger.verify_invariant(runtime_context) == {}


def test_selling_entire_stock_reaches_zero(runtime_context, make_product):
    product = make_product(opening_stock=4)
    fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 4, "0.00")])
    assert ledger.current_stock(runtime_context, product.product_id) == 0


def test_get_sale_returns_committed_order(runtime_context, make_product):
    product = make_product(opening_stock=4)
    order = fulfillment.create_sale(runtime_context, None, "Eve", [(product.product_id, 1, "2.50")])

    fetched = fulfillment.get_sale(runtime_context, order.order_id)
    assert fetched == order


def test_get_sale_unknown_order(runtime_context):
    with pytest.raises(NotFound):
        fulfillment.get_sale(runtime_context, "missing-order")


# ---------------------------------------------------------------------------
# Validation and lookups
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "items",
    [
        [],
        [("P", 0, "1.00")],
        [("P", -2, "1.00")],
        [("P", 1.5, "1.00")],
        [("P", True, "1.00")],
        [("P", 1, "-0.01")],
        [("P", 1, "abc")],
        [("P", 1, "NaN")],
        [("P", 1, "1e30")],
        [("P", 1, "100000000")],
        [("P", 2**31, "1.00")],
        [("P", 2_000_000, "99.00")],
        [("", 1, "1.00")],
        [("P", 1)],
        [{"product_id": "P", "quantity": 1}],
        ["P:1:1.00"],
    ],
)
def test_malformed_input_is_rejected_before_any_state_changes(runtime_context, items):
    with pytest.raises(ValidationError):
        fulfillment.create_sale(runtime_context, None, "Mallory", items)
    assert fulfillment.list_sales(runtime_context) == []


def test_float_prices_are_taken_at_face_value():
    item = fulfillment.normalize_item(("P", 2, 9.99))
    assert item.unit_price == Decimal("9.99")


def test_unknown_product_raises_not_found(runtime_context, make_product):
    product = make_product(opening_stock=3)
    with pytest.raises(NotFound):
        fulfillment.create_sale(
            runtime_context,
            None,
            None,
            [(product.product_id, 1, "1.00"), ("no-such-product", 1, "1.00")],
        )
    assert ledger.current_stock(runtime_context, product.product_id) == 3
    assert fulfillment.list_sales(runtime_context) == []


def test_unknown_user_raises_not_found(runtime_context, make_product):
    product = make_product(opening_stock=3)
    with pytest.raises(NotFound):
        fulfillment.create_sale(runtime_context, "ghost", None, [(product.product_id, 1, "1.00")])
    assert ledger.current_stock(runtime_context, product.product_id) == 3


# ---------------------------------------------------------------------------
# Atomicity under injected failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("fail_at", [1, 2, 3])
def test_failure_at_any_item_rolls_back_everything(runtime_context, make_product, monkeypatch, fail_at):
    products = [make_product(opening_stock=10) for _ in range(3)]
    real_post_entry = ledger.post_entry
    calls = {"count": 0}

    def flaky_post_entry(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == fail_at:
            raise RuntimeError("storage failure")
        return real_post_entry(*args, **kwargs)

    monkeypatch.setattr(ledger, "post_entry", flaky_post_entry)

    with pytest.raises(RuntimeError):
        fulfillment.create_sale(
            runtime_context,
            None,
            None,
            [(product.product_id, 1, "1.00") for product in products],
        )

    monkeypatch.undo()
    for product in products:
        assert ledger.current_stock(runtime_context, product.product_id) == 10
    assert fulfillment.list_sales(runtime_context) == []
    assert ledger.verify_invariant(runtime_context) == {}


def test_interrupt_mid_sale_rolls_back(runtime_context, make_product, monkeypatch):
    """Cancellation surfaces as BaseException and must still roll back."""

    first = make_product(opening_stock=5)
    second = make_product(opening_stock=5)
    real_post_entry = ledger.post_entry
    calls = {"count": 0}

    def interrupted_post_entry(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise KeyboardInterrupt
        return real_post_entry(*args, **kwargs)

    monkeypatch.setattr(ledger, "post_entry", interrupted_post_entry)

    with pytest.raises(KeyboardInterrupt):
        fulfillment.create_sale(
            runtime_context,
            None,
            None,
            [(first.product_id, 1, "1.00"), (second.product_id, 1, "1.00")],
        )

    monkeypatch.undo()
    assert ledger.current_stock(runtime_context, first.product_id) == 5
    assert fulfillment.list_sales(runtime_context) == []


# ---------------------------------------------------------------------------
# Conflict retries
# ---------------------------------------------------------------------------


def test_conflict_is_retried_until_success(runtime_context, make_product, monkeypatch):
    product = make_product(opening_stock=5)
    real_fulfil = fulfillment._fulfil
    attempts = {"count": 0}
    sleeps: list[float] = []

    def conflicting_fulfil(context, command):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise Conflict("database is locked")
        return real_fulfil(context, command)

    monkeypatch.setattr(fulfillment, "_fulfil", conflicting_fulfil)
    monkeypatch.setattr(fulfillment.time, "sleep", sleeps.append)

    order = fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 2, "1.00")])

    assert attempts["count"] == 3
    assert sleeps == [pytest.approx(0.01), pytest.approx(0.02)]
    assert len(order.lines) == 1
    assert ledger.current_stock(runtime_context, product.product_id) == 3


def test_conflict_is_raised_after_retries_are_exhausted(runtime_context, make_product, monkeypatch):
    product = make_product(opening_stock=5)
    attempts = {"count": 0}

    def always_conflicting(context, command):
        attempts["count"] += 1
        raise Conflict("lock timeout")

    monkeypatch.setattr(fulfillment, "_fulfil", always_conflicting)
    monkeypatch.setattr(fulfillment.time, "sleep", lambda seconds: None)

    with pytest.raises(Conflict):
        fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 1, "1.00")])

    assert attempts["count"] == runtime_context.settings.max_retries + 1


def test_business_rule_violations_are_not_retried(runtime_context, make_product, monkeypatch):
    product = make_product(opening_stock=1)
    attempts = {"count": 0}

    def short_fulfil(context, command):
        attempts["count"] += 1
        raise InsufficientStock(product.product_id, 2, 1)

    monkeypatch.setattr(fulfillment, "_fulfil", short_fulfil)

    with pytest.raises(InsufficientStock):
        fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 2, "1.00")])
    assert attempts["count"] == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_sales_never_oversell(runtime_context, make_product):
    """Two sales of 6 against 10 on hand: exactly one may commit."""

    product = make_product(opening_stock=10)

    outcomes = _run_concurrently(
        2,
        lambda index: fulfillment.create_sale(
            runtime_context, None, f"Customer {index}", [(product.product_id, 6, "1.00")]
        ),
    )

    successes = [o for o in outcomes if isinstance(o, data_manager.SalesOrderRecord)]
    failures = [o for o in outcomes if isinstance(o, InsufficientStock)]
    assert len(successes) == 1, outcomes
    assert len(failures) == 1, outcomes
    assert failures[0].available == 4
    assert ledger.current_stock(runtime_context, product.product_id) == 4
    assert ledger.verify_invariant(runtime_context) == {}


def test_concurrent_multi_item_sales_keep_invariant(runtime_context, make_product):
    """Overlapping product sets in opposite order must neither deadlock nor oversell."""

    first = make_product(opening_stock=10)
    second = make_product(opening_stock=10)

    def sale(index: int):
        items = [(first.product_id, 2, "1.00"), (second.product_id, 1, "1.00")]
        if index % 2:
            items.reverse()
        return fulfillment.create_sale(runtime_context, None, None, items)

    outcomes = _run_concurrently(8, sale)

    successes = [o for o in outcomes if isinstance(o, data_manager.SalesOrderRecord)]
    failures = [o for o in outcomes if isinstance(o, InsufficientStock)]
    assert len(successes) == 5, outcomes
    assert len(failures) == 3, outcomes
    assert ledger.current_stock(runtime_context, first.product_id) == 0
    assert ledger.current_stock(runtime_context, second.product_id) == 5
    assert len(fulfillment.list_sales(runtime_context)) == 5
    assert ledger.verify_invariant(runtime_context) == {}


# ---------------------------------------------------------------------------
# Order status
# ---------------------------------------------------------------------------


def test_update_order_status_changes_states_only(runtime_context, make_product):
    product = make_product(opening_stock=5)
    order = fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 2, "3.00")])

    updated = fulfillment.update_order_status(
        runtime_context,
        order.order_id,
        status=constants.OrderStatus.COMPLETED,
        payment_status="paid",
    )

    assert updated.status == "completed"
    assert updated.payment_status == "paid"
    assert updated.lines == order.lines
    assert updated.total_amount == order.total_amount
    assert ledger.current_stock(runtime_context, product.product_id) == 3


def test_terminal_orders_cannot_change_status(runtime_context, make_product):
    product = make_product(opening_stock=5)
    order = fulfillment.create_sale(runtime_context, None, None, [(product.product_id, 1, "3.00")])
    fulfillment.update_order_status(runtime_context, order.order_id, status="cancelled")

    with pytest.raises(BusinessRuleViolation):
        fulfillment.update_order_status(runtime_context, order.order_id, status="processing")

    refunded = fulfillment.update_order_status(runtime_context, order.order_id, payment_status="refunded")
    assert refunded.status == "cancelled"
    assert refunded.payment_status == "refunded"


def test_update_order_status_validates_input(runtime_context):
    with pytest.raises(ValidationError):
        fulfillment.update_order_status(runtime_context, "any")
    with pytest.raises(ValidationError):
        fulfillment.update_order_status(runtime_context, "any", status="shipped")
    with pytest.raises(NotFound):
        fulfillment.update_order_status(runtime_context, "missing", status="processing")
