"""Sale fulfillment engine.

A sale is one unit of work: the order row, one line per requested item, the
stock decrement and the ``sale`` ledger entry for each item either all commit
or none does. Product rows are locked up front in sorted id order so
concurrent sales touching the same products serialize instead of overselling,
and never wait on each other in a cycle.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from . import data_manager, ledger, log
from .constants import (
    MAX_QUANTITY,
    MONEY_LIMIT,
    MONEY_QUANTUM,
    SALE_LINE_NOTE,
    OrderStatus,
    PaymentStatus,
    TransactionKind,
)
from .errors import BusinessRuleViolation, Conflict, InsufficientStock, NotFound, ValidationError
from .runtime import RuntimeContext


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


@dataclass(frozen=True)
class SaleItem:
    """One requested line of a sale."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class SaleCommand:
    """Validated intent for :func:`create_sale`."""

    user_id: Optional[str]
    customer_name: Optional[str]
    items: tuple[SaleItem, ...]


SaleItemInput = Union[SaleItem, Sequence[Any], Mapping[str, Any]]


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a line quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` above zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity must be an integer, got %r", quantity)
        raise ValidationError("Quantity must be an integer")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    if quantity > MAX_QUANTITY:
        log.error("Quantity out of range: %s", quantity)
        raise ValidationError(f"Quantity must not exceed {MAX_QUANTITY}")
    return quantity


def require_nonnegative_money(amount: Any) -> Decimal:
    """Validate a unit price and round it to cents.

    Floats are converted through ``str`` so ``9.99`` stays ``Decimal("9.99")``.

    Raises:
        ValidationError: If ``amount`` is not a finite number, is negative,
            or does not fit the stored precision.
    """
    if isinstance(amount, bool):
        raise ValidationError("Unit price must be a number")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        log.error("Unit price is not a number: %r", amount)
        raise ValidationError(f"Unit price is not a number: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError("Unit price must be finite")
    if value < Decimal("0"):
        log.error("Monetary value validation failed: %s", value)
        raise ValidationError("Unit price must be zero or positive")
    try:
        value = value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"Unit price out of range: {amount!r}") from exc
    if value >= MONEY_LIMIT:
        log.error("Unit price out of range: %s", value)
        raise ValidationError(f"Unit price must be below {MONEY_LIMIT}")
    return value


def normalize_item(raw: SaleItemInput) -> SaleItem:
    """Convert a :class:`SaleItem`, a 3-tuple, or a mapping into a validated item.

    Raises:
        ValidationError: If the item is malformed.
    """
    if isinstance(raw, SaleItem):
        product_id, quantity, unit_price = raw.product_id, raw.quantity, raw.unit_price
    elif isinstance(raw, Mapping):
        try:
            product_id, quantity, unit_price = raw["product_id"], raw["quantity"], raw["unit_price"]
        except KeyError as exc:
            raise ValidationError(f"Sale item is missing {exc.args[0]!r}") from exc
    elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)) and len(raw) == 3:
        product_id, quantity, unit_price = raw
    else:
        raise ValidationError(f"Unsupported sale item: {raw!r}")

    if not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError("Sale item requires a product id")
    return SaleItem(
        product_id=product_id.strip(),
        quantity=require_positive_quantity(quantity),
        unit_price=require_nonnegative_money(unit_price),
    )


def build_sale_command(
    user_id: Optional[str],
    customer_name: Optional[str],
    items: Iterable[SaleItemInput],
) -> SaleCommand:
    """Validate raw sale input into a :class:`SaleCommand`.

    Nothing is read from or written to the database here, so malformed input
    is rejected before any state is touched.

    Raises:
        ValidationError: For an empty item list, any malformed item, or a
            total that does not fit the stored precision.
    """
    if items is None:
        raise ValidationError("A sale requires at least one item")
    normalized = tuple(normalize_item(item) for item in items)
    if not normalized:
        log.error("Rejected sale without items")
        raise ValidationError("A sale requires at least one item")
    if customer_name is not None and not isinstance(customer_name, str):
        raise ValidationError("Customer name must be text")
    total = sum((item.unit_price * item.quantity for item in normalized), Decimal("0"))
    if total >= MONEY_LIMIT:
        log.error("Rejected sale with total %s", total)
        raise ValidationError(f"Order total must be below {MONEY_LIMIT}")
    return SaleCommand(user_id=user_id, customer_name=customer_name, items=normalized)


def create_sale(
    context: RuntimeContext,
    user_id: Optional[str],
    customer_name: Optional[str],
    items: Iterable[SaleItemInput],
) -> data_manager.SalesOrderRecord:
    """Create a sales order and fulfil every line against stock, atomically.

    Items are processed in the order given, so when several lines lack stock
    the first one is the one reported. A :class:`Conflict` (lock timeout,
    deadlock, serialization failure) rolls the attempt back and the whole
    sale is retried up to ``settings.max_retries`` times with linear backoff.

    Args:
        context (RuntimeContext): Runtime context providing database access.
        user_id (str | None): User stamped on the order; must exist if given.
        customer_name (str | None): Free-text customer label.
        items (Iterable): ``SaleItem`` objects, ``(product_id, quantity,
            unit_price)`` tuples, or mappings with those keys.

    Returns:
        data_manager.SalesOrderRecord: The committed order with its lines.

    Raises:
        ValidationError: If the input is malformed.
        NotFound: If the user or a product does not exist.
        InsufficientStock: If a line asks for more than is on hand.
        Conflict: If every attempt was aborted by concurrent transactions.
    """
    command = build_sale_command(user_id, customer_name, items)
    attempts = context.settings.max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return _fulfil(context, command)
        except Conflict:
            if attempt == attempts:
                log.error("Sale for '%s' abandoned after %d conflicting attempts", customer_name, attempts)
                raise
            log.warning("Sale attempt %d/%d hit a conflict, retrying", attempt, attempts)
            time.sleep(context.settings.retry_backoff_seconds * attempt)


def _fulfil(context: RuntimeContext, command: SaleCommand) -> data_manager.SalesOrderRecord:
    with context.unit_of_work() as session:
        if command.user_id is not None and data_manager.fetch_user(session, command.user_id) is None:
            log.warning("Sale rejected: unknown user '%s'", command.user_id)
            raise NotFound(f"Unknown user id: {command.user_id}")

        locked = data_manager.lock_products(session, (item.product_id for item in command.items))
        for item in command.items:
            if locked[item.product_id] is None:
                log.warning("Sale rejected: unknown product '%s'", item.product_id)
                raise NotFound(f"Unknown product id: {item.product_id}")

        order = data_manager.append_order(session, user_id=command.user_id, customer_name=command.customer_name)
        total = Decimal("0.00")
        for position, item in enumerate(command.items):
            available = int(locked[item.product_id].stock_quantity)
            if available < item.quantity:
                log.warning(
                    "Sale rejected: product '%s' has %d on hand, %d requested",
                    item.product_id,
                    available,
                    item.quantity,
                )
                raise InsufficientStock(item.product_id, item.quantity, available)
            data_manager.append_order_line(
                session,
                order,
                product_id=item.product_id,
                position=position,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            ledger.post_entry(
                session,
                item.product_id,
                -item.quantity,
                TransactionKind.SALE,
                reference_id=order.id,
                note=SALE_LINE_NOTE,
            )
            total += item.unit_price * item.quantity

        order.total_amount = total.quantize(MONEY_QUANTUM)
        session.flush()
        record = data_manager.order_record(order)

    log.info(
        "Recorded sale '%s' for '%s' (%d lines, total=%s)",
        record.order_id,
        record.customer_name,
        len(record.lines),
        record.total_amount,
    )
    return record


def get_sale(context: RuntimeContext, order_id: str) -> data_manager.SalesOrderRecord:
    """Return a committed order with its lines.

    Raises:
        NotFound: If the order does not exist.
    """
    with context.unit_of_work() as session:
        order = data_manager.fetch_order(session, order_id)
        if order is None:
            log.warning("Order lookup failed for id '%s'", order_id)
            raise NotFound(f"Unknown order id: {order_id}")
        return data_manager.order_record(order)


def list_sales(context: RuntimeContext) -> List[data_manager.SalesOrderRecord]:
    """Return every committed order, oldest first."""
    with context.unit_of_work() as session:
        return [data_manager.order_record(order) for order in data_manager.iter_orders(session)]


def update_order_status(
    context: RuntimeContext,
    order_id: str,
    *,
    status: Union[OrderStatus, str, None] = None,
    payment_status: Union[PaymentStatus, str, None] = None,
) -> data_manager.SalesOrderRecord:
    """Move an order through its fulfillment or payment states.

    Lines, totals and ledger entries are never touched; stock corrections for
    a cancelled order are made with adjustment entries.

    Raises:
        ValidationError: If no state is given or a value is unknown.
        NotFound: If the order does not exist.
        BusinessRuleViolation: If the order is already completed or cancelled
            and a new fulfillment state is requested.
    """
    if status is None and payment_status is None:
        raise ValidationError("Provide a status or a payment status")
    try:
        new_status = OrderStatus(status) if status is not None else None
        new_payment = PaymentStatus(payment_status) if payment_status is not None else None
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    with context.unit_of_work() as session:
        order = data_manager.fetch_order(session, order_id)
        if order is None:
            raise NotFound(f"Unknown order id: {order_id}")
        if new_status is not None:
            current = OrderStatus(order.status)
            if current in TERMINAL_ORDER_STATUSES and new_status != current:
                log.warning("Refused status change of %s order '%s'", current.value, order_id)
                raise BusinessRuleViolation(f"Order '{order_id}' is already {current.value}")
            order.status = new_status.value
        if new_payment is not None:
            order.payment_status = new_payment.value
        session.flush()
        record = data_manager.order_record(order)

    log.info(
        "Updated order '%s' (status=%s, payment_status=%s)",
        order_id,
        record.status,
        record.payment_status,
    )
    return record
