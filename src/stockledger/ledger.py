"""Stock ledger: current quantity on hand and its append-only history.

Every stock change goes through :func:`post_entry`, which locks the product
row, appends one ``inventory_transactions`` row and moves
``products.stock_quantity`` by the same delta inside the caller's unit of
work. Because both writes share one transaction, no reader ever observes one
without the other, and ``stock_quantity == Σ quantity`` holds for every
product whenever a transaction commits.

The ledger does not police negative stock. Sales check availability in the
sale engine; purchases and adjustments are applied as requested.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from . import data_manager, log
from .constants import MAX_QUANTITY, TransactionKind
from .errors import NotFound, ValidationError
from .models import LedgerEntry
from .runtime import RuntimeContext


def coerce_kind(kind: Union[TransactionKind, str]) -> TransactionKind:
    """Normalize a transaction kind given as enum member or stored tag.

    Raises:
        ValidationError: If ``kind`` is not one of the ledger tags.
    """
    if isinstance(kind, TransactionKind):
        return kind
    try:
        return TransactionKind(kind)
    except ValueError as exc:
        log.error("Unsupported ledger transaction kind: %s", kind)
        raise ValidationError(f"Unsupported transaction kind: {kind!r}") from exc


def require_nonzero_delta(delta: int) -> None:
    """Validate that a ledger delta is a non-zero integer.

    Raises:
        ValidationError: If ``delta`` is not an ``int``, equals zero, or is
            outside the storable integer range.
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        log.error("Ledger delta must be an integer, got %r", delta)
        raise ValidationError("Ledger delta must be an integer")
    if delta == 0:
        log.error("Ledger delta validation failed: %s", delta)
        raise ValidationError("Ledger delta must be non-zero")
    if abs(delta) > MAX_QUANTITY:
        log.error("Ledger delta out of range: %s", delta)
        raise ValidationError(f"Ledger delta must not exceed {MAX_QUANTITY} in magnitude")


def post_entry(
    session: Session,
    product_id: str,
    delta: int,
    kind: Union[TransactionKind, str],
    *,
    reference_id: Optional[str] = None,
    note: Optional[str] = None,
) -> LedgerEntry:
    """Apply a stock change inside an already open unit of work.

    The product row is locked first (``SELECT ... FOR UPDATE`` where the
    backend supports row locks), so the read-modify-write of
    ``stock_quantity`` is serialized against every other ledger write to the
    same product until the surrounding transaction ends.

    Args:
        session (Session): Session owned by the caller's unit of work.
        product_id (str): Product whose stock changes.
        delta (int): Signed, non-zero quantity change.
        kind (TransactionKind | str): ``sale``, ``purchase`` or
            ``adjustment``.
        reference_id (str | None): Originating order, when there is one.
        note (str | None): Free-text note stored with the entry.

    Returns:
        LedgerEntry: The flushed, still attached ledger row.

    Raises:
        NotFound: If the product does not exist.
        ValidationError: If ``delta`` or ``kind`` is invalid, or the resulting
            stock would not fit the stock column.
    """
    require_nonzero_delta(delta)
    kind = coerce_kind(kind)
    product = data_manager.fetch_product(session, product_id, for_update=True)
    if product is None:
        log.warning("Ledger apply failed: unknown product '%s'", product_id)
        raise NotFound(f"Unknown product id: {product_id}")
    if abs(product.stock_quantity + delta) > MAX_QUANTITY:
        log.error(
            "Ledger apply for '%s' would move stock out of range (stock=%s, delta=%s)",
            product_id,
            product.stock_quantity,
            delta,
        )
        raise ValidationError("Resulting stock is out of range")

    entry = data_manager.append_ledger_entry(
        session,
        product,
        delta=delta,
        kind=kind.value,
        reference_id=reference_id,
        notes=note,
    )
    log.debug(
        "Posted %s entry '%s' for product '%s' (delta=%s, stock=%s)",
        kind.value,
        entry.id,
        product_id,
        delta,
        product.stock_quantity,
    )
    return entry


def apply(
    context: RuntimeContext,
    product_id: str,
    delta: int,
    kind: Union[TransactionKind, str],
    *,
    reference_id: Optional[str] = None,
    note: Optional[str] = None,
) -> data_manager.LedgerEntryRecord:
    """Append a ledger entry and move the product's stock in one unit of work.

    Args:
        context (RuntimeContext): Runtime context providing database access.
        product_id (str): Product whose stock changes.
        delta (int): Signed, non-zero quantity change.
        kind (TransactionKind | str): Ledger tag for the change.
        reference_id (str | None): Optional originating document id.
        note (str | None): Optional free-text note.

    Returns:
        data_manager.LedgerEntryRecord: The committed entry.

    Raises:
        NotFound: If the product does not exist.
        ValidationError: If ``delta`` or ``kind`` is invalid.
        Conflict: If the product row could not be locked in time.
    """
    with context.unit_of_work() as session:
        entry = post_entry(session, product_id, delta, kind, reference_id=reference_id, note=note)
        record = data_manager.ledger_entry_record(entry)
    log.info(
        "Recorded %s ledger entry '%s' for product '%s' (delta=%s)",
        record.kind,
        record.entry_id,
        product_id,
        delta,
    )
    return record


def record_purchase(
    context: RuntimeContext,
    product_id: str,
    quantity: int,
    *,
    note: Optional[str] = None,
) -> data_manager.LedgerEntryRecord:
    """Add ``quantity`` units received outside purchase-order intake."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Purchase quantity validation failed: %r", quantity)
        raise ValidationError("Purchase quantity must be a positive integer")
    return apply(context, product_id, quantity, TransactionKind.PURCHASE, note=note)


def record_adjustment(
    context: RuntimeContext,
    product_id: str,
    delta: int,
    *,
    note: Optional[str] = None,
) -> data_manager.LedgerEntryRecord:
    """Apply a manual correction of either sign, e.g. after a stock count."""
    return apply(context, product_id, delta, TransactionKind.ADJUSTMENT, note=note)


def current_stock(context: RuntimeContext, product_id: str) -> int:
    """Return the committed quantity on hand for a product.

    Raises:
        NotFound: If the product does not exist.
    """
    with context.unit_of_work() as session:
        product = data_manager.fetch_product(session, product_id)
        if product is None:
            log.warning("Stock lookup failed for id '%s'", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        return int(product.stock_quantity)


def ledger_balance(context: RuntimeContext, product_id: str) -> int:
    """Return ``Σ quantity`` over every ledger entry of a product.

    Raises:
        NotFound: If the product does not exist.
    """
    with context.unit_of_work() as session:
        if data_manager.fetch_product(session, product_id) is None:
            raise NotFound(f"Unknown product id: {product_id}")
        return data_manager.sum_ledger(session, product_id)


def list_entries(
    context: RuntimeContext,
    *,
    product_id: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> List[data_manager.LedgerEntryRecord]:
    """Return ledger history in creation order.

    Args:
        context (RuntimeContext): Runtime context providing database access.
        product_id (str | None): Restrict to one product.
        reference_id (str | None): Restrict to entries of one order.

    Returns:
        list[data_manager.LedgerEntryRecord]: Matching entries, oldest first.
    """
    with context.unit_of_work() as session:
        rows = data_manager.iter_ledger_entries(session, product_id=product_id, reference_id=reference_id)
        return [data_manager.ledger_entry_record(row) for row in rows]


def verify_invariant(context: RuntimeContext) -> Dict[str, Tuple[int, int]]:
    """Compare every product's stock with the sum of its ledger entries.

    Both sides are read inside one transaction, so the comparison reflects a
    single committed state.

    Returns:
        dict[str, tuple[int, int]]: ``{product_id: (stock_quantity,
            ledger_sum)}`` for mismatching products only; empty when the
            ledger is consistent.
    """
    with context.unit_of_work() as session:
        sums = data_manager.ledger_sums(session)
        mismatches = {}
        for product in data_manager.iter_products(session):
            ledger_sum = sums.get(product.id, 0)
            if int(product.stock_quantity) != ledger_sum:
                mismatches[product.id] = (int(product.stock_quantity), ledger_sum)
    if mismatches:
        log.error("Ledger invariant violated for %d products", len(mismatches))
    else:
        log.info("Ledger invariant verified")
    return mismatches
