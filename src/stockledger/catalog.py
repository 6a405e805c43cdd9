"""Registration and lookup of the records the core only consults.

Users, categories and products are administrative data. The helpers here
exist to seed them; a product's opening quantity is posted to the ledger as an
``adjustment`` so stock and ledger agree from the first commit.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List, Optional

from . import data_manager, ledger, log
from .constants import (
    MAX_QUANTITY,
    MONEY_LIMIT,
    MONEY_QUANTUM,
    OPENING_STOCK_NOTE,
    TransactionKind,
    UserRole,
)
from .errors import NotFound, ValidationError
from .models import Category, Product, User
from .runtime import RuntimeContext


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def _require_money(value: Any, field: str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} is not a number: {value!r}") from exc
    if not amount.is_finite() or amount < Decimal("0"):
        raise ValidationError(f"{field} must be zero or positive")
    try:
        amount = amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"{field} is out of range: {value!r}") from exc
    if amount >= MONEY_LIMIT:
        raise ValidationError(f"{field} must be below {MONEY_LIMIT}")
    return amount


def _require_int(value: Any, field: str, *, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    if abs(value) > MAX_QUANTITY:
        raise ValidationError(f"{field} must not exceed {MAX_QUANTITY}")
    return value


def register_user(
    context: RuntimeContext,
    *,
    email: str,
    full_name: str,
    role: str = UserRole.STAFF.value,
    active: bool = True,
) -> data_manager.UserRecord:
    """Create a user record that orders can be stamped with.

    Raises:
        ValidationError: If a field is missing, the role is unknown, or the
            email is already registered.
    """
    try:
        role_value = UserRole(role).value
    except ValueError as exc:
        raise ValidationError(f"Unsupported role: {role!r}") from exc

    with context.unit_of_work() as session:
        user = User(
            email=_require_text(email, "Email"),
            full_name=_require_text(full_name, "Full name"),
            role=role_value,
            active=active,
        )
        session.add(user)
        session.flush()
        record = data_manager.user_record(user)
    log.info("Registered user '%s' (%s)", record.email, record.user_id)
    return record


def register_category(
    context: RuntimeContext,
    *,
    name: str,
    description: Optional[str] = None,
) -> data_manager.CategoryRecord:
    with context.unit_of_work() as session:
        category = Category(name=_require_text(name, "Category name"), description=description)
        session.add(category)
        session.flush()
        record = data_manager.category_record(category)
    log.info("Registered category '%s' (%s)", record.name, record.category_id)
    return record


def register_product(
    context: RuntimeContext,
    *,
    sku: str,
    name: str,
    price: Any,
    cost_price: Any,
    reorder_level: int = 10,
    opening_stock: int = 0,
    category_id: Optional[str] = None,
    description: Optional[str] = None,
) -> data_manager.ProductRecord:
    """Create a product and post its opening stock to the ledger.

    The product starts at zero and, when ``opening_stock`` is non-zero, an
    ``adjustment`` entry brings it to the requested level within the same unit
    of work.

    Args:
        context (RuntimeContext): Runtime context providing database access.
        sku (str): Unique stock keeping unit.
        name (str): Display name.
        price (Decimal | str | float): Selling price, non-negative.
        cost_price (Decimal | str | float): Cost price, non-negative.
        reorder_level (int): Threshold used by low-stock reporting.
        opening_stock (int): Initial quantity on hand.
        category_id (str | None): Optional category reference.
        description (str | None): Optional description.

    Returns:
        data_manager.ProductRecord: The committed product.

    Raises:
        ValidationError: For malformed fields or a duplicate SKU.
        NotFound: If ``category_id`` does not exist.
    """
    sku = _require_text(sku, "SKU")
    name = _require_text(name, "Product name")
    price = _require_money(price, "Price")
    cost_price = _require_money(cost_price, "Cost price")
    reorder_level = _require_int(reorder_level, "Reorder level", minimum=0)
    opening_stock = _require_int(opening_stock, "Opening stock", minimum=0)

    with context.unit_of_work() as session:
        if category_id is not None and data_manager.fetch_category(session, category_id) is None:
            raise NotFound(f"Unknown category id: {category_id}")
        if data_manager.fetch_product_by_sku(session, sku) is not None:
            log.warning("Duplicate SKU rejected: '%s'", sku)
            raise ValidationError(f"SKU already registered: {sku}")
        product = Product(
            sku=sku,
            name=name,
            description=description,
            price=price,
            cost_price=cost_price,
            reorder_level=reorder_level,
            stock_quantity=0,
            category_id=category_id,
        )
        session.add(product)
        session.flush()
        if opening_stock:
            ledger.post_entry(
                session,
                product.id,
                opening_stock,
                TransactionKind.ADJUSTMENT,
                note=OPENING_STOCK_NOTE,
            )
        record = data_manager.product_record(product)

    log.info(
        "Registered product '%s' (%s) with opening stock %d",
        record.sku,
        record.product_id,
        record.stock_quantity,
    )
    return record


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRecord:
    """Resolve a product record by its identifier.

    Raises:
        NotFound: If ``product_id`` is unknown.
    """
    with context.unit_of_work() as session:
        product = data_manager.fetch_product(session, product_id)
        if product is None:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        return data_manager.product_record(product)


def get_product_by_sku(context: RuntimeContext, sku: str) -> data_manager.ProductRecord:
    """Resolve a product record by SKU.

    Raises:
        NotFound: If no product carries ``sku``.
    """
    with context.unit_of_work() as session:
        product = data_manager.fetch_product_by_sku(session, sku)
        if product is None:
            log.warning("Product lookup failed for SKU '%s'", sku)
            raise NotFound(f"Unknown SKU: {sku}")
        return data_manager.product_record(product)


def resolve_product_id(context: RuntimeContext, reference: str) -> str:
    """Accept either a product id or a SKU and return the product id."""
    try:
        return get_product(context, reference).product_id
    except NotFound:
        return get_product_by_sku(context, reference).product_id


def list_products(context: RuntimeContext) -> List[data_manager.ProductRecord]:
    """Return every product ordered by SKU."""
    with context.unit_of_work() as session:
        return [data_manager.product_record(row) for row in data_manager.iter_products(session)]
