"""Enumerations shared across the stock ledger modules.

Keeps the persisted tags (ledger transaction kinds, order and payment states)
in one place so the data access layer, the ledger, the sale engine, and the
CLI agree on the exact strings stored in the database.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version expected by all layers when validating the configuration.
EXPECTED_SCHEMA_VERSION = "1.0.0"

MONEY_QUANTUM = Decimal("0.01")
# Numeric(10, 2) holds at most 99999999.99.
MONEY_LIMIT = Decimal("1e8")
# Largest value a 32-bit INTEGER column accepts.
MAX_QUANTITY = 2**31 - 1

SALE_LINE_NOTE = "Sale order item"
OPENING_STOCK_NOTE = "Opening stock"


class TransactionKind(str, Enum):
    """Enumerate the causes of a stock change recorded in the ledger."""

    SALE = "sale"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"


class OrderStatus(str, Enum):
    """Enumerate the fulfillment states of a sales order."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Enumerate the payment states of a sales order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class UserRole(str, Enum):
    """Enumerate the roles a user record may carry."""

    ADMIN = "admin"
    STAFF = "staff"
    MANAGER = "manager"


class TableName(str, Enum):
    """Enumerate the relational tables managed by the data layer."""

    USERS = "users"
    CATEGORIES = "categories"
    PRODUCTS = "products"
    LEDGER = "inventory_transactions"
    SALES_ORDERS = "sales_orders"
    SALES_ORDER_LINES = "sales_order_items"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "MONEY_LIMIT",
    "MAX_QUANTITY",
    "SALE_LINE_NOTE",
    "OPENING_STOCK_NOTE",
    "TransactionKind",
    "OrderStatus",
    "PaymentStatus",
    "UserRole",
    "TableName",
]
