"""SQLAlchemy mapping of the relational layout.

Products carry the current ``stock_quantity``; ``inventory_transactions`` is
the append-only ledger whose per-product sum must always equal it. Sales
orders and their lines are written once by the sale engine.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    event,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .constants import OrderStatus, PaymentStatus, TableName, TransactionKind, UserRole
from .errors import ImmutableRecordError


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    pass


class User(Base):
    """Identity record used only to stamp the creator of a sales order."""

    __tablename__ = TableName.USERS.value
    __table_args__ = (
        CheckConstraint(
            "role IN ('admin', 'staff', 'manager')",
            name="ck_users_role",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=UserRole.STAFF.value)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Category(Base):
    __tablename__ = TableName.CATEGORIES.value

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Product(Base):
    """Catalog item and holder of the current quantity on hand."""

    __tablename__ = TableName.PRODUCTS.value
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price"),
        CheckConstraint("cost_price >= 0", name="ck_products_cost_price"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    category_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey(f"{TableName.CATEGORIES.value}.id", ondelete="RESTRICT")
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    cost_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    ledger_entries: Mapped[List["LedgerEntry"]] = relationship(back_populates="product")


class LedgerEntry(Base):
    """Immutable record of a single signed stock change and its cause."""

    __tablename__ = TableName.LEDGER.value
    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('purchase', 'sale', 'adjustment')",
            name="ck_inventory_transactions_type",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{TableName.PRODUCTS.value}.id"), nullable=False, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)  # signed delta
    reference_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    product: Mapped[Product] = relationship(back_populates="ledger_entries")


class SalesOrder(Base):
    __tablename__ = TableName.SALES_ORDERS.value

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey(f"{TableName.USERS.value}.id"))
    customer_name: Mapped[Optional[str]] = mapped_column(Text)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    payment_status: Mapped[str] = mapped_column(
        SAEnum(*_enum_values(PaymentStatus), name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )
    status: Mapped[str] = mapped_column(
        SAEnum(*_enum_values(OrderStatus), name="order_status"),
        nullable=False,
        default=OrderStatus.PENDING.value,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    lines: Mapped[List["SalesOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SalesOrderLine.position",
    )


class SalesOrderLine(Base):
    __tablename__ = TableName.SALES_ORDER_LINES.value
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_sales_order_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_sales_order_items_unit_price"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    sales_order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey(f"{TableName.SALES_ORDERS.value}.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{TableName.PRODUCTS.value}.id"), nullable=False
    )
    # Caller-supplied item order, kept so lines read back in request order.
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    order: Mapped[SalesOrder] = relationship(back_populates="lines")


@event.listens_for(LedgerEntry, "before_update")
@event.listens_for(SalesOrderLine, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} '{target.id}' is immutable")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"Ledger entry '{target.id}' cannot be deleted")


@event.listens_for(SalesOrder, "before_delete")
def _reject_referenced_order_delete(mapper, connection, target) -> None:
    referenced = connection.scalar(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.reference_id == target.id)
    )
    if referenced:
        raise ImmutableRecordError(
            f"Sales order '{target.id}' is referenced by {referenced} ledger entries"
        )


__all__ = [
    "Base",
    "User",
    "Category",
    "Product",
    "LedgerEntry",
    "SalesOrder",
    "SalesOrderLine",
]
