"""Exception taxonomy for the stock ledger and the sale engine.

Every error aborts the surrounding unit of work. Only :class:`Conflict` is
eligible for automatic retry; the others are reported to the caller as-is.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFound(BusinessRuleViolation):
    """Raised when a referenced product, order, or user is unknown."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed input before any state is touched."""


class ImmutableRecordError(BusinessRuleViolation):
    """Raised when code tries to update or delete an append-only record."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a sale line asks for more units than are on hand."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )

    def __reduce__(self):
        return (type(self), (self.product_id, self.requested, self.available))


class Conflict(Exception):
    """Raised when a concurrent modification or lock timeout aborts a unit of work."""


__all__ = [
    "BusinessRuleViolation",
    "NotFound",
    "ValidationError",
    "ImmutableRecordError",
    "InsufficientStock",
    "Conflict",
]
