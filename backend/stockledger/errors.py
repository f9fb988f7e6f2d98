"""
Domain error taxonomy for the stock ledger.

Every error is raised inside the transaction that detected it, so the
transaction is rolled back and nothing partial is persisted. The HTTP layer
turns them into a structured body via ``to_dict()``.
"""
from __future__ import annotations

from decimal import Decimal


class LedgerError(Exception):
    """Base class for expected, user-facing failures."""

    code = "LEDGER_ERROR"
    http_status = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        for key, value in self.details.items():
            body[key] = _fmt(value) if isinstance(value, Decimal) else value
        return body


class InvalidState(LedgerError):
    """Operation attempted from a status that does not permit it."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, document: str, status: str, action: str, message: str | None = None):
        super().__init__(
            message or f"Cannot {action} {document} in {status} status",
            document=document,
            status=status,
            action=action,
        )


class ValidationError(LedgerError):
    """Missing lines, uncounted lines, malformed input."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, field: str | None = None):
        if field is None:
            super().__init__(message)
        else:
            super().__init__(message, field=field)
        self.field = field


class NotFound(LedgerError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id):
        super().__init__(f"{resource} {resource_id} not found", resource=resource, id=resource_id)
        self.resource = resource
        self.resource_id = resource_id


class InsufficientStock(LedgerError):
    """A decrement would drive quantity on hand below zero."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(
        self,
        *,
        product_id: int,
        variant_id: int | None,
        location_id: int,
        available: Decimal,
        requested: Decimal,
        label: str | None = None,
    ):
        label = label or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label} at location {location_id} "
            f"(available {_fmt(available)}, requested {_fmt(requested)})",
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            label=label,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.location_id = location_id
        self.available = available
        self.requested = requested


def _fmt(value: Decimal) -> str:
    from .quantities import format_quantity
    return format_quantity(value)
