# Overview: Posting executor; the only code path that mutates stock balances.

"""
Balance Store and Posting Executor.

Every quantity change goes through apply_deltas(), inside the caller's
transaction. The caller commits or rolls back; nothing here commits.

CONCURRENCY:
Balances are never read-modify-written. Each delta is one conditional UPDATE:

    UPDATE stock_balances
       SET quantity_on_hand = quantity_on_hand - :q
     WHERE <key> AND quantity_on_hand >= :q

and success is judged by the affected row count. Two racing decrements
serialize on the row's write lock; the loser sees the already-reduced
quantity and fails the predicate instead of overdrawing.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientStock
from ..extensions import db
from ..models import Location, Product, ProductVariant, StockBalance
from ..quantities import ZERO, format_quantity
from ..time_utils import utcnow


@dataclass(frozen=True)
class BalanceDelta:
    """Signed quantity change for one (product, variant, location) key."""
    product_id: int
    variant_id: int | None
    location_id: int
    quantity: Decimal
    label: str | None = None


def _key_filter(product_id: int, variant_id: int | None, location_id: int) -> list:
    clauses = [
        StockBalance.product_id == product_id,
        StockBalance.location_id == location_id,
    ]
    if variant_id is None:
        clauses.append(StockBalance.variant_id.is_(None))
    else:
        clauses.append(StockBalance.variant_id == variant_id)
    return clauses


def get_quantity_on_hand(product_id: int, location_id: int, variant_id: int | None = None) -> Decimal:
    """Stored quantity on hand for a key; 0 when the key has never been stocked."""
    qty = (
        db.session.query(StockBalance.quantity_on_hand)
        .filter(*_key_filter(product_id, variant_id, location_id))
        .scalar()
    )
    return Decimal(qty) if qty is not None else ZERO


def describe_key(product_id: int, variant_id: int | None) -> str:
    """Human label for error messages: "Product Name (VARIANT-SKU)"."""
    product = db.session.get(Product, product_id)
    name = product.name if product else f"product {product_id}"
    if variant_id is None:
        return name
    variant = db.session.get(ProductVariant, variant_id)
    return f"{name} ({variant.sku if variant else variant_id})"


def _increment(delta: BalanceDelta, qty: Decimal) -> None:
    stmt = (
        update(StockBalance)
        .where(*_key_filter(delta.product_id, delta.variant_id, delta.location_id))
        .values(
            quantity_on_hand=StockBalance.quantity_on_hand + qty,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount:
        return

    # First stock for this key
    try:
        with db.session.begin_nested():
            db.session.add(StockBalance(
                product_id=delta.product_id,
                variant_id=delta.variant_id,
                location_id=delta.location_id,
                quantity_on_hand=qty,
            ))
    except IntegrityError:
        # Another transaction created the row first
        if not db.session.execute(stmt).rowcount:
            raise


def _decrement(delta: BalanceDelta, qty: Decimal) -> None:
    stmt = (
        update(StockBalance)
        .where(
            *_key_filter(delta.product_id, delta.variant_id, delta.location_id),
            StockBalance.quantity_on_hand >= qty,
        )
        .values(
            quantity_on_hand=StockBalance.quantity_on_hand - qty,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount:
        return

    available = get_quantity_on_hand(delta.product_id, delta.location_id, delta.variant_id)
    label = delta.label or describe_key(delta.product_id, delta.variant_id)
    current_app.logger.warning(
        "Insufficient stock for %s at location %s: available %s, requested %s",
        label, delta.location_id, format_quantity(available), format_quantity(qty),
    )
    raise InsufficientStock(
        product_id=delta.product_id,
        variant_id=delta.variant_id,
        location_id=delta.location_id,
        available=available,
        requested=qty,
        label=label,
    )


def apply_deltas(deltas: Iterable[BalanceDelta]) -> int:
    """
    Apply signed deltas in iteration order.

    Args:
        deltas: Balance changes; positive increments, negative decrements

    Returns:
        Number of deltas applied (zero deltas are skipped)

    Raises:
        InsufficientStock: A decrement exceeds the stored quantity. Deltas
            applied before it are undone by the caller's rollback.
    """
    applied = 0
    for delta in deltas:
        qty = Decimal(delta.quantity)
        if qty > 0:
            _increment(delta, qty)
        elif qty < 0:
            _decrement(delta, -qty)
        else:
            continue
        applied += 1
    return applied


def list_balances(
    *,
    warehouse_id: int | None = None,
    location_id: int | None = None,
    product_id: int | None = None,
    variant_id: int | None = None,
    include_zero: bool = False,
) -> list[StockBalance]:
    query = db.session.query(StockBalance).join(Location, Location.id == StockBalance.location_id)
    if warehouse_id is not None:
        query = query.filter(Location.warehouse_id == warehouse_id)
    if location_id is not None:
        query = query.filter(StockBalance.location_id == location_id)
    if product_id is not None:
        query = query.filter(StockBalance.product_id == product_id)
    if variant_id is not None:
        query = query.filter(StockBalance.variant_id == variant_id)
    if not include_zero:
        query = query.filter(StockBalance.quantity_on_hand != 0)
    return (
        query.populate_existing()
        .order_by(StockBalance.location_id, StockBalance.product_id, StockBalance.variant_id)
        .all()
    )


def snapshot_positive_balances(warehouse_id: int) -> list[StockBalance]:
    """
    Balances with quantity on hand > 0 across a warehouse's locations,
    ordered by location code, product sku, variant sku.
    """
    return (
        db.session.query(StockBalance)
        .join(Location, Location.id == StockBalance.location_id)
        .join(Product, Product.id == StockBalance.product_id)
        .outerjoin(ProductVariant, ProductVariant.id == StockBalance.variant_id)
        .filter(
            Location.warehouse_id == warehouse_id,
            StockBalance.quantity_on_hand > 0,
        )
        .populate_existing()
        .order_by(Location.code, Product.sku, ProductVariant.sku, StockBalance.id)
        .all()
    )
