# backend/stockledger/services/stock_take_service.py
"""
Physical stock take service.

WHY: Regular physical counts keep balances honest. A stock take freezes
the system quantities of one warehouse, collects counted quantities, and on
approval posts the variances as a single ADJUST movement.

LIFECYCLE:
1. DRAFT: Lines snapshotted from positive balances
2. IN_PROGRESS: Counts saved, any number of times
3. COMPLETED: Every line counted, variance = counted - system
4. APPROVED: Variances applied as deltas through the posting executor
5. CANCELLED: Abandoned (from DRAFT, IN_PROGRESS or COMPLETED)
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import StockTake, StockTakeLine, User, Warehouse
from ..quantities import ZERO, format_quantity, to_quantity
from ..time_utils import utcnow
from .audit_service import REF_MOVEMENT, REF_STOCK_TAKE, record_after_commit
from .concurrency import bump_version, lock_for_update, run_in_transaction
from .document_service import DOC_TYPE_STOCK_TAKE, allocate, allocate_adjustment_number
from .lifecycle_service import (
    MovementStatus,
    MovementType,
    StockTakeAction,
    StockTakeStatus,
    next_stock_take_status,
)
from .movement_service import MovementLineInput, build_movement, movement_deltas
from .notification_service import TOPIC_STOCK_TAKE_COMPLETED, notify_approvers_after_commit
from .posting_service import apply_deltas, snapshot_positive_balances


@dataclass
class CountUpdate:
    line_id: int
    counted_qty: Decimal
    note: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "CountUpdate":
        if not isinstance(data, dict):
            raise ValidationError("Each count must be an object", field="counts")
        line_id = data.get("line_id")
        if line_id is None or isinstance(line_id, bool):
            raise ValidationError("line_id is required", field="line_id")
        try:
            line_id = int(line_id)
        except (TypeError, ValueError):
            raise ValidationError("line_id must be an integer", field="line_id")
        return cls(
            line_id=line_id,
            counted_qty=to_quantity(data.get("counted_qty"), "counted_qty"),
            note=data.get("note"),
        )


def _get_stock_take_for_update(stock_take_id: int) -> StockTake:
    stock_take = lock_for_update(
        db.session.query(StockTake).filter_by(id=stock_take_id)
    ).first()
    if not stock_take:
        raise NotFound("stock take", stock_take_id)
    return stock_take


def create_stock_take(warehouse_id: int, actor_id: int, note: str | None = None) -> StockTake:
    """
    Create a DRAFT stock take for every location of a warehouse.

    Only balances with quantity on hand > 0 get a line. system_qty is the
    snapshot at this moment and never changes afterwards.
    """
    def _op():
        if db.session.get(User, actor_id) is None:
            raise NotFound("user", actor_id)
        warehouse = db.session.get(Warehouse, warehouse_id)
        if not warehouse:
            raise NotFound("warehouse", warehouse_id)

        stock_take = StockTake(
            code=allocate(DOC_TYPE_STOCK_TAKE),
            warehouse_id=warehouse.id,
            status=StockTakeStatus.DRAFT.value,
            note=note,
            created_by_user_id=actor_id,
        )
        stock_take.lines = [
            StockTakeLine(
                product_id=balance.product_id,
                variant_id=balance.variant_id,
                location_id=balance.location_id,
                system_qty=balance.quantity_on_hand,
            )
            for balance in snapshot_positive_balances(warehouse.id)
        ]
        db.session.add(stock_take)
        db.session.flush()

        record_after_commit(actor_id, "CREATE", REF_STOCK_TAKE, stock_take.id, {
            "code": stock_take.code,
            "warehouse_id": warehouse.id,
            "line_count": len(stock_take.lines),
        })
        return stock_take

    return run_in_transaction(_op)


def start_stock_take(stock_take_id: int, actor_id: int) -> StockTake:
    def _op():
        stock_take = _get_stock_take_for_update(stock_take_id)
        new_status = next_stock_take_status(stock_take.status, StockTakeAction.START)

        stock_take.status = new_status.value
        stock_take.counted_by_user_id = actor_id
        db.session.flush()

        record_after_commit(actor_id, "START", REF_STOCK_TAKE, stock_take.id, {"code": stock_take.code})
        return stock_take

    return run_in_transaction(_op)


def save_counts(stock_take_id: int, updates: Iterable[CountUpdate | dict], actor_id: int) -> StockTake:
    """
    Record counted quantities for some lines. Repeatable; lines not named
    in ``updates`` keep whatever they had.

    Raises:
        InvalidState: Stock take is not IN_PROGRESS
        ValidationError: No updates, or a negative counted quantity
        NotFound: line_id does not belong to this stock take
    """
    def _op():
        stock_take = _get_stock_take_for_update(stock_take_id)
        next_stock_take_status(stock_take.status, StockTakeAction.SAVE_COUNTS)

        counts = [
            update if isinstance(update, CountUpdate) else CountUpdate.from_dict(update)
            for update in (updates or [])
        ]
        if not counts:
            raise ValidationError("No counts given", field="counts")

        lines_by_id = {line.id: line for line in stock_take.lines}
        for count in counts:
            line = lines_by_id.get(count.line_id)
            if line is None:
                raise NotFound("stock take line", count.line_id)
            counted = to_quantity(count.counted_qty, "counted_qty")
            if counted < 0:
                raise ValidationError("counted_qty cannot be negative", field="counted_qty")
            line.counted_qty = counted
            if count.note is not None:
                line.note = count.note

        bump_version(stock_take)
        db.session.flush()

        record_after_commit(actor_id, "SAVE_COUNTS", REF_STOCK_TAKE, stock_take.id, {
            "code": stock_take.code,
            "line_ids": [count.line_id for count in counts],
        })
        return stock_take

    return run_in_transaction(_op)


def complete_stock_take(stock_take_id: int, actor_id: int) -> StockTake:
    def _op():
        stock_take = _get_stock_take_for_update(stock_take_id)
        new_status = next_stock_take_status(stock_take.status, StockTakeAction.COMPLETE)

        uncounted = [line for line in stock_take.lines if line.counted_qty is None]
        if uncounted:
            raise ValidationError(
                f"{len(uncounted)} line(s) have not been counted",
                field="counted_qty",
            )

        variance_lines = 0
        for line in stock_take.lines:
            line.variance = Decimal(line.counted_qty) - Decimal(line.system_qty)
            if line.variance != 0:
                variance_lines += 1

        stock_take.status = new_status.value
        stock_take.completed_at = utcnow()
        db.session.flush()

        record_after_commit(actor_id, "COMPLETE", REF_STOCK_TAKE, stock_take.id, {
            "code": stock_take.code,
            "variance_lines": variance_lines,
        })
        notify_approvers_after_commit(TOPIC_STOCK_TAKE_COMPLETED, {
            "stock_take_id": stock_take.id,
            "code": stock_take.code,
            "warehouse_id": stock_take.warehouse_id,
            "variance_lines": variance_lines,
        })
        return stock_take

    return run_in_transaction(_op)


def approve_stock_take(stock_take_id: int, actor_id: int) -> StockTake:
    """
    COMPLETED -> APPROVED.

    Non-zero variances become one ADJUST movement, inserted directly as
    POSTED and applied as deltas in this same transaction. A balance that
    moved since the snapshot keeps those later changes; if a negative
    variance now exceeds what is on hand the whole approval fails with
    InsufficientStock.
    """
    def _op():
        stock_take = _get_stock_take_for_update(stock_take_id)
        new_status = next_stock_take_status(stock_take.status, StockTakeAction.APPROVE)
        now = utcnow()

        variance_lines = [
            line for line in stock_take.lines
            if line.variance is not None and Decimal(line.variance) != 0
        ]
        if variance_lines:
            movement = build_movement(
                MovementType.ADJUST,
                [
                    MovementLineInput(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        to_location_id=line.location_id,
                        quantity=Decimal(line.variance),
                        unit_cost=ZERO,
                        note=line.note,
                    )
                    for line in variance_lines
                ],
                actor_id,
                status=MovementStatus.POSTED,
                doc_number=allocate_adjustment_number(),
                note=f"Stock take {stock_take.code} adjustment",
                ref_type=REF_STOCK_TAKE,
                ref_id=stock_take.id,
            )
            movement.approved_by_user_id = actor_id
            movement.approved_at = now
            movement.posted_at = now

            apply_deltas(movement_deltas(movement))
            stock_take.adjustment_movement_id = movement.id

            record_after_commit(actor_id, "POST", REF_MOVEMENT, movement.id, {
                "doc_number": movement.doc_number,
                "type": movement.type,
                "stock_take": stock_take.code,
            })

        stock_take.status = new_status.value
        stock_take.approved_by_user_id = actor_id
        stock_take.approved_at = now
        db.session.flush()

        record_after_commit(actor_id, "APPROVE", REF_STOCK_TAKE, stock_take.id, {
            "code": stock_take.code,
            "variance_lines": len(variance_lines),
            "adjustment_movement_id": stock_take.adjustment_movement_id,
        })
        return stock_take

    return run_in_transaction(_op)


def cancel_stock_take(stock_take_id: int, actor_id: int, reason: str | None = None) -> StockTake:
    def _op():
        stock_take = _get_stock_take_for_update(stock_take_id)
        new_status = next_stock_take_status(stock_take.status, StockTakeAction.CANCEL)

        stock_take.status = new_status.value
        stock_take.cancelled_at = utcnow()
        if reason:
            entry = f"[CANCELLED] {reason}"
            stock_take.note = f"{stock_take.note}\n{entry}" if stock_take.note else entry
        db.session.flush()

        record_after_commit(actor_id, "CANCEL", REF_STOCK_TAKE, stock_take.id, {
            "code": stock_take.code,
            "reason": reason,
        })
        return stock_take

    return run_in_transaction(_op)


def get_stock_take(stock_take_id: int) -> StockTake:
    stock_take = db.session.get(StockTake, stock_take_id)
    if not stock_take:
        raise NotFound("stock take", stock_take_id)
    return stock_take


def get_stock_take_summary(stock_take_id: int) -> dict:
    stock_take = get_stock_take(stock_take_id)
    lines = stock_take.lines
    total_variance = sum((Decimal(line.variance) for line in lines if line.variance is not None), ZERO)

    data = stock_take.to_dict()
    data["lines"] = [line.to_dict() for line in lines]
    data["total_lines"] = len(lines)
    data["counted_lines"] = sum(1 for line in lines if line.counted_qty is not None)
    data["variance_lines"] = sum(1 for line in lines if line.variance is not None and line.variance != 0)
    data["total_variance"] = format_quantity(total_variance)
    return data
