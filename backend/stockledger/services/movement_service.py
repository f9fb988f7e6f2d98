# backend/stockledger/services/movement_service.py
"""
Stock movement document service.

WHY: Receipts, issues, transfers, adjustments and returns all change stock
the same way: a document is drafted, reviewed, and only when POSTED are its
line effects applied to balances, all at once or not at all.

LIFECYCLE:
1. DRAFT: Created, lines replaceable (update)
2. SUBMITTED: Approvers notified
3. APPROVED: Approver recorded, no stock effect yet
4. POSTED: Balances updated through the posting executor
5. REJECTED / CANCELLED: Terminal, reason appended to the note

LINE EFFECTS WHEN POSTED:
- RECEIVE, RETURN: +quantity at to_location
- ISSUE: -quantity at from_location
- TRANSFER: -quantity at from_location, then +quantity at to_location
- ADJUST: signed quantity at to_location
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable

from flask import current_app

from ..errors import InvalidState, LedgerError, NotFound, ValidationError
from ..extensions import db
from ..models import Location, Product, ProductVariant, StockMovement, StockMovementLine, User
from ..quantities import to_quantity
from ..time_utils import utcnow
from .audit_service import REF_MOVEMENT, record_after_commit
from .concurrency import bump_version, lock_for_update, run_in_transaction
from .document_service import DOC_TYPE_MOVEMENT, allocate
from .lifecycle_service import MovementAction, MovementStatus, MovementType, next_movement_status
from .notification_service import (
    TOPIC_MOVEMENT_POSTED,
    TOPIC_MOVEMENT_SUBMITTED,
    notify_after_commit,
    notify_approvers_after_commit,
)
from .posting_service import BalanceDelta, apply_deltas


# ref_type values for generated movements (stock-take adjustments use STOCK_TAKE)
REF_REVERSAL = "REVERSAL"
REF_RETURN_FROM = "RETURN_FROM"

# Types whose lines need a destination location
TO_LOCATION_TYPES = (MovementType.RECEIVE, MovementType.RETURN, MovementType.ADJUST, MovementType.TRANSFER)
# Types whose lines need a source location
FROM_LOCATION_TYPES = (MovementType.ISSUE, MovementType.TRANSFER)

REVERSAL_TYPES = {
    MovementType.RECEIVE: MovementType.ISSUE,
    MovementType.ISSUE: MovementType.RECEIVE,
    MovementType.RETURN: MovementType.ISSUE,
    MovementType.TRANSFER: MovementType.TRANSFER,
    MovementType.ADJUST: MovementType.ADJUST,
}


def _optional_int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer", field=key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", field=key)


def _required_int(data: dict, key: str) -> int:
    value = _optional_int(data, key)
    if value is None:
        raise ValidationError(f"{key} is required", field=key)
    return value


@dataclass
class MovementLineInput:
    product_id: int
    quantity: Decimal
    variant_id: int | None = None
    from_location_id: int | None = None
    to_location_id: int | None = None
    unit_cost: Decimal | None = None
    note: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "MovementLineInput":
        if not isinstance(data, dict):
            raise ValidationError("Each line must be an object", field="lines")
        unit_cost = data.get("unit_cost")
        return cls(
            product_id=_required_int(data, "product_id"),
            quantity=to_quantity(data.get("quantity")),
            variant_id=_optional_int(data, "variant_id"),
            from_location_id=_optional_int(data, "from_location_id"),
            to_location_id=_optional_int(data, "to_location_id"),
            unit_cost=to_quantity(unit_cost, "unit_cost") if unit_cost is not None else None,
            note=data.get("note"),
        )


@dataclass
class ReturnLineInput:
    """Quantity to take back from one line of a posted ISSUE."""
    line_id: int
    quantity: Decimal

    @classmethod
    def from_dict(cls, data: dict) -> "ReturnLineInput":
        if not isinstance(data, dict):
            raise ValidationError("Each line must be an object", field="lines")
        return cls(
            line_id=_required_int(data, "line_id"),
            quantity=to_quantity(data.get("quantity")),
        )


def parse_movement_type(value: Any) -> MovementType:
    try:
        return MovementType(str(value).upper())
    except ValueError:
        allowed = ", ".join(t.value for t in MovementType)
        raise ValidationError(f"Invalid movement type: {value} (expected one of {allowed})", field="type")


def _coerce_lines(lines: Iterable[MovementLineInput | dict] | None) -> list[MovementLineInput]:
    return [
        line if isinstance(line, MovementLineInput) else MovementLineInput.from_dict(line)
        for line in (lines or [])
    ]


def _validate_lines(movement_type: MovementType, lines: list[MovementLineInput]) -> None:
    """
    Shape and reference checks for a movement's lines.

    Raises:
        ValidationError: Missing lines, locations or bad quantities
        NotFound: Unknown product, variant or location
    """
    if not lines:
        raise ValidationError("Movement must have at least one line", field="lines")

    for index, line in enumerate(lines, start=1):
        quantity = to_quantity(line.quantity)
        if movement_type != MovementType.ADJUST and quantity <= 0:
            raise ValidationError(f"Line {index}: quantity must be greater than 0", field="quantity")
        if movement_type in TO_LOCATION_TYPES and line.to_location_id is None:
            raise ValidationError(
                f"Line {index}: to_location_id is required for {movement_type.value}",
                field="to_location_id",
            )
        if movement_type in FROM_LOCATION_TYPES and line.from_location_id is None:
            raise ValidationError(
                f"Line {index}: from_location_id is required for {movement_type.value}",
                field="from_location_id",
            )
        if movement_type == MovementType.TRANSFER and line.from_location_id == line.to_location_id:
            raise ValidationError(
                f"Line {index}: cannot transfer to the same location",
                field="to_location_id",
            )

        if db.session.get(Product, line.product_id) is None:
            raise NotFound("product", line.product_id)
        if line.variant_id is not None:
            variant = db.session.get(ProductVariant, line.variant_id)
            if variant is None:
                raise NotFound("variant", line.variant_id)
            if variant.product_id != line.product_id:
                raise ValidationError(
                    f"Line {index}: variant {line.variant_id} does not belong to product {line.product_id}",
                    field="variant_id",
                )
        for location_id in (line.from_location_id, line.to_location_id):
            if location_id is not None and db.session.get(Location, location_id) is None:
                raise NotFound("location", location_id)


def _require_actor(actor_id: int) -> None:
    if db.session.get(User, actor_id) is None:
        raise NotFound("user", actor_id)


def _get_movement_for_update(movement_id: int) -> StockMovement:
    movement = lock_for_update(
        db.session.query(StockMovement).filter_by(id=movement_id)
    ).first()
    if not movement:
        raise NotFound("movement", movement_id)
    return movement


def _build_lines(lines: list[MovementLineInput]) -> list[StockMovementLine]:
    return [
        StockMovementLine(
            line_no=line_no,
            product_id=line.product_id,
            variant_id=line.variant_id,
            from_location_id=line.from_location_id,
            to_location_id=line.to_location_id,
            quantity=to_quantity(line.quantity),
            unit_cost=line.unit_cost,
            note=line.note,
        )
        for line_no, line in enumerate(lines, start=1)
    ]


def build_movement(
    movement_type: MovementType,
    lines: list[MovementLineInput],
    actor_id: int,
    *,
    status: MovementStatus = MovementStatus.DRAFT,
    doc_number: str | None = None,
    note: str | None = None,
    reason: str | None = None,
    ref_type: str | None = None,
    ref_id: int | None = None,
) -> StockMovement:
    """
    Persist a movement and its lines inside the current transaction.

    Lines must already be validated. Used by create/reverse/return here and
    by stock-take approval (which inserts its adjustment directly as POSTED).
    """
    movement = StockMovement(
        doc_number=doc_number or allocate(DOC_TYPE_MOVEMENT),
        type=movement_type.value,
        status=status.value,
        note=note,
        reason=reason,
        ref_type=ref_type,
        ref_id=ref_id,
        created_by_user_id=actor_id,
    )
    movement.lines = _build_lines(lines)
    db.session.add(movement)
    db.session.flush()
    return movement


def _append_note(note: str | None, tag: str, reason: str | None) -> str | None:
    if not reason:
        return note
    entry = f"[{tag}] {reason}"
    return f"{note}\n{entry}" if note else entry


def movement_deltas(movement: StockMovement) -> list[BalanceDelta]:
    """Balance changes a movement makes when posted, in line order."""
    movement_type = MovementType(movement.type)
    deltas = []
    for line in movement.lines:
        qty = Decimal(line.quantity)
        if movement_type in (MovementType.RECEIVE, MovementType.RETURN):
            deltas.append(BalanceDelta(line.product_id, line.variant_id, line.to_location_id, qty))
        elif movement_type == MovementType.ISSUE:
            deltas.append(BalanceDelta(line.product_id, line.variant_id, line.from_location_id, -qty))
        elif movement_type == MovementType.TRANSFER:
            deltas.append(BalanceDelta(line.product_id, line.variant_id, line.from_location_id, -qty))
            deltas.append(BalanceDelta(line.product_id, line.variant_id, line.to_location_id, qty))
        elif movement_type == MovementType.ADJUST:
            deltas.append(BalanceDelta(line.product_id, line.variant_id, line.to_location_id, qty))
    return deltas


def create_movement(
    movement_type: MovementType | str,
    lines: Iterable[MovementLineInput | dict],
    actor_id: int,
    *,
    note: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Create a movement in DRAFT. No stock effect.

    Raises:
        ValidationError: No lines, malformed lines
        NotFound: Unknown actor, product, variant or location
    """
    def _op():
        mtype = parse_movement_type(movement_type)
        line_inputs = _coerce_lines(lines)
        _require_actor(actor_id)
        _validate_lines(mtype, line_inputs)

        movement = build_movement(mtype, line_inputs, actor_id, note=note, reason=reason)
        record_after_commit(actor_id, "CREATE", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "type": movement.type,
            "line_count": len(line_inputs),
        })
        return movement

    return run_in_transaction(_op)


def update_movement(
    movement_id: int,
    actor_id: int,
    *,
    lines: Iterable[MovementLineInput | dict] | None = None,
    note: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Edit a DRAFT movement. Supplied lines replace the existing set wholesale,
    so repeating the same update leaves one equivalent line set.
    """
    def _op():
        movement = _get_movement_for_update(movement_id)
        next_movement_status(movement.status, MovementAction.EDIT)

        if lines is not None:
            line_inputs = _coerce_lines(lines)
            _validate_lines(MovementType(movement.type), line_inputs)
            movement.lines.clear()
            # Old rows must be gone before new ones reuse their line numbers
            db.session.flush()
            movement.lines = _build_lines(line_inputs)
        if note is not None:
            movement.note = note
        if reason is not None:
            movement.reason = reason

        bump_version(movement)
        db.session.flush()
        record_after_commit(actor_id, "UPDATE", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "line_count": len(movement.lines),
        })
        return movement

    return run_in_transaction(_op)


def submit_movement(movement_id: int, actor_id: int) -> StockMovement:
    def _op():
        movement = _get_movement_for_update(movement_id)
        new_status = next_movement_status(movement.status, MovementAction.SUBMIT)
        if not movement.lines:
            raise ValidationError("Cannot submit a movement without lines", field="lines")

        movement.status = new_status.value
        db.session.flush()

        record_after_commit(actor_id, "SUBMIT", REF_MOVEMENT, movement.id, {"doc_number": movement.doc_number})
        notify_approvers_after_commit(TOPIC_MOVEMENT_SUBMITTED, {
            "movement_id": movement.id,
            "doc_number": movement.doc_number,
            "type": movement.type,
            "submitted_by": actor_id,
        })
        return movement

    return run_in_transaction(_op)


def approve_movement(movement_id: int, actor_id: int) -> StockMovement:
    """SUBMITTED -> APPROVED. Records the approver; balances are untouched."""
    def _op():
        movement = _get_movement_for_update(movement_id)
        new_status = next_movement_status(movement.status, MovementAction.APPROVE)

        movement.status = new_status.value
        movement.approved_by_user_id = actor_id
        movement.approved_at = utcnow()
        db.session.flush()

        record_after_commit(actor_id, "APPROVE", REF_MOVEMENT, movement.id, {"doc_number": movement.doc_number})
        return movement

    return run_in_transaction(_op)


def reject_movement(movement_id: int, actor_id: int, reason: str | None = None) -> StockMovement:
    def _op():
        movement = _get_movement_for_update(movement_id)
        new_status = next_movement_status(movement.status, MovementAction.REJECT)

        movement.status = new_status.value
        movement.note = _append_note(movement.note, "REJECTED", reason)
        db.session.flush()

        record_after_commit(actor_id, "REJECT", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "reason": reason,
        })
        return movement

    return run_in_transaction(_op)


def post_movement(movement_id: int, actor_id: int) -> StockMovement:
    """
    APPROVED -> POSTED, applying every line effect in one transaction.

    Raises:
        InvalidState: Movement is not APPROVED
        InsufficientStock: A decrement exceeds on-hand; nothing is applied
    """
    def _op():
        movement = _get_movement_for_update(movement_id)
        new_status = next_movement_status(movement.status, MovementAction.POST)

        apply_deltas(movement_deltas(movement))

        movement.status = new_status.value
        movement.posted_at = utcnow()
        db.session.flush()

        current_app.logger.info("Posted movement %s (%d lines)", movement.doc_number, len(movement.lines))
        record_after_commit(actor_id, "POST", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "type": movement.type,
            "line_count": len(movement.lines),
        })
        notify_after_commit([movement.created_by_user_id], TOPIC_MOVEMENT_POSTED, {
            "movement_id": movement.id,
            "doc_number": movement.doc_number,
            "type": movement.type,
            "posted_by": actor_id,
        })
        return movement

    return run_in_transaction(_op)


def cancel_movement(movement_id: int, actor_id: int, reason: str | None = None) -> StockMovement:
    def _op():
        movement = _get_movement_for_update(movement_id)
        new_status = next_movement_status(movement.status, MovementAction.CANCEL)

        movement.status = new_status.value
        movement.note = _append_note(movement.note, "CANCELLED", reason)
        db.session.flush()

        record_after_commit(actor_id, "CANCEL", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "reason": reason,
        })
        return movement

    return run_in_transaction(_op)


def reverse_movement(movement_id: int, actor_id: int, note: str | None = None) -> StockMovement:
    """
    Draft a movement that undoes a POSTED one.

    RECEIVE/RETURN become ISSUE, ISSUE becomes RECEIVE, TRANSFER swaps its
    locations and ADJUST negates its quantity. The reversal goes through the
    normal lifecycle; only one live (not cancelled/rejected) reversal may
    reference a movement.
    """
    def _op():
        _require_actor(actor_id)
        original = _get_movement_for_update(movement_id)
        if original.status != MovementStatus.POSTED.value:
            raise InvalidState(
                "movement", original.status, "reverse",
                message=f"Only POSTED movements can be reversed ({original.doc_number} is {original.status})",
            )

        existing = (
            db.session.query(StockMovement)
            .filter(
                StockMovement.ref_type == REF_REVERSAL,
                StockMovement.ref_id == original.id,
                StockMovement.status.notin_([MovementStatus.CANCELLED.value, MovementStatus.REJECTED.value]),
            )
            .first()
        )
        if existing:
            raise InvalidState(
                "movement", original.status, "reverse",
                message=f"Movement {original.doc_number} already has reversal {existing.doc_number}",
            )

        original_type = MovementType(original.type)
        reversal_type = REVERSAL_TYPES[original_type]
        line_inputs = []
        for line in original.lines:
            if original_type in (MovementType.RECEIVE, MovementType.RETURN):
                from_id, to_id, qty = line.to_location_id, None, line.quantity
            elif original_type == MovementType.ISSUE:
                from_id, to_id, qty = None, line.from_location_id, line.quantity
            elif original_type == MovementType.TRANSFER:
                from_id, to_id, qty = line.to_location_id, line.from_location_id, line.quantity
            else:
                from_id, to_id, qty = None, line.to_location_id, -Decimal(line.quantity)
            line_inputs.append(MovementLineInput(
                product_id=line.product_id,
                variant_id=line.variant_id,
                from_location_id=from_id,
                to_location_id=to_id,
                quantity=qty,
                unit_cost=line.unit_cost,
                note=line.note,
            ))

        reversal = build_movement(
            reversal_type,
            line_inputs,
            actor_id,
            note=note or f"Reversal of {original.doc_number}",
            reason=original.reason,
            ref_type=REF_REVERSAL,
            ref_id=original.id,
        )
        record_after_commit(actor_id, "CREATE", REF_MOVEMENT, reversal.id, {
            "doc_number": reversal.doc_number,
            "type": reversal.type,
            "reversal_of": original.doc_number,
        })
        return reversal

    return run_in_transaction(_op)


def create_return_from_issue(
    issue_id: int,
    lines: Iterable[ReturnLineInput | dict],
    actor_id: int,
    *,
    note: str | None = None,
) -> StockMovement:
    """
    Draft a RETURN for goods previously issued by a POSTED ISSUE.

    Each return line points at an issue line and takes its product/variant;
    the goods go back to the location they were issued from.
    """
    def _op():
        _require_actor(actor_id)
        return_lines = [
            line if isinstance(line, ReturnLineInput) else ReturnLineInput.from_dict(line)
            for line in (lines or [])
        ]
        if not return_lines:
            raise ValidationError("Return must have at least one line", field="lines")

        issue = _get_movement_for_update(issue_id)
        if issue.type != MovementType.ISSUE.value or issue.status != MovementStatus.POSTED.value:
            raise InvalidState(
                "movement", issue.status, "return from",
                message=f"Returns can only be created from a POSTED ISSUE ({issue.doc_number} is {issue.status} {issue.type})",
            )

        issue_lines = {line.id: line for line in issue.lines}
        line_inputs = []
        for return_line in return_lines:
            source = issue_lines.get(return_line.line_id)
            if source is None:
                raise NotFound("movement line", return_line.line_id)
            qty = to_quantity(return_line.quantity)
            if qty <= 0:
                raise ValidationError(f"Return quantity for line {source.line_no} must be greater than 0", field="quantity")
            if qty > Decimal(source.quantity):
                raise ValidationError(
                    f"Return quantity for line {source.line_no} exceeds issued quantity",
                    field="quantity",
                )
            line_inputs.append(MovementLineInput(
                product_id=source.product_id,
                variant_id=source.variant_id,
                to_location_id=source.from_location_id,
                quantity=qty,
                unit_cost=source.unit_cost,
            ))

        movement = build_movement(
            MovementType.RETURN,
            line_inputs,
            actor_id,
            note=note or f"Return from {issue.doc_number}",
            ref_type=REF_RETURN_FROM,
            ref_id=issue.id,
        )
        record_after_commit(actor_id, "CREATE", REF_MOVEMENT, movement.id, {
            "doc_number": movement.doc_number,
            "type": movement.type,
            "return_from": issue.doc_number,
        })
        return movement

    return run_in_transaction(_op)


# =============================================================================
# Batch operations
# =============================================================================

def _doc_number_or_none(movement_id) -> str | None:
    return (
        db.session.query(StockMovement.doc_number)
        .filter_by(id=movement_id)
        .scalar()
    )


def _run_batch(movement_ids: Iterable[int], operation: Callable[[int], StockMovement]) -> dict:
    """
    Apply ``operation`` to each id in its own transaction.

    One failing document never blocks the others; failures are reported
    per id instead of raised.
    """
    ids = list(movement_ids or [])
    if not ids:
        raise ValidationError("No movement ids given", field="ids")
    max_size = current_app.config.get("BATCH_MAX_SIZE", 50)
    if len(ids) > max_size:
        raise ValidationError(f"Batch size {len(ids)} exceeds maximum of {max_size}", field="ids")

    results = []
    for movement_id in ids:
        try:
            movement = operation(movement_id)
            results.append({
                "id": movement_id,
                "doc_number": movement.doc_number,
                "success": True,
                "error": None,
            })
        except LedgerError as e:
            results.append({
                "id": movement_id,
                "doc_number": _doc_number_or_none(movement_id),
                "success": False,
                "error": e.message,
            })

    succeeded = sum(1 for r in results if r["success"])
    return {
        "total": len(ids),
        "succeeded": succeeded,
        "failed": len(ids) - succeeded,
        "results": results,
    }


def batch_approve_movements(movement_ids: Iterable[int], actor_id: int) -> dict:
    return _run_batch(movement_ids, lambda mid: approve_movement(mid, actor_id))


def batch_reject_movements(movement_ids: Iterable[int], actor_id: int, reason: str | None = None) -> dict:
    return _run_batch(movement_ids, lambda mid: reject_movement(mid, actor_id, reason))


def batch_post_movements(movement_ids: Iterable[int], actor_id: int) -> dict:
    return _run_batch(movement_ids, lambda mid: post_movement(mid, actor_id))


def batch_cancel_movements(movement_ids: Iterable[int], actor_id: int, reason: str | None = None) -> dict:
    """Cancel DRAFT, SUBMITTED or APPROVED movements; others are reported as failures."""
    return _run_batch(movement_ids, lambda mid: cancel_movement(mid, actor_id, reason))


# =============================================================================
# Reads
# =============================================================================

def get_movement(movement_id: int) -> StockMovement:
    movement = db.session.get(StockMovement, movement_id)
    if not movement:
        raise NotFound("movement", movement_id)
    return movement


def get_movement_summary(movement_id: int) -> dict:
    """Movement with its lines, for detail views."""
    movement = get_movement(movement_id)
    data = movement.to_dict()
    data["lines"] = [line.to_dict() for line in movement.lines]
    data["line_count"] = len(movement.lines)
    return data
