# Overview: Document lifecycle state machines for movements and stock takes.

"""
Stock Ledger Document Lifecycles

================================================================================
PURPOSE: One table per document type decides every status change
================================================================================

MOVEMENT:
    DRAFT -> SUBMITTED -> APPROVED -> POSTED
    SUBMITTED -> REJECTED
    DRAFT / SUBMITTED / APPROVED -> CANCELLED

    DRAFT:     Lines editable, no stock effect
    SUBMITTED: Waiting for approval
    APPROVED:  Reviewed, still no stock effect (can be inspected before posting)
    POSTED:    IMMUTABLE, stock balances updated
    REJECTED / CANCELLED: IMMUTABLE, never affect stock

STOCK TAKE:
    DRAFT -> IN_PROGRESS -> COMPLETED -> APPROVED
    DRAFT / IN_PROGRESS / COMPLETED -> CANCELLED

RULES:
1. Cannot skip states
2. Cannot reverse states
3. Terminal states accept no action at all
4. A (status, action) pair missing from the table is an InvalidState error

================================================================================
"""

from __future__ import annotations

from enum import Enum

from ..errors import InvalidState


class MovementType(str, Enum):
    RECEIVE = "RECEIVE"
    ISSUE = "ISSUE"
    TRANSFER = "TRANSFER"
    ADJUST = "ADJUST"
    RETURN = "RETURN"


class MovementStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    POSTED = "POSTED"
    CANCELLED = "CANCELLED"


class MovementAction(str, Enum):
    EDIT = "EDIT"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    POST = "POST"
    CANCEL = "CANCEL"


class StockTakeStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


class StockTakeAction(str, Enum):
    START = "START"
    SAVE_COUNTS = "SAVE_COUNTS"
    COMPLETE = "COMPLETE"
    APPROVE = "APPROVE"
    CANCEL = "CANCEL"


MOVEMENT_TRANSITIONS: dict[tuple[MovementStatus, MovementAction], MovementStatus] = {
    (MovementStatus.DRAFT, MovementAction.EDIT): MovementStatus.DRAFT,
    (MovementStatus.DRAFT, MovementAction.SUBMIT): MovementStatus.SUBMITTED,
    (MovementStatus.DRAFT, MovementAction.CANCEL): MovementStatus.CANCELLED,
    (MovementStatus.SUBMITTED, MovementAction.APPROVE): MovementStatus.APPROVED,
    (MovementStatus.SUBMITTED, MovementAction.REJECT): MovementStatus.REJECTED,
    (MovementStatus.SUBMITTED, MovementAction.CANCEL): MovementStatus.CANCELLED,
    (MovementStatus.APPROVED, MovementAction.POST): MovementStatus.POSTED,
    (MovementStatus.APPROVED, MovementAction.CANCEL): MovementStatus.CANCELLED,
}

STOCK_TAKE_TRANSITIONS: dict[tuple[StockTakeStatus, StockTakeAction], StockTakeStatus] = {
    (StockTakeStatus.DRAFT, StockTakeAction.START): StockTakeStatus.IN_PROGRESS,
    (StockTakeStatus.DRAFT, StockTakeAction.CANCEL): StockTakeStatus.CANCELLED,
    (StockTakeStatus.IN_PROGRESS, StockTakeAction.SAVE_COUNTS): StockTakeStatus.IN_PROGRESS,
    (StockTakeStatus.IN_PROGRESS, StockTakeAction.COMPLETE): StockTakeStatus.COMPLETED,
    (StockTakeStatus.IN_PROGRESS, StockTakeAction.CANCEL): StockTakeStatus.CANCELLED,
    (StockTakeStatus.COMPLETED, StockTakeAction.APPROVE): StockTakeStatus.APPROVED,
    (StockTakeStatus.COMPLETED, StockTakeAction.CANCEL): StockTakeStatus.CANCELLED,
}

TERMINAL_MOVEMENT_STATUSES = frozenset({
    MovementStatus.POSTED,
    MovementStatus.REJECTED,
    MovementStatus.CANCELLED,
})
TERMINAL_STOCK_TAKE_STATUSES = frozenset({
    StockTakeStatus.APPROVED,
    StockTakeStatus.CANCELLED,
})


def next_movement_status(current: str | MovementStatus, action: MovementAction) -> MovementStatus:
    """
    Resolve the status a movement moves to when ``action`` is applied.

    Raises:
        InvalidState: If the table has no entry for (current, action)
    """
    status = MovementStatus(current)
    try:
        return MOVEMENT_TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidState("movement", status.value, action.value.lower()) from None


def next_stock_take_status(current: str | StockTakeStatus, action: StockTakeAction) -> StockTakeStatus:
    status = StockTakeStatus(current)
    try:
        return STOCK_TAKE_TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidState("stock take", status.value, action.value.lower().replace("_", " ")) from None


def can_transition_movement(current: str | MovementStatus, action: MovementAction) -> bool:
    return (MovementStatus(current), action) in MOVEMENT_TRANSITIONS


def can_transition_stock_take(current: str | StockTakeStatus, action: StockTakeAction) -> bool:
    return (StockTakeStatus(current), action) in STOCK_TAKE_TRANSITIONS
