# Overview: Document number allocation (movements, stock takes, stock-take adjustments).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import LedgerError
from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import year_month_stamp


DOC_TYPE_MOVEMENT = "MOVEMENT"
DOC_TYPE_STOCK_TAKE = "STOCK_TAKE"

# doc_type -> (prefix, pad_length, separator between yymm and the number)
SEQUENCE_DEFAULTS = {
    DOC_TYPE_MOVEMENT: ("MV", 6, "-"),
    DOC_TYPE_STOCK_TAKE: ("ST", 6, ""),
}

# Stock-take adjustments draw from the MOVEMENT counter with their own prefix
ADJUSTMENT_PREFIX = "ADJ"


class DocumentSequenceError(LedgerError):
    """Sequence misuse by internal callers (unknown document type)."""

    code = "DOCUMENT_SEQUENCE_ERROR"
    http_status = 500


def _increment_stmt(doc_type: str):
    return (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == doc_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )


def _read_allocated(doc_type: str) -> tuple[int, DocumentSequence]:
    seq = (
        db.session.query(DocumentSequence)
        .filter_by(document_type=doc_type)
        .populate_existing()
        .one()
    )
    return seq.next_number - 1, seq


def _next_number(doc_type: str) -> tuple[int, str, int]:
    """
    Atomically reserve the next number for ``doc_type``.

    Runs inside the caller's transaction and never commits. The UPDATE takes
    the row's write lock, so two transactions can never read back the same
    value. A missing sequence row is created inside a savepoint; losing that
    insert race falls back to the UPDATE path.

    Returns:
        (number, prefix, pad_length)
    """
    if doc_type not in SEQUENCE_DEFAULTS:
        raise DocumentSequenceError(f"Unknown document type: {doc_type}", doc_type=doc_type)

    stmt = _increment_stmt(doc_type)
    result = db.session.execute(stmt)
    if result.rowcount:
        number, seq = _read_allocated(doc_type)
        return number, seq.prefix, seq.pad_length

    prefix, pad_length, _ = SEQUENCE_DEFAULTS[doc_type]
    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(
                document_type=doc_type,
                prefix=prefix,
                pad_length=pad_length,
                next_number=2,
            ))
        return 1, prefix, pad_length
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        number, seq = _read_allocated(doc_type)
        return number, seq.prefix, seq.pad_length


def allocate(doc_type: str) -> str:
    """
    Allocate a document number.

    MOVEMENT   -> MV2610-000001
    STOCK_TAKE -> ST2610000001

    Gaps are possible when the creating transaction rolls back; duplicates
    are not.
    """
    number, prefix, pad_length = _next_number(doc_type)
    separator = SEQUENCE_DEFAULTS[doc_type][2]
    return f"{prefix}{year_month_stamp()}{separator}{number:0{pad_length}d}"


def allocate_adjustment_number() -> str:
    """ADJ2610000001, numbered from the MOVEMENT sequence."""
    number, _, pad_length = _next_number(DOC_TYPE_MOVEMENT)
    return f"{ADJUSTMENT_PREFIX}{year_month_stamp()}{number:0{pad_length}d}"


def ensure_sequences() -> list[str]:
    """
    Create missing sequence rows with their default prefix/padding.

    Returns the document types that were created. Caller commits.
    """
    existing = {
        row.document_type
        for row in db.session.query(DocumentSequence.document_type).all()
    }
    created = []
    for doc_type, (prefix, pad_length, _) in SEQUENCE_DEFAULTS.items():
        if doc_type in existing:
            continue
        db.session.add(DocumentSequence(
            document_type=doc_type,
            prefix=prefix,
            pad_length=pad_length,
            next_number=1,
        ))
        created.append(doc_type)
    db.session.flush()
    return created


def list_sequences() -> list[DocumentSequence]:
    return db.session.query(DocumentSequence).order_by(DocumentSequence.document_type).all()
