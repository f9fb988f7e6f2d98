from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: Prevent race conditions when generating document numbers
    (movements, stock takes). Gaps are fine, duplicates are not.
    """
    __tablename__ = "document_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, unique=True, index=True)
    prefix = db.Column(db.String(16), nullable=False)
    pad_length = db.Column(db.Integer, nullable=False, default=6)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "prefix": self.prefix,
            "pad_length": self.pad_length,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class AuditLog(db.Model):
    """
    Append-only record of document state transitions.

    Rows are written after the transition commits, by the dispatch worker,
    so a failed audit write never undoes a transition.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_ref", "ref_type", "ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    # e.g. SUBMIT, APPROVE, POST, CANCEL
    action = db.Column(db.String(32), nullable=False, index=True)

    # e.g. MOVEMENT, STOCK_TAKE
    ref_type = db.Column(db.String(32), nullable=False)
    ref_id = db.Column(db.Integer, nullable=False)

    # JSON text; keep small
    payload = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
