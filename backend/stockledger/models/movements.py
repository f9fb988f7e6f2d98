from __future__ import annotations

from ..extensions import db
from stockledger.quantities import Quantity, format_quantity
from stockledger.time_utils import to_utc_z


class StockMovement(db.Model):
    """
    Stock movement document (receive, issue, transfer, adjust, return).

    LIFECYCLE (see services.lifecycle_service.MOVEMENT_TRANSITIONS):
    1. DRAFT: Created, lines replaceable
    2. SUBMITTED: Waiting for an approver
    3. APPROVED: Reviewed, not yet affecting stock
    4. POSTED: Line effects applied to stock balances (terminal)
    5. REJECTED / CANCELLED: Terminal, never affect stock

    ref_type/ref_id back-link generated documents to their origin
    (STOCK_TAKE, REVERSAL, RETURN_FROM).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_status_created", "status", "created_at"),
        db.Index("ix_stock_movements_ref", "ref_type", "ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "MV2610-000123"), immutable once allocated
    doc_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # RECEIVE, ISSUE, TRANSFER, ADJUST, RETURN
    type = db.Column(db.String(16), nullable=False, index=True)

    # DRAFT, SUBMITTED, APPROVED, REJECTED, POSTED, CANCELLED
    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    ref_type = db.Column(db.String(32), nullable=True)
    ref_id = db.Column(db.Integer, nullable=True)

    # Free text; reject/cancel reasons are appended here
    note = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    posted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "StockMovementLine",
        backref="movement",
        order_by="StockMovementLine.line_no",
        cascade="all, delete-orphan",
        lazy=True,
    )
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockMovement id={self.id} doc_number={self.doc_number!r} type={self.type} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "doc_number": self.doc_number,
            "type": self.type,
            "status": self.status,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "note": self.note,
            "reason": self.reason,
            "created_by_user_id": self.created_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "posted_at": to_utc_z(self.posted_at) if self.posted_at else None,
            "version_id": self.version_id,
        }


class StockMovementLine(db.Model):
    """
    One product/variant quantity on a movement.

    Which of from/to location is set depends on the movement type.
    Quantity is signed only for ADJUST. Lines are replaced wholesale
    while the movement is DRAFT and frozen afterwards.
    """
    __tablename__ = "stock_movement_lines"
    __table_args__ = (
        db.UniqueConstraint("movement_id", "line_no", name="uq_movement_lines_movement_line_no"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=False, index=True)
    line_no = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)
    from_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    to_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    quantity = db.Column(Quantity(), nullable=False)

    # Input value only; no costing is derived from it
    unit_cost = db.Column(Quantity(), nullable=True)
    note = db.Column(db.Text, nullable=True)

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    from_location = db.relationship("Location", foreign_keys=[from_location_id])
    to_location = db.relationship("Location", foreign_keys=[to_location_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "movement_id": self.movement_id,
            "line_no": self.line_no,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "quantity": format_quantity(self.quantity),
            "unit_cost": format_quantity(self.unit_cost),
            "note": self.note,
        }
