from __future__ import annotations

from ..extensions import db
from stockledger.quantities import Quantity, format_quantity
from stockledger.time_utils import to_utc_z


class StockTake(db.Model):
    """
    Full physical recount of one warehouse.

    LIFECYCLE:
    1. DRAFT: Lines snapshotted from current balances (system_qty)
    2. IN_PROGRESS: Counts being entered, repeatable partial saves
    3. COMPLETED: Every line counted, variance computed
    4. APPROVED: Variances posted through an ADJUST movement (terminal)
    5. CANCELLED: Abandoned before approval (terminal)
    """
    __tablename__ = "stock_takes"
    __table_args__ = (
        db.Index("ix_stock_takes_warehouse_status", "warehouse_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Document code (e.g., "ST2610000042")
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)

    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    # DRAFT, IN_PROGRESS, COMPLETED, APPROVED, CANCELLED
    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    note = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    counted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ADJUST movement synthesized on approval (NULL when nothing varied)
    adjustment_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    warehouse = db.relationship("Warehouse")
    lines = db.relationship(
        "StockTakeLine",
        backref="stock_take",
        order_by="StockTakeLine.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    adjustment_movement = db.relationship("StockMovement", foreign_keys=[adjustment_movement_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockTake id={self.id} code={self.code!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "warehouse_id": self.warehouse_id,
            "status": self.status,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "counted_by_user_id": self.counted_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "adjustment_movement_id": self.adjustment_movement_id,
            "version_id": self.version_id,
        }


class StockTakeLine(db.Model):
    """
    Expected (system) vs. counted quantity for one balance key.

    system_qty is frozen at creation. variance = counted_qty - system_qty
    is only filled in when the stock take completes.
    """
    __tablename__ = "stock_take_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    stock_take_id = db.Column(db.Integer, db.ForeignKey("stock_takes.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    system_qty = db.Column(Quantity(), nullable=False)
    counted_qty = db.Column(Quantity(), nullable=True)
    variance = db.Column(Quantity(), nullable=True)

    note = db.Column(db.Text, nullable=True)

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    location = db.relationship("Location")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_take_id": self.stock_take_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "system_qty": format_quantity(self.system_qty),
            "counted_qty": format_quantity(self.counted_qty),
            "variance": format_quantity(self.variance),
            "note": self.note,
        }
