from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from stockledger.quantities import Quantity, format_quantity
from stockledger.time_utils import to_utc_z


class StockBalance(db.Model):
    """
    Authoritative quantity on hand per (product, variant, location).

    INVARIANTS:
    - One row per key. Two partial unique indexes cover the NULL-variant
      case, which a plain composite unique constraint would not.
    - quantity_on_hand is never negative after a posting commits.
    - Rows are created on first increment and never deleted.
    - Only services.posting_service writes quantity_on_hand.
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.Index(
            "uq_stock_balances_product_location",
            "product_id",
            "location_id",
            unique=True,
            sqlite_where=text("variant_id IS NULL"),
            postgresql_where=text("variant_id IS NULL"),
        ),
        db.Index(
            "uq_stock_balances_product_variant_location",
            "product_id",
            "variant_id",
            "location_id",
            unique=True,
            sqlite_where=text("variant_id IS NOT NULL"),
            postgresql_where=text("variant_id IS NOT NULL"),
        ),
        db.Index("ix_stock_balances_location", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    quantity_on_hand = db.Column(Quantity(), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    location = db.relationship("Location")

    def __repr__(self) -> str:
        return (
            f"<StockBalance product_id={self.product_id} variant_id={self.variant_id} "
            f"location_id={self.location_id} qty={self.quantity_on_hand}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "quantity_on_hand": format_quantity(self.quantity_on_hand),
            "updated_at": to_utc_z(self.updated_at),
        }
