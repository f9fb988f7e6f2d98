"""
Posting executor tests: balance increments, guarded decrements, key handling.
"""

from decimal import Decimal

import pytest
from sqlalchemy import text

from stockledger.errors import InsufficientStock
from stockledger.models import StockBalance
from stockledger.services.posting_service import (
    BalanceDelta,
    apply_deltas,
    get_quantity_on_hand,
    list_balances,
    snapshot_positive_balances,
)


class TestApplyDeltas:
    def test_increment_creates_missing_row(self, db_session, product, loc_x):
        applied = apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("10"))])
        db_session.commit()

        assert applied == 1
        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("10")
        assert db_session.query(StockBalance).count() == 1

    def test_increment_adds_to_existing_row(self, db_session, product, loc_x, seed_balance):
        seed_balance(product.id, loc_x.id, 4)

        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("2.5"))])
        db_session.commit()

        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("6.5")
        assert db_session.query(StockBalance).count() == 1

    def test_decrement_to_exactly_zero_is_allowed(self, db_session, product, loc_x, seed_balance):
        seed_balance(product.id, loc_x.id, 3)

        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("-3"))])
        db_session.commit()

        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("0")

    def test_decrement_below_zero_raises(self, db_session, product, loc_x, seed_balance):
        seed_balance(product.id, loc_x.id, 10)

        with pytest.raises(InsufficientStock) as exc_info:
            apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("-15"))])
        db_session.rollback()

        err = exc_info.value
        assert err.available == Decimal("10")
        assert err.requested == Decimal("15")
        assert err.location_id == loc_x.id
        assert "Steel Bolt" in err.message
        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("10")

    def test_decrement_of_unknown_key_reports_zero_available(self, db_session, product, loc_x):
        with pytest.raises(InsufficientStock) as exc_info:
            apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("-1"))])
        db_session.rollback()

        assert exc_info.value.available == Decimal("0")
        assert db_session.query(StockBalance).count() == 0

    def test_failure_undoes_earlier_deltas_on_rollback(self, db_session, product, loc_x, loc_y, seed_balance):
        seed_balance(product.id, loc_x.id, 5)

        with pytest.raises(InsufficientStock):
            apply_deltas([
                BalanceDelta(product.id, None, loc_y.id, Decimal("7")),
                BalanceDelta(product.id, None, loc_x.id, Decimal("-6")),
            ])
        db_session.rollback()

        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("5")
        assert get_quantity_on_hand(product.id, loc_y.id) == Decimal("0")

    def test_zero_delta_is_skipped(self, db_session, product, loc_x):
        applied = apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("0"))])
        db_session.commit()

        assert applied == 0
        assert db_session.query(StockBalance).count() == 0

    def test_variant_and_base_product_are_separate_keys(self, db_session, product, variant, loc_x):
        apply_deltas([
            BalanceDelta(product.id, None, loc_x.id, Decimal("3")),
            BalanceDelta(product.id, variant.id, loc_x.id, Decimal("8")),
        ])
        db_session.commit()

        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("3")
        assert get_quantity_on_hand(product.id, loc_x.id, variant_id=variant.id) == Decimal("8")

    def test_variant_label_includes_variant_sku(self, db_session, product, variant, loc_x):
        with pytest.raises(InsufficientStock) as exc_info:
            apply_deltas([BalanceDelta(product.id, variant.id, loc_x.id, Decimal("-2"))])
        db_session.rollback()

        assert exc_info.value.to_dict()["label"] == "Steel Bolt (SKU-100-M8)"
        assert exc_info.value.to_dict()["requested"] == "2"


class TestBalanceQueries:
    def test_list_hides_zero_rows_by_default(self, db_session, product, loc_x, loc_y, seed_balance):
        seed_balance(product.id, loc_x.id, 0)
        seed_balance(product.id, loc_y.id, 4)

        assert [b.location_id for b in list_balances()] == [loc_y.id]
        assert len(list_balances(include_zero=True)) == 2

    def test_list_filters_by_warehouse(self, db_session, product, loc_x, other_warehouse, seed_balance):
        from stockledger.models import Location

        far = Location(warehouse_id=other_warehouse.id, code="Z-01", name="Overflow")
        db_session.add(far)
        db_session.commit()
        seed_balance(product.id, loc_x.id, 1)
        seed_balance(product.id, far.id, 2)

        balances = list_balances(warehouse_id=other_warehouse.id)
        assert [b.location_id for b in balances] == [far.id]

    def test_snapshot_orders_by_location_code_and_skips_empty(
        self, db_session, warehouse, product, variant, loc_x, loc_y, seed_balance
    ):
        seed_balance(product.id, loc_y.id, 2)
        seed_balance(product.id, loc_x.id, 5, variant_id=variant.id)
        seed_balance(product.id, loc_x.id, 0)

        snapshot = snapshot_positive_balances(warehouse.id)

        assert [(b.location_id, b.variant_id) for b in snapshot] == [
            (loc_x.id, variant.id),
            (loc_y.id, None),
        ]


class TestFixedPointStorage:
    def test_exact_fraction_can_be_drawn_to_zero(self, db_session, product, loc_x):
        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("0.3"))])
        db_session.commit()
        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("-0.1"))])
        db_session.commit()

        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("-0.2"))])
        db_session.commit()

        assert get_quantity_on_hand(product.id, loc_x.id) == Decimal("0")

    def test_quantities_are_stored_as_ten_thousandths(self, db_session, product, loc_x):
        apply_deltas([BalanceDelta(product.id, None, loc_x.id, Decimal("2.5"))])
        db_session.commit()

        raw = db_session.execute(text("SELECT quantity_on_hand FROM stock_balances")).scalar()

        assert raw == 25000
        assert list_balances()[0].to_dict()["quantity_on_hand"] == "2.5"
