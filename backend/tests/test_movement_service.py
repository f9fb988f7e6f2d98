"""
Movement document tests: lifecycle, posting effects, reversal, returns, batches.
"""

import re
from decimal import Decimal

import pytest

from stockledger.errors import InsufficientStock, InvalidState, NotFound, ValidationError
from stockledger.models import StockMovement, StockMovementLine
from stockledger.services import movement_service
from stockledger.services.posting_service import get_quantity_on_hand


def _qty(product, location, variant=None):
    return get_quantity_on_hand(product.id, location.id, variant.id if variant else None)


class TestPostingScenarios:
    """Balance effects of each movement type when POSTED."""

    def test_receive_into_empty_location(self, db_session, product, loc_x, staff, approver, run_movement):
        movement = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 10},
        ], staff, approver)

        posted = db_session.get(StockMovement, movement.id)
        assert posted.status == "POSTED"
        assert posted.posted_at is not None
        assert _qty(product, loc_x) == Decimal("10")

    def test_issue_more_than_on_hand_fails_and_changes_nothing(
        self, db_session, product, loc_x, staff, approver, seed_balance, run_movement
    ):
        seed_balance(product.id, loc_x.id, 10)
        movement = run_movement("ISSUE", [
            {"product_id": product.id, "from_location_id": loc_x.id, "quantity": 15},
        ], staff, approver, post=False)

        with pytest.raises(InsufficientStock) as exc_info:
            movement_service.post_movement(movement.id, approver.id)

        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.requested == Decimal("15")
        assert db_session.get(StockMovement, movement.id).status == "APPROVED"
        assert _qty(product, loc_x) == Decimal("10")

    def test_transfer_moves_quantity_between_locations(
        self, db_session, product, loc_x, loc_y, staff, approver, seed_balance, run_movement
    ):
        seed_balance(product.id, loc_x.id, 10)

        run_movement("TRANSFER", [
            {"product_id": product.id, "from_location_id": loc_x.id, "to_location_id": loc_y.id, "quantity": 4},
        ], staff, approver)

        assert _qty(product, loc_x) == Decimal("6")
        assert _qty(product, loc_y) == Decimal("4")

    def test_adjust_down_and_up(self, db_session, product, variant, loc_x, staff, approver, seed_balance, run_movement):
        seed_balance(product.id, loc_x.id, 5)

        run_movement("ADJUST", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": -3},
        ], staff, approver)
        run_movement("ADJUST", [
            {"product_id": product.id, "variant_id": variant.id, "to_location_id": loc_x.id, "quantity": 3},
        ], staff, approver)

        assert _qty(product, loc_x) == Decimal("2")
        assert _qty(product, loc_x, variant) == Decimal("3")

    def test_adjust_with_zero_quantity_posts_as_no_op(self, db_session, product, loc_x, staff, approver, run_movement):
        movement = run_movement("ADJUST", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 0},
        ], staff, approver)

        assert db_session.get(StockMovement, movement.id).status == "POSTED"
        assert _qty(product, loc_x) == Decimal("0")

    def test_return_adds_to_destination(self, db_session, product, loc_y, staff, approver, run_movement):
        run_movement("RETURN", [
            {"product_id": product.id, "to_location_id": loc_y.id, "quantity": "1.25"},
        ], staff, approver)

        assert _qty(product, loc_y) == Decimal("1.25")

    def test_receive_then_issue_restores_balance(
        self, db_session, product, loc_x, staff, approver, seed_balance, run_movement
    ):
        seed_balance(product.id, loc_x.id, 7)

        run_movement("RECEIVE", [{"product_id": product.id, "to_location_id": loc_x.id, "quantity": 5}], staff, approver)
        run_movement("ISSUE", [{"product_id": product.id, "from_location_id": loc_x.id, "quantity": 5}], staff, approver)

        assert _qty(product, loc_x) == Decimal("7")

    def test_any_insufficient_line_aborts_whole_posting(
        self, db_session, product, variant, loc_x, loc_y, staff, approver, seed_balance, run_movement
    ):
        seed_balance(product.id, loc_x.id, 10)
        movement = run_movement("TRANSFER", [
            {"product_id": product.id, "from_location_id": loc_x.id, "to_location_id": loc_y.id, "quantity": 4},
            {"product_id": product.id, "variant_id": variant.id,
             "from_location_id": loc_x.id, "to_location_id": loc_y.id, "quantity": 1},
        ], staff, approver, post=False)

        with pytest.raises(InsufficientStock):
            movement_service.post_movement(movement.id, approver.id)

        assert _qty(product, loc_x) == Decimal("10")
        assert _qty(product, loc_y) == Decimal("0")
        assert db_session.get(StockMovement, movement.id).posted_at is None


class TestCreateAndUpdate:
    def test_create_is_draft_with_allocated_number(self, db_session, product, loc_x, staff):
        first = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)
        second = movement_service.create_movement("receive", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)

        assert first.status == "DRAFT"
        assert re.match(r"^MV\d{4}-\d{6}$", first.doc_number)
        assert first.doc_number.endswith("-000001")
        assert second.doc_number.endswith("-000002")
        assert _qty(product, loc_x) == Decimal("0")

    def test_create_requires_lines(self, db_session, staff):
        with pytest.raises(ValidationError):
            movement_service.create_movement("RECEIVE", [], staff.id)
        assert db_session.query(StockMovement).count() == 0

    @pytest.mark.parametrize("movement_type, line, field", [
        ("ISSUE", {"to_location_id": "X", "quantity": 1}, "from_location_id"),
        ("RECEIVE", {"from_location_id": "X", "quantity": 1}, "to_location_id"),
        ("TRANSFER", {"from_location_id": "X", "to_location_id": "X", "quantity": 1}, "to_location_id"),
        ("RECEIVE", {"to_location_id": "X", "quantity": 0}, "quantity"),
        ("ISSUE", {"from_location_id": "X", "quantity": -2}, "quantity"),
    ])
    def test_line_validation(self, db_session, product, loc_x, staff, movement_type, line, field):
        data = {"product_id": product.id}
        for key, value in line.items():
            data[key] = loc_x.id if value == "X" else value

        with pytest.raises(ValidationError) as exc_info:
            movement_service.create_movement(movement_type, [data], staff.id)
        assert exc_info.value.field == field

    def test_unknown_type_is_rejected(self, db_session, product, loc_x, staff):
        with pytest.raises(ValidationError) as exc_info:
            movement_service.create_movement("TELEPORT", [
                {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
            ], staff.id)
        assert exc_info.value.field == "type"

    def test_unknown_product_or_location(self, db_session, product, loc_x, staff):
        with pytest.raises(NotFound):
            movement_service.create_movement("RECEIVE", [
                {"product_id": 9999, "to_location_id": loc_x.id, "quantity": 1},
            ], staff.id)
        with pytest.raises(NotFound):
            movement_service.create_movement("RECEIVE", [
                {"product_id": product.id, "to_location_id": 9999, "quantity": 1},
            ], staff.id)

    def test_too_many_decimals_rejected(self, db_session, product, loc_x, staff):
        with pytest.raises(ValidationError):
            movement_service.create_movement("RECEIVE", [
                {"product_id": product.id, "to_location_id": loc_x.id, "quantity": "1.00001"},
            ], staff.id)

    def test_repeated_update_leaves_one_line_set(self, db_session, product, loc_x, loc_y, staff):
        movement = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)
        new_lines = [
            {"product_id": product.id, "to_location_id": loc_y.id, "quantity": 2},
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 3},
        ]

        for _ in range(3):
            movement_service.update_movement(movement.id, staff.id, lines=new_lines, note="recount")

        lines = (
            db_session.query(StockMovementLine)
            .filter_by(movement_id=movement.id)
            .order_by(StockMovementLine.line_no)
            .all()
        )
        assert [(l.line_no, l.to_location_id, l.quantity) for l in lines] == [
            (1, loc_y.id, Decimal("2")),
            (2, loc_x.id, Decimal("3")),
        ]
        assert db_session.get(StockMovement, movement.id).note == "recount"

    def test_update_after_submit_is_invalid(self, db_session, product, loc_x, staff):
        movement = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)
        movement_service.submit_movement(movement.id, staff.id)

        with pytest.raises(InvalidState):
            movement_service.update_movement(movement.id, staff.id, note="late edit")
        assert db_session.get(StockMovement, movement.id).note is None


class TestTransitions:
    def _draft(self, product, loc_x, staff, note=None):
        return movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id, note=note)

    def test_approve_records_approver(self, db_session, product, loc_x, staff, approver):
        movement = self._draft(product, loc_x, staff)
        movement_service.submit_movement(movement.id, staff.id)
        movement_service.approve_movement(movement.id, approver.id)

        approved = db_session.get(StockMovement, movement.id)
        assert approved.status == "APPROVED"
        assert approved.approved_by_user_id == approver.id
        assert approved.approved_at is not None
        assert _qty(product, loc_x) == Decimal("0")

    def test_out_of_order_transitions_leave_status(self, db_session, product, loc_x, staff, approver):
        movement = self._draft(product, loc_x, staff)

        with pytest.raises(InvalidState):
            movement_service.approve_movement(movement.id, approver.id)
        with pytest.raises(InvalidState):
            movement_service.post_movement(movement.id, approver.id)

        movement_service.submit_movement(movement.id, staff.id)
        with pytest.raises(InvalidState):
            movement_service.post_movement(movement.id, approver.id)

        assert db_session.get(StockMovement, movement.id).status == "SUBMITTED"
        assert _qty(product, loc_x) == Decimal("0")

    def test_post_twice_is_invalid(self, db_session, product, loc_x, staff, approver, run_movement):
        movement = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 2},
        ], staff, approver)

        with pytest.raises(InvalidState):
            movement_service.post_movement(movement.id, approver.id)
        assert _qty(product, loc_x) == Decimal("2")

    def test_reject_appends_reason_to_note(self, db_session, product, loc_x, staff, approver):
        movement = self._draft(product, loc_x, staff, note="Weekly delivery")
        movement_service.submit_movement(movement.id, staff.id)

        movement_service.reject_movement(movement.id, approver.id, "Wrong supplier")

        rejected = db_session.get(StockMovement, movement.id)
        assert rejected.status == "REJECTED"
        assert rejected.note == "Weekly delivery\n[REJECTED] Wrong supplier"

    def test_rejected_movement_cannot_be_cancelled(self, db_session, product, loc_x, staff, approver):
        movement = self._draft(product, loc_x, staff)
        movement_service.submit_movement(movement.id, staff.id)
        movement_service.reject_movement(movement.id, approver.id)

        with pytest.raises(InvalidState):
            movement_service.cancel_movement(movement.id, staff.id, "too late")

    def test_cancel_from_approved(self, db_session, product, loc_x, staff, approver):
        movement = self._draft(product, loc_x, staff)
        movement_service.submit_movement(movement.id, staff.id)
        movement_service.approve_movement(movement.id, approver.id)

        movement_service.cancel_movement(movement.id, staff.id, "duplicate")

        cancelled = db_session.get(StockMovement, movement.id)
        assert cancelled.status == "CANCELLED"
        assert cancelled.note == "[CANCELLED] duplicate"
        with pytest.raises(InvalidState):
            movement_service.cancel_movement(movement.id, staff.id)

    def test_posted_movement_cannot_be_cancelled(self, db_session, product, loc_x, staff, approver, run_movement):
        movement = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff, approver)

        with pytest.raises(InvalidState):
            movement_service.cancel_movement(movement.id, staff.id)
        assert db_session.get(StockMovement, movement.id).status == "POSTED"

    def test_unknown_movement(self, db_session, staff):
        with pytest.raises(NotFound):
            movement_service.submit_movement(12345, staff.id)


class TestReversal:
    def test_reverse_receive_drafts_issue(self, db_session, product, loc_x, staff, approver, run_movement):
        original = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 6},
        ], staff, approver)

        reversal = movement_service.reverse_movement(original.id, staff.id)

        assert reversal.status == "DRAFT"
        assert reversal.type == "ISSUE"
        assert reversal.ref_type == "REVERSAL"
        assert reversal.ref_id == original.id
        [line] = reversal.lines
        assert line.from_location_id == loc_x.id
        assert line.quantity == Decimal("6")

        movement_service.submit_movement(reversal.id, staff.id)
        movement_service.approve_movement(reversal.id, approver.id)
        movement_service.post_movement(reversal.id, approver.id)
        assert _qty(product, loc_x) == Decimal("0")

    def test_reverse_transfer_swaps_locations(
        self, db_session, product, loc_x, loc_y, staff, approver, seed_balance, run_movement
    ):
        seed_balance(product.id, loc_x.id, 5)
        original = run_movement("TRANSFER", [
            {"product_id": product.id, "from_location_id": loc_x.id, "to_location_id": loc_y.id, "quantity": 5},
        ], staff, approver)

        reversal = movement_service.reverse_movement(original.id, staff.id)

        [line] = reversal.lines
        assert reversal.type == "TRANSFER"
        assert (line.from_location_id, line.to_location_id) == (loc_y.id, loc_x.id)

    def test_reverse_adjust_negates_quantity(self, db_session, product, loc_x, staff, approver, run_movement):
        original = run_movement("ADJUST", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 4},
        ], staff, approver)

        reversal = movement_service.reverse_movement(original.id, staff.id)

        assert reversal.type == "ADJUST"
        assert reversal.lines[0].quantity == Decimal("-4")

    def test_only_one_live_reversal(self, db_session, product, loc_x, staff, approver, run_movement):
        original = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff, approver)
        first = movement_service.reverse_movement(original.id, staff.id)

        with pytest.raises(InvalidState):
            movement_service.reverse_movement(original.id, staff.id)

        movement_service.cancel_movement(first.id, staff.id)
        second = movement_service.reverse_movement(original.id, staff.id)
        assert second.id != first.id

    def test_only_posted_movements_reverse(self, db_session, product, loc_x, staff):
        draft = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)

        with pytest.raises(InvalidState):
            movement_service.reverse_movement(draft.id, staff.id)


class TestReturnFromIssue:
    def _posted_issue(self, product, loc_x, staff, approver, seed_balance, run_movement):
        seed_balance(product.id, loc_x.id, 10)
        return run_movement("ISSUE", [
            {"product_id": product.id, "from_location_id": loc_x.id, "quantity": 4},
        ], staff, approver)

    def test_return_goes_back_to_issuing_location(
        self, db_session, product, loc_x, staff, approver, seed_balance, run_movement
    ):
        issue = self._posted_issue(product, loc_x, staff, approver, seed_balance, run_movement)
        issue_line_id = issue.lines[0].id

        ret = movement_service.create_return_from_issue(issue.id, [
            {"line_id": issue_line_id, "quantity": 3},
        ], staff.id)

        assert ret.type == "RETURN"
        assert ret.status == "DRAFT"
        assert ret.ref_type == "RETURN_FROM"
        assert ret.ref_id == issue.id
        assert ret.lines[0].to_location_id == loc_x.id
        assert ret.lines[0].quantity == Decimal("3")

    def test_return_cannot_exceed_issued_quantity(
        self, db_session, product, loc_x, staff, approver, seed_balance, run_movement
    ):
        issue = self._posted_issue(product, loc_x, staff, approver, seed_balance, run_movement)

        with pytest.raises(ValidationError):
            movement_service.create_return_from_issue(issue.id, [
                {"line_id": issue.lines[0].id, "quantity": 5},
            ], staff.id)

    def test_return_line_must_belong_to_issue(
        self, db_session, product, loc_x, staff, approver, seed_balance, run_movement
    ):
        issue = self._posted_issue(product, loc_x, staff, approver, seed_balance, run_movement)

        with pytest.raises(NotFound):
            movement_service.create_return_from_issue(issue.id, [{"line_id": 99999, "quantity": 1}], staff.id)

    def test_return_requires_posted_issue(self, db_session, product, loc_x, staff, approver, run_movement):
        receive = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff, approver)

        with pytest.raises(InvalidState):
            movement_service.create_return_from_issue(receive.id, [
                {"line_id": receive.lines[0].id, "quantity": 1},
            ], staff.id)


class TestBatchOperations:
    def _submitted(self, product, loc_x, staff, count):
        ids = []
        for _ in range(count):
            movement = movement_service.create_movement("RECEIVE", [
                {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
            ], staff.id)
            movement_service.submit_movement(movement.id, staff.id)
            ids.append(movement.id)
        return ids

    def test_batch_approve_reports_each_document(self, db_session, product, loc_x, staff, approver):
        ids = self._submitted(product, loc_x, staff, 2)
        draft = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)

        result = movement_service.batch_approve_movements(ids + [draft.id, 424242], approver.id)

        assert result["total"] == 4
        assert result["succeeded"] == 2
        assert result["failed"] == 2
        by_id = {r["id"]: r for r in result["results"]}
        assert by_id[ids[0]]["success"] is True
        assert by_id[draft.id]["success"] is False
        assert by_id[draft.id]["doc_number"] == draft.doc_number
        assert by_id[424242]["doc_number"] is None
        assert db_session.get(StockMovement, draft.id).status == "DRAFT"

    def test_batch_post_continues_after_insufficient_stock(
        self, db_session, product, loc_x, staff, approver, seed_balance
    ):
        seed_balance(product.id, loc_x.id, 5)
        ids = []
        for qty in (4, 4):
            movement = movement_service.create_movement("ISSUE", [
                {"product_id": product.id, "from_location_id": loc_x.id, "quantity": qty},
            ], staff.id)
            movement_service.submit_movement(movement.id, staff.id)
            movement_service.approve_movement(movement.id, approver.id)
            ids.append(movement.id)

        result = movement_service.batch_post_movements(ids, approver.id)

        assert [r["success"] for r in result["results"]] == [True, False]
        assert "Insufficient stock" in result["results"][1]["error"]
        assert _qty(product, loc_x) == Decimal("1")

    def test_batch_reject_applies_reason(self, db_session, product, loc_x, staff, approver):
        ids = self._submitted(product, loc_x, staff, 2)

        result = movement_service.batch_reject_movements(ids, approver.id, "Budget freeze")

        assert result["succeeded"] == 2
        for movement_id in ids:
            assert db_session.get(StockMovement, movement_id).note == "[REJECTED] Budget freeze"

    def test_batch_cancel_mixed_statuses(self, db_session, product, loc_x, staff, approver, run_movement):
        draft = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 1},
        ], staff.id)
        submitted, approved = self._submitted(product, loc_x, staff, 2)
        movement_service.approve_movement(approved, approver.id)
        posted = run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": 3},
        ], staff, approver)

        result = movement_service.batch_cancel_movements(
            [draft.id, submitted, approved, posted.id], approver.id, "Supplier recall",
        )

        assert (result["total"], result["succeeded"], result["failed"]) == (4, 3, 1)
        assert [r["success"] for r in result["results"]] == [True, True, True, False]
        for movement_id in (draft.id, submitted, approved):
            cancelled = db_session.get(StockMovement, movement_id)
            assert cancelled.status == "CANCELLED"
            assert cancelled.note == "[CANCELLED] Supplier recall"
        assert db_session.get(StockMovement, posted.id).status == "POSTED"
        assert _qty(product, loc_x) == Decimal("3")

    def test_batch_size_limits(self, db_session, approver):
        with pytest.raises(ValidationError):
            movement_service.batch_approve_movements([], approver.id)
        with pytest.raises(ValidationError):
            movement_service.batch_post_movements(list(range(1, 52)), approver.id)


class TestFractionalQuantities:
    def test_issue_exact_remaining_fraction(self, db_session, product, loc_x, staff, approver, run_movement):
        run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": "0.3"},
        ], staff, approver)
        run_movement("ISSUE", [
            {"product_id": product.id, "from_location_id": loc_x.id, "quantity": "0.1"},
        ], staff, approver)

        run_movement("ISSUE", [
            {"product_id": product.id, "from_location_id": loc_x.id, "quantity": "0.2"},
        ], staff, approver)

        assert _qty(product, loc_x) == Decimal("0")

    def test_smallest_unit_over_on_hand_is_rejected(
        self, db_session, product, loc_x, staff, approver, run_movement
    ):
        run_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": "1.2345"},
        ], staff, approver)

        with pytest.raises(InsufficientStock) as exc_info:
            run_movement("ISSUE", [
                {"product_id": product.id, "from_location_id": loc_x.id, "quantity": "1.2346"},
            ], staff, approver)

        assert exc_info.value.available == Decimal("1.2345")
        assert _qty(product, loc_x) == Decimal("1.2345")

    def test_transfer_of_fractional_balance(self, db_session, product, loc_x, loc_y, staff, approver, run_movement):
        run_movement("ADJUST", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": "0.7"},
        ], staff, approver)

        run_movement("TRANSFER", [
            {"product_id": product.id, "from_location_id": loc_x.id, "to_location_id": loc_y.id, "quantity": "0.7"},
        ], staff, approver)

        assert _qty(product, loc_x) == Decimal("0")
        assert _qty(product, loc_y) == Decimal("0.7")


class TestSummary:
    def test_summary_includes_lines(self, db_session, product, loc_x, staff):
        movement = movement_service.create_movement("RECEIVE", [
            {"product_id": product.id, "to_location_id": loc_x.id, "quantity": "2.5", "unit_cost": "1.99"},
        ], staff.id)

        summary = movement_service.get_movement_summary(movement.id)

        assert summary["line_count"] == 1
        assert summary["lines"][0]["quantity"] == "2.5"
        assert summary["lines"][0]["unit_cost"] == "1.99"
        with pytest.raises(NotFound):
            movement_service.get_movement_summary(777)
