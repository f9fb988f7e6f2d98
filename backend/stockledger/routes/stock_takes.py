# backend/stockledger/routes/stock_takes.py
"""
Stock take API routes.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import LedgerError, ValidationError
from ..extensions import db
from ..services import stock_take_service


stock_takes_bp = Blueprint("stock_takes", __name__, url_prefix="/api/stock-takes")


def _unexpected(action: str):
    db.session.rollback()
    current_app.logger.exception("Unexpected error during stock take %s", action)
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


@stock_takes_bp.route("", methods=["POST"])
@require_actor
def create_stock_take():
    """
    Snapshot a warehouse into a new DRAFT stock take.

    Request body:
    {
        "warehouse_id": int,
        "note": str (optional)
    }

    Returns:
        201: Stock take with snapshot lines
        400: Invalid request
        404: Warehouse not found
    """
    data = request.get_json(silent=True) or {}

    try:
        warehouse_id = data.get("warehouse_id")
        if isinstance(warehouse_id, bool) or not isinstance(warehouse_id, int):
            raise ValidationError("warehouse_id is required", field="warehouse_id")
        stock_take = stock_take_service.create_stock_take(warehouse_id, g.actor_id, note=data.get("note"))
        return jsonify(stock_take_service.get_stock_take_summary(stock_take.id)), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("create")


@stock_takes_bp.route("/<int:stock_take_id>", methods=["GET"])
def get_stock_take(stock_take_id: int):
    try:
        return jsonify(stock_take_service.get_stock_take_summary(stock_take_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_takes_bp.route("/<int:stock_take_id>/start", methods=["POST"])
@require_actor
def start_stock_take(stock_take_id: int):
    try:
        stock_take = stock_take_service.start_stock_take(stock_take_id, g.actor_id)
        return jsonify(stock_take.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("start")


@stock_takes_bp.route("/<int:stock_take_id>/counts", methods=["PUT"])
@require_actor
def save_counts(stock_take_id: int):
    """
    Request body:
    {
        "counts": [{"line_id": int, "counted_qty": number, "note": str (optional)}]
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        counts = data.get("counts")
        if not isinstance(counts, list):
            raise ValidationError("counts must be a list", field="counts")
        stock_take_service.save_counts(stock_take_id, counts, g.actor_id)
        return jsonify(stock_take_service.get_stock_take_summary(stock_take_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("save counts")


@stock_takes_bp.route("/<int:stock_take_id>/complete", methods=["POST"])
@require_actor
def complete_stock_take(stock_take_id: int):
    try:
        stock_take_service.complete_stock_take(stock_take_id, g.actor_id)
        return jsonify(stock_take_service.get_stock_take_summary(stock_take_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("complete")


@stock_takes_bp.route("/<int:stock_take_id>/approve", methods=["POST"])
@require_actor
def approve_stock_take(stock_take_id: int):
    """
    Post variances and approve.

    Returns:
        200: Approved stock take (adjustment_movement_id set when anything varied)
        409: Not COMPLETED, or a negative variance exceeds current stock
    """
    try:
        stock_take = stock_take_service.approve_stock_take(stock_take_id, g.actor_id)
        return jsonify(stock_take.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("approve")


@stock_takes_bp.route("/<int:stock_take_id>/cancel", methods=["POST"])
@require_actor
def cancel_stock_take(stock_take_id: int):
    data = request.get_json(silent=True) or {}

    try:
        stock_take = stock_take_service.cancel_stock_take(stock_take_id, g.actor_id, data.get("reason"))
        return jsonify(stock_take.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("cancel")
