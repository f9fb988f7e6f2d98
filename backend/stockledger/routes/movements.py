# backend/stockledger/routes/movements.py
"""
Stock movement API routes.

Every mutating route takes the acting user from the X-Actor-Id header.
Domain failures come back as {"error": ..., "code": ..., ...details} with
the status code carried by the error (400/404/409).
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import LedgerError, ValidationError
from ..extensions import db
from ..services import movement_service


movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


def _unexpected(action: str):
    db.session.rollback()
    current_app.logger.exception("Unexpected error during movement %s", action)
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


def _parse_ids(data: dict) -> list[int]:
    ids = data.get("ids")
    if not isinstance(ids, list):
        raise ValidationError("ids must be a list of movement ids", field="ids")
    parsed = []
    for value in ids:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("ids must be a list of movement ids", field="ids")
        parsed.append(value)
    return parsed


@movements_bp.route("", methods=["POST"])
@require_actor
def create_movement():
    """
    Create a movement in DRAFT.

    Request body:
    {
        "type": "RECEIVE" | "ISSUE" | "TRANSFER" | "ADJUST" | "RETURN",
        "lines": [
            {
                "product_id": int,
                "variant_id": int (optional),
                "from_location_id": int (ISSUE, TRANSFER),
                "to_location_id": int (RECEIVE, TRANSFER, ADJUST, RETURN),
                "quantity": number,
                "unit_cost": number (optional),
                "note": str (optional)
            }
        ],
        "note": str (optional),
        "reason": str (optional)
    }

    Returns:
        201: Movement created (with lines)
        400: Invalid request
        404: Unknown product/variant/location/user
    """
    data = request.get_json(silent=True) or {}

    try:
        if "type" not in data:
            raise ValidationError("type is required", field="type")
        movement = movement_service.create_movement(
            data["type"],
            data.get("lines") or [],
            g.actor_id,
            note=data.get("note"),
            reason=data.get("reason"),
        )
        return jsonify(movement_service.get_movement_summary(movement.id)), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("create")


@movements_bp.route("/<int:movement_id>", methods=["GET"])
def get_movement(movement_id: int):
    try:
        return jsonify(movement_service.get_movement_summary(movement_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@movements_bp.route("/<int:movement_id>", methods=["PUT"])
@require_actor
def update_movement(movement_id: int):
    """
    Edit a DRAFT movement. "lines", when present, replaces all lines.

    Returns:
        200: Updated movement
        409: Movement is not DRAFT
    """
    data = request.get_json(silent=True) or {}

    try:
        movement_service.update_movement(
            movement_id,
            g.actor_id,
            lines=data.get("lines"),
            note=data.get("note"),
            reason=data.get("reason"),
        )
        return jsonify(movement_service.get_movement_summary(movement_id)), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("update")


@movements_bp.route("/<int:movement_id>/submit", methods=["POST"])
@require_actor
def submit_movement(movement_id: int):
    try:
        movement = movement_service.submit_movement(movement_id, g.actor_id)
        return jsonify(movement.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("submit")


@movements_bp.route("/<int:movement_id>/approve", methods=["POST"])
@require_actor
def approve_movement(movement_id: int):
    try:
        movement = movement_service.approve_movement(movement_id, g.actor_id)
        return jsonify(movement.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("approve")


@movements_bp.route("/<int:movement_id>/reject", methods=["POST"])
@require_actor
def reject_movement(movement_id: int):
    """
    Request body:
    {
        "reason": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        movement = movement_service.reject_movement(movement_id, g.actor_id, data.get("reason"))
        return jsonify(movement.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("reject")


@movements_bp.route("/<int:movement_id>/post", methods=["POST"])
@require_actor
def post_movement(movement_id: int):
    """
    Apply an APPROVED movement to stock balances.

    Returns:
        200: Movement POSTED
        409: Not APPROVED, or insufficient stock (nothing applied)
    """
    try:
        movement = movement_service.post_movement(movement_id, g.actor_id)
        return jsonify(movement.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("post")


@movements_bp.route("/<int:movement_id>/cancel", methods=["POST"])
@require_actor
def cancel_movement(movement_id: int):
    data = request.get_json(silent=True) or {}

    try:
        movement = movement_service.cancel_movement(movement_id, g.actor_id, data.get("reason"))
        return jsonify(movement.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("cancel")


@movements_bp.route("/<int:movement_id>/reverse", methods=["POST"])
@require_actor
def reverse_movement(movement_id: int):
    """Draft a reversal of a POSTED movement. Returns 201 with the new DRAFT."""
    data = request.get_json(silent=True) or {}

    try:
        reversal = movement_service.reverse_movement(movement_id, g.actor_id, note=data.get("note"))
        return jsonify(movement_service.get_movement_summary(reversal.id)), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("reverse")


@movements_bp.route("/<int:movement_id>/returns", methods=["POST"])
@require_actor
def create_return(movement_id: int):
    """
    Draft a RETURN against a POSTED ISSUE.

    Request body:
    {
        "lines": [{"line_id": int, "quantity": number}],
        "note": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        movement = movement_service.create_return_from_issue(
            movement_id,
            data.get("lines") or [],
            g.actor_id,
            note=data.get("note"),
        )
        return jsonify(movement_service.get_movement_summary(movement.id)), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("return")


@movements_bp.route("/batch/<action>", methods=["POST"])
@require_actor
def batch_action(action: str):
    """
    Approve, reject, post or cancel up to BATCH_MAX_SIZE movements, each in its
    own transaction.

    Request body:
    {
        "ids": [int, ...],
        "reason": str (reject and cancel only, optional)
    }

    Returns:
        200: {"total", "succeeded", "failed", "results": [...]}
        400: Empty or oversized batch
        404: Unknown action
    """
    data = request.get_json(silent=True) or {}

    try:
        ids = _parse_ids(data)
        if action == "approve":
            result = movement_service.batch_approve_movements(ids, g.actor_id)
        elif action == "reject":
            result = movement_service.batch_reject_movements(ids, g.actor_id, data.get("reason"))
        elif action == "post":
            result = movement_service.batch_post_movements(ids, g.actor_id)
        elif action == "cancel":
            result = movement_service.batch_cancel_movements(ids, g.actor_id, data.get("reason"))
        else:
            return jsonify({"error": f"Unknown batch action: {action}", "code": "NOT_FOUND"}), 404
        return jsonify(result), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected(f"batch {action}")
