# backend/stockledger/routes/balances.py
from flask import Blueprint, jsonify, request

from ..services import posting_service


balances_bp = Blueprint("balances", __name__, url_prefix="/api/balances")


@balances_bp.get("")
def list_balances():
    """
    Current quantity on hand.

    Query params: warehouse_id, location_id, product_id, variant_id (ints),
    include_zero (true/false, default false).
    """
    include_zero = request.args.get("include_zero", "false").lower() in ("1", "true", "yes")
    balances = posting_service.list_balances(
        warehouse_id=request.args.get("warehouse_id", type=int),
        location_id=request.args.get("location_id", type=int),
        product_id=request.args.get("product_id", type=int),
        variant_id=request.args.get("variant_id", type=int),
        include_zero=include_zero,
    )
    return jsonify({"balances": [b.to_dict() for b in balances], "count": len(balances)}), 200
