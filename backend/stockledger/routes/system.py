# backend/stockledger/routes/system.py
"""
System health endpoint.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from ..extensions import db
from ..services.dispatch_service import get_dispatcher
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Round-trip a trivial query and report latency."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "response_time_ms": round(elapsed_ms, 2)}
    except Exception as e:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": str(e)}


@system_bp.get("/api/health")
def health():
    database = check_database_health()
    dispatcher = get_dispatcher()
    body = {
        "status": "ok" if database["status"] == "healthy" else "degraded",
        "checked_at": to_utc_z(utcnow()),
        "database": database,
        "dispatch": {"inline": dispatcher.inline},
    }
    return jsonify(body), 200 if database["status"] == "healthy" else 503
