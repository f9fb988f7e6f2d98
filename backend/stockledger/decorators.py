# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-Actor-Id"


def require_actor(f):
    """
    Require the acting user's id and expose it as g.actor_id.

    Authentication happens upstream (gateway/session layer); this service
    only needs to know who to attribute the transition to.

    Returns 401 if the X-Actor-Id header is missing or not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": f"{ACTOR_HEADER} header required", "code": "UNAUTHENTICATED"}), 401
        try:
            actor_id = int(raw)
        except ValueError:
            actor_id = 0
        if actor_id <= 0:
            return jsonify({"error": f"Invalid {ACTOR_HEADER} header", "code": "UNAUTHENTICATED"}), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
