# backend/stockledger/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # After-commit side effects: worker plus default sinks (replaceable)
    from .services.dispatch_service import init_dispatch
    from .services.audit_service import EXTENSION_KEY as AUDIT_SINK_KEY, DatabaseAuditSink
    from .services.notification_service import EXTENSION_KEY as NOTIFIER_KEY, LogNotifier

    init_dispatch(app)
    app.extensions.setdefault(AUDIT_SINK_KEY, DatabaseAuditSink())
    app.extensions.setdefault(NOTIFIER_KEY, LogNotifier())

    # Register blueprints
    from .routes.system import system_bp
    from .routes.movements import movements_bp
    from .routes.stock_takes import stock_takes_bp
    from .routes.balances import balances_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(movements_bp)
    app.register_blueprint(stock_takes_bp)
    app.register_blueprint(balances_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in app.config.get("CORS_ALLOWED_ORIGINS", ()):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "X-Actor-Id, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
