# backend/tubeshop/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.orders import orders_bp
    from .routes.tracking import tracking_bp
    from .routes.payments import payments_bp
    from .routes.cron import cron_bp
    from .routes.auth import auth_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            app.config["SITE_URL"].rstrip("/"),
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
