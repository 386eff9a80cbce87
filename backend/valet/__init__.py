# backend/valet/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("valet").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # External SMS / payment providers
    from .services.providers import init_providers
    init_providers(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.tickets import tickets_bp
    from .routes.payments import payments_bp
    from .routes.messages import messages_bp
    from .routes.webhooks import webhooks_bp
    from .routes.locations import locations_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(tickets_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(messages_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(locations_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
