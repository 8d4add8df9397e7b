# backend/tillbook/__init__.py
from flask import Flask, current_app

from .config import Config
from .extensions import db, migrate


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Wire services; the engine is resolved lazily inside an app context
    from .services import build_services
    app.extensions["tillbook"] = build_services(app.config)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def get_services():
    """Services bound to the current app."""
    return current_app.extensions["tillbook"]
