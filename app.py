"""
Learning Progress Engine: Flask Web Application

JSON API over spaced-repetition review scheduling and the points, levels,
streaks, achievements and leaderboard layer.
"""

from __future__ import annotations

import os
from typing import Any

import click
from dotenv import load_dotenv
from flask import Flask, Response

import database
from auth import auth_bp, login_manager
from blueprints import register_blueprints
from extensions import limiter

load_dotenv()


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import TestingConfig, config_by_name
    if test_config is not None:
        app.config.from_object(TestingConfig)
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config.get("SECRET_KEY", "dev-key-change-in-production")

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Cache backend (Redis or in-memory fallback)
    from cache_backend import init_cache
    init_cache(app)

    # Leaderboard aggregator on top of the cache
    from leaderboard import init_leaderboard
    init_leaderboard(app)

    # Background task processing (RQ or synchronous fallback)
    from tasks import init_tasks
    init_tasks(app)

    # Register database teardown
    database.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Learner identity and provisioning
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)

    # Register all application blueprints
    register_blueprints(app)

    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.cli.command("init-db")
    def init_db_command():
        """Create tables, apply migrations and seed the achievement catalog."""
        database.init_db()
        database.run_migrations()
        click.echo("Database initialized.")

    @app.cli.command("notify-streak-risk")
    def notify_streak_risk_command():
        """Warn learners whose streak lapses at the end of the UTC day."""
        from notifications import send_streak_risk_notifications
        sent = send_streak_risk_notifications()
        click.echo(f"Sent {sent} streak-risk notification(s).")

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
