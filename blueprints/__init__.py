"""
Blueprint registration for the progress API.

All blueprints are registered without URL prefixes; routes carry their
full /api/... paths.
"""

from __future__ import annotations

from flask import jsonify

from errors import ProgressError


def register_blueprints(app):
    from blueprints.flashcards import bp as flashcards_bp
    from blueprints.gamification import bp as gamification_bp
    from blueprints.leaderboard import bp as leaderboard_bp

    app.register_blueprint(flashcards_bp)
    app.register_blueprint(gamification_bp)
    app.register_blueprint(leaderboard_bp)

    @app.errorhandler(ProgressError)
    def handle_progress_error(e: ProgressError):
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code
