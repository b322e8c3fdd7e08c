"""
Learner identity: Flask-Login wiring.

Authentication happens upstream: the gateway forwards the authenticated
learner's id in a header (X-Learner-Id by default). The request loader turns
that header into a Learner, so views can use ``login_required`` and
``current_user`` the usual way. Learner profiles are provisioned through
``POST /api/learners`` when the gateway creates an account.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, g, jsonify, request
from flask_login import LoginManager, UserMixin

from database import get_db
from extensions import limiter

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class Learner(UserMixin):
    """Wraps a learners row for Flask-Login."""

    def __init__(self, id: int, name: str = ""):
        self.id = id
        self.name = name

    @staticmethod
    def get(learner_id: int):
        db = get_db()
        row = db.execute("SELECT id, name FROM learners WHERE id = ?", (learner_id,)).fetchone()
        if row:
            return Learner(row["id"], row["name"])
        return None


@login_manager.request_loader
def load_learner_from_request(req):
    raw = req.headers.get(current_app.config.get("LEARNER_ID_HEADER", "X-Learner-Id"), "").strip()
    if not raw:
        return None
    try:
        learner_id = int(raw)
    except ValueError:
        logger.warning("Ignoring malformed learner id header %r", raw)
        return None
    learner = Learner.get(learner_id)
    if learner is not None:
        g.learner_id = learner.id
    return learner


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Authentication required", "code": "unauthorized"}), 401


@auth_bp.route("/api/learners", methods=["POST"])
@limiter.limit("30 per minute")
def create_learner():
    from db_stores import LearnerStoreDB
    from errors import InvalidInput

    data = request.get_json(silent=True) or {}
    name = data.get("name", "")
    if not isinstance(name, str) or len(name) > 200:
        raise InvalidInput("name must be a string of at most 200 characters")
    learner_id = LearnerStoreDB.create(name.strip())
    logger.info("Provisioned learner %s", learner_id)
    return jsonify({"learner_id": learner_id, "name": name.strip(),
                    "points": 0, "level": 1, "streak": 0}), 201
