"""Leaderboard routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from helpers import current_learner_id
from leaderboard import get_leaderboard, get_user_rank

bp = Blueprint("leaderboard", __name__)


@bp.route("/api/leaderboard")
@login_required
def api_leaderboard():
    period = request.args.get("period", "alltime")
    board = get_leaderboard(period, request.args.get("limit", 100))
    return jsonify({
        **board,
        "my_rank": get_user_rank(current_learner_id(), period),
    })


@bp.route("/api/leaderboard/rank")
@login_required
def api_leaderboard_rank():
    period = request.args.get("period", "alltime")
    return jsonify({
        "period": period,
        "learner_id": current_learner_id(),
        "rank": get_user_rank(current_learner_id(), period),
    })
