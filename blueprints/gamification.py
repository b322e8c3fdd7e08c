"""Learner actions, stats, achievements, points history and notifications."""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import login_required

from db_stores import AchievementStoreDB, NotificationStoreDB, PointsLedgerDB
from extensions import limiter, write_limit
from helpers import (
    current_learner_id,
    json_body,
    orchestrator,
    paginate_args,
    paginated_response,
)

bp = Blueprint("gamification", __name__)


@bp.route("/api/actions", methods=["POST"])
@login_required
@limiter.limit(write_limit)
def api_record_action():
    data = json_body()
    result = orchestrator().record_action(
        current_learner_id(),
        data.get("action"),
        data.get("amount"),
        data.get("metadata"),
    )
    return jsonify(result.to_dict())


@bp.route("/api/stats")
@login_required
def api_stats():
    return jsonify(orchestrator().get_stats(current_learner_id()))


@bp.route("/api/achievements")
@login_required
def api_achievements():
    return jsonify({
        "achievements": [
            {
                "key": a.key,
                "name": a.name,
                "description": a.description,
                "icon": a.icon,
                "tier": a.tier,
                "points": a.points_reward,
                "condition": {"type": a.condition_type, "value": a.threshold},
            }
            for a in AchievementStoreDB.catalog()
        ],
    })


@bp.route("/api/achievements/progress")
@login_required
def api_achievement_progress():
    progress = orchestrator().get_achievement_progress(current_learner_id())
    return jsonify({
        "achievements": progress,
        "unlocked_count": sum(1 for a in progress if a["unlocked"]),
        "total_count": len(progress),
    })


@bp.route("/api/points/history")
@login_required
def api_points_history():
    page, limit = paginate_args(default_limit=20, max_limit=100)
    ledger = PointsLedgerDB(current_learner_id())
    entries = ledger.history(limit=limit, offset=(page - 1) * limit)
    return jsonify(paginated_response([e.to_dict() for e in entries], ledger.count(), page, limit))


@bp.route("/api/notifications")
@login_required
def api_notifications():
    store = NotificationStoreDB(current_learner_id())
    return jsonify({
        "notifications": [
            {
                "id": n.id,
                "type": n.type,
                "title": n.title,
                "message": n.message,
                "link": n.link,
                "read": n.read,
                "created_at": n.created_at,
            }
            for n in store.recent(20)
        ],
        "unread_count": store.unread_count(),
    })
