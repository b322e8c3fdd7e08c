"""
Shared helpers used across blueprints.
"""

from __future__ import annotations

from flask import current_app, request
from flask_login import current_user

from errors import InvalidInput


def current_learner_id() -> int:
    """Id of the learner resolved from the gateway header. Views must be login_required."""
    return current_user.id


def orchestrator():
    """A GamificationOrchestrator configured from the running app."""
    from orchestrator import GamificationOrchestrator
    return GamificationOrchestrator.from_app(current_app)


def json_body() -> dict:
    """The request's JSON object. Anything else is InvalidInput."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput("request body must be a JSON object")
    return data


# ── Pagination ──────────────────────────────────────────────

def paginate_args(default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    """Extract page/limit from request.args. Returns (page, limit)."""
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (ValueError, TypeError):
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (ValueError, TypeError):
        limit = default_limit
    return page, limit


def paginated_response(items: list, total: int, page: int, limit: int) -> dict:
    """Standard pagination envelope."""
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": max(1, (total + limit - 1) // limit),
        },
    }
