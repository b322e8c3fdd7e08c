"""Flashcard creation, due queue and review routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from extensions import limiter, write_limit
from helpers import current_learner_id, json_body, orchestrator
from progress import difficulty_label, estimate_retention, is_due, utcnow

bp = Blueprint("flashcards", __name__)


def _card_payload(card) -> dict:
    return {
        **card.to_dict(),
        "difficulty": difficulty_label(card.state.interval_days),
        "retention_estimate": estimate_retention(card.state.easiness_factor),
        "due": is_due(card.state, utcnow()),
    }


@bp.route("/api/flashcards", methods=["POST"])
@login_required
@limiter.limit(write_limit)
def api_create_flashcard():
    data = json_body()
    card = orchestrator().create_flashcard(
        current_learner_id(),
        data.get("front", ""),
        data.get("back", ""),
        document_id=str(data.get("document_id") or ""),
    )
    return jsonify({"flashcard": _card_payload(card)}), 201


@bp.route("/api/flashcards/due")
@login_required
def api_due_flashcards():
    try:
        limit = min(200, max(1, int(request.args.get("limit", 50))))
    except (ValueError, TypeError):
        limit = 50
    cards = orchestrator().due_flashcards(current_learner_id(), limit)
    return jsonify({
        "cards": [_card_payload(c) for c in cards],
        "count": len(cards),
    })


@bp.route("/api/flashcards/<card_id>/review", methods=["POST"])
@login_required
@limiter.limit(write_limit)
def api_review_flashcard(card_id):
    data = json_body()
    result = orchestrator().submit_review(card_id, current_learner_id(), data.get("quality"))
    payload = result.to_dict()
    payload["flashcard"] = _card_payload(result.flashcard)
    return jsonify(payload)
