"""
Shared Flask extensions.

The rate limiter keys on the learner id header when present so one learner
cannot exhaust the budget of everyone behind the same gateway address.
"""

from __future__ import annotations

from flask import current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address


def learner_or_remote_address() -> str:
    header = current_app.config.get("LEARNER_ID_HEADER", "X-Learner-Id")
    learner_id = request.headers.get(header, "").strip()
    if learner_id:
        return f"learner:{learner_id}"
    return get_remote_address()


def write_limit() -> str:
    return current_app.config.get("WRITE_RATE_LIMIT", "120 per minute")


limiter = Limiter(key_func=learner_or_remote_address, default_limits=["600 per hour"])
