"""XP, level, streak and badge routes."""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify

from db_stores import BadgeStoreDB, LearnerDB, StreakDB, XPLedgerDB
from errors import ValidationError
from extensions import limiter
from gamification import normalize_reason
from helpers import int_arg, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("gamification", __name__)


@bp.route("/api/learners/<int:learner_id>/progress")
def api_progress(learner_id: int):
    LearnerDB(learner_id).require()
    return jsonify({"success": True, "data": XPLedgerDB(learner_id).get_progress()})


@bp.route("/api/learners/<int:learner_id>/badges")
def api_badges(learner_id: int):
    LearnerDB(learner_id).require()
    return jsonify({"success": True, "data": BadgeStoreDB(learner_id).get_badges_for_child()})


@bp.route("/api/learners/<int:learner_id>/streak")
def api_streak(learner_id: int):
    LearnerDB(learner_id).require()
    return jsonify({"success": True, "data": StreakDB(learner_id).get_streak_info()})


@bp.route("/api/learners/<int:learner_id>/streak/freeze", methods=["POST"])
def api_use_streak_freeze(learner_id: int):
    result = StreakDB(learner_id).use_streak_freeze()
    return jsonify({"success": result["success"], "data": result})


@bp.route("/api/learners/<int:learner_id>/xp/history")
def api_xp_history(learner_id: int):
    LearnerDB(learner_id).require()
    max_days = current_app.config.get("MAX_HISTORY_DAYS", 90)
    days = int_arg("days", 7, minimum=1, maximum=max_days)
    return jsonify({"success": True, "data": XPLedgerDB(learner_id).get_xp_history(days)})


@bp.route("/api/learners/<int:learner_id>/xp/stats")
def api_xp_stats(learner_id: int):
    LearnerDB(learner_id).require()
    return jsonify({"success": True, "data": XPLedgerDB(learner_id).get_stats()})


@bp.route("/api/learners/<int:learner_id>/xp", methods=["POST"])
@limiter.limit("60 per minute")
def api_award_xp(learner_id: int):
    data = json_body()
    amount = data.get("amount")
    max_award = current_app.config.get("MAX_XP_AWARD", 1000)
    if isinstance(amount, bool) or not isinstance(amount, int) or not 1 <= amount <= max_award:
        raise ValidationError(f"amount must be an integer between 1 and {max_award}")
    reason = normalize_reason(data.get("reason"))
    source_type = data.get("source_type")
    if source_type is not None and not isinstance(source_type, str):
        raise ValidationError("source_type must be a string")
    source_id = data.get("source_id")
    if source_id is not None and (
        isinstance(source_id, bool) or not isinstance(source_id, (int, str))
    ):
        raise ValidationError("source_id must be a string or an integer")
    result = XPLedgerDB(learner_id).award_xp(
        amount,
        reason,
        source_type=source_type,
        source_id=source_id,
    )
    return jsonify({"success": True, "data": result})


@bp.route("/api/learners/<int:learner_id>/achievements")
def api_recent_achievements(learner_id: int):
    LearnerDB(learner_id).require()
    limit = int_arg("limit", 5, minimum=1, maximum=20, clamp=True)
    return jsonify({
        "success": True,
        "data": BadgeStoreDB(learner_id).get_recent_achievements(limit),
    })


@bp.route("/api/leaderboard/streaks")
def api_streak_leaderboard():
    limit = int_arg("limit", 10, minimum=1, maximum=50, clamp=True)
    return jsonify({"success": True, "data": StreakDB.get_streak_leaderboard(limit)})


@bp.route("/api/learners/<int:learner_id>/summary")
def api_summary(learner_id: int):
    """Everything a dashboard header needs in one call."""
    LearnerDB(learner_id).require()
    ledger = XPLedgerDB(learner_id)
    badges = BadgeStoreDB(learner_id)
    return jsonify({
        "success": True,
        "data": {
            "progress": ledger.get_progress(),
            "stats": ledger.get_stats(),
            "streak": StreakDB(learner_id).get_streak_info(),
            "badges": {
                "earned_count": len(badges.get_badges_for_child()["earned"]),
                "recent": badges.get_recent_achievements(3),
            },
        },
    })
