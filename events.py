"""
Stats-changed event handlers.

Anything that moves a learner's counters (an XP award, a completed lesson,
a new streak day) publishes here once its transaction has committed. Each
publish runs exactly one badge pass; awards made by that pass do not publish
again.
"""

from __future__ import annotations

import logging
from datetime import date

from db_stores import BadgeStoreDB, StreakDB, XPLedgerDB, load_stats_snapshot
from gamification import STREAK_MILESTONE_DAYS, XP_AWARDS

logger = logging.getLogger(__name__)


def publish_stats_changed(learner_id: int, today: date | None = None) -> list[dict]:
    """Run one badge evaluation pass and return the newly earned badges."""
    stats = load_stats_snapshot(learner_id, today)
    return BadgeStoreDB(learner_id).evaluate_and_award(stats)


def reward_streak_milestone(learner_id: int, current_streak: int) -> dict | None:
    """Every 7th consecutive day: bonus XP and one freeze credit."""
    if current_streak <= 0 or current_streak % STREAK_MILESTONE_DAYS != 0:
        return None
    award = XPLedgerDB(learner_id).award_xp(
        XP_AWARDS["streak_7_milestone"], "STREAK_BONUS",
        source_type="streak", source_id=current_streak,
        evaluate_badges=False,
    )
    freezes = StreakDB(learner_id).grant_freeze(1)
    logger.info("Learner %s hit a %d-day streak milestone", learner_id, current_streak)
    return {
        "xp_awarded": award["xp_awarded"],
        "freeze_available": freezes,
        "leveled_up": award["leveled_up"],
    }


def record_learning_activity(learner_id: int, today: date | None = None,
                             evaluate_badges: bool = True) -> dict:
    """Count a qualifying activity toward the streak.

    Callers that publish their own stats-changed event right after (an
    answer submission, a completed lesson) pass ``evaluate_badges=False``
    so the event still triggers a single badge pass.
    """
    streak = StreakDB(learner_id).record_activity(today)
    streak["milestone_reward"] = None
    if streak["extended"]:
        reward = reward_streak_milestone(learner_id, streak["current_streak"])
        if reward is not None:
            streak["milestone_reward"] = reward
            streak["freeze_available"] = reward["freeze_available"]
    streak["new_badges"] = publish_stats_changed(learner_id, today) if evaluate_badges else []
    return streak
