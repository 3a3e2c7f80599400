"""
Gamification rules: reward schedule, hint escalation, level curve, badge catalog.

Everything here is pure: no database, no Flask. The DB-backed stores in
db_stores.py and the grading engine in exercise_service.py apply these rules.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Union


# ── Exercise rewards ──────────────────────────────────────────────────

DIFFICULTY_XP = {
    "EASY": 5,
    "MEDIUM": 10,
    "HARD": 15,
}

EXERCISE_TYPES = ("MULTIPLE_CHOICE", "SHORT_ANSWER", "FILL_IN_BLANK", "TRUE_FALSE", "MATH_PROBLEM")
ANSWER_TYPES = ("TEXT", "NUMBER", "MULTIPLE_CHOICE")
AGE_BANDS = ("YOUNG", "OLDER")

FIRST_TRY_BONUS = 5
FIRST_TRY_BONUS_MULTIPLIER = 1.5
MAX_ATTEMPTS = 3

# attempt number -> fraction of base XP (attempt 1 is full reward + flat bonus)
ATTEMPT_MULTIPLIERS = {
    2: 1.0,
    3: 0.5,
}
LATE_ATTEMPT_MULTIPLIER = 0.25


def base_xp_for_difficulty(difficulty: str) -> int:
    return DIFFICULTY_XP.get((difficulty or "").upper(), DIFFICULTY_XP["MEDIUM"])


def xp_for_attempt(base_xp: int, attempt_number: int) -> int:
    """XP for a correct answer on the given attempt.

    1 -> base + bonus, 2 -> base, 3 -> half, 4+ -> quarter (all floored).
    """
    if attempt_number < 1:
        raise ValueError("attempt_number starts at 1")
    if attempt_number == 1:
        return base_xp + FIRST_TRY_BONUS
    multiplier = ATTEMPT_MULTIPLIERS.get(attempt_number, LATE_ATTEMPT_MULTIPLIER)
    return math.floor(base_xp * multiplier)


# ── Guidance after a wrong answer ─────────────────────────────────────


@dataclass(frozen=True)
class ShowHint:
    number: int  # 1 or 2


@dataclass(frozen=True)
class RevealAnswer:
    pass


@dataclass(frozen=True)
class NoGuidance:
    pass


Guidance = Union[ShowHint, RevealAnswer, NoGuidance]


def next_guidance(attempt_number: int, has_hint1: bool, has_hint2: bool,
                  max_attempts: int = MAX_ATTEMPTS) -> Guidance:
    """Decide what a learner sees after the given wrong attempt."""
    if attempt_number >= max_attempts:
        return RevealAnswer()
    if attempt_number == 1:
        if has_hint1:
            return ShowHint(1)
        if has_hint2:
            return ShowHint(2)
    elif attempt_number == 2 and has_hint2:
        return ShowHint(2)
    return NoGuidance()


# ── XP reasons ────────────────────────────────────────────────────────

XP_REASONS = (
    "LESSON_COMPLETE",
    "LESSON_PROGRESS",
    "FLASHCARD_REVIEW",
    "FLASHCARD_CORRECT",
    "QUIZ_COMPLETE",
    "QUIZ_PERFECT",
    "CHAT_QUESTION",
    "DAILY_CHALLENGE",
    "TEXT_SELECTION",
    "BADGE_EARNED",
    "STREAK_BONUS",
    "FIRST_OF_DAY",
    "EXERCISE_CORRECT",
    "EXERCISE_PERFECT",
    "NOTE_CREATED",
    "NOTE_EDITED",
)

# Client-facing awards fall back to the most common action
DEFAULT_CLIENT_REASON = "CHAT_QUESTION"

XP_AWARDS = {
    "lesson_complete": 25,
    "streak_7_milestone": 30,
}

STREAK_MILESTONE_DAYS = 7
MAX_STREAK_FREEZES = 3


def normalize_reason(reason: str | None) -> str:
    """Map a client-supplied reason onto a known code."""
    code = (reason or "").strip().upper()
    return code if code in XP_REASONS else DEFAULT_CLIENT_REASON


# ── Level curve ───────────────────────────────────────────────────────


class LevelCurve:
    """Monotonic step function from total XP to level.

    ``thresholds[i]`` is the total XP needed to reach level ``i + 1``.
    Past the end of the table the last step size repeats.
    """

    def __init__(self, thresholds: list[int]) -> None:
        if not thresholds or thresholds[0] != 0:
            raise ValueError("Level 1 must start at 0 XP")
        if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
            raise ValueError("Level thresholds must be strictly increasing")
        self.thresholds = list(thresholds)

    @classmethod
    def quadratic(cls, step: int = 50, levels: int = 100) -> "LevelCurve":
        """Level n starts at step * (n - 1)^2 XP."""
        return cls([step * (n - 1) ** 2 for n in range(1, levels + 1)])

    def threshold(self, level: int) -> int:
        """Total XP at which ``level`` starts."""
        if level <= len(self.thresholds):
            return self.thresholds[max(level, 1) - 1]
        last_step = self.thresholds[-1] - self.thresholds[-2] if len(self.thresholds) > 1 else 1
        return self.thresholds[-1] + last_step * (level - len(self.thresholds))

    def level_for(self, total_xp: int) -> int:
        if total_xp <= 0:
            return 1
        if total_xp < self.thresholds[-1]:
            level = 1
            for i, t in enumerate(self.thresholds):
                if total_xp >= t:
                    level = i + 1
                else:
                    break
            return level
        last_step = self.thresholds[-1] - self.thresholds[-2] if len(self.thresholds) > 1 else 1
        return len(self.thresholds) + (total_xp - self.thresholds[-1]) // last_step

    def progress(self, total_xp: int) -> dict:
        level = self.level_for(total_xp)
        start = self.threshold(level)
        end = self.threshold(level + 1)
        span = end - start
        into_level = total_xp - start
        return {
            "level": level,
            "current_xp": into_level,
            "xp_for_current_level": start,
            "xp_for_next_level": end,
            "xp_to_next_level": end - total_xp,
            "percent_to_next_level": min(100, int(into_level / span * 100)) if span > 0 else 100,
        }


DEFAULT_LEVEL_CURVE = LevelCurve.quadratic()


# ── Badges ────────────────────────────────────────────────────────────

STAT_NAMES = (
    "lessons_completed",
    "questions_answered",
    "perfect_scores",
    "flashcards_reviewed",
    "current_streak",
    "level",
    "total_xp",
)


@dataclass(frozen=True)
class StatsSnapshot:
    """Learner counters a badge requirement can be checked against."""

    lessons_completed: int = 0
    questions_answered: int = 0
    perfect_scores: int = 0
    flashcards_reviewed: int = 0
    current_streak: int = 0
    level: int = 1
    total_xp: int = 0

    def get(self, stat: str) -> int:
        if stat not in STAT_NAMES:
            raise KeyError(f"Unknown stat: {stat}")
        return getattr(self, stat)


@dataclass(frozen=True)
class BadgeRequirement:
    stat: str
    threshold: int

    def is_met(self, stats: StatsSnapshot) -> bool:
        return stats.get(self.stat) >= self.threshold

    def to_dict(self) -> dict:
        return {"type": self.stat, "threshold": self.threshold}


@dataclass(frozen=True)
class BadgeDefinition:
    code: str
    name: str
    description: str
    category: str  # learning | mastery | streak | special
    rarity: str  # common | rare | epic | legendary
    requirement: BadgeRequirement
    xp_reward: int
    icon: str = "star"


def _badge(code, name, description, category, rarity, stat, threshold, xp_reward, icon):
    return BadgeDefinition(
        code=code, name=name, description=description, category=category,
        rarity=rarity, requirement=BadgeRequirement(stat, threshold),
        xp_reward=xp_reward, icon=icon,
    )


BADGE_DEFINITIONS: list[BadgeDefinition] = [
    # Learning
    _badge("first_lesson", "First Steps", "Complete your first lesson",
           "learning", "common", "lessons_completed", 1, 10, "footprints"),
    _badge("lesson_master_10", "Lesson Explorer", "Complete 10 lessons",
           "learning", "common", "lessons_completed", 10, 25, "compass"),
    _badge("lesson_master_50", "Study Champion", "Complete 50 lessons",
           "learning", "rare", "lessons_completed", 50, 75, "trophy"),
    _badge("lesson_master_100", "Learning Legend", "Complete 100 lessons",
           "learning", "epic", "lessons_completed", 100, 150, "crown"),
    _badge("flashcard_starter", "Flashcard Friend", "Review 10 flashcards",
           "learning", "common", "flashcards_reviewed", 10, 10, "cards"),
    _badge("flashcard_pro", "Memory Master", "Review 100 flashcards",
           "learning", "rare", "flashcards_reviewed", 100, 50, "brain"),
    _badge("flashcard_legend", "Flashcard Legend", "Review 500 flashcards",
           "learning", "epic", "flashcards_reviewed", 500, 150, "lightning"),
    # Mastery
    _badge("first_correct", "Getting Started", "Answer your first question correctly",
           "mastery", "common", "questions_answered", 1, 5, "check"),
    _badge("question_master_50", "Question Whiz", "Answer 50 questions correctly",
           "mastery", "common", "questions_answered", 50, 25, "bulb"),
    _badge("question_master_100", "Answer Expert", "Answer 100 questions correctly",
           "mastery", "rare", "questions_answered", 100, 50, "graduation"),
    _badge("perfect_score_1", "Perfectionist", "Get an answer right on the first try",
           "mastery", "common", "perfect_scores", 1, 10, "target"),
    _badge("perfect_score_10", "Quiz Wizard", "Get 10 answers right on the first try",
           "mastery", "epic", "perfect_scores", 10, 50, "wand"),
    # Streaks
    _badge("streak_3", "Hat Trick", "Learn 3 days in a row",
           "streak", "common", "current_streak", 3, 15, "fire"),
    _badge("streak_7", "Week Warrior", "Learn 7 days in a row",
           "streak", "rare", "current_streak", 7, 30, "fire"),
    _badge("streak_14", "Fortnight Fighter", "Learn 14 days in a row",
           "streak", "rare", "current_streak", 14, 50, "shield"),
    _badge("streak_30", "Unstoppable", "Learn 30 days in a row",
           "streak", "epic", "current_streak", 30, 100, "rocket"),
    _badge("streak_100", "Legendary Streak", "Learn 100 days in a row",
           "streak", "legendary", "current_streak", 100, 300, "phoenix"),
    # Levels
    _badge("level_5", "Rising Star", "Reach level 5",
           "special", "common", "level", 5, 25, "star"),
    _badge("level_10", "Shining Bright", "Reach level 10",
           "special", "rare", "level", 10, 50, "sparkles"),
    _badge("level_25", "Master Learner", "Reach level 25",
           "special", "epic", "level", 25, 100, "medal"),
    _badge("level_50", "Grand Master", "Reach level 50",
           "special", "legendary", "level", 50, 250, "galaxy"),
]

BADGES_BY_CODE = {b.code: b for b in BADGE_DEFINITIONS}


def unlocked_badges(stats: StatsSnapshot, candidates: list[BadgeDefinition]) -> list[BadgeDefinition]:
    """Badges among ``candidates`` whose requirement ``stats`` satisfies."""
    return [b for b in candidates if b.requirement.is_met(stats)]


# ── Dates ─────────────────────────────────────────────────────────────

# Streak and daily XP boundaries are UTC calendar days.
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()

