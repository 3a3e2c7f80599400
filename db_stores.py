"""
DB-backed store classes for the learner progress core.

Each class is bound to one learner and reads/writes SQLite through
database.get_db(). Mutations that touch more than one row run inside
database.transaction() and never commit on their own, so callers can
compose them into a larger atomic unit.
"""

from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Optional

from database import get_db, transaction
from errors import NotFoundError, ValidationError
from gamification import (
    AGE_BANDS,
    DEFAULT_LEVEL_CURVE,
    MAX_STREAK_FREEZES,
    XP_REASONS,
    BadgeDefinition,
    BadgeRequirement,
    LevelCurve,
    StatsSnapshot,
    base_xp_for_difficulty,
    unlocked_badges,
    utc_now,
    utc_today,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return utc_now().isoformat(timespec="microseconds")


def _require_learner(db, learner_id: int) -> None:
    if not db.execute("SELECT 1 FROM learners WHERE id = ?", (learner_id,)).fetchone():
        raise NotFoundError("Learner not found")


def _effective_streak(r, today: date) -> int:
    """The stored streak as of ``today``, or 0 once it has lapsed.

    A single missed day still counts as alive while an armed freeze or a
    spare credit would bridge it on the next activity.
    """
    if r is None or not r["last_active_date"]:
        return 0
    gap = (today - date.fromisoformat(r["last_active_date"])).days
    if gap <= 1:
        return r["current_streak"]
    if gap == 2 and (r["freeze_armed"] or r["freeze_available"] > 0):
        return r["current_streak"]
    return 0


# ── Learners & Lessons ───────────────────────────────────────────────


class LearnerDB:
    """A child account: display name and age band."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    @staticmethod
    def create(display_name: str, age_group: str = "OLDER") -> int:
        age_group = (age_group or "OLDER").upper()
        if age_group not in AGE_BANDS:
            raise ValidationError(f"age_group must be one of {', '.join(AGE_BANDS)}")
        if not (display_name or "").strip():
            raise ValidationError("display_name is required")
        db = get_db()
        cur = db.execute(
            "INSERT INTO learners (display_name, age_group, created_at) VALUES (?, ?, ?)",
            (display_name.strip(), age_group, _now_iso()),
        )
        db.commit()
        return cur.lastrowid

    def row(self):
        db = get_db()
        return db.execute("SELECT * FROM learners WHERE id = ?", (self.learner_id,)).fetchone()

    def require(self):
        r = self.row()
        if r is None:
            raise NotFoundError("Learner not found")
        return r

    @property
    def age_group(self) -> str:
        r = self.row()
        return r["age_group"] if r else "OLDER"


class LessonDB:
    """Lessons owned by one learner."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def create(self, title: str = "") -> int:
        db = get_db()
        _require_learner(db, self.learner_id)
        cur = db.execute(
            "INSERT INTO lessons (learner_id, title, created_at) VALUES (?, ?, ?)",
            (self.learner_id, title, _now_iso()),
        )
        db.commit()
        return cur.lastrowid

    @staticmethod
    def get(lesson_id: int):
        db = get_db()
        return db.execute("SELECT * FROM lessons WHERE id = ?", (lesson_id,)).fetchone()

    def mark_completed(self, lesson_id: int) -> bool:
        """Set completed_at once. Returns True only for the call that set it."""
        with transaction() as db:
            cur = db.execute(
                "UPDATE lessons SET completed_at = ? "
                "WHERE id = ? AND learner_id = ? AND completed_at IS NULL",
                (_now_iso(), lesson_id, self.learner_id),
            )
            if cur.rowcount != 1:
                return False
            ProgressDB(self.learner_id).increment(db, lessons_completed=1)
        return True


# ── Exercises & Attempts ─────────────────────────────────────────────


def _exercise_from_row(r) -> dict:
    d = dict(r)
    d["acceptable_answers"] = json.loads(d.get("acceptable_answers") or "[]")
    d["options"] = json.loads(d["options"]) if d.get("options") else None
    return d


class ExerciseStoreDB:
    """Exercises and the learner's append-only attempt log."""

    _EXERCISE_SELECT = (
        "SELECT e.*, l.learner_id AS owner_id FROM exercises e "
        "JOIN lessons l ON l.id = e.lesson_id "
    )

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    @staticmethod
    def create_for_lesson(lesson_id: int, exercises: list[dict]) -> list[int]:
        """Store detected exercises in order. XP is derived from difficulty."""
        ids: list[int] = []
        now = _now_iso()
        with transaction() as db:
            for index, ex in enumerate(exercises):
                difficulty = (ex.get("difficulty") or "MEDIUM").upper()
                cur = db.execute(
                    "INSERT INTO exercises (lesson_id, type, order_index, question_text, "
                    "context_text, original_position, expected_answer, acceptable_answers, "
                    "answer_type, options, hint1, hint2, explanation, difficulty, xp_reward, "
                    "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        lesson_id,
                        ex["type"],
                        index,
                        ex["question_text"],
                        ex.get("context_text"),
                        ex.get("original_position"),
                        ex["expected_answer"],
                        json.dumps(ex.get("acceptable_answers") or []),
                        ex.get("answer_type") or "TEXT",
                        json.dumps(ex["options"]) if ex.get("options") else None,
                        ex.get("hint1"),
                        ex.get("hint2"),
                        ex.get("explanation"),
                        difficulty,
                        base_xp_for_difficulty(difficulty),
                        now,
                    ),
                )
                ids.append(cur.lastrowid)
        return ids

    @classmethod
    def get(cls, exercise_id: int) -> Optional[dict]:
        db = get_db()
        r = db.execute(cls._EXERCISE_SELECT + "WHERE e.id = ?", (exercise_id,)).fetchone()
        return _exercise_from_row(r) if r else None

    @classmethod
    def find_by_original_position(cls, lesson_id: int, marker: str) -> Optional[dict]:
        """Look up an inline exercise by its marker id (e.g. "ex-1")."""
        db = get_db()
        r = db.execute(
            cls._EXERCISE_SELECT + "WHERE e.lesson_id = ? AND e.original_position = ?",
            (lesson_id, marker),
        ).fetchone()
        return _exercise_from_row(r) if r else None

    @classmethod
    def for_lesson(cls, lesson_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            cls._EXERCISE_SELECT + "WHERE e.lesson_id = ? ORDER BY e.order_index, e.id",
            (lesson_id,),
        ).fetchall()
        return [_exercise_from_row(r) for r in rows]

    def attempts(self, exercise_id: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM exercise_attempts WHERE exercise_id = ? AND learner_id = ? "
            "ORDER BY attempt_number",
            (exercise_id, self.learner_id),
        ).fetchall()
        return [dict(r) for r in rows]

    def record_attempt(self, exercise_id: int, submitted_answer: str, is_correct: bool,
                       attempt_number: int, feedback: str, xp_awarded: int) -> int:
        """Append one attempt. Must run inside an open transaction."""
        db = get_db()
        cur = db.execute(
            "INSERT INTO exercise_attempts (exercise_id, learner_id, submitted_answer, "
            "is_correct, attempt_number, ai_feedback, xp_awarded, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (exercise_id, self.learner_id, submitted_answer, int(is_correct),
             attempt_number, feedback, xp_awarded, _now_iso()),
        )
        return cur.lastrowid

    def stats(self) -> dict:
        db = get_db()
        total = db.execute(
            "SELECT COUNT(*) AS n FROM exercises e JOIN lessons l ON l.id = e.lesson_id "
            "WHERE l.learner_id = ?",
            (self.learner_id,),
        ).fetchone()["n"]
        r = db.execute(
            "SELECT COUNT(*) AS attempts, "
            "COUNT(DISTINCT CASE WHEN is_correct = 1 THEN exercise_id END) AS completed, "
            "SUM(CASE WHEN is_correct = 1 AND attempt_number = 1 THEN 1 ELSE 0 END) AS first_try, "
            "COALESCE(SUM(xp_awarded), 0) AS xp "
            "FROM exercise_attempts WHERE learner_id = ?",
            (self.learner_id,),
        ).fetchone()
        return {
            "total_exercises": total,
            "completed_exercises": r["completed"],
            "total_attempts": r["attempts"],
            "correct_first_try": r["first_try"] or 0,
            "total_xp_earned": r["xp"],
        }


# ── Progress & XP Ledger ─────────────────────────────────────────────


class ProgressDB:
    """Denormalized per-learner counters. Created lazily."""

    COUNTERS = ("questions_answered", "perfect_scores", "lessons_completed", "flashcards_reviewed")

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def _ensure(self, db) -> None:
        db.execute(
            "INSERT OR IGNORE INTO user_progress (learner_id, updated_at) VALUES (?, ?)",
            (self.learner_id, _now_iso()),
        )

    def row(self):
        db = get_db()
        return db.execute(
            "SELECT * FROM user_progress WHERE learner_id = ?", (self.learner_id,)
        ).fetchone()

    def increment(self, db, **counters: int) -> None:
        """Atomically bump named counters. Must run inside an open transaction."""
        unknown = set(counters) - set(self.COUNTERS)
        if unknown:
            raise ValueError(f"Unknown progress counters: {sorted(unknown)}")
        self._ensure(db)
        sets = ", ".join(f"{name} = {name} + ?" for name in counters)
        db.execute(
            f"UPDATE user_progress SET {sets}, updated_at = ? WHERE learner_id = ?",
            (*counters.values(), _now_iso(), self.learner_id),
        )

    def record_flashcard_reviews(self, count: int = 1) -> None:
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise ValidationError("count must be a positive integer")
        with transaction() as db:
            _require_learner(db, self.learner_id)
            self.increment(db, flashcards_reviewed=count)


def load_stats_snapshot(learner_id: int, today: date | None = None) -> StatsSnapshot:
    """Everything a badge requirement can look at, read in one go."""
    db = get_db()
    p = db.execute(
        "SELECT * FROM user_progress WHERE learner_id = ?", (learner_id,)
    ).fetchone()
    s = db.execute(
        "SELECT * FROM streaks WHERE learner_id = ?", (learner_id,)
    ).fetchone()
    current_streak = _effective_streak(s, today or utc_today())
    if p is None:
        return StatsSnapshot(current_streak=current_streak)
    return StatsSnapshot(
        lessons_completed=p["lessons_completed"],
        questions_answered=p["questions_answered"],
        perfect_scores=p["perfect_scores"],
        flashcards_reviewed=p["flashcards_reviewed"],
        current_streak=current_streak,
        level=p["level"],
        total_xp=p["total_xp"],
    )


class XPLedgerDB:
    """Append-only XP transactions plus the running totals derived from them."""

    def __init__(self, learner_id: int, curve: LevelCurve = DEFAULT_LEVEL_CURVE):
        self.learner_id = learner_id
        self.curve = curve

    def award_xp(
        self,
        amount: int,
        reason: str,
        source_type: str | None = None,
        source_id: str | int | None = None,
        is_bonus: bool = False,
        bonus_multiplier: float | None = None,
        bonus_reason: str | None = None,
        counts_as_question: bool = False,
        is_perfect: bool = False,
        evaluate_badges: bool = True,
    ) -> dict:
        """Append a transaction and fold it into the learner's totals.

        The ledger row and the progress update commit together. When
        ``evaluate_badges`` is set, one badge pass runs after the commit;
        callers that are already inside a transaction pass False and
        publish the stats-changed event themselves once they commit.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("XP amount must be a positive integer")
        if reason not in XP_REASONS:
            raise ValidationError(f"Unknown XP reason: {reason}")

        progress = ProgressDB(self.learner_id)
        with transaction() as db:
            _require_learner(db, self.learner_id)
            progress._ensure(db)
            old_level = db.execute(
                "SELECT level FROM user_progress WHERE learner_id = ?", (self.learner_id,)
            ).fetchone()["level"]
            now = _now_iso()
            db.execute(
                "INSERT INTO xp_transactions (learner_id, amount, reason, was_bonus, "
                "bonus_multiplier, bonus_reason, source_type, source_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (self.learner_id, amount, reason, int(is_bonus), bonus_multiplier,
                 bonus_reason, source_type, None if source_id is None else str(source_id), now),
            )
            db.execute(
                "UPDATE user_progress SET total_xp = total_xp + ?, current_xp = current_xp + ?, "
                "questions_answered = questions_answered + ?, perfect_scores = perfect_scores + ?, "
                "updated_at = ? WHERE learner_id = ?",
                (amount, amount, int(counts_as_question), int(is_perfect), now, self.learner_id),
            )
            total_xp = db.execute(
                "SELECT total_xp FROM user_progress WHERE learner_id = ?", (self.learner_id,)
            ).fetchone()["total_xp"]
            level_info = self.curve.progress(total_xp)
            db.execute(
                "UPDATE user_progress SET level = ?, current_xp = ? WHERE learner_id = ?",
                (level_info["level"], level_info["current_xp"], self.learner_id),
            )

        leveled_up = level_info["level"] > old_level
        logger.info("Awarded %d XP to learner %s (%s)", amount, self.learner_id, reason)
        if leveled_up:
            logger.info("Learner %s reached level %d", self.learner_id, level_info["level"])

        result = {
            "xp_awarded": amount,
            "current_xp": level_info["current_xp"],
            "total_xp": total_xp,
            "level": level_info["level"],
            "leveled_up": leveled_up,
            "new_badges": [],
        }
        if leveled_up:
            result["new_level"] = level_info["level"]
        if evaluate_badges:
            from events import publish_stats_changed
            result["new_badges"] = publish_stats_changed(self.learner_id)
        return result

    def get_progress(self) -> dict:
        r = ProgressDB(self.learner_id).row()
        total_xp = r["total_xp"] if r else 0
        info = self.curve.progress(total_xp)
        return {
            "learner_id": self.learner_id,
            "total_xp": total_xp,
            "current_xp": info["current_xp"],
            "level": info["level"],
            "xp_for_current_level": info["xp_for_current_level"],
            "xp_for_next_level": info["xp_for_next_level"],
            "xp_to_next_level": info["xp_to_next_level"],
            "percent_to_next_level": info["percent_to_next_level"],
            "questions_answered": r["questions_answered"] if r else 0,
            "perfect_scores": r["perfect_scores"] if r else 0,
            "lessons_completed": r["lessons_completed"] if r else 0,
            "flashcards_reviewed": r["flashcards_reviewed"] if r else 0,
        }

    def _sum_since(self, day: date) -> int:
        db = get_db()
        return db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM xp_transactions "
            "WHERE learner_id = ? AND created_at >= ?",
            (self.learner_id, day.isoformat()),
        ).fetchone()["total"]

    def get_stats(self, today: date | None = None) -> dict:
        """Today / trailing 7 days / trailing 30 days, all UTC."""
        today = today or utc_today()
        month_xp = self._sum_since(today - timedelta(days=29))
        return {
            "today_xp": self._sum_since(today),
            "week_xp": self._sum_since(today - timedelta(days=6)),
            "month_xp": month_xp,
            "average_daily_xp": round(month_xp / 30),
        }

    def get_xp_history(self, days: int = 7, today: date | None = None) -> dict:
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= 90:
            raise ValidationError("days must be between 1 and 90")
        today = today or utc_today()
        start = today - timedelta(days=days - 1)
        db = get_db()
        rows = db.execute(
            "SELECT * FROM xp_transactions WHERE learner_id = ? AND created_at >= ? "
            "ORDER BY created_at DESC, id DESC",
            (self.learner_id, start.isoformat()),
        ).fetchall()
        per_day: dict[str, int] = {}
        for r in rows:
            key = r["created_at"][:10]
            per_day[key] = per_day.get(key, 0) + r["amount"]
        daily = []
        for offset in range(days):
            d = (start + timedelta(days=offset)).isoformat()
            daily.append({"date": d, "xp": per_day.get(d, 0)})
        return {
            "days": days,
            "total_xp": sum(per_day.values()),
            "daily": daily,
            "transactions": [
                {
                    "id": r["id"],
                    "amount": r["amount"],
                    "reason": r["reason"],
                    "was_bonus": bool(r["was_bonus"]),
                    "bonus_multiplier": r["bonus_multiplier"],
                    "bonus_reason": r["bonus_reason"],
                    "source_type": r["source_type"],
                    "source_id": r["source_id"],
                    "created_at": r["created_at"],
                }
                for r in rows
            ],
        }

    def ledger_total(self) -> int:
        db = get_db()
        return db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM xp_transactions WHERE learner_id = ?",
            (self.learner_id,),
        ).fetchone()["total"]


# ── Streaks ──────────────────────────────────────────────────────────


class StreakDB:
    """Consecutive-day activity counter with freeze credits.

    A freeze covers exactly one missed day. It is either armed ahead of
    time by use_streak_freeze() or spent automatically when the learner
    comes back after a single missed day with a credit in hand.
    """

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def _ensure(self, db) -> None:
        db.execute(
            "INSERT OR IGNORE INTO streaks (learner_id, updated_at) VALUES (?, ?)",
            (self.learner_id, _now_iso()),
        )

    def _row(self):
        db = get_db()
        return db.execute("SELECT * FROM streaks WHERE learner_id = ?", (self.learner_id,)).fetchone()

    def record_activity(self, today: date | None = None) -> dict:
        """Count today as an active day.

        Returns the new counters plus ``extended`` (the streak grew today)
        and ``freeze_used``.
        """
        today = today or utc_today()
        freeze_used = False
        with transaction() as db:
            _require_learner(db, self.learner_id)
            self._ensure(db)
            r = db.execute(
                "SELECT * FROM streaks WHERE learner_id = ?", (self.learner_id,)
            ).fetchone()
            current = r["current_streak"]
            longest = r["longest_streak"]
            freezes = r["freeze_available"]
            armed = bool(r["freeze_armed"])
            freeze_date = r["freeze_used_date"]
            last = date.fromisoformat(r["last_active_date"]) if r["last_active_date"] else None

            if last is not None and (today - last).days <= 0:
                # Same day (or a clock that went backwards): nothing to do
                return self._result(r, extended=False, freeze_used=False)

            if last is None:
                current = 1
            else:
                gap = (today - last).days
                if gap == 1:
                    current += 1
                elif gap == 2 and (armed or freezes > 0):
                    # An armed freeze is spent first; otherwise a credit is used now
                    if armed:
                        armed = False
                    else:
                        freezes -= 1
                    freeze_date = (today - timedelta(days=1)).isoformat()
                    current += 1
                    freeze_used = True
                else:
                    current = 1
            longest = max(longest, current)

            db.execute(
                "UPDATE streaks SET current_streak = ?, longest_streak = ?, last_active_date = ?, "
                "freeze_available = ?, freeze_armed = ?, freeze_used_date = ?, updated_at = ? "
                "WHERE learner_id = ?",
                (current, longest, today.isoformat(), freezes, int(armed), freeze_date,
                 _now_iso(), self.learner_id),
            )

        if freeze_used:
            logger.info("Streak freeze kept learner %s streak at %d", self.learner_id, current)
        logger.info("Learner %s streak is now %d", self.learner_id, current)
        return {
            "current_streak": current,
            "longest_streak": longest,
            "last_active_date": today.isoformat(),
            "freeze_available": freezes,
            "extended": True,
            "freeze_used": freeze_used,
        }

    @staticmethod
    def _result(r, extended: bool, freeze_used: bool) -> dict:
        return {
            "current_streak": r["current_streak"],
            "longest_streak": r["longest_streak"],
            "last_active_date": r["last_active_date"],
            "freeze_available": r["freeze_available"],
            "extended": extended,
            "freeze_used": freeze_used,
        }

    def use_streak_freeze(self) -> dict:
        """Spend a credit now to protect the streak through the next missed day."""
        with transaction() as db:
            _require_learner(db, self.learner_id)
            self._ensure(db)
            r = db.execute(
                "SELECT * FROM streaks WHERE learner_id = ?", (self.learner_id,)
            ).fetchone()
            if r["freeze_armed"]:
                return {
                    "success": False,
                    "message": "Your streak is already protected by a freeze.",
                    "freeze_available": r["freeze_available"],
                }
            if r["freeze_available"] <= 0:
                return {
                    "success": False,
                    "message": "You don't have any streak freezes right now. Keep learning to earn one!",
                    "freeze_available": 0,
                }
            db.execute(
                "UPDATE streaks SET freeze_available = freeze_available - 1, freeze_armed = 1, "
                "updated_at = ? WHERE learner_id = ?",
                (_now_iso(), self.learner_id),
            )
        remaining = r["freeze_available"] - 1
        logger.info("Learner %s used a streak freeze (%d left)", self.learner_id, remaining)
        return {
            "success": True,
            "message": "Streak freeze activated! Your streak is safe for one missed day.",
            "freeze_available": remaining,
        }

    def grant_freeze(self, count: int = 1) -> int:
        """Add freeze credits, capped. Returns the new credit count."""
        if count <= 0:
            raise ValidationError("count must be positive")
        with transaction() as db:
            _require_learner(db, self.learner_id)
            self._ensure(db)
            db.execute(
                "UPDATE streaks SET freeze_available = MIN(freeze_available + ?, ?), updated_at = ? "
                "WHERE learner_id = ?",
                (count, MAX_STREAK_FREEZES, _now_iso(), self.learner_id),
            )
            available = db.execute(
                "SELECT freeze_available FROM streaks WHERE learner_id = ?", (self.learner_id,)
            ).fetchone()["freeze_available"]
        return available

    def get_streak_info(self, today: date | None = None) -> dict:
        today = today or utc_today()
        r = self._row()
        if r is None:
            return {
                "current_streak": 0,
                "longest_streak": 0,
                "is_active_today": False,
                "freeze_available": 0,
                "freeze_armed": False,
                "last_active_date": None,
            }
        return {
            "current_streak": _effective_streak(r, today),
            "longest_streak": r["longest_streak"],
            "is_active_today": r["last_active_date"] == today.isoformat(),
            "freeze_available": r["freeze_available"],
            "freeze_armed": bool(r["freeze_armed"]),
            "last_active_date": r["last_active_date"],
        }

    @staticmethod
    def get_streak_leaderboard(limit: int = 10, today: date | None = None) -> list[dict]:
        """Learners ranked by live streak. Lapsed streaks drop off the board."""
        today = today or utc_today()
        db = get_db()
        rows = db.execute(
            "SELECT s.*, l.display_name FROM streaks s JOIN learners l ON l.id = s.learner_id "
            "WHERE s.current_streak > 0 AND s.last_active_date >= ?",
            ((today - timedelta(days=2)).isoformat(),),
        ).fetchall()
        live = []
        for r in rows:
            current = _effective_streak(r, today)
            if current > 0:
                live.append((current, r))
        live.sort(key=lambda item: (-item[0], -item[1]["longest_streak"], item[1]["learner_id"]))
        return [
            {
                "rank": i + 1,
                "learner_id": r["learner_id"],
                "display_name": r["display_name"],
                "current_streak": current,
                "longest_streak": r["longest_streak"],
            }
            for i, (current, r) in enumerate(live[:limit])
        ]


# ── Badges ───────────────────────────────────────────────────────────


def _badge_dict(r) -> dict:
    return {
        "code": r["code"],
        "name": r["name"],
        "description": r["description"],
        "icon": r["icon"],
        "category": r["category"],
        "rarity": r["rarity"],
        "xp_reward": r["xp_reward"],
        "requirement": json.loads(r["requirements"]),
    }


def _definition_from_row(r) -> BadgeDefinition:
    req = json.loads(r["requirements"])
    return BadgeDefinition(
        code=r["code"], name=r["name"], description=r["description"],
        category=r["category"], rarity=r["rarity"],
        requirement=BadgeRequirement(req["type"], int(req["threshold"])),
        xp_reward=r["xp_reward"], icon=r["icon"],
    )


class BadgeStoreDB:
    """Earned badges. Never revoked; unique per (learner, badge)."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def _unearned_rows(self):
        db = get_db()
        return db.execute(
            "SELECT b.* FROM badges b WHERE NOT EXISTS ("
            "  SELECT 1 FROM earned_badges eb WHERE eb.badge_id = b.id AND eb.learner_id = ?"
            ") ORDER BY b.sort_order",
            (self.learner_id,),
        ).fetchall()

    def evaluate_and_award(self, stats: StatsSnapshot) -> list[dict]:
        """Award every unearned badge whose requirement ``stats`` meets.

        Badge XP goes through the ledger with badge evaluation switched off,
        so one external event triggers exactly one pass.
        """
        rows = {r["code"]: r for r in self._unearned_rows()}
        candidates = []
        for r in rows.values():
            try:
                definition = _definition_from_row(r)
                definition.requirement.is_met(stats)
            except (KeyError, ValueError) as e:
                logger.warning("Skipping badge %s with bad requirement: %s", r["code"], e)
                continue
            candidates.append(definition)

        earned: list[dict] = []
        ledger = XPLedgerDB(self.learner_id)
        for badge in unlocked_badges(stats, candidates):
            r = rows[badge.code]
            with transaction() as db:
                cur = db.execute(
                    "INSERT OR IGNORE INTO earned_badges (learner_id, badge_id, earned_at) "
                    "VALUES (?, ?, ?)",
                    (self.learner_id, r["id"], _now_iso()),
                )
                if cur.rowcount != 1:
                    # Another request got there first
                    continue
                if badge.xp_reward > 0:
                    ledger.award_xp(
                        badge.xp_reward, "BADGE_EARNED",
                        source_type="badge", source_id=badge.code,
                        evaluate_badges=False,
                    )
            logger.info("Learner %s earned badge %s", self.learner_id, badge.code)
            earned.append(_badge_dict(r))
        return earned

    def get_badges_for_child(self) -> dict:
        db = get_db()
        earned_rows = db.execute(
            "SELECT b.*, eb.earned_at FROM earned_badges eb JOIN badges b ON b.id = eb.badge_id "
            "WHERE eb.learner_id = ? ORDER BY b.sort_order",
            (self.learner_id,),
        ).fetchall()
        stats = load_stats_snapshot(self.learner_id)
        available = []
        for r in self._unearned_rows():
            badge = _badge_dict(r)
            req = badge["requirement"]
            try:
                badge["progress"] = min(stats.get(req["type"]), req["threshold"])
            except KeyError:
                badge["progress"] = 0
            available.append(badge)
        return {
            "earned": [{**_badge_dict(r), "earned_at": r["earned_at"]} for r in earned_rows],
            "available": available,
        }

    def get_recent_achievements(self, limit: int = 5) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT b.*, eb.earned_at FROM earned_badges eb JOIN badges b ON b.id = eb.badge_id "
            "WHERE eb.learner_id = ? ORDER BY eb.earned_at DESC, eb.id DESC LIMIT ?",
            (self.learner_id, limit),
        ).fetchall()
        return [{**_badge_dict(r), "earned_at": r["earned_at"]} for r in rows]

