"""
Exercise Grading Engine.

Validates a submitted answer, asks the answer judge for a verdict, and on a
correct answer awards XP on the attempt-based schedule. The attempt row, the
ledger entry and the progress update commit together; badge evaluation runs
once afterwards.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any

from database import transaction
from db_stores import ExerciseStoreDB, LearnerDB, LessonDB, XPLedgerDB
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from events import publish_stats_changed, record_learning_activity
from gamification import (
    ANSWER_TYPES,
    DIFFICULTY_XP,
    EXERCISE_TYPES,
    FIRST_TRY_BONUS_MULTIPLIER,
    MAX_ATTEMPTS,
    XP_AWARDS,
    RevealAnswer,
    ShowHint,
    next_guidance,
    xp_for_attempt,
)

logger = logging.getLogger(__name__)

ALREADY_COMPLETED_FEEDBACK = "You've already completed this exercise!"
DEFAULT_MAX_ANSWER_LENGTH = 1000


_OPTIONAL_TEXT_FIELDS = ("context_text", "original_position", "hint1", "hint2", "explanation")
_OPTIONAL_LIST_FIELDS = ("acceptable_answers", "options")


def _validate_new_exercise(ex: Any) -> None:
    """Reject anything that would not round-trip through the exercises table."""
    if not isinstance(ex, dict):
        raise ValidationError("Each exercise must be an object")
    if ex.get("type") not in EXERCISE_TYPES:
        raise ValidationError(f"Unknown exercise type: {ex.get('type')}")
    for field in ("question_text", "expected_answer"):
        value = ex.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Each exercise needs question_text and expected_answer")
    for field in _OPTIONAL_TEXT_FIELDS:
        if ex.get(field) is not None and not isinstance(ex[field], str):
            raise ValidationError(f"{field} must be a string")
    difficulty = ex.get("difficulty")
    if difficulty is not None and (
        not isinstance(difficulty, str) or difficulty.upper() not in DIFFICULTY_XP
    ):
        raise ValidationError(f"difficulty must be one of {', '.join(DIFFICULTY_XP)}")
    answer_type = ex.get("answer_type")
    if answer_type is not None and answer_type not in ANSWER_TYPES:
        raise ValidationError(f"answer_type must be one of {', '.join(ANSWER_TYPES)}")
    for field in _OPTIONAL_LIST_FIELDS:
        value = ex.get(field)
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(v, str) for v in value)
        ):
            raise ValidationError(f"{field} must be a list of strings")


def serialize_exercise(exercise: dict[str, Any], reveal_answers: bool) -> dict:
    """Public view of an exercise; answers stay hidden until completed."""
    out = {
        "id": exercise["id"],
        "lesson_id": exercise["lesson_id"],
        "type": exercise["type"],
        "order_index": exercise["order_index"],
        "question_text": exercise["question_text"],
        "context_text": exercise["context_text"],
        "original_position": exercise["original_position"],
        "answer_type": exercise["answer_type"],
        "options": exercise["options"],
        "difficulty": exercise["difficulty"],
        "xp_reward": exercise["xp_reward"],
        "has_hint1": bool(exercise["hint1"]),
        "has_hint2": bool(exercise["hint2"]),
    }
    if reveal_answers:
        out["expected_answer"] = exercise["expected_answer"]
        out["acceptable_answers"] = exercise["acceptable_answers"]
        out["explanation"] = exercise["explanation"]
    return out


def _attempt_summary(attempt: dict | None) -> dict | None:
    if attempt is None:
        return None
    return {
        "submitted_answer": attempt["submitted_answer"],
        "is_correct": bool(attempt["is_correct"]),
        "attempt_number": attempt["attempt_number"],
        "feedback": attempt["ai_feedback"],
        "created_at": attempt["created_at"],
    }


def _already_completed(attempt_count: int) -> dict:
    return {
        "is_correct": True,
        "feedback": ALREADY_COMPLETED_FEEDBACK,
        "show_hint": None,
        "hint": None,
        "xp_awarded": 0,
        "attempt_number": attempt_count,
        "leveled_up": False,
        "new_badges": [],
    }


class ExerciseService:
    """Grades answers for one judge."""

    def __init__(self, judge, max_answer_length: int = DEFAULT_MAX_ANSWER_LENGTH,
                 max_attempts: int = MAX_ATTEMPTS):
        self.judge = judge
        self.max_answer_length = max_answer_length
        self.max_attempts = max_attempts

    # ── Access ──────────────────────────────────────────────

    @staticmethod
    def _check_owner(owner_id: int, learner_id: int) -> None:
        if owner_id != learner_id:
            raise ForbiddenError("Access denied to this exercise")

    def _load_exercise(self, exercise_id: int, learner_id: int) -> dict:
        exercise = ExerciseStoreDB.get(exercise_id)
        if exercise is None:
            raise NotFoundError("Exercise not found")
        self._check_owner(exercise["owner_id"], learner_id)
        return exercise

    def _load_lesson(self, lesson_id: int, learner_id: int):
        lesson = LessonDB.get(lesson_id)
        if lesson is None:
            raise NotFoundError("Lesson not found")
        self._check_owner(lesson["learner_id"], learner_id)
        return lesson

    def resolve_exercise_id(self, exercise_ref: str, learner_id: int,
                            lesson_id: int | None = None) -> int:
        """Accept a numeric id or an inline marker such as "ex-1"."""
        if re.fullmatch(r"[0-9]+", str(exercise_ref)):
            return int(exercise_ref)
        if lesson_id is None:
            raise NotFoundError(
                "Exercise not found. When using inline exercises, lesson_id is required."
            )
        self._load_lesson(lesson_id, learner_id)
        exercise = ExerciseStoreDB.find_by_original_position(lesson_id, exercise_ref)
        if exercise is None:
            logger.warning("No exercise %s in lesson %s", exercise_ref, lesson_id)
            raise NotFoundError("Exercise not found")
        return exercise["id"]

    # ── Grading ─────────────────────────────────────────────

    def _validate_answer(self, submitted_answer: str) -> str:
        if not isinstance(submitted_answer, str) or not submitted_answer.strip():
            raise ValidationError("Answer cannot be empty")
        answer = submitted_answer.strip()
        if len(answer) > self.max_answer_length:
            raise ValidationError(
                f"Answer is too long (max {self.max_answer_length} characters)"
            )
        return answer

    def submit_answer(self, exercise_id: int, learner_id: int, submitted_answer: str,
                      age_band: str | None = None) -> dict:
        answer = self._validate_answer(submitted_answer)
        learner = LearnerDB(learner_id).require()
        exercise = self._load_exercise(exercise_id, learner_id)
        store = ExerciseStoreDB(learner_id)

        attempts = store.attempts(exercise_id)
        if any(a["is_correct"] for a in attempts):
            return _already_completed(len(attempts))

        # The judge is slow; it runs with no transaction open.
        judged_attempt = len(attempts) + 1
        verdict = self.judge.judge(
            exercise, answer, judged_attempt, age_band or learner["age_group"]
        )

        award = None
        try:
            with transaction():
                attempts = store.attempts(exercise_id)
                if any(a["is_correct"] for a in attempts):
                    logger.info(
                        "Exercise %s completed concurrently for learner %s",
                        exercise_id, learner_id,
                    )
                    return _already_completed(len(attempts))
                attempt_number = len(attempts) + 1
                if attempt_number != judged_attempt:
                    logger.warning(
                        "Exercise %s for learner %s was judged as attempt %d but recorded as %d",
                        exercise_id, learner_id, judged_attempt, attempt_number,
                    )
                xp = xp_for_attempt(exercise["xp_reward"], attempt_number) if verdict.is_correct else 0
                store.record_attempt(
                    exercise_id, answer, verdict.is_correct, attempt_number, verdict.feedback, xp,
                )
                if xp > 0:
                    perfect = attempt_number == 1
                    award = XPLedgerDB(learner_id).award_xp(
                        xp,
                        "EXERCISE_PERFECT" if perfect else "EXERCISE_CORRECT",
                        source_type="exercise",
                        source_id=exercise_id,
                        is_bonus=perfect,
                        bonus_multiplier=FIRST_TRY_BONUS_MULTIPLIER if perfect else None,
                        bonus_reason="first_try_correct" if perfect else None,
                        counts_as_question=True,
                        is_perfect=perfect,
                        evaluate_badges=False,
                    )
        except sqlite3.IntegrityError as e:
            raise ConflictError("This attempt was already recorded. Please try again.") from e

        logger.info(
            "Learner %s exercise %s attempt %d: correct=%s xp=%d",
            learner_id, exercise_id, attempt_number, verdict.is_correct, xp,
        )

        record_learning_activity(learner_id, evaluate_badges=False)
        new_badges = publish_stats_changed(learner_id)

        result = {
            "is_correct": verdict.is_correct,
            "feedback": verdict.feedback,
            "show_hint": None,
            "hint": None,
            "xp_awarded": xp,
            "attempt_number": attempt_number,
            "leveled_up": bool(award and award["leveled_up"]),
            "new_badges": new_badges,
        }
        if award and award["leveled_up"]:
            result["new_level"] = award["new_level"]
        if verdict.is_correct:
            result["explanation"] = exercise["explanation"]
            return result

        guidance = next_guidance(
            attempt_number, bool(exercise["hint1"]), bool(exercise["hint2"]), self.max_attempts
        )
        if isinstance(guidance, ShowHint):
            result["show_hint"] = guidance.number
            result["hint"] = exercise[f"hint{guidance.number}"]
        elif isinstance(guidance, RevealAnswer):
            result["correct_answer"] = exercise["expected_answer"]
            result["explanation"] = exercise["explanation"]
        return result

    def get_hint(self, exercise_id: int, learner_id: int, hint_number: int) -> str | None:
        if hint_number not in (1, 2):
            raise ValidationError("Hint number must be 1 or 2")
        exercise = self._load_exercise(exercise_id, learner_id)
        return exercise[f"hint{hint_number}"]

    # ── Reads ───────────────────────────────────────────────

    def _with_status(self, exercise: dict, learner_id: int) -> dict:
        attempts = ExerciseStoreDB(learner_id).attempts(exercise["id"])
        completed = any(a["is_correct"] for a in attempts)
        out = serialize_exercise(exercise, reveal_answers=completed)
        out["is_completed"] = completed
        out["attempt_count"] = len(attempts)
        out["last_attempt"] = _attempt_summary(attempts[-1] if attempts else None)
        return out

    def get_exercise_for_learner(self, exercise_id: int, learner_id: int) -> dict:
        exercise = self._load_exercise(exercise_id, learner_id)
        return self._with_status(exercise, learner_id)

    def get_exercises_for_lesson(self, lesson_id: int, learner_id: int) -> list[dict]:
        self._load_lesson(lesson_id, learner_id)
        return [self._with_status(ex, learner_id) for ex in ExerciseStoreDB.for_lesson(lesson_id)]

    def create_exercises_for_lesson(self, lesson_id: int, exercises: list[dict]) -> list[int]:
        if LessonDB.get(lesson_id) is None:
            raise NotFoundError("Lesson not found")
        if not exercises:
            return []
        for ex in exercises:
            _validate_new_exercise(ex)
        ids = ExerciseStoreDB.create_for_lesson(lesson_id, exercises)
        logger.info("Created %d exercises for lesson %s", len(ids), lesson_id)
        return ids

    @staticmethod
    def get_stats_for_learner(learner_id: int) -> dict:
        LearnerDB(learner_id).require()
        return ExerciseStoreDB(learner_id).stats()


def complete_lesson(learner_id: int, lesson_id: int) -> dict:
    """Mark a lesson finished. Only the first call awards XP."""
    lesson = LessonDB.get(lesson_id)
    if lesson is None:
        raise NotFoundError("Lesson not found")
    if lesson["learner_id"] != learner_id:
        raise ForbiddenError("Access denied to this lesson")

    with transaction():
        first_time = LessonDB(learner_id).mark_completed(lesson_id)
        award = None
        if first_time:
            award = XPLedgerDB(learner_id).award_xp(
                XP_AWARDS["lesson_complete"], "LESSON_COMPLETE",
                source_type="lesson", source_id=lesson_id,
                evaluate_badges=False,
            )
    if not first_time:
        return {"completed": True, "already_completed": True, "xp_awarded": 0,
                "leveled_up": False, "new_badges": []}

    streak = record_learning_activity(learner_id, evaluate_badges=False)
    new_badges = publish_stats_changed(learner_id)
    logger.info("Learner %s completed lesson %s", learner_id, lesson_id)
    result = {
        "completed": True,
        "already_completed": False,
        "xp_awarded": award["xp_awarded"],
        "total_xp": award["total_xp"],
        "level": award["level"],
        "leveled_up": award["leveled_up"],
        "current_streak": streak["current_streak"],
        "new_badges": new_badges,
    }
    if award["leveled_up"]:
        result["new_level"] = award["new_level"]
    return result
