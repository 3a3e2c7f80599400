"""Tests for exercise_service.py: grading flow, rewards, hints, access rules."""

from __future__ import annotations

import logging
import threading

import pytest

from database import transaction
from db_stores import BadgeStoreDB, ExerciseStoreDB, StreakDB, XPLedgerDB
from errors import ExternalDependencyError, ForbiddenError, NotFoundError, ValidationError
from exercise_service import ALREADY_COMPLETED_FEEDBACK, ExerciseService, complete_lesson

from conftest import (
    EX_EASY,
    EX_HARD,
    EX_INLINE,
    EX_MEDIUM,
    EX_OTHER,
    LEARNER_ID,
    LESSON_ID,
    OTHER_LEARNER_ID,
    OTHER_LESSON_ID,
)


def attempt_numbers(exercise_id: int, learner_id: int = LEARNER_ID) -> list[int]:
    return [a["attempt_number"] for a in ExerciseStoreDB(learner_id).attempts(exercise_id)]


def assert_ledger_consistent(learner_id: int = LEARNER_ID) -> None:
    ledger = XPLedgerDB(learner_id)
    assert ledger.ledger_total() == ledger.get_progress()["total_xp"]


# ── Submitting answers ──────────────────────────────────────

class TestSubmitAnswer:
    def test_correct_first_try(self, db, service):
        result = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        assert result["is_correct"] is True
        assert result["attempt_number"] == 1
        assert result["xp_awarded"] == 15
        assert result["explanation"].startswith("Paris")
        assert {b["code"] for b in result["new_badges"]} == {"first_correct", "perfect_score_1"}

        tx = XPLedgerDB(LEARNER_ID).get_xp_history(1)["transactions"]
        exercise_tx = [t for t in tx if t["source_type"] == "exercise"]
        assert len(exercise_tx) == 1
        assert exercise_tx[0]["reason"] == "EXERCISE_PERFECT"
        assert exercise_tx[0]["bonus_reason"] == "first_try_correct"
        progress = XPLedgerDB(LEARNER_ID).get_progress()
        assert progress["questions_answered"] == 1
        assert progress["perfect_scores"] == 1
        assert_ledger_consistent()

    def test_reward_schedule(self, db, service):
        for _ in range(3):
            assert service.submit_answer(EX_MEDIUM, LEARNER_ID, "London")["xp_awarded"] == 0
        result = service.submit_answer(EX_MEDIUM, LEARNER_ID, "paris")
        assert result["attempt_number"] == 4
        assert result["xp_awarded"] == 2
        tx = XPLedgerDB(LEARNER_ID).get_xp_history(1)["transactions"]
        assert [t["reason"] for t in tx if t["source_type"] == "exercise"] == ["EXERCISE_CORRECT"]
        assert XPLedgerDB(LEARNER_ID).get_progress()["perfect_scores"] == 0

    def test_second_attempt_earns_base(self, db, service):
        service.submit_answer(EX_HARD, LEARNER_ID, "False")
        assert service.submit_answer(EX_HARD, LEARNER_ID, "True")["xp_awarded"] == 15

    def test_hint_escalation(self, db, service):
        first = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Rome")
        assert first["show_hint"] == 1
        assert first["hint"] == "It is known as the City of Light."
        assert "correct_answer" not in first

        second = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Rome")
        assert second["show_hint"] == 2
        assert second["hint"] == "It starts with a P."

        third = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Rome")
        assert third["show_hint"] is None
        assert third["correct_answer"] == "Paris"
        assert third["explanation"]

    def test_first_wrong_falls_back_to_hint2(self, db, service):
        result = service.submit_answer(EX_EASY, LEARNER_ID, "0.5")
        assert result["show_hint"] == 2
        assert result["hint"] == "Divide 1 by 8."

    def test_no_hints_no_guidance(self, db, service):
        result = service.submit_answer(EX_HARD, LEARNER_ID, "False")
        assert result["show_hint"] is None
        assert result["hint"] is None
        assert "correct_answer" not in result

    def test_completed_is_noop(self, db, service, judge):
        service.submit_answer(EX_MEDIUM, LEARNER_ID, "Rome")
        service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        total_before = XPLedgerDB(LEARNER_ID).ledger_total()
        calls_before = len(judge.calls)

        result = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        assert result["is_correct"] is True
        assert result["feedback"] == ALREADY_COMPLETED_FEEDBACK
        assert result["xp_awarded"] == 0
        assert result["attempt_number"] == 2
        assert result["show_hint"] is None
        assert attempt_numbers(EX_MEDIUM) == [1, 2]
        assert len(judge.calls) == calls_before
        assert XPLedgerDB(LEARNER_ID).ledger_total() == total_before

    def test_attempt_numbers_have_no_gaps(self, db, service):
        for answer in ("a", "b", "c", "d", "Paris"):
            service.submit_answer(EX_MEDIUM, LEARNER_ID, answer)
        assert attempt_numbers(EX_MEDIUM) == [1, 2, 3, 4, 5]

    def test_judge_sees_attempt_and_age_band(self, db, service, judge):
        service.submit_answer(EX_OTHER, OTHER_LEARNER_ID, "Venus")
        service.submit_answer(EX_OTHER, OTHER_LEARNER_ID, "Mars", age_band="OLDER")
        assert [(c["attempt_number"], c["age_band"]) for c in judge.calls] == [
            (1, "YOUNG"), (2, "OLDER"),
        ]

    def test_answer_is_trimmed(self, db, service, judge):
        service.submit_answer(EX_MEDIUM, LEARNER_ID, "  Paris \n")
        assert judge.calls[0]["answer"] == "Paris"

    def test_submission_counts_toward_streak(self, db, service):
        service.submit_answer(EX_MEDIUM, LEARNER_ID, "Rome")
        assert StreakDB(LEARNER_ID).get_streak_info()["current_streak"] == 1


class TestSubmitAnswerErrors:
    def test_unknown_exercise(self, db, service):
        with pytest.raises(NotFoundError):
            service.submit_answer(999, LEARNER_ID, "Paris")

    def test_other_learners_exercise(self, db, service, judge):
        with pytest.raises(ForbiddenError):
            service.submit_answer(EX_OTHER, LEARNER_ID, "Mars")
        assert judge.calls == []

    def test_unknown_learner(self, db, service):
        with pytest.raises(NotFoundError):
            service.submit_answer(EX_MEDIUM, 999, "Paris")

    @pytest.mark.parametrize("answer", ["", "   ", None])
    def test_empty_answer(self, db, service, answer):
        with pytest.raises(ValidationError):
            service.submit_answer(EX_MEDIUM, LEARNER_ID, answer)

    def test_answer_too_long(self, db, service):
        with pytest.raises(ValidationError):
            service.submit_answer(EX_MEDIUM, LEARNER_ID, "x" * 1001)

    def test_judge_failure_writes_nothing(self, db, service, judge):
        judge.fail = True
        with pytest.raises(ExternalDependencyError):
            service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        assert attempt_numbers(EX_MEDIUM) == []
        assert XPLedgerDB(LEARNER_ID).ledger_total() == 0

        judge.fail = False
        result = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        assert result["attempt_number"] == 1
        assert result["xp_awarded"] == 15


def test_concurrent_correct_answers_award_once(app, service, judge):
    judge.barrier = threading.Barrier(2)
    results: list[dict] = []
    failures: list[BaseException] = []

    def submit():
        try:
            with app.app_context():
                results.append(service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris"))
        except BaseException as e:  # surfaced below
            failures.append(e)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert failures == []
    assert sorted(r["xp_awarded"] for r in results) == [0, 15]
    loser = next(r for r in results if r["xp_awarded"] == 0)
    assert loser["feedback"] == ALREADY_COMPLETED_FEEDBACK

    with app.app_context():
        assert attempt_numbers(EX_MEDIUM) == [1]
        earned = BadgeStoreDB(LEARNER_ID).get_badges_for_child()["earned"]
        assert {b["code"] for b in earned} == {"first_correct", "perfect_score_1"}
        assert_ledger_consistent()


class AttemptDuringJudgeJudge:
    """Wraps a judge and logs a wrong attempt while the verdict is pending."""

    def __init__(self, inner):
        self.inner = inner

    def judge(self, exercise, submitted_answer, attempt_number, age_band="OLDER"):
        with transaction():
            ExerciseStoreDB(LEARNER_ID).record_attempt(
                exercise["id"], "Rome", False, attempt_number, "Not quite, try again.", 0,
            )
        return self.inner.judge(exercise, submitted_answer, attempt_number, age_band)


def test_attempt_recorded_during_judging_is_logged(db, judge, caplog):
    service = ExerciseService(AttemptDuringJudgeJudge(judge))
    with caplog.at_level(logging.WARNING, logger="exercise_service"):
        result = service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")

    assert result["attempt_number"] == 2
    assert attempt_numbers(EX_MEDIUM) == [1, 2]
    assert judge.calls[0]["attempt_number"] == 1
    assert "judged as attempt 1 but recorded as 2" in caplog.text
    assert_ledger_consistent()


# ── Hints ───────────────────────────────────────────────────

class TestGetHint:
    def test_returns_hint(self, db, service):
        assert service.get_hint(EX_MEDIUM, LEARNER_ID, 1) == "It is known as the City of Light."
        assert service.get_hint(EX_MEDIUM, LEARNER_ID, 2) == "It starts with a P."

    def test_missing_hint_is_none(self, db, service):
        assert service.get_hint(EX_HARD, LEARNER_ID, 1) is None

    def test_invalid_hint_number(self, db, service):
        with pytest.raises(ValidationError):
            service.get_hint(EX_MEDIUM, LEARNER_ID, 3)

    def test_access_checked(self, db, service):
        with pytest.raises(ForbiddenError):
            service.get_hint(EX_OTHER, LEARNER_ID, 1)


# ── Reads ───────────────────────────────────────────────────

class TestExerciseReads:
    def test_answers_hidden_until_completed(self, db, service):
        before = service.get_exercise_for_learner(EX_MEDIUM, LEARNER_ID)
        assert "expected_answer" not in before
        assert before["is_completed"] is False
        assert before["has_hint1"] is True

        service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        after = service.get_exercise_for_learner(EX_MEDIUM, LEARNER_ID)
        assert after["is_completed"] is True
        assert after["expected_answer"] == "Paris"
        assert after["attempt_count"] == 1
        assert after["last_attempt"]["is_correct"] is True

    def test_lesson_listing_in_order(self, db, service):
        exercises = service.get_exercises_for_lesson(LESSON_ID, LEARNER_ID)
        assert [e["id"] for e in exercises] == [EX_MEDIUM, EX_EASY, EX_HARD, EX_INLINE]
        assert [e["xp_reward"] for e in exercises] == [10, 5, 15, 10]

    def test_lesson_listing_access(self, db, service):
        with pytest.raises(ForbiddenError):
            service.get_exercises_for_lesson(OTHER_LESSON_ID, LEARNER_ID)
        with pytest.raises(NotFoundError):
            service.get_exercises_for_lesson(999, LEARNER_ID)

    def test_stats_for_learner(self, db, service):
        service.submit_answer(EX_MEDIUM, LEARNER_ID, "Paris")
        service.submit_answer(EX_EASY, LEARNER_ID, "0.5")
        service.submit_answer(EX_EASY, LEARNER_ID, "0.125")
        stats = service.get_stats_for_learner(LEARNER_ID)
        assert stats == {
            "total_exercises": 4,
            "completed_exercises": 2,
            "total_attempts": 3,
            "correct_first_try": 1,
            "total_xp_earned": 15 + 5,
        }

    def test_resolve_inline_marker(self, db, service):
        assert service.resolve_exercise_id("ex-1", LEARNER_ID, LESSON_ID) == EX_INLINE
        assert service.resolve_exercise_id(str(EX_HARD), LEARNER_ID) == EX_HARD

    def test_resolve_marker_needs_lesson(self, db, service):
        with pytest.raises(NotFoundError):
            service.resolve_exercise_id("ex-1", LEARNER_ID)
        with pytest.raises(NotFoundError):
            service.resolve_exercise_id("ex-9", LEARNER_ID, LESSON_ID)

    @pytest.mark.parametrize("ref", ["\u00b2", "1\u00b2", "\u0663"])
    def test_non_ascii_digits_are_markers(self, db, service, ref):
        with pytest.raises(NotFoundError):
            service.resolve_exercise_id(ref, LEARNER_ID)


class TestCreateExercises:
    def test_xp_from_difficulty(self, db, service):
        ids = service.create_exercises_for_lesson(LESSON_ID, [
            {"type": "SHORT_ANSWER", "question_text": "2 + 2?", "expected_answer": "4",
             "difficulty": "hard"},
            {"type": "SHORT_ANSWER", "question_text": "3 + 3?", "expected_answer": "6"},
        ])
        rows = [ExerciseStoreDB.get(i) for i in ids]
        assert [r["xp_reward"] for r in rows] == [15, 10]
        assert [r["answer_type"] for r in rows] == ["TEXT", "TEXT"]
        assert [r["order_index"] for r in rows] == [0, 1]

    def test_rejects_unknown_type(self, db, service):
        with pytest.raises(ValidationError):
            service.create_exercises_for_lesson(LESSON_ID, [
                {"type": "ESSAY", "question_text": "Why?", "expected_answer": "Because"},
            ])

    def test_unknown_lesson(self, db, service):
        with pytest.raises(NotFoundError):
            service.create_exercises_for_lesson(999, [])

    @pytest.mark.parametrize("changes", [
        {"difficulty": 3},
        {"difficulty": "EXTREME"},
        {"answer_type": "ESSAY"},
        {"acceptable_answers": "kitten"},
        {"acceptable_answers": ["cat", 2]},
        {"options": "a"},
        {"hint1": 5},
        {"explanation": ["why"]},
        {"question_text": 42},
        {"expected_answer": "   "},
    ])
    def test_rejects_malformed_fields(self, db, service, changes):
        exercise = {"type": "SHORT_ANSWER", "question_text": "Pet?", "expected_answer": "cat"}
        exercise.update(changes)
        with pytest.raises(ValidationError):
            service.create_exercises_for_lesson(LESSON_ID, [exercise])
        assert len(ExerciseStoreDB.for_lesson(LESSON_ID)) == 4

    def test_rejects_non_object_item(self, db, service):
        with pytest.raises(ValidationError):
            service.create_exercises_for_lesson(LESSON_ID, [1])

    def test_stores_lists_and_options(self, db, service):
        [exercise_id] = service.create_exercises_for_lesson(LESSON_ID, [
            {"type": "MULTIPLE_CHOICE", "question_text": "Pet?", "expected_answer": "cat",
             "acceptable_answers": ["kitten"], "options": ["cat", "dog"],
             "answer_type": "MULTIPLE_CHOICE", "difficulty": "easy"},
        ])
        stored = ExerciseStoreDB.get(exercise_id)
        assert stored["acceptable_answers"] == ["kitten"]
        assert stored["options"] == ["cat", "dog"]
        assert stored["xp_reward"] == 5


# ── Lessons ─────────────────────────────────────────────────

class TestCompleteLesson:
    def test_first_completion_awards(self, db):
        result = complete_lesson(LEARNER_ID, LESSON_ID)
        assert result["xp_awarded"] == 25
        assert result["current_streak"] == 1
        assert "first_lesson" in {b["code"] for b in result["new_badges"]}
        assert_ledger_consistent()

    def test_second_completion_is_noop(self, db):
        complete_lesson(LEARNER_ID, LESSON_ID)
        total = XPLedgerDB(LEARNER_ID).ledger_total()
        again = complete_lesson(LEARNER_ID, LESSON_ID)
        assert again["already_completed"] is True
        assert again["xp_awarded"] == 0
        assert XPLedgerDB(LEARNER_ID).ledger_total() == total

    def test_other_learners_lesson(self, db):
        with pytest.raises(ForbiddenError):
            complete_lesson(LEARNER_ID, OTHER_LESSON_ID)
