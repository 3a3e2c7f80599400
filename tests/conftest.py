"""
Test fixtures for the learner progress core.

Provides app, client, db and judge fixtures with file-based SQLite.
Gemini is mocked globally and the answer judge is replaced with a scripted
fake, so no test talks to a model.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from answer_judge import JudgeVerdict
from errors import ExternalDependencyError


LEARNER_ID = 1
OTHER_LEARNER_ID = 2
LESSON_ID = 1
OTHER_LESSON_ID = 2

# exercise ids in insertion order
EX_MEDIUM = 1       # both hints, 10 XP
EX_EASY = 2         # hint2 only, 5 XP
EX_HARD = 3         # no hints, 15 XP
EX_INLINE = 4       # marker "ex-1"
EX_OTHER = 5        # belongs to the other learner


SEED_EXERCISES = [
    {
        "type": "SHORT_ANSWER",
        "question_text": "What is the capital of France?",
        "expected_answer": "Paris",
        "acceptable_answers": ["paris"],
        "hint1": "It is known as the City of Light.",
        "hint2": "It starts with a P.",
        "explanation": "Paris has been the capital since 987.",
        "difficulty": "MEDIUM",
    },
    {
        "type": "MATH_PROBLEM",
        "question_text": "What is 1/8 as a decimal?",
        "expected_answer": "0.125",
        "acceptable_answers": ["one eighth"],
        "answer_type": "NUMBER",
        "hint2": "Divide 1 by 8.",
        "explanation": "1 divided by 8 is 0.125.",
        "difficulty": "EASY",
    },
    {
        "type": "TRUE_FALSE",
        "question_text": "The sun is a star.",
        "expected_answer": "True",
        "options": ["True", "False"],
        "answer_type": "MULTIPLE_CHOICE",
        "explanation": "The sun is a G-type main-sequence star.",
        "difficulty": "HARD",
    },
    {
        "type": "FILL_IN_BLANK",
        "question_text": "Plants make food by ____.",
        "expected_answer": "photosynthesis",
        "original_position": "ex-1",
        "difficulty": "MEDIUM",
    },
]


class FakeJudge:
    """Scripted answer judge.

    Marks an answer correct when it matches the expected or an acceptable
    answer, case-insensitively. Set ``fail`` to simulate an outage and
    ``barrier`` to line up concurrent callers.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.fail = False
        self.barrier: threading.Barrier | None = None
        self._lock = threading.Lock()

    def judge(self, exercise, submitted_answer, attempt_number, age_band="OLDER"):
        with self._lock:
            self.calls.append({
                "exercise_id": exercise["id"],
                "answer": submitted_answer,
                "attempt_number": attempt_number,
                "age_band": age_band,
            })
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.fail:
            raise ExternalDependencyError()
        accepted = [exercise["expected_answer"], *exercise["acceptable_answers"]]
        is_correct = submitted_answer.strip().lower() in {a.lower() for a in accepted}
        feedback = "Great job!" if is_correct else "Not quite, try again."
        return JudgeVerdict(is_correct=is_correct, feedback=feedback)


@pytest.fixture(scope="session", autouse=True)
def mock_gemini():
    """Mock Google Generative AI globally to prevent API calls."""
    mock_model = MagicMock()
    mock_model.generate_content.return_value = MagicMock(
        text='{"isCorrect": true, "confidence": 0.9, "feedback": "Great job!"}'
    )
    with patch.dict("sys.modules", {
        "google.generativeai": MagicMock(GenerativeModel=MagicMock(return_value=mock_model)),
    }):
        yield mock_model


@pytest.fixture(autouse=True)
def judge():
    """Install the fake judge for every test."""
    from extensions import EngineManager

    fake = FakeJudge()
    EngineManager.set_judge(fake)
    yield fake
    EngineManager.reset()


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite and a seeded learner, lesson and exercises."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
    })

    with app.app_context():
        from database import get_db, init_db, run_migrations, seed_badge_catalog
        from db_stores import ExerciseStoreDB

        init_db()
        run_migrations()
        seed_badge_catalog()
        app._db_initialized = True

        db = get_db()
        db.execute(
            "INSERT INTO learners (id, display_name, age_group, created_at) "
            "VALUES (1, 'Ava', 'OLDER', '2026-01-01'), (2, 'Ben', 'YOUNG', '2026-01-01')"
        )
        db.execute(
            "INSERT INTO lessons (id, learner_id, title, created_at) "
            "VALUES (1, 1, 'Geography', '2026-01-01'), (2, 2, 'Space', '2026-01-01')"
        )
        db.commit()

        ExerciseStoreDB.create_for_lesson(LESSON_ID, SEED_EXERCISES)
        ExerciseStoreDB.create_for_lesson(OTHER_LESSON_ID, [{
            "type": "SHORT_ANSWER",
            "question_text": "Name the red planet.",
            "expected_answer": "Mars",
            "hint1": "It is named after a Roman god.",
        }])

        yield app


@pytest.fixture
def client(app):
    """Test client."""
    return app.test_client()


@pytest.fixture
def db(app):
    """Direct database access for store tests."""
    with app.app_context():
        from database import get_db
        yield get_db()


@pytest.fixture
def service(judge):
    from exercise_service import ExerciseService
    return ExerciseService(judge)
