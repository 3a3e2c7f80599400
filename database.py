"""
SQLite database layer for the learner progress core.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations.

Writes that must be atomic go through transaction(), which opens a
BEGIN IMMEDIATE transaction so concurrent requests serialize on the
database write lock instead of racing on read-modify-write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from flask import current_app, g

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "progress.db"
BUSY_TIMEOUT_SECONDS = 10


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Learners (children)
CREATE TABLE IF NOT EXISTS learners (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    display_name TEXT NOT NULL,
    age_group TEXT NOT NULL DEFAULT 'OLDER',
    created_at TEXT NOT NULL DEFAULT ''
);

-- Lessons, each owned by one learner
CREATE TABLE IF NOT EXISTS lessons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    title TEXT NOT NULL DEFAULT '',
    completed_at TEXT,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_lessons_learner ON lessons(learner_id);

-- Interactive exercises (immutable once created)
CREATE TABLE IF NOT EXISTS exercises (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lesson_id INTEGER NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    order_index INTEGER NOT NULL DEFAULT 0,
    question_text TEXT NOT NULL,
    context_text TEXT,
    original_position TEXT,
    expected_answer TEXT NOT NULL,
    acceptable_answers TEXT NOT NULL DEFAULT '[]',
    answer_type TEXT NOT NULL DEFAULT 'TEXT',
    options TEXT,
    hint1 TEXT,
    hint2 TEXT,
    explanation TEXT,
    difficulty TEXT NOT NULL DEFAULT 'MEDIUM',
    xp_reward INTEGER NOT NULL DEFAULT 10,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_exercises_lesson ON exercises(lesson_id, order_index);

-- Exercise attempts (append-only)
CREATE TABLE IF NOT EXISTS exercise_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    exercise_id INTEGER NOT NULL REFERENCES exercises(id) ON DELETE CASCADE,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    submitted_answer TEXT NOT NULL,
    is_correct INTEGER NOT NULL DEFAULT 0,
    attempt_number INTEGER NOT NULL,
    ai_feedback TEXT NOT NULL DEFAULT '',
    xp_awarded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT '',
    UNIQUE(exercise_id, learner_id, attempt_number)
);

-- XP ledger (append-only)
CREATE TABLE IF NOT EXISTS xp_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    amount INTEGER NOT NULL,
    reason TEXT NOT NULL,
    was_bonus INTEGER NOT NULL DEFAULT 0,
    bonus_multiplier REAL,
    bonus_reason TEXT,
    source_type TEXT,
    source_id TEXT,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_xp_tx_learner_created ON xp_transactions(learner_id, created_at);

-- Running totals (denormalized from xp_transactions)
CREATE TABLE IF NOT EXISTS user_progress (
    learner_id INTEGER PRIMARY KEY REFERENCES learners(id) ON DELETE CASCADE,
    current_xp INTEGER NOT NULL DEFAULT 0,
    total_xp INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    questions_answered INTEGER NOT NULL DEFAULT 0,
    perfect_scores INTEGER NOT NULL DEFAULT 0,
    lessons_completed INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT ''
);

-- Daily streaks
CREATE TABLE IF NOT EXISTS streaks (
    learner_id INTEGER PRIMARY KEY REFERENCES learners(id) ON DELETE CASCADE,
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    last_active_date TEXT,
    freeze_available INTEGER NOT NULL DEFAULT 0,
    freeze_used_date TEXT,
    updated_at TEXT NOT NULL DEFAULT ''
);

-- Badge catalog
CREATE TABLE IF NOT EXISTS badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL,
    rarity TEXT NOT NULL,
    requirements TEXT NOT NULL,
    xp_reward INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS earned_badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    badge_id INTEGER NOT NULL REFERENCES badges(id) ON DELETE CASCADE,
    earned_at TEXT NOT NULL DEFAULT '',
    UNIQUE(learner_id, badge_id)
);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Version 1 = base schema.
    # -----------------------------------------------------------
    # Migration 2: flashcard review counter for flashcard badges
    (2, """
        ALTER TABLE user_progress ADD COLUMN flashcards_reviewed INTEGER NOT NULL DEFAULT 0;
    """),

    # Migration 3: read-path indexes
    (3, """
        CREATE INDEX IF NOT EXISTS idx_attempts_learner ON exercise_attempts(learner_id, exercise_id);
        CREATE INDEX IF NOT EXISTS idx_earned_badges_learner ON earned_badges(learner_id, earned_at);
        CREATE INDEX IF NOT EXISTS idx_streaks_current ON streaks(current_streak);
    """),

    # Migration 4: a proactively used freeze stays armed until it bridges a
    # missed day. Rows armed under the old date rule carry over.
    (4, """
        ALTER TABLE streaks ADD COLUMN freeze_armed INTEGER NOT NULL DEFAULT 0;
        UPDATE streaks SET freeze_armed = 1
        WHERE freeze_used_date IS NOT NULL AND last_active_date IS NOT NULL
          AND freeze_used_date >= last_active_date;
    """),
]


def _db_path() -> str:
    return current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection configured the way every request expects."""
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def get_db() -> sqlite3.Connection:
    """Return a DB connection from Flask g, creating if needed."""
    if "db" not in g:
        g.db = connect(_db_path())
    return g.db


def close_db(e=None) -> None:
    """Teardown handler: close the DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block of writes as one atomic unit.

    Nested use joins the outer transaction; only the outermost block
    commits or rolls back.
    """
    db = get_db()
    if db.in_transaction:
        yield db
        return
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    workers start simultaneously.
    """
    lock_file = None
    lock_path = Path(_db_path()).with_suffix(".migration.lock")
    try:
        lock_file = open(lock_path, "w")
        fcntl.flock(lock_file, fcntl.LOCK_EX)
    except OSError:
        lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        if 1 not in applied:
            db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (1, ?)",
                (datetime.now().isoformat(),),
            )
            db.commit()
        for version, sql in MIGRATIONS:
            if version not in applied:
                try:
                    db.executescript(sql)
                except sqlite3.OperationalError as e:
                    err_msg = str(e).lower()
                    if "duplicate column" not in err_msg and "already exists" not in err_msg:
                        raise
                db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now().isoformat()),
                )
                db.commit()
                logger.info("Applied migration %d", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def seed_badge_catalog() -> None:
    """Upsert the badge catalog from gamification.BADGE_DEFINITIONS."""
    from gamification import BADGE_DEFINITIONS

    db = get_db()
    for order, badge in enumerate(BADGE_DEFINITIONS):
        db.execute(
            "INSERT INTO badges (code, name, description, icon, category, rarity, "
            "requirements, xp_reward, sort_order) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(code) DO UPDATE SET name=excluded.name, description=excluded.description, "
            "icon=excluded.icon, category=excluded.category, rarity=excluded.rarity, "
            "requirements=excluded.requirements, xp_reward=excluded.xp_reward, "
            "sort_order=excluded.sort_order",
            (badge.code, badge.name, badge.description, badge.icon, badge.category,
             badge.rarity, json.dumps(badge.requirement.to_dict()), badge.xp_reward, order),
        )
    db.commit()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            seed_badge_catalog()
            app._db_initialized = True
