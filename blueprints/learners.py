"""Learner, lesson and activity routes."""

from __future__ import annotations

from flask import Blueprint, jsonify

from db_stores import LearnerDB, LessonDB, ProgressDB
from events import publish_stats_changed, record_learning_activity
from exercise_service import complete_lesson
from helpers import json_body

bp = Blueprint("learners", __name__)


@bp.route("/api/learners", methods=["POST"])
def api_create_learner():
    data = json_body()
    learner_id = LearnerDB.create(data.get("display_name", ""), data.get("age_group", "OLDER"))
    return jsonify({"success": True, "data": {"id": learner_id}}), 201


@bp.route("/api/learners/<int:learner_id>")
def api_learner(learner_id: int):
    r = LearnerDB(learner_id).require()
    return jsonify({
        "success": True,
        "data": {"id": r["id"], "display_name": r["display_name"], "age_group": r["age_group"]},
    })


@bp.route("/api/learners/<int:learner_id>/lessons", methods=["POST"])
def api_create_lesson(learner_id: int):
    data = json_body()
    lesson_id = LessonDB(learner_id).create(data.get("title", ""))
    return jsonify({"success": True, "data": {"id": lesson_id}}), 201


@bp.route("/api/learners/<int:learner_id>/lessons/<int:lesson_id>/complete", methods=["POST"])
def api_complete_lesson(learner_id: int, lesson_id: int):
    return jsonify({"success": True, "data": complete_lesson(learner_id, lesson_id)})


@bp.route("/api/learners/<int:learner_id>/activity", methods=["POST"])
def api_record_activity(learner_id: int):
    """Count a qualifying activity (chat, flashcards, reading) toward the streak."""
    return jsonify({"success": True, "data": record_learning_activity(learner_id)})


@bp.route("/api/learners/<int:learner_id>/flashcards/reviewed", methods=["POST"])
def api_flashcards_reviewed(learner_id: int):
    data = json_body()
    count = data.get("count", 1)
    ProgressDB(learner_id).record_flashcard_reviews(count)
    return jsonify({"success": True, "data": {"new_badges": publish_stats_changed(learner_id)}})
