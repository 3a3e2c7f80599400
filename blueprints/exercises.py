"""Interactive exercise routes: listing, answer submission, hints."""

from __future__ import annotations

import logging
import re

from flask import Blueprint, jsonify, request

from errors import ValidationError
from exercise_service import ExerciseService
from extensions import EngineManager, limiter
from helpers import json_body, required_int

logger = logging.getLogger(__name__)

bp = Blueprint("exercises", __name__)


def _learner_id_arg() -> int:
    raw = request.args.get("learner_id", "")
    if not re.fullmatch(r"[0-9]+", raw):
        raise ValidationError("learner_id query parameter is required")
    return int(raw)


@bp.route("/api/lessons/<int:lesson_id>/exercises", methods=["POST"])
def api_create_exercises(lesson_id: int):
    data = json_body()
    exercises = data.get("exercises")
    if not isinstance(exercises, list):
        raise ValidationError("exercises must be a list")
    service = EngineManager.get_exercise_service()
    ids = service.create_exercises_for_lesson(lesson_id, exercises)
    return jsonify({"success": True, "data": {"exercise_ids": ids}}), 201


@bp.route("/api/lessons/<int:lesson_id>/exercises")
def api_lesson_exercises(lesson_id: int):
    learner_id = _learner_id_arg()
    service = EngineManager.get_exercise_service()
    return jsonify({
        "success": True,
        "data": service.get_exercises_for_lesson(lesson_id, learner_id),
    })


@bp.route("/api/exercises/<int:exercise_id>")
def api_exercise(exercise_id: int):
    learner_id = _learner_id_arg()
    service = EngineManager.get_exercise_service()
    return jsonify({
        "success": True,
        "data": service.get_exercise_for_learner(exercise_id, learner_id),
    })


@bp.route("/api/exercises/<exercise_ref>/submit", methods=["POST"])
@limiter.limit("30 per minute")
def api_submit_answer(exercise_ref: str):
    data = json_body()
    learner_id = required_int(data, "learner_id")
    lesson_id = data.get("lesson_id")
    if lesson_id is not None:
        lesson_id = required_int(data, "lesson_id")
    service: ExerciseService = EngineManager.get_exercise_service()
    exercise_id = service.resolve_exercise_id(exercise_ref, learner_id, lesson_id)

    logger.info("Exercise answer submitted: exercise=%s learner=%s", exercise_id, learner_id)
    result = service.submit_answer(
        exercise_id,
        learner_id,
        data.get("submitted_answer"),
        age_band=data.get("age_group"),
    )
    return jsonify({"success": True, "data": result})


@bp.route("/api/exercises/<int:exercise_id>/hint/<int:hint_number>")
def api_hint(exercise_id: int, hint_number: int):
    learner_id = _learner_id_arg()
    service = EngineManager.get_exercise_service()
    hint = service.get_hint(exercise_id, learner_id, hint_number)
    return jsonify({"success": True, "data": {"hint": hint, "hint_number": hint_number}})


@bp.route("/api/learners/<int:learner_id>/exercise-stats")
def api_exercise_stats(learner_id: int):
    return jsonify({
        "success": True,
        "data": ExerciseService.get_stats_for_learner(learner_id),
    })
