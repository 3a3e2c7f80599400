"""
Singleton management for expensive objects (answer judge) and rate limiter.

Keeps create_app() free of module-level state.
"""

from __future__ import annotations

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["200 per hour"])


class EngineManager:
    """Lazy-loaded singletons for the AnswerJudge and ExerciseService."""

    _judge = None

    @classmethod
    def get_judge(cls):
        if cls._judge is None:
            from ai_resilience import get_circuit_breaker
            from answer_judge import AnswerJudge
            cfg = current_app.config
            get_circuit_breaker().configure(
                cfg.get("JUDGE_BREAKER_THRESHOLD", 3),
                cfg.get("JUDGE_BREAKER_RECOVERY_SECONDS", 60.0),
            )
            cls._judge = AnswerJudge(
                provider=cfg.get("JUDGE_PROVIDER", "gemini"),
                model=cfg.get("JUDGE_MODEL", "gemini-2.0-flash"),
                timeout=cfg.get("JUDGE_TIMEOUT_SECONDS", 15),
                api_key=cfg.get("GOOGLE_API_KEY") or None,
            )
        return cls._judge

    @classmethod
    def set_judge(cls, judge) -> None:
        """Swap in a different judge (tests use a scripted fake)."""
        cls._judge = judge

    @classmethod
    def get_exercise_service(cls):
        from exercise_service import ExerciseService
        return ExerciseService(
            cls.get_judge(),
            max_answer_length=current_app.config.get("MAX_ANSWER_LENGTH", 1000),
        )

    @classmethod
    def reset(cls):
        """Drop the cached judge so the next request rebuilds it from config."""
        cls._judge = None
