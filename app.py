"""
Learner Progress Core: Flask Web Application

Exercise grading, XP ledger, daily streaks and badges for child learners,
served as a JSON API.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Flask, Response

import database
import errors
from blueprints import register_blueprints
from extensions import limiter


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import TestingConfig, config_by_name
    if test_config is not None:
        app.config.from_object(TestingConfig)
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config.get("SECRET_KEY", os.environ.get("SECRET_KEY", "dev-key-change-in-production"))

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Register database teardown
    database.init_app(app)

    # JSON error responses
    errors.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Register all application blueprints
    register_blueprints(app)

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.route("/health")
    def health():
        from ai_resilience import get_circuit_breaker
        provider = app.config.get("JUDGE_PROVIDER", "gemini")
        return {"status": "ok", "judge_circuit": get_circuit_breaker().state(provider)}

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
