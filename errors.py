"""
Error taxonomy for the progress core.

Services raise these; the Flask handler registered by init_app() renders them
as {"success": false, "error": ...} with a stable status code.
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Access denied"


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class ExternalDependencyError(AppError):
    """The answer judge failed or timed out. Safe to retry."""

    status_code = 503
    default_message = "We couldn't check your answer right now. Please try again."
    retryable = True


class ConflictError(AppError):
    """Concurrent insert lost a uniqueness race."""

    status_code = 409
    default_message = "Already exists"


def init_app(app: Flask) -> None:
    """Register the JSON error handler."""

    @app.errorhandler(AppError)
    def _handle_app_error(err: AppError):
        if isinstance(err, ExternalDependencyError):
            logger.warning("External dependency failure: %s", err.message)
        body = {"success": False, "error": err.message}
        if getattr(err, "retryable", False):
            body["retryable"] = True
        return jsonify(body), err.status_code
