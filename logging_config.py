"""
Logging setup for the progress API.

Production emits one JSON object per line; development gets plain text.
Every record logged inside a request carries the request id and, on
learner-scoped routes, the learner id from the URL.
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

_CONTEXT_FIELDS = ("request_id", "learner_id")


class JSONFormatter(logging.Formatter):
    """Single-line JSON records."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value not in (None, "-"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RequestContextFilter(logging.Filter):
    """Stamp request id and learner id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        in_request = has_request_context()
        for key in _CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, g.get(key, "-") if in_request else "-")
        return True


def init_logging(app: Flask) -> None:
    """Install the root handler and the per-request hooks."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if app.config.get("LOG_FORMAT", "text") == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [req=%(request_id)s learner=%(learner_id)s] %(message)s",
        ))
    root.addHandler(handler)

    # werkzeug repeats the access line below
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    @app.before_request
    def _bind_request_context():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.learner_id = (request.view_args or {}).get("learner_id", "-")
        g.request_started = time.perf_counter()

    @app.after_request
    def _access_log(response):
        elapsed_ms = (time.perf_counter() - g.get("request_started", time.perf_counter())) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        app.logger.info(
            "%s %s -> %s in %.0fms",
            request.method, request.path, response.status_code, elapsed_ms,
        )
        return response
