"""
Shared helpers used across blueprints.

Request parsing lives here so every route validates input the same way and
reports problems as ValidationError.
"""

from __future__ import annotations

from typing import Any

from flask import request

from errors import ValidationError


def json_body() -> dict[str, Any]:
    """Return the JSON request body, or an empty dict."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_arg(name: str, default: int, minimum: int = 1, maximum: int | None = None,
            clamp: bool = False) -> int:
    """Read an integer query argument.

    Out-of-range values raise ValidationError, or are clamped into range
    when ``clamp`` is set.
    """
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if clamp:
        value = max(minimum, value)
        return min(value, maximum) if maximum is not None else value
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f"at least {minimum}"
        raise ValidationError(f"{name} must be {bound}")
    return value


def required_int(data: dict[str, Any], name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value
