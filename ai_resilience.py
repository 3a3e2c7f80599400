"""AI Resilience Layer: bounded judge calls with retry and circuit breaking.

resilient_llm_call() is the only way the answer judge reaches a model. Each
call gets a hard request timeout, one retry on transient failures, and is
refused outright while the provider's circuit is open.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


# ── Circuit Breaker ─────────────────────────────────────────

@dataclass
class _Circuit:
    consecutive_failures: int = 0
    status: str = CLOSED
    opened_at: float = 0.0
    probe_in_flight: bool = False


class CircuitBreaker:
    """Per-provider breaker in front of the judge model.

    closed: calls flow. open: calls fail fast until ``recovery_timeout``
    seconds have passed. half_open: a single probe call goes through and its
    outcome closes or re-opens the circuit.
    """

    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 60.0) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def configure(self, failure_threshold: int, recovery_timeout: float) -> None:
        with self._lock:
            self.failure_threshold = failure_threshold
            self.recovery_timeout = recovery_timeout

    def _circuit(self, provider: str) -> _Circuit:
        return self._circuits.setdefault(provider, _Circuit())

    def allow(self, provider: str) -> bool:
        """Whether a call to ``provider`` may go out now."""
        with self._lock:
            c = self._circuit(provider)
            if c.status == OPEN and time.monotonic() - c.opened_at >= self.recovery_timeout:
                c.status = HALF_OPEN
                c.probe_in_flight = False
            if c.status == CLOSED:
                return True
            if c.status == HALF_OPEN and not c.probe_in_flight:
                c.probe_in_flight = True
                return True
            return False

    def record_success(self, provider: str) -> None:
        with self._lock:
            c = self._circuit(provider)
            if c.status != CLOSED:
                logger.info("Circuit closed for provider %s", provider)
            self._circuits[provider] = _Circuit()

    def record_failure(self, provider: str) -> None:
        with self._lock:
            c = self._circuit(provider)
            c.consecutive_failures += 1
            if c.status == HALF_OPEN or c.consecutive_failures >= self.failure_threshold:
                if c.status != OPEN:
                    logger.warning(
                        "Circuit opened for provider %s after %d failures",
                        provider, c.consecutive_failures,
                    )
                c.status = OPEN
                c.opened_at = time.monotonic()
                c.probe_in_flight = False

    def state(self, provider: str) -> str:
        with self._lock:
            c = self._circuit(provider)
            if c.status == OPEN and time.monotonic() - c.opened_at >= self.recovery_timeout:
                return HALF_OPEN
            return c.status

    def reset(self) -> None:
        with self._lock:
            self._circuits.clear()


_circuit_breaker = CircuitBreaker()


# ── Transient error detection ───────────────────────────────

# HTTP statuses Gemini returns for overload, quota and upstream hiccups
_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})

_RETRYABLE_MARKERS = (
    "rate limit",
    "resource has been exhausted",
    "overloaded",
    "temporarily unavailable",
    "deadline",
    "timed out",
    "timeout",
)


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    code = getattr(exc, "status_code", None)
    return code if isinstance(code, int) else None


def _is_transient(exc: BaseException) -> bool:
    """Network failures, timeouts and 429/5xx responses are worth one more try."""
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    if _status_code(exc) in _RETRYABLE_STATUS:
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _RETRYABLE_MARKERS)


class TransientLLMError(Exception):
    """A failure that may succeed on retry."""


class CircuitOpenError(RuntimeError):
    """The provider failed repeatedly and is not being called right now."""


# ── Provider call ───────────────────────────────────────────

def _do_call(provider: str, model: str, prompt: str, system: str,
             timeout: float, api_key: str | None) -> str:
    """One request to the model, no retry."""
    if provider != "gemini":
        raise ValueError(f"Unknown provider: {provider}")

    import google.generativeai as genai

    genai.configure(api_key=api_key or os.getenv("GOOGLE_API_KEY", ""))
    judge_model = genai.GenerativeModel(model, system_instruction=system or None)
    response = judge_model.generate_content(
        prompt,
        generation_config={"response_mime_type": "application/json", "temperature": 0.2},
        request_options={"timeout": timeout},
    )
    return response.text


@retry(
    retry=retry_if_exception_type(TransientLLMError),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    stop=stop_after_attempt(2),
    reraise=True,
)
def _call_with_retry(provider: str, model: str, prompt: str, system: str,
                     timeout: float, api_key: str | None) -> str:
    try:
        return _do_call(provider, model, prompt, system, timeout, api_key)
    except Exception as exc:
        if _is_transient(exc):
            logger.warning("Transient %s failure: %s", provider, exc)
            raise TransientLLMError(str(exc)) from exc
        raise


def resilient_llm_call(
    provider: str,
    model: str,
    prompt: str,
    system: str = "",
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    api_key: str | None = None,
) -> tuple[str, dict]:
    """Call the judge model with a bounded timeout.

    Args:
        provider: 'gemini'
        model: Model name, e.g. 'gemini-2.0-flash'
        prompt: Prompt text
        system: System instruction (optional)
        timeout: Per-request timeout in seconds
        api_key: Provider key; falls back to GOOGLE_API_KEY

    Returns:
        (response_text, {"provider", "model", "latency_ms"})

    Raises:
        CircuitOpenError: the provider is failing and was not called.
        TransientLLMError: the call failed twice with retryable errors.
    """
    if not _circuit_breaker.allow(provider):
        raise CircuitOpenError(f"Circuit breaker open for provider: {provider}")

    started = time.monotonic()
    try:
        text = _call_with_retry(provider, model, prompt, system, timeout, api_key)
    except Exception:
        _circuit_breaker.record_failure(provider)
        raise
    _circuit_breaker.record_success(provider)

    return text, {
        "provider": provider,
        "model": model,
        "latency_ms": int((time.monotonic() - started) * 1000),
    }


def get_circuit_breaker() -> CircuitBreaker:
    return _circuit_breaker
