"""Client for the local text-generation service used for advisory consultations.

Every call runs inside a circuit breaker. Inside one guarded call the request
is retried with exponential backoff, but only for failures that look
transient (connection refused/reset, timeouts, DNS failures, HTTP 5xx). While
the breaker is open calls fail fast with :class:`ServiceUnavailableError` and
the transport is never touched.
"""

from __future__ import annotations

import json
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from ..errors import RGRError, ServiceUnavailableError

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "DEFAULT_BASE_URL",
    "GenerationClient",
    "GenerationError",
    "GenerationResponseError",
    "GenerationTransportError",
    "RetryPolicy",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama2"

T = TypeVar("T")
Transport = Callable[[str, Dict[str, Any], float], str]


class GenerationError(RGRError):
    """Base error raised for generation service failures."""


class GenerationTransportError(GenerationError):
    """Raised when the service cannot be reached or answers with an HTTP error."""

    def __init__(self, message: str, *, retryable: bool, status: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class GenerationResponseError(GenerationError):
    """Raised when the service answers with a body lacking a ``response`` text field."""


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff without jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the zero-based ``attempt`` failed."""
        return min(self.max_delay, self.base_delay * (self.multiplier**attempt))


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Stop calling a failing dependency until a cooldown has elapsed.

    State lives in memory only and starts CLOSED on every process start.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        if self._state is BreakerState.OPEN:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self._state = BreakerState.HALF_OPEN
                LOGGER.info("Circuit breaker half-open; probing service")
                return True
            return False
        return True

    def record_success(self) -> None:
        if self._state is not BreakerState.CLOSED:
            LOGGER.info("Circuit breaker closed after successful call")
        self._failures = 0
        self._state = BreakerState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not BreakerState.OPEN:
                LOGGER.warning(
                    "Circuit breaker opened after %d consecutive failure(s)", self._failures
                )
            self._state = BreakerState.OPEN
            self._opened_at = self._clock()

    def call(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` under the breaker, recording its outcome."""
        if not self.allow_request():
            raise ServiceUnavailableError(
                "Generation service temporarily unavailable - circuit breaker is open"
            )
        try:
            result = operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


_RETRYABLE_REASONS = (
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    socket.timeout,
    socket.gaierror,
)


def _http_transport(url: str, payload: Dict[str, Any], timeout: float) -> str:
    """Default HTTP transport that posts JSON with :mod:`urllib`."""
    import urllib.error
    import urllib.request

    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read()
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        detail = error.read().decode("utf-8", errors="ignore")
        raise GenerationTransportError(
            f"HTTP {error.code}: {detail}".strip(),
            retryable=error.code >= 500,
            status=error.code,
        ) from error
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise GenerationTransportError(
            f"Failed to reach generation service: {error.reason}",
            retryable=isinstance(error.reason, _RETRYABLE_REASONS),
        ) from error
    except _RETRYABLE_REASONS as error:  # pragma: no cover - network-dependent
        raise GenerationTransportError(
            f"Generation service connection failed: {error}", retryable=True
        ) from error
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise GenerationResponseError("Generation service returned non-UTF-8 body.") from error


class GenerationClient:
    """Resilient client for ``POST /api/generate`` on a local generation service."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._transport = transport or _http_transport
        self._sleep = sleep

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    def is_healthy(self) -> bool:
        return self.breaker.state is not BreakerState.OPEN

    def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the generated text for ``prompt``."""
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "prompt": prompt,
            "stream": False,
        }
        if options:
            payload.update({key: value for key, value in options.items() if key != "stream"})
        return self.breaker.call(lambda: self._send_with_retry(payload))

    def _send_with_retry(self, payload: Dict[str, Any]) -> str:
        attempts = max(1, self.retry.max_attempts)
        last_error: GenerationError | None = None
        for attempt in range(attempts):
            try:
                raw = self._transport(self.endpoint, payload, self.timeout)
                text = self._extract_response(raw)
            except GenerationTransportError as error:
                last_error = error
                if not error.retryable or attempt + 1 >= attempts:
                    break
                delay = self.retry.delay_for(attempt)
                LOGGER.warning(
                    "Generation request failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1,
                    attempts,
                    delay,
                    error,
                )
                self._sleep(delay)
                continue
            if attempt > 0:
                LOGGER.info("Generation request succeeded on attempt %d", attempt + 1)
            return text

        assert last_error is not None
        raise last_error

    @staticmethod
    def _extract_response(raw: str) -> str:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as error:
            raise GenerationResponseError("Generation service returned invalid JSON.") from error
        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise GenerationResponseError(
                "Generation service response did not contain a 'response' text field."
            )
        return data["response"]
