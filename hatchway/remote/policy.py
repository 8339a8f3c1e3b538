"""Retry and rate-limit handling for outbound calls.

:class:`RetryPolicy` retries transient failures (timeouts, transport
errors, 5xx and 429 responses) with exponential backoff via tenacity.
:class:`RateLimiter` tracks the provider's remaining quota and holds back
new calls when it runs low. Both wait on a shared :class:`threading.Event`
so a host scheduler can cancel a pending wait instead of blocking a worker
in ``time.sleep``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping, Optional

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from hatchway.utils.exceptions import NetworkError, OperationCancelled, RateLimitError

TRANSPORT_REASONS = ("timeout", "transport")


def is_transient(exc: BaseException) -> bool:
    """Check whether a failure is worth retrying."""
    if not isinstance(exc, NetworkError) or isinstance(exc, OperationCancelled):
        return False
    if exc.details.get("reason") in TRANSPORT_REASONS:
        return True
    status = exc.status_code
    return status is not None and (status >= 500 or status == 429)


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RetryPolicy:
    """Bounded exponential backoff around a single HTTP exchange.

    Attributes:
        max_attempts: Total attempts including the first one
        initial_delay: Wait before the second attempt, doubled afterwards
        max_delay: Upper bound for any single wait
    """

    def __init__(
            self,
            max_attempts: int = 3,
            initial_delay: float = 0.25,
            max_delay: float = 8.0,
            cancel_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._cancel = cancel_event or threading.Event()
        self._logger = logger or logging.getLogger(__name__)
        self._backoff = wait_exponential(multiplier=initial_delay, min=0, max=max_delay)

    def cancel(self) -> None:
        self._cancel.set()

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self.max_delay)
        return self._backoff(retry_state)

    def _sleep(self, seconds: float) -> None:
        if self._cancel.wait(seconds):
            raise OperationCancelled("Retry wait was cancelled")

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.warning(
            f"Transient failure on attempt {retry_state.attempt_number}, retrying: {exc}",
            extra={"attempt": retry_state.attempt_number},
        )

    def call(self, send: Callable[[], httpx.Response], description: str = "") -> httpx.Response:
        """Run ``send`` until it yields a non-transient response.

        4xx responses other than 429 are returned to the caller unchanged so
        it can decide what they mean (a 404 is often a normal "not found").

        Raises:
            NetworkError: If every attempt failed transiently
            OperationCancelled: If a backoff wait was cancelled
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        return retrying(self._attempt, send, description)

    @staticmethod
    def _attempt(send: Callable[[], httpx.Response], description: str) -> httpx.Response:
        try:
            response = send()
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out: {description}", reason="timeout") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection failed: {description}: {e}", reason="transport") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request failed: {description}: {e}", reason="request") from e

        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limited: {description}",
                status_code=429,
                url=str(response.request.url) if response.request else None,
                retry_after=_retry_after(response.headers),
            )
        if response.status_code >= 500:
            raise NetworkError(
                f"Server error {response.status_code}: {description}",
                status_code=response.status_code,
                url=str(response.request.url) if response.request else None,
            )
        return response


class RateLimiter:
    """Holds back calls while the provider's remaining quota is low.

    The limiter learns the quota from ``X-RateLimit-Remaining`` and
    ``X-RateLimit-Reset`` response headers, or from the rate-limit endpoint
    payload. When the remaining quota drops below ``low_water_mark`` new
    calls wait until the reset time, but never longer than ``max_wait``;
    beyond that the call fails with :class:`RateLimitError`.
    """

    def __init__(
            self,
            low_water_mark: int = 10,
            max_wait: float = 60.0,
            clock: Callable[[], float] = time.time,
            cancel_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self.low_water_mark = low_water_mark
        self.max_wait = max_wait
        self._clock = clock
        self._cancel = cancel_event or threading.Event()
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self.remaining: Optional[int] = None
        self.reset_at: Optional[float] = None

    def cancel(self) -> None:
        self._cancel.set()

    def update(self, remaining: Optional[int], reset_at: Optional[float]) -> None:
        with self._lock:
            if remaining is not None:
                self.remaining = remaining
            if reset_at is not None:
                self.reset_at = reset_at

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        try:
            self.update(
                int(remaining) if remaining is not None else None,
                float(reset) if reset is not None else None,
            )
        except ValueError:
            self._logger.debug("Ignoring malformed rate limit headers")

    def update_from_payload(self, payload: Mapping[str, Any]) -> None:
        """Read the ``core`` bucket from a rate-limit endpoint response."""
        core = (payload.get("resources") or {}).get("core") or payload.get("rate") or {}
        if core:
            self.update(core.get("remaining"), core.get("reset"))

    def acquire(self) -> None:
        """Wait, if needed, until the quota allows another call.

        Raises:
            RateLimitError: If the reset is further away than ``max_wait``
            OperationCancelled: If the wait was cancelled
        """
        with self._lock:
            remaining, reset_at = self.remaining, self.reset_at

        if remaining is None or remaining >= self.low_water_mark or reset_at is None:
            return

        wait = reset_at - self._clock()
        if wait > self.max_wait:
            raise RateLimitError(
                f"Rate limit quota exhausted until {reset_at:.0f}",
                reset_at=reset_at,
            )

        if wait > 0:
            self._logger.warning(
                f"Rate limit low ({remaining} left), waiting {wait:.1f}s for reset",
                extra={"remaining": remaining, "reset_at": reset_at},
            )
            if self._cancel.wait(wait):
                raise OperationCancelled("Rate limit wait was cancelled")

        with self._lock:
            if self.reset_at == reset_at:
                self.remaining = None
                self.reset_at = None
