"""Bounded exponential-backoff retries around external source calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
MALFORMED_STATUS = 422

Sleep = Callable[[float], Awaitable[None]]


class SourceError(RuntimeError):
    """Raised by source clients with an HTTP-like status class."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return f"{self.status}: {self.message}"

    @classmethod
    def from_transport(cls, exc: httpx.HTTPError, label: str) -> "SourceError":
        """Map a transport level failure to a status class."""

        if isinstance(exc, httpx.TimeoutException):
            return cls(504, f"{label} timed out")
        return cls(503, f"{label} failed: {exc.__class__.__name__}")

    @classmethod
    def from_response(cls, response: httpx.Response, label: str) -> "SourceError":
        return cls(response.status_code, f"{label} returned HTTP {response.status_code}")

    @classmethod
    def malformed(cls, label: str, detail: str) -> "SourceError":
        """A payload that cannot be parsed; never retried."""

        return cls(MALFORMED_STATUS, f"{label} {detail}")


class FetchError(RuntimeError):
    """Base class for failures surfaced by the retry wrapper."""

    def __init__(self, label: str, status: int | None, cause: BaseException | None):
        self.label = label
        self.status = status
        self.cause = cause
        super().__init__(self._describe())

    def _describe(self) -> str:
        return f"{self.label} failed with status {self.status}"


class NonRetryableError(FetchError):
    """The call failed with a status outside the retry allow-list."""

    def _describe(self) -> str:
        return f"{self.label} failed permanently with status {self.status}"


class RetriesExhaustedError(FetchError):
    """Every attempt failed with a transient status."""

    def __init__(
        self,
        label: str,
        status: int | None,
        cause: BaseException | None,
        attempts: int,
    ):
        self.attempts = attempts
        super().__init__(label, status, cause)

    def _describe(self) -> str:
        return (
            f"{self.label} still failing with status {self.status} "
            f"after {self.attempts} attempts"
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 15.0
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES

    def is_retryable(self, status: int | None) -> bool:
        return status is not None and status in self.retryable_statuses

    def delay_for(self, attempt: int) -> float:
        """Return the wait after the given failed attempt (1-based)."""

        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay_seconds,
            "max_delay": settings.retry_max_delay_seconds,
        }
        values.update(overrides)
        return cls(**values)


async def call_with_retry(
    label: str,
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or the policy gives up.

    Only :class:`SourceError` failures are inspected; any other exception is
    a programming fault and propagates untouched.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except SourceError as exc:
            if not policy.is_retryable(exc.status):
                raise NonRetryableError(label, exc.status, exc) from exc
            if attempt >= policy.max_attempts:
                logger.warning(
                    "Giving up on %s after %s attempts (status %s)",
                    label,
                    attempt,
                    exc.status,
                )
                raise RetriesExhaustedError(label, exc.status, exc, attempt) from exc
            wait = policy.delay_for(attempt)
            logger.info(
                "Transient status %s from %s on attempt %s/%s. Retrying in %.1fs",
                exc.status,
                label,
                attempt,
                policy.max_attempts,
                wait,
            )
            await sleep(wait)


class ResilientFetcher:
    """Binds a retry policy and sleep function for repeated use."""

    def __init__(self, policy: RetryPolicy | None = None, *, sleep: Sleep = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def fetch(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await call_with_retry(
            label, operation, policy=self.policy, sleep=self._sleep
        )

    def with_attempts(self, max_attempts: int) -> "ResilientFetcher":
        """Return a fetcher sharing this one's delays with a different attempt cap."""

        policy = RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.policy.base_delay,
            max_delay=self.policy.max_delay,
            retryable_statuses=self.policy.retryable_statuses,
        )
        return ResilientFetcher(policy, sleep=self._sleep)
