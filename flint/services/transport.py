"""Shared retry/backoff layer for outbound provider calls."""

import asyncio
import logging
import random
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from flint.config import Settings
from flint.exceptions import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Classifier = Callable[[Exception], ProviderError]


def new_correlation_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ms: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_ms=settings.retry_jitter_ms,
        )

    def compute_backoff(self, attempt: int) -> int:
        """Exponential delay in ms before jitter; attempt is 1-based."""
        return min(self.base_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)

    def delay_seconds(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the next attempt. A server Retry-After wins over backoff."""
        if retry_after is not None and retry_after >= 0:
            return retry_after
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms else 0
        return (self.compute_backoff(attempt) + jitter) / 1000


@dataclass
class InFlightRequest:
    correlation_id: str
    operation: str
    attempt: int
    started_at: float = field(default_factory=time.monotonic)


class ResilientTransport:
    """
    Runs provider calls with correlation ids, retries and error normalization.

    `call` receives the correlation id so adapters that control their own
    headers can forward it. Any exception it raises is normalized through the
    provider's classifier; only retryable codes (rate limit, 5xx, network) are
    retried, everything else is raised on the first attempt.
    """

    def __init__(
        self,
        provider: str,
        classify: Classifier,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._classify = classify
        self._sleep = sleep
        self._in_flight: dict[str, InFlightRequest] = {}

    @property
    def in_flight(self) -> list[InFlightRequest]:
        return list(self._in_flight.values())

    async def execute(
        self,
        operation: str,
        call: Callable[[str], Awaitable[T]],
        *,
        correlation_id: str | None = None,
    ) -> T:
        correlation_id = correlation_id or new_correlation_id()
        attempt = 0

        while True:
            attempt += 1
            request = InFlightRequest(correlation_id, operation, attempt)
            self._in_flight[correlation_id] = request
            try:
                result = await call(correlation_id)
            except Exception as exc:
                error = exc if isinstance(exc, ProviderError) else self._classify(exc)
                if error.correlation_id is None:
                    error.correlation_id = correlation_id
                if not error.retryable or attempt >= self.policy.max_attempts:
                    logger.error(
                        "%s %s failed after %d attempt(s): %s [%s] (correlation %s, provider request %s)",
                        self.provider,
                        operation,
                        attempt,
                        error.code.value,
                        error.status_code,
                        correlation_id,
                        error.provider_request_id,
                    )
                    if error is exc:
                        raise
                    raise error from exc
                delay = self.policy.delay_seconds(attempt, error.retry_after)
                logger.warning(
                    "%s %s attempt %d/%d failed with %s, retrying in %.2fs (correlation %s)",
                    self.provider,
                    operation,
                    attempt,
                    self.policy.max_attempts,
                    error.code.value,
                    delay,
                    correlation_id,
                )
            else:
                logger.debug(
                    "%s %s ok in %.0fms (correlation %s)",
                    self.provider,
                    operation,
                    (time.monotonic() - request.started_at) * 1000,
                    correlation_id,
                )
                return result
            finally:
                self._in_flight.pop(correlation_id, None)

            await self._sleep(delay)
