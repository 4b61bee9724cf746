"""Retry policy with exponential backoff and jitter.

One policy object is applied at each transport boundary (segment store,
embedding provider) instead of ad-hoc retry loops at call sites.

Delay for attempt n (0-based): base_delay * 2**n, plus uniform jitter of
+/- jitter * base_delay, capped at max_delay.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from meditation_cache_service.embeddings.base import EmbeddingProvider
from meditation_cache_service.embeddings.exceptions import EmbeddingError
from meditation_cache_service.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Error message fragments that will not go away by retrying
PERMANENT_ERROR_PATTERNS = (
    "invalid api key",
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "authentication",
    "400",
    "bad request",
    "invalid input",
    "model not found",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration applied uniformly at a transport boundary.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for a single delay.
        jitter: Jitter amplitude as a fraction of base_delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given failed attempt (0-based)."""
        delay = self.base_delay * (2**attempt)
        delay += random.uniform(-self.jitter, self.jitter) * self.base_delay
        return max(0.0, min(delay, self.max_delay))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...],
        is_permanent: Callable[[BaseException], bool] | None = None,
        operation_name: str = "operation",
    ) -> T:
        """Run an async operation, retrying transient failures.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt.
            retry_on: Exception types considered transient.
            is_permanent: Optional classifier; errors it accepts are re-raised at once.
            operation_name: Label used in log events.

        Returns:
            The operation's result.

        Raises:
            The last exception once attempts are exhausted, or immediately for
            permanent errors and exception types outside retry_on.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return await operation()
            except retry_on as e:
                if is_permanent is not None and is_permanent(e):
                    logger.warning(
                        "retry_permanent_error", operation=operation_name, error=str(e)
                    )
                    raise
                if attempt == attempts - 1:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation_name,
                        attempts=attempts,
                        error=str(e),
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "retry_scheduled",
                    operation=operation_name,
                    attempt=attempt + 1,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover


def is_permanent_embedding_error(error: BaseException) -> bool:
    """Classify an embedding error as permanent (auth, invalid input, unknown model)."""
    message = str(error).lower()
    return any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS)


async def embed_with_retry(
    provider: EmbeddingProvider,
    texts: list[str],
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> list[list[float]]:
    """Embed texts, retrying transient provider failures with backoff.

    Args:
        provider: Embedding provider.
        texts: Texts to embed.
        max_retries: Total attempts.
        base_delay: Base backoff delay in seconds.

    Returns:
        One vector per input text.

    Raises:
        EmbeddingError: On a permanent error or when retries are exhausted.
    """
    policy = RetryPolicy(max_attempts=max_retries, base_delay=base_delay)
    return await policy.run(
        lambda: provider.embed(texts),
        retry_on=(EmbeddingError,),
        is_permanent=is_permanent_embedding_error,
        operation_name="embed",
    )
