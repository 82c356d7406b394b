"""Bounded retries with exponential backoff and jitter for a single model call."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from config.config_loader import RetryConfig
from chimera.models import CompletionResult
from chimera.providers.base import EmptyResponseError, ProviderError

logger = logging.getLogger(__name__)


class ExhaustedRetriesError(ProviderError):
    """Raised once every attempt for a model has failed."""

    def __init__(self, model_label: str, last_error: str, attempts: int) -> None:
        self.model_label = model_label
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(model_label, f"Failed after {attempts} attempts: {last_error}")


def backoff_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based).

    Nominal delay doubles from ``base_delay_sec``; jitter scales it by a
    random factor in [1 - jitter, 1 + jitter]; the result never exceeds
    ``max_delay_sec``. Once the nominal delay reaches the ceiling the
    ceiling is used as-is, so delays never shrink between attempts.
    """
    rng = rng or random
    nominal = config.base_delay_sec * (2 ** (attempt - 1))
    if nominal >= config.max_delay_sec:
        return config.max_delay_sec
    factor = 1.0 + rng.uniform(-config.jitter, config.jitter)
    return min(nominal * factor, config.max_delay_sec)


async def with_retry(
    operation: Callable[[], Awaitable[CompletionResult]],
    model_label: str,
    config: RetryConfig | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CompletionResult:
    """Run ``operation`` until it yields non-empty text or attempts run out.

    Cancellation is never retried: asyncio.CancelledError propagates from
    the operation or from the backoff sleep untouched.

    Raises:
        ExhaustedRetriesError: After ``config.max_attempts`` failures.
    """
    config = config or RetryConfig()
    last_error = "no attempts made"

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await operation()
            if not result.text or not result.text.strip():
                raise EmptyResponseError(model_label, "Empty response content")
            if attempt > 1:
                logger.info("%s succeeded on attempt %d", model_label, attempt)
            return result
        except Exception as exc:
            last_error = exc.message if isinstance(exc, ProviderError) else str(exc)
            if attempt == config.max_attempts:
                break
            delay = backoff_delay(attempt, config)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                model_label, attempt, config.max_attempts, last_error, delay,
            )
            await sleep(delay)

    logger.warning("%s failed after %d attempts: %s", model_label, config.max_attempts, last_error)
    raise ExhaustedRetriesError(model_label, last_error, config.max_attempts)
