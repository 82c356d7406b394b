"""Tests for chimera/retry.py."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from config.config_loader import RetryConfig
from chimera.models import CompletionResult
from chimera.providers.base import TransportError
from chimera.retry import ExhaustedRetriesError, backoff_delay, with_retry


def _ok(text: str = "answer") -> CompletionResult:
    return CompletionResult(text=text, raw={"choices": [{"message": {"content": text}}]})


@pytest.fixture
def recorded_sleep():
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    fake_sleep.delays = delays
    return fake_sleep


async def test_always_failing_operation_makes_three_attempts(recorded_sleep):
    operation = AsyncMock(side_effect=TransportError("vendor/m", "API request failed: 503"))

    with pytest.raises(ExhaustedRetriesError) as info:
        await with_retry(operation, "vendor/m", RetryConfig(), sleep=recorded_sleep)

    assert operation.await_count == 3
    assert info.value.model_label == "vendor/m"
    assert "503" in info.value.last_error
    assert "vendor/m" in str(info.value)
    assert len(recorded_sleep.delays) == 2


async def test_success_on_second_attempt_stops_retrying(recorded_sleep):
    operation = AsyncMock(side_effect=[TransportError("m", "API request failed: 500"), _ok("second")])

    result = await with_retry(operation, "m", RetryConfig(), sleep=recorded_sleep)

    assert result.text == "second"
    assert operation.await_count == 2
    assert len(recorded_sleep.delays) == 1


async def test_first_attempt_success_does_not_sleep(recorded_sleep):
    operation = AsyncMock(return_value=_ok())

    await with_retry(operation, "m", RetryConfig(), sleep=recorded_sleep)

    assert operation.await_count == 1
    assert recorded_sleep.delays == []


async def test_empty_text_is_retried(recorded_sleep):
    operation = AsyncMock(side_effect=[_ok(""), _ok("   "), _ok("finally")])

    result = await with_retry(operation, "m", RetryConfig(), sleep=recorded_sleep)

    assert result.text == "finally"
    assert operation.await_count == 3


async def test_empty_text_exhausts_with_empty_response_message(recorded_sleep):
    operation = AsyncMock(return_value=_ok(""))

    with pytest.raises(ExhaustedRetriesError, match="Empty response"):
        await with_retry(operation, "m", RetryConfig(), sleep=recorded_sleep)


async def test_cancellation_is_not_retried(recorded_sleep):
    operation = AsyncMock(side_effect=asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await with_retry(operation, "m", RetryConfig(), sleep=recorded_sleep)

    assert operation.await_count == 1
    assert recorded_sleep.delays == []


async def test_max_attempts_is_configurable(recorded_sleep):
    operation = AsyncMock(side_effect=RuntimeError("boom"))

    with pytest.raises(ExhaustedRetriesError) as info:
        await with_retry(operation, "m", RetryConfig(max_attempts=5), sleep=recorded_sleep)

    assert operation.await_count == 5
    assert info.value.attempts == 5
    assert info.value.last_error == "boom"


async def test_retry_delays_come_from_backoff(recorded_sleep):
    operation = AsyncMock(side_effect=RuntimeError("boom"))
    config = RetryConfig(max_attempts=3, base_delay_sec=1.0, max_delay_sec=10.0, jitter=0.1)

    with pytest.raises(ExhaustedRetriesError):
        await with_retry(operation, "m", config, sleep=recorded_sleep)

    first, second = recorded_sleep.delays
    assert 0.9 <= first <= 1.1
    assert 1.8 <= second <= 2.2


def test_backoff_delay_without_jitter_doubles():
    config = RetryConfig(base_delay_sec=1.0, max_delay_sec=10.0, jitter=0.0)
    assert [backoff_delay(n, config) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


@pytest.mark.parametrize("seed", range(20))
def test_backoff_delays_grow_and_respect_ceiling(seed):
    config = RetryConfig(base_delay_sec=1.0, max_delay_sec=10.0, jitter=0.1)
    rng = random.Random(seed)

    delays = [backoff_delay(n, config, rng) for n in range(1, 8)]

    assert delays == sorted(delays)
    assert all(d <= 10.0 for d in delays)
    for n, delay in enumerate(delays, start=1):
        nominal = min(1.0 * 2 ** (n - 1), 10.0)
        assert delay >= nominal * 0.9
        assert delay <= nominal * 1.1
