"""Tests for the transient-overload retry wrapper."""

import pytest

from retry import backoff_delay_ms, is_transient_error, with_retry
from tests.fakes import ServiceError


class Flaky:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("503 UNAVAILABLE"),
        RuntimeError("The model is overloaded. Please try again later."),
        ServiceError("unavailable", status=503),
    ],
)
def test_transient_errors_detected(error):
    assert is_transient_error(error)


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("Model Overloaded"),
        RuntimeError("Requested entity was not found."),
        ServiceError("bad request", status=400),
        ValueError(""),
    ],
)
def test_non_transient_errors_rejected(error):
    assert not is_transient_error(error)


@pytest.mark.parametrize("attempt", [0, 1, 2, 3, 4])
def test_backoff_delay_bounds(attempt):
    low = backoff_delay_ms(attempt, rand=lambda: 0.0)
    high = backoff_delay_ms(attempt, rand=lambda: 0.999999)
    assert low == 2 ** attempt * 1000
    assert 2 ** attempt * 1000 <= high < 2 ** attempt * 1000 + 1000


@pytest.mark.anyio
async def test_succeeds_after_transient_failures():
    op = Flaky(RuntimeError("503"), RuntimeError("overloaded"))
    sleep = SleepRecorder()
    retries = []

    result = await with_retry(op, max_retries=3, on_retry=retries.append, sleep=sleep, rand=lambda: 0.5)

    assert result == "ok"
    assert op.attempts == 3
    assert retries == [1, 2]
    assert sleep.delays == [1.5, 2.5]


@pytest.mark.anyio
async def test_gives_up_after_max_retries_and_reraises_last_error():
    errors = [RuntimeError(f"503 attempt {i}") for i in range(4)]
    op = Flaky(*errors)
    sleep = SleepRecorder()
    retries = []

    with pytest.raises(RuntimeError) as exc_info:
        await with_retry(op, max_retries=3, on_retry=retries.append, sleep=sleep, rand=lambda: 0.0)

    assert exc_info.value is errors[-1]
    assert op.attempts == 4
    assert retries == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.anyio
async def test_non_transient_error_fails_immediately():
    error = ValueError("invalid argument")
    op = Flaky(error)
    sleep = SleepRecorder()
    retries = []

    with pytest.raises(ValueError) as exc_info:
        await with_retry(op, on_retry=retries.append, sleep=sleep)

    assert exc_info.value is error
    assert op.attempts == 1
    assert retries == []
    assert sleep.delays == []


@pytest.mark.anyio
async def test_zero_retries_makes_single_attempt():
    op = Flaky(RuntimeError("503"))
    sleep = SleepRecorder()

    with pytest.raises(RuntimeError):
        await with_retry(op, max_retries=0, sleep=sleep)

    assert op.attempts == 1
    assert sleep.delays == []
