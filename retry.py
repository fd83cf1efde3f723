"""Exponential-backoff retry for calls that hit an overloaded Gemini backend."""

import asyncio
import logging
import random

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


def is_transient_error(exc):
    """True when the error says the service is temporarily over capacity.

    Matches HTTP 503 on the error's status/code, or "503" / "overloaded"
    anywhere in its message (case-sensitive).
    """
    for attr in ("status", "code", "status_code"):
        if getattr(exc, attr, None) == 503:
            return True
    message = str(exc)
    return "503" in message or "overloaded" in message


def backoff_delay_ms(attempt, rand=random.random):
    """Delay before retrying after 0-indexed ``attempt``: 2^a * 1000 plus up to 1000 ms jitter."""
    return (2 ** attempt) * 1000 + rand() * 1000


async def with_retry(fn, max_retries=DEFAULT_MAX_RETRIES, on_retry=None, sleep=asyncio.sleep, rand=random.random):
    """Await ``fn()`` until it succeeds, retrying transient failures.

    At most ``max_retries + 1`` attempts are made. Non-transient errors and
    the last transient error are re-raised unchanged. ``on_retry`` receives
    the 1-indexed retry number before each backoff sleep.
    """
    last_error = None
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if not is_transient_error(e) or attempt >= max_retries:
                raise

            if on_retry is not None:
                on_retry(attempt + 1)
            delay = backoff_delay_ms(attempt, rand)
            logger.warning(
                "Service overloaded (attempt %d/%d), retrying in %.0f ms: %s",
                attempt + 1, max_retries + 1, delay, e,
            )
            await sleep(delay / 1000)
    raise last_error
