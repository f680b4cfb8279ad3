"""Bounded retry with backoff for cache, mailbox and bridge calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.1, 0.5, 1.0)


def total_attempts(retries: int, delays: Sequence[float]) -> int:
    return max(retries + 1, len(delays) + 1)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int = 2,
    delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    logger: logging.Logger | None = None,
    retry_if: Callable[[BaseException], bool] | None = None,
    should_abort: Callable[[], bool] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    The budget is ``max(retries + 1, len(delays) + 1)`` attempts. Before
    attempt ``n`` (``n >= 2``) the executor waits ``delays[min(n - 2,
    len(delays) - 1)]`` seconds. A warning is logged before every retry but not
    after the final failure, which is re-raised unchanged.

    ``retry_if`` returning false re-raises immediately. ``should_abort``
    returning true before a retry re-raises the last error without further
    attempts, which lets a closed transport stop its in-flight work.
    """

    log = logger if logger is not None else logging.getLogger(__name__)
    attempts = total_attempts(retries, delays)
    attempt = 0

    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if retry_if is not None and not retry_if(exc):
                raise
            attempt += 1
            if attempt >= attempts:
                raise
            if should_abort is not None and should_abort():
                raise
            log.warning("retry: attempt %d/%d failed: %s", attempt, attempts, exc)

        if delays:
            delay = delays[min(attempt - 1, len(delays) - 1)]
            if delay > 0:
                await sleep(delay)
