"""Backoff utilities.

`exponential_backoff` yields ``(attempt, delay)`` where ``delay`` is the pause
taken after that attempt if the caller asks for another one. The pause is slept
with exactly that value before the next attempt is yielded. The last attempt
is yielded without a trailing sleep; callers decide whether the final failure
is fatal.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator


async def exponential_backoff(
    initial_delay: float,
    max_delay: float,
    multiplier: float,
    max_attempts: int,
) -> AsyncIterator[tuple[int, float]]:
    delay = min(initial_delay, max_delay)
    for attempt in range(1, max(max_attempts, 1) + 1):
        yield attempt, delay
        if attempt < max_attempts:
            await asyncio.sleep(delay)
            delay = min(delay * multiplier, max_delay)
