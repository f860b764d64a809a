from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 2.0, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is the 1-based attempt that just failed; the first retry
    waits ``base`` seconds, the next ``2 * base`` and so on.
    """
    delay = base * 2 ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 2.0, jitter: float = 0.5) -> float:
    """Sleep for computed backoff delay before retrying. Returns the delay."""
    delay = compute_backoff(attempt, base, jitter)
    await asyncio.sleep(delay)
    return delay
