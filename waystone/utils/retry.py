from __future__ import annotations

import asyncio
import random
from typing import Optional


def compute_backoff(
    attempt: int, base: float = 1.5, jitter: float = 0.5, max_delay: Optional[float] = None
) -> float:
    """Compute exponential backoff with jitter for the given 1-based attempt."""
    delay = base ** max(attempt, 0)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Sleep for the computed backoff delay before retrying; returns the delay."""
    delay = compute_backoff(attempt, base, jitter)
    await asyncio.sleep(delay)
    return delay
