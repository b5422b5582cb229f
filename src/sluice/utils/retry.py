from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 0.05, factor: float = 2.0, jitter: float = 0.5) -> float:
    """Exponential backoff with proportional jitter.

    ``attempt`` counts from 1; the first retry waits about ``base`` seconds.
    """
    delay = base * factor ** max(0, attempt - 1)
    return delay + random.uniform(0, delay * jitter)
