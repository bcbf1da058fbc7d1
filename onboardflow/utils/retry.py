from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter, optionally capped."""
    delay = base ** attempt
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay + random.uniform(0, jitter)
