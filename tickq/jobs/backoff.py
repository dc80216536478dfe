from __future__ import annotations

import random
from datetime import datetime, timedelta

MIN_DELAY_SECONDS = 1.0


def compute_backoff_seconds(
    attempts: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.25,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff with jitter: ``base * 2**(attempts-1)``, scaled by ``1 ± jitter_ratio``.

    The cap is applied after jitter so the curve stays non-decreasing in ``attempts``:
    each step doubles the delay, and ``2 * (1-r) >= 1+r`` holds for ``r <= 1/3``.
    """
    if attempts < 1:
        attempts = 1
    generator = rng or random
    jitter = jitter_ratio * (2 * generator.random() - 1)
    # Exponent is bounded so huge attempt counts cannot overflow the float.
    exponential = base_seconds * (2 ** min(attempts - 1, 62))
    return max(MIN_DELAY_SECONDS, min(max_seconds, exponential * (1 + jitter)))


def next_run_after(
    now: datetime,
    attempts: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.25,
    rng: random.Random | None = None,
) -> datetime:
    delay = compute_backoff_seconds(
        attempts,
        base_seconds=base_seconds,
        max_seconds=max_seconds,
        jitter_ratio=jitter_ratio,
        rng=rng,
    )
    return now + timedelta(seconds=delay)
