"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from .config import LoopConfig

MAX_JITTER = 0.2


def backoff_delay(
    retry_count: int,
    base: float,
    cap: float,
    jitter: Optional[float] = None,
) -> float:
    """Delay before retry number ``retry_count`` (1-based).

    ``min(base * 2^(n-1), cap)`` plus up to 20% jitter, so the result never
    exceeds ``cap * 1.2``. Pass ``jitter`` in ``[0, 0.2]`` to pin the random
    factor.
    """
    exponent = max(0, retry_count - 1)
    try:
        delay = min(base * (2**exponent), cap)
    except OverflowError:
        delay = cap
    if jitter is None:
        jitter = random.uniform(0, MAX_JITTER)
    jitter = min(max(jitter, 0.0), MAX_JITTER)
    return delay + jitter * delay


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base: float = 10.0
    cap: float = 300.0

    @classmethod
    def from_config(cls, config: LoopConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base=config.backoff_base,
            cap=config.backoff_cap,
        )

    def delay(self, retry_count: int, jitter: Optional[float] = None) -> float:
        return backoff_delay(retry_count, self.base, self.cap, jitter)

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries
