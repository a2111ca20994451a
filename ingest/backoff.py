import random
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with multiplicative jitter.

    ``delay(attempt)`` is non-decreasing in ``attempt`` for any jitter draws
    because ``jitter`` is bounded by ``multiplier - 1``.
    """

    base_s: float = 1.0
    max_s: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25

    def __post_init__(self):
        if self.base_s <= 0:
            raise ValueError("backoff base must be positive")
        if self.max_s < self.base_s:
            raise ValueError("backoff cap must be >= base")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        if not 0 <= self.jitter <= self.multiplier - 1:
            raise ValueError("backoff jitter must be within [0, multiplier - 1]")

    def delay(self, attempt: int, rand: Optional[float] = None) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        attempt = max(0, int(attempt))
        u = random.random() if rand is None else min(1.0, max(0.0, rand))
        try:
            raw = self.base_s * (self.multiplier ** attempt) * (1.0 + self.jitter * u)
        except OverflowError:
            return self.max_s
        return min(self.max_s, raw)
