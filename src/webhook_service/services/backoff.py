"""Retry delay schedule."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

DEFAULT_RETRY_DELAYS: tuple[int, ...] = (60, 300, 1800)


@dataclass(frozen=True)
class RetryBackoff:
    """Maps a retry count to a delay in seconds.

    ``backoff(n) == delays[min(n, len(delays) - 1)]``: never decreases and is
    capped by the last configured delay.
    """

    delays: Sequence[int] = field(default=DEFAULT_RETRY_DELAYS)

    def __post_init__(self) -> None:
        delays = tuple(self.delays)
        if not delays:
            raise ValueError("At least one retry delay is required")
        if any(d < 0 for d in delays):
            raise ValueError("Retry delays must be non-negative")
        if any(later < earlier for earlier, later in zip(delays, delays[1:])):
            raise ValueError("Retry delays must be non-decreasing")
        object.__setattr__(self, "delays", delays)

    def __call__(self, retry_count: int) -> int:
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        return self.delays[min(retry_count, len(self.delays) - 1)]

    @property
    def max_delay(self) -> int:
        return self.delays[-1]
