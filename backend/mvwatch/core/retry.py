"""
Centralized retry/backoff primitives.

A RetryPolicy is a bounded attempt counter plus a backoff function that maps
a 1-based attempt number to the delay (in seconds) before the next attempt.
Callers drive their own loops with it; nothing here sleeps.
"""

import logging
import random
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

Backoff = Callable[[int], float]


def fixed_backoff(seconds: float) -> Backoff:
    """Same delay after every attempt."""
    def backoff(attempt: int) -> float:
        return seconds
    return backoff


def uniform_backoff(low: float, high: float, rng: random.Random | None = None) -> Backoff:
    """
    Delay drawn uniformly from [low, high).

    Args:
        low: Lower bound in seconds (inclusive)
        high: Upper bound in seconds (exclusive)
        rng: Optional random source, for deterministic tests
    """
    if high < low:
        raise ValueError(f"high ({high}) must be >= low ({low})")
    source = rng or random

    def backoff(attempt: int) -> float:
        return low + source.random() * (high - low)
    return backoff


def stepped_backoff(delays: Sequence[float]) -> Backoff:
    """
    Delay taken from a table, repeating the last entry once exhausted.

    Example:
        stepped_backoff([1, 2, 4])(5) == 4
    """
    if not delays:
        raise ValueError("delays must not be empty")
    table = list(delays)

    def backoff(attempt: int) -> float:
        return table[min(max(attempt, 1), len(table)) - 1]
    return backoff


class RetryPolicy:
    """Bounded retry configuration."""

    def __init__(self, max_attempts: int, backoff: Backoff, name: str = "operation"):
        """
        Args:
            max_attempts: Maximum number of attempts (including the first)
            backoff: Maps the attempt that just failed (1-based) to a delay
            name: Label used in log messages
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.name = name

    def can_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt` failed."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt`."""
        return max(0.0, self.backoff(attempt))

    def __repr__(self) -> str:
        return f"RetryPolicy(name={self.name!r}, max_attempts={self.max_attempts})"


# Snapshot URL generation: the dashboard answers with an error until it has
# scheduled the snapshot, so spread retries out randomly.
SNAPSHOT_URL_RETRY = RetryPolicy(
    max_attempts=10,
    backoff=uniform_backoff(1.0, 31.0),
    name="snapshot_url",
)

# Image download: the URL 404s until the image is materialized.
IMAGE_FETCH_RETRY = RetryPolicy(
    max_attempts=30,
    backoff=fixed_backoff(2.0),
    name="image_fetch",
)

# Broker reconnects back off 1s -> 60s.
MQTT_RECONNECT_DELAYS = [1, 2, 4, 8, 16, 32, 60]
MQTT_RECONNECT_BACKOFF = stepped_backoff(MQTT_RECONNECT_DELAYS)
