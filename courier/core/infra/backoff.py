"""Reconnect backoff policy shared by the connection supervisor."""

import random
from dataclasses import dataclass, field
from typing import Callable

from courier.constants import CONNECTION_PROFILES, RATE_LIMIT_FLOOR_SECONDS, ConnectionProfile


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with bounded jitter and a rate-limit floor.

    ``delay = min(max_delay, base_delay * multiplier ** attempt + jitter)``,
    where jitter is drawn from ``[0, jitter]``.
    Keeping ``jitter <= base_delay * (multiplier - 1)`` makes consecutive
    delays non-decreasing: the growth from one attempt to
    the next is at least ``base_delay * (multiplier - 1)``.

    After a rate/overload signal the delay is raised to ``rate_limit_floor``.

    Attributes:
        base_delay: Delay for attempt 0 in seconds
        max_delay: Ceiling in seconds
        multiplier: Growth factor per attempt
        jitter: Upper bound of the random component
        max_attempts: Reconnect attempts allowed before giving up
        rate_limit_floor: Minimum delay after the remote signals overload
    """

    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.0
    max_attempts: int = 25
    rate_limit_floor: float = RATE_LIMIT_FLOOR_SECONDS
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def __post_init__(self):
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if self.jitter > self.base_delay * (self.multiplier - 1):
            raise ValueError("Backoff jitter must not exceed base_delay * (multiplier - 1)")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_profile(
        cls,
        profile: ConnectionProfile,
        multiplier: float = 2.0,
        jitter: float = 0.0,
        rate_limit_floor: float = RATE_LIMIT_FLOOR_SECONDS,
    ) -> "BackoffPolicy":
        """Build a policy from a connection profile preset."""
        return cls(
            base_delay=profile.base_delay,
            max_delay=profile.max_delay,
            multiplier=multiplier,
            jitter=min(jitter, profile.base_delay * (multiplier - 1)),
            max_attempts=profile.max_attempts,
            rate_limit_floor=rate_limit_floor,
        )

    @classmethod
    def standard(cls) -> "BackoffPolicy":
        """Policy for the default deployment profile."""
        return cls.from_profile(CONNECTION_PROFILES["standard"])

    def delay_for(self, attempt: int, rate_limited: bool = False) -> float:
        """
        Compute the wait before reconnect attempt ``attempt`` (0-based).

        Args:
            attempt: Number of consecutive failed attempts so far
            rate_limited: Whether the last disconnect was an overload signal

        Returns:
            Delay in seconds, never above ``max_delay`` unless the rate-limit
            floor demands more
        """
        attempt = max(0, attempt)
        try:
            raw = self.base_delay * (self.multiplier**attempt)
        except OverflowError:
            raw = self.max_delay
        if self.jitter:
            raw += self.rng(0, self.jitter)
        delay = min(self.max_delay, raw)
        if rate_limited:
            delay = max(delay, self.rate_limit_floor)
        return delay

    def exhausted(self, attempt: int) -> bool:
        """Check whether the reconnect budget is used up."""
        return attempt >= self.max_attempts
