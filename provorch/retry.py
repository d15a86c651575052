"""
Retry policy for readiness probes.

RetryPolicy.next_delay() is a pure function of (attempt, elapsed): it either
returns how long to wait before the next probe, or None to give up. Two bounds
apply and whichever hits first wins:

- max_attempts: never more than this many probe attempts
- max_total_wait: the wait already spent plus the next delay never exceeds it
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Backoff(str, Enum):
    """How the delay grows between attempts."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry schedule.

    Attributes:
        max_attempts: Maximum number of attempts (>= 1)
        base_delay: Base delay in seconds
        max_total_wait: Upper bound on the total time spent waiting, in seconds
        backoff: fixed, linear, or exponential growth
        max_delay: Ceiling for a single exponential delay (fixed and linear ignore it)
    """
    max_attempts: int = 30
    base_delay: float = 1.0
    max_total_wait: float = 120.0
    backoff: Backoff = Backoff.FIXED
    max_delay: Optional[float] = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_total_wait < 0:
            raise ValueError("max_total_wait must be >= 0")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Raw delay after the given (1-based) failed attempt, before the wait budget is applied."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        if self.backoff == Backoff.FIXED:
            return self.base_delay
        if self.backoff == Backoff.LINEAR:
            return self.base_delay * attempt

        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def next_delay(self, attempt: int, elapsed: float) -> Optional[float]:
        """
        Decide what happens after a failed attempt.

        Args:
            attempt: Number of attempts made so far (1-based)
            elapsed: Seconds spent so far on this probe (waits included)

        Returns:
            Seconds to wait before the next attempt, or None to give up
        """
        if attempt >= self.max_attempts:
            return None

        delay = self.delay_for(attempt)
        if elapsed + delay > self.max_total_wait:
            return None
        return delay

    def schedule(self) -> list[float]:
        """The delays this policy would produce if no time were spent probing."""
        delays = []
        elapsed = 0.0
        attempt = 1
        while True:
            delay = self.next_delay(attempt, elapsed)
            if delay is None:
                return delays
            delays.append(delay)
            elapsed += delay
            attempt += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_total_wait": self.max_total_wait,
            "backoff": self.backoff.value,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]], default: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        """
        Build a policy from a config block, falling back to `default` per key.

        Raises:
            ValueError: If a value is out of range or backoff is unknown
        """
        base = default or cls()
        data = data or {}
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            base_delay=float(data.get("base_delay", base.base_delay)),
            max_total_wait=float(data.get("max_total_wait", base.max_total_wait)),
            backoff=Backoff(data.get("backoff", base.backoff)),
            max_delay=(
                float(data["max_delay"]) if data.get("max_delay") is not None
                else (None if "max_delay" in data else base.max_delay)
            ),
        )
