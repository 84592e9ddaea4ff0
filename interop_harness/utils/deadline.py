"""Monotonic deadlines shared by the stages of a test case."""

import time
from typing import Optional


class Deadline:
    """A point in time after which a test case gives up."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def clamp(self, timeout: Optional[float]) -> float:
        """Return ``timeout`` shortened so it never outlives this deadline."""
        remaining = self.remaining()
        if timeout is None:
            return remaining
        return min(timeout, remaining)
