"""
Injectable time source for deadline tracking and backoff sleeps.
"""

import time


class Clock:
    """Monotonic wall clock backed by the ``time`` module."""

    def now(self) -> float:
        """Seconds from an arbitrary monotonic origin."""
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()
