from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded, opt-in retry for a single step or assertion.

    `attempts` counts the first try; the default policy never retries.
    """
    attempts: int = 1
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("RetryPolicy.delay must be >= 0")

    def call(self, fn: Callable[[], T], succeeded: Callable[[T], bool]) -> T:
        """Call `fn` until `succeeded(result)` or attempts run out; returns the last result."""
        result = fn()
        for _ in range(self.attempts - 1):
            if succeeded(result):
                break
            if self.delay:
                time.sleep(self.delay)
            result = fn()
        return result


NO_RETRY = RetryPolicy()
