from __future__ import annotations

import time

from .models import ErrorKind
from .venue_client import VenueError


class CycleTimeout(VenueError):
    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.TIMEOUT)


class CycleDeadline:
    """Wall-clock budget for one rule cycle.

    Checked between cycle steps and before every venue call.  In-flight HTTP
    requests are bounded by ``request_timeout`` rather than interrupted.
    """

    def __init__(self, seconds: float, clock=time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, step: str = "") -> None:
        if self.expired():
            where = f" before {step}" if step else ""
            raise CycleTimeout(f"Cycle exceeded {self.seconds:.0f}s timeout{where}")

    def request_timeout(self, default: float) -> float:
        return max(0.5, min(default, self.remaining()))
