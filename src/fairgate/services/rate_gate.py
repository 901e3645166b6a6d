"""Shared rate-limit gate for outgoing requests.

After a 429 response the server declares the earliest time (Unix seconds)
at which requests may resume. The gate holds that deadline for the whole
client so every caller waits for it, not just the one that was throttled.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from typing import Callable

from fairgate.models.errors import InvalidRateLimitSignalError

logger = logging.getLogger(__name__)

RETRY_AFTER_HEADER = "X-Ratelimit-Retry-After"

_TIMESTAMP = re.compile(r"[+-]?[0-9]+")


class RateGate:
    """Monotonic retry-not-before deadline.

    The lock only covers reading and ratcheting the timestamp. Waiting
    happens outside it, so concurrent waiters do not serialize on each other.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """Initialize an open gate.

        Args:
            clock: Source of the current Unix time in seconds
        """
        self._clock = clock
        self._lock = threading.Lock()
        self._deadline = 0.0

    @property
    def deadline(self) -> float:
        """Current retry-not-before timestamp (0 when never armed)."""
        with self._lock:
            return self._deadline

    def arm(self, deadline: float) -> bool:
        """Move the deadline forward if ``deadline`` is later.

        An earlier deadline is ignored so a stale or racing 429 response
        cannot shorten a wait that is already armed.

        Returns:
            True if the deadline was updated
        """
        with self._lock:
            if deadline <= self._deadline:
                return False
            self._deadline = deadline

        logger.debug(f"Rate gate armed until {deadline}")
        return True

    def arm_from_header(self, value: str | None) -> bool:
        """Arm the gate from a retry-after header value.

        Args:
            value: Raw header value, an integer Unix timestamp

        Returns:
            True if the deadline was updated

        Raises:
            InvalidRateLimitSignalError: If the value is missing or not an integer
        """
        if not value:
            raise InvalidRateLimitSignalError(f"missing {RETRY_AFTER_HEADER} header")

        if not _TIMESTAMP.fullmatch(value):
            raise InvalidRateLimitSignalError(
                f"invalid {RETRY_AFTER_HEADER} header {value!r}"
            )

        return self.arm(float(int(value)))

    async def wait(self) -> None:
        """Suspend the calling task until the deadline has passed.

        Returns immediately when the gate is open. Cancelling the calling
        task interrupts the wait and propagates ``asyncio.CancelledError``.
        """
        remaining = self.deadline - self._clock()
        if remaining <= 0:
            return

        logger.debug(f"Rate limited, waiting {remaining:.2f}s")
        await asyncio.sleep(remaining)
