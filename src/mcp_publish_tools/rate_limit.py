"""Fixed-window request rate limiting.

Each client gets a counter that lives until the end of its window. The window
starts with the client's first request and is not sliding, so a client can
burst across a window boundary. That is acceptable for abuse mitigation.

State is in memory only. A restart resets every counter.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from .errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    """Request count for one client in its current window."""
    client_key: str
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class Admission:
    """Outcome of a rate limit check."""
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """Tracks per-client request counts in fixed windows."""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, client_key: str) -> RateLimitEntry | None:
        return self._entries.get(client_key)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.window_reset_at]
        for key in expired:
            del self._entries[key]

    def admit(self, client_key: str) -> Admission:
        """Count one request for client_key and decide whether it may proceed."""
        now = self._clock()
        self._evict_expired(now)

        entry = self._entries.get(client_key)
        if entry is None:
            self._entries[client_key] = RateLimitEntry(
                client_key=client_key,
                count=1,
                window_reset_at=now + self.window_seconds,
            )
            return Admission(allowed=True)

        if entry.count >= self.max_requests:
            remaining = entry.window_reset_at - now
            retry_after = max(1, min(math.ceil(remaining), math.floor(self.window_seconds)))
            logger.warning(
                f"Rate limit exceeded for {client_key} "
                f"({entry.count}/{self.max_requests}), retry after {retry_after}s"
            )
            return Admission(allowed=False, retry_after=retry_after)

        entry.count += 1
        return Admission(allowed=True)

    def check(self, client_key: str) -> None:
        """Like admit(), but raise when the request is rejected.

        Raises:
            RateLimitError: If the client has used up its window
        """
        admission = self.admit(client_key)
        if not admission.allowed:
            raise RateLimitError(client_key, admission.retry_after)
