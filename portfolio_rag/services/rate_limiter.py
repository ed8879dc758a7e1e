"""Rolling-window request/token limiter for upstream embedding calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimitTimeout(Exception):
    """Raised when a reservation could not be made within the wait budget."""


class RateLimiter:
    """Requests-per-minute and tokens-per-minute limiter.

    Counters reset together once the window elapses. ``acquire`` reserves one
    request plus an estimated token cost, sleeping until the window resets
    when either limit would be exceeded. A single request larger than the
    token limit is admitted into an empty window so it cannot wait forever.
    """

    def __init__(
        self,
        *,
        requests_per_minute: int,
        tokens_per_minute: int,
        window_seconds: float = 60.0,
        max_wait_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.requests_per_minute = max(1, int(requests_per_minute))
        self.tokens_per_minute = max(1, int(tokens_per_minute))
        self.window_seconds = float(window_seconds)
        self.max_wait_seconds = float(max_wait_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._requests = 0
        self._tokens = 0
        self._reset_at: Optional[float] = None

    def _roll_window(self, now: float) -> None:
        if self._reset_at is None or now >= self._reset_at:
            self._requests = 0
            self._tokens = 0
            self._reset_at = now + self.window_seconds

    def _fits(self, tokens: int) -> bool:
        if self._requests >= self.requests_per_minute:
            return False
        if self._tokens == 0:
            return True
        return self._tokens + tokens <= self.tokens_per_minute

    async def acquire(self, tokens: int) -> None:
        tokens = max(0, int(tokens))
        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                self._roll_window(now)
                if self._fits(tokens):
                    self._requests += 1
                    self._tokens += tokens
                    return
                wait_seconds = max(0.0, min(self._reset_at - now, self.window_seconds))

            if waited + wait_seconds > self.max_wait_seconds:
                raise RateLimitTimeout(
                    f"Rate limit wait of {waited + wait_seconds:.1f}s exceeds "
                    f"{self.max_wait_seconds:.1f}s budget"
                )
            logger.info(
                "Embedding rate limit reached (requests=%d, tokens=%d); waiting %.2fs",
                self._requests,
                self._tokens,
                wait_seconds,
            )
            await self._sleep(wait_seconds)
            waited += wait_seconds

    def record_usage(self, estimated_tokens: int, actual_tokens: int) -> None:
        """Replace a reserved token estimate with the provider's real count."""
        self._tokens = max(0, self._tokens + int(actual_tokens) - int(estimated_tokens))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "requests": self._requests,
            "tokens": self._tokens,
            "requests_per_minute": self.requests_per_minute,
            "tokens_per_minute": self.tokens_per_minute,
            "reset_at": self._reset_at,
        }
