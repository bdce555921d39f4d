"""Token-bucket rate limiter shared by every request of one client."""

from __future__ import annotations

import asyncio
import math
import threading
import time

from restclient.exceptions import RequestCancelledError


class TokenBucketRateLimiter:
    """Thread-safe token bucket usable from threads and event loops alike.

    The bucket starts full. ``rate`` tokens are added per second up to
    ``burst`` (``max(round(rate), 1)``), so issuing ``N > burst`` requests
    back to back takes at least ``(N - burst) / rate`` seconds.
    """

    def __init__(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self._rate = float(rate)
        # Half-up rounding: a 2.5 req/s limit gets a burst of 3
        self._burst = max(int(math.floor(rate + 0.5)), 1)
        self._tokens = float(self._burst)
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        self._last_refill = now
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)

    def _try_take(self) -> float:
        """Take a token if one is available.

        Returns 0 on success, otherwise the number of seconds until the
        next token accrues.
        """
        with self._lock:
            self._refill(time.monotonic())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self._rate

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        return self._try_take() == 0.0

    def acquire(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Block until a token is available.

        Raises :class:`RequestCancelledError` if *timeout* elapses or
        *cancel* is set before a token could be taken.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError("rate limiter wait cancelled")
            wait = self._try_take()
            if wait == 0.0:
                return
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RequestCancelledError(
                        f"no rate limiter token within {timeout}s"
                    )
                wait = min(wait, remaining)
            if cancel is not None:
                cancel.wait(wait)
            else:
                time.sleep(wait)

    async def acquire_async(self, timeout: float | None = None) -> None:
        """Suspend the calling task until a token is available.

        Task cancellation propagates as :class:`asyncio.CancelledError`;
        an elapsed *timeout* raises :class:`RequestCancelledError`.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self._try_take()
            if wait == 0.0:
                return
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RequestCancelledError(
                        f"no rate limiter token within {timeout}s"
                    )
                wait = min(wait, remaining)
            await asyncio.sleep(wait)

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill(time.monotonic())
            return self._tokens
