"""
Rate-limit governor for all remote calls.

The governor is the single gate between the storage engine and the remote
platform. It keeps one token bucket per route plus one global bucket,
adapts them from the rate-limit feedback of every response, and hides
rate-limit rejections and transient failures behind a bounded retry.

Invariants:
    - No component issues a remote call except through call()
    - Bucket state is only touched while holding the governor lock
    - A 429 parks the route (or everything, when global) for the
      server-indicated cool-down before the single failed call is retried
    - Retries are bounded by count and by total waiting time

How to change safely:
    - Keep the clock and sleep injectable; tests rely on a fake clock
    - One governor instance is shared by every component of a store;
      never make it a module-level singleton
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import GovernorConfig
from ..errors import (
    NotFoundError,
    RateLimitExceededError,
    RemoteRejectedError,
    RemoteUnavailableError,
)
from .base import (
    PlatformError,
    PlatformNotFoundError,
    PlatformUnavailableError,
    RateLimitedError,
    RateLimitInfo,
    RemoteResult,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def route_key(operation: str, major_id: str) -> str:
    """Route identifier: operation plus the major resource id (channel or guild)."""
    return f"{operation}:{major_id}"


@dataclass
class TokenBucket:
    """Fixed-window token bucket.

    Attributes:
        limit: Tokens per window
        window: Window length in seconds
        remaining: Tokens left in the current window
        reset_at: Clock time at which the window refills
        blocked_until: Clock time before which nothing may be taken (cool-down)
    """
    limit: int
    window: float
    remaining: int
    reset_at: float = 0.0
    blocked_until: float = 0.0

    def wait_time(self, now: float) -> float:
        """Seconds until a token can be taken (0 when available now)."""
        if now >= self.reset_at:
            self.remaining = self.limit
            self.reset_at = now + self.window
        blocked = self.blocked_until - now
        if self.remaining > 0:
            return max(0.0, blocked)
        return max(self.reset_at - now, blocked, 0.0)

    def take(self) -> None:
        self.remaining -= 1

    def observe(self, limits: RateLimitInfo, now: float) -> None:
        """Adopt the remote side's view of this bucket."""
        if limits.limit is not None and limits.limit > 0:
            self.limit = limits.limit
        if limits.reset_after is not None:
            self.reset_at = now + limits.reset_after
            if limits.reset_after > 0:
                self.window = max(self.window, limits.reset_after)
        if limits.remaining is not None:
            self.remaining = limits.remaining

    def park(self, until: float) -> None:
        self.blocked_until = max(self.blocked_until, until)


@dataclass(frozen=True)
class Permit:
    """Proof that a token was taken for a route."""
    route: str
    granted_at: float


class RateLimitGovernor:
    """Gates remote calls against global and per-route budgets.

    Thread safety:
        Uses an asyncio lock around all bucket state. Safe to share
        between coroutines operating on different tables.

    Example:
        >>> governor = RateLimitGovernor(GovernorConfig())
        >>> message = await governor.call(
        ...     route_key("send_message", channel_id),
        ...     platform.send_message, channel_id, "R1:1",
        ... )
    """

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the governor.

        Args:
            config: Budget and retry settings
            clock: Monotonic clock in seconds
            sleep: Coroutine used for every wait
        """
        self.config = config or GovernorConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._global = TokenBucket(
            limit=self.config.global_limit,
            window=self.config.global_window_seconds,
            remaining=self.config.global_limit,
        )
        self._routes: Dict[str, TokenBucket] = {}

    def _bucket(self, route: str) -> TokenBucket:
        bucket = self._routes.get(route)
        if bucket is None:
            bucket = TokenBucket(
                limit=self.config.route_limit,
                window=self.config.route_window_seconds,
                remaining=self.config.route_limit,
            )
            self._routes[route] = bucket
        return bucket

    async def acquire(self, route: str) -> Permit:
        """Take a token from the global and the route bucket, waiting if needed.

        Args:
            route: Route key (see route_key())

        Returns:
            Permit to hand back to release()
        """
        while True:
            async with self._lock:
                now = self._clock()
                bucket = self._bucket(route)
                delay = max(self._global.wait_time(now), bucket.wait_time(now))
                if delay <= 0:
                    self._global.take()
                    bucket.take()
                    return Permit(route=route, granted_at=now)

            logger.debug(f"Waiting {delay:.3f}s for route {route}", extra={"route": route})
            await self._sleep(delay)

    async def release(self, permit: Permit, limits: Optional[RateLimitInfo]) -> None:
        """Record the outcome of a call made under ``permit``.

        Args:
            permit: Permit returned by acquire()
            limits: Rate-limit feedback observed on the response (if any)
        """
        if limits is None:
            return
        async with self._lock:
            now = self._clock()
            if limits.is_global:
                self._global.observe(limits, now)
            else:
                self._bucket(permit.route).observe(limits, now)

    async def park(self, route: str, retry_after: float, is_global: bool = False) -> None:
        """Block a route (or every route) for a server-indicated cool-down."""
        async with self._lock:
            until = self._clock() + retry_after
            if is_global:
                self._global.park(until)
            else:
                self._bucket(route).park(until)

    async def call(
        self,
        route: str,
        func: Callable[..., Awaitable[RemoteResult[Any]]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Make one remote call through the gate.

        Rate-limit rejections and transient failures are retried within the
        configured budget; callers only see the final outcome.

        Args:
            route: Route key for bucket accounting
            func: Platform method returning a RemoteResult
            *args, **kwargs: Arguments for ``func``

        Returns:
            The RemoteResult's value

        Raises:
            RateLimitExceededError: Rejections outlasted the retry budget
            RemoteUnavailableError: Transport failures outlasted the retry budget
            NotFoundError: The remote resource does not exist
            RemoteRejectedError: Any other non-retryable remote rejection
        """
        attempts = 0
        waited = 0.0

        while True:
            permit = await self.acquire(route)
            try:
                result = await func(*args, **kwargs)
            except RateLimitedError as e:
                await self.release(permit, e.limits)
                attempts += 1
                waited += e.retry_after
                if attempts > self.config.max_retries or waited > self.config.max_total_wait_seconds:
                    raise RateLimitExceededError(
                        f"Rate limit on {route} persisted after {attempts} attempts",
                        route=route,
                        attempts=attempts,
                        waited=waited,
                    ) from e
                logger.warning(
                    f"Rate limited on {route}, retrying in {e.retry_after:.3f}s",
                    extra={"route": route, "attempt": attempts, "global": e.is_global},
                )
                await self.park(route, e.retry_after, e.is_global)
                continue
            except PlatformUnavailableError as e:
                await self.release(permit, None)
                attempts += 1
                delay = min(
                    self.config.backoff_base_seconds * (2 ** (attempts - 1)),
                    self.config.backoff_max_seconds,
                )
                if attempts > self.config.max_retries or waited + delay > self.config.max_total_wait_seconds:
                    raise RemoteUnavailableError(
                        f"Remote unavailable on {route} after {attempts} attempts: {e}",
                        route=route,
                        attempts=attempts,
                    ) from e
                logger.warning(
                    f"Transient failure on {route}, retrying in {delay:.3f}s: {e}",
                    extra={"route": route, "attempt": attempts},
                )
                waited += delay
                await self._sleep(delay)
                continue
            except PlatformNotFoundError as e:
                await self.release(permit, None)
                raise NotFoundError(
                    str(e), resource_type=e.resource_type, resource_id=e.resource_id
                ) from e
            except PlatformError as e:
                await self.release(permit, None)
                raise RemoteRejectedError(str(e), route=route, status=e.status) from e

            await self.release(permit, result.limits)
            return result.value
