from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import RateLimitExceeded
from authkernel.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    """Budget for one route class. Each class keeps its own counters."""

    name: str
    window_seconds: int
    max_requests: int
    message: str = "Too many requests, please try again later"


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    reset_seconds: int


def default_rules(settings: Settings) -> Dict[str, RateLimitRule]:
    return {
        "auth": RateLimitRule(
            "auth",
            settings.auth_rate_limit_window_seconds,
            settings.auth_rate_limit_max_requests,
            "Too many authentication attempts, please try again later",
        ),
        "api": RateLimitRule(
            "api",
            settings.api_rate_limit_window_seconds,
            settings.api_rate_limit_max_requests,
            "Too many requests from this IP, please try again later",
        ),
        "strict": RateLimitRule(
            "strict",
            settings.strict_rate_limit_window_seconds,
            settings.strict_rate_limit_max_requests,
            "Too many requests, please try again in an hour",
        ),
    }


class CounterBackend(Protocol):
    async def increment_window(
        self, scope: str, subject: str, window_seconds: int
    ) -> Tuple[int, int]: ...


class MemoryCounterBackend:
    """Process-local fixed windows for tests and single-node development."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._windows: Dict[Tuple[str, str], Tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def increment_window(
        self, scope: str, subject: str, window_seconds: int
    ) -> Tuple[int, int]:
        now = self._clock()
        key = (scope, subject)
        async with self._lock:
            count, started = self._windows.get(key, (0, now))
            elapsed = (now - started).total_seconds()
            if elapsed >= window_seconds:
                count, started, elapsed = 0, now, 0.0
            count += 1
            self._windows[key] = (count, started)
        return count, max(0, math.ceil(window_seconds - elapsed))

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()


class RateLimiter:
    """Fixed-window request limiter keyed by route class and client address.

    The counter backend is shared Redis when available so limits hold across
    processes, and the in-memory backend otherwise.
    """

    def __init__(
        self,
        backend: CounterBackend,
        rules: Dict[str, RateLimitRule],
    ) -> None:
        self.backend = backend
        self.rules = rules

    def rule(self, name: str) -> RateLimitRule:
        return self.rules[name]

    async def hit(self, rule: RateLimitRule, client_address: Optional[str]) -> RateLimitInfo:
        """Count one request and raise ``RateLimitExceeded`` once over budget."""

        if rule.max_requests <= 0:
            return RateLimitInfo(limit=rule.max_requests, remaining=0, reset_seconds=0)
        window_seconds = rule.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                rule=rule.name,
                window_seconds=window_seconds,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        subject = client_address or "unknown"
        count, reset_seconds = await self.backend.increment_window(
            rule.name, subject, window_seconds
        )
        remaining = max(0, rule.max_requests - count)
        info = RateLimitInfo(
            limit=rule.max_requests, remaining=remaining, reset_seconds=reset_seconds
        )
        if count > rule.max_requests:
            logger.warning(
                "rate_limit_exceeded",
                rule=rule.name,
                client=subject,
                window_seconds=window_seconds,
            )
            raise RateLimitExceeded(
                rule.message,
                retry_after=reset_seconds,
                detail={
                    "limit": rule.max_requests,
                    "remaining": 0,
                    "reset_seconds": reset_seconds,
                },
            )
        return info
