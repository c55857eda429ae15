"""
Rate Limiter

Sliding window log per (caller, provider) pair.
Each provider has its own ceiling and window; callers without a configured
provider fall back to the "general" limits.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Callable, Any
from loguru import logger


DEFAULT_CONFIG_KEY = "general"


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration for rate limiting."""
    max_requests: int
    window_seconds: float


DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "upstox": RateLimitConfig(max_requests=2000, window_seconds=30 * 60),
    "yahoo": RateLimitConfig(max_requests=100, window_seconds=60),
    DEFAULT_CONFIG_KEY: RateLimitConfig(max_requests=1000, window_seconds=15 * 60),
}


@dataclass
class RateWindow:
    """Sliding window log for one caller against one provider."""
    caller: str
    provider: str
    limit: int
    window_seconds: float
    timestamps: list[float] = field(default_factory=list)

    def prune(self, now: float) -> None:
        """Remove requests that fell out of the window."""
        cutoff = now - self.window_seconds
        if self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps = [t for t in self.timestamps if t > cutoff]

    def can_proceed(self, now: float) -> bool:
        self.prune(now)
        return len(self.timestamps) < self.limit

    def record(self, now: float) -> None:
        self.prune(now)
        self.timestamps.append(now)

    def remaining(self, now: float) -> int:
        self.prune(now)
        return max(0, self.limit - len(self.timestamps))

    def reset_time(self, now: float) -> float:
        """Epoch seconds at which the oldest request leaves the window."""
        self.prune(now)
        if not self.timestamps:
            return now
        return self.timestamps[0] + self.window_seconds


class RateLimiter:
    """
    Per caller, per provider request budget.

    Usage is only recorded when a call is actually attempted; acquire()
    is the atomic check-and-record the failover walk uses.
    """

    def __init__(
        self,
        configs: Optional[dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._configs: dict[str, RateLimitConfig] = dict(DEFAULT_RATE_LIMITS)
        if configs:
            self._configs.update(configs)
        self._windows: dict[tuple[str, str], RateWindow] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def configure(self, provider: str, config: RateLimitConfig) -> None:
        """Configure rate limits for a provider. Existing windows keep their log."""
        with self._lock:
            self._configs[provider] = config
            for (caller, name), window in self._windows.items():
                if name == provider:
                    window.limit = config.max_requests
                    window.window_seconds = config.window_seconds
        logger.info(
            f"Rate limiter configured for {provider}: "
            f"{config.max_requests} requests / {config.window_seconds}s"
        )

    def get_config(self, provider: str) -> RateLimitConfig:
        return self._configs.get(provider) or self._configs[DEFAULT_CONFIG_KEY]

    def _window(self, caller: str, provider: str) -> RateWindow:
        key = (caller, provider)
        window = self._windows.get(key)
        if window is None:
            config = self.get_config(provider)
            window = RateWindow(
                caller=caller,
                provider=provider,
                limit=config.max_requests,
                window_seconds=config.window_seconds,
            )
            self._windows[key] = window
        return window

    # ==================== Budget Checks ====================

    def can_proceed(self, caller: str, provider: str) -> bool:
        """Check whether the caller still has budget for this provider."""
        with self._lock:
            return self._window(caller, provider).can_proceed(self._clock())

    def record(self, caller: str, provider: str) -> None:
        """Record one request against the caller's budget."""
        with self._lock:
            self._window(caller, provider).record(self._clock())

    def acquire(self, caller: str, provider: str) -> bool:
        """
        Check and record in one step.

        Returns:
            True if the request was recorded, False if the budget is exhausted
        """
        with self._lock:
            now = self._clock()
            window = self._window(caller, provider)
            if not window.can_proceed(now):
                logger.warning(f"Rate limit exhausted for {caller} on {provider}")
                return False
            window.record(now)
            return True

    def remaining(self, caller: str, provider: str) -> int:
        with self._lock:
            return self._window(caller, provider).remaining(self._clock())

    def reset_time(self, caller: str, provider: str) -> float:
        """Epoch seconds when the next slot frees up (now if one is free)."""
        with self._lock:
            return self._window(caller, provider).reset_time(self._clock())

    def get_status(self, caller: str, provider: str) -> dict[str, Any]:
        """Budget status for one caller/provider pair."""
        with self._lock:
            now = self._clock()
            window = self._window(caller, provider)
            return {
                "can_proceed": window.can_proceed(now),
                "remaining": window.remaining(now),
                "reset_time": window.reset_time(now),
                "window_seconds": window.window_seconds,
                "limit": window.limit,
            }

    # ==================== Maintenance ====================

    def cleanup(self) -> int:
        """
        Drop windows with no requests left inside them.

        Returns:
            Number of (caller, provider) windows removed
        """
        with self._lock:
            now = self._clock()
            idle = []
            for key, window in self._windows.items():
                window.prune(now)
                if not window.timestamps:
                    idle.append(key)
            for key in idle:
                del self._windows[key]

        if idle:
            logger.debug(f"Rate limiter cleanup removed {len(idle)} idle windows")
        return len(idle)

    def reset(self, caller: Optional[str] = None) -> None:
        """Forget usage for one caller, or for everyone."""
        with self._lock:
            if caller is None:
                self._windows.clear()
            else:
                for key in [k for k in self._windows if k[0] == caller]:
                    del self._windows[key]

    def get_stats(self) -> dict[str, Any]:
        """Get rate limiter statistics."""
        with self._lock:
            return {
                "total_keys": len(self._windows),
                "active_callers": len({caller for caller, _ in self._windows}),
                "configs": {
                    name: {
                        "max_requests": config.max_requests,
                        "window_seconds": config.window_seconds,
                    }
                    for name, config in self._configs.items()
                },
            }
