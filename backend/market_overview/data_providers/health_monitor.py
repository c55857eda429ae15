"""
Provider Health Monitor

Tracks what the failover walk needs to know about each provider:
- credentials rejected -> provider disabled until refreshed (or cool-down ends)
- (provider, symbol) pairs known to be unsupported, for a while
- latency and error rate metrics for status reporting
"""
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Callable, Any
from loguru import logger


@dataclass
class HealthMetrics:
    """Health metrics for a provider."""
    provider: str

    # Latency tracking (last N requests)
    latencies: deque = field(default_factory=lambda: deque(maxlen=100))

    # Error tracking
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0

    # Credentials state
    disabled_until: Optional[float] = None
    disabled_reason: Optional[str] = None

    # Timestamps (epoch seconds)
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average latency."""
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0.0
        sorted_latencies = sorted(self.latencies)
        idx = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(idx, len(sorted_latencies) - 1)]

    @property
    def error_rate(self) -> float:
        """Calculate error rate."""
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


class ProviderHealthMonitor:
    """
    Monitors health status of data providers.

    Features:
    - "Disabled until refreshed" flag for rejected credentials
    - Per-symbol unsupported memory with expiry
    - Latency tracking with percentiles
    - Error rate monitoring
    """

    def __init__(
        self,
        credentials_cooldown_seconds: float = 30 * 60,
        unsupported_ttl_seconds: float = 6 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials_cooldown_seconds = credentials_cooldown_seconds
        self.unsupported_ttl_seconds = unsupported_ttl_seconds
        self._metrics: dict[str, HealthMetrics] = {}
        self._unsupported: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _get_or_create_metrics(self, provider: str) -> HealthMetrics:
        """Get or create metrics for a provider."""
        if provider not in self._metrics:
            self._metrics[provider] = HealthMetrics(provider=provider)
        return self._metrics[provider]

    def register(self, provider: str) -> None:
        with self._lock:
            self._get_or_create_metrics(provider)

    # ==================== Credentials ====================

    def mark_credentials_expired(self, provider: str, reason: str = "credentials rejected") -> None:
        """Disable a provider until its credentials are refreshed or the cool-down ends."""
        with self._lock:
            metrics = self._get_or_create_metrics(provider)
            metrics.disabled_until = self._clock() + self.credentials_cooldown_seconds
            metrics.disabled_reason = reason
        logger.error(
            f"{provider} credentials expired ({reason}); "
            f"disabled for {self.credentials_cooldown_seconds:.0f}s or until refreshed"
        )

    def clear_credentials(self, provider: str) -> None:
        """Re-enable a provider after its token was refreshed."""
        with self._lock:
            metrics = self._get_or_create_metrics(provider)
            metrics.disabled_until = None
            metrics.disabled_reason = None
            metrics.consecutive_failures = 0
        logger.info(f"{provider} credentials cleared, provider re-enabled")

    def is_disabled(self, provider: str) -> bool:
        with self._lock:
            metrics = self._metrics.get(provider)
            if metrics is None or metrics.disabled_until is None:
                return False
            if self._clock() >= metrics.disabled_until:
                metrics.disabled_until = None
                metrics.disabled_reason = None
                logger.info(f"{provider} credential cool-down elapsed, retrying provider")
                return False
            return True

    def can_request(self, provider: str) -> bool:
        """Check if a request can be made to the provider."""
        return not self.is_disabled(provider)

    # ==================== Unsupported Symbols ====================

    def mark_symbol_unsupported(self, provider: str, symbol: str) -> None:
        with self._lock:
            self._unsupported[(provider, symbol)] = self._clock() + self.unsupported_ttl_seconds
        logger.info(f"{provider} does not support {symbol}; skipping it for {self.unsupported_ttl_seconds:.0f}s")

    def is_symbol_unsupported(self, provider: str, symbol: str) -> bool:
        with self._lock:
            expires_at = self._unsupported.get((provider, symbol))
            if expires_at is None:
                return False
            if self._clock() >= expires_at:
                del self._unsupported[(provider, symbol)]
                return False
            return True

    # ==================== Metrics ====================

    def record_success(self, provider: str, latency_ms: float) -> None:
        """Record a successful request."""
        with self._lock:
            metrics = self._get_or_create_metrics(provider)
            metrics.total_requests += 1
            metrics.successful_requests += 1
            metrics.consecutive_failures = 0
            metrics.last_success = self._clock()
            metrics.latencies.append(latency_ms)

    def record_failure(self, provider: str, error: Optional[str] = None) -> None:
        """Record a failed request."""
        with self._lock:
            metrics = self._get_or_create_metrics(provider)
            metrics.total_requests += 1
            metrics.failed_requests += 1
            metrics.consecutive_failures += 1
            metrics.last_failure = self._clock()
            metrics.last_error = error

        logger.warning(f"Request failed for {provider}: {error}")

    def last_success(self, provider: str) -> Optional[float]:
        with self._lock:
            metrics = self._metrics.get(provider)
            return metrics.last_success if metrics else None

    # ==================== Maintenance ====================

    def cleanup(self) -> int:
        """Forget expired unsupported-symbol facts and elapsed cool-downs."""
        with self._lock:
            now = self._clock()
            expired = [key for key, expires_at in self._unsupported.items() if now >= expires_at]
            for key in expired:
                del self._unsupported[key]
            for metrics in self._metrics.values():
                if metrics.disabled_until is not None and now >= metrics.disabled_until:
                    metrics.disabled_until = None
                    metrics.disabled_reason = None
        return len(expired)

    # ==================== Reporting ====================

    def get_health(self, provider: str) -> dict[str, Any]:
        """Get health status for a provider."""
        disabled = self.is_disabled(provider)
        with self._lock:
            metrics = self._metrics.get(provider)
            if not metrics:
                return {
                    "provider": provider,
                    "configured": False,
                    "is_available": True,
                }

            unsupported = sorted(symbol for (name, symbol) in self._unsupported if name == provider)
            return {
                "provider": provider,
                "configured": True,
                "is_available": not disabled,
                "disabled_until": _iso(metrics.disabled_until),
                "disabled_reason": metrics.disabled_reason,
                "unsupported_symbols": unsupported,
                "metrics": {
                    "total_requests": metrics.total_requests,
                    "successful_requests": metrics.successful_requests,
                    "failed_requests": metrics.failed_requests,
                    "error_rate": round(metrics.error_rate * 100, 2),
                    "avg_latency_ms": round(metrics.avg_latency_ms, 2),
                    "p95_latency_ms": round(metrics.p95_latency_ms, 2),
                    "consecutive_failures": metrics.consecutive_failures,
                },
                "timestamps": {
                    "last_success": _iso(metrics.last_success),
                    "last_failure": _iso(metrics.last_failure),
                },
                "last_error": metrics.last_error,
            }

    def get_all_health(self) -> dict[str, dict]:
        """Get health status for all providers."""
        with self._lock:
            providers = list(self._metrics.keys())
        return {provider: self.get_health(provider) for provider in providers}
