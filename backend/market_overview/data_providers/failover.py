"""
Failover Manager

Walks an ordered provider list for a request, producing one tagged
attempt result per provider. No provider is tried twice per request.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, TypeVar, Generic, Callable, Awaitable, Any
from loguru import logger

from market_overview.data_providers.adapters.base import (
    BaseAdapter,
    DataType,
    FailureKind,
    ProviderError,
    TransientProviderError,
)
from market_overview.data_providers.health_monitor import ProviderHealthMonitor
from market_overview.data_providers.rate_limiter import RateLimiter


T = TypeVar('T')


class AttemptStatus(str, Enum):
    """What happened to one provider during a walk."""
    OK = "ok"
    FAILED = "failed"                        # called, raised a classified failure
    DISABLED = "disabled"                    # credentials flagged, not called
    BUDGET_EXHAUSTED = "budget_exhausted"    # caller out of budget, not called
    SYMBOL_SKIPPED = "symbol_skipped"        # symbol remembered as unsupported, not called


@dataclass
class ProviderAttempt:
    """Tagged result for one provider."""
    provider: str
    status: AttemptStatus
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    latency_ms: Optional[float] = None
    reset_time: Optional[float] = None

    @property
    def was_called(self) -> bool:
        return self.status in (AttemptStatus.OK, AttemptStatus.FAILED)


@dataclass
class FailoverOutcome(Generic[T]):
    """Result of walking the provider list."""
    value: Optional[T] = None
    provider: Optional[str] = None
    attempts: list[ProviderAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.provider is not None

    @property
    def budget_exhausted(self) -> bool:
        """
        True when the walk failed only for lack of budget: no provider was
        actually called and at least one was skipped for budget.
        """
        if self.succeeded or not self.attempts:
            return False
        if any(a.was_called for a in self.attempts):
            return False
        return any(a.status == AttemptStatus.BUDGET_EXHAUSTED for a in self.attempts)

    @property
    def soonest_reset(self) -> Optional[float]:
        resets = [a.reset_time for a in self.attempts if a.reset_time is not None]
        return min(resets) if resets else None

    def summary(self) -> str:
        return ", ".join(f"{a.provider}={a.status.value}" for a in self.attempts) or "no providers"


class FailoverManager:
    """
    Manages failover between data providers.

    For each provider, in priority order:
    1. Skip if its credentials are flagged (no budget consumed)
    2. Skip if the symbol is remembered as unsupported
    3. Skip if the caller has no budget left (remember the reset time)
    4. Record usage and call the adapter with a bounded timeout
    5. Classify a failure and move on to the next provider
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        health_monitor: ProviderHealthMonitor,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limiter = rate_limiter
        self.health_monitor = health_monitor
        self.timeout_seconds = timeout_seconds
        self._providers: dict[str, BaseAdapter] = {}
        self._clock = clock

    def register_provider(self, adapter: BaseAdapter) -> None:
        """Register a data provider adapter."""
        self._providers[adapter.name] = adapter
        self.health_monitor.register(adapter.name)

        logger.info(
            f"Registered provider: {adapter.name} "
            f"(data_types: {[d.value for d in adapter.config.supported_data_types]})"
        )

    def get_provider(self, name: str) -> Optional[BaseAdapter]:
        """Get a specific provider by name."""
        return self._providers.get(name)

    @property
    def providers(self) -> dict[str, BaseAdapter]:
        return dict(self._providers)

    def get_providers_for(
        self,
        data_type: DataType,
        order: Optional[list[str]] = None,
    ) -> list[BaseAdapter]:
        """
        Providers supporting a data type, in walk order.

        An explicit order (provider names) wins over configured priorities.
        """
        candidates = [p for p in self._providers.values() if p.supports(data_type)]
        if order is not None:
            ranked = {name: i for i, name in enumerate(order)}
            candidates = [p for p in candidates if p.name in ranked]
            return sorted(candidates, key=lambda p: ranked[p.name])
        return sorted(candidates, key=lambda p: p.config.priority_for(data_type))

    async def execute_with_failover(
        self,
        operation: Callable[[BaseAdapter], Awaitable[T]],
        data_type: DataType,
        caller_id: str,
        symbol: Optional[str] = None,
        order: Optional[list[str]] = None,
        operation_name: str = "request",
    ) -> FailoverOutcome[T]:
        """
        Execute an operation with automatic failover.

        Args:
            operation: Async function that takes a provider and returns result
            data_type: Required data type
            caller_id: Budget owner
            symbol: Symbol the request is about (for unsupported-symbol skips)
            order: Explicit provider order, by name
            operation_name: Name for logging

        Returns:
            FailoverOutcome with the value and one attempt per provider
        """
        outcome: FailoverOutcome[T] = FailoverOutcome()

        for provider in self.get_providers_for(data_type, order):
            name = provider.name

            if self.health_monitor.is_disabled(name):
                outcome.attempts.append(ProviderAttempt(name, AttemptStatus.DISABLED))
                continue

            if symbol is not None and self.health_monitor.is_symbol_unsupported(name, symbol):
                outcome.attempts.append(ProviderAttempt(name, AttemptStatus.SYMBOL_SKIPPED))
                continue

            if not self.rate_limiter.acquire(caller_id, name):
                outcome.attempts.append(
                    ProviderAttempt(
                        name,
                        AttemptStatus.BUDGET_EXHAUSTED,
                        reset_time=self.rate_limiter.reset_time(caller_id, name),
                    )
                )
                continue

            start = self._clock()
            try:
                result = await asyncio.wait_for(operation(provider), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                error = TransientProviderError(name, f"Timed out after {self.timeout_seconds}s")
                self._handle_failure(outcome, provider, error, symbol, operation_name)
                continue
            except ProviderError as e:
                self._handle_failure(outcome, provider, e, symbol, operation_name)
                continue
            except Exception as e:
                error = TransientProviderError(name, f"Unexpected error: {e}")
                logger.exception(f"Unexpected error from {name} during {operation_name}")
                self._handle_failure(outcome, provider, error, symbol, operation_name)
                continue

            latency_ms = (self._clock() - start) * 1000
            self.health_monitor.record_success(name, latency_ms)
            outcome.attempts.append(ProviderAttempt(name, AttemptStatus.OK, latency_ms=latency_ms))
            outcome.value = result
            outcome.provider = name
            return outcome

        logger.warning(f"All providers failed for {operation_name}: {outcome.summary()}")
        return outcome

    def _handle_failure(
        self,
        outcome: FailoverOutcome,
        provider: BaseAdapter,
        error: ProviderError,
        symbol: Optional[str],
        operation_name: str,
    ) -> None:
        """Classify a provider failure and record it."""
        name = provider.name
        kind = error.kind

        if kind == FailureKind.CREDENTIALS_EXPIRED:
            self.health_monitor.mark_credentials_expired(name, error.message)
            self.health_monitor.record_failure(name, str(error))
        elif kind == FailureKind.SYMBOL_UNSUPPORTED:
            unsupported = getattr(error, "symbol", None) or symbol
            if unsupported:
                self.health_monitor.mark_symbol_unsupported(name, unsupported)
        else:
            self.health_monitor.record_failure(name, str(error))

        logger.info(f"{name} failed for {operation_name} ({kind.value}), trying next provider")
        outcome.attempts.append(
            ProviderAttempt(name, AttemptStatus.FAILED, failure_kind=kind, error=str(error))
        )

    def get_status(self) -> dict[str, Any]:
        """Get status of all registered providers."""
        return {
            name: {
                "health": self.health_monitor.get_health(name),
                "config": {
                    "data_types": [d.value for d in adapter.config.supported_data_types],
                    "priorities": {d.value: p for d, p in adapter.config.priorities.items()},
                },
            }
            for name, adapter in self._providers.items()
        }
