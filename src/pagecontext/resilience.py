# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Fault classification, retry with backoff, per-component circuit breakers.

ErrorHandler is the shared sink for monitoring faults: it records each
error, picks a recovery strategy from (category, severity), notifies
subscribers and counts errors per component so owners can ask whether a
component should be disabled.  CRITICAL errors trigger the owning
component's registered ``recover`` hook immediately.

CircuitBreaker state machine (per component):
  CLOSED --N consecutive failures--> OPEN --cooldown--> HALF_OPEN
  HALF_OPEN --trial succeeds--> CLOSED
  HALF_OPEN --trial fails--> OPEN
Exactly one trial call is admitted while HALF_OPEN.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from .errors import CircuitOpenError
from .events import EventBus, EventType

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(StrEnum):
    NETWORK = "network"
    DOM = "dom"
    STORAGE = "storage"
    CONTEXT = "context"
    PRIVACY = "privacy"
    PERFORMANCE = "performance"
    PLUGIN = "plugin"
    UNKNOWN = "unknown"


class RecoveryStrategy(StrEnum):
    RETRY = "retry"
    FALLBACK = "fallback"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    RESTART_COMPONENT = "restart_component"
    DISABLE_FEATURE = "disable_feature"
    NO_ACTION = "no_action"


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_CATEGORY_STRATEGY: dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.NETWORK: RecoveryStrategy.RETRY,
    ErrorCategory.DOM: RecoveryStrategy.GRACEFUL_DEGRADATION,
    ErrorCategory.STORAGE: RecoveryStrategy.FALLBACK,
    ErrorCategory.CONTEXT: RecoveryStrategy.GRACEFUL_DEGRADATION,
    ErrorCategory.PRIVACY: RecoveryStrategy.DISABLE_FEATURE,
    ErrorCategory.PERFORMANCE: RecoveryStrategy.GRACEFUL_DEGRADATION,
    ErrorCategory.PLUGIN: RecoveryStrategy.FALLBACK,
}

_SEVERITY_LOG_LEVEL: dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


def determine_recovery_strategy(category: ErrorCategory, severity: ErrorSeverity) -> RecoveryStrategy:
    if severity is ErrorSeverity.CRITICAL:
        return RecoveryStrategy.RESTART_COMPONENT
    return _CATEGORY_STRATEGY.get(category, RecoveryStrategy.RETRY)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorRecoveryConfig:
    """Error handling knobs.  Times are in seconds."""

    max_retries: int = 3
    retry_delay: float = 1.0
    exponential_backoff: bool = True
    error_threshold: int = 5  # errors within time_window before disabling
    time_window: float = 300.0
    breaker_threshold: int = 3  # consecutive failures before a breaker opens
    breaker_cooldown: float = 30.0
    max_tracked_errors: int = 500

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.error_threshold < 1:
            raise ValueError(f"error_threshold must be >= 1, got {self.error_threshold}")
        if self.time_window <= 0:
            raise ValueError(f"time_window must be > 0, got {self.time_window}")
        if self.breaker_threshold < 1:
            raise ValueError(f"breaker_threshold must be >= 1, got {self.breaker_threshold}")
        if self.breaker_cooldown < 0:
            raise ValueError(f"breaker_cooldown must be >= 0, got {self.breaker_cooldown}")
        if self.max_tracked_errors < 1:
            raise ValueError(f"max_tracked_errors must be >= 1, got {self.max_tracked_errors}")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How ``retry_operation`` retries.  ``max_retries`` excludes the first attempt."""

    max_retries: int = 3
    base_delay: float = 1.0
    exponential: bool = True
    max_delay: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, retry: int) -> float:
        """Delay before retry number *retry* (1-based)."""
        delay = self.base_delay * (2 ** (retry - 1)) if self.exponential else self.base_delay
        return min(delay, self.max_delay)


@dataclass
class MonitoringError:
    """A recorded monitoring fault."""

    id: str
    timestamp: float
    category: ErrorCategory
    severity: ErrorSeverity
    component: str
    message: str
    error_type: str
    recovery_strategy: RecoveryStrategy
    context: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    resolved: bool = False


@dataclass(frozen=True, slots=True)
class ErrorStatistics:
    total_errors: int
    errors_by_category: dict[str, int]
    errors_by_severity: dict[str, int]
    errors_by_component: dict[str, int]
    resolved_errors: int
    active_errors: int


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    name: str
    state: CircuitState
    consecutive_failures: int
    short_circuits: int
    opened_at: float | None


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open trial."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 3,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._threshold = failure_threshold
        self._cooldown = cooldown
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._short_circuits = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._cooldown
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit %s half-open after %.1fs cooldown", self.name, self._cooldown)
        return self._state

    @property
    def short_circuits(self) -> int:
        return self._short_circuits

    def retry_after(self) -> float:
        if self._opened_at is None or self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self._cooldown - (self._clock() - self._opened_at))

    def allow(self) -> bool:
        """Whether a call may proceed now.  Counts rejected calls."""
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        self._short_circuits += 1
        return False

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit %s closed", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self._threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning("Circuit %s opened after %d consecutive failures", self.name, self._failures)
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the breaker; raises CircuitOpenError when short-circuited."""
        if not self.allow():
            raise CircuitOpenError(self.name, retry_after=self.retry_after())
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reconfigure(self, *, failure_threshold: int, cooldown: float) -> None:
        """Apply new limits; an open breaker re-evaluates on the next state check."""
        self._threshold = failure_threshold
        self._cooldown = cooldown
        if self._state is CircuitState.CLOSED and self._failures >= failure_threshold:
            logger.warning("Circuit %s opened after %d consecutive failures", self.name, self._failures)
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=self.name,
            state=self.state,
            consecutive_failures=self._failures,
            short_circuits=self._short_circuits,
            opened_at=self._opened_at,
        )


# ---------------------------------------------------------------------------
# ErrorHandler
# ---------------------------------------------------------------------------

ErrorCallback = Callable[[MonitoringError], Any]
RecoverHook = Callable[[], Any]


class ErrorHandler:
    """Central error sink shared by all monitoring components."""

    def __init__(
        self,
        config: ErrorRecoveryConfig | None = None,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or ErrorRecoveryConfig()
        self._bus = bus
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._errors: deque[MonitoringError] = deque(maxlen=self._config.max_tracked_errors)
        self._callbacks: dict[ErrorCategory | None, list[ErrorCallback]] = {}
        self._recover_hooks: dict[str, RecoverHook] = {}
        self._component_errors: dict[str, deque[float]] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def config(self) -> ErrorRecoveryConfig:
        return self._config

    def update_config(self, config: ErrorRecoveryConfig) -> None:
        self._config = config
        self._errors = deque(self._errors, maxlen=config.max_tracked_errors)
        self._component_errors = {
            name: deque(stamps, maxlen=config.max_tracked_errors) for name, stamps in self._component_errors.items()
        }
        for breaker in self._breakers.values():
            breaker.reconfigure(failure_threshold=config.breaker_threshold, cooldown=config.breaker_cooldown)

    # -- Registration --

    def on_error(self, category: ErrorCategory | None, callback: ErrorCallback) -> Callable[[], None]:
        """Subscribe to errors of *category* (None = every category).  Returns unsubscribe."""
        callbacks = self._callbacks.setdefault(category, [])
        callbacks.append(callback)

        def _unsubscribe() -> None:
            try:
                callbacks.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def register_component(self, component: str, recover: RecoverHook) -> None:
        """Register the hook invoked when *component* reports a CRITICAL error."""
        self._recover_hooks[component] = recover

    def breaker(self, component: str) -> CircuitBreaker:
        breaker = self._breakers.get(component)
        if breaker is None:
            breaker = CircuitBreaker(
                component,
                failure_threshold=self._config.breaker_threshold,
                cooldown=self._config.breaker_cooldown,
                clock=self._monotonic,
            )
            self._breakers[component] = breaker
        return breaker

    # -- Handling --

    def handle_error(
        self,
        error: BaseException | str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        component: str = "unknown",
        context: dict[str, Any] | None = None,
    ) -> MonitoringError:
        """Record *error*, notify subscribers and trigger recovery for CRITICAL errors.

        Never raises; subscriber and hook failures are logged.
        """
        message = str(error) if not isinstance(error, str) else error
        record = MonitoringError(
            id=f"err_{uuid.uuid4().hex[:12]}",
            timestamp=self._clock(),
            category=category,
            severity=severity,
            component=component,
            message=message,
            error_type=type(error).__name__ if not isinstance(error, str) else "str",
            recovery_strategy=determine_recovery_strategy(category, severity),
            context=dict(context or {}),
        )
        self._errors.append(record)
        stamps = self._component_errors.setdefault(component, deque(maxlen=self._config.max_tracked_errors))
        stamps.append(self._clock())
        self._prune(stamps)

        logger.log(
            _SEVERITY_LOG_LEVEL[severity],
            "[%s] %s: %s (strategy=%s)",
            category.value.upper(),
            component,
            message,
            record.recovery_strategy.value,
            exc_info=error if isinstance(error, BaseException) and severity is not ErrorSeverity.LOW else None,
        )

        for callback in [*self._callbacks.get(category, ()), *self._callbacks.get(None, ())]:
            self._invoke(callback, record)

        if self._bus is not None:
            self._bus.publish(EventType.COMPONENT_ERROR, record)

        if severity is ErrorSeverity.CRITICAL:
            hook = self._recover_hooks.get(component)
            if hook is not None:
                logger.warning("Critical error in %s; triggering recovery", component)
                self._invoke(hook)
        return record

    def _invoke(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            result = fn(*args)
        except Exception:
            logger.error("Error callback %r failed", fn, exc_info=True)
            return
        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running loop; dropping async callback %r", fn)
                if inspect.iscoroutine(result):
                    result.close()
                return
            task = loop.create_task(self._guard(result, fn))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _guard(awaitable: Awaitable[Any], fn: Callable[..., Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.error("Async error callback %r failed", fn, exc_info=True)

    async def drain(self) -> None:
        """Wait for scheduled async callbacks and recovery hooks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # -- Queries --

    def should_disable_component(self, component: str) -> bool:
        """True when *component* reported >= error_threshold errors inside time_window."""
        stamps = self._component_errors.get(component)
        if not stamps:
            return False
        self._prune(stamps)
        return len(stamps) >= self._config.error_threshold

    def _prune(self, stamps: deque[float]) -> None:
        cutoff = self._clock() - self._config.time_window
        while stamps and stamps[0] < cutoff:
            stamps.popleft()

    def component_error_count(self, component: str) -> int:
        """Errors *component* reported inside the current time_window."""
        stamps = self._component_errors.get(component)
        if not stamps:
            return 0
        self._prune(stamps)
        return len(stamps)

    def reset_error_count(self, component: str) -> None:
        self._component_errors.pop(component, None)

    def get_error_statistics(self) -> ErrorStatistics:
        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        by_component: dict[str, int] = {}
        resolved = 0
        for err in self._errors:
            by_category[err.category.value] = by_category.get(err.category.value, 0) + 1
            by_severity[err.severity.value] = by_severity.get(err.severity.value, 0) + 1
            by_component[err.component] = by_component.get(err.component, 0) + 1
            resolved += err.resolved
        return ErrorStatistics(
            total_errors=len(self._errors),
            errors_by_category=by_category,
            errors_by_severity=by_severity,
            errors_by_component=by_component,
            resolved_errors=resolved,
            active_errors=len(self._errors) - resolved,
        )

    def get_recent_errors(self, component: str | None = None, window: float = 300.0) -> list[MonitoringError]:
        """Errors newer than *window* seconds, newest first."""
        cutoff = self._clock() - window
        errors = [e for e in self._errors if e.timestamp >= cutoff and (component is None or e.component == component)]
        errors.sort(key=lambda e: e.timestamp, reverse=True)
        return errors

    def resolve(self, component: str) -> int:
        """Mark every active error of *component* resolved."""
        count = 0
        for err in self._errors:
            if err.component == component and not err.resolved:
                err.resolved = True
                count += 1
        return count

    def cleanup_resolved_errors(self, max_age: float = 3600.0) -> int:
        """Drop resolved errors older than *max_age* seconds.  Returns how many."""
        cutoff = self._clock() - max_age
        kept = [e for e in self._errors if not (e.resolved and e.timestamp < cutoff)]
        removed = len(self._errors) - len(kept)
        if removed:
            self._errors = deque(kept, maxlen=self._config.max_tracked_errors)
            logger.debug("Cleaned up %d resolved errors", removed)
        return removed

    # -- Retry --

    async def retry_operation(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        *,
        component: str = "unknown",
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ) -> T:
        """Run *operation*, retrying with backoff.  Re-raises the last error.

        Every failed attempt is recorded; the final failure is recorded at
        HIGH severity.
        """
        if policy is None:
            policy = RetryPolicy(
                max_retries=self._config.max_retries,
                base_delay=self._config.retry_delay,
                exponential=self._config.exponential_backoff,
            )
        attempt = 0
        while True:
            try:
                result = await operation()
            except policy.retry_on as exc:
                if attempt >= policy.max_retries:
                    record = self.handle_error(
                        exc, category, ErrorSeverity.HIGH, component, {"retries": attempt, "exhausted": True}
                    )
                    record.retry_count = attempt
                    raise
                attempt += 1
                self.handle_error(exc, category, ErrorSeverity.LOW, component, {"retry": attempt})
                await self._sleep(policy.delay_for(attempt))
                continue
            if attempt:
                logger.info("Recovered %s after %d retries", component, attempt)
                self.resolve(component)
            return result
