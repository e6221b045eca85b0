"""
Recovery orchestrator for remote operations.

Runs an operation, classifies any failure, then walks a fixed, priority
ordered set of recovery strategies until one succeeds:

1. cache-fallback (100): serve the last good cached data (network only)
2. retry-with-backoff (80): re-run with per-kind exponential backoff
3. graceful-degradation (60): return a minimal placeholder (non-critical)
4. user-notification (40): record a user message, no data recovery

Per-operation state: NEW -> CLASSIFIED -> STRATEGY_ATTEMPTED* -> RESOLVED | EXHAUSTED.
An EXHAUSTED operation re-raises the classified error unchanged.
"""

import asyncio
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from tradedash.errors.classifier import (
    CacheError,
    EnhancedError,
    ErrorKind,
    ErrorSeverity,
    classify,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RecoveryState(str, Enum):
    """Lifecycle of one orchestrated operation."""

    NEW = "new"
    CLASSIFIED = "classified"
    STRATEGY_ATTEMPTED = "strategy_attempted"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class StrategyKind(str, Enum):
    """Recovery strategy variants."""

    CACHE_FALLBACK = "cache-fallback"
    RETRY_WITH_BACKOFF = "retry-with-backoff"
    GRACEFUL_DEGRADATION = "graceful-degradation"
    USER_NOTIFICATION = "user-notification"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff tuning for one error kind (delays in seconds)."""

    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: bool

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay to wait after ``attempt`` fails, before the next attempt.

        ``base_delay * factor^(attempt-1)`` capped at ``max_delay``; with
        jitter the result is scaled by a uniform factor in [0.5, 1.0].
        """
        delay = min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= 0.5 + (rng or random).random() * 0.5
        return delay


# Tuned independently per kind; do not merge into one policy.
NETWORK_RETRY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, backoff_factor=2.0, jitter=True)
API_RETRY = RetryPolicy(max_attempts=2, base_delay=0.5, max_delay=5.0, backoff_factor=1.5, jitter=True)
CACHE_RETRY = RetryPolicy(max_attempts=1, base_delay=0.1, max_delay=1.0, backoff_factor=1.0, jitter=False)

RETRY_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.NETWORK: NETWORK_RETRY,
    ErrorKind.TIMEOUT: NETWORK_RETRY,
    ErrorKind.API: API_RETRY,
    ErrorKind.CACHE: CACHE_RETRY,
}


def retry_policy_for(kind: ErrorKind, policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None) -> RetryPolicy:
    """Retry policy for a classified kind (network policy by default)."""
    return (policies or RETRY_POLICIES).get(kind, NETWORK_RETRY)


class BackoffWait:
    """tenacity wait strategy backed by a RetryPolicy."""

    def __init__(self, policy: RetryPolicy, rng: Optional[random.Random] = None):
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.delay_for(retry_state.attempt_number, self.rng)


@dataclass(frozen=True)
class RecoveryStrategy:
    """A strategy variant with its evaluation priority (higher runs first)."""

    kind: StrategyKind
    priority: int

    def applies_to(self, error: EnhancedError) -> bool:
        return STRATEGY_PREDICATES[self.kind](error)


STRATEGY_PREDICATES: dict[StrategyKind, Callable[[EnhancedError], bool]] = {
    StrategyKind.CACHE_FALLBACK: lambda e: e.fallback_available and e.kind == ErrorKind.NETWORK,
    StrategyKind.RETRY_WITH_BACKOFF: lambda e: e.retryable,
    StrategyKind.GRACEFUL_DEGRADATION: lambda e: e.severity != ErrorSeverity.CRITICAL,
    StrategyKind.USER_NOTIFICATION: lambda e: True,
}

DEFAULT_STRATEGIES: tuple[RecoveryStrategy, ...] = tuple(
    sorted(
        (
            RecoveryStrategy(StrategyKind.CACHE_FALLBACK, 100),
            RecoveryStrategy(StrategyKind.RETRY_WITH_BACKOFF, 80),
            RecoveryStrategy(StrategyKind.GRACEFUL_DEGRADATION, 60),
            RecoveryStrategy(StrategyKind.USER_NOTIFICATION, 40),
        ),
        key=lambda s: s.priority,
        reverse=True,
    )
)


@dataclass
class DegradedResult:
    """Placeholder returned by graceful degradation when the caller has none."""

    message: str = "Limited functionality available"
    fallback: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UserNotification:
    """A pre-rendered message recorded for the user."""

    message: str
    kind: ErrorKind
    operation: str
    correlation_id: str
    timestamp: datetime


@dataclass
class RecoveryOutcome(Generic[T]):
    """
    Result of an orchestrated operation.

    ``error`` is set whenever the value did not come from a clean first
    attempt; for fallback/degraded results it is the non-fatal warning.
    """

    value: T
    state: RecoveryState
    strategy: Optional[StrategyKind] = None
    error: Optional[EnhancedError] = None
    attempted: list[StrategyKind] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return self.strategy in (StrategyKind.CACHE_FALLBACK, StrategyKind.GRACEFUL_DEGRADATION)


@dataclass
class _Attempt:
    """Everything a strategy handler needs for one failed operation."""

    operation_name: str
    operation: Callable[[], Awaitable[Any]]
    error: EnhancedError
    fallback: Optional[Callable[[], Any]]
    degraded: Optional[Callable[[EnhancedError], Any]]


class RecoveryOrchestrator:
    """
    Classifies failures of remote operations and executes recovery.

    Example:
        orchestrator = RecoveryOrchestrator()
        outcome = await orchestrator.execute(
            "refresh_full", synchronizer.full_load, fallback=cached_view
        )
    """

    def __init__(
        self,
        strategies: tuple[RecoveryStrategy, ...] = DEFAULT_STRATEGIES,
        retry_policies: Optional[dict[ErrorKind, RetryPolicy]] = None,
        recent_errors_limit: int = 50,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_notify: Optional[Callable[[UserNotification], None]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            strategies: Strategy variants, evaluated in descending priority
            retry_policies: Per-kind retry policy overrides
            recent_errors_limit: Size of the rolling recent-error buffer
            sleep: Coroutine used for backoff waits
            rng: Random source for jitter
            on_notify: Callback for user notifications
        """
        self.strategies = tuple(sorted(strategies, key=lambda s: s.priority, reverse=True))
        self.retry_policies = {**RETRY_POLICIES, **(retry_policies or {})}
        self._sleep = sleep
        self._rng = rng
        self._on_notify = on_notify
        self._recent_errors_limit = recent_errors_limit

        self._handlers: dict[StrategyKind, Callable[[_Attempt], Awaitable[Any]]] = {
            StrategyKind.CACHE_FALLBACK: self._cache_fallback,
            StrategyKind.RETRY_WITH_BACKOFF: self._retry_with_backoff,
            StrategyKind.GRACEFUL_DEGRADATION: self._graceful_degradation,
            StrategyKind.USER_NOTIFICATION: self._notify_user,
        }

        self.notifications: deque[UserNotification] = deque(maxlen=recent_errors_limit)
        self.clear_analytics()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation_name: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], T]] = None,
        degraded: Optional[Callable[[EnhancedError], T]] = None,
    ) -> RecoveryOutcome[T]:
        """
        Run an operation under the recovery pipeline.

        Args:
            operation_name: Name recorded in error context and logs
            operation: Zero-argument coroutine factory (re-invoked on retry)
            fallback: Returns the last good cached value; raise to decline
            degraded: Builds the placeholder for graceful degradation

        Returns:
            RecoveryOutcome with the operation's (or a recovered) value

        Raises:
            EnhancedError: When every applicable strategy failed
        """
        try:
            value = await operation()
            return RecoveryOutcome(value=value, state=RecoveryState.RESOLVED)
        except Exception as e:
            error = classify(e, operation=operation_name)

        self._record_error(error)
        state = RecoveryState.CLASSIFIED
        logger.warning(
            "operation_failed",
            operation=operation_name,
            kind=error.kind.value,
            severity=error.severity.value,
            retryable=error.retryable,
            correlation_id=error.context.correlation_id,
            error=error.message,
        )

        attempt = _Attempt(operation_name, operation, error, fallback, degraded)
        attempted: list[StrategyKind] = []

        for strategy in self.strategies:
            if not strategy.applies_to(error):
                continue

            state = RecoveryState.STRATEGY_ATTEMPTED
            attempted.append(strategy.kind)
            logger.info(
                "recovery_strategy_attempt",
                operation=operation_name,
                strategy=strategy.kind.value,
                priority=strategy.priority,
            )

            try:
                value = await self._handlers[strategy.kind](attempt)
            except Exception as recovery_error:
                self._record_recovery(strategy.kind, success=False)
                logger.warning(
                    "recovery_strategy_failed",
                    operation=operation_name,
                    strategy=strategy.kind.value,
                    error=str(recovery_error),
                )
                continue

            self._record_recovery(strategy.kind, success=True)

            if strategy.kind == StrategyKind.USER_NOTIFICATION:
                # Notification carries no data; nothing left to try.
                continue

            logger.info(
                "recovery_strategy_succeeded",
                operation=operation_name,
                strategy=strategy.kind.value,
            )
            return RecoveryOutcome(
                value=value,
                state=RecoveryState.RESOLVED,
                strategy=strategy.kind,
                error=error,
                attempted=attempted,
            )

        logger.error(
            "recovery_exhausted",
            operation=operation_name,
            kind=error.kind.value,
            attempted=[k.value for k in attempted],
            correlation_id=error.context.correlation_id,
            state=RecoveryState.EXHAUSTED.value,
            reached=state.value,
        )
        raise error

    # ------------------------------------------------------------------
    # Strategy handlers
    # ------------------------------------------------------------------

    async def _cache_fallback(self, attempt: _Attempt) -> Any:
        if attempt.fallback is None:
            raise CacheError("No cached data available for fallback")
        return attempt.fallback()

    async def _retry_with_backoff(self, attempt: _Attempt) -> Any:
        policy = retry_policy_for(attempt.error.kind, self.retry_policies)

        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            logger.info(
                "retry_scheduled",
                operation=attempt.operation_name,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                error=str(outcome.exception()) if outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=BackoffWait(policy, self._rng),
            retry=retry_if_exception(lambda e: classify(e, attempt.operation_name).retryable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        async for retry_attempt in retrying:
            with retry_attempt:
                result = await attempt.operation()
        if retrying.statistics.get("attempt_number", 1) > 1:
            logger.info(
                "retry_succeeded",
                operation=attempt.operation_name,
                attempts=retrying.statistics["attempt_number"],
            )
        return result

    async def _graceful_degradation(self, attempt: _Attempt) -> Any:
        if attempt.degraded is not None:
            return attempt.degraded(attempt.error)
        return DegradedResult()

    async def _notify_user(self, attempt: _Attempt) -> None:
        error = attempt.error
        notification = UserNotification(
            message=error.user_message,
            kind=error.kind,
            operation=attempt.operation_name,
            correlation_id=error.context.correlation_id,
            timestamp=datetime.now(timezone.utc),
        )
        self.notifications.appendleft(notification)
        logger.warning("user_notified", operation=attempt.operation_name, message=error.user_message)

        if self._on_notify:
            try:
                self._on_notify(notification)
            except Exception as e:
                logger.error("notification_callback_failed", error=str(e))

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def _record_error(self, error: EnhancedError) -> None:
        self._error_counts[error.kind] = self._error_counts.get(error.kind, 0) + 1
        self._recent_errors.appendleft(error)
        self._last_error_time = error.context.timestamp

    def _record_recovery(self, kind: StrategyKind, success: bool) -> None:
        counters = self._recovery_success if success else self._recovery_failures
        counters[kind] = counters.get(kind, 0) + 1

    def analytics(self) -> dict[str, Any]:
        """Copy of error and recovery counters."""
        return {
            "error_counts": {k.value: v for k, v in self._error_counts.items()},
            "recent_errors": list(self._recent_errors),
            "recovery_success": {k.value: v for k, v in self._recovery_success.items()},
            "recovery_failures": {k.value: v for k, v in self._recovery_failures.items()},
            "last_error_time": self._last_error_time,
        }

    def clear_analytics(self) -> None:
        """Reset all counters and the recent-error buffer."""
        self._error_counts: dict[ErrorKind, int] = {}
        self._recent_errors: deque[EnhancedError] = deque(maxlen=self._recent_errors_limit)
        self._recovery_success: dict[StrategyKind, int] = {}
        self._recovery_failures: dict[StrategyKind, int] = {}
        self._last_error_time: Optional[datetime] = None
