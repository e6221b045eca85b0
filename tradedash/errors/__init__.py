"""
Error classification and recovery.

Provides:
- classify(): raw exception -> EnhancedError
- RecoveryOrchestrator: priority-ordered recovery pipeline
"""

from tradedash.errors.classifier import (
    CacheError,
    DataApiError,
    DataNetworkError,
    DataTimeoutError,
    DataValidationError,
    EnhancedError,
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    TradeDataError,
    classify,
)
from tradedash.errors.recovery import (
    RecoveryOrchestrator,
    RecoveryOutcome,
    RecoveryState,
    RetryPolicy,
    StrategyKind,
)

__all__ = [
    "CacheError",
    "DataApiError",
    "DataNetworkError",
    "DataTimeoutError",
    "DataValidationError",
    "EnhancedError",
    "ErrorContext",
    "ErrorKind",
    "ErrorSeverity",
    "TradeDataError",
    "classify",
    "RecoveryOrchestrator",
    "RecoveryOutcome",
    "RecoveryState",
    "RetryPolicy",
    "StrategyKind",
]
