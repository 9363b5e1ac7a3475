"""
Retry policy: how often and how late to retry each class of failure.

Delays grow geometrically per attempt of the same error class:
delay(n) = retry_delay * backoff_multiplier ** (n - 1), capped at
RETRY_MAX_DELAY.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from api.enums import ErrorType
from api.models import ClassifiedError
from config import RETRY_MAX_DELAY, RETRY_POLICY_OVERRIDES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryStrategy:
    max_retries: int
    retry_delay: float
    backoff_multiplier: float = 1.0
    recovery_actions: List[str] = field(default_factory=list)

    def delay_for(self, attempt: int, max_delay: float = RETRY_MAX_DELAY) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.retry_delay * (self.backoff_multiplier ** max(0, attempt - 1))
        return min(delay, max_delay)


DEFAULT_STRATEGIES: Dict[ErrorType, RecoveryStrategy] = {
    ErrorType.INPUT_FILE_ERROR: RecoveryStrategy(
        max_retries=0,
        retry_delay=0,
        recovery_actions=["Verify the input file exists and is a readable video", "Manual intervention required"],
    ),
    ErrorType.ENCODER_ERROR: RecoveryStrategy(
        max_retries=3,
        retry_delay=5,
        backoff_multiplier=2,
        recovery_actions=["Retry with different codec settings", "Check encoder logs"],
    ),
    ErrorType.STORAGE_ERROR: RecoveryStrategy(
        max_retries=2,
        retry_delay=10,
        backoff_multiplier=1.5,
        recovery_actions=["Clean up temporary files", "Check available disk space"],
    ),
    ErrorType.RESOURCE_ERROR: RecoveryStrategy(
        max_retries=5,
        retry_delay=30,
        backoff_multiplier=1.2,
        recovery_actions=["Wait for resources to become available", "Reduce worker concurrency"],
    ),
    ErrorType.TIMEOUT_ERROR: RecoveryStrategy(
        max_retries=2,
        retry_delay=30,
        backoff_multiplier=1,
        recovery_actions=["Retry with a longer timeout", "Check system load"],
    ),
    ErrorType.NETWORK_ERROR: RecoveryStrategy(
        max_retries=3,
        retry_delay=15,
        backoff_multiplier=2,
        recovery_actions=["Check network connectivity", "Retry after a delay"],
    ),
    ErrorType.VALIDATION_ERROR: RecoveryStrategy(
        max_retries=0,
        retry_delay=0,
        recovery_actions=["Inspect the generated playlists", "Manual intervention required"],
    ),
    ErrorType.UNKNOWN_ERROR: RecoveryStrategy(
        max_retries=1,
        retry_delay=5,
        backoff_multiplier=1,
        recovery_actions=["Manual intervention required"],
    ),
}


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float
    attempt: int
    max_retries: int
    reason: str


def apply_overrides(
    strategies: Mapping[ErrorType, RecoveryStrategy], overrides: Mapping[str, Any]
) -> Dict[ErrorType, RecoveryStrategy]:
    """
    Merge per-class overrides into a strategy table.

    Args:
        strategies: Base table
        overrides: {"ENCODER_ERROR": {"max_retries": 5, "retry_delay": 2}, ...};
            unknown classes and fields are logged and ignored
    """
    merged = dict(strategies)
    allowed = {"max_retries", "retry_delay", "backoff_multiplier", "recovery_actions"}
    for name, values in overrides.items():
        try:
            error_type = ErrorType(name)
        except ValueError:
            logger.warning(f"Ignoring retry override for unknown error type {name}")
            continue
        if not isinstance(values, dict):
            logger.warning(f"Ignoring retry override for {name}: expected an object")
            continue
        unknown = set(values) - allowed
        if unknown:
            logger.warning(f"Ignoring unknown retry override fields for {name}: {sorted(unknown)}")
        changes = {k: v for k, v in values.items() if k in allowed}
        merged[error_type] = replace(merged[error_type], **changes)
    return merged


class RetryPolicy:
    """Decides whether a classified failure is retried, and after how long."""

    def __init__(
        self,
        strategies: Optional[Mapping[ErrorType, RecoveryStrategy]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        max_delay: float = RETRY_MAX_DELAY,
    ) -> None:
        base = dict(strategies) if strategies is not None else dict(DEFAULT_STRATEGIES)
        self.strategies = apply_overrides(base, RETRY_POLICY_OVERRIDES if overrides is None else overrides)
        self.max_delay = max_delay

    def strategy_for(self, error_type: ErrorType) -> RecoveryStrategy:
        return self.strategies.get(error_type, self.strategies[ErrorType.UNKNOWN_ERROR])

    def decide(self, error: ClassifiedError, attempts_by_type: Mapping[ErrorType, int]) -> RetryDecision:
        """
        Decide what to do after a failure.

        Args:
            error: The classified failure
            attempts_by_type: Failures seen so far in this job per class,
                including this one

        Returns:
            RetryDecision; `attempt` is the retry number this would be
        """
        strategy = self.strategy_for(error.type)
        failures = max(1, attempts_by_type.get(error.type, 1))

        if not error.retryable or strategy.max_retries <= 0:
            return RetryDecision(
                retry=False,
                delay=0,
                attempt=failures,
                max_retries=strategy.max_retries,
                reason=f"{error.type.value} is not retryable",
            )

        if failures > strategy.max_retries:
            return RetryDecision(
                retry=False,
                delay=0,
                attempt=failures,
                max_retries=strategy.max_retries,
                reason=f"Max retries ({strategy.max_retries}) exceeded for {error.type.value}",
            )

        delay = strategy.delay_for(failures, self.max_delay)
        return RetryDecision(
            retry=True,
            delay=delay,
            attempt=failures,
            max_retries=strategy.max_retries,
            reason=f"Retry {failures}/{strategy.max_retries} for {error.type.value} in {delay:.1f}s",
        )
