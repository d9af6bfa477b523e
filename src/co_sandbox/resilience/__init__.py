"""Resilience layer: retry, circuit breaking, recovery and degradation."""

from co_sandbox.resilience.circuit import CircuitBreaker, CircuitState
from co_sandbox.resilience.recovery import (
    DegradationPlan,
    RecoveryManager,
    RecoveryResult,
    RecoveryStrategy,
)
from co_sandbox.resilience.retry import (
    RETRY_PRESETS,
    RetryOptions,
    RetryPreset,
    RetryResult,
    preset,
    with_retry,
)

__all__ = [
    "RETRY_PRESETS",
    "CircuitBreaker",
    "CircuitState",
    "DegradationPlan",
    "RecoveryManager",
    "RecoveryResult",
    "RecoveryStrategy",
    "RetryOptions",
    "RetryPreset",
    "RetryResult",
    "preset",
    "with_retry",
]
