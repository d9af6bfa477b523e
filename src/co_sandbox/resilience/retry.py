"""
Retry executor — Bounded retries with exponential backoff and jitter.

``with_retry`` never raises for operation failures; it returns a
``RetryResult`` and lets the caller decide how to react.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from co_sandbox.errors import ErrorHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryOptions(BaseModel):
    """Retry policy. Delays are in seconds."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.0, ge=0)
    retry_condition: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[BaseException, int], Any] | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        exponential = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        return min(exponential, self.max_delay) + random.uniform(0, self.jitter)


class RetryResult(BaseModel, Generic[T]):
    """Outcome of a retried operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    result: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_duration_ms: float = 0.0


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions,
    name: str = "operation",
) -> RetryResult[T]:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        options: Retry policy.
        name: Label used in log messages.

    Returns:
        RetryResult describing the final outcome.
    """
    start = time.monotonic()
    last_error: BaseException | None = None
    attempts = 0

    for attempt in range(1, options.max_attempts + 1):
        attempts = attempt
        try:
            value = await operation()
            if attempt > 1:
                logger.info("%s succeeded on attempt %d", name, attempt)
            return RetryResult(
                success=True,
                result=value,
                attempts=attempt,
                total_duration_ms=(time.monotonic() - start) * 1000,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            logger.debug("%s failed on attempt %d: %s", name, attempt, exc)

            if options.retry_condition is not None and not options.retry_condition(exc):
                logger.info("%s not retried: %s", name, exc)
                break
            if attempt == options.max_attempts:
                break

            if options.on_retry is not None:
                try:
                    options.on_retry(exc, attempt)
                except Exception as hook_exc:
                    logger.warning("on_retry hook for %s raised: %s", name, hook_exc)

            delay = options.delay_for(attempt)
            logger.info(
                "Retrying %s in %.2fs (attempt %d/%d)",
                name,
                delay,
                attempt + 1,
                options.max_attempts,
            )
            await asyncio.sleep(delay)

    logger.warning("%s failed after %d attempt(s): %s", name, attempts, last_error)
    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempts,
        total_duration_ms=(time.monotonic() - start) * 1000,
    )


def _matches(error: BaseException, *patterns: str) -> bool:
    message = str(error)
    return any(re.search(p, message, re.IGNORECASE) for p in patterns)


def _container_creation_retryable(error: BaseException) -> bool:
    return _matches(
        error,
        r"network.*not.*found",
        r"image.*not.*found",
        r"temporary.*failure",
        r"connection.*refused",
        r"timeout",
    ) and ErrorHandler.is_recoverable(error)


def _resource_allocation_retryable(error: BaseException) -> bool:
    return (
        _matches(error, r"resource.*temporarily.*unavailable", r"device.*busy", r"try.*again")
        and "exceeded" not in str(error).lower()
        and ErrorHandler.is_recoverable(error)
    )


def _network_operation_retryable(error: BaseException) -> bool:
    return not ErrorHandler.is_security_violation(error) and ErrorHandler.is_recoverable(error)


def _analysis_execution_retryable(error: BaseException) -> bool:
    return _matches(error, r"tool.*not.*ready", r"temporary.*lock", r"resource.*busy")


class RetryPreset(str, Enum):
    """Operation classes with their own retry policy."""

    CONTAINER_CREATION = "container_creation"
    RESOURCE_ALLOCATION = "resource_allocation"
    NETWORK_OPERATION = "network_operation"
    ANALYSIS_EXECUTION = "analysis_execution"


RETRY_PRESETS: dict[RetryPreset, RetryOptions] = {
    RetryPreset.CONTAINER_CREATION: RetryOptions(
        max_attempts=3,
        base_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        jitter=0.5,
        retry_condition=_container_creation_retryable,
    ),
    RetryPreset.RESOURCE_ALLOCATION: RetryOptions(
        max_attempts=5,
        base_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=1.5,
        jitter=0.2,
        retry_condition=_resource_allocation_retryable,
    ),
    RetryPreset.NETWORK_OPERATION: RetryOptions(
        max_attempts=4,
        base_delay=2.0,
        max_delay=15.0,
        backoff_multiplier=2.0,
        jitter=1.0,
        retry_condition=_network_operation_retryable,
    ),
    RetryPreset.ANALYSIS_EXECUTION: RetryOptions(
        max_attempts=2,
        base_delay=3.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        jitter=0.5,
        retry_condition=_analysis_execution_retryable,
    ),
}


def preset(name: RetryPreset, **overrides: Any) -> RetryOptions:
    """Return a copy of a preset policy with ``overrides`` applied."""
    return RETRY_PRESETS[name].model_copy(update=overrides)
