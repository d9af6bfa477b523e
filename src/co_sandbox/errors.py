"""
Error taxonomy for sandbox assessments.

Every failure that crosses a component boundary is a
``SecurityAssessmentError`` carrying a machine code, a severity,
a recoverability flag, a timestamp and free-form diagnostic context.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(str, Enum):
    """Severity attached to every assessment error."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


class SecurityAssessmentError(Exception):
    """Base class for all sandbox assessment errors."""

    def __init__(
        self,
        message: str,
        code: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.recoverable = recoverable
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)
        self._log()

    def _log(self) -> None:
        """Emit a log record at the level matching this error's severity."""
        logger.log(
            _LOG_LEVELS[self.severity],
            "%s [%s]: %s",
            type(self).__name__,
            self.code,
            self.message,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error into a plain, JSON-safe dictionary."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "context": {key: _json_safe(value) for key, value in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


class ContainerCreationError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, "CONTAINER_CREATION_FAILED", ErrorSeverity.HIGH, True, context
        )


class ContainerStartError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CONTAINER_START_FAILED", ErrorSeverity.HIGH, True, context)


class ContainerStopError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CONTAINER_STOP_FAILED", ErrorSeverity.MEDIUM, True, context)


class ContainerDestroyError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, "CONTAINER_DESTROY_FAILED", ErrorSeverity.MEDIUM, True, context
        )


class ResourceAllocationError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, "RESOURCE_ALLOCATION_FAILED", ErrorSeverity.MEDIUM, True, context
        )


class ResourceLimitExceededError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "RESOURCE_LIMIT_EXCEEDED", ErrorSeverity.HIGH, False, context)


class InsufficientResourcesError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, "INSUFFICIENT_RESOURCES", ErrorSeverity.MEDIUM, True, context
        )


class SecurityViolationError(SecurityAssessmentError):
    """
    Breach of isolation.

    Always critical and never recoverable: violations are not retried
    or degraded, they terminate the sandbox and propagate to the caller.
    """

    def __init__(
        self,
        message: str,
        violation_type: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.violation_type = violation_type.upper()
        super().__init__(
            message,
            f"SECURITY_VIOLATION_{self.violation_type}",
            ErrorSeverity.CRITICAL,
            False,
            {**(context or {}), "violation_type": self.violation_type},
        )


class NetworkSecurityViolationError(SecurityViolationError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "NETWORK", context)


class FilesystemSecurityViolationError(SecurityViolationError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "FILESYSTEM", context)


class PrivilegeEscalationError(SecurityViolationError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "PRIVILEGE_ESCALATION", context)


class MaliciousCodeError(SecurityViolationError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "MALICIOUS_CODE", context)


class AnalysisError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "ANALYSIS_FAILED", ErrorSeverity.MEDIUM, True, context)


class WorkflowExecutionError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, "WORKFLOW_EXECUTION_FAILED", ErrorSeverity.MEDIUM, True, context
        )


class PartialAnalysisError(SecurityAssessmentError):
    """Analysis stopped early; completed work is preserved in ``context``."""

    def __init__(
        self,
        message: str,
        completed_steps: list[str],
        failed_steps: list[str],
        context: dict[str, Any] | None = None,
    ) -> None:
        self.completed_steps = list(completed_steps)
        self.failed_steps = list(failed_steps)
        super().__init__(
            message,
            "PARTIAL_ANALYSIS_FAILURE",
            ErrorSeverity.MEDIUM,
            True,
            {
                **(context or {}),
                "completed_steps": self.completed_steps,
                "failed_steps": self.failed_steps,
            },
        )


class ConfigurationError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CONFIGURATION_ERROR", ErrorSeverity.HIGH, False, context)


class ValidationError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", ErrorSeverity.MEDIUM, False, context)


class NetworkError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "NETWORK_ERROR", ErrorSeverity.MEDIUM, True, context)


class ExternalResourceError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "EXTERNAL_RESOURCE_ERROR", ErrorSeverity.MEDIUM, True, context)


class OperationTimeoutError(SecurityAssessmentError):
    def __init__(
        self,
        message: str,
        timeout_seconds: float,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            message,
            "TIMEOUT_ERROR",
            ErrorSeverity.MEDIUM,
            True,
            {**(context or {}), "timeout_seconds": timeout_seconds},
        )


class CircuitOpenError(SecurityAssessmentError):
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CIRCUIT_OPEN", ErrorSeverity.HIGH, True, context)


_CRITICAL_SYSTEM_MARKERS = ("ENOSPC", "ENOMEM", "EMFILE", "ENOTFOUND", "ECONNREFUSED")


class ErrorHandler:
    """Static helpers for classifying and formatting arbitrary exceptions."""

    @staticmethod
    def is_recoverable(error: BaseException) -> bool:
        if isinstance(error, SecurityAssessmentError):
            return error.recoverable
        return not ErrorHandler.is_critical_system_error(error)

    @staticmethod
    def is_critical_system_error(error: BaseException) -> bool:
        message = str(error)
        return any(marker in message for marker in _CRITICAL_SYSTEM_MARKERS)

    @staticmethod
    def is_security_violation(error: BaseException) -> bool:
        return isinstance(error, SecurityViolationError)

    @staticmethod
    def get_severity(error: BaseException) -> ErrorSeverity:
        if isinstance(error, SecurityAssessmentError):
            return error.severity
        if ErrorHandler.is_critical_system_error(error):
            return ErrorSeverity.HIGH
        return ErrorSeverity.MEDIUM

    @staticmethod
    def from_exception(
        error: BaseException,
        context: dict[str, Any] | None = None,
    ) -> SecurityAssessmentError:
        """
        Wrap an arbitrary exception into the assessment taxonomy.

        Assessment errors are returned unchanged. Anything else is
        classified by keywords in its message.

        Args:
            error: The exception to classify.
            context: Extra diagnostic context to attach.

        Returns:
            A ``SecurityAssessmentError`` subclass instance.
        """
        if isinstance(error, SecurityAssessmentError):
            return error

        message = str(error) or type(error).__name__
        lowered = message.lower()
        full_context = {
            **(context or {}),
            "original_error": {"name": type(error).__name__, "message": message},
        }

        if "container" in lowered and "create" in lowered:
            return ContainerCreationError(message, full_context)
        if re.search(r"resource|memory|cpu", lowered):
            return ResourceAllocationError(message, full_context)
        if re.search(r"network|connection", lowered):
            return NetworkError(message, full_context)
        if "timeout" in lowered or isinstance(error, TimeoutError):
            return OperationTimeoutError(message, 30.0, full_context)
        return AnalysisError(message, full_context)

    @staticmethod
    def format_for_user(error: BaseException) -> str:
        if isinstance(error, SecurityAssessmentError):
            return (
                f"[{error.timestamp.isoformat()}] {error.severity.value.upper()}: "
                f"{error.message} (Code: {error.code})"
            )
        return f"ERROR: {error}"

    @staticmethod
    def format_for_logging(error: BaseException) -> dict[str, Any]:
        if isinstance(error, SecurityAssessmentError):
            return error.to_dict()
        return {
            "name": type(error).__name__,
            "message": str(error),
            "recoverable": ErrorHandler.is_recoverable(error),
            "severity": ErrorHandler.get_severity(error).value,
        }
