"""
Recovery manager — Checkpoints, recovery strategies and graceful degradation.

Owns the per-container ``ErrorRecoveryState`` map and the checkpoint ring
buffers. Each container id is owned by exactly one environment, so no
cross-key locking is needed.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

from co_sandbox.errors import PartialAnalysisError, SecurityAssessmentError
from co_sandbox.models import (
    ErrorRecoveryState,
    RecoveryCheckpoint,
    StepKind,
    WorkflowStep,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_CHECKPOINTS = 10
SKIPPABLE_KINDS = {StepKind.TEST, StepKind.CUSTOM}
SKIPPABLE_NAME = re.compile(r"optional|enhancement|optimization", re.IGNORECASE)
MODIFIABLE_TIMEOUT_SECONDS = 10.0
MIN_DEGRADED_TIMEOUT_SECONDS = 5.0


class RecoveryResult(BaseModel):
    success: bool
    message: str
    should_continue: bool = False
    new_state: ErrorRecoveryState | None = None
    partial_results: Any = None


class RecoveryStrategy(BaseModel):
    """Named recovery action with its applicability predicate."""

    name: str
    can_recover: Callable[[SecurityAssessmentError, ErrorRecoveryState], bool]
    recover: Callable[[SecurityAssessmentError, ErrorRecoveryState], Awaitable[RecoveryResult]]


class DegradationPlan(BaseModel):
    can_continue: bool
    steps: list[WorkflowStep] = Field(default_factory=list)
    modified_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    reason: str = ""


def snapshot(value: Any) -> Any:
    """Structural, reference-free copy of ``value`` via a JSON round trip."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return type(value).model_validate_json(value.model_dump_json())
    return json.loads(json.dumps(value, default=_encode))


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _bumped(state: ErrorRecoveryState) -> ErrorRecoveryState:
    return state.model_copy(update={"recovery_attempts": state.recovery_attempts + 1}, deep=True)


async def _recreate_container(
    error: SecurityAssessmentError, state: ErrorRecoveryState
) -> RecoveryResult:
    return RecoveryResult(
        success=True,
        message="Container recreated successfully",
        should_continue=True,
        new_state=_bumped(state),
    )


async def _reduce_resources(
    error: SecurityAssessmentError, state: ErrorRecoveryState
) -> RecoveryResult:
    return RecoveryResult(
        success=True,
        message="Reduced resource requirements",
        should_continue=True,
        new_state=_bumped(state),
    )


async def _continue_partially(
    error: SecurityAssessmentError, state: ErrorRecoveryState
) -> RecoveryResult:
    return RecoveryResult(
        success=True,
        message="Continuing with partial results",
        should_continue=True,
        partial_results=state.partial_results,
        new_state=_bumped(state),
    )


def default_strategies() -> list[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            name="container-recreation",
            can_recover=lambda error, state: (
                "CONTAINER" in error.code and state.recovery_attempts < 2 and error.recoverable
            ),
            recover=_recreate_container,
        ),
        RecoveryStrategy(
            name="resource-reduction",
            can_recover=lambda error, state: (
                "RESOURCE" in error.code and state.recovery_attempts < 3
            ),
            recover=_reduce_resources,
        ),
        RecoveryStrategy(
            name="partial-continuation",
            can_recover=lambda error, state: (
                "ANALYSIS" in error.code and len(state.completed_steps) > 0
            ),
            recover=_continue_partially,
        ),
    ]


class RecoveryManager:
    """
    Error recovery and state preservation for assessment workflows.

    Tracks one ``ErrorRecoveryState`` per container, keeps the last
    ``max_checkpoints`` checkpoints per container, and offers failures to
    an ordered list of recovery strategies.
    """

    def __init__(self, max_checkpoints: int = MAX_CHECKPOINTS, max_recovery_attempts: int = 3) -> None:
        self.max_checkpoints = max_checkpoints
        self.max_recovery_attempts = max_recovery_attempts
        self._checkpoints: dict[str, deque[RecoveryCheckpoint]] = {}
        self._states: dict[str, ErrorRecoveryState] = {}
        self._preserved: dict[str, dict[str, Any]] = {}
        self._strategies: list[RecoveryStrategy] = default_strategies()

    # Recovery state

    def create_recovery_state(self, container_id: str) -> ErrorRecoveryState:
        state = ErrorRecoveryState(
            container_id=container_id,
            max_recovery_attempts=self.max_recovery_attempts,
        )
        self._states[container_id] = state
        return state

    def get_recovery_state(self, container_id: str) -> ErrorRecoveryState | None:
        return self._states.get(container_id)

    def update_recovery_state(self, state: ErrorRecoveryState) -> None:
        self._states[state.container_id] = state

    def record_step_success(self, container_id: str, step: str, results: Any = None) -> None:
        state = self._states.get(container_id) or self.create_recovery_state(container_id)
        if step not in state.completed_steps:
            state.completed_steps.append(step)
        state.last_successful_step = step
        if results is not None:
            state.partial_results[step] = snapshot(results)

    def record_step_failure(
        self, container_id: str, step: str, error: SecurityAssessmentError
    ) -> None:
        state = self._states.get(container_id) or self.create_recovery_state(container_id)
        if step not in state.failed_steps:
            state.failed_steps.append(step)
        state.last_error = error.to_dict()

    # Checkpoints

    def create_checkpoint(
        self,
        container_id: str,
        step_name: str,
        state: ErrorRecoveryState,
        results: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> RecoveryCheckpoint:
        """
        Record a value snapshot of ``state`` for ``container_id``.

        The ring buffer keeps the most recent ``max_checkpoints`` entries;
        the oldest is evicted first.
        """
        checkpoint = RecoveryCheckpoint(
            step_name=step_name,
            state=snapshot(state),
            results=snapshot(results),
            metadata=snapshot(metadata) or {},
        )
        buffer = self._checkpoints.setdefault(container_id, deque(maxlen=self.max_checkpoints))
        buffer.append(checkpoint)
        logger.debug(
            "Checkpoint %s for %s (%d stored)", step_name, container_id, len(buffer)
        )
        return checkpoint

    def get_latest_checkpoint(self, container_id: str) -> RecoveryCheckpoint | None:
        buffer = self._checkpoints.get(container_id)
        return buffer[-1] if buffer else None

    def get_checkpoints(self, container_id: str) -> list[RecoveryCheckpoint]:
        return list(self._checkpoints.get(container_id, ()))

    # Recovery

    def register_strategy(self, strategy: RecoveryStrategy) -> None:
        self._strategies.append(strategy)
        logger.info("Registered recovery strategy: %s", strategy.name)

    async def attempt_recovery(
        self,
        error: SecurityAssessmentError,
        state: ErrorRecoveryState,
    ) -> RecoveryResult:
        """
        Offer ``error`` to each registered strategy in order.

        Args:
            error: The failure to recover from.
            state: Current recovery state of the affected container.

        Returns:
            The first successful RecoveryResult, or a failed one.
        """
        logger.info(
            "Attempting recovery for %s on %s (attempt %d)",
            error.code,
            state.container_id,
            state.recovery_attempts,
        )
        if state.recovery_attempts >= state.max_recovery_attempts:
            return RecoveryResult(
                success=False,
                message=f"Maximum recovery attempts ({state.max_recovery_attempts}) exceeded",
            )

        for strategy in self._strategies:
            if not strategy.can_recover(error, state):
                continue
            logger.info("Trying recovery strategy %s", strategy.name)
            try:
                result = await strategy.recover(error, state)
            except Exception as exc:
                logger.error("Recovery strategy %s raised: %s", strategy.name, exc)
                continue
            if result.success:
                logger.info("Recovered from %s with %s", error.code, strategy.name)
                if result.new_state is not None:
                    self._states[state.container_id] = result.new_state
                return result
            logger.warning("Recovery strategy %s failed: %s", strategy.name, result.message)

        return RecoveryResult(success=False, message="No suitable recovery strategy found")

    # Degradation

    def create_degradation_plan(
        self,
        error: SecurityAssessmentError,
        remaining_steps: list[WorkflowStep],
    ) -> DegradationPlan:
        """
        Reduce the remaining steps to a plan that can still run.

        Skippable steps are dropped; modifiable steps get a halved timeout,
        ``continue_on_error`` and shrunken ``--memory``/``--timeout`` flags.
        Everything else is kept unchanged.
        """
        steps: list[WorkflowStep] = []
        modified: list[str] = []
        skipped: list[str] = []

        for step in remaining_steps:
            if _can_skip(step):
                skipped.append(step.name)
                logger.info("Skipping step %s during degradation", step.name)
            elif _can_modify(step):
                steps.append(_degrade(step))
                modified.append(step.name)
                logger.info("Reduced requirements of step %s", step.name)
            else:
                steps.append(step)

        return DegradationPlan(
            can_continue=bool(steps) or len(skipped) < len(remaining_steps),
            steps=steps,
            modified_steps=modified,
            skipped_steps=skipped,
            reason=_degradation_reason(error, len(skipped), len(modified)),
        )

    def preserve_partial_results(
        self,
        container_id: str,
        completed_steps: list[str],
        partial_results: Any,
        error: SecurityAssessmentError,
        failed_steps: list[str] | None = None,
    ) -> PartialAnalysisError:
        """Package completed work and the triggering error into a PartialAnalysisError."""
        checkpoint = self.get_latest_checkpoint(container_id)
        preserved = {
            "completed_steps": list(completed_steps),
            "partial_results": snapshot(partial_results),
            "last_checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "preserved_at": utcnow().isoformat(),
            "error": error.to_dict(),
        }
        self._preserved[container_id] = preserved
        logger.info(
            "Preserved partial results for %s (%d completed step(s))",
            container_id,
            len(completed_steps),
        )
        return PartialAnalysisError(
            f"Analysis partially completed. {len(completed_steps)} steps succeeded before failure.",
            completed_steps,
            failed_steps or [error.code],
            {"preserved_data": preserved},
        )

    def get_preserved_data(self, container_id: str) -> dict[str, Any] | None:
        return self._preserved.get(container_id)

    def clear_recovery_data(self, container_id: str) -> None:
        self._checkpoints.pop(container_id, None)
        self._states.pop(container_id, None)
        self._preserved.pop(container_id, None)
        logger.debug("Cleared recovery data for %s", container_id)


def _can_skip(step: WorkflowStep) -> bool:
    return (
        step.continue_on_error
        or step.kind in SKIPPABLE_KINDS
        or SKIPPABLE_NAME.search(step.name) is not None
    )


def _can_modify(step: WorkflowStep) -> bool:
    return (
        (step.timeout or 0) > MODIFIABLE_TIMEOUT_SECONDS
        or step.kind == StepKind.ANALYSIS
        or any("--timeout" in arg or "--memory" in arg for arg in step.command)
    )


def _degrade(step: WorkflowStep) -> WorkflowStep:
    timeout = step.timeout
    if timeout is not None:
        timeout = max(MIN_DEGRADED_TIMEOUT_SECONDS, float(math.floor(timeout * 0.5)))

    command = []
    for arg in step.command:
        if "--memory" in arg:
            arg = re.sub(r"--memory=\d+[mg]", "--memory=256m", arg, flags=re.IGNORECASE)
        elif "--timeout" in arg and timeout is not None:
            arg = re.sub(r"--timeout=\d+", f"--timeout={int(timeout)}", arg, flags=re.IGNORECASE)
        command.append(arg)

    return step.model_copy(
        update={"timeout": timeout, "continue_on_error": True, "command": command},
        deep=True,
    )


def _degradation_reason(error: SecurityAssessmentError, skipped: int, modified: int) -> str:
    causes = []
    if "RESOURCE" in error.code:
        causes.append("insufficient system resources")
    if "NETWORK" in error.code:
        causes.append("network connectivity issues")
    if "CONTAINER" in error.code:
        causes.append("container management problems")

    reason = f"Analysis degraded due to {' and '.join(causes) or 'system limitations'}."
    if skipped:
        reason += f" {skipped} optional steps were skipped."
    if modified:
        reason += f" {modified} steps were modified."
    return reason
