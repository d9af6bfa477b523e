"""
Workflow executor — Runs workflow steps against a ready sandbox.

Steps outside parallel groups run in declaration order. A parallel group
runs where its first member is declared, fanned out with ``asyncio.gather``
and joined before the next step. Cleanup steps always run afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

from co_sandbox.config import WorkflowConfig
from co_sandbox.errors import (
    ErrorHandler,
    OperationTimeoutError,
    SecurityAssessmentError,
    SecurityViolationError,
    ValidationError,
    WorkflowExecutionError,
)
from co_sandbox.models import (
    AssessmentEnvironment,
    CodebaseType,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowError,
    WorkflowResult,
    WorkflowStep,
)
from co_sandbox.resilience import RecoveryManager
from co_sandbox.runtime import ContainerRuntime
from co_sandbox.workflows.definition import WorkflowDefinitionManager
from co_sandbox.workflows.predefined import PredefinedWorkflows
from co_sandbox.workflows.tools import ToolRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


class StepAborted(Exception):
    """A non-recoverable step failure that stops the main plan."""

    def __init__(self, step: str, error: SecurityAssessmentError) -> None:
        super().__init__(f"Step {step} failed: {error.message}")
        self.step = step
        self.error = error


def detect_languages(environment: AssessmentEnvironment) -> list[str]:
    codebase_type = environment.analysis_config.codebase_type
    languages = []
    if codebase_type in (CodebaseType.NODEJS, CodebaseType.MIXED):
        languages.extend(["javascript", "typescript"])
    if codebase_type in (CodebaseType.SOLIDITY, CodebaseType.MIXED):
        languages.append("solidity")
    return languages


def detect_frameworks(environment: AssessmentEnvironment) -> list[str]:
    known = ("hardhat", "truffle", "jest", "mocha", "foundry")
    return [f for f in environment.analysis_config.test_frameworks if f in known]


def plan_units(workflow: WorkflowDefinition) -> list[list[WorkflowStep]]:
    """
    Arrange steps into execution units.

    Steps outside any parallel group run first, one per unit, in declaration
    order. Each parallel group follows as one unit, groups in declaration
    order and members in step order.
    """
    grouped = {name for group in workflow.parallel_steps for name in group}
    units: list[list[WorkflowStep]] = [
        [step] for step in workflow.steps if step.name not in grouped
    ]
    for group in workflow.parallel_steps:
        members = set(group)
        unit = [step for step in workflow.steps if step.name in members]
        if unit:
            units.append(unit)
    return units


class _Run:
    """Mutable accumulator for one workflow execution."""

    def __init__(self, workflow: WorkflowDefinition, context: WorkflowContext) -> None:
        self.workflow = workflow
        self.context = context
        self.result = WorkflowResult(success=True)
        self.started = time.monotonic()

    @property
    def container_id(self) -> str:
        return self.context.container_id


class WorkflowExecutor:
    """
    Executes workflow definitions through registered tool adapters.

    Args:
        runtime: Container runtime used by conditions and built-in adapters.
        registry: Tool adapters; built-ins are registered when omitted.
        recovery: Recovery manager receiving step checkpoints.
        config: Paths, timeouts, backoff and degradation switch.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: ToolRegistry | None = None,
        recovery: RecoveryManager | None = None,
        config: WorkflowConfig | None = None,
    ) -> None:
        self.runtime = runtime
        self.registry = registry or ToolRegistry.with_builtins(runtime)
        self.recovery = recovery or RecoveryManager()
        self.config = config or WorkflowConfig()
        self.definitions = WorkflowDefinitionManager(runtime)

    def resolve_workflow(
        self,
        environment: AssessmentEnvironment,
        workflow: WorkflowDefinition | str | Path | None,
        context: WorkflowContext,
    ) -> WorkflowDefinition:
        """Turn a definition, built-in name, file path or nothing into a workflow."""
        if isinstance(workflow, WorkflowDefinition):
            problems = self.definitions.validate_workflow(workflow)
            if problems:
                raise ValidationError(
                    f"Invalid workflow {workflow.name!r}: {'; '.join(problems)}",
                    {"problems": problems},
                )
            resolved = workflow
        elif workflow is None:
            resolved = PredefinedWorkflows.auto_select(
                environment.analysis_config.codebase_type,
                context.detected_languages,
                context.detected_frameworks,
                quick_scan=self.config.quick_scan,
            )
        else:
            resolved = PredefinedWorkflows.get(str(workflow)) or self.definitions.load_from_file(
                Path(workflow)
            )

        codebase_type = environment.analysis_config.codebase_type.value
        if not self.definitions.is_compatible(resolved, codebase_type):
            raise ValidationError(
                f"Workflow {resolved.name} does not support codebase type {codebase_type}",
                {"workflow": resolved.name, "codebase_types": resolved.codebase_types},
            )
        return resolved

    def create_context(
        self,
        environment: AssessmentEnvironment,
        languages: list[str] | None = None,
        frameworks: list[str] | None = None,
    ) -> WorkflowContext:
        return WorkflowContext(
            container_id=environment.container_id,
            workspace_path=self.config.workspace_path,
            output_path=self.config.output_path,
            codebase_type=environment.analysis_config.codebase_type,
            detected_languages=sorted(set(detect_languages(environment)) | set(languages or [])),
            detected_frameworks=sorted(
                set(detect_frameworks(environment)) | set(frameworks or [])
            ),
        )

    async def execute_workflow(
        self,
        environment: AssessmentEnvironment,
        workflow: WorkflowDefinition | str | Path | None = None,
        languages: list[str] | None = None,
        frameworks: list[str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> WorkflowResult:
        """
        Run a workflow in ``environment``.

        Args:
            environment: A ready sandbox.
            workflow: Definition, built-in name or JSON path; auto-selected if None.
            languages: Languages detected on the host, merged into the context.
            frameworks: Frameworks detected on the host, merged into the context.
            progress: Optional ``(message, percent)`` observer.

        Returns:
            WorkflowResult with merged results and per-step bookkeeping.

        Raises:
            SecurityViolationError: Propagated unchanged from any step.
            PartialAnalysisError: The plan aborted after some steps completed.
            WorkflowExecutionError: The plan aborted before any step completed.
        """
        context = self.create_context(environment, languages, frameworks)
        definition = self.resolve_workflow(environment, workflow, context)
        run = _Run(definition, context)
        if self.recovery.get_recovery_state(run.container_id) is None:
            self.recovery.create_recovery_state(run.container_id)

        logger.info(
            "Executing workflow %s v%s in %s",
            definition.name,
            definition.version,
            run.container_id,
        )

        aborted: StepAborted | None = None
        try:
            aborted = await self._run_plan(run, plan_units(definition), progress)
        finally:
            completed = list(run.result.executed_steps)
            await self._run_cleanup(run, progress)
            run.result.duration_ms = (time.monotonic() - run.started) * 1000

        result = run.result
        result.success = aborted is None and not result.errors
        if aborted is not None:
            raise self._abort_error(run, aborted, completed)

        logger.info(
            "Workflow %s finished in %.0f ms (%d executed, %d skipped, %d error(s))",
            definition.name,
            result.duration_ms,
            len(result.executed_steps),
            len(result.skipped_steps),
            len(result.errors),
        )
        return result

    async def _run_plan(
        self,
        run: _Run,
        units: list[list[WorkflowStep]],
        progress: ProgressCallback | None,
    ) -> StepAborted | None:
        total = max(1, sum(len(unit) for unit in units))
        done = 0
        index = 0
        while index < len(units):
            unit = units[index]
            if progress is not None:
                label = ", ".join(step.name for step in unit)
                progress(f"Executing: {label}", int(done / total * 100))
            try:
                if len(unit) == 1:
                    await self._execute_step(unit[0], run)
                else:
                    await self._execute_parallel(unit, run)
            except StepAborted as aborted:
                replacement = await self._handle_abort(run, aborted, units[index + 1 :])
                if replacement is None:
                    return aborted
                units, index = replacement, 0
                continue
            done += len(unit)
            index += 1
        return None

    async def _execute_parallel(self, steps: list[WorkflowStep], run: _Run) -> None:
        outcomes = await asyncio.gather(
            *(self._execute_step(step, run) for step in steps), return_exceptions=True
        )
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        if not failures:
            return
        logger.warning("%d of %d parallel step(s) aborted", len(failures), len(steps))
        violation = next((f for f in failures if isinstance(f, SecurityViolationError)), None)
        raise violation or failures[0]

    async def _execute_step(self, step: WorkflowStep, run: _Run, cleanup: bool = False) -> None:
        result = run.result
        if step.condition is not None and not await self.definitions.evaluate_condition(
            step.condition, run.context
        ):
            logger.info("Skipping step %s: condition not met", step.name)
            result.skipped_steps.append(step.name)
            return

        adapter = self.registry.resolve(step.tool)
        retries = step.retries or 0
        timeout = step.timeout or self.config.default_step_timeout_seconds
        last_error: BaseException | None = None

        logger.info("Executing step %s (tool=%s)", step.name, step.tool)
        for attempt in range(retries + 1):
            try:
                partial = await asyncio.wait_for(adapter.run(step, run.context), timeout)
            except SecurityViolationError:
                raise
            except asyncio.TimeoutError:
                last_error = OperationTimeoutError(
                    f"Step {step.name} timed out after {timeout}s",
                    timeout,
                    {"step": step.name},
                )
            except Exception as exc:
                last_error = exc
            else:
                result.results.merge(partial)
                result.executed_steps.append(step.name)
                self.recovery.record_step_success(run.container_id, step.name, partial)
                state = self.recovery.get_recovery_state(run.container_id)
                self.recovery.create_checkpoint(run.container_id, step.name, state, results=partial)
                logger.info("Step %s completed", step.name)
                return

            if attempt < retries:
                delay = self.config.backoff_base_seconds * 2**attempt
                logger.warning(
                    "Step %s failed, retrying (%d/%d) in %.1fs: %s",
                    step.name,
                    attempt + 1,
                    retries,
                    delay,
                    last_error,
                )
                await asyncio.sleep(delay)

        error = ErrorHandler.from_exception(
            last_error or RuntimeError("step failed"), {"step": step.name, "tool": step.tool}
        )
        recoverable = retries > 0 or step.continue_on_error or cleanup
        result.errors.append(
            WorkflowError(
                step=step.name,
                message=error.message,
                code=error.code,
                recoverable=recoverable,
            )
        )
        self.recovery.record_step_failure(run.container_id, step.name, error)
        logger.error("Step %s failed (recoverable=%s): %s", step.name, recoverable, error.message)
        if not recoverable:
            raise StepAborted(step.name, error)

    async def _handle_abort(
        self,
        run: _Run,
        aborted: StepAborted,
        remaining: list[list[WorkflowStep]],
    ) -> list[list[WorkflowStep]] | None:
        """Offer an aborting failure to recovery, then to degradation."""
        if not self.config.degrade_on_failure:
            return None

        error = aborted.error
        state = self.recovery.get_recovery_state(run.container_id)
        if error.recoverable and state is not None:
            outcome = await self.recovery.attempt_recovery(error, state)
            if outcome.success and outcome.should_continue:
                logger.info("Continuing workflow after recovery: %s", outcome.message)
                return remaining

        plan = self.recovery.create_degradation_plan(
            error, [step for unit in remaining for step in unit]
        )
        if not plan.can_continue:
            return None
        logger.warning("%s", plan.reason)
        run.result.skipped_steps.extend(plan.skipped_steps)
        run.result.results.recommendations.append(plan.reason)
        return [[step] for step in plan.steps]

    async def _run_cleanup(self, run: _Run, progress: ProgressCallback | None) -> None:
        if not run.workflow.cleanup:
            return
        if progress is not None:
            progress("Running cleanup steps", 95)
        for step in run.workflow.cleanup:
            try:
                await self._execute_step(step, run, cleanup=True)
            except SecurityViolationError:
                raise
            except Exception as exc:
                logger.warning("Cleanup step %s failed: %s", step.name, exc)

    def _abort_error(
        self, run: _Run, aborted: StepAborted, completed: list[str]
    ) -> SecurityAssessmentError:
        result = run.result
        failed = [e.step for e in result.errors]
        if completed:
            return self.recovery.preserve_partial_results(
                run.container_id,
                completed,
                result.results.model_dump(mode="json"),
                aborted.error,
                failed_steps=failed,
            )
        return WorkflowExecutionError(
            f"Workflow {run.workflow.name} failed at step {aborted.step}: {aborted.error.message}",
            {"failed_steps": failed, "error": aborted.error.to_dict()},
        )
