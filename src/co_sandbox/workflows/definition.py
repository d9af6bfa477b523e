"""
Workflow definitions — Loading, saving, validation and step conditions.

Workflow files are JSON documents using camelCase keys (``codebaseTypes``,
``parallelSteps``, ``continueOnError``).
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
import shlex
from pathlib import Path

import pydantic

from co_sandbox.errors import ValidationError
from co_sandbox.models import (
    ConditionOperator,
    ConditionType,
    StepCondition,
    StepKind,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowStep,
)
from co_sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


def _format_pydantic_errors(exc: pydantic.ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or 'workflow'}: {err['msg']}"
        for err in exc.errors()
    ]


class WorkflowDefinitionManager:
    """Reads, writes and checks workflow definitions."""

    def __init__(self, runtime: ContainerRuntime | None = None) -> None:
        self.runtime = runtime

    @staticmethod
    def parse(data: dict) -> WorkflowDefinition:
        """
        Build and validate a workflow from its JSON structure.

        Raises:
            ValidationError: With every problem found listed in ``context``.
        """
        try:
            workflow = WorkflowDefinition.model_validate(data)
        except pydantic.ValidationError as exc:
            problems = _format_pydantic_errors(exc)
            raise ValidationError(
                f"Invalid workflow: {'; '.join(problems)}", {"problems": problems}
            ) from exc

        problems = WorkflowDefinitionManager.validate_workflow(workflow)
        if problems:
            raise ValidationError(
                f"Invalid workflow {workflow.name!r}: {'; '.join(problems)}",
                {"problems": problems},
            )
        return workflow

    @staticmethod
    def load_from_file(file_path: Path) -> WorkflowDefinition:
        file_path = Path(file_path)
        if not file_path.exists():
            raise ValidationError(
                f"Workflow file not found: {file_path}", {"file_path": str(file_path)}
            )
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(
                f"Invalid workflow file {file_path}: {exc}", {"file_path": str(file_path)}
            ) from exc
        return WorkflowDefinitionManager.parse(data)

    @staticmethod
    def save_to_file(workflow: WorkflowDefinition, file_path: Path) -> None:
        problems = WorkflowDefinitionManager.validate_workflow(workflow)
        if problems:
            raise ValidationError(
                f"Refusing to save invalid workflow {workflow.name!r}: {'; '.join(problems)}",
                {"problems": problems},
            )
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(json.dumps(workflow.to_json_dict(), indent=2), encoding="utf-8")

    @staticmethod
    def validate_workflow(workflow: WorkflowDefinition) -> list[str]:
        """
        Structural checks that the model itself does not enforce.

        Returns:
            Human-readable problems; empty when the workflow is valid.
        """
        problems: list[str] = []
        if not workflow.name.strip():
            problems.append("Workflow must have a valid name")
        if not workflow.version.strip():
            problems.append("Workflow must have a valid version")
        if not workflow.steps:
            problems.append("Workflow must have at least one step")
        if not workflow.codebase_types:
            problems.append("Workflow must specify supported codebase types")

        names: set[str] = set()
        for index, step in enumerate(workflow.steps):
            problems.extend(_validate_step(step, index))
            if step.name in names:
                problems.append(f"Duplicate step name: {step.name}")
            names.add(step.name)
        for index, step in enumerate(workflow.cleanup):
            problems.extend(_validate_step(step, index, prefix="Cleanup step"))

        grouped: set[str] = set()
        for group in workflow.parallel_steps:
            for step_name in group:
                if step_name not in names:
                    problems.append(f"Parallel step reference not found: {step_name}")
                elif step_name in grouped:
                    problems.append(f"Step {step_name} appears in more than one parallel group")
                grouped.add(step_name)
        return problems

    @staticmethod
    def is_compatible(workflow: WorkflowDefinition, codebase_type: str) -> bool:
        return codebase_type in workflow.codebase_types or "*" in workflow.codebase_types

    @staticmethod
    def get_parallel_steps(workflow: WorkflowDefinition) -> dict[str, list[str]]:
        return {f"parallel-{i}": list(group) for i, group in enumerate(workflow.parallel_steps)}

    @staticmethod
    def create_template(name: str, codebase_type: str) -> WorkflowDefinition:
        return WorkflowDefinition(
            name=name,
            description=f"Auto-generated workflow for {codebase_type} projects",
            version="1.0.0",
            codebase_types=[codebase_type],
            steps=[
                WorkflowStep(
                    name="setup",
                    description="Initialize analysis environment",
                    tool="setup",
                    kind=StepKind.BUILD,
                    config={"installDependencies": True, "createOutputDir": True},
                )
            ],
        )

    async def evaluate_condition(self, condition: StepCondition, context: WorkflowContext) -> bool:
        """Decide whether a conditional step should run."""
        if condition.type == ConditionType.FILE_EXISTS:
            return await self._file_exists(context, condition.value)
        if condition.type == ConditionType.LANGUAGE_DETECTED:
            return _check_values(context.detected_languages, condition)
        if condition.type == ConditionType.FRAMEWORK_DETECTED:
            return _check_values(context.detected_frameworks, condition)
        return True

    async def _file_exists(self, context: WorkflowContext, relative: str) -> bool:
        if self.runtime is None:
            logger.warning("No runtime available to check for %s; assuming absent", relative)
            return False
        path = posixpath.join(context.workspace_path, relative)
        result = await self.runtime.exec(context.container_id, f"test -e {shlex.quote(path)}")
        return result.success


def _validate_step(step: WorkflowStep, index: int, prefix: str = "Step") -> list[str]:
    problems = []
    if not step.name.strip():
        problems.append(f"{prefix} {index} must have a valid name")
    if not step.tool.strip():
        problems.append(f"{prefix} {index} ({step.name}) must specify a tool")
    if step.timeout is not None and step.timeout <= 0:
        problems.append(f"{prefix} {step.name} timeout must be a positive number")
    if step.retries is not None and step.retries < 0:
        problems.append(f"{prefix} {step.name} retries must be a non-negative number")
    if step.condition is not None and not step.condition.value.strip():
        problems.append(f"{prefix} {step.name} condition must have a valid value")
    return problems


def _check_values(values: list[str], condition: StepCondition) -> bool:
    operator = condition.operator or ConditionOperator.EQUALS
    if operator == ConditionOperator.EQUALS:
        return condition.value in values
    if operator == ConditionOperator.CONTAINS:
        return any(condition.value in value for value in values)
    try:
        pattern = re.compile(condition.value)
    except re.error as exc:
        logger.warning("Invalid condition pattern %r: %s", condition.value, exc)
        return False
    return any(pattern.search(value) for value in values)
