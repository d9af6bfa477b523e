"""Workflow package — definitions, built-in catalogue, tool adapters and execution."""

from co_sandbox.workflows.definition import WorkflowDefinitionManager
from co_sandbox.workflows.executor import ProgressCallback, WorkflowExecutor
from co_sandbox.workflows.predefined import BUILTIN_WORKFLOWS, PredefinedWorkflows
from co_sandbox.workflows.tools import (
    CommandAdapter,
    PlaceholderAdapter,
    SetupAdapter,
    ToolAdapter,
    ToolRegistry,
)

__all__ = [
    "BUILTIN_WORKFLOWS",
    "CommandAdapter",
    "PlaceholderAdapter",
    "PredefinedWorkflows",
    "ProgressCallback",
    "SetupAdapter",
    "ToolAdapter",
    "ToolRegistry",
    "WorkflowDefinitionManager",
    "WorkflowExecutor",
]
