"""
Tool adapters — The seam between workflow steps and analysis tools.

Concrete analyzers (eslint, slither, ...) are plugged in by registering a
``ToolAdapter`` under the tool identifier used in workflow files. Tools
without an adapter resolve to a placeholder that contributes nothing.
"""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod

from co_sandbox.errors import AnalysisError
from co_sandbox.models import AnalysisResults, WorkflowContext, WorkflowStep
from co_sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class ToolAdapter(ABC):
    """Runs one tool inside a sandbox and returns its typed partial result."""

    name: str = "tool"

    @abstractmethod
    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        """
        Execute ``step`` against the sandbox described by ``context``.

        Raises:
            AnalysisError: When the tool fails.
        """


class PlaceholderAdapter(ToolAdapter):
    """Stand-in for tools with no registered adapter."""

    def __init__(self, tool: str) -> None:
        self.name = tool

    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        logger.warning(
            "No adapter registered for tool %s; step %s yields no results", self.name, step.name
        )
        return AnalysisResults()


class SetupAdapter(ToolAdapter):
    """Prepares the output directory and, optionally, project dependencies."""

    name = "setup"

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        results = AnalysisResults()
        config = step.config

        if config.get("createOutputDir", True):
            created = await self.runtime.exec(
                context.container_id, ["mkdir", "-p", context.output_path]
            )
            if not created.success:
                raise AnalysisError(
                    f"Could not create output directory {context.output_path}",
                    {"stderr": created.stderr.strip()},
                )

        if config.get("installDependencies") and not config.get("minimal"):
            manifest = shlex.quote(f"{context.workspace_path}/package.json")
            present = await self.runtime.exec(context.container_id, f"test -f {manifest}")
            if not present.success:
                return results
            install = await self.runtime.exec(
                context.container_id,
                "npm ci --ignore-scripts --no-audit --no-fund "
                "|| npm install --ignore-scripts --no-audit --no-fund",
                workdir=context.workspace_path,
                timeout=step.timeout,
            )
            if not install.success:
                logger.warning(
                    "Dependency installation failed in %s: %s",
                    context.container_id,
                    install.stderr.strip()[:200],
                )
                results.recommendations.append(
                    "Dependencies could not be installed; analysis results may be incomplete."
                )
        return results


class CommandAdapter(ToolAdapter):
    """Runs ``config.command`` (or the step's command list) as a shell step."""

    name = "command"

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        command = step.config.get("command") or step.command
        if not command:
            raise AnalysisError(f"Step {step.name} has no command to run", {"step": step.name})

        result = await self.runtime.exec(
            context.container_id,
            command,
            workdir=context.workspace_path,
            timeout=step.timeout,
            environment=context.environment,
        )
        if not result.success:
            raise AnalysisError(
                f"Command for step {step.name} exited with {result.exit_code}",
                {"step": step.name, "stderr": result.stderr.strip()[:500]},
            )
        return AnalysisResults()


class ToolRegistry:
    """Maps tool identifiers to adapters."""

    def __init__(self) -> None:
        self._adapters: dict[str, ToolAdapter] = {}

    @classmethod
    def with_builtins(cls, runtime: ContainerRuntime) -> ToolRegistry:
        registry = cls()
        registry.register(SetupAdapter(runtime))
        registry.register(CommandAdapter(runtime))
        return registry

    def register(self, adapter: ToolAdapter, name: str | None = None) -> None:
        self._adapters[name or adapter.name] = adapter

    def resolve(self, tool: str) -> ToolAdapter:
        return self._adapters.get(tool) or PlaceholderAdapter(tool)

    def is_registered(self, tool: str) -> bool:
        return tool in self._adapters

    @property
    def tools(self) -> list[str]:
        return sorted(self._adapters)
