"""
Co-AI-Sandbox assessment system — Top-level facade.

Wires the container runtime, security policy engine, lifecycle manager and
workflow executor into the operations a CLI or report consumer needs:
  create → mount → analyze → report → destroy
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from co_sandbox.config import SandboxSettings
from co_sandbox.errors import (
    ErrorHandler,
    PartialAnalysisError,
    SecurityAssessmentError,
    SecurityViolationError,
)
from co_sandbox.events import EventBus
from co_sandbox.models import (
    AnalysisConfiguration,
    AnalysisResults,
    AssessmentEnvironment,
    CodebaseType,
    EnvironmentStatus,
    NetworkConfig,
    SecurityConfiguration,
    Severity,
    TestStatus,
    WorkflowDefinition,
    WorkflowResult,
    utcnow,
)
from co_sandbox.lifecycle import EnvironmentManager
from co_sandbox.resilience import RecoveryManager
from co_sandbox.runtime import ContainerRuntime
from co_sandbox.security import (
    NetworkMonitor,
    ResourceGatekeeper,
    SecurityPolicyEngine,
    detect_stack,
)
from co_sandbox.workflows import ProgressCallback, ToolRegistry, WorkflowExecutor

logger = logging.getLogger(__name__)

DEFAULT_TOOLS: dict[CodebaseType, tuple[list[str], list[str]]] = {
    CodebaseType.NODEJS: (["eslint", "npm-audit", "sonarjs"], ["jest", "mocha"]),
    CodebaseType.SOLIDITY: (["slither", "mythx", "solhint"], ["hardhat", "truffle"]),
    CodebaseType.MIXED: (["eslint", "npm-audit", "slither", "mythx"], ["jest", "hardhat"]),
}


class ReportSummary(BaseModel):
    total_findings: int = 0
    critical_findings: int = 0
    high_findings: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    tests_skipped: int = 0
    duration_ms: float = 0.0


class AssessmentReport(BaseModel):
    """Outcome of one assessment, ready for an external renderer."""

    environment_id: str
    status: Literal["completed", "failed", "partial"]
    start_time: datetime
    end_time: datetime
    summary: ReportSummary
    results: AnalysisResults = Field(default_factory=AnalysisResults)
    executed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


def summarize(results: AnalysisResults, duration_ms: float) -> ReportSummary:
    findings = results.security_findings
    tests = results.test_results
    return ReportSummary(
        total_findings=len(findings) + len(results.code_quality_issues),
        critical_findings=sum(1 for f in findings if f.severity == Severity.CRITICAL),
        high_findings=sum(1 for f in findings if f.severity == Severity.HIGH),
        tests_passed=sum(1 for t in tests if t.status == TestStatus.PASSED),
        tests_failed=sum(1 for t in tests if t.status == TestStatus.FAILED),
        tests_skipped=sum(1 for t in tests if t.status == TestStatus.SKIPPED),
        duration_ms=duration_ms,
    )


class SecurityAssessmentSystem:
    """
    Primary interface for conducting sandboxed code assessments.

    Coordinates:
    - Provisioning (lifecycle manager, retry, circuit breaker, recovery)
    - Isolation (network, resources, filesystem, monitoring)
    - Boundary validation against the live container
    - Workflow execution and result aggregation
    - Teardown of every auxiliary resource
    """

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        runtime: ContainerRuntime | None = None,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.settings = settings or SandboxSettings()
        self.runtime = runtime or ContainerRuntime.from_env(self.settings.docker)

        resilience = self.settings.resilience
        self.events = EventBus()
        self.recovery = RecoveryManager(
            max_checkpoints=resilience.max_checkpoints,
            max_recovery_attempts=resilience.max_recovery_attempts,
        )
        self.monitor = NetworkMonitor(self.runtime, self.settings.monitor, events=self.events)
        self.gatekeeper = ResourceGatekeeper(self.runtime, self.settings.gatekeeper)
        self.policy = SecurityPolicyEngine(
            self.runtime, monitor=self.monitor, gatekeeper=self.gatekeeper, events=self.events
        )
        self.environments = EnvironmentManager(
            self.runtime, self.settings, recovery=self.recovery, monitor=self.monitor
        )
        self.executor = WorkflowExecutor(
            self.runtime,
            registry=registry,
            recovery=self.recovery,
            config=self.settings.workflow,
        )

    # Environments

    async def create_secure_assessment_environment(
        self,
        security_config: SecurityConfiguration,
        analysis_config: AnalysisConfiguration,
    ) -> AssessmentEnvironment:
        """
        Create a sandbox and lock it down.

        Steps: provision, network isolation, resource limits, filesystem
        permissions, monitoring, boundary validation. Any failure after
        provisioning destroys the sandbox before the error propagates.

        Raises:
            SecurityViolationError: A policy could not be applied or the
                boundaries do not hold.
            SecurityAssessmentError: Provisioning failed.
        """
        logger.info(
            "Creating secure assessment environment (codebase=%s, isolated=%s)",
            analysis_config.codebase_type.value,
            security_config.network_isolation,
        )
        environment = await self.environments.create_assessment_environment(
            security_config, analysis_config
        )
        container_id = environment.container_id

        try:
            await self._apply_security_policies(container_id, security_config)
            await self.policy.enable_security_monitoring(container_id)
            if not await self.validate_security_boundaries(container_id, security_config):
                raise SecurityViolationError(
                    f"Security boundaries do not hold for {container_id}",
                    "BOUNDARY",
                    {"container_id": container_id},
                )
        except Exception:
            environment.transition(EnvironmentStatus.FAILED)
            await self._destroy_quietly(container_id)
            raise

        logger.info(
            "Secure assessment environment %s ready (%d policies)",
            container_id,
            len(security_config.security_policies),
        )
        return environment

    async def _apply_security_policies(
        self, container_id: str, security_config: SecurityConfiguration
    ) -> None:
        if security_config.network_isolation:
            await self.policy.apply_network_isolation(
                container_id,
                NetworkConfig(
                    isolated=True,
                    allowed_hosts=security_config.allowed_network_access,
                    monitoring_enabled=self.settings.monitor.enabled,
                ),
            )
        await self.policy.set_resource_limits(container_id, security_config.resource_limits)
        await self.policy.configure_filesystem_access(
            container_id, security_config.filesystem_access
        )

    async def validate_security_boundaries(
        self, container_id: str, security_config: SecurityConfiguration
    ) -> bool:
        return await self.policy.validate_security_boundaries(container_id, security_config)

    # Assessment

    async def conduct_assessment(
        self,
        environment: AssessmentEnvironment,
        codebase_path: str | Path,
        workflow: WorkflowDefinition | str | Path | None = None,
        progress: ProgressCallback | None = None,
    ) -> AssessmentReport:
        """
        Mount a codebase, run a workflow over it and summarise the outcome.

        Analysis failures produce a ``failed`` (or ``partial``) report instead
        of an exception; security violations always propagate.

        Args:
            environment: A ready sandbox from ``create_secure_assessment_environment``.
            codebase_path: Host directory or file to assess.
            workflow: Definition, built-in name or JSON path; auto-selected if None.
            progress: Optional ``(message, percent)`` observer.
        """
        started = time.monotonic()
        start_time = utcnow()
        container_id = environment.container_id
        codebase = Path(codebase_path)
        logger.info("Starting assessment of %s in %s", codebase, container_id)

        try:
            await self.environments.mount_codebase(
                container_id, codebase, self.settings.workflow.workspace_path
            )
            languages, frameworks = detect_stack(codebase.resolve())
            environment.transition(EnvironmentStatus.ANALYZING)
            outcome = await self.executor.execute_workflow(
                environment, workflow, languages, frameworks, progress
            )
        except SecurityViolationError:
            environment.transition(EnvironmentStatus.FAILED)
            raise
        except SecurityAssessmentError as exc:
            environment.transition(EnvironmentStatus.FAILED)
            return self._failure_report(environment, exc, start_time, started)

        environment.transition(EnvironmentStatus.COMPLETED)
        environment.results = outcome.results
        report = self._report(
            environment, "completed", outcome.results, start_time, started, outcome
        )
        logger.info(
            "Completed assessment of %s: %d finding(s), %d critical",
            container_id,
            report.summary.total_findings,
            report.summary.critical_findings,
        )
        return report

    async def execute_workflow(
        self,
        environment: AssessmentEnvironment,
        workflow: WorkflowDefinition | str | Path | None = None,
    ) -> WorkflowResult:
        return await self.executor.execute_workflow(environment, workflow)

    def _failure_report(
        self,
        environment: AssessmentEnvironment,
        error: SecurityAssessmentError,
        start_time: datetime,
        started: float,
    ) -> AssessmentReport:
        logger.error(
            "Assessment of %s failed: %s",
            environment.container_id,
            ErrorHandler.format_for_user(error),
        )
        results = AnalysisResults()
        status: Literal["failed", "partial"] = "failed"
        if isinstance(error, PartialAnalysisError):
            preserved = error.context.get("preserved_data") or {}
            results = AnalysisResults.model_validate(preserved.get("partial_results") or {})
            status = "partial"
        results.recommendations.append(f"Assessment failed: {error.message}")
        report = self._report(environment, status, results, start_time, started)
        report.metadata["error"] = error.to_dict()
        return report

    def _report(
        self,
        environment: AssessmentEnvironment,
        status: Literal["completed", "failed", "partial"],
        results: AnalysisResults,
        start_time: datetime,
        started: float,
        outcome: WorkflowResult | None = None,
    ) -> AssessmentReport:
        duration_ms = (time.monotonic() - started) * 1000
        limits = environment.security_config.resource_limits
        analysis = environment.analysis_config
        return AssessmentReport(
            environment_id=environment.id,
            status=status,
            start_time=start_time,
            end_time=utcnow(),
            summary=summarize(results, duration_ms),
            results=results,
            executed_steps=outcome.executed_steps if outcome else [],
            skipped_steps=outcome.skipped_steps if outcome else [],
            metadata={
                "codebase_type": analysis.codebase_type.value,
                "tools": list(analysis.analysis_tools),
                "resource_limits": limits.model_dump(),
            },
        )

    # Teardown and queries

    async def cleanup_assessment(self, container_id: str) -> None:
        await self.policy.disable_security_monitoring(container_id)
        await self.environments.destroy_environment(container_id)
        logger.info("Cleaned up assessment environment %s", container_id)

    async def _destroy_quietly(self, container_id: str) -> None:
        try:
            await self.environments.destroy_environment(container_id)
        except SecurityAssessmentError as exc:
            logger.warning("Could not destroy %s after failure: %s", container_id, exc.message)

    def list_environments(self) -> list[AssessmentEnvironment]:
        return self.environments.list_environments()

    async def get_environment_status(self, container_id: str) -> str:
        return await self.environments.get_environment_status(container_id)

    async def stop_environment(self, container_id: str) -> None:
        await self.environments.stop_environment(container_id)

    async def shutdown(self) -> int:
        """Destroy every sandbox this process created."""
        return await self.environments.cleanup_all_environments()

    # Defaults

    def default_security_config(self) -> SecurityConfiguration:
        return self.settings.security.to_security_configuration()

    @staticmethod
    def default_analysis_config(codebase_type: CodebaseType | str) -> AnalysisConfiguration:
        codebase_type = CodebaseType(codebase_type)
        tools, frameworks = DEFAULT_TOOLS.get(codebase_type, ([], []))
        return AnalysisConfiguration(
            codebase_type=codebase_type,
            analysis_tools=list(tools),
            test_frameworks=list(frameworks),
            report_formats=["json", "html"],
        )
