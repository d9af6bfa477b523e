"""End-to-end tests of the assessment system against the in-memory daemon."""

from pathlib import Path

import pytest

from co_sandbox import AssessmentReport, SecurityAssessmentSystem
from co_sandbox.errors import (
    AnalysisError,
    MaliciousCodeError,
    NetworkSecurityViolationError,
    SecurityViolationError,
)
from co_sandbox.models import (
    AnalysisResults,
    CodebaseType,
    EnvironmentStatus,
    Location,
    SecurityConfiguration,
    SecurityFinding,
    Severity,
    WorkflowContext,
    WorkflowStep,
)
from co_sandbox.workflows import ToolAdapter, ToolRegistry


class FindingsAdapter(ToolAdapter):
    """Reports one finding per configured severity."""

    name = "eslint"

    def __init__(self, severities: list[Severity], error: Exception | None = None) -> None:
        self.severities = severities
        self.error = error

    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        if self.error is not None:
            raise self.error
        return AnalysisResults(
            security_findings=[
                SecurityFinding(
                    id=f"{step.name}-{i}",
                    severity=severity,
                    title="Prototype pollution",
                    location=Location(file="src/index.js", line=1),
                    tool=self.name,
                )
                for i, severity in enumerate(self.severities)
            ]
        )


@pytest.fixture
def system(settings, runtime) -> SecurityAssessmentSystem:
    return SecurityAssessmentSystem(settings, runtime=runtime)


def _system_with(settings, runtime, adapter: ToolAdapter) -> SecurityAssessmentSystem:
    registry = ToolRegistry.with_builtins(runtime)
    registry.register(adapter)
    return SecurityAssessmentSystem(settings, runtime=runtime, registry=registry)


async def _ready(system: SecurityAssessmentSystem, **security):
    return await system.create_secure_assessment_environment(
        SecurityConfiguration(**security),
        SecurityAssessmentSystem.default_analysis_config(CodebaseType.NODEJS),
    )


class TestSecureEnvironment:
    """Creation, validation and teardown of hardened sandboxes."""

    @pytest.mark.asyncio
    async def test_lifecycle_leaves_nothing_behind(self, system, docker_client) -> None:
        env = await _ready(system)

        assert env.status == EnvironmentStatus.READY
        assert await system.validate_security_boundaries(env.container_id, env.security_config)
        assert await system.get_environment_status(env.container_id) == "running"

        container = docker_client.container(env.container_id)
        assert container.updates[-1]["mem_limit"] == 512 * 1024**2
        assert "chmod -R a-w /etc" in container.commands

        await system.cleanup_assessment(env.container_id)
        assert system.list_environments() == []
        assert docker_client.containers.by_name == {}

    @pytest.mark.asyncio
    async def test_allowed_hosts_use_restricted_network(self, system, docker_client) -> None:
        env = await _ready(system, allowed_network_access=["registry.npmjs.org"])
        container = docker_client.container(env.container_id)
        assert f"restricted-{env.container_id}" in container.networks

        await system.cleanup_assessment(env.container_id)
        assert f"restricted-{env.container_id}" in docker_client.removed_networks

    @pytest.mark.asyncio
    async def test_policy_failure_destroys_sandbox(self, system, docker_client) -> None:
        with pytest.raises(NetworkSecurityViolationError):
            await _ready(system, allowed_network_access=["not a host"])
        assert system.list_environments() == []
        assert docker_client.containers.by_name == {}

    @pytest.mark.asyncio
    async def test_boundary_failure_is_a_violation(
        self, system, docker_client, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def weak(container_id: str, config: SecurityConfiguration) -> bool:
            return False

        monkeypatch.setattr(system.policy, "validate_security_boundaries", weak)
        with pytest.raises(SecurityViolationError) as exc_info:
            await _ready(system)
        assert exc_info.value.code == "SECURITY_VIOLATION_BOUNDARY"
        assert docker_client.containers.by_name == {}

    @pytest.mark.asyncio
    async def test_shutdown_and_stop(self, system, docker_client) -> None:
        first = await _ready(system)
        await _ready(system)

        await system.stop_environment(first.container_id)
        assert docker_client.container(first.container_id).state == "exited"

        assert await system.shutdown() == 2
        assert system.list_environments() == []

    def test_defaults(self, system) -> None:
        assert system.default_security_config().network_isolation is True
        analysis = SecurityAssessmentSystem.default_analysis_config("solidity")
        assert analysis.analysis_tools == ["slither", "mythx", "solhint"]
        assert analysis.report_formats == ["json", "html"]


class TestConductAssessment:
    """Mount, analyze and report."""

    @pytest.mark.asyncio
    async def test_completed_report(self, system, docker_client, codebase: Path) -> None:
        env = await _ready(system)
        progress = []
        report = await system.conduct_assessment(
            env, codebase, progress=lambda message, pct: progress.append(pct)
        )

        assert isinstance(report, AssessmentReport)
        assert report.status == "completed"
        assert report.environment_id == env.id
        assert report.executed_steps[0] == "setup-nodejs"
        assert len(report.executed_steps) == 5
        assert report.summary.total_findings == 0
        assert report.metadata["codebase_type"] == "nodejs"
        assert env.status == EnvironmentStatus.COMPLETED
        assert env.results == report.results
        assert progress[0] == 0

        archives = docker_client.container(env.container_id).archives
        assert archives[0][0] == "/workspace"

    @pytest.mark.asyncio
    async def test_findings_are_summarised(self, settings, runtime, codebase: Path) -> None:
        system = _system_with(
            settings, runtime, FindingsAdapter([Severity.CRITICAL, Severity.HIGH, Severity.LOW])
        )
        env = await _ready(system)
        report = await system.conduct_assessment(env, codebase, "nodejs-standard")

        summary = report.summary
        assert summary.total_findings == 3
        assert summary.critical_findings == 1
        assert summary.high_findings == 1
        assert [f.tool for f in report.results.security_findings] == ["eslint"] * 3

    @pytest.mark.asyncio
    async def test_analysis_failure_yields_partial_report(
        self, settings, runtime, codebase: Path
    ) -> None:
        system = _system_with(settings, runtime, FindingsAdapter([], AnalysisError("eslint crashed")))
        env = await _ready(system)
        report = await system.conduct_assessment(env, codebase, "nodejs-standard")

        assert report.status == "partial"
        assert report.metadata["error"]["code"] == "PARTIAL_ANALYSIS_FAILURE"
        assert report.results.recommendations[-1].startswith("Assessment failed:")
        assert env.status == EnvironmentStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_workflow_yields_failed_report(self, system, codebase: Path) -> None:
        env = await _ready(system)
        report = await system.conduct_assessment(env, codebase, "solidity-standard")
        assert report.status == "failed"
        assert report.metadata["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_malicious_codebase_is_a_violation(
        self, system, docker_client, codebase: Path
    ) -> None:
        (codebase / "src" / "postinstall.js").write_text("require('child_process').exec('id')")
        env = await _ready(system)

        with pytest.raises(MaliciousCodeError):
            await system.conduct_assessment(env, codebase)
        assert env.status == EnvironmentStatus.FAILED
        assert docker_client.containers.by_name == {}
