"""Tests for workflow definitions, the built-in catalogue, adapters and the executor."""

import asyncio
import json
from pathlib import Path

import pytest

from co_sandbox.config import WorkflowConfig
from co_sandbox.errors import (
    AnalysisError,
    MaliciousCodeError,
    PartialAnalysisError,
    ValidationError,
    WorkflowExecutionError,
)
from co_sandbox.models import (
    AnalysisConfiguration,
    AnalysisResults,
    AssessmentEnvironment,
    CodebaseType,
    ConditionOperator,
    ConditionType,
    SecurityConfiguration,
    StepCondition,
    StepKind,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowStep,
)
from co_sandbox.resilience import RecoveryManager
from co_sandbox.workflows import (
    BUILTIN_WORKFLOWS,
    CommandAdapter,
    PlaceholderAdapter,
    PredefinedWorkflows,
    SetupAdapter,
    ToolAdapter,
    ToolRegistry,
    WorkflowDefinitionManager,
    WorkflowExecutor,
)
from co_sandbox.workflows.executor import plan_units


class ScriptedAdapter(ToolAdapter):
    """Adapter whose behaviour per step name is scripted by the test."""

    name = "scripted"

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.delays: dict[str, float] = {}

    def fail(self, step: str, error: Exception, times: int = 10) -> None:
        self.failures[step] = [error] * times

    async def run(self, step: WorkflowStep, context: WorkflowContext) -> AnalysisResults:
        self.calls.append(step.name)
        if step.name in self.delays:
            await asyncio.sleep(self.delays[step.name])
        pending = self.failures.get(step.name)
        if pending:
            raise pending.pop(0)
        return AnalysisResults(recommendations=[f"{step.name} done"])


def _step(name: str, **kwargs) -> WorkflowStep:
    return WorkflowStep(name=name, tool=kwargs.pop("tool", "scripted"), **kwargs)


def _workflow(*steps: WorkflowStep, parallel=(), cleanup=()) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="under-test",
        version="1.0.0",
        codebase_types=["nodejs"],
        steps=list(steps),
        parallel_steps=[list(group) for group in parallel],
        cleanup=list(cleanup),
    )


def _environment(codebase_type: CodebaseType = CodebaseType.NODEJS) -> AssessmentEnvironment:
    return AssessmentEnvironment(
        id="sbx",
        container_id="sbx",
        security_config=SecurityConfiguration(),
        analysis_config=AnalysisConfiguration(codebase_type=codebase_type),
    )


def _context(**kwargs) -> WorkflowContext:
    return WorkflowContext(container_id="sbx", **kwargs)


@pytest.fixture
def sandbox(docker_client):
    return docker_client.containers.create(name="sbx", network_mode="none")


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def executor(runtime, sandbox, adapter) -> WorkflowExecutor:
    registry = ToolRegistry()
    registry.register(adapter)
    return WorkflowExecutor(
        runtime,
        registry=registry,
        recovery=RecoveryManager(),
        config=WorkflowConfig(backoff_base_seconds=0.0),
    )


class TestDefinitionValidation:
    """Parsing and structural checks."""

    def test_parse_valid(self) -> None:
        workflow = WorkflowDefinitionManager.parse(
            {
                "name": "custom",
                "version": "1.0.0",
                "codebaseTypes": ["nodejs"],
                "steps": [{"name": "lint", "tool": "eslint"}],
            }
        )
        assert workflow.steps[0].tool == "eslint"

    def test_collects_structural_problems(self) -> None:
        workflow = _workflow(
            _step("lint", timeout=-1),
            _step("lint", retries=-2),
            _step("scan", condition=StepCondition(type=ConditionType.CUSTOM, value=" ")),
            parallel=[["lint", "ghost"], ["lint"]],
        )
        workflow.codebase_types = []

        problems = WorkflowDefinitionManager.validate_workflow(workflow)
        assert "Workflow must specify supported codebase types" in problems
        assert "Step lint timeout must be a positive number" in problems
        assert "Step lint retries must be a non-negative number" in problems
        assert "Duplicate step name: lint" in problems
        assert "Step scan condition must have a valid value" in problems
        assert "Parallel step reference not found: ghost" in problems
        assert "Step lint appears in more than one parallel group" in problems

    def test_empty_workflow(self) -> None:
        problems = WorkflowDefinitionManager.validate_workflow(
            WorkflowDefinition(name=" ", version="", codebase_types=["nodejs"])
        )
        assert problems == [
            "Workflow must have a valid name",
            "Workflow must have a valid version",
            "Workflow must have at least one step",
        ]

    def test_schema_errors_are_listed(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            WorkflowDefinitionManager.parse(
                {"name": "x", "version": "1", "codebaseTypes": ["*"], "steps": [{"name": "a"}]}
            )
        assert any("steps.0.tool" in p for p in exc_info.value.context["problems"])

    def test_file_round_trip(self, temp_dir: Path) -> None:
        template = WorkflowDefinitionManager.create_template("mine", "solidity")
        path = temp_dir / "flows" / "mine.json"
        WorkflowDefinitionManager.save_to_file(template, path)

        raw = json.loads(path.read_text())
        assert raw["codebaseTypes"] == ["solidity"]
        assert WorkflowDefinitionManager.load_from_file(path) == template

    def test_refuses_to_save_invalid(self, temp_dir: Path) -> None:
        with pytest.raises(ValidationError):
            WorkflowDefinitionManager.save_to_file(
                WorkflowDefinition(name="x", version="1", codebase_types=["*"]),
                temp_dir / "x.json",
            )
        assert not (temp_dir / "x.json").exists()

    def test_load_errors(self, temp_dir: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            WorkflowDefinitionManager.load_from_file(temp_dir / "nope.json")

        broken = temp_dir / "broken.json"
        broken.write_text("{not json")
        with pytest.raises(ValidationError, match="Invalid workflow file"):
            WorkflowDefinitionManager.load_from_file(broken)

    def test_compatibility_and_groups(self) -> None:
        workflow = _workflow(_step("a"), _step("b"), parallel=[["a", "b"]])
        assert WorkflowDefinitionManager.is_compatible(workflow, "nodejs")
        assert not WorkflowDefinitionManager.is_compatible(workflow, "solidity")
        assert WorkflowDefinitionManager.get_parallel_steps(workflow) == {"parallel-0": ["a", "b"]}


class TestConditions:
    """Step condition evaluation."""

    @pytest.mark.asyncio
    async def test_file_exists(self, runtime, docker_client, sandbox) -> None:
        manager = WorkflowDefinitionManager(runtime)
        condition = StepCondition(type=ConditionType.FILE_EXISTS, value="package.json")

        assert await manager.evaluate_condition(condition, _context())
        assert "sh -c test -e /workspace/package.json" in sandbox.commands

        docker_client.on_exec("test -e", exit_code=1)
        assert not await manager.evaluate_condition(condition, _context())

    @pytest.mark.asyncio
    async def test_file_exists_without_runtime(self) -> None:
        condition = StepCondition(type=ConditionType.FILE_EXISTS, value="package.json")
        assert not await WorkflowDefinitionManager().evaluate_condition(condition, _context())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("operator", "value", "expected"),
        [
            (None, "solidity", True),
            (ConditionOperator.EQUALS, "solid", False),
            (ConditionOperator.CONTAINS, "solid", True),
            (ConditionOperator.MATCHES, r"^type", True),
            (ConditionOperator.MATCHES, r"([", False),
        ],
    )
    async def test_language_operators(self, operator, value, expected) -> None:
        condition = StepCondition(
            type=ConditionType.LANGUAGE_DETECTED, value=value, operator=operator
        )
        context = _context(detected_languages=["solidity", "typescript"])
        assert await WorkflowDefinitionManager().evaluate_condition(condition, context) is expected

    @pytest.mark.asyncio
    async def test_framework_and_custom(self) -> None:
        manager = WorkflowDefinitionManager()
        context = _context(detected_frameworks=["hardhat"])
        framework = StepCondition(type=ConditionType.FRAMEWORK_DETECTED, value="truffle")
        custom = StepCondition(type=ConditionType.CUSTOM, value="anything")
        assert not await manager.evaluate_condition(framework, context)
        assert await manager.evaluate_condition(custom, context)


class TestPredefinedWorkflows:
    """Built-in catalogue."""

    def test_all_builtins_are_valid(self) -> None:
        catalogue = PredefinedWorkflows.all()
        assert [w.name for w in catalogue] == BUILTIN_WORKFLOWS
        for workflow in catalogue:
            assert WorkflowDefinitionManager.validate_workflow(workflow) == []

    def test_get_returns_independent_copies(self) -> None:
        first = PredefinedWorkflows.get("quick-scan")
        first.steps.clear()
        assert PredefinedWorkflows.get("quick-scan").steps
        assert PredefinedWorkflows.get("does-not-exist") is None

    def test_compatible(self) -> None:
        names = {w.name for w in PredefinedWorkflows.compatible("solidity")}
        assert {"solidity-standard", "quick-scan"} <= names
        assert "nodejs-standard" not in names

    @pytest.mark.parametrize(
        ("codebase_type", "languages", "quick", "expected"),
        [
            ("nodejs", ["javascript"], False, "nodejs-standard"),
            ("solidity", [], False, "solidity-standard"),
            ("mixed", [], False, "mixed-comprehensive"),
            ("nodejs", ["javascript", "solidity"], False, "mixed-comprehensive"),
            ("solidity", ["solidity"], True, "quick-scan"),
        ],
    )
    def test_auto_select(self, codebase_type, languages, quick, expected) -> None:
        selected = PredefinedWorkflows.auto_select(codebase_type, languages, [], quick_scan=quick)
        assert selected.name == expected


class TestAdapters:
    """Registry and built-in adapters."""

    def test_registry(self, runtime) -> None:
        registry = ToolRegistry.with_builtins(runtime)
        assert registry.tools == ["command", "setup"]
        assert isinstance(registry.resolve("setup"), SetupAdapter)
        assert isinstance(registry.resolve("eslint"), PlaceholderAdapter)
        assert not registry.is_registered("eslint")

    @pytest.mark.asyncio
    async def test_placeholder_yields_nothing(self) -> None:
        results = await PlaceholderAdapter("slither").run(_step("scan"), _context())
        assert results == AnalysisResults()

    @pytest.mark.asyncio
    async def test_setup_installs_when_manifest_present(self, runtime, sandbox) -> None:
        step = _step("setup", tool="setup", config={"installDependencies": True})
        await SetupAdapter(runtime).run(step, _context())

        assert sandbox.commands[0] == "mkdir -p /output"
        assert any("npm ci --ignore-scripts" in cmd for cmd in sandbox.commands)

    @pytest.mark.asyncio
    async def test_setup_minimal_skips_install(self, runtime, sandbox) -> None:
        step = _step("setup", tool="setup", config={"installDependencies": True, "minimal": True})
        await SetupAdapter(runtime).run(step, _context())
        assert sandbox.commands == ["mkdir -p /output"]

    @pytest.mark.asyncio
    async def test_setup_failed_install_is_a_recommendation(
        self, runtime, docker_client, sandbox
    ) -> None:
        docker_client.on_exec("npm ci", exit_code=1, stderr="ERESOLVE")
        step = _step("setup", tool="setup", config={"installDependencies": True})
        results = await SetupAdapter(runtime).run(step, _context())
        assert "could not be installed" in results.recommendations[0]

    @pytest.mark.asyncio
    async def test_setup_output_dir_failure(self, runtime, docker_client, sandbox) -> None:
        docker_client.on_exec("mkdir", exit_code=1, stderr="read-only file system")
        with pytest.raises(AnalysisError):
            await SetupAdapter(runtime).run(_step("setup", tool="setup"), _context())

    @pytest.mark.asyncio
    async def test_command_adapter(self, runtime, docker_client, sandbox) -> None:
        adapter = CommandAdapter(runtime)
        await adapter.run(_step("hello", tool="command", command=["echo", "hi"]), _context())
        assert "echo hi" in sandbox.commands

        docker_client.on_exec("false", exit_code=1)
        with pytest.raises(AnalysisError, match="exited with 1"):
            await adapter.run(_step("fail", tool="command", config={"command": "false"}), _context())

        with pytest.raises(AnalysisError, match="no command"):
            await adapter.run(_step("empty", tool="command"), _context())


class TestPlanning:
    def test_sequential_steps_run_before_parallel_groups(self) -> None:
        workflow = _workflow(
            _step("a"), _step("b"), _step("x"), _step("c"), _step("y"), _step("z"),
            parallel=[["c", "b"], ["z", "y"]],
        )
        units = [[s.name for s in unit] for unit in plan_units(workflow)]
        assert units == [["a"], ["x"], ["b", "c"], ["y", "z"]]

    @pytest.mark.asyncio
    async def test_group_declared_first_still_runs_last(self, executor, adapter) -> None:
        workflow = _workflow(
            _step("left"), _step("right"), _step("first"), _step("second"),
            parallel=[["left", "right"]],
        )
        result = await executor.execute_workflow(_environment(), workflow)

        assert result.executed_steps[:2] == ["first", "second"]
        assert set(result.executed_steps[2:]) == {"left", "right"}
        assert adapter.calls[:2] == ["first", "second"]


class TestExecutor:
    """Running workflows against a sandbox."""

    @pytest.mark.asyncio
    async def test_sequential_and_parallel_steps_all_run(self, executor, adapter) -> None:
        workflow = _workflow(
            _step("first"), _step("second"), _step("left"), _step("right"),
            parallel=[["left", "right"]],
        )
        result = await executor.execute_workflow(_environment(), workflow)

        assert result.success
        assert result.executed_steps[:2] == ["first", "second"]
        assert set(result.executed_steps[2:]) == {"left", "right"}
        assert len(result.results.recommendations) == 4
        assert result.duration_ms >= 0

        checkpoints = executor.recovery.get_checkpoints("sbx")
        assert [c.step_name for c in checkpoints] == result.executed_steps

    @pytest.mark.asyncio
    async def test_conditions_skip_steps(self, executor, adapter, docker_client) -> None:
        docker_client.on_exec("test -e", exit_code=1)
        workflow = _workflow(
            _step("lint"),
            _step(
                "contracts",
                condition=StepCondition(type=ConditionType.LANGUAGE_DETECTED, value="solidity"),
            ),
            _step(
                "audit",
                condition=StepCondition(type=ConditionType.FILE_EXISTS, value="package.json"),
            ),
        )
        result = await executor.execute_workflow(_environment(), workflow)
        assert result.executed_steps == ["lint"]
        assert result.skipped_steps == ["contracts", "audit"]
        assert adapter.calls == ["lint"]

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, executor, adapter) -> None:
        adapter.fail("flaky", AnalysisError("tool not ready"), times=1)
        result = await executor.execute_workflow(_environment(), _workflow(_step("flaky", retries=1)))
        assert result.success
        assert adapter.calls == ["flaky", "flaky"]

    @pytest.mark.asyncio
    async def test_continue_on_error(self, executor, adapter) -> None:
        adapter.fail("optional-lint", AnalysisError("lint crashed"))
        workflow = _workflow(_step("optional-lint", continue_on_error=True), _step("scan"))
        result = await executor.execute_workflow(_environment(), workflow)

        assert not result.success
        assert result.executed_steps == ["scan"]
        assert result.errors[0].step == "optional-lint"
        assert result.errors[0].recoverable is True

    @pytest.mark.asyncio
    async def test_step_timeout(self, executor, adapter) -> None:
        adapter.delays["slow"] = 5
        workflow = _workflow(_step("slow", timeout=0.05, continue_on_error=True))
        result = await executor.execute_workflow(_environment(), workflow)
        assert result.errors[0].code == "TIMEOUT_ERROR"

    @pytest.mark.asyncio
    async def test_abort_before_progress(self, executor, adapter) -> None:
        adapter.fail("first", AnalysisError("broken"))
        workflow = _workflow(_step("first"), _step("second"))
        with pytest.raises(WorkflowExecutionError, match="failed at step first"):
            await executor.execute_workflow(_environment(), workflow)
        assert adapter.calls == ["first"]

    @pytest.mark.asyncio
    async def test_abort_preserves_partial_results(self, executor, adapter) -> None:
        adapter.fail("second", AnalysisError("broken"))
        workflow = _workflow(_step("first"), _step("second"), _step("third"))

        with pytest.raises(PartialAnalysisError) as exc_info:
            await executor.execute_workflow(_environment(), workflow)

        error = exc_info.value
        assert error.completed_steps == ["first"]
        assert error.failed_steps == ["second"]
        assert "third" not in adapter.calls
        preserved = executor.recovery.get_preserved_data("sbx")
        assert preserved["partial_results"]["recommendations"] == ["first done"]

    @pytest.mark.asyncio
    async def test_violation_propagates_from_parallel_group(self, executor, adapter) -> None:
        adapter.fail("right", MaliciousCodeError("payload in output"))
        workflow = _workflow(
            _step("left"), _step("right", continue_on_error=True), parallel=[["left", "right"]]
        )
        with pytest.raises(MaliciousCodeError):
            await executor.execute_workflow(_environment(), workflow)

    @pytest.mark.asyncio
    async def test_cleanup_always_runs_and_never_raises(self, executor, adapter) -> None:
        adapter.fail("first", AnalysisError("broken"))
        adapter.fail("tidy", AnalysisError("tidy failed"))
        workflow = _workflow(_step("first"), cleanup=[_step("tidy"), _step("sweep")])

        with pytest.raises(WorkflowExecutionError):
            await executor.execute_workflow(_environment(), workflow)
        assert adapter.calls == ["first", "tidy", "sweep"]

    @pytest.mark.asyncio
    async def test_progress_reports(self, executor) -> None:
        seen = []
        workflow = _workflow(
            _step("a"), _step("b"), _step("c"), _step("d"),
            parallel=[["b", "c"]],
            cleanup=[_step("tidy")],
        )
        await executor.execute_workflow(
            _environment(), workflow, progress=lambda message, pct: seen.append((message, pct))
        )
        assert seen == [
            ("Executing: a", 0),
            ("Executing: d", 25),
            ("Executing: b, c", 50),
            ("Running cleanup steps", 95),
        ]

    @pytest.mark.asyncio
    async def test_recovery_continues_after_partial_failure(self, executor, adapter) -> None:
        executor.config.degrade_on_failure = True
        adapter.fail("lint", AnalysisError("lint crashed"))
        workflow = _workflow(_step("setup"), _step("lint"), _step("report"))

        result = await executor.execute_workflow(_environment(), workflow)
        assert not result.success
        assert result.executed_steps == ["setup", "report"]
        assert [e.step for e in result.errors] == ["lint"]

    @pytest.mark.asyncio
    async def test_degradation_skips_and_shrinks(self, executor, adapter) -> None:
        executor.config.degrade_on_failure = True
        adapter.fail("lint", AnalysisError("lint crashed"))
        workflow = _workflow(
            _step("lint"),
            _step("unit-tests", kind=StepKind.TEST),
            _step("audit", timeout=60),
        )

        result = await executor.execute_workflow(_environment(), workflow)
        assert result.executed_steps == ["audit"]
        assert result.skipped_steps == ["unit-tests"]
        assert any("1 optional steps were skipped" in r for r in result.results.recommendations)


class TestWorkflowResolution:
    """Selecting the workflow to run."""

    def test_auto_select_from_environment(self, executor) -> None:
        env = _environment()
        workflow = executor.resolve_workflow(env, None, executor.create_context(env))
        assert workflow.name == "nodejs-standard"

    def test_quick_scan_switch(self, executor) -> None:
        executor.config.quick_scan = True
        env = _environment(CodebaseType.SOLIDITY)
        assert executor.resolve_workflow(env, None, executor.create_context(env)).name == "quick-scan"

    def test_builtin_by_name_and_incompatible(self, executor) -> None:
        env = _environment()
        context = executor.create_context(env)
        assert executor.resolve_workflow(env, "deep-analysis", context).name == "deep-analysis"
        with pytest.raises(ValidationError, match="does not support"):
            executor.resolve_workflow(env, "solidity-standard", context)

    def test_from_file(self, executor, temp_dir: Path) -> None:
        path = temp_dir / "custom.json"
        WorkflowDefinitionManager.save_to_file(
            WorkflowDefinitionManager.create_template("custom", "nodejs"), path
        )
        env = _environment()
        assert executor.resolve_workflow(env, str(path), executor.create_context(env)).name == "custom"

    def test_invalid_definition(self, executor) -> None:
        env = _environment()
        with pytest.raises(ValidationError):
            executor.resolve_workflow(env, _workflow(), executor.create_context(env))

    def test_context_merges_host_detection(self, executor) -> None:
        env = _environment(CodebaseType.MIXED)
        env.analysis_config.test_frameworks = ["hardhat", "cypress"]
        context = executor.create_context(env, languages=["javascript"], frameworks=["jest"])
        assert context.detected_languages == ["javascript", "solidity", "typescript"]
        assert context.detected_frameworks == ["hardhat", "jest"]
        assert context.workspace_path == "/workspace"
