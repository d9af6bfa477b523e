"""
Co-AI-Sandbox CLI — Command-line interface.

Usage:
    co-sandbox assess ./target-project
    co-sandbox assess ./contracts --type solidity --workflow deep-analysis
    co-sandbox assess ./target-project --allow-host registry.npmjs.org --json
    co-sandbox assess ~/src/app --allow-root ~/src
    co-sandbox workflows list
    co-sandbox workflows validate ./my-workflow.json
    co-sandbox cleanup
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from co_sandbox import __version__
from co_sandbox.config import SandboxSettings
from co_sandbox.errors import SecurityAssessmentError, SecurityViolationError
from co_sandbox.lifecycle import EnvironmentManager
from co_sandbox.models import (
    AnalysisConfiguration,
    CodebaseType,
    ResourceLimits,
    SecurityConfiguration,
)
from co_sandbox.runtime import ContainerRuntime
from co_sandbox.security import detect_stack
from co_sandbox.system import AssessmentReport, SecurityAssessmentSystem
from co_sandbox.workflows import PredefinedWorkflows, WorkflowDefinitionManager

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {"completed": "green", "partial": "yellow", "failed": "red"}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


def guess_codebase_type(target: Path) -> CodebaseType:
    languages, _ = detect_stack(target)
    has_js = bool({"javascript", "typescript"} & set(languages))
    if has_js and "solidity" in languages:
        return CodebaseType.MIXED
    if "solidity" in languages:
        return CodebaseType.SOLIDITY
    return CodebaseType.NODEJS


@click.group()
@click.version_option(version=__version__, prog_name="co-ai-sandbox")
def main() -> None:
    """Co-AI-Sandbox: isolated container sandboxes for security assessments."""


@main.command()
@click.argument("target", type=click.Path(exists=True))
@click.option(
    "--type",
    "codebase_type",
    type=click.Choice([t.value for t in CodebaseType], case_sensitive=False),
    default=None,
    help="Codebase type (detected from TARGET when omitted).",
)
@click.option("--workflow", type=str, default=None, help="Built-in workflow name or JSON file.")
@click.option("--quick", is_flag=True, help="Auto-select the quick-scan workflow.")
@click.option(
    "--allow-host", "allowed_hosts", multiple=True, help="Host reachable from the sandbox."
)
@click.option("--no-isolation", is_flag=True, help="Attach the sandbox to the bridge network.")
@click.option(
    "--allow-root",
    "allowed_roots",
    multiple=True,
    type=click.Path(exists=True, file_okay=False),
    help="Extra host directory codebases may be copied from.",
)
@click.option("--memory", type=str, default=None, help="Memory cap, e.g. 512m.")
@click.option("--cpu", type=str, default=None, help="CPU cap in cores, e.g. 1.0.")
@click.option("--config", type=click.Path(exists=True), default=None, help="YAML config file.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
def assess(
    target: str,
    codebase_type: str | None,
    workflow: str | None,
    quick: bool,
    allowed_hosts: tuple[str, ...],
    no_isolation: bool,
    allowed_roots: tuple[str, ...],
    memory: str | None,
    cpu: str | None,
    config: str | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Run a sandboxed security assessment of TARGET."""
    configure_logging(verbose)

    settings = SandboxSettings.from_file(Path(config)) if config else SandboxSettings()
    settings.verbose = verbose
    settings.workflow.quick_scan = quick

    target_path = Path(target).resolve()
    settings.allowed_source_roots.extend(Path(root) for root in allowed_roots)

    security = settings.security.to_security_configuration()
    overrides: dict = {}
    if no_isolation:
        overrides["network_isolation"] = False
    if allowed_hosts:
        overrides["allowed_network_access"] = list(allowed_hosts)
    if memory or cpu:
        overrides["resource_limits"] = ResourceLimits(
            cpu=cpu or security.resource_limits.cpu,
            memory=memory or security.resource_limits.memory,
            disk_space=security.resource_limits.disk_space,
        )
    if overrides:
        security = security.model_copy(update=overrides)

    kind = CodebaseType(codebase_type) if codebase_type else guess_codebase_type(target_path)
    analysis = SecurityAssessmentSystem.default_analysis_config(kind)

    if not as_json:
        console.print(
            Panel.fit(
                f"[bold cyan]Co-AI-Sandbox[/bold cyan] v{__version__}\n"
                f"[dim]Target: {target_path} ({kind.value})[/dim]",
                border_style="cyan",
            )
        )

    try:
        report = asyncio.run(_run_assessment(settings, security, analysis, target_path, workflow))
    except SecurityViolationError as exc:
        console.print(f"[bold red]Security violation:[/bold red] {exc.message} ({exc.code})")
        sys.exit(3)
    except SecurityAssessmentError as exc:
        console.print(f"[red]Error:[/red] {exc.message} ({exc.code})")
        sys.exit(2)

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        _print_report(report)

    if report.status == "failed":
        sys.exit(2)
    # Non-zero = findings exist (useful for CI)
    sys.exit(1 if report.summary.total_findings else 0)


async def _run_assessment(
    settings: SandboxSettings,
    security: SecurityConfiguration,
    analysis: AnalysisConfiguration,
    target: Path,
    workflow: str | None,
) -> AssessmentReport:
    system = SecurityAssessmentSystem(settings)
    environment = await system.create_secure_assessment_environment(security, analysis)
    try:
        return await system.conduct_assessment(environment, target, workflow)
    finally:
        await system.cleanup_assessment(environment.container_id)


def _print_report(report: AssessmentReport) -> None:
    summary = report.summary
    style = STATUS_STYLES[report.status]

    table = Table(title="Assessment Summary", border_style=style)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Status", f"[{style}]{report.status}[/{style}]")
    table.add_row("Duration", f"{summary.duration_ms / 1000:.1f}s")
    table.add_row("Total Findings", str(summary.total_findings))
    table.add_row("  Critical", str(summary.critical_findings))
    table.add_row("  High", str(summary.high_findings))
    table.add_row("Tests Passed", str(summary.tests_passed))
    table.add_row("Tests Failed", str(summary.tests_failed))
    table.add_row("Tests Skipped", str(summary.tests_skipped))
    table.add_row("Steps Executed", str(len(report.executed_steps)))
    if report.skipped_steps:
        table.add_row("Steps Skipped", ", ".join(report.skipped_steps))

    console.print()
    console.print(table)
    for recommendation in report.results.recommendations:
        console.print(f"  [yellow]•[/yellow] {recommendation}")
    console.print()


@main.command()
@click.option("--output", type=click.Path(), default=".co-sandbox.yml", help="Output YAML file path.")
def init(output: str) -> None:
    """Generate a default configuration file."""
    output_path = Path(output)
    SandboxSettings().to_file(output_path)

    console.print(f"[green]✓[/green] Config written to [bold]{output_path}[/bold]")
    console.print("[dim]Edit this file to customize sandbox policy and workflows.[/dim]")


@main.group()
def workflows() -> None:
    """Inspect, validate and scaffold workflow definitions."""


@workflows.command(name="list")
@click.option(
    "--type",
    "codebase_type",
    type=click.Choice([t.value for t in CodebaseType], case_sensitive=False),
    default=None,
    help="Only show workflows supporting this codebase type.",
)
def workflows_list(codebase_type: str | None) -> None:
    """List the built-in workflows."""
    catalogue = (
        PredefinedWorkflows.compatible(codebase_type) if codebase_type else PredefinedWorkflows.all()
    )

    table = Table(title="Built-in Workflows", border_style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Codebase Types")
    table.add_column("Steps", justify="right")
    table.add_column("Description")
    for definition in catalogue:
        table.add_row(
            definition.name,
            definition.version,
            ", ".join(definition.codebase_types),
            str(len(definition.steps)),
            definition.description,
        )
    console.print(table)


@workflows.command(name="validate")
@click.argument("file", type=click.Path(exists=True))
def workflows_validate(file: str) -> None:
    """Validate a workflow FILE."""
    try:
        definition = WorkflowDefinitionManager.load_from_file(Path(file))
    except SecurityAssessmentError as exc:
        console.print(f"[red]✗[/red] {file} is invalid")
        for problem in exc.context.get("problems", [exc.message]):
            console.print(f"  [red]•[/red] {problem}")
        sys.exit(1)

    console.print(
        f"[green]✓[/green] [bold]{definition.name}[/bold] v{definition.version} "
        f"({len(definition.steps)} steps) is valid"
    )


@workflows.command(name="template")
@click.argument("name")
@click.option(
    "--type",
    "codebase_type",
    type=click.Choice([t.value for t in CodebaseType], case_sensitive=False),
    default=CodebaseType.NODEJS.value,
)
@click.option("--output", type=click.Path(), default=None, help="Output JSON file path.")
def workflows_template(name: str, codebase_type: str, output: str | None) -> None:
    """Write a starter workflow called NAME."""
    template = WorkflowDefinitionManager.create_template(name, codebase_type)
    output_path = Path(output) if output else Path(f"{name}.json")
    WorkflowDefinitionManager.save_to_file(template, output_path)
    console.print(f"[green]✓[/green] Workflow template written to [bold]{output_path}[/bold]")


@main.command()
@click.option("--config", type=click.Path(exists=True), default=None, help="YAML config file.")
def cleanup(config: str | None) -> None:
    """Remove every labelled sandbox left on the Docker host."""
    configure_logging(False)
    settings = SandboxSettings.from_file(Path(config)) if config else SandboxSettings()
    manager = EnvironmentManager(ContainerRuntime.from_env(settings.docker), settings)
    removed = asyncio.run(manager.cleanup_orphaned_sandboxes())
    console.print(f"[green]✓[/green] Removed {removed} sandbox(es)")


if __name__ == "__main__":
    main()
