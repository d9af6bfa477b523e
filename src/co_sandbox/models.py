"""
Data model — Environments, policies, network activity, workflows and results.

All records are pydantic models so they validate on construction and
serialize to JSON/YAML without extra glue.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from co_sandbox.errors import ValidationError

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

_MEMORY_PATTERN = re.compile(r"^(\d+)([kmg]?)$", re.IGNORECASE)
_UNIT_FACTORS = {"": 1, "k": KIB, "m": MIB, "g": GIB}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_memory(value: str) -> int:
    """Convert a ``<int>[k|m|g]`` memory string to bytes."""
    match = _MEMORY_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid memory format: {value}")
    return int(match.group(1)) * _UNIT_FACTORS[match.group(2).lower()]


def format_memory(num_bytes: int) -> str:
    """Render bytes using the largest whole unit."""
    if num_bytes >= GIB:
        return f"{num_bytes // GIB}g"
    if num_bytes >= MIB:
        return f"{num_bytes // MIB}m"
    if num_bytes >= KIB:
        return f"{num_bytes // KIB}k"
    return str(num_bytes)


def parse_cpu(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid CPU format: {value}") from exc


class EnvironmentStatus(str, Enum):
    """Lifecycle states of an assessment environment."""

    CREATING = "creating"
    READY = "ready"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


_FORWARD_ORDER = [
    EnvironmentStatus.CREATING,
    EnvironmentStatus.READY,
    EnvironmentStatus.ANALYZING,
    EnvironmentStatus.COMPLETED,
]


class CodebaseType(str, Enum):
    """Kinds of codebase the sandbox knows how to provision for."""

    NODEJS = "nodejs"
    SOLIDITY = "solidity"
    MIXED = "mixed"


class Severity(str, Enum):
    """Finding severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ResourceLimits(BaseModel):
    """Resource caps submitted to the container runtime."""

    cpu: str = "1.0"
    memory: str = "512m"
    disk_space: str = "1g"

    @property
    def memory_bytes(self) -> int:
        return parse_memory(self.memory)

    @property
    def cpu_cores(self) -> float:
        return parse_cpu(self.cpu)


class FilesystemAccess(BaseModel):
    """Mount permission layout inside the sandbox."""

    read_only_mounts: list[str] = Field(default_factory=lambda: ["/code"])
    writable_mounts: list[str] = Field(default_factory=lambda: ["/tmp", "/output"])


class SecurityConfiguration(BaseModel):
    """Isolation policy for one environment. Frozen once the environment exists."""

    model_config = ConfigDict(frozen=True)

    network_isolation: bool = True
    allowed_network_access: list[str] = Field(default_factory=list)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    filesystem_access: FilesystemAccess = Field(default_factory=FilesystemAccess)
    security_policies: list[str] = Field(
        default_factory=lambda: ["no-privileged", "no-host-network", "no-host-pid"]
    )


class AnalysisConfiguration(BaseModel):
    """What to analyze and with which tools."""

    codebase_type: CodebaseType = CodebaseType.NODEJS
    analysis_tools: list[str] = Field(default_factory=list)
    test_frameworks: list[str] = Field(default_factory=list)
    report_formats: list[str] = Field(default_factory=lambda: ["json"])
    custom_workflows: list[str] = Field(default_factory=list)


class Location(BaseModel):
    file: str
    line: int | None = None
    column: int | None = None


class SecurityFinding(BaseModel):
    """Single security finding produced by an analysis tool."""

    id: str
    severity: Severity
    title: str
    description: str = ""
    location: Location
    tool: str
    category: str = ""
    recommendation: str | None = None


class CodeQualityIssue(BaseModel):
    id: str
    severity: Severity = Severity.LOW
    message: str
    location: Location
    tool: str
    rule: str = ""


class TestStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TestResult(BaseModel):
    name: str
    status: TestStatus
    duration_ms: float = 0.0
    message: str | None = None
    framework: str = ""


class PerformanceMetric(BaseModel):
    name: str
    value: float
    unit: str = ""
    tool: str = ""


class AnalysisResults(BaseModel):
    """Aggregated output of all workflow steps."""

    security_findings: list[SecurityFinding] = Field(default_factory=list)
    code_quality_issues: list[CodeQualityIssue] = Field(default_factory=list)
    test_results: list[TestResult] = Field(default_factory=list)
    performance_metrics: list[PerformanceMetric] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    def merge(self, other: AnalysisResults) -> None:
        """Append every category of ``other`` onto this accumulator (no dedup)."""
        self.security_findings.extend(other.security_findings)
        self.code_quality_issues.extend(other.code_quality_issues)
        self.test_results.extend(other.test_results)
        self.performance_metrics.extend(other.performance_metrics)
        self.recommendations.extend(other.recommendations)


class AssessmentEnvironment(BaseModel):
    """A provisioned sandbox and the configuration it was created with."""

    id: str
    container_id: str = ""
    status: EnvironmentStatus = EnvironmentStatus.CREATING
    security_config: SecurityConfiguration
    analysis_config: AnalysisConfiguration
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    results: AnalysisResults | None = None

    def transition(self, status: EnvironmentStatus) -> None:
        """
        Move to ``status``.

        Only forward moves along creating → ready → analyzing → completed
        are allowed; ``failed`` is reachable from anywhere and is terminal.

        Raises:
            ValidationError: If the move goes backwards or leaves ``failed``.
        """
        if status == self.status:
            return
        if status == EnvironmentStatus.FAILED:
            self.status = status
            return
        if self.status == EnvironmentStatus.FAILED or (
            _FORWARD_ORDER.index(status) < _FORWARD_ORDER.index(self.status)
        ):
            raise ValidationError(
                f"Illegal status transition {self.status.value} -> {status.value}",
                {"environment_id": self.id},
            )
        self.status = status
        if status == EnvironmentStatus.COMPLETED:
            self.completed_at = utcnow()


class ProxyConfig(BaseModel):
    host: str
    port: int = Field(ge=1, le=65535)
    username: str | None = None
    password: SecretStr | None = None


class NetworkConfig(BaseModel):
    """Network policy applied to one sandbox."""

    isolated: bool = True
    allowed_hosts: list[str] = Field(default_factory=list)
    proxy: ProxyConfig | None = None
    monitoring_enabled: bool = True


class NetworkAction(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    SUSPICIOUS = "suspicious"


class NetworkActivity(BaseModel):
    """One observed connection inside a sandbox."""

    timestamp: datetime = Field(default_factory=utcnow)
    container_id: str
    source_ip: str
    source_port: int = 0
    destination_ip: str
    destination_port: int = 0
    protocol: str = "tcp"
    action: NetworkAction = NetworkAction.ALLOWED
    bytes_transferred: int = 0
    reason: str | None = None


class SuspiciousPattern(BaseModel):
    """Static rule flagging anomalous network activity."""

    name: str
    description: str = ""
    ports: list[int] | None = None
    protocols: list[str] | None = None
    ip_ranges: list[str] | None = None
    severity: Severity = Severity.MEDIUM


class AlertThresholds(BaseModel):
    connections_per_minute: int = Field(default=50, ge=1)
    bytes_per_minute: int = Field(default=10 * MIB, ge=1)
    unique_destinations: int = Field(default=10, ge=1)


class ConditionType(str, Enum):
    FILE_EXISTS = "file-exists"
    LANGUAGE_DETECTED = "language-detected"
    FRAMEWORK_DETECTED = "framework-detected"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"


class StepCondition(BaseModel):
    type: ConditionType
    value: str
    operator: ConditionOperator | None = None


class StepKind(str, Enum):
    """Coarse step category used when degrading a workflow."""

    ANALYSIS = "analysis"
    TEST = "test"
    BUILD = "build"
    CUSTOM = "custom"


class WorkflowStep(BaseModel):
    """Single step of a workflow, as found in workflow JSON files."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    tool: str
    config: dict[str, Any] = Field(default_factory=dict)
    condition: StepCondition | None = None
    timeout: float | None = None
    retries: int | None = None
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    kind: StepKind = StepKind.ANALYSIS
    command: list[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Ordered plan of analysis steps plus optional parallel groups."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    version: str
    codebase_types: list[str] = Field(default_factory=list, alias="codebaseTypes")
    steps: list[WorkflowStep] = Field(default_factory=list)
    parallel_steps: list[list[str]] = Field(default_factory=list, alias="parallelSteps")
    cleanup: list[WorkflowStep] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkflowContext(BaseModel):
    """Where a workflow runs and what was detected about the codebase."""

    container_id: str
    workspace_path: str = "/workspace"
    output_path: str = "/output"
    codebase_type: CodebaseType = CodebaseType.NODEJS
    detected_languages: list[str] = Field(default_factory=list)
    detected_frameworks: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)


class WorkflowError(BaseModel):
    step: str
    message: str
    code: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    recoverable: bool = False


class WorkflowResult(BaseModel):
    success: bool
    results: AnalysisResults = Field(default_factory=AnalysisResults)
    executed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    errors: list[WorkflowError] = Field(default_factory=list)
    duration_ms: float = 0.0


class ErrorRecoveryState(BaseModel):
    """Per-environment progress and recovery bookkeeping."""

    container_id: str
    last_successful_step: str | None = None
    completed_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    partial_results: dict[str, Any] = Field(default_factory=dict)
    recovery_attempts: int = 0
    max_recovery_attempts: int = Field(default=3, ge=0)
    last_error: dict[str, Any] | None = None


class RecoveryCheckpoint(BaseModel):
    step_name: str
    timestamp: datetime = Field(default_factory=utcnow)
    state: ErrorRecoveryState
    results: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
