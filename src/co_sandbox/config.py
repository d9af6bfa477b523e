"""Configuration management for Co-AI-Sandbox."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from co_sandbox.models import (
    AlertThresholds,
    FilesystemAccess,
    ResourceLimits,
    SecurityConfiguration,
)

# Auto-load .env file if present
load_dotenv()


class DockerConfig(BaseModel):
    """Docker daemon and base image configuration."""

    base_url: str | None = Field(default_factory=lambda: os.environ.get("CO_SANDBOX_DOCKER_HOST"))
    timeout_seconds: int = Field(default=60, ge=5, le=600)
    node_image: str = "node:20-alpine"
    solidity_image: str = "ethereum/solc:stable"
    stop_timeout_seconds: int = Field(default=10, ge=0, le=120)
    enforce_disk_quota: bool = False


class SecurityDefaults(BaseModel):
    """Default isolation policy applied to new environments."""

    network_isolation: bool = True
    allowed_network_access: list[str] = Field(default_factory=list)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    filesystem_access: FilesystemAccess = Field(default_factory=FilesystemAccess)
    security_policies: list[str] = Field(
        default_factory=lambda: ["no-privileged", "no-host-network", "no-host-pid"]
    )

    def to_security_configuration(self) -> SecurityConfiguration:
        return SecurityConfiguration.model_validate(self.model_dump())


class MonitorConfig(BaseModel):
    """Network activity monitor configuration."""

    enabled: bool = True
    sample_interval_seconds: float = Field(default=5.0, gt=0, le=300)
    window_seconds: float = Field(default=60.0, gt=0)
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class GatekeeperConfig(BaseModel):
    """External resource gatekeeping configuration."""

    allowed_registries: list[str] = Field(
        default_factory=lambda: ["registry.npmjs.org", "docker.io", "ghcr.io", "quay.io"]
    )
    integrity_checks: bool = True
    checksum_algorithm: str = "sha256"
    max_download_size: str = "100m"
    download_timeout_seconds: float = Field(default=300.0, gt=0)
    download_dir: str = "/tmp/downloads"
    install_dir: str = "/tmp/install"


class ResilienceConfig(BaseModel):
    """Circuit breaker and recovery configuration."""

    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_timeout_seconds: float = Field(default=60.0, gt=0)
    max_recovery_attempts: int = Field(default=3, ge=0, le=10)
    max_checkpoints: int = Field(default=10, ge=1)


class WorkflowConfig(BaseModel):
    """Workflow execution configuration."""

    workspace_path: str = "/workspace"
    output_path: str = "/output"
    default_step_timeout_seconds: float = Field(default=300.0, gt=0)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    degrade_on_failure: bool = False
    quick_scan: bool = False


class SandboxSettings(BaseModel):
    """Master configuration for Co-AI-Sandbox."""

    docker: DockerConfig = Field(default_factory=DockerConfig)
    security: SecurityDefaults = Field(default_factory=SecurityDefaults)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    gatekeeper: GatekeeperConfig = Field(default_factory=GatekeeperConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)

    allowed_source_roots: list[Path] = Field(default_factory=list)

    verbose: bool = False
    debug: bool = False

    @classmethod
    def from_file(cls, config_path: Path) -> SandboxSettings:
        """Load configuration from YAML file."""
        import yaml

        with open(config_path) as fh:
            raw = yaml.safe_load(fh)
        return cls.model_validate(raw or {})

    def to_file(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        import yaml

        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json", exclude_none=True)
        with open(config_path, "w") as fh:
            yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
