"""Structural validators for configuration objects and caller-supplied identifiers."""

from __future__ import annotations

import re

from co_sandbox.models import AnalysisConfiguration, SecurityConfiguration, parse_cpu, parse_memory

CONTAINER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
DISK_PATTERN = re.compile(r"^\d+[kmg]$", re.IGNORECASE)
REPORT_FORMATS = {"json", "html", "markdown", "sarif"}


def validate_security_configuration(config: SecurityConfiguration) -> list[str]:
    """Return a list of problems; empty when the configuration is usable."""
    errors: list[str] = []
    limits = config.resource_limits

    if not limits.cpu:
        errors.append("CPU limit is required")
    else:
        try:
            if parse_cpu(limits.cpu) <= 0:
                errors.append("CPU limit must be positive")
        except ValueError:
            errors.append(f"Invalid CPU format: {limits.cpu}")

    if not limits.memory:
        errors.append("Memory limit is required")
    else:
        try:
            parse_memory(limits.memory)
        except ValueError:
            errors.append(f"Invalid memory format: {limits.memory}")

    if not limits.disk_space:
        errors.append("Disk space limit is required")
    elif not DISK_PATTERN.match(limits.disk_space):
        errors.append(f"Invalid disk space format: {limits.disk_space}")

    for path in config.filesystem_access.read_only_mounts + config.filesystem_access.writable_mounts:
        if not path.startswith("/"):
            errors.append(f"Mount path must be absolute: {path}")

    return errors


def validate_analysis_configuration(config: AnalysisConfiguration) -> list[str]:
    errors: list[str] = []
    unknown = sorted(set(config.report_formats) - REPORT_FORMATS)
    if unknown:
        errors.append(
            f"Unsupported report formats: {', '.join(unknown)} "
            f"(supported: {', '.join(sorted(REPORT_FORMATS))})"
        )
    if any(not tool.strip() for tool in config.analysis_tools):
        errors.append("Analysis tool names must not be empty")
    return errors


def is_valid_container_id(container_id: str) -> bool:
    return 5 <= len(container_id) <= 100 and bool(CONTAINER_ID_PATTERN.match(container_id))


def sanitize_path(path: str) -> str:
    """Strip traversal segments and shell-unsafe characters from a path."""
    cleaned = path.replace("..", "")
    cleaned = re.sub(r"[^a-zA-Z0-9/\-_.]", "", cleaned)
    return re.sub(r"/+", "/", cleaned)
