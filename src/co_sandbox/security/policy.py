"""
Security Policy Engine — Network isolation, resource caps and filesystem rules.

Every daemon call that mutates a sandbox runs under ``with_retry`` with the
preset matching its operation class. Violations raise immediately and are
broadcast as security alerts.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any

from co_sandbox.errors import (
    NetworkSecurityViolationError,
    ResourceAllocationError,
    SecurityAssessmentError,
    SecurityViolationError,
)
from co_sandbox.events import (
    ALERT_THRESHOLD_EXCEEDED,
    SECURITY_ALERT,
    SUSPICIOUS_ACTIVITY,
    EventBus,
)
from co_sandbox.models import (
    GIB,
    MIB,
    FilesystemAccess,
    NetworkActivity,
    NetworkConfig,
    ResourceLimits,
    SecurityConfiguration,
    SuspiciousPattern,
    format_memory,
    parse_cpu,
    parse_memory,
)
from co_sandbox.resilience.retry import RetryPreset, preset, with_retry
from co_sandbox.runtime import ContainerRuntime, ipam_config
from co_sandbox.security.gatekeeper import ResourceGatekeeper
from co_sandbox.security.monitor import NetworkMonitor

logger = logging.getLogger(__name__)

MAX_ALLOWED_HOSTS = 100
MAX_HOSTNAME_LENGTH = 253
HOSTNAME_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
SENSITIVE_NETWORKS = {"host", "none", "container"}

MIN_MEMORY_BYTES = 64 * MIB
MAX_MEMORY_BYTES = 8 * GIB
MIN_CPU = 0.1
MAX_CPU = 4.0
DISK_PATTERN = re.compile(r"^(\d+)([kmg])$", re.IGNORECASE)
CPU_PERIOD = 100_000
HOST_CAPACITY_RATIO = 0.8
MIN_DEGRADED_DISK_BYTES = 100 * MIB

RESTRICTED_SUBNET = "172.20.0.0/16"
RESTRICTED_GATEWAY = "172.20.0.1"
SYSTEM_PATHS = ["/etc", "/usr", "/bin", "/sbin", "/lib"]


def is_valid_hostname(hostname: str) -> bool:
    return len(hostname) <= MAX_HOSTNAME_LENGTH and bool(HOSTNAME_PATTERN.match(hostname))


def validate_network_config(config: NetworkConfig) -> None:
    """
    Check the allowed-host list before anything touches the sandbox.

    Raises:
        NetworkSecurityViolationError: Too many hosts or a malformed hostname.
    """
    if len(config.allowed_hosts) > MAX_ALLOWED_HOSTS:
        raise NetworkSecurityViolationError(
            f"Too many allowed hosts specified (maximum {MAX_ALLOWED_HOSTS})",
            {"allowed_hosts_count": len(config.allowed_hosts)},
        )
    for host in config.allowed_hosts:
        if not is_valid_hostname(host):
            raise NetworkSecurityViolationError(
                f"Invalid hostname format: {host}", {"invalid_host": host}
            )


def validate_resource_limits(limits: ResourceLimits) -> tuple[int, float]:
    """
    Check resource bounds.

    Returns:
        Memory in bytes and CPU in cores.

    Raises:
        ResourceAllocationError: If any dimension is malformed or out of bounds.
    """
    try:
        memory = parse_memory(limits.memory)
        cpu = parse_cpu(limits.cpu)
    except ValueError as exc:
        raise ResourceAllocationError(str(exc), {"limits": limits.model_dump()}) from exc

    if memory < MIN_MEMORY_BYTES:
        raise ResourceAllocationError(
            "Memory limit too low (minimum 64MB)", {"memory_limit": limits.memory}
        )
    if memory > MAX_MEMORY_BYTES:
        raise ResourceAllocationError(
            "Memory limit too high (maximum 8GB)", {"memory_limit": limits.memory}
        )
    if cpu < MIN_CPU:
        raise ResourceAllocationError("CPU limit too low (minimum 0.1)", {"cpu_limit": limits.cpu})
    if cpu > MAX_CPU:
        raise ResourceAllocationError("CPU limit too high (maximum 4.0)", {"cpu_limit": limits.cpu})
    if not DISK_PATTERN.match(limits.disk_space):
        raise ResourceAllocationError(
            "Invalid disk space format (use format like 1g, 512m, etc.)",
            {"disk_space": limits.disk_space},
        )
    return memory, cpu


def degraded_limits(limits: ResourceLimits) -> ResourceLimits:
    """Halve every dimension, clamped to the validated minimums."""
    memory = max(MIN_MEMORY_BYTES, math.floor(parse_memory(limits.memory) * 0.5))
    cpu = max(MIN_CPU, parse_cpu(limits.cpu) * 0.5)

    if DISK_PATTERN.match(limits.disk_space):
        disk = format_memory(
            max(MIN_DEGRADED_DISK_BYTES, math.floor(parse_memory(limits.disk_space) * 0.5))
        )
    else:
        disk = "500m"

    return ResourceLimits(cpu=str(cpu), memory=format_memory(memory), disk_space=disk)


class SecurityPolicyEngine:
    """
    Computes, applies and verifies isolation policy for sandboxes.

    Owns the network monitor and the external resource gatekeeper and
    relays their events to the log.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        monitor: NetworkMonitor | None = None,
        gatekeeper: ResourceGatekeeper | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.runtime = runtime
        self.events = events or (monitor.events if monitor else EventBus())
        self.monitor = monitor or NetworkMonitor(runtime, events=self.events)
        self.gatekeeper = gatekeeper or ResourceGatekeeper(runtime)
        self.events.subscribe(SUSPICIOUS_ACTIVITY, self._on_suspicious_activity)
        self.events.subscribe(ALERT_THRESHOLD_EXCEEDED, self._on_threshold_exceeded)

    # Network

    async def apply_network_isolation(self, container_id: str, config: NetworkConfig) -> None:
        """
        Lock down the networks a sandbox is attached to.

        Args:
            container_id: Target sandbox.
            config: Isolation flag and allowed hosts.

        Raises:
            NetworkSecurityViolationError: Invalid config, a sensitive
                network attachment, or exhausted retries.
        """
        try:
            validate_network_config(config)

            async def isolate() -> None:
                attached = await self.runtime.networks_of(container_id)
                if not config.isolated:
                    if "bridge" not in attached:
                        await self.runtime.connect_network("bridge", container_id)
                    return

                for network in attached:
                    if network == "none":
                        continue
                    if network in SENSITIVE_NETWORKS or network.startswith("container:"):
                        raise NetworkSecurityViolationError(
                            f"Attempt to disconnect from security-sensitive network: {network}",
                            {"container_id": container_id, "network": network},
                        )
                    try:
                        await self.runtime.disconnect_network(network, container_id)
                    except Exception as exc:
                        logger.warning(
                            "Failed to disconnect %s from %s: %s", container_id, network, exc
                        )

                if config.allowed_hosts:
                    await self._create_restricted_network(container_id)

            result = await with_retry(
                isolate,
                preset(RetryPreset.NETWORK_OPERATION),
                f"apply_network_isolation-{container_id}",
            )
            if not result.success:
                if isinstance(result.error, SecurityViolationError):
                    raise result.error
                raise NetworkSecurityViolationError(
                    f"Failed to apply network isolation after {result.attempts} attempts: "
                    f"{result.error}",
                    {"container_id": container_id, "attempts": result.attempts},
                )
            logger.info(
                "Applied network isolation for %s (isolated=%s, allowed_hosts=%d)",
                container_id,
                config.isolated,
                len(config.allowed_hosts),
            )
        except SecurityViolationError as violation:
            self._trigger_security_alert(container_id, violation)
            raise

    async def _create_restricted_network(self, container_id: str) -> str:
        name = f"restricted-{container_id}"
        await self.runtime.create_network(
            name,
            driver="bridge",
            internal=True,
            ipam=ipam_config(RESTRICTED_SUBNET, RESTRICTED_GATEWAY),
            options={
                "com.docker.network.bridge.enable_icc": "false",
                "com.docker.network.bridge.enable_ip_masquerade": "false",
            },
        )
        await self.runtime.connect_network(name, container_id)
        logger.info("Created restricted network %s", name)
        return name

    # Resources

    async def set_resource_limits(self, container_id: str, limits: ResourceLimits) -> ResourceLimits:
        """
        Validate and submit resource caps, degrading once if needed.

        Bounds are checked before any daemon call. If the limits exceed 80%
        of host capacity or the update keeps failing, a halved limit set is
        tried with a shorter attempt budget.

        Returns:
            The limits actually applied.

        Raises:
            ResourceAllocationError: Invalid bounds, or the degraded attempt failed.
        """
        validate_resource_limits(limits)

        result = await with_retry(
            lambda: self._apply_limits(container_id, limits, check_capacity=True),
            preset(RetryPreset.RESOURCE_ALLOCATION),
            f"set_resource_limits-{container_id}",
        )
        if result.success:
            logger.info(
                "Applied resource limits for %s (cpu=%s, memory=%s, disk=%s)",
                container_id,
                limits.cpu,
                limits.memory,
                limits.disk_space,
            )
            return limits

        reduced = degraded_limits(limits)
        logger.warning(
            "Resource allocation failed for %s (%s), trying degraded limits %s",
            container_id,
            result.error,
            reduced.model_dump(),
        )
        degraded = await with_retry(
            lambda: self._apply_limits(container_id, reduced, check_capacity=False),
            preset(RetryPreset.RESOURCE_ALLOCATION, max_attempts=2),
            f"set_resource_limits-degraded-{container_id}",
        )
        if not degraded.success:
            raise ResourceAllocationError(
                "Failed to set resource limits even with degraded values after "
                f"{result.attempts + degraded.attempts} total attempts",
                {
                    "container_id": container_id,
                    "original_limits": limits.model_dump(),
                    "degraded_limits": reduced.model_dump(),
                    "last_error": str(degraded.error),
                },
            )
        logger.info("Applied degraded resource limits for %s: %s", container_id, reduced.model_dump())
        return reduced

    async def _apply_limits(
        self, container_id: str, limits: ResourceLimits, check_capacity: bool
    ) -> None:
        memory = parse_memory(limits.memory)
        cpu = parse_cpu(limits.cpu)
        if check_capacity:
            await self._check_host_capacity(memory, cpu)
        await self.runtime.update(
            container_id,
            mem_limit=memory,
            memswap_limit=memory,
            cpu_quota=math.floor(cpu * CPU_PERIOD),
            cpu_period=CPU_PERIOD,
        )

    async def _check_host_capacity(self, memory: int, cpu: float) -> None:
        try:
            info = await self.runtime.info()
        except Exception as exc:
            logger.warning("Could not check host resource availability: %s", exc)
            return

        total_memory = info.get("MemTotal") or 0
        if total_memory and memory > total_memory * HOST_CAPACITY_RATIO:
            raise ResourceAllocationError(
                "Requested memory exceeds 80% of system memory",
                {"requested": memory, "system": total_memory},
            )
        cpus = info.get("NCPU") or 0
        if cpus and cpu > cpus * HOST_CAPACITY_RATIO:
            raise ResourceAllocationError(
                "Requested CPU exceeds 80% of system CPU",
                {"requested": cpu, "system": cpus},
            )

    # Filesystem

    async def configure_filesystem_access(
        self, container_id: str, permissions: FilesystemAccess
    ) -> None:
        """Apply mount permission bits, then strip write access from system paths."""
        await self.runtime.inspect(container_id)

        for path in permissions.read_only_mounts:
            await self._set_mount_permissions(container_id, path, read_only=True)
        for path in permissions.writable_mounts:
            await self._set_mount_permissions(container_id, path, read_only=False)

        for path in SYSTEM_PATHS:
            try:
                await self.runtime.exec(container_id, ["chmod", "-R", "a-w", path])
            except Exception as exc:
                logger.warning("Could not restrict %s in %s: %s", path, container_id, exc)
        logger.info("Configured filesystem access for %s", container_id)

    async def _set_mount_permissions(self, container_id: str, path: str, read_only: bool) -> None:
        mode = "444" if read_only else "755"
        try:
            result = await self.runtime.exec(container_id, ["chmod", "-R", mode, path])
        except Exception as exc:
            logger.warning("Could not set permissions for %s in %s: %s", path, container_id, exc)
            return
        if not result.success:
            logger.warning("Mount path %s not ready in %s: %s", path, container_id, result.stderr.strip())

    # Validation

    def validate_security_config(self, config: SecurityConfiguration) -> bool:
        """Structural pre-flight check: every resource dimension is present."""
        limits = config.resource_limits
        return bool(limits and limits.cpu and limits.memory and limits.disk_space)

    async def validate_security_boundaries(
        self, container_id: str, config: SecurityConfiguration
    ) -> bool:
        """
        Verify that the live sandbox actually honours ``config``.

        Returns:
            True when every check passes, False otherwise.
        """
        try:
            attrs = await self.runtime.inspect(container_id)
        except Exception as exc:
            logger.error("Boundary validation could not inspect %s: %s", container_id, exc)
            return False

        host = attrs.get("HostConfig", {})
        failures = []

        if host.get("Privileged"):
            failures.append("container is privileged")
        if "ALL" not in (host.get("CapDrop") or []):
            failures.append("capabilities not dropped")
        if not any("no-new-privileges" in opt for opt in host.get("SecurityOpt") or []):
            failures.append("no-new-privileges not set")

        if config.network_isolation:
            allowed = {"none", f"restricted-{container_id}", f"isolated-{container_id}"}
            attached = set(attrs.get("NetworkSettings", {}).get("Networks", {}) or {})
            if host.get("NetworkMode") == "host" or attached - allowed:
                failures.append(f"unexpected networks attached: {sorted(attached - allowed)}")

        memory = host.get("Memory") or 0
        if not memory or memory > parse_memory(config.resource_limits.memory):
            failures.append("memory limit not enforced")

        if failures:
            logger.error("Security boundary validation failed for %s: %s", container_id, failures)
            return False
        logger.info("Security boundaries validated for %s", container_id)
        return True

    # Monitoring and external resources

    async def enable_security_monitoring(self, container_id: str) -> None:
        await self.monitor.start_monitoring(container_id)

    async def disable_security_monitoring(self, container_id: str) -> None:
        await self.monitor.stop_monitoring(container_id)

    async def create_isolated_network_namespace(self, container_id: str) -> str:
        return await self.monitor.create_isolated_namespace(container_id)

    async def setup_controlled_proxy_access(
        self,
        container_id: str,
        proxy_host: str,
        proxy_port: int,
        allowed_domains: list[str],
    ) -> dict[str, str]:
        return await self.monitor.setup_proxy_access(
            container_id, proxy_host, proxy_port, allowed_domains
        )

    def get_network_activity_logs(self, container_id: str) -> list[NetworkActivity]:
        return self.monitor.get_network_logs(container_id)

    async def install_secure_dependencies(self, container_id: str, packages: list[str]) -> None:
        await self.gatekeeper.install_npm_packages(container_id, packages)

    async def download_external_resource(
        self,
        container_id: str,
        name: str,
        version: str,
        expected_checksum: str | None = None,
    ) -> str:
        return await self.gatekeeper.download_dependency(
            container_id, name, version, expected_checksum
        )

    @staticmethod
    def create_default_security_config() -> SecurityConfiguration:
        return SecurityConfiguration(
            network_isolation=True,
            allowed_network_access=[],
            resource_limits=ResourceLimits(cpu="1.0", memory="512m", disk_space="1g"),
            filesystem_access=FilesystemAccess(
                read_only_mounts=["/code"], writable_mounts=["/tmp", "/output"]
            ),
            security_policies=["no-privileged", "no-host-network", "no-host-pid"],
        )

    # Alerts

    def _trigger_security_alert(self, container_id: str, violation: SecurityAssessmentError) -> None:
        logger.error(
            "SECURITY ALERT for %s: %s (%s)", container_id, violation.message, violation.code
        )
        self.events.emit(SECURITY_ALERT, container_id=container_id, violation=violation)

    def _on_suspicious_activity(self, activity: NetworkActivity, pattern: SuspiciousPattern) -> None:
        logger.warning(
            "Suspicious network activity in %s matched %s", activity.container_id, pattern.name
        )

    def _on_threshold_exceeded(self, **alert: Any) -> None:
        logger.warning("Network alert threshold exceeded: %s", alert)
