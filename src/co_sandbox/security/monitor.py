"""
Network Monitor — Samples sandbox connections and flags anomalies.

Each monitored sandbox gets a background sampler task that reads active
connections with ``netstat`` and appends them to a per-container log.
Every appended record is checked against the suspicious-pattern rules and
a sliding one-minute window of alert thresholds.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
from datetime import timedelta

from co_sandbox.config import MonitorConfig
from co_sandbox.events import ALERT_THRESHOLD_EXCEEDED, SUSPICIOUS_ACTIVITY, EventBus
from co_sandbox.models import (
    NetworkAction,
    NetworkActivity,
    Severity,
    SuspiciousPattern,
    utcnow,
)
from co_sandbox.runtime import ContainerRuntime, ipam_config

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = {"127.0.0.1", "::1"}
NETSTAT_COMMAND = "netstat -tuna"
NETSTAT_INSTALL = (
    "which netstat || (apt-get update && apt-get install -y net-tools) "
    "|| (apk add --no-cache net-tools) || true"
)
ISOLATED_SUBNET = "172.30.0.0/16"
ISOLATED_GATEWAY = "172.30.0.1"


def default_suspicious_patterns() -> list[SuspiciousPattern]:
    return [
        SuspiciousPattern(
            name="Crypto Mining",
            description="Connections to common cryptocurrency mining pool ports",
            ports=[3333, 4444, 8333, 9999, 14444],
            severity=Severity.HIGH,
        ),
        SuspiciousPattern(
            name="Suspicious Protocols",
            description="Protocols commonly used for malicious purposes",
            ports=[22, 23, 135, 139, 445, 1433, 3389],
            protocols=["icmp"],
            severity=Severity.MEDIUM,
        ),
        SuspiciousPattern(
            name="External Communication",
            description="Communication to external IP ranges",
            ip_ranges=["0.0.0.0/0"],
            severity=Severity.LOW,
        ),
    ]


def ip_in_range(ip: str, cidr: str) -> bool:
    """CIDR membership test; plain addresses compare for equality."""
    if "/" not in cidr:
        return ip == cidr
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        return False


def matches_pattern(activity: NetworkActivity, pattern: SuspiciousPattern) -> bool:
    """True when every criterion declared by ``pattern`` matches ``activity``."""
    if pattern.ports is not None and activity.destination_port not in pattern.ports:
        return False
    if pattern.protocols is not None and activity.protocol.lower() not in pattern.protocols:
        return False
    if pattern.ip_ranges is not None and not any(
        ip_in_range(activity.destination_ip, cidr) for cidr in pattern.ip_ranges
    ):
        return False
    return True


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    try:
        return host, int(port)
    except ValueError:
        return host, 0


def parse_netstat_output(container_id: str, output: str) -> list[NetworkActivity]:
    """
    Extract active connections from ``netstat`` output.

    Only ESTABLISHED and LISTEN lines are considered. Wildcard peers and
    loopback destinations are skipped.
    """
    activities = []
    for line in output.splitlines():
        if "ESTABLISHED" not in line and "LISTEN" not in line:
            continue
        parts = line.split()
        if len(parts) < 5:
            continue
        local, foreign = parts[3], parts[4]
        if foreign in ("0.0.0.0:*", ":::*", "*:*"):
            continue
        dest_ip, dest_port = _split_address(foreign)
        if not dest_ip or dest_ip in LOOPBACK_ADDRESSES:
            continue
        source_ip, source_port = _split_address(local)
        activities.append(
            NetworkActivity(
                container_id=container_id,
                source_ip=source_ip,
                source_port=source_port,
                destination_ip=dest_ip,
                destination_port=dest_port,
                protocol="tcp" if "tcp" in parts[0].lower() else "udp",
                reason="Active connection detected",
            )
        )
    return activities


class NetworkMonitor:
    """
    Periodic network activity sampler for sandboxes.

    Emits ``suspicious_activity`` and ``alert_threshold_exceeded`` on the
    shared event bus; it never calls its consumers directly.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: MonitorConfig | None = None,
        patterns: list[SuspiciousPattern] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.runtime = runtime
        self.config = config or MonitorConfig()
        self.patterns = patterns if patterns is not None else default_suspicious_patterns()
        self.events = events or EventBus()
        self._samplers: dict[str, asyncio.Task[None]] = {}
        self._logs: dict[str, list[NetworkActivity]] = {}

    def is_monitoring(self, container_id: str) -> bool:
        return container_id in self._samplers

    async def start_monitoring(self, container_id: str) -> None:
        """Install tooling if needed and start the background sampler."""
        if not self.config.enabled:
            return
        self._logs[container_id] = []
        try:
            await self.runtime.exec(container_id, NETSTAT_INSTALL)
        except Exception as exc:
            logger.warning("Could not install netstat in %s: %s", container_id, exc)

        self._samplers[container_id] = asyncio.create_task(
            self._sample_loop(container_id), name=f"netmon-{container_id}"
        )
        logger.info("Started network monitoring for %s", container_id)

    async def stop_monitoring(self, container_id: str) -> None:
        """Cancel the sampler and best-effort remove the per-sandbox network."""
        sampler = self._samplers.pop(container_id, None)
        if sampler is not None:
            sampler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sampler
        try:
            await self.runtime.remove_network(f"isolated-{container_id}")
        except Exception as exc:
            logger.debug("No isolated network to remove for %s: %s", container_id, exc)
        logger.info("Stopped network monitoring for %s", container_id)

    async def _sample_loop(self, container_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.sample_interval_seconds)
            await self.sample_once(container_id)

    async def sample_once(self, container_id: str) -> list[NetworkActivity]:
        """Collect and log the current connections of one sandbox."""
        try:
            result = await self.runtime.exec(container_id, NETSTAT_COMMAND)
        except Exception as exc:
            logger.debug("Could not collect network activity for %s: %s", container_id, exc)
            return []
        activities = parse_netstat_output(container_id, result.stdout)
        for activity in activities:
            self.log_activity(activity)
        return activities

    def log_activity(self, activity: NetworkActivity) -> None:
        """Append ``activity`` to its container's log and evaluate rules."""
        self._logs.setdefault(activity.container_id, []).append(activity)

        for pattern in self.patterns:
            if matches_pattern(activity, pattern):
                activity.action = NetworkAction.SUSPICIOUS
                logger.warning(
                    "Suspicious network activity in %s: %s -> %s:%d (%s)",
                    activity.container_id,
                    activity.source_ip,
                    activity.destination_ip,
                    activity.destination_port,
                    pattern.name,
                )
                self.events.emit(SUSPICIOUS_ACTIVITY, activity=activity, pattern=pattern)
                break

        self._check_thresholds(activity.container_id)

    def _check_thresholds(self, container_id: str) -> None:
        cutoff = utcnow() - timedelta(seconds=self.config.window_seconds)
        recent = [a for a in self._logs.get(container_id, []) if a.timestamp >= cutoff]
        thresholds = self.config.thresholds

        observed = {
            "connections_per_minute": (len(recent), thresholds.connections_per_minute),
            "bytes_per_minute": (
                sum(a.bytes_transferred for a in recent),
                thresholds.bytes_per_minute,
            ),
            "unique_destinations": (
                len({a.destination_ip for a in recent}),
                thresholds.unique_destinations,
            ),
        }
        for kind, (value, limit) in observed.items():
            if value > limit:
                self.events.emit(
                    ALERT_THRESHOLD_EXCEEDED,
                    container_id=container_id,
                    kind=kind,
                    value=value,
                    threshold=limit,
                )

    def get_network_logs(self, container_id: str) -> list[NetworkActivity]:
        return list(self._logs.get(container_id, []))

    def clear_network_logs(self, container_id: str) -> None:
        self._logs.pop(container_id, None)

    async def create_isolated_namespace(self, container_id: str) -> str:
        """
        Move a sandbox onto a fresh internal network.

        The network has no egress, inter-container communication and IP
        masquerading disabled. Every previously attached network except
        ``none`` is disconnected first.

        Returns:
            Name of the created network.
        """
        name = f"isolated-{container_id}"
        await self.runtime.create_network(
            name,
            driver="bridge",
            internal=True,
            ipam=ipam_config(ISOLATED_SUBNET, ISOLATED_GATEWAY),
            options={
                "com.docker.network.bridge.enable_icc": "false",
                "com.docker.network.bridge.enable_ip_masquerade": "false",
                "com.docker.network.driver.mtu": "1500",
            },
        )
        for network in await self.runtime.networks_of(container_id):
            if network == "none":
                continue
            try:
                await self.runtime.disconnect_network(network, container_id)
            except Exception as exc:
                logger.warning("Failed to disconnect %s from %s: %s", container_id, network, exc)

        await self.runtime.connect_network(name, container_id)
        logger.info("Created isolated network namespace for %s", container_id)
        return name

    async def setup_proxy_access(
        self,
        container_id: str,
        proxy_host: str,
        proxy_port: int,
        allowed_domains: list[str],
    ) -> dict[str, str]:
        """
        Point the sandbox's package tooling at an egress proxy.

        Returns:
            The proxy environment variables to pass to later commands.
        """
        proxy_url = f"http://{proxy_host}:{proxy_port}"
        environment = {
            "http_proxy": proxy_url,
            "https_proxy": proxy_url,
            "HTTP_PROXY": proxy_url,
            "HTTPS_PROXY": proxy_url,
            "no_proxy": "localhost,127.0.0.1,::1",
        }
        await self.runtime.exec(
            container_id,
            f"npm config set proxy {proxy_url} && npm config set https-proxy {proxy_url} || true",
            environment=environment,
        )
        self.log_activity(
            NetworkActivity(
                container_id=container_id,
                source_ip=ISOLATED_GATEWAY,
                destination_ip=proxy_host,
                destination_port=proxy_port,
                protocol="tcp",
                action=NetworkAction.ALLOWED,
                reason=f"Proxy access configured for domains: {', '.join(allowed_domains)}",
            )
        )
        logger.info("Configured proxy access for %s via %s", container_id, proxy_url)
        return environment

