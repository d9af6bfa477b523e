"""Isolation policy, network monitoring, external resource gating and source scanning."""

from co_sandbox.security.gatekeeper import ResourceGatekeeper
from co_sandbox.security.monitor import NetworkMonitor
from co_sandbox.security.policy import SecurityPolicyEngine
from co_sandbox.security.scanner import detect_stack, scan_source

__all__ = [
    "NetworkMonitor",
    "ResourceGatekeeper",
    "SecurityPolicyEngine",
    "detect_stack",
    "scan_source",
]
