"""
Co-AI-Sandbox: Isolated container sandboxes for security assessments.

Provisions locked-down Docker sandboxes, enforces and verifies isolation
policy, and runs multi-step analysis workflows against untrusted code
with bounded retry and partial-failure recovery.
"""

__version__ = "0.1.0"
__author__ = "Co-AI-Sandbox Contributors"

from co_sandbox.config import SandboxSettings
from co_sandbox.system import AssessmentReport, SecurityAssessmentSystem

__all__ = ["SandboxSettings", "SecurityAssessmentSystem", "AssessmentReport", "__version__"]
