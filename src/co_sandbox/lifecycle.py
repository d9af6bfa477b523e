"""
Environment lifecycle — Provisioning, code mounting and teardown of sandboxes.

A sandbox is addressed by its generated name (``assessment-<ms>-<rand>``),
which doubles as the container id for every runtime call and as the key of
the per-container recovery state.
"""

from __future__ import annotations

import asyncio
import io
import logging
import posixpath
import random
import string
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Any

from docker.errors import NotFound

from co_sandbox.config import SandboxSettings
from co_sandbox.errors import (
    ContainerCreationError,
    ContainerDestroyError,
    ContainerStartError,
    ContainerStopError,
    ErrorHandler,
    FilesystemSecurityViolationError,
    SecurityAssessmentError,
    SecurityViolationError,
    ValidationError,
)
from co_sandbox.models import (
    AnalysisConfiguration,
    AssessmentEnvironment,
    CodebaseType,
    EnvironmentStatus,
    ErrorRecoveryState,
    SecurityConfiguration,
)
from co_sandbox.resilience import (
    CircuitBreaker,
    RecoveryManager,
    RetryOptions,
    RetryPreset,
    preset,
    with_retry,
)
from co_sandbox.runtime import ContainerRuntime
from co_sandbox.security.monitor import NetworkMonitor
from co_sandbox.security.scanner import scan_source
from co_sandbox.validation import validate_security_configuration

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "security-assessment"
CREATED_BY = "co-sandbox"
CPU_PERIOD = 100_000
BLOCKED_DESTINATIONS = ["/etc", "/usr", "/bin", "/sbin", "/root"]
KEEPALIVE_COMMAND = ["/bin/sh", "-c", "tail -f /dev/null"]


def generate_environment_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"assessment-{int(time.time() * 1000)}-{suffix}"


def _is_not_found(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, NotFound):
        return True
    message = str(error)
    return "No such container" in message or "not found" in message


def _archive(source: Path) -> bytes:
    """Tar ``source`` so that its contents land directly in the destination."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        if source.is_dir():
            for entry in sorted(source.iterdir()):
                archive.add(str(entry), arcname=entry.name)
        else:
            archive.add(str(source), arcname=source.name)
    return buffer.getvalue()


class EnvironmentManager:
    """
    Owns the sandboxes of one process.

    Creation runs behind a circuit breaker and the container-creation retry
    policy; failures are offered to the recovery manager, whose attempt
    budget bounds the number of full re-provisioning rounds.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        settings: SandboxSettings | None = None,
        recovery: RecoveryManager | None = None,
        monitor: NetworkMonitor | None = None,
    ) -> None:
        self.runtime = runtime
        self.settings = settings or SandboxSettings()
        resilience = self.settings.resilience
        self.recovery = recovery or RecoveryManager(
            max_checkpoints=resilience.max_checkpoints,
            max_recovery_attempts=resilience.max_recovery_attempts,
        )
        self.monitor = monitor
        self.breaker = CircuitBreaker(
            failure_threshold=resilience.breaker_failure_threshold,
            recovery_timeout=resilience.breaker_recovery_timeout_seconds,
            name="container-creation",
        )
        self._active: dict[str, AssessmentEnvironment] = {}

    # Creation

    async def create_assessment_environment(
        self,
        security_config: SecurityConfiguration,
        analysis_config: AnalysisConfiguration,
    ) -> AssessmentEnvironment:
        """
        Provision and start a sandbox.

        Args:
            security_config: Isolation policy, frozen for the environment's life.
            analysis_config: Codebase type and tool selection.

        Returns:
            The environment in ``ready`` state.

        Raises:
            ValidationError: The configuration is malformed.
            SecurityAssessmentError: Creation failed and recovery was exhausted.
        """
        problems = validate_security_configuration(security_config)
        if problems:
            raise ValidationError(
                f"Invalid security configuration: {'; '.join(problems)}",
                {"problems": problems},
            )

        env_id = generate_environment_id()
        environment = AssessmentEnvironment(
            id=env_id,
            container_id=env_id,
            security_config=security_config,
            analysis_config=analysis_config,
        )
        state = self.recovery.create_recovery_state(env_id)

        while True:
            try:
                await self._provision(environment, state)
                break
            except SecurityViolationError:
                environment.transition(EnvironmentStatus.FAILED)
                await self._cleanup_failed_container(env_id)
                raise
            except Exception as exc:
                error = ErrorHandler.from_exception(exc, {"container_id": env_id})
                state.last_error = error.to_dict()
                if error.recoverable:
                    outcome = await self.recovery.attempt_recovery(error, state)
                    if outcome.success and outcome.should_continue:
                        state = self.recovery.get_recovery_state(env_id) or state
                        await self._remove_quietly(env_id)
                        logger.info(
                            "Re-provisioning %s after recovery (%s)", env_id, outcome.message
                        )
                        continue
                environment.transition(EnvironmentStatus.FAILED)
                await self._cleanup_failed_container(env_id)
                logger.error(
                    "Failed to create assessment environment %s: %s (%s)",
                    env_id,
                    error.message,
                    error.code,
                )
                if error is exc:
                    raise
                raise error from exc

        environment.transition(EnvironmentStatus.READY)
        return environment

    async def _provision(self, environment: AssessmentEnvironment, state: ErrorRecoveryState) -> None:
        env_id = environment.id
        self.recovery.create_checkpoint(
            env_id,
            "environment-creation-start",
            state,
            metadata={
                "security_config": environment.security_config.model_dump(mode="json"),
                "analysis_config": environment.analysis_config.model_dump(mode="json"),
            },
        )
        spec = self.build_container_spec(
            env_id, environment.security_config, environment.analysis_config
        )
        created = False

        async def create_and_start() -> None:
            nonlocal created
            if created:
                await self._remove_quietly(env_id)
            await self.runtime.create_container(**spec)
            created = True
            self._active[env_id] = environment
            await self.runtime.start(env_id)

        def on_retry(error: BaseException, attempt: int) -> None:
            logger.warning("Container creation retry %d for %s: %s", attempt, env_id, error)
            state.last_error = ErrorHandler.from_exception(error, {"container_id": env_id}).to_dict()

        async def guarded() -> Any:
            result = await with_retry(
                create_and_start,
                preset(RetryPreset.CONTAINER_CREATION, on_retry=on_retry),
                f"create_assessment_environment-{env_id}",
            )
            if not result.success:
                if isinstance(result.error, SecurityAssessmentError):
                    raise result.error
                raise ContainerCreationError(
                    f"Failed to create container after {result.attempts} attempts: {result.error}",
                    {"container_id": env_id, "attempts": result.attempts},
                ) from result.error
            return result

        result = await self.breaker.call(guarded, f"create_assessment_environment-{env_id}")

        if "container-creation" not in state.completed_steps:
            state.completed_steps.append("container-creation")
        state.last_successful_step = "container-creation"
        self.recovery.create_checkpoint(
            env_id, "environment-creation-complete", state, metadata={"status": "ready"}
        )
        logger.info(
            "Created assessment environment %s (%d attempt(s), %.0f ms)",
            env_id,
            result.attempts,
            result.total_duration_ms,
        )

    def build_container_spec(
        self,
        env_id: str,
        security_config: SecurityConfiguration,
        analysis_config: AnalysisConfiguration,
    ) -> dict[str, Any]:
        """Keyword arguments for ``containers.create`` with every hard cap applied."""
        docker_config = self.settings.docker
        image = (
            docker_config.solidity_image
            if analysis_config.codebase_type == CodebaseType.SOLIDITY
            else docker_config.node_image
        )
        limits = security_config.resource_limits

        environment = [
            "NODE_ENV=development",
            "NPM_CONFIG_AUDIT_LEVEL=moderate",
            f"ANALYSIS_TYPE={analysis_config.codebase_type.value}",
        ]
        if analysis_config.custom_workflows:
            environment.append(f"CUSTOM_WORKFLOWS={','.join(analysis_config.custom_workflows)}")

        spec: dict[str, Any] = {
            "image": image,
            "name": env_id,
            "command": KEEPALIVE_COMMAND,
            "environment": environment,
            "working_dir": self.settings.workflow.workspace_path,
            "labels": {
                SANDBOX_LABEL: "true",
                "created-by": CREATED_BY,
                "codebase-type": analysis_config.codebase_type.value,
            },
            "mem_limit": limits.memory_bytes,
            "cpu_quota": int(limits.cpu_cores * CPU_PERIOD),
            "cpu_period": CPU_PERIOD,
            "privileged": False,
            "network_mode": "none" if security_config.network_isolation else "bridge",
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges:true"],
        }
        if docker_config.enforce_disk_quota:
            spec["storage_opt"] = {"size": limits.disk_space.upper()}
        return spec

    # Mounting

    def allowed_source_roots(self) -> list[Path]:
        roots = [Path(tempfile.gettempdir()), Path("/workspace"), Path.cwd()]
        roots.extend(self.settings.allowed_source_roots)
        return [root.resolve() for root in roots]

    def validate_mount_security(self, source_path: str | Path, container_path: str) -> Path:
        """
        Check both ends of a mount before anything is copied.

        Returns:
            The resolved source path.

        Raises:
            FilesystemSecurityViolationError: Source outside the allowed roots
                or destination inside a system directory.
        """
        source = Path(source_path).resolve()
        roots = self.allowed_source_roots()
        if not any(source == root or source.is_relative_to(root) for root in roots):
            raise FilesystemSecurityViolationError(
                f"Source path {source_path} is not in allowed directories",
                {"source_path": str(source), "allowed_paths": [str(r) for r in roots]},
            )

        destination = posixpath.normpath(container_path)
        if not destination.startswith("/") or any(
            destination == blocked or destination.startswith(blocked + "/")
            for blocked in BLOCKED_DESTINATIONS
        ):
            raise FilesystemSecurityViolationError(
                f"Container path {container_path} targets sensitive directory",
                {"container_path": container_path, "forbidden_paths": BLOCKED_DESTINATIONS},
            )
        return source

    async def mount_codebase(
        self, container_id: str, source_path: str | Path, container_path: str = "/workspace"
    ) -> None:
        """
        Copy a host codebase into a sandbox.

        Path checks and the danger-signature scan run before any copy. A
        violation terminates the sandbox immediately and is re-raised.
        """
        self._require(container_id)
        state = self.recovery.get_recovery_state(container_id) or self.recovery.create_recovery_state(
            container_id
        )
        self.recovery.create_checkpoint(
            container_id,
            "codebase-mount-start",
            state,
            metadata={"source_path": str(source_path), "container_path": container_path},
        )

        try:
            source = self.validate_mount_security(source_path, container_path)
            if not source.exists():
                raise ValidationError(
                    f"Source path {source_path} does not exist", {"source_path": str(source)}
                )
            scanned = await asyncio.to_thread(scan_source, source)
            logger.debug("Scanned %d file(s) under %s", scanned, source)

            result = await with_retry(
                lambda: self._copy_into(container_id, source, container_path),
                preset(RetryPreset.RESOURCE_ALLOCATION),
                f"mount_codebase-{container_id}",
            )
            if not result.success:
                raise ErrorHandler.from_exception(
                    result.error or RuntimeError("mount failed"),
                    {"container_id": container_id, "attempts": result.attempts},
                )
        except SecurityViolationError as violation:
            self.recovery.record_step_failure(container_id, "codebase-mount", violation)
            await self.emergency_termination(container_id, violation)
            raise
        except SecurityAssessmentError as error:
            self.recovery.record_step_failure(container_id, "codebase-mount", error)
            logger.error("Error mounting codebase into %s: %s", container_id, error.message)
            raise

        self.recovery.record_step_success(container_id, "codebase-mount")
        self.recovery.create_checkpoint(
            container_id,
            "codebase-mount-complete",
            state,
            metadata={"source_path": str(source), "container_path": container_path, "mounted": True},
        )
        logger.info(
            "Mounted %s at %s in %s (%d attempt(s))",
            source,
            container_path,
            container_id,
            result.attempts,
        )

    async def _copy_into(self, container_id: str, source: Path, container_path: str) -> None:
        status = await self.runtime.status(container_id)
        if status != "running":
            raise ContainerStartError(
                f"Container {container_id} is not running",
                {"container_id": container_id, "status": status},
            )
        await self.runtime.exec(container_id, ["mkdir", "-p", container_path])
        data = await asyncio.to_thread(_archive, source)
        await self.runtime.put_archive(container_id, container_path, data)

        try:
            listing = await self.runtime.exec(container_id, ["ls", "-la", container_path])
            logger.debug("Mount listing for %s:\n%s", container_path, listing.stdout)
        except Exception as exc:
            logger.warning("Could not verify mount at %s: %s", container_path, exc)

    # Teardown

    async def emergency_termination(
        self, container_id: str, violation: SecurityAssessmentError
    ) -> None:
        """Kill and remove a sandbox at once, skipping graceful shutdown."""
        logger.error(
            "EMERGENCY TERMINATION of %s: %s (%s)", container_id, violation.message, violation.code
        )
        environment = self._active.pop(container_id, None)
        if environment is not None:
            environment.transition(EnvironmentStatus.FAILED)
            try:
                await self.runtime.kill(container_id)
            except Exception as exc:
                logger.error("Failed to kill %s: %s", container_id, exc)
            try:
                await self.runtime.remove(container_id, force=True)
            except Exception as exc:
                logger.error("Failed to remove %s: %s", container_id, exc)
            logger.info("Emergency termination completed for %s", container_id)

        await self._cleanup_auxiliary(container_id)
        self.recovery.clear_recovery_data(container_id)

    async def destroy_environment(self, container_id: str) -> None:
        """
        Stop and remove a sandbox; safe to call repeatedly.

        Bookkeeping and auxiliary resources are cleared even when the
        container operations fail.

        Raises:
            ContainerDestroyError: The container could not be removed.
        """
        environment = self._active.get(container_id)
        try:
            if environment is not None:
                state = self.recovery.get_recovery_state(container_id)
                if state is not None:
                    self.recovery.create_checkpoint(
                        container_id, "environment-destruction-start", state
                    )

                result = await with_retry(
                    lambda: self._stop_and_remove(container_id),
                    RetryOptions(
                        max_attempts=3,
                        base_delay=1.0,
                        max_delay=5.0,
                        backoff_multiplier=2.0,
                        retry_condition=lambda error: not _is_not_found(error),
                    ),
                    f"destroy_environment-{container_id}",
                )
                if not result.success and not _is_not_found(result.error):
                    raise ContainerDestroyError(
                        f"Failed to destroy container after {result.attempts} attempts: "
                        f"{result.error}",
                        {"container_id": container_id, "attempts": result.attempts},
                    )
                logger.info("Destroyed environment %s", container_id)
        finally:
            self._active.pop(container_id, None)
            await self._cleanup_auxiliary(container_id)
            self.recovery.clear_recovery_data(container_id)

    async def _stop_and_remove(self, container_id: str) -> None:
        try:
            await self.runtime.stop(container_id, timeout=self.settings.docker.stop_timeout_seconds)
        except Exception as exc:
            if _is_not_found(exc):
                raise
            logger.warning("Graceful stop of %s failed, killing: %s", container_id, exc)
            await self.runtime.kill(container_id)
        await self.runtime.remove(container_id, force=True)

    async def _remove_quietly(self, container_id: str) -> None:
        try:
            await self.runtime.remove(container_id, force=True)
        except Exception as exc:
            if not _is_not_found(exc):
                logger.warning("Could not remove partial container %s: %s", container_id, exc)

    async def _cleanup_failed_container(self, container_id: str) -> None:
        if self._active.pop(container_id, None) is not None:
            await self._remove_quietly(container_id)
        await self._cleanup_auxiliary(container_id)
        self.recovery.clear_recovery_data(container_id)

    async def _cleanup_auxiliary(self, container_id: str) -> None:
        if self.monitor is not None and self.monitor.is_monitoring(container_id):
            await self.monitor.stop_monitoring(container_id)
        network = f"restricted-{container_id}"
        try:
            await self.runtime.remove_network(network)
            logger.debug("Removed network %s", network)
        except Exception as exc:
            if not _is_not_found(exc):
                logger.warning("Could not remove network %s: %s", network, exc)

    # Queries

    def _require(self, container_id: str) -> AssessmentEnvironment:
        environment = self._active.get(container_id)
        if environment is None:
            raise ValidationError(
                f"Environment {container_id} not found", {"container_id": container_id}
            )
        return environment

    def get_environment(self, container_id: str) -> AssessmentEnvironment | None:
        return self._active.get(container_id)

    async def get_environment_status(self, container_id: str) -> str:
        if container_id not in self._active:
            return "not_found"
        try:
            return await self.runtime.status(container_id)
        except Exception as exc:
            logger.error("Error getting status of %s: %s", container_id, exc)
            return "error"

    def list_environments(self) -> list[AssessmentEnvironment]:
        return list(self._active.values())

    async def stop_environment(self, container_id: str) -> None:
        if container_id not in self._active:
            raise ContainerStopError(
                f"Container {container_id} not found", {"container_id": container_id}
            )
        try:
            await self.runtime.stop(container_id, timeout=self.settings.docker.stop_timeout_seconds)
        except Exception as exc:
            raise ContainerStopError(
                f"Failed to stop container {container_id}: {exc}", {"container_id": container_id}
            ) from exc
        logger.info("Stopped container %s", container_id)

    async def cleanup_all_environments(self) -> int:
        """Destroy every tracked sandbox, logging individual failures."""
        container_ids = list(self._active)
        for container_id in container_ids:
            try:
                await self.destroy_environment(container_id)
            except SecurityAssessmentError as exc:
                logger.error("Failed to clean up %s: %s", container_id, exc.message)
        logger.info("Cleaned up %d environment(s)", len(container_ids))
        return len(container_ids)

    async def cleanup_orphaned_sandboxes(self) -> int:
        """Force-remove labelled sandboxes left behind by earlier processes."""
        removed = 0
        for container_id in await self.runtime.list_containers({SANDBOX_LABEL: "true"}):
            if container_id in self._active:
                continue
            try:
                await self.runtime.remove(container_id, force=True)
                removed += 1
            except Exception as exc:
                logger.warning("Could not remove orphaned sandbox %s: %s", container_id, exc)
        return removed
