"""
Container runtime — Async facade over the Docker SDK.

The docker SDK is synchronous, so every call is offloaded to a worker
thread via ``asyncio.to_thread`` to keep the event loop responsive.
The underlying ``DockerClient`` is injected, which lets tests supply an
in-memory double.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from docker.types import IPAMConfig, IPAMPool
from pydantic import BaseModel

from co_sandbox.config import DockerConfig
from co_sandbox.errors import OperationTimeoutError

logger = logging.getLogger(__name__)


class ExecResult(BaseModel):
    """Result from a command executed inside a sandbox."""

    command: str
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def _shell(command: str | list[str]) -> list[str]:
    if isinstance(command, str):
        return ["sh", "-c", command]
    return list(command)


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


def _close_stream(output: Any, container_id: str) -> None:
    close = getattr(output, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as exc:
        logger.debug("Could not close output stream of %s: %s", container_id, exc)


def ipam_config(subnet: str, gateway: str) -> IPAMConfig:
    """Single-pool address management for a user-defined network."""
    return IPAMConfig(pool_configs=[IPAMPool(subnet=subnet, gateway=gateway)])


class ContainerRuntime:
    """
    Thin async wrapper around a docker SDK client.

    Exceptions raised by the SDK (``docker.errors.NotFound``,
    ``docker.errors.APIError`` and friends) propagate unchanged so
    callers can classify them.
    """

    def __init__(self, client: Any, config: DockerConfig | None = None) -> None:
        self.client = client
        self.config = config or DockerConfig()

    @classmethod
    def from_env(cls, config: DockerConfig | None = None) -> ContainerRuntime:
        """Connect to the Docker daemon described by ``config`` or the environment."""
        import docker

        config = config or DockerConfig()
        if config.base_url:
            client = docker.DockerClient(base_url=config.base_url, timeout=config.timeout_seconds)
        else:
            client = docker.from_env(timeout=config.timeout_seconds)
        return cls(client, config)

    async def _container(self, container_id: str) -> Any:
        return await asyncio.to_thread(self.client.containers.get, container_id)

    # Containers

    async def create_container(self, **spec: Any) -> str:
        container = await asyncio.to_thread(self.client.containers.create, **spec)
        return container.id

    async def start(self, container_id: str) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.start)

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.stop, timeout=timeout)

    async def kill(self, container_id: str) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.kill)

    async def remove(self, container_id: str, force: bool = True) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.remove, force=force)

    async def inspect(self, container_id: str) -> dict[str, Any]:
        container = await self._container(container_id)
        await asyncio.to_thread(container.reload)
        return container.attrs

    async def status(self, container_id: str) -> str:
        attrs = await self.inspect(container_id)
        return attrs.get("State", {}).get("Status", "unknown")

    async def networks_of(self, container_id: str) -> list[str]:
        attrs = await self.inspect(container_id)
        return list(attrs.get("NetworkSettings", {}).get("Networks", {}) or {})

    async def update(self, container_id: str, **limits: Any) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.update, **limits)

    async def list_containers(self, labels: dict[str, str] | None = None) -> list[str]:
        filters = {"label": [f"{k}={v}" for k, v in (labels or {}).items()]}
        containers = await asyncio.to_thread(self.client.containers.list, all=True, filters=filters)
        return [c.name for c in containers]

    async def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        container = await self._container(container_id)
        await asyncio.to_thread(container.put_archive, path, data)

    # Command execution

    async def exec(
        self,
        container_id: str,
        command: str | list[str],
        workdir: str | None = None,
        timeout: float | None = None,
        environment: dict[str, str] | None = None,
    ) -> ExecResult:
        """
        Run a command inside a sandbox and collect its output.

        Args:
            container_id: Target sandbox.
            command: Shell string (run through ``sh -c``) or argv list.
            workdir: Working directory inside the container.
            timeout: Seconds before the call is abandoned.
            environment: Extra environment variables.

        Returns:
            ExecResult with exit code, stdout and stderr.

        Raises:
            OperationTimeoutError: If ``timeout`` elapses first.
        """
        container = await self._container(container_id)
        call = asyncio.to_thread(
            container.exec_run,
            _shell(command),
            workdir=workdir,
            environment=environment or {},
            demux=True,
        )
        try:
            raw = await asyncio.wait_for(call, timeout) if timeout else await call
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Command timed out after {timeout}s",
                timeout or 0.0,
                {"container_id": container_id, "command": str(command)[:200]},
            ) from exc

        stdout, stderr = raw.output if raw.output else (None, None)
        return ExecResult(
            command=str(command),
            exit_code=raw.exit_code if raw.exit_code is not None else -1,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )

    async def exec_stream(
        self,
        container_id: str,
        command: str | list[str],
        workdir: str | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Yield raw output chunks of a command as they arrive.

        The daemon output stream is closed however iteration ends, which
        unblocks the reading thread when the consumer stops early.
        """
        container = await self._container(container_id)
        raw = await asyncio.to_thread(
            container.exec_run, _shell(command), workdir=workdir, stream=True
        )
        chunks = iter(raw.output)
        try:
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                yield chunk
        finally:
            _close_stream(raw.output, container_id)

    # Host

    async def info(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.client.info)

    # Networks

    async def create_network(self, name: str, **options: Any) -> str:
        network = await asyncio.to_thread(self.client.networks.create, name, **options)
        return network.id

    async def connect_network(self, name: str, container_id: str) -> None:
        network = await asyncio.to_thread(self.client.networks.get, name)
        await asyncio.to_thread(network.connect, container_id)

    async def disconnect_network(self, name: str, container_id: str, force: bool = True) -> None:
        network = await asyncio.to_thread(self.client.networks.get, name)
        await asyncio.to_thread(network.disconnect, container_id, force=force)

    async def remove_network(self, name: str) -> None:
        network = await asyncio.to_thread(self.client.networks.get, name)
        await asyncio.to_thread(network.remove)

    # Images

    async def pull_image(self, name: str, tag: str = "latest") -> dict[str, Any]:
        image = await asyncio.to_thread(self.client.images.pull, name, tag=tag)
        return image.attrs

    async def remove_image(self, reference: str, force: bool = True) -> None:
        await asyncio.to_thread(self.client.images.remove, reference, force=force)
