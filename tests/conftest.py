"""Shared fixtures: an in-memory Docker client double and preconfigured components."""

from __future__ import annotations

import itertools
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from docker.errors import APIError, NotFound

from co_sandbox.config import MonitorConfig, SandboxSettings, WorkflowConfig
from co_sandbox.resilience.retry import RetryOptions
from co_sandbox.runtime import ContainerRuntime

ExecReply = tuple[int, str, str]
ExecRule = Callable[[str], ExecReply | None]


class FakeExecResult:
    def __init__(self, exit_code: int | None, output: Any) -> None:
        self.exit_code = exit_code
        self.output = output


class FakeStream:
    """Blocking chunk iterator standing in for the SDK's exec output stream."""

    def __init__(self, chunks: list[bytes], stall: bool = False) -> None:
        self._chunks = iter(chunks)
        self.stall = stall
        self.closed = threading.Event()

    def __iter__(self) -> FakeStream:
        return self

    def __next__(self) -> bytes:
        if not self.closed.is_set():
            chunk = next(self._chunks, None)
            if chunk is not None:
                return chunk
            if self.stall:
                self.closed.wait(timeout=5)
        raise StopIteration

    def close(self) -> None:
        self.closed.set()


class FakeContainer:
    """Mimics the subset of ``docker.models.containers.Container`` used by the runtime."""

    _ids = itertools.count(1)

    def __init__(self, client: FakeDockerClient, spec: dict[str, Any]) -> None:
        self.client = client
        self.spec = spec
        self.name = spec["name"]
        self.id = f"{next(self._ids):012x}"
        self.labels = dict(spec.get("labels") or {})
        self.state = "created"
        self.memory = spec.get("mem_limit", 0)
        self.cpu_quota = spec.get("cpu_quota", 0)
        self.networks: dict[str, dict] = {spec.get("network_mode", "bridge"): {}}
        self.commands: list[str] = []
        self.archives: list[tuple[str, bytes]] = []
        self.kill_calls = 0
        self.remove_calls = 0
        self.updates: list[dict[str, Any]] = []

    @property
    def attrs(self) -> dict[str, Any]:
        return {
            "Id": self.id,
            "Name": f"/{self.name}",
            "State": {"Status": self.state},
            "HostConfig": {
                "Privileged": self.spec.get("privileged", False),
                "CapDrop": self.spec.get("cap_drop"),
                "SecurityOpt": self.spec.get("security_opt"),
                "NetworkMode": self.spec.get("network_mode", "bridge"),
                "Memory": self.memory,
                "CpuQuota": self.cpu_quota,
            },
            "NetworkSettings": {"Networks": dict(self.networks)},
        }

    def _ensure_exists(self) -> None:
        if self.name not in self.client.containers.by_name:
            raise NotFound(f"No such container: {self.name}")

    def start(self) -> None:
        self._ensure_exists()
        if self.client.start_failures:
            self.client.start_failures -= 1
            raise APIError("container start failed: temporary failure")
        self.state = "running"

    def stop(self, timeout: int = 10) -> None:
        self._ensure_exists()
        if self.client.stop_fails:
            raise APIError("stop timed out")
        self.state = "exited"

    def kill(self) -> None:
        self._ensure_exists()
        self.kill_calls += 1
        self.state = "exited"

    def remove(self, force: bool = False) -> None:
        self.remove_calls += 1
        self._ensure_exists()
        del self.client.containers.by_name[self.name]
        self.client.removed.append(self.name)

    def reload(self) -> None:
        self._ensure_exists()

    def update(self, **kwargs: Any) -> None:
        self._ensure_exists()
        self.updates.append(kwargs)
        if "mem_limit" in kwargs:
            self.memory = kwargs["mem_limit"]
        if "cpu_quota" in kwargs:
            self.cpu_quota = kwargs["cpu_quota"]

    def exec_run(
        self,
        cmd: list[str],
        workdir: str | None = None,
        environment: dict[str, str] | None = None,
        demux: bool = False,
        stream: bool = False,
    ) -> FakeExecResult:
        self._ensure_exists()
        command = " ".join(cmd)
        self.commands.append(command)
        if stream:
            chunks = next(
                (c for needle, c in self.client.stream_rules.items() if needle in command), []
            )
            stall = any(needle in command for needle in self.client.stalled_streams)
            output = FakeStream(chunks, stall=stall)
            self.client.streams.append(output)
            return FakeExecResult(None, output)

        code, stdout, stderr = self.client.reply_for(command)
        return FakeExecResult(code, (stdout.encode() or None, stderr.encode() or None))

    def put_archive(self, path: str, data: bytes) -> bool:
        self._ensure_exists()
        self.archives.append((path, data))
        return True


class FakeContainers:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client
        self.by_name: dict[str, FakeContainer] = {}

    def create(self, **spec: Any) -> FakeContainer:
        if self.client.create_failures:
            self.client.create_failures -= 1
            raise APIError(self.client.create_error)
        container = FakeContainer(self.client, spec)
        self.by_name[container.name] = container
        self.client.created.append(spec)
        return container

    def get(self, id_or_name: str) -> FakeContainer:
        container = self.by_name.get(id_or_name)
        if container is None:
            container = next((c for c in self.by_name.values() if c.id == id_or_name), None)
        if container is None:
            raise NotFound(f"No such container: {id_or_name}")
        return container

    def list(self, all: bool = False, filters: dict | None = None) -> list[FakeContainer]:
        wanted = {tuple(label.split("=", 1)) for label in (filters or {}).get("label", [])}
        return [c for c in self.by_name.values() if wanted <= set(c.labels.items())]


class FakeNetwork:
    def __init__(self, client: FakeDockerClient, name: str, options: dict[str, Any]) -> None:
        self.client = client
        self.name = name
        self.id = f"net-{name}"
        self.options = options

    def connect(self, container_id: str) -> None:
        self.client.containers.get(container_id).networks[self.name] = {}

    def disconnect(self, container_id: str, force: bool = False) -> None:
        self.client.containers.get(container_id).networks.pop(self.name, None)

    def remove(self) -> None:
        self.client.networks.by_name.pop(self.name, None)
        self.client.removed_networks.append(self.name)


class FakeNetworks:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client
        self.by_name = {
            name: FakeNetwork(client, name, {}) for name in ("bridge", "host", "none")
        }

    def create(self, name: str, **options: Any) -> FakeNetwork:
        network = FakeNetwork(self.client, name, options)
        self.by_name[name] = network
        return network

    def get(self, name: str) -> FakeNetwork:
        if name not in self.by_name:
            raise NotFound(f"network {name} not found")
        return self.by_name[name]


class FakeImage:
    def __init__(self, attrs: dict[str, Any]) -> None:
        self.attrs = attrs


class FakeImages:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client
        self.pulled: list[str] = []
        self.removed: list[str] = []

    def pull(self, name: str, tag: str = "latest") -> FakeImage:
        self.pulled.append(f"{name}:{tag}")
        return FakeImage({"RepoDigests": [f"{name}@{self.client.image_digest}"]})

    def remove(self, image: str, force: bool = False) -> None:
        self.removed.append(image)


class FakeDockerClient:
    """In-memory stand-in for ``docker.DockerClient``."""

    def __init__(self) -> None:
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks(self)
        self.images = FakeImages(self)
        self.created: list[dict[str, Any]] = []
        self.removed: list[str] = []
        self.removed_networks: list[str] = []
        self.exec_rules: list[ExecRule] = []
        self.stream_rules: dict[str, list[bytes]] = {}
        self.stalled_streams: set[str] = set()
        self.streams: list[FakeStream] = []
        self.create_failures = 0
        self.create_error = "temporary failure creating container"
        self.start_failures = 0
        self.stop_fails = False
        self.image_digest = "sha256:" + "a" * 64
        self.host_info = {"MemTotal": 16 * 1024**3, "NCPU": 8}

    def info(self) -> dict[str, Any]:
        return dict(self.host_info)

    def on_exec(self, needle: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Reply to any command containing ``needle``; later rules win."""
        self.exec_rules.insert(
            0, lambda command: (exit_code, stdout, stderr) if needle in command else None
        )

    def reply_for(self, command: str) -> ExecReply:
        for rule in self.exec_rules:
            reply = rule(command)
            if reply is not None:
                return reply
        return 0, "", ""

    def container(self, name: str) -> FakeContainer:
        return self.containers.by_name[name]

    def all_commands(self) -> list[str]:
        return [cmd for c in self.containers.by_name.values() for cmd in c.commands]


@pytest.fixture(autouse=True)
def instant_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    """Retry policies keep their attempt budgets but never sleep."""
    monkeypatch.setattr(RetryOptions, "delay_for", lambda self, attempt: 0.0)


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="co_sandbox_test_") as tmp:
        yield Path(tmp).resolve()


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def runtime(docker_client: FakeDockerClient) -> ContainerRuntime:
    return ContainerRuntime(docker_client)


@pytest.fixture
def settings(temp_dir: Path) -> SandboxSettings:
    """Settings with monitoring off and zero workflow backoff."""
    return SandboxSettings(
        monitor=MonitorConfig(enabled=False),
        workflow=WorkflowConfig(backoff_base_seconds=0.0),
        allowed_source_roots=[temp_dir],
    )


@pytest.fixture
def codebase(temp_dir: Path) -> Path:
    """A small, benign Node.js project."""
    project = temp_dir / "project"
    (project / "src").mkdir(parents=True)
    (project / "package.json").write_text('{"name": "demo", "version": "1.0.0"}')
    (project / "src" / "index.js").write_text("module.exports = (a, b) => a + b;\n")
    return project
