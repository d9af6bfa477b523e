"""
External Resource Gatekeeper — Registry-gated, size-capped, verified fetches.

Packages and images only enter a sandbox from allow-listed registries.
Downloads run inside the sandbox and are streamed so the size cap can abort
them the moment it is crossed.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
import shlex
from typing import Any

from co_sandbox.config import GatekeeperConfig
from co_sandbox.errors import ExternalResourceError, OperationTimeoutError
from co_sandbox.models import ProxyConfig
from co_sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_REGISTRY = "registry.npmjs.org"
DEFAULT_IMAGE_REGISTRY = "docker.io"
SIZE_PATTERN = re.compile(r"^(\d+)([kmg]?)b?$", re.IGNORECASE)
SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
NPM_NAME = re.compile(r"^(@[a-z0-9-~][a-z0-9-._~]*/)?[a-z0-9-~][a-z0-9-._~]*$")
SECURE_NPM_CONFIG = [
    "npm config set audit-level moderate",
    "npm config set fund false",
    "npm config set update-notifier false",
    "npm config set save false",
]


def parse_size(value: str) -> int:
    """Parse ``100m``/``512kb``/``2g`` style sizes to bytes."""
    match = SIZE_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid size format: {value}")
    return int(match.group(1)) * SIZE_UNITS[match.group(2).lower()]


def extract_registry(package_name: str) -> str:
    """Scoped and unscoped package names both resolve to the npm registry."""
    return DEFAULT_PACKAGE_REGISTRY


def extract_image_registry(image_name: str) -> str:
    return image_name.split("/", 1)[0] if "/" in image_name else DEFAULT_IMAGE_REGISTRY


def audit_reports_vulnerabilities(output: str) -> bool:
    """True when npm audit output reports high or critical findings."""
    text = output.lower()
    return "vulnerabilities found" in text and ("high" in text or "critical" in text)


class ResourceGatekeeper:
    """Controls every package and image that enters a sandbox."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: GatekeeperConfig | None = None,
        proxy: ProxyConfig | None = None,
    ) -> None:
        self.runtime = runtime
        self.config = config or GatekeeperConfig()
        self.proxy = proxy

    @property
    def max_download_bytes(self) -> int:
        return parse_size(self.config.max_download_size)

    def _registry_allowed(self, registry: str) -> bool:
        return any(
            allowed == "*" or registry == allowed or fnmatch.fnmatch(registry, allowed)
            for allowed in self.config.allowed_registries
        )

    def is_registry_allowed(self, package_name: str) -> bool:
        return self._registry_allowed(extract_registry(package_name))

    def is_image_registry_allowed(self, image_name: str) -> bool:
        return self._registry_allowed(extract_image_registry(image_name))

    def proxy_environment(self) -> dict[str, str]:
        if self.proxy is None:
            return {}
        auth = ""
        if self.proxy.username:
            password = self.proxy.password.get_secret_value() if self.proxy.password else ""
            auth = f"{self.proxy.username}:{password}@"
        url = f"http://{auth}{self.proxy.host}:{self.proxy.port}"
        return {
            "http_proxy": url,
            "https_proxy": url,
            "HTTP_PROXY": url,
            "HTTPS_PROXY": url,
            "no_proxy": "localhost,127.0.0.1,::1",
        }

    async def download_dependency(
        self,
        container_id: str,
        package_name: str,
        version: str,
        expected_checksum: str | None = None,
    ) -> str:
        """
        Fetch a package into the sandbox and verify it.

        Args:
            container_id: Target sandbox.
            package_name: npm package name or direct URL.
            version: Package version.
            expected_checksum: Hex digest to compare against, if any.

        Returns:
            Path of the download directory inside the sandbox.

        Raises:
            ExternalResourceError: Registry not allowed, size cap exceeded,
                or checksum mismatch.
            OperationTimeoutError: Download exceeded the configured timeout.
        """
        if not self.is_registry_allowed(package_name):
            raise ExternalResourceError(
                f"Package registry not allowed for: {package_name}",
                {"package": package_name},
            )

        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", package_name)
        download_path = f"{self.config.download_dir}/{safe_name}-{version}"
        await self.runtime.exec(container_id, ["mkdir", "-p", download_path])

        command = self._download_command(package_name, version, download_path)
        try:
            received = await asyncio.wait_for(
                self._stream_capped(container_id, command, package_name),
                self.config.download_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            await self._cleanup(container_id, download_path)
            raise OperationTimeoutError(
                f"Download timeout exceeded for {package_name}@{version}",
                self.config.download_timeout_seconds,
                {"container_id": container_id, "package": package_name},
            ) from exc
        except ExternalResourceError:
            await self._cleanup(container_id, download_path)
            raise

        if expected_checksum and self.config.integrity_checks:
            actual = await self.compute_checksum(container_id, download_path)
            if actual != expected_checksum:
                logger.warning(
                    "Checksum mismatch for %s@%s: expected %s, got %s",
                    package_name,
                    version,
                    expected_checksum,
                    actual,
                )
                await self._cleanup(container_id, download_path)
                raise ExternalResourceError(
                    f"Integrity validation failed for {package_name}@{version}",
                    {"expected": expected_checksum, "actual": actual},
                )

        logger.info("Downloaded %s@%s (%d bytes of output)", package_name, version, received)
        return download_path

    def _download_command(self, package_name: str, version: str, download_path: str) -> str:
        target = shlex.quote(download_path)
        if NPM_NAME.match(package_name):
            spec = shlex.quote(f"{package_name}@{version}")
            return f"cd {target} && npm pack {spec} --pack-destination ."
        url = shlex.quote(package_name)
        return f"cd {target} && (wget -O package.tar.gz {url} || curl -L -o package.tar.gz {url})"

    async def _stream_capped(self, container_id: str, command: str, package_name: str) -> int:
        limit = self.max_download_bytes
        received = 0
        stream = self.runtime.exec_stream(container_id, command)
        try:
            async for chunk in stream:
                received += len(chunk)
                if received > limit:
                    raise ExternalResourceError(
                        f"Download size exceeded limit: {self.config.max_download_size}",
                        {"package": package_name, "received_bytes": received},
                    )
        finally:
            await stream.aclose()
        return received

    async def compute_checksum(self, container_id: str, path: str) -> str:
        algorithm = self.config.checksum_algorithm
        target = shlex.quote(path)
        result = await self.runtime.exec(
            container_id,
            f"if [ -d {target} ]; then {algorithm}sum {target}/* | head -n 1; "
            f"else {algorithm}sum {target}; fi | cut -d' ' -f1",
        )
        return result.stdout.strip()

    async def _cleanup(self, container_id: str, path: str) -> None:
        try:
            await self.runtime.exec(container_id, ["rm", "-rf", path])
        except Exception as exc:
            logger.warning("Failed to clean up %s in %s: %s", path, container_id, exc)

    async def install_npm_packages(self, container_id: str, packages: list[str]) -> None:
        """
        Install packages with an audit gate.

        Raises:
            ExternalResourceError: A package is outside the allow-list or
                the audit reports high/critical vulnerabilities.
        """
        for package in packages:
            if not self.is_registry_allowed(package):
                raise ExternalResourceError(
                    f"Package not from allowed registry: {package}", {"package": package}
                )
        if not packages:
            return

        environment = self.proxy_environment()
        install_dir = shlex.quote(self.config.install_dir)
        await self.runtime.exec(
            container_id,
            " && ".join([f"mkdir -p {install_dir}", f"cd {install_dir}", *SECURE_NPM_CONFIG]),
            environment=environment,
        )

        names = " ".join(shlex.quote(p) for p in packages)
        result = await self.runtime.exec(
            container_id,
            f"npm install --no-save --audit --audit-level=moderate {names} "
            "&& npm audit --audit-level=moderate",
            workdir=self.config.install_dir,
            timeout=self.config.download_timeout_seconds,
            environment=environment,
        )
        if audit_reports_vulnerabilities(result.output):
            raise ExternalResourceError(
                "Security vulnerabilities found in dependencies",
                {"packages": packages, "exit_code": result.exit_code},
            )
        logger.info("Installed npm packages: %s", ", ".join(packages))

    async def pull_container_image(
        self,
        image_name: str,
        tag: str = "latest",
        expected_digest: str | None = None,
    ) -> dict[str, Any]:
        """
        Pull an image from an allowed registry, verifying its digest if given.

        Returns:
            The pulled image's attributes.
        """
        if not self.is_image_registry_allowed(image_name):
            raise ExternalResourceError(
                f"Image registry not allowed: {image_name}", {"image": image_name}
            )
        try:
            attrs = await asyncio.wait_for(
                self.runtime.pull_image(image_name, tag),
                self.config.download_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Image pull timeout for {image_name}:{tag}",
                self.config.download_timeout_seconds,
                {"image": image_name},
            ) from exc

        if expected_digest and self.config.integrity_checks:
            digests = attrs.get("RepoDigests") or []
            if not any(d == expected_digest or d.endswith(f"@{expected_digest}") for d in digests):
                await self.runtime.remove_image(f"{image_name}:{tag}")
                raise ExternalResourceError(
                    f"Image digest validation failed for {image_name}",
                    {"expected": expected_digest, "actual": digests},
                )
        logger.info("Pulled image %s:%s", image_name, tag)
        return attrs
