"""
Source inspection — Danger-signature scanning and stack detection.

Runs on the host against a codebase before it is copied into a sandbox.
A signature hit is a security violation, not a warning.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from co_sandbox.errors import MaliciousCodeError

logger = logging.getLogger(__name__)

DANGER_SIGNATURES: list[tuple[str, re.Pattern[str]]] = [
    ("recursive-root-delete", re.compile(r"rm\s+-rf\s+/")),
    ("curl-pipe-to-shell", re.compile(r"curl.*\|\s*sh")),
    ("wget-pipe-to-shell", re.compile(r"wget.*\|\s*sh")),
    ("eval-call", re.compile(r"eval\s*\(")),
    ("exec-call", re.compile(r"exec\s*\(")),
    ("system-call", re.compile(r"system\s*\(")),
]


def scan_file(file_path: Path) -> None:
    """
    Check one file for danger signatures.

    Undecodable bytes are replaced, so binary content is still searched.
    Unreadable files are skipped.

    Raises:
        MaliciousCodeError: On the first matching signature.
    """
    try:
        content = file_path.read_bytes().decode("utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Could not read %s: %s", file_path, exc)
        return

    for name, pattern in DANGER_SIGNATURES:
        if pattern.search(content):
            raise MaliciousCodeError(
                f"Potentially malicious code detected in {file_path}",
                {"file_path": str(file_path), "signature": name, "pattern": pattern.pattern},
            )


def scan_source(source: Path) -> int:
    """
    Recursively scan a file or directory, hidden directories included.

    Returns:
        Number of files inspected.

    Raises:
        MaliciousCodeError: If any file carries a danger signature.
    """
    if source.is_file():
        scan_file(source)
        return 1

    scanned = 0
    try:
        entries = sorted(source.iterdir())
    except OSError as exc:
        logger.warning("Could not scan directory %s: %s", source, exc)
        return 0

    for entry in entries:
        if entry.is_symlink():
            continue
        if entry.is_file():
            scan_file(entry)
            scanned += 1
        elif entry.is_dir():
            scanned += scan_source(entry)
    return scanned


def detect_stack(target: Path) -> tuple[list[str], list[str]]:
    """Detect languages and frameworks used by a codebase on the host."""
    languages: set[str] = set()
    frameworks: set[str] = set()

    manifest_map = {
        "package.json": "javascript",
        "tsconfig.json": "typescript",
        "foundry.toml": "solidity",
        "truffle-config.js": "solidity",
    }
    framework_map = {
        "hardhat.config": "hardhat",
        "truffle-config": "truffle",
        "foundry.toml": "foundry",
        "next.config": "nextjs",
        "nest-cli.json": "nestjs",
        "jest.config": "jest",
    }
    ext_map = {
        ".js": "javascript",
        ".jsx": "javascript",
        ".mjs": "javascript",
        ".ts": "typescript",
        ".tsx": "typescript",
        ".sol": "solidity",
    }

    if target.is_file():
        lang = ext_map.get(target.suffix)
        return ([lang] if lang else []), []

    for name, lang in manifest_map.items():
        if (target / name).exists():
            languages.add(lang)

    for file in target.rglob("*"):
        if "node_modules" in file.parts or any(p.startswith(".") for p in file.relative_to(target).parts):
            continue
        if file.is_file():
            if file.suffix in ext_map:
                languages.add(ext_map[file.suffix])
            for prefix, framework in framework_map.items():
                if file.name.startswith(prefix):
                    frameworks.add(framework)

    return sorted(languages), sorted(frameworks)
