"""Built-in workflow catalogue shipped as JSON files next to this module."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from importlib import resources

from co_sandbox.models import CodebaseType, WorkflowDefinition
from co_sandbox.workflows.definition import WorkflowDefinitionManager

logger = logging.getLogger(__name__)

BUILTIN_WORKFLOWS = [
    "nodejs-standard",
    "solidity-standard",
    "mixed-comprehensive",
    "quick-scan",
    "deep-analysis",
]


@lru_cache(maxsize=None)
def _load(name: str) -> WorkflowDefinition:
    source = resources.files("co_sandbox.workflows").joinpath("builtin", f"{name}.json")
    return WorkflowDefinitionManager.parse(json.loads(source.read_text(encoding="utf-8")))


class PredefinedWorkflows:
    """Lookup and auto-selection over the built-in workflows."""

    @staticmethod
    def all() -> list[WorkflowDefinition]:
        return [_load(name).model_copy(deep=True) for name in BUILTIN_WORKFLOWS]

    @staticmethod
    def get(name: str) -> WorkflowDefinition | None:
        if name not in BUILTIN_WORKFLOWS:
            return None
        return _load(name).model_copy(deep=True)

    @staticmethod
    def compatible(codebase_type: str) -> list[WorkflowDefinition]:
        return [
            workflow
            for workflow in PredefinedWorkflows.all()
            if WorkflowDefinitionManager.is_compatible(workflow, codebase_type)
        ]

    @staticmethod
    def auto_select(
        codebase_type: CodebaseType | str,
        detected_languages: list[str],
        detected_frameworks: list[str],
        quick_scan: bool = False,
    ) -> WorkflowDefinition:
        """Pick the best built-in workflow for a codebase."""
        codebase_type = CodebaseType(codebase_type)
        if quick_scan:
            name = "quick-scan"
        elif codebase_type == CodebaseType.MIXED or (
            "javascript" in detected_languages and "solidity" in detected_languages
        ):
            name = "mixed-comprehensive"
        elif codebase_type == CodebaseType.SOLIDITY or "solidity" in detected_languages:
            name = "solidity-standard"
        else:
            name = "nodejs-standard"

        logger.debug(
            "Auto-selected workflow %s for %s (languages=%s, frameworks=%s)",
            name,
            codebase_type.value,
            detected_languages,
            detected_frameworks,
        )
        return PredefinedWorkflows.get(name)
