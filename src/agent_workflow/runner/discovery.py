"""Workflow template discovery.

Templates are looked up in two places:
- the built-in templates directory (`WorkflowSettings.templates_dir`)
- a custom folder inside the workspace (`WorkflowSettings.custom_workflows_folder`)

Discovery only reads `name` and `description`; full validation happens when a
template is loaded to be run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkflowMetadata:
    name: str
    description: str
    path: Path
    is_built_in: bool

    def to_json(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "path": str(self.path),
            "is_built_in": self.is_built_in,
        }


def _read_metadata(path: Path) -> tuple[str, str] | None:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return None

    if not isinstance(parsed, dict):
        return None
    name = parsed.get("name")
    description = parsed.get("description")
    if not isinstance(name, str) or not isinstance(description, str):
        return None
    return name, description


def _discover_in(directory: Path, *, is_built_in: bool) -> list[WorkflowMetadata]:
    if not directory.is_dir():
        return []

    results: list[WorkflowMetadata] = []
    for path in sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".yaml"):
        metadata = _read_metadata(path)
        if metadata is None:
            logger.warning("Skipping invalid workflow file", extra={"path": str(path)})
            continue
        name, description = metadata
        results.append(
            WorkflowMetadata(name=name, description=description, path=path, is_built_in=is_built_in)
        )
    return results


def _resolve_custom_folder(workspace_root: Path, custom_folder: str) -> Path | None:
    if ".." in Path(custom_folder).parts:
        logger.warning(
            "Parent directory traversal is not allowed in the custom workflows folder",
            extra={"custom_folder": custom_folder},
        )
        return None

    root = workspace_root.resolve()
    resolved = (root / custom_folder).resolve()
    if not resolved.is_relative_to(root):
        logger.warning(
            "Custom workflows folder resolves outside the workspace",
            extra={"custom_folder": custom_folder, "workspace_root": str(root)},
        )
        return None
    return resolved


def discover_workflows(
    *,
    templates_dir: Path,
    workspace_root: Path,
    custom_folder: str = ".agent-workflow/workflows",
) -> list[WorkflowMetadata]:
    """List available templates, built-in ones first.

    Missing directories yield nothing. Unreadable or malformed files are skipped.
    """

    found = _discover_in(templates_dir, is_built_in=True)

    custom_dir = _resolve_custom_folder(workspace_root, custom_folder)
    if custom_dir is not None:
        found.extend(_discover_in(custom_dir, is_built_in=False))
    return found


def find_workflow(workflows: list[WorkflowMetadata], name: str) -> WorkflowMetadata | None:
    """Pick a discovered template by name; custom templates shadow built-ins."""

    match: WorkflowMetadata | None = None
    for workflow in workflows:
        if workflow.name == name or workflow.path.stem == name:
            match = workflow
    return match
