"""CLI entrypoint for the workflow runner.

Every command loads the template, rehydrates the cursor saved in the working
copy (except `start`, `validate` and `list`), applies one operation and prints
a JSON result on stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from agent_workflow import __version__
from agent_workflow.workflow import (
    WorkflowLookupError,
    WorkflowTemplate,
    WorkflowValidationError,
    load_workflow_template,
)

from .config import WorkflowSettings
from .discovery import discover_workflows, find_workflow
from .logging import configure_logging
from .store import WorkflowStateStore
from .tools import (
    WorkflowNotStartedError,
    workflow_advance,
    workflow_context,
    workflow_register_artefacts,
    workflow_resume,
    workflow_set_summary,
    workflow_set_tasks,
    workflow_start,
    workflow_status,
)

logger = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    pass


def _add_template_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--template",
        required=True,
        help="Path to a template YAML file, or the name of a discovered template",
    )
    parser.add_argument(
        "--worktree",
        default=".",
        help="Working copy whose workflow state is read and written (default: cwd)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-workflow",
        description="Drive a resumable agent workflow stored in a working copy",
    )
    parser.add_argument(
        "--version", action="version", version=f"agent-workflow-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a template file")
    validate.add_argument("path", help="Path to the template YAML file")

    list_cmd = subparsers.add_parser("list", help="List built-in and custom templates")
    list_cmd.add_argument(
        "--workspace",
        default=".",
        help="Workspace root that holds the custom templates folder",
    )

    start = subparsers.add_parser("start", help="Start a workflow, replacing any saved state")
    _add_template_args(start)
    start.add_argument("--summary", default=None, help="Short summary of the request")

    status = subparsers.add_parser("status", help="Show the active step")
    _add_template_args(status)

    set_tasks = subparsers.add_parser("set-tasks", help="Assign the tasks a loop iterates over")
    _add_template_args(set_tasks)
    set_tasks.add_argument("--loop", required=True, help="Loop id")
    tasks_source = set_tasks.add_mutually_exclusive_group(required=True)
    tasks_source.add_argument(
        "--tasks",
        help='JSON list of tasks, e.g. \'[{"id": "a", "title": "A"}]\'',
    )
    tasks_source.add_argument("--tasks-file", help="File holding the JSON list of tasks")

    advance = subparsers.add_parser("advance", help="Complete the active step and move on")
    _add_template_args(advance)
    advance.add_argument("--output", required=True, help="What was accomplished")

    context = subparsers.add_parser("context", help="Print outputs of completed steps")
    _add_template_args(context)

    artefacts = subparsers.add_parser(
        "register-artefacts", help="Record files produced by the workflow"
    )
    _add_template_args(artefacts)
    artefacts.add_argument("paths", nargs="+", help="Files to register")

    summary = subparsers.add_parser("summary", help="Set the workflow summary")
    _add_template_args(summary)
    summary.add_argument("text", help="Summary text (trimmed to 100 characters)")

    return parser


def _resolve_template(value: str, settings: WorkflowSettings, workspace: Path) -> WorkflowTemplate:
    path = Path(value)
    if path.is_file():
        return load_workflow_template(path)

    workflows = discover_workflows(
        templates_dir=settings.templates_dir,
        workspace_root=workspace,
        custom_folder=settings.custom_workflows_folder,
    )
    match = find_workflow(workflows, value)
    if match is None:
        raise TemplateNotFoundError(f"Workflow template not found: {value}")
    return load_workflow_template(match.path)


def _read_tasks(args: argparse.Namespace) -> list[object]:
    raw = args.tasks
    if args.tasks_file is not None:
        try:
            raw = Path(args.tasks_file).read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read tasks file: {e}") from e
    tasks = json.loads(raw)
    if not isinstance(tasks, list):
        raise ValueError("Tasks must be a JSON list")
    return tasks


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = WorkflowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            try:
                template = load_workflow_template(Path(args.path))
            except OSError as e:
                print(f"Cannot read template: {e}", file=sys.stderr)
                return 2
            _emit({"valid": True, "name": template.name, "steps": len(template.steps)})
            return 0

        if args.command == "list":
            workflows = discover_workflows(
                templates_dir=settings.templates_dir,
                workspace_root=Path(args.workspace),
                custom_folder=settings.custom_workflows_folder,
            )
            _emit([w.to_json() for w in workflows])
            return 0

        worktree = Path(args.worktree)
        template = _resolve_template(args.template, settings, worktree)
        store = WorkflowStateStore(settings.state_file_for(worktree))

        if args.command == "start":
            result = workflow_start(store, template, summary=args.summary)
            _emit(result.status.to_json())
            return 0

        machine = workflow_resume(store, template)

        if args.command == "status":
            _emit(workflow_status(machine).to_json())
            return 0

        if args.command == "set-tasks":
            status = workflow_set_tasks(machine, store, args.loop, _read_tasks(args))
            _emit(status.to_json())
            return 0

        if args.command == "advance":
            _emit(workflow_advance(machine, store, args.output).to_json())
            return 0

        if args.command == "context":
            _emit(workflow_context(machine))
            return 0

        if args.command == "register-artefacts":
            result = workflow_register_artefacts(machine, store, args.paths, worktree)
            _emit(result.to_json())
            return 0

        if args.command == "summary":
            workflow_set_summary(machine, store, args.text)
            _emit(machine.get_status().to_json())
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except WorkflowValidationError as e:
        logger.warning("Validation failed", extra={"field": e.field})
        print(f"Validation failed: {e}", file=sys.stderr)
        return 3

    except (WorkflowLookupError, WorkflowNotStartedError, TemplateNotFoundError) as e:
        print(str(e), file=sys.stderr)
        return 4

    except (ValidationError, ValueError) as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
