#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the engine and runner components directly:

* load settings from `.env`
* load a template and start it in a working copy
* feed tasks to the loop and advance until the workflow completes
* resume from the persisted cursor half-way through

The template path and working copy are passed as arguments.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from agent_workflow.runner.config import BUILTIN_TEMPLATES_DIR, WorkflowSettings
from agent_workflow.runner.logging import configure_logging
from agent_workflow.runner.store import WorkflowStateStore
from agent_workflow.runner.tools import (
    workflow_advance,
    workflow_resume,
    workflow_set_tasks,
    workflow_start,
)
from agent_workflow.workflow import load_workflow_template


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow end to end (programmatic example).")
    parser.add_argument(
        "--template",
        default=str(BUILTIN_TEMPLATES_DIR / "feature.yaml"),
        help="Template YAML file",
    )
    parser.add_argument("--worktree", default=".", help="Working copy for the state file")
    parser.add_argument(
        "--tasks",
        default="parser,renderer",
        help='Comma-separated task titles for the first loop, e.g. "parser,renderer"',
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = WorkflowSettings()
    configure_logging(settings.log_level)

    template = load_workflow_template(Path(args.template))
    store = WorkflowStateStore(settings.state_file_for(Path(args.worktree)))
    titles = [title.strip() for title in args.tasks.split(",") if title.strip()]
    tasks = [{"id": f"t{i}", "title": title} for i, title in enumerate(titles, start=1)]

    machine = workflow_start(store, template, summary="Example run").machine
    loops_fed: set[str] = set()

    while True:
        status = machine.get_status()
        print(f"[{status.progress.current_step}/{status.progress.total_steps}] {status.step}")
        if status.is_complete:
            break

        if status.step_type.value == "loop" and status.sub_step is None:
            loop_id = template.steps[status.progress.current_step - 1].loop  # type: ignore[union-attr]
            workflow_set_tasks(machine, store, loop_id, [] if loop_id in loops_fed else tasks)
            loops_fed.add(loop_id)
            continue

        workflow_advance(machine, store, f"done: {status.step} {status.sub_step or ''}".strip())
        # Simulate a restart after every step.
        machine = workflow_resume(store, template)

    for key, output in machine.get_context().items():
        print(f"{key}: {output}")
    print(f"State persisted to: {store.path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
