"""Caller-side workflow operations.

Each operation drives a `WorkflowStateMachine` and, when it mutated the
cursor, saves it through a `WorkflowStateStore` before returning. This is the
layer an agent-facing surface (CLI, tool server) talks to.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from agent_workflow.workflow import (
    ArtefactRegistration,
    Task,
    WorkflowStateMachine,
    WorkflowStatus,
    WorkflowStatusKind,
    WorkflowTemplate,
)

from .store import WorkflowStateStore

logger = logging.getLogger(__name__)

ADVANCE_REMINDER = (
    "\n\nIMPORTANT: When you have completed this step, call advance with a summary "
    "of what you accomplished."
)


class WorkflowNotStartedError(LookupError):
    """No persisted cursor exists for the requested working copy."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"No workflow state found at {path}")


@dataclass(frozen=True, slots=True)
class WorkflowStartResult:
    machine: WorkflowStateMachine
    status: WorkflowStatus


def with_advance_reminder(status: WorkflowStatus) -> WorkflowStatus:
    if status.status is not WorkflowStatusKind.RUNNING:
        return status
    return dataclasses.replace(status, instructions=status.instructions + ADVANCE_REMINDER)


def workflow_start(
    store: WorkflowStateStore,
    template: WorkflowTemplate,
    summary: str | None = None,
) -> WorkflowStartResult:
    """Start a fresh run of `template`, replacing any cursor already in `store`."""

    machine = WorkflowStateMachine(template)
    machine.start()
    if summary is not None:
        machine.set_summary(summary)

    store.save(machine.get_state())
    logger.info(
        "Workflow started",
        extra={"workflow": template.name, "path": str(store.path)},
    )
    return WorkflowStartResult(machine=machine, status=with_advance_reminder(machine.get_status()))


def workflow_resume(store: WorkflowStateStore, template: WorkflowTemplate) -> WorkflowStateMachine:
    """Rehydrate the machine for the cursor saved in `store`.

    Raises:
        WorkflowNotStartedError: if nothing has been saved yet.
        WorkflowLookupError: if the cursor does not fit `template`.
    """

    state = store.load()
    if state is None:
        raise WorkflowNotStartedError(store.path)
    return WorkflowStateMachine.from_state(template, state)


def workflow_status(machine: WorkflowStateMachine) -> WorkflowStatus:
    return with_advance_reminder(machine.get_status())


def workflow_set_tasks(
    machine: WorkflowStateMachine,
    store: WorkflowStateStore,
    loop_id: str,
    tasks: Iterable[Task | Mapping[str, object]],
) -> WorkflowStatus:
    machine.set_tasks(loop_id, tasks)
    store.save(machine.get_state())
    return workflow_status(machine)


def workflow_advance(
    machine: WorkflowStateMachine, store: WorkflowStateStore, output: str
) -> WorkflowStatus:
    status = machine.advance(output)
    store.save(machine.get_state())
    if status.is_complete:
        logger.info("Workflow complete", extra={"workflow": machine.template.name})
    return with_advance_reminder(status)


def workflow_context(machine: WorkflowStateMachine) -> dict[str, str]:
    return machine.get_context()


def workflow_set_summary(
    machine: WorkflowStateMachine, store: WorkflowStateStore, summary: str
) -> None:
    machine.set_summary(summary)
    store.save(machine.get_state())


def workflow_register_artefacts(
    machine: WorkflowStateMachine,
    store: WorkflowStateStore,
    paths: Iterable[str],
    worktree: Path,
) -> ArtefactRegistration:
    """Register files produced while working on the workflow.

    Relative paths are resolved against `worktree`. Paths that are blank or do
    not point to an existing file are reported as invalid and not recorded.
    """

    existing: list[str] = []
    missing: list[str] = []
    for raw in paths:
        if not raw.strip():
            missing.append(raw)
            continue
        candidate = Path(raw.strip())
        if not candidate.is_absolute():
            candidate = worktree / candidate
        if candidate.is_file():
            existing.append(str(candidate.resolve()))
        else:
            missing.append(raw)

    result = machine.register_artefacts(existing)
    result.invalid.extend(missing)
    if result.registered:
        store.save(machine.get_state())
    if missing:
        logger.warning("Ignoring invalid artefact paths", extra={"paths": missing})
    return result
