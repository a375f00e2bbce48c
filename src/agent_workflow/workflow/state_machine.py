"""Resumable workflow state machine.

The machine walks the top-level steps of a `WorkflowTemplate` in order. Loop
steps replay their sub-step sequence once per task; tasks are supplied at
runtime via `set_tasks`. The cursor is persisted by id (step, sub-step, task)
and re-resolved against the template on `from_state`, so a restart resumes at
the same node even if unrelated parts of the template changed.

A machine owns its cursor exclusively. It does no locking and no I/O; callers
persist `get_state()` after every mutation.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import assert_never

from .types import (
    ActionStep,
    AgentConfig,
    ArtefactRegistration,
    ContextAction,
    LoopStep,
    LoopSubStep,
    Task,
    TaskContext,
    TaskStatusContext,
    TopLevelStep,
    WorkflowLookupError,
    WorkflowProgress,
    WorkflowState,
    WorkflowStatus,
    WorkflowStatusKind,
    WorkflowTemplate,
    WorkflowValidationError,
)

COMPLETE_INSTRUCTIONS = "Workflow complete."
AWAITING_TASKS_INSTRUCTIONS = "Set tasks for loop '{loop}' to begin this step."
SUMMARY_MAX_LENGTH = 100

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def _coerce_task(task: Task | Mapping[str, object]) -> Task:
    if isinstance(task, Task):
        return task.model_copy(deep=True)
    return Task.model_validate(task)


def _check_unique_ids(tasks: list[Task], field: str) -> None:
    seen: set[str] = set()
    for index, task in enumerate(tasks):
        if task.id in seen:
            raise WorkflowValidationError(f"{field}[{index}].id", f"duplicate task id '{task.id}'")
        seen.add(task.id)


class WorkflowStateMachine:
    """Drive one workflow instance through a template.

    Example:
        machine = WorkflowStateMachine(template)
        machine.start()
        machine.advance("planned three tasks")
        machine.set_tasks("implement", tasks)
        status = machine.get_status()
    """

    def __init__(self, template: WorkflowTemplate) -> None:
        self._template = template
        self._reset()

    def _reset(self) -> None:
        self._status = WorkflowStatusKind.RUNNING
        self._step_index = 0
        self._task_index: int | None = None
        self._sub_step_index: int | None = None
        self._tasks: dict[str, list[Task]] = {}
        self._outputs: dict[str, str] = {}
        self._summary: str | None = None
        self._artefacts: list[str] | None = None
        self._context_action_executed = False

    @property
    def template(self) -> WorkflowTemplate:
        return self._template

    @property
    def status(self) -> WorkflowStatusKind:
        return self._status

    # ------------------------------------------------------------------
    # Position helpers
    # ------------------------------------------------------------------

    def _current_step(self) -> TopLevelStep:
        return self._template.steps[self._step_index]

    def _loop_tasks(self, step: LoopStep) -> list[Task]:
        return self._tasks.get(step.loop, [])

    def _current_sub_step(self, step: LoopStep) -> LoopSubStep | None:
        if self._sub_step_index is None:
            return None
        return self._template.sub_steps(step.loop)[self._sub_step_index]

    def _current_task(self, step: LoopStep) -> Task | None:
        if self._task_index is None:
            return None
        return self._loop_tasks(step)[self._task_index]

    def _is_iterating(self) -> bool:
        return self._task_index is not None and self._sub_step_index is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _enter_task(self, step: LoopStep, task_index: int) -> None:
        self._task_index = task_index
        self._sub_step_index = 0
        self._loop_tasks(step)[task_index].status = "in_progress"

    def _begin_loop(self, step: LoopStep) -> None:
        tasks = self._loop_tasks(step)
        if not tasks:
            self._advance_to_next_step()
            return
        # Another step may have walked the same loop already.
        for task in tasks:
            if task.status in ("in_progress", "done"):
                task.status = "pending"
        self._enter_task(step, 0)
        self._context_action_executed = False

    def _advance_to_next_step(self) -> None:
        self._task_index = None
        self._sub_step_index = None
        self._context_action_executed = False

        next_index = self._step_index + 1
        if next_index >= len(self._template.steps):
            self._status = WorkflowStatusKind.COMPLETE
            return

        self._step_index = next_index
        next_step = self._current_step()
        # Only a loop that already has tasks starts on its own; an empty or
        # missing list waits for the next set_tasks call.
        if isinstance(next_step, LoopStep) and self._loop_tasks(next_step):
            self._begin_loop(next_step)

    def _advance_within_loop(self, step: LoopStep) -> None:
        assert self._task_index is not None and self._sub_step_index is not None
        sub_steps = self._template.sub_steps(step.loop)
        if self._sub_step_index + 1 < len(sub_steps):
            self._sub_step_index += 1
            return

        tasks = self._loop_tasks(step)
        tasks[self._task_index].status = "done"
        if self._task_index + 1 < len(tasks):
            self._enter_task(step, self._task_index + 1)
            return

        self._advance_to_next_step()

    def _output_key(self, step: TopLevelStep) -> str:
        if isinstance(step, ActionStep):
            return step.id
        if isinstance(step, LoopStep):
            task = self._current_task(step)
            sub_step = self._current_sub_step(step)
            if task is None or sub_step is None:
                return step.id
            return f"{step.id}.{task.id}.{sub_step.id}"
        assert_never(step)

    def start(self) -> WorkflowStatus:
        """Position the cursor at the first step, discarding any prior progress.

        A leading loop step has no active task until `set_tasks` is called.
        """

        self._reset()
        return self.get_status()

    def set_tasks(self, loop_id: str, tasks: Iterable[Task | Mapping[str, object]]) -> None:
        """Record the task list for `loop_id`.

        When `loop_id` is the active loop and iteration has not started, an
        empty list skips the loop and a non-empty list starts at its first task.

        Raises:
            WorkflowLookupError: if the template defines no such loop.
            WorkflowValidationError: if two tasks share an id; nothing is stored.
        """

        if loop_id not in self._template.loops:
            raise WorkflowLookupError("loop", loop_id)

        new_tasks = [_coerce_task(task) for task in tasks]
        _check_unique_ids(new_tasks, "tasks")

        previous = self._tasks.get(loop_id, [])
        self._tasks[loop_id] = new_tasks

        step = self._current_step()
        if self._status is not WorkflowStatusKind.RUNNING:
            return
        if not isinstance(step, LoopStep) or step.loop != loop_id:
            return

        if not self._is_iterating():
            self._begin_loop(step)
            return

        self._resync_active_task(step, previous)

    def _resync_active_task(self, step: LoopStep, previous: list[Task]) -> None:
        assert self._task_index is not None
        new_tasks = self._loop_tasks(step)
        if not new_tasks:
            self._advance_to_next_step()
            return

        active_id = previous[self._task_index].id if self._task_index < len(previous) else None
        for index, task in enumerate(new_tasks):
            if task.id == active_id:
                self._task_index = index
                task.status = "in_progress"
                return

        self._enter_task(step, min(self._task_index, len(new_tasks) - 1))
        self._context_action_executed = False

    def advance(self, output: str) -> WorkflowStatus:
        """Record `output` for the active node and move to the next one.

        On a completed workflow this is a no-op returning the terminal status.
        """

        if self._status is WorkflowStatusKind.COMPLETE:
            return self.get_status()

        step = self._current_step()
        self._outputs[self._output_key(step)] = output

        if isinstance(step, ActionStep):
            self._advance_to_next_step()
        elif isinstance(step, LoopStep):
            if self._is_iterating():
                self._advance_within_loop(step)
            else:
                self._advance_to_next_step()
        else:
            assert_never(step)

        self._context_action_executed = False
        return self.get_status()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _agent_name(self, step: TopLevelStep) -> str | None:
        if isinstance(step, LoopStep):
            sub_step = self._current_sub_step(step)
            if sub_step is not None and sub_step.agent:
                return sub_step.agent
        return step.agent or None

    def _instructions(self, step: TopLevelStep) -> str:
        if isinstance(step, ActionStep):
            return step.instructions
        if isinstance(step, LoopStep):
            sub_step = self._current_sub_step(step)
            task = self._current_task(step)
            if sub_step is None or task is None:
                return AWAITING_TASKS_INSTRUCTIONS.format(loop=step.loop)
            return sub_step.instructions.replace("{task.id}", task.id).replace(
                "{task.title}", task.title
            )
        assert_never(step)

    def _progress(self, step: TopLevelStep) -> WorkflowProgress:
        current = self._step_index + 1
        total = len(self._template.steps)
        if not isinstance(step, LoopStep) or self._status is WorkflowStatusKind.COMPLETE:
            return WorkflowProgress(current_step=current, total_steps=total)

        tasks = self._loop_tasks(step)
        completed = sum(1 for task in tasks if task.status == "done")
        if not self._is_iterating():
            return WorkflowProgress(
                current_step=current,
                total_steps=total,
                completed_tasks=completed,
                total_tasks=len(tasks),
            )

        assert self._task_index is not None and self._sub_step_index is not None
        return WorkflowProgress(
            current_step=current,
            total_steps=total,
            completed_tasks=completed,
            total_tasks=len(tasks),
            current_task=self._task_index + 1,
            current_sub_step=self._sub_step_index + 1,
            total_sub_steps=len(self._template.sub_steps(step.loop)),
        )

    def get_status(self) -> WorkflowStatus:
        step = self._current_step()
        artefacts = tuple(self._artefacts or ())

        if self._status is WorkflowStatusKind.COMPLETE:
            return WorkflowStatus(
                status=self._status,
                step=step.id,
                step_type=step.type,
                instructions=COMPLETE_INSTRUCTIONS,
                progress=self._progress(step),
                summary=self._summary,
                artefacts=artefacts,
            )

        agent = self._agent_name(step)
        agent_config: AgentConfig | None = (
            self._template.agents.get(agent) if agent is not None else None
        )

        task_context: TaskStatusContext | None = None
        sub_step_id: str | None = None
        total_sub_steps: int | None = None
        if isinstance(step, LoopStep) and self._is_iterating():
            task = self._current_task(step)
            sub_step = self._current_sub_step(step)
            assert task is not None and sub_step is not None and self._task_index is not None
            task_context = TaskStatusContext(
                index=self._task_index,
                id=task.id,
                title=task.title,
                total=len(self._loop_tasks(step)),
            )
            sub_step_id = sub_step.id
            total_sub_steps = len(self._template.sub_steps(step.loop))

        return WorkflowStatus(
            status=self._status,
            step=step.id,
            step_type=step.type,
            instructions=self._instructions(step),
            progress=self._progress(step),
            agent=agent,
            agent_config=agent_config,
            task=task_context,
            sub_step=sub_step_id,
            sub_step_index=self._sub_step_index if sub_step_id is not None else None,
            total_sub_steps=total_sub_steps,
            summary=self._summary,
            artefacts=artefacts,
        )

    def get_context(self) -> dict[str, str]:
        """Outputs recorded so far, keyed by step / step.task.sub-step."""

        return dict(self._outputs)

    # ------------------------------------------------------------------
    # Artefacts, summary, context actions
    # ------------------------------------------------------------------

    def register_artefacts(self, paths: Iterable[str]) -> ArtefactRegistration:
        result = ArtefactRegistration()
        current = list(self._artefacts or [])
        for raw in paths:
            if not isinstance(raw, str) or not raw.strip():
                result.invalid.append(str(raw))
                continue
            path = raw.strip()
            if path in current:
                result.duplicates.append(path)
                continue
            current.append(path)
            result.registered.append(path)
        if current:
            self._artefacts = current
        return result

    def set_summary(self, summary: str) -> None:
        """Store a short summary of the request; blank input is ignored."""

        sanitized = _CONTROL_CHARS.sub("", summary.strip())[:SUMMARY_MAX_LENGTH]
        if sanitized:
            self._summary = sanitized

    def get_context_action(self) -> ContextAction | None:
        """Context action the caller should run before working on the active node."""

        if self._status is WorkflowStatusKind.COMPLETE or self._context_action_executed:
            return None
        step = self._current_step()
        if isinstance(step, LoopStep):
            sub_step = self._current_sub_step(step)
            if sub_step is not None and sub_step.context is not None:
                return sub_step.context
        return step.context

    def mark_context_action_executed(self) -> None:
        self._context_action_executed = True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_state(self) -> WorkflowState:
        """Return a detached copy of the cursor, suitable for persisting."""

        step = self._current_step()
        task_context: TaskContext | None = None
        sub_step_id: str | None = None
        if isinstance(step, LoopStep) and self._is_iterating():
            task = self._current_task(step)
            sub_step = self._current_sub_step(step)
            assert task is not None and sub_step is not None and self._task_index is not None
            task_context = TaskContext(index=self._task_index, id=task.id, title=task.title)
            sub_step_id = sub_step.id

        return WorkflowState(
            status=self._status.value,
            step=step.id,
            step_type=step.type,
            task=task_context,
            sub_step=sub_step_id,
            tasks={
                loop_id: [task.model_copy(deep=True) for task in tasks]
                for loop_id, tasks in self._tasks.items()
            },
            outputs=dict(self._outputs),
            summary=self._summary,
            artefacts=list(self._artefacts) if self._artefacts is not None else None,
            context_action_executed=self._context_action_executed,
        )

    @classmethod
    def from_state(
        cls, template: WorkflowTemplate, state: WorkflowState | Mapping[str, object]
    ) -> WorkflowStateMachine:
        """Rebuild a machine at the exact node described by a persisted cursor.

        Every id is looked up in `template`; nothing is trusted by index.

        Raises:
            WorkflowLookupError: if a step, loop, sub-step or task id does not
                resolve against `template`.
            WorkflowValidationError: if a persisted task list repeats an id.
            pydantic.ValidationError: if `state` is not a well-formed cursor.
        """

        if isinstance(state, WorkflowState):
            state = state.model_copy(deep=True)
        else:
            state = WorkflowState.model_validate(state)

        step_index = template.find_step(state.step)
        if step_index is None:
            raise WorkflowLookupError("step", state.step)
        step = template.steps[step_index]
        if step.type is not state.step_type:
            raise WorkflowLookupError(
                "step",
                state.step,
                f"persisted as {state.step_type.value}, template defines {step.type.value}",
            )

        for loop_id, loop_tasks in state.tasks.items():
            if loop_id not in template.loops:
                raise WorkflowLookupError("loop", loop_id)
            _check_unique_ids(loop_tasks, f"tasks.{loop_id}")

        task_index: int | None = None
        sub_step_index: int | None = None
        running = state.status == WorkflowStatusKind.RUNNING.value
        if running and isinstance(step, LoopStep) and (state.task or state.sub_step):
            if state.task is None:
                raise WorkflowLookupError(
                    "task", "", f"sub-step '{state.sub_step}' is active without a task"
                )
            tasks = state.tasks.get(step.loop, [])
            task_index = next((i for i, t in enumerate(tasks) if t.id == state.task.id), None)
            if task_index is None:
                raise WorkflowLookupError("task", state.task.id, f"loop '{step.loop}'")

            sub_step_index = 0
            if state.sub_step is not None:
                sub_steps = template.sub_steps(step.loop)
                sub_step_index = next(
                    (i for i, s in enumerate(sub_steps) if s.id == state.sub_step), None
                )
                if sub_step_index is None:
                    raise WorkflowLookupError("sub-step", state.sub_step, f"loop '{step.loop}'")

        machine = cls(template)
        machine._status = WorkflowStatusKind(state.status)
        machine._step_index = step_index
        machine._task_index = task_index
        machine._sub_step_index = sub_step_index
        machine._tasks = {loop_id: list(tasks) for loop_id, tasks in state.tasks.items()}
        machine._outputs = dict(state.outputs)
        machine._summary = state.summary
        machine._artefacts = list(state.artefacts) if state.artefacts is not None else None
        machine._context_action_executed = state.context_action_executed
        return machine
