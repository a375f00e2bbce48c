"""Unit tests for the workflow state machine transitions."""

from __future__ import annotations

import pytest

from agent_workflow.workflow import (
    StepType,
    Task,
    WorkflowLookupError,
    WorkflowStateMachine,
    WorkflowStatusKind,
    WorkflowTemplate,
    WorkflowValidationError,
    load_workflow_template_from_string,
    validate_template,
)


def _tasks(*ids: str) -> list[dict[str, str]]:
    return [{"id": task_id, "title": f"Task {task_id}"} for task_id in ids]


def test_start_reports_first_step_progress(actions_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(actions_template)

    status = machine.start()

    assert status.status is WorkflowStatusKind.RUNNING
    assert status.step == "one"
    assert status.step_type is StepType.ACTION
    assert status.instructions == "First"
    assert (status.progress.current_step, status.progress.total_steps) == (1, 3)


def test_all_action_template_completes_and_stays_complete(
    actions_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(actions_template)
    machine.start()

    assert machine.advance("1").status is WorkflowStatusKind.RUNNING
    assert machine.advance("2").step == "three"
    final = machine.advance("3")

    assert final.is_complete
    assert final.instructions == "Workflow complete."
    assert final.agent is None

    again = machine.advance("ignored")
    assert again.is_complete
    assert again == final
    assert "ignored" not in machine.get_context().values()


def test_scenario_walks_loop_per_task(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")

    status = machine.get_status()
    assert status.step == "work"
    assert status.sub_step is None
    assert status.task is None

    machine.set_tasks("w", _tasks("A", "B"))

    visited = []
    for _ in range(4):
        status = machine.get_status()
        assert status.task is not None
        visited.append((status.sub_step, status.task.id))
        machine.advance(f"{status.sub_step}-{status.task.id}")

    assert visited == [("s1", "A"), ("s2", "A"), ("s1", "B"), ("s2", "B")]
    assert machine.get_status().step == "done"

    assert machine.advance("wrapped").is_complete


@pytest.mark.parametrize(("sub_steps", "task_count"), [(2, 1), (2, 3), (1, 4)])
def test_loop_takes_k_times_m_advances(sub_steps: int, task_count: int) -> None:
    template = validate_template(
        {
            "name": "km",
            "description": "k x m",
            "agents": {},
            "loops": {
                "l": [{"id": f"s{i}", "instructions": "x"} for i in range(sub_steps)]
            },
            "steps": [
                {"id": "l", "type": "loop"},
                {"id": "after", "type": "action", "instructions": "after"},
            ],
        }
    )
    machine = WorkflowStateMachine(template)
    machine.start()
    machine.set_tasks("l", _tasks(*[str(i) for i in range(task_count)]))

    for _ in range(sub_steps * task_count - 1):
        assert machine.advance("out").step == "l"
    assert machine.advance("out").step == "after"


def test_empty_task_list_skips_active_loop(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")

    machine.set_tasks("w", [])

    status = machine.get_status()
    assert status.step == "done"
    assert machine.get_context() == {"plan": "planned"}


def test_consecutive_empty_loops_need_one_set_tasks_each(
    two_loops_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(two_loops_template)
    machine.start()

    machine.set_tasks("first", [])
    status = machine.get_status()
    assert status.step == "second"
    assert status.sub_step is None

    machine.set_tasks("second", [])
    assert machine.get_status().step == "last"


def test_preassigned_empty_list_waits_for_next_set_tasks(
    two_loops_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(two_loops_template)
    machine.start()
    machine.set_tasks("second", [])

    machine.set_tasks("first", [])

    assert machine.get_status().step == "second"


def test_entering_loop_with_tasks_already_set_starts_iterating(
    two_loops_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(two_loops_template)
    machine.start()
    machine.set_tasks("second", _tasks("x"))
    machine.set_tasks("first", _tasks("y"))

    assert machine.advance("first done").step == "second"
    status = machine.get_status()
    assert status.sub_step == "b"
    assert status.task is not None and status.task.id == "x"


def test_set_tasks_for_inactive_loop_keeps_position(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()

    machine.set_tasks("w", _tasks("A"))

    assert machine.get_status().step == "plan"
    assert machine.advance("planned").sub_step == "s1"


def test_set_tasks_unknown_loop_raises(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()

    with pytest.raises(WorkflowLookupError):
        machine.set_tasks("work", _tasks("A"))


def test_context_keys_distinguish_tasks(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A", "B"))
    for output in ["a1", "a2", "b1", "b2", "final"]:
        machine.advance(output)

    assert machine.get_context() == {
        "plan": "planned",
        "work.A.s1": "a1",
        "work.A.s2": "a2",
        "work.B.s1": "b1",
        "work.B.s2": "b2",
        "done": "final",
    }


def test_get_context_returns_copy(actions_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(actions_template)
    machine.start()
    machine.advance("1")

    context = machine.get_context()
    context["one"] = "tampered"

    assert machine.get_context()["one"] == "1"


def test_loop_status_has_interpolated_instructions_and_agent(
    scenario_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", [{"id": "A", "title": "Parser"}, {"id": "B", "title": "Renderer"}])

    status = machine.get_status()

    assert status.instructions == "Implement Parser (A)"
    assert status.agent == "coder"
    assert status.agent_config is not None
    assert status.agent_config.description == "Writes code"
    assert status.agent_config.cannot == frozenset({"push"})
    assert status.task is not None
    assert (status.task.index, status.task.total) == (0, 2)
    assert (status.sub_step_index, status.total_sub_steps) == (0, 2)
    assert status.progress.current_step == 2
    assert status.progress.current_task_progress == "Task 1/2, Sub-step 1/2"

    status = machine.advance("coded")
    assert status.instructions == "Test Parser"
    assert status.agent is None
    assert status.agent_config is None


def test_task_status_bookkeeping(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", [Task(id="A", title="A"), Task(id="B", title="B")])

    machine.advance("a1")
    machine.advance("a2")

    tasks = machine.get_state().tasks["w"]
    assert [t.status for t in tasks] == ["done", "in_progress"]
    assert machine.get_status().progress.completed_tasks == 1


def test_set_tasks_does_not_mutate_caller_tasks(scenario_template: WorkflowTemplate) -> None:
    tasks = [Task(id="A", title="A")]
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")

    machine.set_tasks("w", tasks)

    assert tasks[0].status == "pending"


def test_resetting_tasks_mid_loop_keeps_active_task(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A", "B"))
    machine.advance("a1")

    machine.set_tasks("w", _tasks("Z", "A", "B"))

    status = machine.get_status()
    assert status.task is not None
    assert (status.task.id, status.task.index) == ("A", 1)
    assert status.sub_step == "s2"


def test_advancing_loop_without_tasks_passes_over_it(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")

    status = machine.advance("nothing to do")

    assert status.step == "done"
    assert machine.get_context()["work"] == "nothing to do"


def test_awaiting_loop_status(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    status = machine.advance("planned")

    assert status.step_type is StepType.LOOP
    assert status.sub_step is None
    assert "w" in status.instructions
    assert status.progress.total_tasks == 0


def test_start_resets_progress(actions_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(actions_template)
    machine.start()
    machine.advance("1")
    machine.set_summary("keep?")

    status = machine.start()

    assert status.step == "one"
    assert machine.get_context() == {}
    assert status.summary is None


def test_status_to_json_shape(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A"))

    payload = machine.get_status().to_json()

    assert payload["status"] == "running"
    assert payload["step_type"] == "loop"
    assert payload["sub_step"] == "s1"
    assert payload["task"] == {"index": 0, "id": "A", "title": "Task A", "total": 1}
    assert payload["agent_config"] == {
        "description": "Writes code",
        "tools": ["edit", "read"],
        "cannot": ["push"],
    }
    progress = payload["progress"]
    assert isinstance(progress, dict)
    assert progress["current_task_progress"] == "Task 1/1, Sub-step 1/2"


def test_duplicate_task_ids_are_rejected(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")

    with pytest.raises(WorkflowValidationError) as excinfo:
        machine.set_tasks("w", [{"id": "A", "title": "first"}, {"id": "A", "title": "second"}])

    assert excinfo.value.field == "tasks[1].id"
    status = machine.get_status()
    assert status.step == "work"
    assert status.task is None
    assert machine.get_state().tasks == {}


def test_rejected_duplicates_keep_earlier_outputs(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A", "B"))
    machine.advance("a1")

    with pytest.raises(WorkflowValidationError):
        machine.set_tasks("w", _tasks("A", "B", "A"))

    for output in ("a2", "b1", "b2"):
        machine.advance(output)
    assert machine.get_context() == {
        "plan": "planned",
        "work.A.s1": "a1",
        "work.A.s2": "a2",
        "work.B.s1": "b1",
        "work.B.s2": "b2",
    }


def test_resetting_tasks_without_active_task_restarts_at_clamped_index(
    scenario_template: WorkflowTemplate,
) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A", "B"))
    machine.advance("a1")

    machine.set_tasks("w", _tasks("B"))

    status = machine.get_status()
    assert status.task is not None
    assert (status.task.id, status.task.index) == ("B", 0)
    assert status.sub_step == "s1"


def test_emptying_tasks_mid_loop_leaves_the_loop(scenario_template: WorkflowTemplate) -> None:
    machine = WorkflowStateMachine(scenario_template)
    machine.start()
    machine.advance("planned")
    machine.set_tasks("w", _tasks("A", "B"))
    machine.advance("a1")

    context_before = machine.get_context()
    machine.set_tasks("w", [])

    status = machine.get_status()
    assert status.step == "done"
    assert status.task is None
    assert machine.get_context() == context_before


SHARED_LOOP_YAML = """
name: shared-loop
description: Two steps walk the same loop
agents: {}
loops:
  w:
    - id: s1
      instructions: Handle {task.id}
steps:
  - id: first
    type: loop
    loop: w
  - id: second
    type: loop
    loop: w
"""


def test_second_pass_over_shared_loop_starts_with_no_completed_tasks() -> None:
    machine = WorkflowStateMachine(load_workflow_template_from_string(SHARED_LOOP_YAML))
    machine.start()
    machine.set_tasks("w", _tasks("A", "B"))
    machine.advance("first A")
    status = machine.advance("first B")

    assert status.step == "second"
    assert status.task is not None and status.task.id == "A"
    assert (status.progress.completed_tasks, status.progress.total_tasks) == (0, 2)
    assert [t.status for t in machine.get_state().tasks["w"]] == ["in_progress", "pending"]

    machine.advance("second A")
    assert machine.get_status().progress.completed_tasks == 1
    assert machine.get_context() == {
        "first.A.s1": "first A",
        "first.B.s1": "first B",
        "second.A.s1": "second A",
    }
