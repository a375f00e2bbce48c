"""Test configuration and fixtures."""

from pathlib import Path

import pytest

from agent_workflow.workflow import WorkflowTemplate, load_workflow_template_from_string

SCENARIO_YAML = """
name: scenario
description: Plan, work through tasks, finish

agents:
  coder:
    description: Writes code
    tools: [read, edit]
    cannot: [push]

loops:
  w:
    - id: s1
      agent: coder
      instructions: Implement {task.title} ({task.id})
    - id: s2
      instructions: Test {task.title}

steps:
  - id: plan
    type: action
    instructions: Plan the work
  - id: work
    type: loop
    loop: w
  - id: done
    type: action
    instructions: Wrap up
"""

ACTIONS_YAML = """
name: actions
description: Three plain steps
agents: {}
steps:
  - id: one
    type: action
    instructions: First
  - id: two
    type: action
    instructions: Second
  - id: three
    type: action
    instructions: Third
"""

TWO_LOOPS_YAML = """
name: two-loops
description: Two loops back to back
agents: {}
loops:
  first:
    - id: a
      instructions: First loop on {task.id}
  second:
    - id: b
      instructions: Second loop on {task.id}
steps:
  - id: first
    type: loop
  - id: second
    type: loop
  - id: last
    type: action
    instructions: Finish
"""


@pytest.fixture
def scenario_template() -> WorkflowTemplate:
    """plan(action) -> work(loop w: s1, s2) -> done(action)."""
    return load_workflow_template_from_string(SCENARIO_YAML)


@pytest.fixture
def actions_template() -> WorkflowTemplate:
    return load_workflow_template_from_string(ACTIONS_YAML)


@pytest.fixture
def two_loops_template() -> WorkflowTemplate:
    return load_workflow_template_from_string(TWO_LOOPS_YAML)


@pytest.fixture
def scenario_file(tmp_path: Path) -> Path:
    """Provide the scenario template as a YAML file."""
    path = tmp_path / "templates" / "scenario.yaml"
    path.parent.mkdir()
    path.write_text(SCENARIO_YAML, encoding="utf-8")
    return path


@pytest.fixture
def worktree(tmp_path: Path) -> Path:
    """Provide an empty working copy directory."""
    path = tmp_path / "worktree"
    path.mkdir()
    return path
