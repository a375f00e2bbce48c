"""Workflow template loading and validation.

Templates are YAML documents of the form::

    name: feature
    description: Plan, implement and review a feature
    agents:
      coder:
        description: Writes code
        tools: [read, edit]
        cannot: [push]
    loops:
      implement:
        - id: code
          agent: coder
          instructions: Implement {task.title}
        - id: test
          instructions: Test {task.title}
    steps:
      - id: plan
        type: action
        instructions: Break the feature into tasks
      - id: implement
        type: loop

Validation is all-or-nothing and runs in a fixed rule order, so the first
offending field is always the one reported.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

import yaml

from .types import (
    ActionStep,
    AgentConfig,
    ContextAction,
    FailurePolicy,
    LoopStep,
    LoopSubStep,
    StepType,
    TopLevelStep,
    WorkflowTemplate,
    WorkflowValidationError,
)


def _is_mapping(value: object) -> bool:
    return isinstance(value, Mapping)


def _non_empty_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _optional_str(obj: Mapping[str, object], key: str, path: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise WorkflowValidationError(f"{path}.{key}", "must be a string if provided")
    return value


def _optional_context(obj: Mapping[str, object], path: str) -> ContextAction | None:
    value = obj.get("context")
    if value is None:
        return None
    try:
        return ContextAction(value)
    except ValueError:
        allowed = ", ".join(a.value for a in ContextAction)
        raise WorkflowValidationError(f"{path}.context", f"must be one of: {allowed}") from None


def _str_set(value: object, path: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if not isinstance(value, list):
        raise WorkflowValidationError(path, "must be a list if provided")
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise WorkflowValidationError(f"{path}[{index}]", "must be a string")
    return frozenset(value)


def _parse_sub_steps(loop_id: str, raw: list[object]) -> tuple[LoopSubStep, ...]:
    seen: set[str] = set()
    sub_steps: list[LoopSubStep] = []
    for index, item in enumerate(raw):
        path = f"loops.{loop_id}[{index}]"
        if not _is_mapping(item):
            raise WorkflowValidationError(path, "must be a mapping")
        assert isinstance(item, Mapping)

        sub_id = item.get("id")
        if not _non_empty_str(sub_id):
            raise WorkflowValidationError(f"{path}.id", "must be a non-empty string")
        assert isinstance(sub_id, str)
        if sub_id in seen:
            raise WorkflowValidationError(f"{path}.id", f"duplicate sub-step id '{sub_id}'")
        seen.add(sub_id)

        instructions = item.get("instructions")
        if not _non_empty_str(instructions):
            raise WorkflowValidationError(f"{path}.instructions", "must be a non-empty string")
        assert isinstance(instructions, str)

        agent = _optional_str(item, "agent", path)

        on_fail: FailurePolicy | None = None
        raw_on_fail = item.get("on_fail")
        if raw_on_fail is not None:
            try:
                on_fail = FailurePolicy(raw_on_fail)
            except ValueError:
                allowed = ", ".join(p.value for p in FailurePolicy)
                raise WorkflowValidationError(
                    f"{path}.on_fail", f"must be one of: {allowed}"
                ) from None

        sub_steps.append(
            LoopSubStep(
                id=sub_id,
                instructions=instructions,
                agent=agent,
                on_fail=on_fail,
                context=_optional_context(item, path),
            )
        )
    return tuple(sub_steps)


def _parse_step(
    index: int,
    raw: object,
    seen_ids: set[str],
    raw_loops: Mapping[str, object],
    parsed_loops: dict[str, tuple[LoopSubStep, ...]],
) -> TopLevelStep:
    path = f"steps[{index}]"
    if not _is_mapping(raw):
        raise WorkflowValidationError(path, "must be a mapping")
    assert isinstance(raw, Mapping)

    step_id = raw.get("id")
    if not _non_empty_str(step_id):
        raise WorkflowValidationError(f"{path}.id", "must be a non-empty string")
    assert isinstance(step_id, str)
    if step_id in seen_ids:
        raise WorkflowValidationError(f"{path}.id", f"duplicate step id '{step_id}'")
    seen_ids.add(step_id)

    raw_type = raw.get("type")
    try:
        step_type = StepType(raw_type)
    except ValueError:
        raise WorkflowValidationError(
            f"{path}.type", "must be one of: action, loop"
        ) from None

    agent = _optional_str(raw, "agent", path)
    context = _optional_context(raw, path)

    if step_type is StepType.ACTION:
        instructions = raw.get("instructions")
        if not _non_empty_str(instructions):
            raise WorkflowValidationError(
                f"{path}.instructions", "action steps must have a non-empty string"
            )
        assert isinstance(instructions, str)
        return ActionStep(id=step_id, instructions=instructions, agent=agent, context=context)

    loop_id = _optional_str(raw, "loop", path) or step_id
    if loop_id not in raw_loops:
        raise WorkflowValidationError(f"{path}.loop", f"references unknown loop '{loop_id}'")
    if loop_id not in parsed_loops:
        parsed_loops[loop_id] = _parse_sub_steps(loop_id, raw_loops[loop_id])  # type: ignore[arg-type]
    if not parsed_loops[loop_id]:
        raise WorkflowValidationError(f"loops.{loop_id}", "must contain at least one sub-step")
    return LoopStep(id=step_id, loop=loop_id, agent=agent, context=context)


def validate_template(value: object) -> WorkflowTemplate:
    """Validate an already parsed definition and build the template.

    Raises:
        WorkflowValidationError: naming the first field that breaks a rule.
    """

    if not _is_mapping(value):
        raise WorkflowValidationError("", "Template must be a mapping")
    assert isinstance(value, Mapping)

    name = value.get("name")
    if not isinstance(name, str):
        raise WorkflowValidationError("name", "Template must have a 'name' string")

    description = value.get("description")
    if not isinstance(description, str):
        raise WorkflowValidationError(
            "description", "Template must have a 'description' string"
        )

    raw_agents = value.get("agents")
    if not _is_mapping(raw_agents):
        raise WorkflowValidationError("agents", "Template must have an 'agents' mapping")
    assert isinstance(raw_agents, Mapping)

    raw_loops = value.get("loops")
    if raw_loops is None:
        raw_loops = {}
    if not _is_mapping(raw_loops):
        raise WorkflowValidationError("loops", "must be a mapping if provided")
    assert isinstance(raw_loops, Mapping)
    for loop_id, sub_steps in raw_loops.items():
        if not isinstance(sub_steps, list):
            raise WorkflowValidationError(f"loops.{loop_id}", "must be a list of sub-steps")

    raw_steps = value.get("steps")
    if not isinstance(raw_steps, list):
        raise WorkflowValidationError("steps", "Template must have a 'steps' list")
    if not raw_steps:
        raise WorkflowValidationError("steps", "Template must have at least one step")

    seen_ids: set[str] = set()
    parsed_loops: dict[str, tuple[LoopSubStep, ...]] = {}
    steps = tuple(
        _parse_step(index, raw, seen_ids, raw_loops, parsed_loops)
        for index, raw in enumerate(raw_steps)
    )

    # Loops no step references still have to be well formed.
    for loop_id, sub_steps in raw_loops.items():
        if loop_id not in parsed_loops:
            parsed_loops[loop_id] = _parse_sub_steps(loop_id, sub_steps)

    agent_names = set(raw_agents)
    for index, step in enumerate(steps):
        if step.agent is not None and step.agent not in agent_names:
            raise WorkflowValidationError(
                f"steps[{index}].agent", f"references unknown agent '{step.agent}'"
            )
    for loop_id, sub_steps in parsed_loops.items():
        for index, sub_step in enumerate(sub_steps):
            if sub_step.agent is not None and sub_step.agent not in agent_names:
                raise WorkflowValidationError(
                    f"loops.{loop_id}[{index}].agent",
                    f"references unknown agent '{sub_step.agent}'",
                )

    agents: dict[str, AgentConfig] = {}
    for agent_name, raw_agent in raw_agents.items():
        path = f"agents.{agent_name}"
        if not _is_mapping(raw_agent):
            raise WorkflowValidationError(path, "must be a mapping")
        agent_description = raw_agent.get("description")
        if not isinstance(agent_description, str):
            raise WorkflowValidationError(
                f"{path}.description", "must have a 'description' string"
            )
        agents[str(agent_name)] = AgentConfig(
            description=agent_description,
            tools=_str_set(raw_agent.get("tools"), f"{path}.tools"),
            cannot=_str_set(raw_agent.get("cannot"), f"{path}.cannot"),
        )

    return WorkflowTemplate(
        name=name,
        description=description,
        steps=steps,
        agents=MappingProxyType(agents),
        loops=MappingProxyType({str(k): v for k, v in parsed_loops.items()}),
    )


def load_workflow_template_from_string(content: str) -> WorkflowTemplate:
    """Parse a YAML definition and validate it."""

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowValidationError("", f"Invalid YAML syntax: {e}") from e
    return validate_template(parsed)


def load_workflow_template(path: Path | str) -> WorkflowTemplate:
    """Read a YAML template file and validate it.

    Read failures (missing file, permissions) propagate as `OSError`.
    """

    content = Path(path).read_text(encoding="utf-8")
    return load_workflow_template_from_string(content)
