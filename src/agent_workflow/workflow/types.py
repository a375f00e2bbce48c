from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Literal

from pydantic import BaseModel, Field


class StepType(str, Enum):
    ACTION = "action"
    LOOP = "loop"


class WorkflowStatusKind(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"


class ContextAction(str, Enum):
    CLEAR = "clear"
    COMPACT = "compact"


class FailurePolicy(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class WorkflowValidationError(WorkflowError, ValueError):
    """A template definition is structurally invalid.

    `field` is the dotted path of the first offending field, e.g.
    ``steps[1].instructions`` or ``agents.coder.description``.
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}" if field else reason)


class WorkflowLookupError(WorkflowError, LookupError):
    """A persisted cursor or a caller references an id the template does not define."""

    def __init__(self, kind: str, key: str, detail: str = "") -> None:
        self.kind = kind
        self.key = key
        message = f"Unknown {kind} '{key}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Template model (immutable)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Descriptive metadata about an agent. The engine never enforces tools/cannot."""

    description: str
    tools: frozenset[str] = frozenset()
    cannot: frozenset[str] = frozenset()

    def to_json(self) -> dict[str, object]:
        return {
            "description": self.description,
            "tools": sorted(self.tools),
            "cannot": sorted(self.cannot),
        }


@dataclass(frozen=True, slots=True)
class LoopSubStep:
    id: str
    instructions: str
    agent: str | None = None
    on_fail: FailurePolicy | None = None
    context: ContextAction | None = None


@dataclass(frozen=True, slots=True)
class ActionStep:
    id: str
    instructions: str
    agent: str | None = None
    context: ContextAction | None = None

    @property
    def type(self) -> StepType:
        return StepType.ACTION


@dataclass(frozen=True, slots=True)
class LoopStep:
    """A top-level step that replays the sub-steps of `loop` once per task."""

    id: str
    loop: str
    agent: str | None = None
    context: ContextAction | None = None

    @property
    def type(self) -> StepType:
        return StepType.LOOP


TopLevelStep = ActionStep | LoopStep


@dataclass(frozen=True, slots=True)
class WorkflowTemplate:
    """Validated, immutable definition of a workflow.

    Build it through the loader; the constructor does not re-check invariants.
    Instances are shared read-only between machines.
    """

    name: str
    description: str
    steps: tuple[TopLevelStep, ...]
    agents: Mapping[str, AgentConfig] = field(default_factory=lambda: MappingProxyType({}))
    loops: Mapping[str, tuple[LoopSubStep, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def find_step(self, step_id: str) -> int | None:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def sub_steps(self, loop_id: str) -> tuple[LoopSubStep, ...]:
        try:
            return self.loops[loop_id]
        except KeyError:
            raise WorkflowLookupError("loop", loop_id) from None


# ---------------------------------------------------------------------------
# Runtime / persisted cursor
# ---------------------------------------------------------------------------


class Task(BaseModel):
    """A unit of work a loop step iterates over. Supplied at runtime."""

    id: str
    title: str
    status: str = Field(default="pending")
    description: str | None = Field(default=None)
    depends_on: list[str] = Field(default_factory=list)


class TaskContext(BaseModel):
    """The task currently being iterated. `index` is informational; `id` is authoritative."""

    index: int = Field(ge=0)
    id: str
    title: str


class WorkflowState(BaseModel):
    """Persistable cursor of one running workflow instance."""

    status: Literal["running", "complete"] = Field(default="running")
    step: str
    step_type: StepType
    task: TaskContext | None = Field(default=None)
    sub_step: str | None = Field(default=None)
    tasks: dict[str, list[Task]] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    summary: str | None = Field(default=None)
    artefacts: list[str] | None = Field(default=None)
    context_action_executed: bool = Field(default=False)


# ---------------------------------------------------------------------------
# Status snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WorkflowProgress:
    current_step: int
    total_steps: int
    completed_tasks: int | None = None
    total_tasks: int | None = None
    current_task: int | None = None
    current_sub_step: int | None = None
    total_sub_steps: int | None = None

    @property
    def current_task_progress(self) -> str | None:
        if self.current_task is None or self.current_sub_step is None:
            return None
        return (
            f"Task {self.current_task}/{self.total_tasks}, "
            f"Sub-step {self.current_sub_step}/{self.total_sub_steps}"
        )

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
        }
        if self.total_tasks is not None:
            out["completed_tasks"] = self.completed_tasks
            out["total_tasks"] = self.total_tasks
        label = self.current_task_progress
        if label is not None:
            out["current_task"] = self.current_task
            out["current_sub_step"] = self.current_sub_step
            out["total_sub_steps"] = self.total_sub_steps
            out["current_task_progress"] = label
        return out


@dataclass(frozen=True, slots=True)
class TaskStatusContext:
    index: int
    id: str
    title: str
    total: int


@dataclass(frozen=True, slots=True)
class WorkflowStatus:
    """Snapshot of where a workflow stands, ready to hand to whoever does the work."""

    status: WorkflowStatusKind
    step: str
    step_type: StepType
    instructions: str
    progress: WorkflowProgress
    agent: str | None = None
    agent_config: AgentConfig | None = None
    task: TaskStatusContext | None = None
    sub_step: str | None = None
    sub_step_index: int | None = None
    total_sub_steps: int | None = None
    summary: str | None = None
    artefacts: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.status is WorkflowStatusKind.COMPLETE

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "status": self.status.value,
            "step": self.step,
            "step_type": self.step_type.value,
            "agent": self.agent,
            "instructions": self.instructions,
            "progress": self.progress.to_json(),
        }
        if self.agent_config is not None:
            out["agent_config"] = self.agent_config.to_json()
        if self.task is not None:
            out["task"] = {
                "index": self.task.index,
                "id": self.task.id,
                "title": self.task.title,
                "total": self.task.total,
            }
        if self.sub_step is not None:
            out["sub_step"] = self.sub_step
            out["sub_step_index"] = self.sub_step_index
            out["total_sub_steps"] = self.total_sub_steps
        if self.summary is not None:
            out["summary"] = self.summary
        if self.artefacts:
            out["artefacts"] = list(self.artefacts)
        return out


@dataclass(frozen=True, slots=True)
class ArtefactRegistration:
    registered: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {
            "registered": list(self.registered),
            "duplicates": list(self.duplicates),
            "invalid": list(self.invalid),
        }
