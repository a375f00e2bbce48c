"""Workflow engine.

This package provides:
- an immutable template model (agents, loops, action/loop steps)
- a YAML loader that validates templates before anything runs
- a resumable state machine whose cursor is persisted by id

The engine performs no persistence and no logging; see `agent_workflow.runner`
for the file store, discovery and CLI built on top of it.
"""

from .loader import load_workflow_template, load_workflow_template_from_string, validate_template
from .state_machine import WorkflowStateMachine
from .types import (
    ActionStep,
    AgentConfig,
    ArtefactRegistration,
    ContextAction,
    FailurePolicy,
    LoopStep,
    LoopSubStep,
    StepType,
    Task,
    TaskContext,
    TaskStatusContext,
    TopLevelStep,
    WorkflowError,
    WorkflowLookupError,
    WorkflowProgress,
    WorkflowState,
    WorkflowStatus,
    WorkflowStatusKind,
    WorkflowTemplate,
    WorkflowValidationError,
)

__all__ = [
    "ActionStep",
    "AgentConfig",
    "ArtefactRegistration",
    "ContextAction",
    "FailurePolicy",
    "LoopStep",
    "LoopSubStep",
    "StepType",
    "Task",
    "TaskContext",
    "TaskStatusContext",
    "TopLevelStep",
    "WorkflowError",
    "WorkflowLookupError",
    "WorkflowProgress",
    "WorkflowState",
    "WorkflowStateMachine",
    "WorkflowStatus",
    "WorkflowStatusKind",
    "WorkflowTemplate",
    "WorkflowValidationError",
    "load_workflow_template",
    "load_workflow_template_from_string",
    "validate_template",
]
