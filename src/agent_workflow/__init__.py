"""Agent Workflow Engine.

Loads declarative workflow templates (action and loop steps) and drives them
with a resumable state machine whose cursor the caller persists between runs.
"""

__version__ = "0.1.0"

from agent_workflow.workflow import (
    WorkflowStateMachine,
    load_workflow_template,
    load_workflow_template_from_string,
)

__all__ = [
    "__version__",
    "WorkflowStateMachine",
    "load_workflow_template",
    "load_workflow_template_from_string",
]
