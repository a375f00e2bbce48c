"""Configuration for the workflow runner.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Only the runner reads settings; the engine in `agent_workflow.workflow` is
configured purely through its arguments.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "workflows"


class WorkflowSettings(BaseSettings):
    """Settings for the workflow runner.

    Environment variables:
    - LOG_LEVEL                     (optional)
    - AGENT_WORKFLOW_TEMPLATES_DIR  (optional)
    - AGENT_WORKFLOW_CUSTOM_FOLDER  (optional)
    - AGENT_WORKFLOW_STATE_FILE     (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `WorkflowSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    templates_dir: Path = Field(
        default=BUILTIN_TEMPLATES_DIR,
        validation_alias="AGENT_WORKFLOW_TEMPLATES_DIR",
        description="Directory holding the built-in workflow templates",
    )

    custom_workflows_folder: str = Field(
        default=".agent-workflow/workflows",
        validation_alias="AGENT_WORKFLOW_CUSTOM_FOLDER",
        description="Folder, relative to the workspace root, holding custom templates",
    )

    state_file_name: str = Field(
        default="workflow-state.json",
        validation_alias="AGENT_WORKFLOW_STATE_FILE",
        description="File name of the persisted cursor inside a working copy",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("state_file_name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value.strip() or Path(value).name != value:
            raise ValueError("AGENT_WORKFLOW_STATE_FILE must be a plain file name")
        return value

    def state_file_for(self, worktree: Path) -> Path:
        """Path where the cursor of the workflow running in `worktree` is persisted."""

        return worktree / self.state_file_name
