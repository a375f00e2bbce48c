from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from agent_workflow.workflow import WorkflowState

logger = logging.getLogger(__name__)


class WorkflowStateStore:
    """Persist one workflow instance's cursor as a single JSON document.

    Every save fully overwrites the previous document. The write goes through a
    temporary file and an atomic rename so a crash never leaves half a cursor
    behind. There is no locking: one store, one writer.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> WorkflowState | None:
        """Return the latest saved cursor, or None if nothing was saved yet.

        Raises:
            json.JSONDecodeError / pydantic.ValidationError: if the file exists
                but does not hold a cursor. Position is never guessed.
        """

        if not self._path.exists():
            return None

        raw = json.loads(self._path.read_text(encoding="utf-8"))
        state = WorkflowState.model_validate(raw)
        logger.debug(
            "Workflow state loaded",
            extra={"path": str(self._path), "step": state.step, "status": state.status},
        )
        return state

    def save(self, state: WorkflowState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp.{os.getpid()}")
        try:
            tmp_path.write_text(
                json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
            os.replace(tmp_path, self._path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug(
            "Workflow state saved",
            extra={"path": str(self._path), "step": state.step, "status": state.status},
        )
