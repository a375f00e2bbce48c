"""Console script entrypoint.

The CLI itself is implemented in `agent_workflow.runner.main`.
"""

from __future__ import annotations

from agent_workflow.runner.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
