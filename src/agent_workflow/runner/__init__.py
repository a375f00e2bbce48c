"""Caller-side collaborators for the workflow engine.

- Settings loaded from .env
- Structured logging
- A JSON file store for the cursor of one working copy
- Template discovery
- A small CLI surface
"""
