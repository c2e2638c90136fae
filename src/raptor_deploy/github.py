"""GitHub Actions step outputs and job summary.

Outputs go to the file named by ``$GITHUB_OUTPUT``; outside Actions (local
``azd`` runs) they are printed to stdout so the caller still sees them.
Multi-line values use the ``name<<DELIMITER`` form.
"""

from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path


def _output_path(env_var: str) -> Path | None:
    value = os.environ.get(env_var)
    return Path(value) if value else None


def format_output(key: str, value: str) -> str:
    """Render one output record."""
    if "\n" not in value:
        return f"{key}={value}\n"
    delimiter = "EOF"
    if delimiter in value.splitlines():
        delimiter = f"EOF_{uuid.uuid4().hex[:8]}"
    body = value if value.endswith("\n") else value + "\n"
    return f"{key}<<{delimiter}\n{body}{delimiter}\n"


def write_output(key: str, value: str | bool) -> None:
    """Set a step output (``key=value``)."""
    if isinstance(value, bool):
        value = "true" if value else "false"
    record = format_output(key, value)
    path = _output_path("GITHUB_OUTPUT")
    if path is None:
        sys.stdout.write(record)
        sys.stdout.flush()
        return
    with path.open("a", encoding="utf-8") as fh:
        fh.write(record)


def append_summary(markdown: str) -> bool:
    """Append to the job summary. Returns False outside GitHub Actions."""
    path = _output_path("GITHUB_STEP_SUMMARY")
    if path is None:
        return False
    with path.open("a", encoding="utf-8") as fh:
        fh.write(markdown if markdown.endswith("\n") else markdown + "\n")
    return True


def running_in_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS", "false").lower() == "true"
