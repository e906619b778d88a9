"""System prompt fragments handed to the coding agent for a staged run."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

WORKSPACE_CONSTRAINT = (
    "## Working Directory Constraint\n"
    "You are working in a temporary isolated workspace. Work ONLY within this workspace directory "
    "and never access files outside of it.\n"
    "Your current working directory is: {workspace_path}\n"
    "Do not use relative paths like ../ or absolute paths that leave the workspace. "
    "Changes are merged back into the real project only after the build succeeds."
)


def render_allowed_commands(commands: Sequence[str]) -> str:
    """Format the permitted shell commands as a bullet list block."""
    body = "\n".join(f"- {command}" for command in commands if command.strip())
    if not body:
        return ""
    return (
        "## Allowed Shell Commands\n"
        "You can ONLY run these commands; anything else will be blocked.\n"
        f"{body}\n"
        "Dependencies are already installed; do not run package installs."
    )


def render_project_guidance(guidance: Sequence[str]) -> str:
    """Format project guidance strings as a single bullet list block."""
    if not guidance:
        return ""
    body = "\n".join(f"- {line.strip()}" for line in guidance if line.strip())
    if not body:
        return ""
    return f"## Project Guidance\n{body}"


def render_workspace_prompt(
    staging_path: Path,
    allowed_commands: Sequence[str] = (),
    guidance: Sequence[str] = (),
) -> str:
    """Assemble the system prompt appended to the agent's own instructions."""
    sections = [
        WORKSPACE_CONSTRAINT.format(workspace_path=staging_path.as_posix()),
        render_allowed_commands(allowed_commands),
        render_project_guidance(guidance),
    ]
    return "\n\n".join(section for section in sections if section)


__all__ = [
    "WORKSPACE_CONSTRAINT",
    "render_allowed_commands",
    "render_project_guidance",
    "render_workspace_prompt",
]
