"""Tool/command allowlist handed to the coding agent for one staging directory.

The allowlist is a fixed template of permission patterns in which
``{workspace}`` is replaced by the absolute staging path, so every file tool
and path-taking shell command is scoped to the disposable copy.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

__all__ = [
    "AllowlistError",
    "DEFAULT_ALLOWLIST_TEMPLATE",
    "allowed_commands",
    "render_allowlist",
]


class AllowlistError(ValueError):
    """Raised when a rendered allowlist would reach outside the staging path."""


DEFAULT_ALLOWLIST_TEMPLATE: tuple[str, ...] = (
    "Read({workspace}/*)",
    "Write({workspace}/*)",
    "Edit({workspace}/*)",
    "List({workspace}/*)",
    "Search({workspace}/*)",
    "Find({workspace}/*)",
    "Bash(npm run build)",
    "Bash(npm run dev)",
    "Bash(npm run lint)",
    "Bash(npm run test)",
    "Bash(npm run build:vite)",
    "Bash(npm run build:electron)",
    "Bash(mkdir {workspace}/*)",
    "Bash(ls {workspace}/*)",
    "Bash(cat {workspace}/*)",
    "Bash(find {workspace} *)",
    "Bash(grep * {workspace}/*)",
    "Bash(ls)",
    "Bash(ls .)",
    "Bash(ls ./)",
    "Bash(pwd)",
)

_PATTERN_RE = re.compile(r"^(?P<tool>[A-Za-z][A-Za-z0-9_]*)(?:\((?P<argument>.*)\))?$")
_ABSOLUTE_TOKEN_RE = re.compile(r"(?<![\w.])(/[^\s*()]*)")


def _check_scope(pattern: str, workspace: PurePosixPath) -> None:
    match = _PATTERN_RE.match(pattern)
    if match is None:
        raise AllowlistError(f"Malformed allowlist pattern: {pattern!r}")
    argument = match.group("argument") or ""
    if ".." in PurePosixPath(argument.replace("*", "x")).parts or "/../" in argument:
        raise AllowlistError(f"Allowlist pattern escapes the workspace: {pattern!r}")
    for token in _ABSOLUTE_TOKEN_RE.findall(argument):
        candidate = PurePosixPath(token.rstrip("/") or "/")
        if candidate != workspace and workspace not in candidate.parents:
            raise AllowlistError(f"Allowlist pattern escapes the workspace: {pattern!r}")


def render_allowlist(
    staging_path: Path | str,
    template: Sequence[str] | None = None,
) -> list[str]:
    """Parameterise ``template`` with ``staging_path`` and verify every pattern stays inside it."""
    workspace = PurePosixPath(Path(staging_path).as_posix())
    if not workspace.is_absolute():
        raise AllowlistError(f"Staging path must be absolute: {staging_path}")
    rendered: list[str] = []
    for entry in template if template is not None else DEFAULT_ALLOWLIST_TEMPLATE:
        pattern = entry.replace("{workspace}", workspace.as_posix()).strip()
        if not pattern:
            continue
        _check_scope(pattern, workspace)
        if pattern not in rendered:
            rendered.append(pattern)
    return rendered


def allowed_commands(allowlist: Sequence[str]) -> list[str]:
    """Return the shell commands permitted by ``allowlist`` for prompt rendering."""
    commands: list[str] = []
    for pattern in allowlist:
        match = _PATTERN_RE.match(pattern)
        if match is None or match.group("tool") != "Bash":
            continue
        argument = (match.group("argument") or "").strip()
        if argument and argument not in commands:
            commands.append(argument)
    return commands
