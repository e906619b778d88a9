"""Exclusion predicate shared by staging, change detection, and apply."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass

__all__ = ["DEFAULT_SKIP_PATHS", "PathFilter", "normalise_relative"]

# Top-level names that never take part in staging or merge-back.
DEFAULT_SKIP_PATHS: tuple[str, ...] = (
    ".git",
    "node_modules",
    "dist",
    "dist-electron",
    ".agent-workspace",
    "data",
)


def normalise_relative(value: str) -> str:
    """Return ``value`` with ``/`` separators and no leading ``./``."""
    cleaned = value.replace("\\", "/") if os.sep == "\\" else value
    if os.altsep and os.altsep != "/":
        cleaned = cleaned.replace(os.altsep, "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


@dataclass(frozen=True, slots=True)
class PathFilter:
    """Decide whether a project-relative path is excluded.

    A path is excluded when it equals one of ``skip_paths`` or starts with
    ``name + "/"``. Names are literal and case-sensitive; a trailing
    separator in a configured name is ignored.
    """

    skip_paths: tuple[str, ...] = DEFAULT_SKIP_PATHS

    @classmethod
    def from_names(cls, names: Iterable[str] | None) -> "PathFilter":
        if names is None:
            return cls()
        cleaned: list[str] = []
        for name in names:
            entry = normalise_relative(str(name).strip()).rstrip("/")
            if entry and entry not in cleaned:
                cleaned.append(entry)
        return cls(skip_paths=tuple(cleaned))

    def is_excluded(self, relative_path: str) -> bool:
        candidate = normalise_relative(relative_path)
        for name in self.skip_paths:
            if candidate == name or candidate.startswith(name + "/"):
                return True
        return False

    def __call__(self, relative_path: str) -> bool:
        return self.is_excluded(relative_path)
