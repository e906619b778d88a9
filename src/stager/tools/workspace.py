"""Lifecycle of the disposable staging copy the agent works in.

A :class:`WorkspaceManager` owns exactly one staging directory for one run:
it stages the project tree, optionally provisions dependencies, reports the
files the agent changed, merges those files back once validation has passed,
and removes the staging directory again. All three tree operations share a
single :class:`~stager.tools.path_filter.PathFilter`.
"""

from __future__ import annotations

import errno
import logging
import secrets
import shutil
import tempfile
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import TracebackType
from uuid import uuid4

from .path_filter import PathFilter
from .process import run_bounded
from .tree_sync import Comparator, copy_files, copy_tree, files_differ
from .tree_sync import changed_files as _changed_files

__all__ = [
    "ApplyReport",
    "DEFAULT_STAGING_PREFIX",
    "DependencyProvisionError",
    "ProvisionConfig",
    "Workspace",
    "WorkspaceCreationError",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceState",
    "WorkspaceStateError",
    "list_workspaces",
    "staging_path_for",
    "sweep_stale_workspaces",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_STAGING_PREFIX = ".agent-workspace"


class WorkspaceError(RuntimeError):
    """Base error for staging workspace failures."""


class WorkspaceCreationError(WorkspaceError):
    """Raised when the staging directory cannot be created or populated."""


class DependencyProvisionError(WorkspaceError):
    """Raised internally when dependency provisioning fails; never fatal to a run."""


class WorkspaceStateError(WorkspaceError):
    """Raised when an operation is not allowed in the current workspace state."""


class WorkspaceState(str, Enum):
    """Lifecycle states of a staging workspace."""

    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    VALIDATING = "validating"
    APPLYING = "applying"
    FAILED = "failed"
    CLEANED = "cleaned"


@dataclass(slots=True)
class ProvisionConfig:
    """Dependency provisioning step run inside a fresh staging tree."""

    command: str | Sequence[str] | None = "npm ci --silent --ignore-scripts"
    marker: str = "node_modules"
    manifest: str | None = "package.json"
    timeout: float = 300.0

    def needed(self, staging_path: Path) -> bool:
        if not self.command:
            return False
        if self.manifest and not (staging_path / self.manifest).exists():
            return False
        return not (staging_path / self.marker).exists()


@dataclass(slots=True)
class Workspace:
    """Identity and state of one staging session."""

    project_root: Path
    staging_path: Path
    skip_paths: tuple[str, ...]
    session_id: str
    state: WorkspaceState = WorkspaceState.UNINITIALIZED
    provision_error: str | None = None
    failure_reason: str | None = None


@dataclass(slots=True)
class ApplyReport:
    """Files merged from staging into the project tree."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.applied)


def staging_path_for(base_dir: Path | str | None = None, prefix: str = DEFAULT_STAGING_PREFIX) -> Path:
    """Return a fresh, unique staging path under ``base_dir`` (the temp dir by default)."""
    base = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return (base / f"{prefix}-{timestamp}-{secrets.token_hex(4)}").resolve()


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


class WorkspaceManager:
    """Create, diff, apply, and clean up one staging copy of a project tree."""

    _ALLOWED: dict[str, frozenset[WorkspaceState]] = {
        "create": frozenset({WorkspaceState.UNINITIALIZED}),
        "mark_validating": frozenset({WorkspaceState.CREATED}),
        "apply_changes": frozenset({WorkspaceState.VALIDATING}),
    }

    def __init__(
        self,
        project_root: Path | str,
        staging_path: Path | str | None = None,
        *,
        path_filter: PathFilter | None = None,
        provision: ProvisionConfig | None = None,
        comparator: Comparator = files_differ,
        session_id: str | None = None,
    ) -> None:
        root = Path(project_root).resolve()
        staging = Path(staging_path).resolve() if staging_path else staging_path_for()
        self.path_filter = path_filter or PathFilter()
        self.provision = provision
        self.comparator = comparator
        self.workspace = Workspace(
            project_root=root,
            staging_path=staging,
            skip_paths=self.path_filter.skip_paths,
            session_id=session_id or uuid4().hex,
        )

    # ----------------------------------------------------------------- props
    @property
    def project_root(self) -> Path:
        return self.workspace.project_root

    @property
    def staging_path(self) -> Path:
        return self.workspace.staging_path

    @property
    def state(self) -> WorkspaceState:
        return self.workspace.state

    def _require(self, operation: str) -> None:
        allowed = self._ALLOWED[operation]
        if self.workspace.state not in allowed:
            expected = ", ".join(sorted(state.value for state in allowed))
            raise WorkspaceStateError(
                f"Cannot {operation} while workspace is {self.workspace.state.value} (expected {expected})"
            )

    # --------------------------------------------------------------- create
    def create(self) -> Path:
        """Stage a fresh copy of the project tree and return its path."""
        self._require("create")
        root = self.project_root
        staging = self.staging_path

        if not root.is_dir():
            raise WorkspaceCreationError(f"Project root is not a directory: {root}")
        if staging == root or _is_within(staging, root):
            raise WorkspaceCreationError(f"Staging path {staging} must not be inside the project root {root}")
        if _is_within(root, staging):
            raise WorkspaceCreationError(f"Staging path {staging} must not contain the project root {root}")

        LOGGER.info("Creating agent workspace at %s", staging)
        try:
            if staging.exists() or staging.is_symlink():
                LOGGER.info("Removing stale workspace contents at %s", staging)
                if staging.is_dir() and not staging.is_symlink():
                    shutil.rmtree(staging)
                else:
                    staging.unlink()
            staging.mkdir(parents=True)
        except OSError as error:
            raise WorkspaceCreationError(f"Unable to create workspace at {staging}: {error}") from error

        try:
            report = copy_tree(root, staging, self.path_filter)
        except OSError as error:
            raise WorkspaceCreationError(f"Unable to populate workspace at {staging}: {error}") from error
        LOGGER.info("Copied %d files into workspace (%d skipped)", report.count, len(report.skipped))
        self.workspace.state = WorkspaceState.CREATED

        if self.provision is not None and self.provision.needed(staging):
            try:
                self._provision_dependencies()
            except DependencyProvisionError as error:
                self.workspace.provision_error = str(error)
                LOGGER.warning("Continuing without provisioned dependencies: %s", error)
        return staging

    def _provision_dependencies(self) -> None:
        config = self.provision
        assert config is not None and config.command
        LOGGER.info("Installing dependencies in workspace (%s)", config.command)
        outcome = run_bounded(config.command, cwd=self.staging_path, timeout=config.timeout)
        if outcome.ok:
            LOGGER.info("Dependencies installed in %.1fs", outcome.duration)
            return
        if outcome.timed_out:
            raise DependencyProvisionError(f"Provisioning timed out after {config.timeout} seconds")
        detail = outcome.combined_output.strip()
        message = f"Provisioning failed with exit code {outcome.exit_code}"
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        raise DependencyProvisionError(message)

    # ---------------------------------------------------------------- diffs
    def changed_files(self) -> list[str]:
        """Return relative paths that are new or modified in the staging tree."""
        if not self.staging_path.is_dir():
            return []
        return _changed_files(
            self.staging_path,
            self.project_root,
            self.path_filter,
            comparator=self.comparator,
        )

    # ------------------------------------------------------------ lifecycle
    def mark_validating(self) -> None:
        self._require("mark_validating")
        self.workspace.state = WorkspaceState.VALIDATING

    def mark_failed(self, reason: str | None = None) -> None:
        if self.workspace.state is WorkspaceState.CLEANED:
            return
        self.workspace.state = WorkspaceState.FAILED
        self.workspace.failure_reason = reason

    def apply_changes(self, changes: Iterable[str] | None = None) -> ApplyReport:
        """Copy changed staging files over the project tree."""
        self._require("apply_changes")
        self.workspace.state = WorkspaceState.APPLYING
        selected = list(changes) if changes is not None else self.changed_files()
        # Re-check the filter so an externally supplied list cannot reach excluded paths.
        candidates = [path for path in selected if not self.path_filter.is_excluded(path)]
        if not candidates:
            LOGGER.info("No files were changed in the workspace")
            return ApplyReport()

        LOGGER.info("Applying %d changed files to %s", len(candidates), self.project_root)
        sync = copy_files(candidates, self.staging_path, self.project_root)
        for relative in sync.copied:
            LOGGER.debug("Updated %s", relative)
        return ApplyReport(applied=sync.copied, skipped=sync.skipped)

    def cleanup(self) -> None:
        """Remove the staging directory; safe to call repeatedly from any state."""
        staging = self.staging_path
        try:
            if staging.is_symlink():
                staging.unlink()
            else:
                shutil.rmtree(staging)
            LOGGER.info("Agent workspace cleaned: %s", staging)
        except FileNotFoundError:
            pass
        except OSError as error:
            if error.errno != errno.ENOENT:
                LOGGER.warning("Failed to clean up workspace %s: %s", staging, error)
        self.workspace.state = WorkspaceState.CLEANED

    def __enter__(self) -> "WorkspaceManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.cleanup()


def list_workspaces(base_dir: Path | str | None = None, *, prefix: str = DEFAULT_STAGING_PREFIX) -> list[Path]:
    """Return staging directories under ``base_dir`` whose names carry ``prefix``."""
    base = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
    if not base.is_dir():
        return []
    return sorted(
        entry
        for entry in base.iterdir()
        if entry.name.startswith(f"{prefix}-") and entry.is_dir() and not entry.is_symlink()
    )


def sweep_stale_workspaces(
    base_dir: Path | str | None = None,
    *,
    prefix: str = DEFAULT_STAGING_PREFIX,
    retention_hours: float = 24.0,
    max_workspaces: int | None = None,
    now: float | None = None,
) -> list[Path]:
    """Remove leftover staging directories from runs that never cleaned up.

    Directories older than ``retention_hours`` are removed; when
    ``max_workspaces`` is set, only the newest ``max_workspaces`` survive.
    """

    current = time.time() if now is None else now
    candidates: list[tuple[float, Path]] = []
    for entry in list_workspaces(base_dir, prefix=prefix):
        try:
            candidates.append((entry.stat().st_mtime, entry))
        except OSError:
            continue
    candidates.sort(key=lambda item: item[0], reverse=True)

    cutoff = current - retention_hours * 3600
    removed: list[Path] = []
    for index, (mtime, entry) in enumerate(candidates):
        over_limit = max_workspaces is not None and index >= max_workspaces
        if mtime >= cutoff and not over_limit:
            continue
        try:
            shutil.rmtree(entry)
        except OSError as error:
            LOGGER.warning("Failed to remove stale workspace %s: %s", entry, error)
            continue
        removed.append(entry)
    return removed
