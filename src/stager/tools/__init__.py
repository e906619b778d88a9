"""Workspace, tree, process, and validation tooling used by the orchestrator."""

from .gates import PhaseResult, ValidationPhase, ValidationResult, Validator, phases_from_config
from .path_filter import DEFAULT_SKIP_PATHS, PathFilter
from .process import ProcessOutcome, run_bounded
from .tree_sync import SyncReport, changed_files, copy_files, copy_tree, files_differ, iter_files
from .workspace import (
    ApplyReport,
    DependencyProvisionError,
    ProvisionConfig,
    Workspace,
    WorkspaceCreationError,
    WorkspaceManager,
    WorkspaceState,
    WorkspaceStateError,
    list_workspaces,
    staging_path_for,
    sweep_stale_workspaces,
)

__all__ = [
    "ApplyReport",
    "DEFAULT_SKIP_PATHS",
    "DependencyProvisionError",
    "PathFilter",
    "PhaseResult",
    "ProcessOutcome",
    "ProvisionConfig",
    "SyncReport",
    "ValidationPhase",
    "ValidationResult",
    "Validator",
    "Workspace",
    "WorkspaceCreationError",
    "WorkspaceManager",
    "WorkspaceState",
    "WorkspaceStateError",
    "changed_files",
    "copy_files",
    "copy_tree",
    "files_differ",
    "iter_files",
    "list_workspaces",
    "phases_from_config",
    "run_bounded",
    "staging_path_for",
    "sweep_stale_workspaces",
]
