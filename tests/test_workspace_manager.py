from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

from conftest import TinyProject, snapshot
from stager.tools.path_filter import PathFilter
from stager.tools.workspace import (
    ProvisionConfig,
    WorkspaceCreationError,
    WorkspaceManager,
    WorkspaceState,
    WorkspaceStateError,
    list_workspaces,
    staging_path_for,
    sweep_stale_workspaces,
)


def _manager(project: TinyProject, **kwargs: object) -> WorkspaceManager:
    staging = kwargs.pop("staging", None) or staging_path_for(project.staging_base)
    return WorkspaceManager(project.root, staging, **kwargs)  # type: ignore[arg-type]


def test_create_copies_every_non_excluded_file(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)

    staging = manager.create()

    assert manager.state is WorkspaceState.CREATED
    original = {
        path: content
        for path, content in tiny_project.snapshot().items()
        if not PathFilter().is_excluded(path)
    }
    assert snapshot(staging) == original
    assert not (staging / ".git").exists()
    assert not (staging / "node_modules").exists()
    manager.cleanup()


def test_untouched_workspace_reports_no_changes(tiny_project: TinyProject) -> None:
    with _manager(tiny_project) as manager:
        manager.create()

        assert manager.changed_files() == []


def test_edit_and_new_file_are_detected_and_applied(tiny_project: TinyProject) -> None:
    before = tiny_project.snapshot()
    manager = _manager(tiny_project)
    staging = manager.create()
    (staging / "a.txt").write_text("X2", encoding="utf-8")
    (staging / "c.txt").write_text("Z", encoding="utf-8")

    changes = manager.changed_files()
    manager.mark_validating()
    report = manager.apply_changes(changes)
    manager.cleanup()

    assert changes == ["a.txt", "c.txt"]
    assert report.count == 2
    assert (tiny_project.root / "a.txt").read_text(encoding="utf-8") == "X2"
    assert (tiny_project.root / "b.txt").read_text(encoding="utf-8") == "Y"
    assert (tiny_project.root / "c.txt").read_text(encoding="utf-8") == "Z"

    after = tiny_project.snapshot()
    touched = {path for path in after if before.get(path) != after[path]}
    assert touched == {"a.txt", "c.txt"}


def test_apply_creates_missing_parent_directories(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)
    staging = manager.create()
    (staging / "src" / "components").mkdir(parents=True)
    (staging / "src" / "components" / "Button.tsx").write_text("export {};\n", encoding="utf-8")

    manager.mark_validating()
    report = manager.apply_changes()
    manager.cleanup()

    assert report.applied == ["src/components/Button.tsx"]
    assert (tiny_project.root / "src" / "components" / "Button.tsx").exists()


def test_excluded_directory_differences_are_never_reported(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)
    staging = manager.create()
    (staging / ".git").mkdir()
    (staging / ".git" / "HEAD").write_text("ref: refs/heads/agent\n", encoding="utf-8")
    (staging / "node_modules" / "left-pad").mkdir(parents=True)
    (staging / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 2;\n", encoding="utf-8")

    assert manager.changed_files() == []
    manager.cleanup()


def test_apply_refilters_an_explicit_change_list(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)
    staging = manager.create()
    (staging / ".git").mkdir()
    (staging / ".git" / "HEAD").write_text("tampered\n", encoding="utf-8")

    manager.mark_validating()
    report = manager.apply_changes([".git/HEAD"])
    manager.cleanup()

    assert report.count == 0
    assert (tiny_project.root / ".git" / "HEAD").read_text(encoding="utf-8") == "ref: refs/heads/main\n"


def test_create_replaces_leftover_staging_contents(tiny_project: TinyProject) -> None:
    staging = tiny_project.staging_base / ".agent-workspace-stale"
    (staging / "nested").mkdir(parents=True)
    (staging / "stale.txt").write_text("old run", encoding="utf-8")
    (staging / "nested" / "leftover.txt").write_text("old run", encoding="utf-8")

    manager = _manager(tiny_project, staging=staging)
    manager.create()

    assert not (staging / "stale.txt").exists()
    assert not (staging / "nested").exists()
    assert (staging / "a.txt").read_text(encoding="utf-8") == "X"
    manager.cleanup()


def test_cleanup_is_idempotent(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)
    staging = manager.create()

    manager.cleanup()
    manager.cleanup()

    assert not staging.exists()
    assert manager.state is WorkspaceState.CLEANED


def test_cleanup_before_create_is_harmless(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)

    manager.cleanup()

    assert manager.state is WorkspaceState.CLEANED


def test_staging_inside_project_root_is_rejected(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project, staging=tiny_project.root / ".agent-workspace-nested")

    with pytest.raises(WorkspaceCreationError):
        manager.create()
    assert not (tiny_project.root / ".agent-workspace-nested").exists()


def test_missing_project_root_is_rejected(tmp_path: Path) -> None:
    manager = WorkspaceManager(tmp_path / "missing", tmp_path / "staging")

    with pytest.raises(WorkspaceCreationError):
        manager.create()


def test_apply_requires_validation_state(tiny_project: TinyProject) -> None:
    manager = _manager(tiny_project)
    manager.create()

    with pytest.raises(WorkspaceStateError):
        manager.apply_changes()

    manager.mark_failed("build failed")
    with pytest.raises(WorkspaceStateError):
        manager.mark_validating()
    assert manager.workspace.failure_reason == "build failed"
    manager.cleanup()


def test_provisioning_runs_when_marker_missing(tiny_project: TinyProject) -> None:
    (tiny_project.root / "package.json").write_text("{}\n", encoding="utf-8")
    provision = ProvisionConfig(
        command=[sys.executable, "-c", "import os; os.makedirs('deps_installed')"],
        marker="deps_installed",
        timeout=30,
    )
    manager = _manager(tiny_project, provision=provision)

    staging = manager.create()

    assert (staging / "deps_installed").is_dir()
    assert manager.workspace.provision_error is None
    manager.cleanup()


def test_provisioning_failure_is_not_fatal(tiny_project: TinyProject) -> None:
    (tiny_project.root / "package.json").write_text("{}\n", encoding="utf-8")
    provision = ProvisionConfig(
        command=[sys.executable, "-c", "import sys; print('npm ERR! network'); sys.exit(1)"],
        marker="node_modules",
        timeout=30,
    )
    manager = _manager(tiny_project, provision=provision)

    staging = manager.create()

    assert manager.state is WorkspaceState.CREATED
    assert (staging / "a.txt").exists()
    assert manager.workspace.provision_error is not None
    assert "npm ERR! network" in manager.workspace.provision_error
    manager.cleanup()


def test_provisioning_skipped_without_manifest(tiny_project: TinyProject) -> None:
    provision = ProvisionConfig(command=["definitely-not-a-real-binary-xyz"], marker="node_modules")
    manager = _manager(tiny_project, provision=provision)

    manager.create()

    assert manager.workspace.provision_error is None
    manager.cleanup()


def test_staging_paths_are_unique(tmp_path: Path) -> None:
    first = staging_path_for(tmp_path)
    second = staging_path_for(tmp_path)

    assert first != second
    assert first.parent == tmp_path.resolve()
    assert first.name.startswith(".agent-workspace-")


def test_sweep_removes_old_and_surplus_workspaces(tmp_path: Path) -> None:
    now = time.time()
    ages_hours = {"a": 1, "b": 2, "c": 3, "d": 48}
    for name, age in ages_hours.items():
        entry = tmp_path / f".agent-workspace-{name}"
        entry.mkdir()
        stamp = now - age * 3600
        os.utime(entry, (stamp, stamp))
    (tmp_path / "unrelated").mkdir()

    removed = sweep_stale_workspaces(tmp_path, retention_hours=24, max_workspaces=2, now=now)

    assert sorted(path.name for path in removed) == [".agent-workspace-c", ".agent-workspace-d"]
    assert [path.name for path in list_workspaces(tmp_path)] == [".agent-workspace-a", ".agent-workspace-b"]
    assert (tmp_path / "unrelated").exists()
