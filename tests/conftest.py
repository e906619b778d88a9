from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


FAKE_AGENT = textwrap.dedent(
    """
    import json
    import sys
    import time
    from pathlib import Path

    prompt = sys.stdin.read()


    def emit(payload):
        print(json.dumps(payload), flush=True)


    emit({"type": "system", "subtype": "init", "cwd": str(Path.cwd())})
    if "crash" in prompt:
        sys.stderr.write("fatal: agent exploded\\n")
        sys.exit(3)
    if "hang" in prompt:
        time.sleep(60)

    print("not json, ignored", flush=True)
    emit(
        {
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "content": [
                    {"type": "text", "text": "Editing files"},
                    {
                        "type": "tool_use",
                        "id": "tool_1",
                        "name": "Write",
                        "input": {"file_path": str(Path.cwd() / "a.txt")},
                    },
                ],
            },
        }
    )
    if "edit" in prompt:
        Path("a.txt").write_text("X2", encoding="utf-8")
        Path("c.txt").write_text("Z", encoding="utf-8")
    if "break" in prompt:
        Path("BROKEN").write_text("1", encoding="utf-8")
    emit(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "tool_1", "content": "File written"}
                ]
            },
        }
    )
    emit({"type": "result", "subtype": "success", "result": "Done editing"})
    """
).lstrip()


FAKE_BUILD = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    if Path("BROKEN").exists():
        print("src/app.ts(1,1): error TS2304: Cannot find name 'broken'.")
        sys.exit(2)
    print("build ok")
    """
).lstrip()


def snapshot(root: Path) -> dict[str, bytes]:
    """Return every file under ``root`` (excluded directories included) keyed by relative path."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@dataclass(slots=True)
class TinyProject:
    """Fixture payload describing a small project tree and its stager config."""

    base: Path
    root: Path
    staging_base: Path
    logs: Path
    config_path: Path
    agent_script: Path
    build_script: Path

    def config_data(self, **sections: dict[str, Any]) -> dict[str, Any]:
        data: dict[str, Any] = {
            "project": {"name": "tiny-project", "repo_root": "project"},
            "workspace": {"base_dir": "staging"},
            "provision": {"enabled": False},
            "validation": {
                "phases": [{"name": "build", "command": [sys.executable, str(self.build_script)]}],
                "timeout": 30,
            },
            "agent": {
                "command": [sys.executable, str(self.agent_script)],
                "max_turns": 5,
                "timeout": 30,
            },
            "paths": {"logs": str(self.logs)},
        }
        for name, values in sections.items():
            data.setdefault(name, {}).update(values)
        return data

    def write_config(self, **sections: dict[str, Any]) -> Path:
        with self.config_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self.config_data(**sections), handle, sort_keys=False)
        return self.config_path

    def snapshot(self) -> dict[str, bytes]:
        return snapshot(self.root)

    def staging_dirs(self) -> list[Path]:
        if not self.staging_base.exists():
            return []
        return sorted(self.staging_base.iterdir())


@pytest.fixture()
def tiny_project(tmp_path: Path) -> TinyProject:
    """Create a project with ``a.txt``/``b.txt`` plus excluded metadata directories."""

    root = tmp_path / "project"
    root.mkdir()
    (root / "a.txt").write_text("X", encoding="utf-8")
    (root / "b.txt").write_text("Y", encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "app.ts").write_text("export const answer = 42;\n", encoding="utf-8")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")

    agent_script = tmp_path / "fake_agent.py"
    agent_script.write_text(FAKE_AGENT, encoding="utf-8")
    build_script = tmp_path / "fake_build.py"
    build_script.write_text(FAKE_BUILD, encoding="utf-8")

    project = TinyProject(
        base=tmp_path,
        root=root,
        staging_base=tmp_path / "staging",
        logs=tmp_path / "logs",
        config_path=tmp_path / "config.yaml",
        agent_script=agent_script,
        build_script=build_script,
    )
    project.write_config()
    return project
