"""Bounded subprocess execution that terminates the whole child process group."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

__all__ = ["ProcessOutcome", "kill_process_group", "merge_env", "run_bounded", "split_command"]

LOGGER = logging.getLogger(__name__)

# Grace period for collecting output after the process group was killed.
_DRAIN_TIMEOUT = 5.0


@dataclass(slots=True)
class ProcessOutcome:
    """Structured result of a bounded subprocess call."""

    command: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout.rstrip(), self.stderr.rstrip()) if part)


def split_command(command: str | Sequence[str]) -> tuple[str, ...]:
    """Normalise ``command`` into an argument tuple."""
    if isinstance(command, str):
        return tuple(shlex.split(command))
    return tuple(str(part) for part in command)


def merge_env(extra: Mapping[str, str | None] | None) -> dict[str, str]:
    """Merge overrides into the current environment; ``None`` values unset a key."""
    env = os.environ.copy()
    if extra:
        for key, value in extra.items():
            if value is None:
                env.pop(str(key), None)
            else:
                env[str(key)] = str(value)
    return env


def kill_process_group(process: subprocess.Popen) -> None:
    """Kill ``process`` and every process it spawned."""
    if process.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:  # pragma: no cover - Windows
            process.kill()
    except ProcessLookupError:
        return
    except OSError as error:
        LOGGER.warning("Failed to kill process group %s: %s", process.pid, error)
        process.kill()


def run_bounded(
    command: str | Sequence[str],
    *,
    cwd: Path | str,
    timeout: float | None,
    env: Mapping[str, str | None] | None = None,
) -> ProcessOutcome:
    """Run ``command`` in ``cwd``, killing it (and its children) after ``timeout`` seconds."""

    argv = split_command(command)
    if not argv:
        return ProcessOutcome(command=argv, exit_code=None, stdout="", stderr="Empty command")

    started = time.monotonic()
    try:
        process = subprocess.Popen(  # noqa: S603 - command is sourced from configuration
            argv,
            cwd=Path(cwd),
            env=merge_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as error:
        return ProcessOutcome(
            command=argv,
            exit_code=None,
            stdout="",
            stderr=f"Unable to start {argv[0]}: {error}",
            duration=time.monotonic() - started,
        )

    timed_out = False
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        LOGGER.warning("Command timed out after %ss, killing: %s", timeout, shlex.join(argv))
        kill_process_group(process)
        try:
            stdout, stderr = process.communicate(timeout=_DRAIN_TIMEOUT)
        except subprocess.TimeoutExpired:
            # Grandchildren outside the group may still hold the pipes open.
            process.kill()
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            process.wait()
            stdout, stderr = "", ""
        notice = f"Timed out after {timeout} seconds."
        stderr = f"{stderr.rstrip()}\n{notice}" if stderr and stderr.strip() else notice

    return ProcessOutcome(
        command=argv,
        exit_code=process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
        duration=time.monotonic() - started,
    )
