"""Build-validation gate run against a staged tree before changes may merge.

The validator runs an ordered list of :class:`ValidationPhase` commands with
``cwd`` set to the staging directory. The first failing phase stops the run
and its raw output becomes the diagnostic returned to the caller. The default
configuration is a single ``build`` phase; the historical ``typecheck`` and
``lint`` phases remain available as presets.
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Literal

from ..events import EventChannel, EventKind
from .process import run_bounded, split_command

PhaseStatus = Literal["passed", "failed", "skipped"]

DEFAULT_VALIDATION_TIMEOUT = 120.0


def _executable_available(executable: str, cwd: Path) -> bool:
    if not executable:
        return False
    if "/" in executable:
        candidate = Path(executable)
        return (candidate if candidate.is_absolute() else cwd / candidate).exists()
    return shutil.which(executable) is not None


@dataclass(slots=True)
class ValidationPhase:
    """Description of a single gating command."""

    name: str
    command: Sequence[str]
    optional: bool = False
    timeout: float | None = None

    def run(self, cwd: Path, timeout: float | None = None) -> "PhaseResult":
        argv = list(split_command(self.command))
        executable = argv[0] if argv else ""
        if not _executable_available(executable, cwd):
            status: PhaseStatus = "skipped" if self.optional else "failed"
            return PhaseResult(
                name=self.name,
                command=argv,
                status=status,
                exit_code=None,
                stdout="",
                stderr=f"Executable not available: {executable or '(empty command)'}",
            )

        limit = self.timeout if self.timeout is not None else timeout
        outcome = run_bounded(argv, cwd=cwd, timeout=limit)
        return PhaseResult(
            name=self.name,
            command=argv,
            status="passed" if outcome.ok else "failed",
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            timed_out=outcome.timed_out,
            duration=outcome.duration,
        )


@dataclass(slots=True)
class PhaseResult:
    """Result produced by :class:`ValidationPhase`."""

    name: str
    command: List[str]
    status: PhaseStatus
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.rstrip(), self.stderr.rstrip()) if part)

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.name}: passed"
        if self.status == "skipped":
            return f"{self.name}: skipped ({self.stderr.strip()})"
        if self.timed_out:
            return f"{self.name}: timed out"
        fallback = self.stderr.strip() or self.stdout.strip()
        if self.exit_code is not None:
            return f"{self.name}: failed with exit code {self.exit_code}"
        return f"{self.name}: failed ({fallback.splitlines()[0] if fallback else 'exit code != 0'})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": list(self.command),
            "status": self.status,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration": round(self.duration, 3),
        }


@dataclass(slots=True)
class ValidationResult:
    """Outcome of a validation run; ``phase`` names the last phase attempted."""

    phase: str
    success: bool
    diagnostic: str = ""
    error: str | None = None
    phases: List[PhaseResult] = field(default_factory=list)

    def format_summary(self) -> str:
        """Return a human readable summary of the run."""
        if not self.phases:
            return "No validation phases configured."
        lines = ["Validation phases:"]
        lines.extend(f"- {result.short_message()}" for result in self.phases)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "success": self.success,
            "error": self.error,
            "diagnostic": self.diagnostic,
            "phases": [result.to_dict() for result in self.phases],
        }


PHASE_PRESETS: dict[str, ValidationPhase] = {
    "typecheck": ValidationPhase(
        name="typecheck",
        command=("npx", "tsc", "--noEmit", "--skipLibCheck", "--noUnusedLocals", "false"),
    ),
    "lint": ValidationPhase(
        name="lint",
        command=("npx", "eslint", ".", "--ext", ".js,.jsx,.ts,.tsx", "--max-warnings", "100"),
    ),
    "build": ValidationPhase(name="build", command=("npm", "run", "build")),
}

DEFAULT_PHASES: tuple[ValidationPhase, ...] = (PHASE_PRESETS["build"],)


def phases_from_config(raw: Sequence[Any] | None) -> List[ValidationPhase]:
    """Expand raw configuration entries into :class:`ValidationPhase` definitions.

    Entries may be a preset name (``"build"``), a command string
    (``"make all"``), or a mapping with ``name``/``command``/``optional``/``timeout``.
    """
    if raw is None:
        return list(DEFAULT_PHASES)

    phases: List[ValidationPhase] = []
    for entry in raw:
        if isinstance(entry, ValidationPhase):
            phases.append(entry)
            continue

        if isinstance(entry, str):
            stripped = entry.strip()
            if not stripped:
                continue
            preset = PHASE_PRESETS.get(stripped)
            if preset is not None:
                phases.append(preset)
                continue
            parts = split_command(stripped)
            phases.append(ValidationPhase(name=parts[0], command=parts))
            continue

        if isinstance(entry, Mapping):
            command = entry.get("command") or entry.get("cmd")
            name_value = entry.get("name")
            if not command and isinstance(name_value, str) and name_value in PHASE_PRESETS:
                command = PHASE_PRESETS[name_value].command
            cmd_parts = split_command(command) if command else ()
            if not cmd_parts:
                continue
            name = str(name_value) if name_value else cmd_parts[0]
            timeout_value = entry.get("timeout")
            timeout = float(timeout_value) if isinstance(timeout_value, (int, float)) and timeout_value > 0 else None
            phases.append(
                ValidationPhase(
                    name=name,
                    command=cmd_parts,
                    optional=bool(entry.get("optional", False)),
                    timeout=timeout,
                )
            )

    return phases


_PHASE_LABELS = {"build": "Compiling project..."}


class Validator:
    """Run ordered validation phases against a staged tree."""

    def __init__(
        self,
        phases: Sequence[ValidationPhase] | None = None,
        *,
        timeout: float = DEFAULT_VALIDATION_TIMEOUT,
        events: EventChannel | None = None,
    ) -> None:
        self.phases: tuple[ValidationPhase, ...] = tuple(phases) if phases is not None else DEFAULT_PHASES
        self.timeout = timeout
        self.events = events

    def validate(
        self,
        staging_path: Path | str,
        phases: Sequence[ValidationPhase] | None = None,
        timeout: float | None = None,
        *,
        events: EventChannel | None = None,
    ) -> ValidationResult:
        """Run each phase in order, stopping at the first failure.

        Progress is published to ``events`` when given, else to the channel
        supplied at construction time.
        """
        cwd = Path(staging_path)
        selected = tuple(phases) if phases is not None else self.phases
        limit = timeout if timeout is not None else self.timeout
        channel = events if events is not None else self.events

        def emit(text: str, icon: str) -> None:
            if channel is not None and not channel.closed:
                channel.publish(EventKind.TOOL_ACTION, text, icon=icon)

        if not selected:
            emit("Validation failed", "!")
            return ValidationResult(phase="none", success=False, error="No validation phases configured.")

        results: List[PhaseResult] = []
        for phase in selected:
            emit(_PHASE_LABELS.get(phase.name, f"Running {phase.name}..."), "●")
            result = phase.run(cwd, limit)
            results.append(result)
            if result.failed:
                label = "Build failed" if phase.name == "build" else f"{phase.name} failed"
                emit(label, "!")
                emit("Validation failed", "!")
                return ValidationResult(
                    phase=phase.name,
                    success=False,
                    diagnostic=result.output,
                    error=result.short_message(),
                    phases=results,
                )
            if result.status == "passed":
                label = "Build completed successfully" if phase.name == "build" else f"{phase.name} passed"
                emit(label, "○")

        if not any(result.status == "passed" for result in results):
            emit("Validation failed", "!")
            return ValidationResult(
                phase=selected[-1].name,
                success=False,
                error="Every validation phase was skipped.",
                phases=results,
            )
        emit("Validation passed", "○")
        return ValidationResult(phase=selected[-1].name, success=True, phases=results)


__all__ = [
    "DEFAULT_PHASES",
    "DEFAULT_VALIDATION_TIMEOUT",
    "PHASE_PRESETS",
    "PhaseResult",
    "PhaseStatus",
    "ValidationPhase",
    "ValidationResult",
    "Validator",
    "phases_from_config",
]
