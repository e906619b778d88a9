"""End-to-end staged run: create, run agent, validate, apply, clean up."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from .config import StagerConfig
from .events import AgentEvent, EventCallback, EventChannel, EventKind
from .models.agent_client import AgentClient, AgentRequest
from .policy.allowlist import AllowlistError, allowed_commands, render_allowlist
from .prompts import render_workspace_prompt
from .session import AgentSession
from .tools.gates import ValidationResult, Validator, phases_from_config
from .tools.path_filter import PathFilter
from .tools.tree_sync import Comparator, files_differ
from .tools.workspace import (
    ProvisionConfig,
    WorkspaceError,
    WorkspaceManager,
    staging_path_for,
)

__all__ = [
    "FailedPhase",
    "OrchestrationRequest",
    "OrchestrationResult",
    "Orchestrator",
    "SessionRecord",
    "SessionRegistry",
    "run_orchestration",
]

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("stager.telemetry")

FailedPhase = Literal["creation", "agent", "validation", "apply", "internal"]
SessionStatus = Literal["running", "succeeded", "failed"]

_MAX_FINISHED_RECORDS = 100


@dataclass(slots=True)
class OrchestrationRequest:
    """Caller input for one staged agent run."""

    prompt: str
    session_id: str = field(default_factory=lambda: uuid4().hex)
    staging_path: Path | None = None
    max_turns: int | None = None
    timeout: float | None = None


@dataclass(slots=True)
class OrchestrationResult:
    """Structured outcome of :meth:`Orchestrator.run`; never raised."""

    session_id: str
    success: bool
    response_text: str = ""
    error: str | None = None
    diagnostic: str = ""
    failed_phase: FailedPhase | None = None
    change_count: int = 0
    changed_files: list[str] = field(default_factory=list)
    validation: ValidationResult | None = None
    provision_error: str | None = None
    duration: float = 0.0
    events: list[AgentEvent] = field(default_factory=list)

    def summary(self) -> str:
        if self.success:
            noun = "file" if self.change_count == 1 else "files"
            return f"Applied {self.change_count} changed {noun} to the project."
        phase = self.failed_phase or "unknown"
        return f"Run failed during {phase}: {self.error or 'no error reported'}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "success": self.success,
            "response_text": self.response_text,
            "error": self.error,
            "diagnostic": self.diagnostic,
            "failed_phase": self.failed_phase,
            "change_count": self.change_count,
            "changed_files": list(self.changed_files),
            "validation": self.validation.to_dict() if self.validation is not None else None,
            "provision_error": self.provision_error,
            "duration": round(self.duration, 3),
            "events": [event.to_dict() for event in self.events],
        }


@dataclass(slots=True)
class SessionRecord:
    """Registry entry describing one orchestration run."""

    session_id: str
    channel: EventChannel
    status: SessionStatus = "running"
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    session: AgentSession | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


class SessionRegistry:
    """Thread-safe record of orchestration runs keyed by session id."""

    def __init__(self, max_finished: int = _MAX_FINISHED_RECORDS) -> None:
        self._lock = threading.Lock()
        self._records: OrderedDict[str, SessionRecord] = OrderedDict()
        self._max_finished = max_finished

    def register(self, session_id: str, channel: EventChannel) -> SessionRecord:
        with self._lock:
            existing = self._records.get(session_id)
            if existing is not None and existing.running:
                raise ValueError(f"Session {session_id} is already running")
            record = SessionRecord(session_id=session_id, channel=channel)
            self._records[session_id] = record
            self._records.move_to_end(session_id)
            return record

    def attach(self, session_id: str, session: AgentSession) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.session = session

    def finish(self, session_id: str, status: SessionStatus) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return
            record.status = status
            record.finished_at = time.time()
            record.session = None
            self._prune()

    def _prune(self) -> None:
        finished = [key for key, record in self._records.items() if not record.running]
        for key in finished[: max(len(finished) - self._max_finished, 0)]:
            del self._records[key]

    def get(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._records.get(session_id)

    def active(self) -> list[SessionRecord]:
        with self._lock:
            return [record for record in self._records.values() if record.running]

    def is_busy(self) -> bool:
        with self._lock:
            return any(record.running for record in self._records.values())


def _log_event(event: str, **fields: Any) -> None:
    payload: dict[str, Any] = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    payload.update(fields)
    try:
        message = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        LOGGER.debug("Unable to serialise telemetry event %s", event)
        return
    TELEMETRY_LOGGER.info(message)


class Orchestrator:
    """Coordinate one workspace, one agent session, and one validation gate per run."""

    def __init__(
        self,
        config: StagerConfig,
        client: AgentClient,
        validator: Validator | None = None,
        registry: SessionRegistry | None = None,
        *,
        comparator: Comparator = files_differ,
    ) -> None:
        self._config = config
        self._client = client
        self._validator = validator or Validator(
            phases_from_config(config.validation.phases),
            timeout=config.validation.timeout,
        )
        self._registry = registry or SessionRegistry()
        self._comparator = comparator
        self._subscribers: list[EventCallback] = []

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def subscribe(self, callback: EventCallback) -> None:
        """Deliver events from every future run to ``callback``."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> bool:
        """Stop attaching ``callback`` to new runs; returns whether it was subscribed."""
        try:
            self._subscribers.remove(callback)
        except ValueError:
            return False
        return True

    def abort(self, session_id: str) -> bool:
        """Cancel the agent of a running session; returns whether one was found."""
        record = self._registry.get(session_id)
        if record is None or not record.running or record.session is None:
            return False
        record.session.abort()
        return True

    # ---------------------------------------------------------------- setup
    def _provision_config(self) -> ProvisionConfig | None:
        section = self._config.provision
        if not section.enabled or not section.command:
            return None
        return ProvisionConfig(
            command=section.command,
            marker=section.marker,
            manifest=section.manifest,
            timeout=section.timeout,
        )

    def _workspace_for(self, request: OrchestrationRequest) -> WorkspaceManager:
        staging = request.staging_path or staging_path_for(
            self._config.staging_base,
            self._config.workspace.prefix,
        )
        return WorkspaceManager(
            self._config.repo_root,
            staging,
            path_filter=PathFilter.from_names(self._config.workspace.skip_paths),
            provision=self._provision_config(),
            comparator=self._comparator,
            session_id=request.session_id,
        )

    def _agent_request(self, request: OrchestrationRequest, staging: Path) -> AgentRequest:
        agent = self._config.agent
        allowlist = render_allowlist(staging, agent.allowlist)
        return AgentRequest(
            prompt=request.prompt,
            staging_path=staging,
            max_turns=request.max_turns or agent.max_turns,
            timeout=request.timeout or agent.timeout,
            allowed_tools=allowlist,
            system_prompt=render_workspace_prompt(staging, allowed_commands(allowlist), agent.guidance),
            session_id=request.session_id,
        )

    # ------------------------------------------------------------------ run
    def run(
        self,
        request: OrchestrationRequest,
        subscribers: Iterable[EventCallback] = (),
    ) -> OrchestrationResult:
        """Execute the staged run; failures are reported in the result, never raised."""
        session_id = request.session_id
        channel = EventChannel(session_id)
        for callback in [*self._subscribers, *subscribers]:
            channel.subscribe(callback)
        try:
            self._registry.register(session_id, channel)
        except ValueError as error:
            channel.close()
            return OrchestrationResult(
                session_id=session_id,
                success=False,
                error=str(error),
                failed_phase="internal",
            )

        started = time.monotonic()
        manager: WorkspaceManager | None = None
        result = OrchestrationResult(session_id=session_id, success=False)
        try:
            manager = self._workspace_for(request)
            result = self._execute(request, manager, channel)
        except Exception as error:  # noqa: BLE001
            LOGGER.exception("Unexpected error during staged run %s", session_id)
            if manager is not None:
                manager.mark_failed(str(error))
            result = OrchestrationResult(
                session_id=session_id,
                success=False,
                error=f"Internal error: {error}",
                failed_phase="internal",
            )
            if not channel.closed:
                channel.publish(EventKind.ERROR, f"Error: {error}")
        finally:
            if manager is not None:
                manager.cleanup()
                if result.provision_error is None:
                    result.provision_error = manager.workspace.provision_error
            result.duration = time.monotonic() - started
            result.events = channel.history
            channel.close()
            self._registry.finish(session_id, "succeeded" if result.success else "failed")

        _log_event(
            "staged_run",
            session_id=session_id,
            success=result.success,
            failed_phase=result.failed_phase,
            change_count=result.change_count,
            validation_phase=result.validation.phase if result.validation is not None else None,
            provision_error=result.provision_error,
            duration=round(result.duration, 3),
        )
        self._write_artifact(result)
        return result

    def _execute(
        self,
        request: OrchestrationRequest,
        manager: WorkspaceManager,
        channel: EventChannel,
    ) -> OrchestrationResult:
        session_id = request.session_id

        def failure(phase: FailedPhase, error: str, **extra: Any) -> OrchestrationResult:
            manager.mark_failed(error)
            LOGGER.warning("Staged run %s failed during %s: %s", session_id, phase, error)
            return OrchestrationResult(
                session_id=session_id,
                success=False,
                error=error,
                failed_phase=phase,
                provision_error=manager.workspace.provision_error,
                **extra,
            )

        channel.publish(EventKind.TOOL_ACTION, "Creating isolated workspace...", icon="●")
        try:
            staging = manager.create()
        except WorkspaceError as error:
            channel.publish(EventKind.ERROR, f"Workspace Error: {error}")
            return failure("creation", str(error))
        if manager.workspace.provision_error:
            channel.publish(
                EventKind.ERROR,
                f"Dependency install failed: {manager.workspace.provision_error}",
            )

        try:
            agent_request = self._agent_request(request, staging)
        except AllowlistError as error:
            channel.publish(EventKind.ERROR, f"Agent Error: {error}")
            return failure("agent", str(error))

        session = AgentSession(self._client, channel)
        self._registry.attach(session_id, session)
        agent_result = session.run(agent_request)
        if not agent_result.success:
            return failure("agent", agent_result.error or "Agent run failed")

        manager.mark_validating()
        changes = manager.changed_files()
        LOGGER.info("Agent changed %d files in %s", len(changes), staging)

        validation = self._validator.validate(staging, events=channel)
        if not validation.success:
            return failure(
                "validation",
                f"Validation failed ({validation.phase}): {validation.error}",
                response_text=agent_result.response_text,
                diagnostic=validation.diagnostic,
                changed_files=changes,
                validation=validation,
            )

        try:
            report = manager.apply_changes(changes)
        except WorkspaceError as error:
            channel.publish(EventKind.ERROR, f"Apply Error: {error}")
            return failure("apply", str(error), validation=validation, changed_files=changes)
        if report.skipped:
            LOGGER.warning("Skipped %d files while applying changes: %s", len(report.skipped), report.skipped)
        channel.publish(EventKind.COMPLETE, f"Applied {report.count} changed files")
        return OrchestrationResult(
            session_id=session_id,
            success=True,
            response_text=agent_result.response_text,
            change_count=report.count,
            changed_files=list(report.applied),
            validation=validation,
            provision_error=manager.workspace.provision_error,
        )

    def _write_artifact(self, result: OrchestrationResult) -> None:
        logs_dir = self._config.logs_dir
        repo_root = self._config.repo_root
        if logs_dir == repo_root or repo_root in logs_dir.parents:
            LOGGER.warning("Refusing to write run artifact inside the project tree: %s", logs_dir)
            return
        target = logs_dir / "runs" / f"{result.session_id}.json"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(result.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to write run artifact %s: %s", target, error)


def run_orchestration(
    request: OrchestrationRequest,
    config: StagerConfig,
    client: AgentClient,
    subscribers: Iterable[EventCallback] = (),
) -> OrchestrationResult:
    """Run one staged agent session with a fresh :class:`Orchestrator`."""
    return Orchestrator(config, client).run(request, subscribers)
