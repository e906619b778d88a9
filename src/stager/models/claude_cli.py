"""Coding-agent client that drives the ``claude`` CLI in headless streaming mode."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
from collections import deque
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..tools.process import kill_process_group, merge_env
from .agent_client import (
    AgentAbortedError,
    AgentClient,
    AgentClientError,
    AgentRequest,
    AgentTimeoutError,
)

__all__ = ["ClaudeCodeClient"]

LOGGER = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 40


class ClaudeCodeClient(AgentClient):
    """Launch the agent CLI inside the staging directory and stream its JSON events.

    The process runs in its own session so that a timeout or :meth:`cancel`
    terminates the agent together with any tool commands it spawned.
    """

    def __init__(
        self,
        *,
        command: Sequence[str] | str = ("claude",),
        permission_mode: str = "acceptEdits",
        model: Optional[str] = None,
        env: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        self._command = tuple(shlex.split(command)) if isinstance(command, str) else tuple(command)
        if not self._command:
            raise ValueError("An agent command is required.")
        self._permission_mode = permission_mode
        self._model = model
        # Nested agent sessions refuse to start when this marker is inherited.
        self._env: Dict[str, Optional[str]] = {"CLAUDECODE": None}
        self._env.update(env or {})
        self._lock = threading.Lock()
        self._runs: Dict[str, _AgentRun] = {}
        self._pending_cancels: set[str] = set()

    def build_command(self, request: AgentRequest) -> list[str]:
        """Return the argument vector for ``request``."""
        argv = [
            *self._command,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(request.max_turns),
            "--permission-mode",
            self._permission_mode,
        ]
        if request.allowed_tools:
            argv.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.system_prompt:
            argv.extend(["--append-system-prompt", request.system_prompt])
        if self._model:
            argv.extend(["--model", self._model])
        return argv

    def cancel(self, session_id: Optional[str] = None) -> None:
        with self._lock:
            if session_id is None:
                runs = list(self._runs.values())
            else:
                run = self._runs.get(session_id)
                runs = [run] if run is not None else []
                if run is None:
                    # Not launched yet; the run is refused when it starts.
                    self._pending_cancels.add(session_id)
            for run in runs:
                run.cancelled = True
        for run in runs:
            LOGGER.info("Cancelling agent process %s for session %s", run.process.pid, run.session_id)
            kill_process_group(run.process)

    def _expire(self, run: _AgentRun, timeout: float) -> None:
        if run.process.poll() is not None:
            return
        with self._lock:
            run.timed_out = True
        LOGGER.warning("Agent exceeded %ss, terminating process %s", timeout, run.process.pid)
        kill_process_group(run.process)

    def stream(self, request: AgentRequest) -> Iterator[Mapping[str, Any]]:
        argv = self.build_command(request)
        session_id = request.session_id
        with self._lock:
            if session_id in self._runs:
                raise AgentClientError(f"Agent session {session_id} is already running.")
            if session_id in self._pending_cancels:
                self._pending_cancels.discard(session_id)
                raise AgentAbortedError("Agent run was cancelled.")
            try:
                process = subprocess.Popen(  # noqa: S603 - argv assembled from configuration
                    argv,
                    cwd=request.staging_path,
                    env=merge_env(self._env),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    errors="replace",
                    start_new_session=True,
                )
            except OSError as error:
                raise AgentClientError(f"Unable to start agent command {argv[0]}: {error}") from error
            run = _AgentRun(session_id=session_id, process=process)
            self._runs[session_id] = run

        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        drain = threading.Thread(target=_drain, args=(process.stderr, stderr_tail), daemon=True)
        drain.start()
        watchdog = threading.Timer(request.timeout, self._expire, args=(run, request.timeout))
        watchdog.daemon = True
        watchdog.start()

        saw_result = False
        try:
            assert process.stdin is not None and process.stdout is not None
            try:
                process.stdin.write(request.prompt)
                process.stdin.close()
            except BrokenPipeError:
                pass
            for line in process.stdout:
                payload = _parse_line(line)
                if payload is None:
                    continue
                if payload.get("type") == "result":
                    saw_result = True
                yield payload
            process.wait()
        finally:
            watchdog.cancel()
            if process.poll() is None:
                # The consumer stopped early; make sure the agent does not outlive it.
                kill_process_group(process)
                process.wait()
            drain.join(timeout=5)
            with self._lock:
                self._runs.pop(session_id, None)
                self._pending_cancels.discard(session_id)
            if process.stdout is not None:
                process.stdout.close()

        if run.timed_out:
            raise AgentTimeoutError(f"Agent timed out after {request.timeout} seconds.")
        if run.cancelled:
            raise AgentAbortedError("Agent run was cancelled.")
        if process.returncode != 0 and not saw_result:
            detail = "\n".join(stderr_tail).strip() or "no output"
            raise AgentClientError(f"Agent exited with code {process.returncode}: {detail}")


@dataclass(slots=True)
class _AgentRun:
    """Process handle and termination flags for one :meth:`ClaudeCodeClient.stream` call."""

    session_id: str
    process: subprocess.Popen[str]
    cancelled: bool = False
    timed_out: bool = False


def _drain(stream: Any, sink: deque[str]) -> None:
    if stream is None:
        return
    try:
        for line in stream:
            stripped = line.rstrip()
            if stripped:
                sink.append(stripped)
    except ValueError:
        return
    finally:
        stream.close()


def _parse_line(line: str) -> Dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        LOGGER.debug("Ignoring non-JSON agent output: %s", stripped[:200])
        return None
    if not isinstance(payload, dict):
        return None
    return payload
