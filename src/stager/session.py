"""Agent session: one bounded agent invocation translated into ordered events."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from typing import Any, List

from .events import AgentEvent, EventChannel, EventKind, describe_tool_call, tool_icon
from .models.agent_client import (
    AgentAbortedError,
    AgentClient,
    AgentClientError,
    AgentRequest,
    AgentResult,
)

__all__ = ["AgentSession", "DEFAULT_RESPONSE_TEXT", "MaxTurnsExceeded"]

LOGGER = logging.getLogger(__name__)

DEFAULT_RESPONSE_TEXT = "Task completed"

_RESULT_PREVIEW_CHARS = 200


class MaxTurnsExceeded(AgentClientError):
    """Raised when the agent keeps going past the configured turn budget."""


def _content_blocks(message: Mapping[str, Any]) -> List[Any]:
    inner = message.get("message")
    if not isinstance(inner, Mapping):
        return []
    content = inner.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return content
    return []


def _result_text(block: Mapping[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts = [item.get("text", "") for item in content if isinstance(item, Mapping)]
        text = "\n".join(part for part in parts if part)
    elif content is None:
        text = ""
    else:
        text = json.dumps(content, default=str)
    text = text.strip()
    if len(text) > _RESULT_PREVIEW_CHARS:
        text = text[:_RESULT_PREVIEW_CHARS] + "..."
    return text


class AgentSession:
    """Run the external agent against a staging path and publish its progress.

    Messages are translated in arrival order: assistant text becomes a
    ``message`` event, tool calls become ``tool_action`` events (correlated by
    tool use id) and tool outputs become ``tool_result`` or ``error`` events.
    """

    def __init__(self, client: AgentClient, channel: EventChannel) -> None:
        self._client = client
        self._channel = channel
        self._aborted = threading.Event()
        self._lock = threading.Lock()
        self._active_id: str | None = None

    @property
    def channel(self) -> EventChannel:
        return self._channel

    def events(self) -> list[AgentEvent]:
        return self._channel.history

    def abort(self) -> None:
        """Cancel this session's agent run; other sessions on the same client keep running."""
        with self._lock:
            self._aborted.set()
            active_id = self._active_id
        if active_id is not None:
            self._client.cancel(active_id)

    def _publish(self, kind: EventKind, text: str, **kwargs: Any) -> None:
        if not self._channel.closed:
            self._channel.publish(kind, text, **kwargs)

    def run(self, request: AgentRequest) -> AgentResult:
        self._publish(EventKind.START, "Agent: Processing request...")
        staging = request.staging_path.as_posix()
        messages: list[dict[str, Any]] = []
        seen_turns: set[str] = set()
        turns = 0
        last_result: Mapping[str, Any] | None = None

        with self._lock:
            aborted = self._aborted.is_set()
            if not aborted:
                self._active_id = request.session_id
        if aborted:
            return self._fail("Agent run was cancelled.", turns, messages)
        stream = self._client.stream(request)
        try:
            for message in stream:
                if self._aborted.is_set():
                    raise AgentAbortedError("Agent run was cancelled.")
                messages.append(dict(message))
                kind = message.get("type")
                if kind == "assistant":
                    inner = message.get("message")
                    turn_id = inner.get("id") if isinstance(inner, Mapping) else None
                    key = str(turn_id) if turn_id else f"#{len(messages)}"
                    if key not in seen_turns:
                        seen_turns.add(key)
                        turns += 1
                        if turns > request.max_turns:
                            self._client.cancel(request.session_id)
                            raise MaxTurnsExceeded(f"Agent exceeded the maximum of {request.max_turns} turns.")
                    self._translate_assistant(message, staging)
                elif kind == "user":
                    self._translate_tool_results(message)
                elif kind == "result":
                    last_result = message
        except AgentClientError as error:
            return self._fail(str(error), turns, messages)
        finally:
            with self._lock:
                self._active_id = None
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        if self._aborted.is_set():
            return self._fail("Agent run was cancelled.", turns, messages)

        if last_result is not None and last_result.get("subtype") == "error_max_turns":
            return self._fail(f"Agent reached the maximum of {request.max_turns} turns.", turns, messages)

        response = DEFAULT_RESPONSE_TEXT
        if last_result is not None and last_result.get("subtype") == "success":
            text = last_result.get("result")
            if isinstance(text, str) and text.strip():
                response = text
        self._publish(EventKind.COMPLETE, "Agent: Task completed")
        return AgentResult(success=True, response_text=response, turns=turns, messages=messages)

    def _fail(self, error: str, turns: int, messages: list[dict[str, Any]]) -> AgentResult:
        LOGGER.warning("Agent session failed: %s", error)
        self._publish(EventKind.ERROR, f"Agent Error: {error}")
        return AgentResult(success=False, error=error, turns=turns, messages=messages)

    def _translate_assistant(self, message: Mapping[str, Any], staging: str) -> None:
        for block in _content_blocks(message):
            if not isinstance(block, Mapping):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "").strip()
                if text:
                    self._publish(EventKind.MESSAGE, f"Agent: {text}")
            elif block_type == "tool_use":
                name = str(block.get("name") or "tool")
                description = describe_tool_call(name, block.get("input") or {}, staging)
                self._publish(
                    EventKind.TOOL_ACTION,
                    description,
                    icon=tool_icon(name),
                    correlation_id=block.get("id"),
                )

    def _translate_tool_results(self, message: Mapping[str, Any]) -> None:
        for block in _content_blocks(message):
            if not isinstance(block, Mapping) or block.get("type") != "tool_result":
                continue
            is_error = bool(block.get("is_error"))
            self._publish(
                EventKind.ERROR if is_error else EventKind.TOOL_RESULT,
                _result_text(block) or ("Tool failed" if is_error else "Tool finished"),
                correlation_id=block.get("tool_use_id"),
            )
