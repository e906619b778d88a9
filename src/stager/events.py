"""Per-session progress events and the publish/subscribe channel that carries them.

Each agent session owns one :class:`EventChannel`. Producers call
:meth:`EventChannel.publish`; every event is stamped with a sequence number
and a monotonic timestamp under a lock, appended to a bounded history, and
delivered in order to every subscriber.

Delivery policy: callback subscribers run inline on the producer thread and
must return quickly. Iterator subscribers (:meth:`EventChannel.stream`) read
from a bounded queue; when the queue is full the oldest buffered event is
dropped so the producer never blocks on a slow consumer.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

__all__ = [
    "AgentEvent",
    "EventCallback",
    "EventChannel",
    "EventKind",
    "EventStream",
    "Subscription",
    "describe_tool_call",
    "scrub_workspace_path",
    "tool_icon",
]

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of progress events emitted during a session."""

    START = "start"
    MESSAGE = "message"
    TOOL_ACTION = "tool_action"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    COMPLETE = "complete"


_DEFAULT_ICONS: dict[EventKind, str] = {
    EventKind.START: "●",
    EventKind.MESSAGE: "→",
    EventKind.TOOL_ACTION: "→",
    EventKind.TOOL_RESULT: "↓",
    EventKind.ERROR: "!",
    EventKind.COMPLETE: "○",
}

_TOOL_ICONS: dict[str, str] = {
    "Read": "↑",
    "Write": "↓",
    "Edit": "→",
    "MultiEdit": "→",
    "Bash": ">",
    "List": "•",
    "LS": "•",
}


@dataclass(frozen=True, slots=True)
class AgentEvent:
    """Single progress event observed during an agent session."""

    kind: EventKind
    text: str
    icon: str
    sequence: int
    timestamp: float
    session_id: str
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "icon": self.icon,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "correlation_id": self.correlation_id,
        }


EventCallback = Callable[[AgentEvent], None]


class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`."""

    def __init__(self, channel: "EventChannel", callback: EventCallback) -> None:
        self._channel = channel
        self.callback = callback

    def unsubscribe(self) -> None:
        self._channel._remove(self)


_CLOSED = object()


class EventStream:
    """Iterator over events published after the stream was opened."""

    def __init__(self, maxsize: int) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max(maxsize, 1))
        self._lock = threading.Lock()
        self.dropped = 0

    def _offer(self, item: Any) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(item)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    if item is not _CLOSED:
                        self.dropped += 1

    def get(self, timeout: float | None = None) -> AgentEvent | None:
        """Return the next event, or ``None`` once the channel is closed."""
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[AgentEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class EventChannel:
    """Ordered publish/subscribe channel owned by a single session."""

    def __init__(self, session_id: str, *, history: int = 1000) -> None:
        self.session_id = session_id
        self._lock = threading.RLock()
        self._history: deque[AgentEvent] = deque(maxlen=max(history, 1))
        self._subscriptions: list[Subscription] = []
        self._streams: list[EventStream] = []
        self._sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[AgentEvent]:
        with self._lock:
            return list(self._history)

    def subscribe(self, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def stream(self, maxsize: int = 256) -> EventStream:
        stream = EventStream(maxsize)
        with self._lock:
            if self._closed:
                stream._offer(_CLOSED)
            else:
                self._streams.append(stream)
        return stream

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(
        self,
        kind: EventKind | str,
        text: str,
        *,
        icon: str | None = None,
        correlation_id: str | None = None,
    ) -> AgentEvent:
        """Stamp and deliver an event to every subscriber in emission order."""
        event_kind = EventKind(kind)
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Event channel for session {self.session_id} is closed")
            self._sequence += 1
            event = AgentEvent(
                kind=event_kind,
                text=text,
                icon=icon or _DEFAULT_ICONS[event_kind],
                sequence=self._sequence,
                timestamp=time.monotonic(),
                session_id=self.session_id,
                correlation_id=correlation_id,
            )
            self._history.append(event)
            # Delivered under the lock; publishers never interleave.
            for subscription in list(self._subscriptions):
                try:
                    subscription.callback(event)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Event subscriber failed for session %s", self.session_id)
            for stream in self._streams:
                stream._offer(event)
        return event

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for stream in self._streams:
                stream._offer(_CLOSED)
            self._streams.clear()
            self._subscriptions.clear()


def tool_icon(name: str) -> str:
    return _TOOL_ICONS.get(name, "→")


_WORKSPACE_MARKERS = (".agent-workspace-", "/var/folders/")


def scrub_workspace_path(value: str, staging_path: str | None = None) -> str:
    """Replace absolute staging paths with a short display form."""
    if staging_path and staging_path in value:
        return value.replace(staging_path, "/workspace")
    if any(marker in value for marker in _WORKSPACE_MARKERS):
        return "/workspace"
    return value


def _truncate(value: str, max_length: int = 50) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length] + "..."


def _file_name(value: str, staging_path: str | None) -> str:
    cleaned = scrub_workspace_path(value, staging_path)
    return cleaned.rstrip("/").split("/")[-1] or cleaned


def _dir_name(value: str, staging_path: str | None) -> str:
    if value == ".":
        return "current directory"
    return _file_name(value, staging_path)


def _first(mapping: Mapping[str, Any], *keys: str, default: str) -> str:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value:
            return value
    return default


def describe_tool_call(name: str, tool_input: Any, staging_path: str | None = None) -> str:
    """Render a short human-readable description of an agent tool call."""
    payload: Mapping[str, Any] = tool_input if isinstance(tool_input, Mapping) else {}

    if name in {"Read", "Write", "Edit"}:
        target = _first(payload, "file_path", "path", "file", "filename", default="unknown")
        return f"{name}: {_file_name(target, staging_path)}"
    if name == "MultiEdit":
        target = _first(payload, "file_path", "path", default="unknown file")
        return f"MultiEdit: {_file_name(target, staging_path)}"
    if name in {"List", "LS"}:
        target = _first(payload, "path", "directory", "dir", default=".")
        return f"List: {_dir_name(target, staging_path)}"
    if name in {"Search", "Find"}:
        pattern = _first(payload, "pattern", "query", "search", "name", default="unknown")
        target = _first(payload, "path", "directory", default=".")
        return f'{name}: "{pattern}" in {_dir_name(target, staging_path)}'
    if name == "Bash":
        command = _first(payload, "command", "cmd", "script", default="unknown command")
        return f"Bash: {_truncate(scrub_workspace_path(command, staging_path))}"
    if name == "Grep":
        return f"Grep: {_first(payload, 'pattern', 'query', default='unknown')}"
    if name == "Glob":
        return f"Glob: {_first(payload, 'pattern', 'glob', default='unknown')}"
    if name == "Task":
        if isinstance(tool_input, list) and tool_input:
            first = tool_input[0] if isinstance(tool_input[0], Mapping) else {}
            description = _first(first, "description", default="unknown task")
            if len(tool_input) > 1:
                return f"Tasks: {description} (+{len(tool_input) - 1} more)"
            return f"Task: {description}"
        return f"Task: {_first(payload, 'description', default='unknown task')}"

    if payload.get("pattern"):
        return f'{name}: "{payload["pattern"]}"'
    if payload.get("query"):
        return f'{name}: "{payload["query"]}"'
    target = _first(payload, "path", "file", default="")
    if target:
        return f"{name}: {_file_name(target, staging_path)}"
    try:
        rendered = json.dumps(tool_input, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        rendered = str(tool_input)
    message = f"{name}: {rendered}" if rendered and rendered not in {"{}", "null"} else name
    return _truncate(message)
