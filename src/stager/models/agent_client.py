"""Request/result types and the base class shared by coding-agent integrations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

__all__ = [
    "AgentAbortedError",
    "AgentClient",
    "AgentClientError",
    "AgentRequest",
    "AgentResult",
    "AgentTimeoutError",
    "DEFAULT_MAX_TURNS",
    "DEFAULT_AGENT_TIMEOUT",
]

DEFAULT_MAX_TURNS = 50
DEFAULT_AGENT_TIMEOUT = 600.0


class AgentClientError(RuntimeError):
    """Base error raised when the coding agent cannot complete a request."""


class AgentTimeoutError(AgentClientError):
    """Raised when the agent exceeds its time budget and was terminated."""


class AgentAbortedError(AgentClientError):
    """Raised when the agent run was cancelled before it finished."""


@dataclass(slots=True)
class AgentRequest:
    """Everything the agent needs for one bounded invocation."""

    prompt: str
    staging_path: Path
    max_turns: int = DEFAULT_MAX_TURNS
    timeout: float = DEFAULT_AGENT_TIMEOUT
    allowed_tools: List[str] = field(default_factory=list)
    system_prompt: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(slots=True)
class AgentResult:
    """Terminal outcome of an agent session."""

    success: bool
    response_text: str = ""
    error: Optional[str] = None
    turns: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "response_text": self.response_text,
            "error": self.error,
            "turns": self.turns,
        }


class AgentClient(ABC):
    """Transport-agnostic interface to an external coding agent.

    Implementations yield the agent's structured messages in arrival order.
    Each message is a mapping with at least a ``type`` key (``assistant``,
    ``user``, ``system`` or ``result``).
    """

    @abstractmethod
    def stream(self, request: AgentRequest) -> Iterator[Mapping[str, Any]]:
        """Run the agent for ``request`` and yield its messages as they arrive."""

    def cancel(self, session_id: Optional[str] = None) -> None:
        """Abort the in-flight :meth:`stream` call for ``session_id``.

        ``None`` aborts every run this client started. The default is a no-op.
        """
