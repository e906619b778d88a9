"""Convenience exports for coding-agent client implementations."""

from .agent_client import (
    AgentAbortedError,
    AgentClient,
    AgentClientError,
    AgentRequest,
    AgentResult,
    AgentTimeoutError,
)
from .claude_cli import ClaudeCodeClient

__all__ = [
    "AgentAbortedError",
    "AgentClient",
    "AgentClientError",
    "AgentRequest",
    "AgentResult",
    "AgentTimeoutError",
    "ClaudeCodeClient",
]
