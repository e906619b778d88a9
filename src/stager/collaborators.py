"""Boundary interfaces for the stores this subsystem consumes but does not own."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

__all__ = ["DocumentStore", "JsonSettingsStore", "SettingsStore", "CREDENTIAL_ENV_VARS"]

LOGGER = logging.getLogger(__name__)

# Environment fallbacks for credentials missing from the settings file.
CREDENTIAL_ENV_VARS: dict[str, str] = {"anthropicApiKey": "ANTHROPIC_API_KEY"}


@runtime_checkable
class DocumentStore(Protocol):
    """Note/document storage used by the agent's own tool surface.

    Nothing in this package calls it. The protocol only describes the boundary
    so that hosts wiring notes tools into the agent share one shape.
    """

    def load(self, document_id: str) -> Optional[str]:
        ...

    def save(self, document_id: str, content: str, title: str) -> None:
        ...


@runtime_checkable
class SettingsStore(Protocol):
    """Settings lookup exposing a single credential accessor."""

    def credential(self, name: str) -> Optional[str]:
        ...


class JsonSettingsStore:
    """Read credentials from a JSON settings file (``{"apiKeys": {...}}``)."""

    def __init__(self, path: Path | str | None, *, env: Mapping[str, str] | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._env = os.environ if env is None else env

    def _load(self) -> dict[str, Any]:
        if self.path is None or not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.error("Failed to load stored API keys from %s: %s", self.path, error)
            return {}
        return data if isinstance(data, dict) else {}

    def credential(self, name: str) -> Optional[str]:
        keys = self._load().get("apiKeys")
        if isinstance(keys, Mapping):
            value = keys.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip()
        env_name = CREDENTIAL_ENV_VARS.get(name)
        if env_name:
            value = self._env.get(env_name)
            if value and value.strip():
                return value.strip()
        return None
