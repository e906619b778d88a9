"""Typed configuration loaded from ``config.yaml``."""

from __future__ import annotations

import copy
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from .models.agent_client import DEFAULT_AGENT_TIMEOUT, DEFAULT_MAX_TURNS
from .tools.gates import DEFAULT_VALIDATION_TIMEOUT, phases_from_config
from .tools.path_filter import DEFAULT_SKIP_PATHS
from .tools.workspace import DEFAULT_STAGING_PREFIX

__all__ = [
    "AgentSection",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_LOGS_DIRNAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PathsSection",
    "ProjectSection",
    "ProvisionSection",
    "StagerConfig",
    "ValidationSection",
    "WorkspaceSection",
    "load_config",
    "write_config",
]

DEFAULT_CONFIG_NAME = "config.yaml"
DEFAULT_LOGS_DIRNAME = "stager-logs"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "workspace": {
        "base_dir": None,
        "prefix": DEFAULT_STAGING_PREFIX,
        "skip_paths": list(DEFAULT_SKIP_PATHS),
        "retention_hours": 24,
        "max_workspaces": 5,
    },
    "provision": {
        "enabled": True,
        "command": "npm ci --silent --ignore-scripts",
        "marker": "node_modules",
        "manifest": "package.json",
        "timeout": 300,
    },
    "validation": {
        "phases": ["build"],
        "timeout": DEFAULT_VALIDATION_TIMEOUT,
    },
    "agent": {
        "command": ["claude"],
        "max_turns": DEFAULT_MAX_TURNS,
        "timeout": DEFAULT_AGENT_TIMEOUT,
        "permission_mode": "acceptEdits",
        "model": None,
        "allowlist": None,
        "settings_path": None,
        "credential": "anthropicApiKey",
        "guidance": [
            "Use existing components and follow the conventions already present in the project.",
            "Validate your work with the build command before finishing.",
        ],
    },
    "paths": {
        "logs": None,
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


class SectionModel(BaseModel):
    """Base section model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ProjectSection(SectionModel):
    name: str = ""
    repo_root: str = "."


class WorkspaceSection(SectionModel):
    base_dir: Optional[str] = None
    prefix: str = DEFAULT_STAGING_PREFIX
    skip_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_PATHS))
    retention_hours: float = Field(default=24.0, ge=0)
    max_workspaces: Optional[int] = Field(default=5, ge=0)

    @field_validator("prefix")
    @classmethod
    def _prefix_is_a_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped or "/" in stripped or "\\" in stripped:
            raise ValueError("prefix must be a plain directory name")
        return stripped


class ProvisionSection(SectionModel):
    enabled: bool = True
    command: Optional[Union[str, List[str]]] = "npm ci --silent --ignore-scripts"
    marker: str = "node_modules"
    manifest: Optional[str] = "package.json"
    timeout: float = Field(default=300.0, gt=0)


class ValidationSection(SectionModel):
    phases: List[Union[str, Dict[str, Any]]] = Field(default_factory=lambda: ["build"], min_length=1)
    timeout: float = Field(default=DEFAULT_VALIDATION_TIMEOUT, gt=0)

    @field_validator("phases")
    @classmethod
    def _requires_a_gate(cls, value: List[Union[str, Dict[str, Any]]]) -> List[Union[str, Dict[str, Any]]]:
        if not phases_from_config(value):
            raise ValueError("at least one validation phase with a command is required")
        return value


class AgentSection(SectionModel):
    command: Union[str, List[str]] = Field(default_factory=lambda: ["claude"])
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, ge=1)
    timeout: float = Field(default=DEFAULT_AGENT_TIMEOUT, gt=0)
    permission_mode: str = "acceptEdits"
    model: Optional[str] = None
    allowlist: Optional[List[str]] = None
    settings_path: Optional[str] = None
    credential: str = "anthropicApiKey"
    guidance: List[str] = Field(default_factory=list)


class PathsSection(SectionModel):
    logs: Optional[str] = None


class StagerConfig(SectionModel):
    """Root configuration model."""

    project: ProjectSection = Field(default_factory=ProjectSection)
    workspace: WorkspaceSection = Field(default_factory=WorkspaceSection)
    provision: ProvisionSection = Field(default_factory=ProvisionSection)
    validation: ValidationSection = Field(default_factory=ValidationSection)
    agent: AgentSection = Field(default_factory=AgentSection)
    paths: PathsSection = Field(default_factory=PathsSection)

    _config_dir: Path = PrivateAttr(default_factory=Path.cwd)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], *, config_dir: Path | None = None) -> "StagerConfig":
        try:
            config = cls.model_validate(data)
        except ValidationError as error:
            raise ConfigError(f"Invalid configuration: {error}") from error
        if config_dir is not None:
            config._config_dir = config_dir.resolve()
        logs_dir = config.logs_dir
        repo_root = config.repo_root
        if logs_dir == repo_root or repo_root in logs_dir.parents:
            raise ConfigError(f"Run logs directory {logs_dir} must be outside the project root {repo_root}.")
        return config

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    def _resolve(self, value: str, base: Path) -> Path:
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = base / candidate
        return candidate.resolve()

    @property
    def repo_root(self) -> Path:
        return self._resolve(self.project.repo_root, self._config_dir)

    @property
    def staging_base(self) -> Path | None:
        if not self.workspace.base_dir:
            return None
        return self._resolve(self.workspace.base_dir, self._config_dir)

    @property
    def logs_dir(self) -> Path:
        """Run artifact directory; never inside the project tree."""
        if self.paths.logs:
            return self._resolve(self.paths.logs, self._config_dir)
        base = self.staging_base or Path(tempfile.gettempdir()).resolve()
        return base / DEFAULT_LOGS_DIRNAME

    @property
    def settings_path(self) -> Path | None:
        if not self.agent.settings_path:
            return None
        return self._resolve(self.agent.settings_path, self._config_dir)


def load_config(config_path: Path | str) -> StagerConfig:
    """Load and validate a YAML configuration file."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return StagerConfig.from_mapping(data, config_dir=path.resolve().parent)


def write_config(config_path: Path | str, data: Dict[str, Any] | None = None) -> Path:
    """Persist configuration data (the default template when omitted) with stable formatting."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = copy.deepcopy(DEFAULT_CONFIG_TEMPLATE if data is None else data)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
    return path
