"""Permission policy applied to agent sessions."""

from .allowlist import DEFAULT_ALLOWLIST_TEMPLATE, AllowlistError, allowed_commands, render_allowlist

__all__ = ["AllowlistError", "DEFAULT_ALLOWLIST_TEMPLATE", "allowed_commands", "render_allowlist"]
