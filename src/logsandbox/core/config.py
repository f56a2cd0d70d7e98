"""Host settings for the plugin runtime.

Settings are read from a YAML or JSON file. Every field has a default so
an empty or missing file yields a usable configuration.
"""

import json
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from logsandbox.core.errors import PluginHostError

DEFAULT_PLUGIN_DIRS = [
    Path.home() / ".logsandbox" / "plugins",
    Path("/usr/share/logsandbox/plugins"),
]


class SettingsError(PluginHostError):
    """Raised when the settings file cannot be read or validated."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            code="SETTINGS_ERROR",
            message=f"Invalid settings file '{path}': {reason}",
            remediation="Fix the settings file or remove it to use defaults",
            category="caller",
            context={"path": str(path)},
        )


class HostSettings(BaseModel):
    """Runtime limits and discovery paths."""

    plugin_dirs: list[Path] = Field(default_factory=lambda: list(DEFAULT_PLUGIN_DIRS))
    auxiliary_dirs: list[Path] = Field(
        default_factory=list,
        description="Directories reactor plugins may read through host.read_file",
    )
    invoke_timeout_seconds: float = Field(default=5.0, gt=0)
    max_memory_mb: int = Field(default=128, ge=1, le=4096)
    log_format: Literal["text", "json"] = "text"
    verbose: bool = False

    model_config = {"extra": "forbid"}

    def timeout_for(self, manifest_seconds: float | None) -> float:
        """Effective per-invoke budget; a manifest may only tighten it."""
        if manifest_seconds is None:
            return self.invoke_timeout_seconds
        return min(self.invoke_timeout_seconds, manifest_seconds)

    def memory_bytes_for(self, manifest_mb: int | None) -> int:
        """Effective memory ceiling in bytes; a manifest may only tighten it."""
        mb = self.max_memory_mb if manifest_mb is None else min(self.max_memory_mb, manifest_mb)
        return mb * 1024 * 1024


def load_settings(path: Path | None = None) -> HostSettings:
    """Load host settings.

    Args:
        path: YAML or JSON settings file; None or a missing file gives defaults

    Returns:
        HostSettings instance

    Raises:
        SettingsError: If the file is unreadable or invalid
    """
    if path is None or not path.exists():
        return HostSettings()

    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            data = yaml.safe_load(text) or {}
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise SettingsError(path, str(e)) from e

    if not isinstance(data, dict):
        raise SettingsError(path, "top level must be a mapping")

    try:
        return HostSettings(**data)
    except ValidationError as e:
        raise SettingsError(path, str(e)) from e
