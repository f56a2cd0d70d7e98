"""Plugin manifest and descriptor definitions.

A manifest is the ``plugin.json`` placed next to a compiled artifact by
the plugin build tooling. The registry turns each manifest into an
immutable PluginDescriptor.
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class ExecutionModel(str, Enum):
    """How a guest module is linked and driven."""

    IMPORTED = "imported"  # no host imports, pure compute over supplied bytes
    REACTOR = "reactor"  # host-mediated I/O, initialized once via _initialize


class Capability(str, Enum):
    """Static option capabilities surfaced to the options UI."""

    AUXILIARY_FILES = "auxiliary_files"
    TIMEZONE_OVERRIDE = "timezone_override"
    LOG_LEVEL_FILTER = "log_level_filter"
    STORAGE_HEADER = "storage_header"


class PluginDescriptor(BaseModel):
    """Immutable description of one loadable format plugin."""

    format_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    abi_version: int = Field(..., ge=0)
    execution_model: ExecutionModel
    binary_path: Path
    capabilities: frozenset[Capability] = frozenset()

    name: str = ""
    version: str = "0.0.0"
    description: str = ""
    file_extensions: tuple[str, ...] = ()
    max_memory_mb: int | None = Field(default=None, ge=1)
    max_execution_seconds: float | None = Field(default=None, gt=0)

    model_config = {"frozen": True, "extra": "forbid"}

    def supports(self, capability: Capability) -> bool:
        """Check if the plugin declares a capability."""
        return capability in self.capabilities

    def capability_flags(self) -> dict[str, bool]:
        """Capability flags keyed by name, for option dialogs."""
        return {c.value: c in self.capabilities for c in Capability}


class PluginManifest(BaseModel):
    """Plugin manifest describing metadata and capabilities.

    This manifest is stored as plugin.json in the plugin directory.

    Example:
        {
            "format_id": "dlt",
            "name": "DLT parser",
            "version": "1.0.0",
            "abi_version": 1,
            "execution_model": "imported",
            "binary": "plugin.wasm",
            "capabilities": ["log_level_filter", "auxiliary_files"],
            "file_extensions": [".dlt"]
        }
    """

    format_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    name: str = ""
    version: str = Field(default="0.0.0", pattern=r"^\d+\.\d+\.\d+")
    description: str = ""
    author: str = ""

    abi_version: int = Field(..., ge=0)
    execution_model: ExecutionModel = ExecutionModel.IMPORTED
    binary: str = Field(..., description="Compiled artifact, relative to the plugin directory")

    capabilities: list[Capability] = []
    file_extensions: list[str] = []

    max_memory_mb: int | None = Field(default=None, ge=1)
    max_execution_seconds: float | None = Field(default=None, gt=0)

    def to_descriptor(self, plugin_dir: Path) -> PluginDescriptor:
        """Build the descriptor for a manifest found in plugin_dir."""
        return PluginDescriptor(
            format_id=self.format_id,
            abi_version=self.abi_version,
            execution_model=self.execution_model,
            binary_path=(plugin_dir / self.binary).resolve(),
            capabilities=frozenset(self.capabilities),
            name=self.name or self.format_id,
            version=self.version,
            description=self.description,
            file_extensions=tuple(e.lower() for e in self.file_extensions),
            max_memory_mb=self.max_memory_mb,
            max_execution_seconds=self.max_execution_seconds,
        )
