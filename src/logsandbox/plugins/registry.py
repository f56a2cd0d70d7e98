"""Format registry and plugin discovery.

The registry maps format ids to plugin descriptors. It is built once at
startup and is read-mostly afterwards: registration copies the table
under a single writer lock and swaps it in, so resolution never locks.
"""

import json
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from pydantic import ValidationError

from logsandbox.core import logging as log
from logsandbox.core.errors import UnknownFormatError
from logsandbox.plugins.manifest import PluginDescriptor, PluginManifest

MANIFEST_FILE = "plugin.json"


class FormatRegistry:
    """Registry of available format plugins."""

    def __init__(self, descriptors: list[PluginDescriptor] | None = None) -> None:
        self._write_lock = threading.Lock()
        self._formats: Mapping[str, PluginDescriptor] = MappingProxyType({})
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: PluginDescriptor, replace: bool = False) -> bool:
        """Register a format mapping.

        Args:
            descriptor: Descriptor to add
            replace: Overwrite an existing mapping for the same format id

        Returns:
            True if the descriptor was registered
        """
        with self._write_lock:
            existing = self._formats.get(descriptor.format_id)
            if existing is not None and not replace:
                log.warning(
                    f"Format '{descriptor.format_id}' already registered, keeping {existing.binary_path}",
                    ignored=str(descriptor.binary_path),
                )
                return False
            table = dict(self._formats)
            table[descriptor.format_id] = descriptor
            self._formats = MappingProxyType(table)
        log.debug(
            f"Registered format '{descriptor.format_id}'",
            execution_model=descriptor.execution_model.value,
            binary=str(descriptor.binary_path),
        )
        return True

    def unregister(self, format_id: str) -> bool:
        """Remove a format mapping."""
        with self._write_lock:
            if format_id not in self._formats:
                return False
            table = dict(self._formats)
            del table[format_id]
            self._formats = MappingProxyType(table)
        return True

    def resolve(self, format_id: str) -> PluginDescriptor:
        """Resolve a format id to its descriptor.

        Raises:
            UnknownFormatError: If no plugin is registered for the format
        """
        descriptor = self._formats.get(format_id)
        if descriptor is None:
            raise UnknownFormatError(format_id, self.format_ids())
        return descriptor

    def get(self, format_id: str) -> PluginDescriptor | None:
        return self._formats.get(format_id)

    def format_ids(self) -> list[str]:
        """Sorted list of registered format ids."""
        return sorted(self._formats)

    def descriptors(self) -> list[PluginDescriptor]:
        """All descriptors, ordered by format id."""
        formats = self._formats
        return [formats[k] for k in sorted(formats)]

    def find_for_extension(self, extension: str) -> list[PluginDescriptor]:
        """Find formats that claim a file extension."""
        ext = extension.lower()
        return [d for d in self.descriptors() if ext in d.file_extensions]

    def __contains__(self, format_id: object) -> bool:
        return format_id in self._formats

    def __len__(self) -> int:
        return len(self._formats)


def load_manifest(plugin_path: Path) -> PluginManifest | None:
    """Load the plugin manifest from a directory.

    Returns None when the directory holds no manifest. Unreadable or
    invalid manifests are reported and also yield None.
    """
    manifest_file = plugin_path / MANIFEST_FILE
    if not manifest_file.exists():
        return None

    try:
        data = json.loads(manifest_file.read_text(encoding="utf-8"))
        return PluginManifest(**data)
    except (OSError, ValueError, TypeError, ValidationError) as e:
        log.warning(f"Skipping invalid plugin manifest {manifest_file}: {e}")
        return None


def discover_plugins(plugin_dirs: list[Path]) -> list[PluginDescriptor]:
    """Discover plugin descriptors in plugin directories.

    Each immediate subdirectory holding a plugin.json is one plugin.

    Args:
        plugin_dirs: Directories to search, in priority order

    Returns:
        Descriptors found
    """
    descriptors = []

    for plugin_dir in plugin_dirs:
        if not plugin_dir.is_dir():
            continue

        for item in sorted(plugin_dir.iterdir()):
            if not item.is_dir():
                continue
            manifest = load_manifest(item)
            if manifest is None:
                continue
            descriptor = manifest.to_descriptor(item)
            if not descriptor.binary_path.is_file():
                log.warning(
                    f"Skipping plugin '{manifest.format_id}': binary not found",
                    path=str(descriptor.binary_path),
                )
                continue
            descriptors.append(descriptor)

    return descriptors


def build_registry(plugin_dirs: list[Path]) -> FormatRegistry:
    """Build a registry from discovered plugins; earlier dirs win."""
    registry = FormatRegistry()
    for descriptor in discover_plugins(plugin_dirs):
        registry.register(descriptor)
    log.debug(f"Discovered {len(registry)} format plugin(s)", formats=registry.format_ids())
    return registry
