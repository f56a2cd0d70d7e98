"""Sandboxed format plugins.

Provides the plugin host:
- Artifact loading and ABI version checks
- WebAssembly sandboxes for imported and reactor guests
- The host/guest ABI bridge
- Plugin sessions and the dispatcher that owns them

Plugins run inside per-session sandboxes with bounded memory and time.
"""

from logsandbox.plugins.manifest import Capability, ExecutionModel, PluginDescriptor, PluginManifest
from logsandbox.plugins.registry import FormatRegistry, build_registry, discover_plugins
from logsandbox.plugins.loader import ArtifactLoader
from logsandbox.plugins.options import ParseOptions
from logsandbox.plugins.session import PluginSession, SessionState
from logsandbox.plugins.dispatcher import Dispatcher

__all__ = [
    "ArtifactLoader",
    "Capability",
    "Dispatcher",
    "ExecutionModel",
    "FormatRegistry",
    "ParseOptions",
    "PluginDescriptor",
    "PluginManifest",
    "PluginSession",
    "SessionState",
    "build_registry",
    "discover_plugins",
]
