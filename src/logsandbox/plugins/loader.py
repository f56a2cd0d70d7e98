"""Artifact loader.

Reads a plugin binary, validates its framing and declared ABI version,
compiles it and instantiates the sandbox variant for its execution
model. Either a fully ready instance is returned or an error is raised
and nothing is retained.
"""

from pathlib import Path

from wasmtime import Module, WasmtimeError

from logsandbox.core import logging as log
from logsandbox.core.config import HostSettings
from logsandbox.core.errors import (
    ArtifactIOError,
    CorruptArtifactError,
    GuestTrapError,
    IncompatibleAbiError,
    PluginTimeoutError,
)
from logsandbox.plugins.artifact import (
    HOST_ABI_MAX,
    HOST_ABI_MIN,
    ArtifactFormatError,
    ArtifactInfo,
    inspect_artifact,
)
from logsandbox.plugins.manifest import PluginDescriptor
from logsandbox.plugins.sandbox import SANDBOX_TYPES, HostContext, SandboxInstance


def read_artifact(path: Path) -> tuple[bytes, ArtifactInfo]:
    """Read and structurally validate an artifact file.

    Raises:
        ArtifactIOError: If the file is unreadable
        CorruptArtifactError: If the framing is invalid
        IncompatibleAbiError: If the ABI version is missing or unsupported
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ArtifactIOError(str(path), e.strerror or str(e)) from e

    try:
        info = inspect_artifact(data)
    except ArtifactFormatError as e:
        raise CorruptArtifactError(str(path), str(e)) from e

    if not info.abi_supported():
        raise IncompatibleAbiError(str(path), info.abi_version, (HOST_ABI_MIN, HOST_ABI_MAX))

    return data, info


class ArtifactLoader:
    """Turns plugin descriptors into ready sandbox instances."""

    def __init__(self, settings: HostSettings | None = None) -> None:
        self._settings = settings or HostSettings()

    @property
    def settings(self) -> HostSettings:
        return self._settings

    def load(self, descriptor: PluginDescriptor, instance_id: int = 0) -> SandboxInstance:
        """Load a plugin binary into a fresh sandbox.

        Args:
            descriptor: Plugin to load
            instance_id: Identifier used in logs and host callbacks

        Returns:
            A ready SandboxInstance of the descriptor's execution model

        Raises:
            ArtifactIOError: If the binary is unreadable
            CorruptArtifactError: If validation, compilation or instantiation fails
            IncompatibleAbiError: If the declared ABI is outside the host range
        """
        path = descriptor.binary_path
        data, info = read_artifact(path)

        if info.abi_version != descriptor.abi_version:
            raise CorruptArtifactError(
                str(path),
                f"manifest declares ABI {descriptor.abi_version} but binary declares {info.abi_version}",
            )

        sandbox_type = SANDBOX_TYPES[descriptor.execution_model]
        sandbox = sandbox_type(
            instance_id=instance_id,
            descriptor=descriptor,
            timeout_seconds=self._settings.timeout_for(descriptor.max_execution_seconds),
            memory_limit_bytes=self._settings.memory_bytes_for(descriptor.max_memory_mb),
            host_context=HostContext(
                instance_id, descriptor.format_id, allowed_dirs=self._settings.auxiliary_dirs
            ),
        )

        try:
            module = Module(sandbox.engine, data)
            sandbox_type.check_module(module)
            sandbox.instantiate(module)
        except ArtifactFormatError as e:
            sandbox.close()
            raise CorruptArtifactError(str(path), str(e)) from e
        except WasmtimeError as e:
            sandbox.close()
            raise CorruptArtifactError(str(path), str(e).splitlines()[0] if str(e) else "rejected by engine") from e
        except (GuestTrapError, PluginTimeoutError) as e:
            sandbox.close()
            raise CorruptArtifactError(str(path), f"initialization failed: {e}") from e

        log.debug(
            f"Loaded plugin '{descriptor.format_id}'",
            instance=instance_id,
            abi_version=info.abi_version,
            execution_model=descriptor.execution_model.value,
        )
        return sandbox
