"""Parse options and the options blob handed to a guest's configure export.

The blob is opaque to the host except for its fixed header::

    u16 schema_version
    u16 flags            (must be 0)
    u32 body_length      (bytes following the header)

For schema version 1 the body is canonical JSON of the option fields.
"""

import json
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from logsandbox.core.errors import MalformedOptionsError, UnsupportedOptionError
from logsandbox.plugins.manifest import Capability, PluginDescriptor

OPTIONS_HEADER = struct.Struct("<HHI")
OPTIONS_SCHEMA_VERSION = 1
SUPPORTED_OPTIONS_SCHEMAS = frozenset({1})

LogLevelName = Literal["fatal", "error", "warn", "info", "debug", "verbose"]

# option field -> capability it needs
OPTION_CAPABILITIES = {
    "log_level": Capability.LOG_LEVEL_FILTER,
    "fibex_files": Capability.AUXILIARY_FILES,
    "timezone_offset_minutes": Capability.TIMEZONE_OVERRIDE,
    "with_storage_header": Capability.STORAGE_HEADER,
}


class ParseOptions(BaseModel):
    """Format-specific parse configuration supplied by the caller."""

    log_level: LogLevelName | None = None
    fibex_files: list[Path] = Field(default_factory=list)
    timezone_offset_minutes: int | None = Field(default=None, ge=-720, le=840)
    with_storage_header: bool | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    def set_fields(self) -> list[str]:
        """Names of capability-bound options that carry a value."""
        return [
            name
            for name in OPTION_CAPABILITIES
            if getattr(self, name) not in (None, [])
        ]

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.log_level is not None:
            body["log_level"] = self.log_level
        if self.fibex_files:
            body["fibex_files"] = [str(p) for p in self.fibex_files]
        if self.timezone_offset_minutes is not None:
            body["timezone_offset_minutes"] = self.timezone_offset_minutes
        if self.with_storage_header is not None:
            body["with_storage_header"] = self.with_storage_header
        if self.extra:
            body["extra"] = self.extra
        return body


@dataclass(frozen=True)
class OptionsHeader:
    schema_version: int
    flags: int
    body_length: int


@dataclass(frozen=True)
class PreparedOptions:
    """Validated options ready to be copied into guest memory."""

    blob: bytes
    auxiliary_files: tuple[Path, ...] = ()


def parse_options(value: ParseOptions | Mapping[str, Any] | None, format_id: str | None = None) -> ParseOptions:
    """Validate caller-supplied options.

    Raises:
        UnsupportedOptionError: If an unknown option key is present
        MalformedOptionsError: If a value has the wrong type or range
    """
    if value is None:
        return ParseOptions()
    if isinstance(value, ParseOptions):
        return value
    if not isinstance(value, Mapping):
        raise MalformedOptionsError(f"expected a mapping, got {type(value).__name__}", format_id)
    try:
        return ParseOptions(**value)
    except ValidationError as e:
        for err in e.errors():
            if err["type"] == "extra_forbidden":
                raise UnsupportedOptionError(str(err["loc"][0]), format_id) from e
        raise MalformedOptionsError(_first_error(e), format_id) from e


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err["loc"])
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def check_capabilities(options: ParseOptions, descriptor: PluginDescriptor) -> None:
    """Reject options the plugin does not declare a capability for.

    Raises:
        UnsupportedOptionError: If an option needs a missing capability
        MalformedOptionsError: If an auxiliary file does not exist
    """
    for name in options.set_fields():
        if not descriptor.supports(OPTION_CAPABILITIES[name]):
            raise UnsupportedOptionError(name, descriptor.format_id)
    for path in options.fibex_files:
        if not Path(path).is_file():
            raise MalformedOptionsError(f"auxiliary file not found: {path}", descriptor.format_id)


def encode_options(options: ParseOptions) -> bytes:
    """Encode options as a schema-1 blob."""
    body = json.dumps(options.to_body(), sort_keys=True, separators=(",", ":")).encode("utf-8")
    return OPTIONS_HEADER.pack(OPTIONS_SCHEMA_VERSION, 0, len(body)) + body


def validate_blob(blob: bytes, format_id: str | None = None) -> OptionsHeader:
    """Check the fixed header of a pre-encoded options blob.

    Raises:
        MalformedOptionsError: If the blob is shorter than its header or its declared length
        UnsupportedOptionError: If the schema version is not supported
    """
    if len(blob) < OPTIONS_HEADER.size:
        raise MalformedOptionsError(
            f"options blob of {len(blob)} bytes is shorter than the {OPTIONS_HEADER.size}-byte header",
            format_id,
        )
    header = OptionsHeader(*OPTIONS_HEADER.unpack_from(blob))
    if header.flags != 0:
        raise MalformedOptionsError(f"unknown header flags 0x{header.flags:04x}", format_id)
    if header.body_length != len(blob) - OPTIONS_HEADER.size:
        raise MalformedOptionsError(
            f"header declares {header.body_length} body bytes, blob carries {len(blob) - OPTIONS_HEADER.size}",
            format_id,
        )
    if header.schema_version not in SUPPORTED_OPTIONS_SCHEMAS:
        raise UnsupportedOptionError(f"schema_version={header.schema_version}", format_id)
    return header


def prepare_options(
    value: ParseOptions | Mapping[str, Any] | bytes | None,
    descriptor: PluginDescriptor,
) -> PreparedOptions:
    """Validate options of any accepted shape and produce the guest blob."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        blob = bytes(value)
        validate_blob(blob, descriptor.format_id)
        return PreparedOptions(blob=blob)

    options = parse_options(value, descriptor.format_id)
    check_capabilities(options, descriptor)
    return PreparedOptions(
        blob=encode_options(options),
        auxiliary_files=tuple(Path(p) for p in options.fibex_files),
    )
