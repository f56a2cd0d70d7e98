"""Structural validation of compiled plugin artifacts.

Artifacts are WebAssembly binaries. The host ABI version is declared in
a custom section named ``logsandbox.abi`` whose payload starts with a
little-endian u32. Only the section framing is walked here; the engine
validates the code itself at compile time.
"""

import struct
from dataclasses import dataclass, field

WASM_MAGIC = b"\x00asm"
WASM_VERSION = 1

ABI_SECTION_NAME = "logsandbox.abi"

# Inclusive range of ABI versions this host can drive
HOST_ABI_MIN = 1
HOST_ABI_MAX = 1

# Section ids up to the tag section of the exception-handling proposal
MAX_SECTION_ID = 13

SECTION_NAMES = {
    0: "custom",
    1: "type",
    2: "import",
    3: "function",
    4: "table",
    5: "memory",
    6: "global",
    7: "export",
    8: "start",
    9: "element",
    10: "code",
    11: "data",
    12: "datacount",
    13: "tag",
}


class ArtifactFormatError(ValueError):
    """Artifact bytes are not a well-formed module."""


@dataclass
class SectionInfo:
    """One section of a module."""

    section_id: int
    offset: int
    size: int
    name: str | None = None

    @property
    def kind(self) -> str:
        return SECTION_NAMES.get(self.section_id, "unknown")


@dataclass
class ArtifactInfo:
    """Header-level facts about an artifact."""

    size: int
    abi_version: int | None
    sections: list[SectionInfo] = field(default_factory=list)

    @property
    def custom_sections(self) -> list[str]:
        return [s.name for s in self.sections if s.section_id == 0 and s.name is not None]

    def abi_supported(self) -> bool:
        return self.abi_version is not None and HOST_ABI_MIN <= self.abi_version <= HOST_ABI_MAX

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "abi_version": self.abi_version,
            "abi_supported": self.abi_supported(),
            "host_abi_range": [HOST_ABI_MIN, HOST_ABI_MAX],
            "sections": [
                {"kind": s.kind, "offset": s.offset, "size": s.size, "name": s.name}
                for s in self.sections
            ],
        }


def read_uleb128(data: bytes, offset: int, max_bytes: int = 5) -> tuple[int, int]:
    """Decode an unsigned LEB128 integer.

    Args:
        data: Buffer to read from
        offset: Start offset
        max_bytes: Longest accepted encoding (5 for u32)

    Returns:
        Tuple of (value, offset after the integer)
    """
    result = 0
    shift = 0
    for i in range(max_bytes):
        pos = offset + i
        if pos >= len(data):
            raise ArtifactFormatError(f"truncated LEB128 at offset {offset}")
        byte = data[pos]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos + 1
        shift += 7
    raise ArtifactFormatError(f"LEB128 too long at offset {offset}")


def encode_uleb128(value: int) -> bytes:
    """Encode an unsigned LEB128 integer."""
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def build_abi_section(abi_version: int) -> bytes:
    """Encode the custom section declaring an ABI version.

    Custom sections may appear anywhere, so the result can be appended
    to an existing module.
    """
    name = ABI_SECTION_NAME.encode("utf-8")
    payload = encode_uleb128(len(name)) + name + struct.pack("<I", abi_version)
    return b"\x00" + encode_uleb128(len(payload)) + payload


def inspect_artifact(data: bytes) -> ArtifactInfo:
    """Walk the section framing of a module.

    Args:
        data: Raw artifact bytes

    Returns:
        ArtifactInfo with the declared ABI version (None if undeclared)

    Raises:
        ArtifactFormatError: If the header or section framing is invalid
    """
    if len(data) < 8:
        raise ArtifactFormatError("file too short for a module header")
    if data[:4] != WASM_MAGIC:
        raise ArtifactFormatError("bad magic, not a WebAssembly module")
    (version,) = struct.unpack_from("<I", data, 4)
    if version != WASM_VERSION:
        raise ArtifactFormatError(f"unsupported binary version {version}")

    info = ArtifactInfo(size=len(data), abi_version=None)
    offset = 8
    while offset < len(data):
        section_id = data[offset]
        if section_id > MAX_SECTION_ID:
            raise ArtifactFormatError(f"unknown section id {section_id} at offset {offset}")
        size, body = read_uleb128(data, offset + 1)
        end = body + size
        if end > len(data):
            raise ArtifactFormatError(f"section at offset {offset} overruns the file")

        section = SectionInfo(section_id=section_id, offset=offset, size=size)
        if section_id == 0:
            name_len, name_start = read_uleb128(data, body)
            if name_start + name_len > end:
                raise ArtifactFormatError(f"custom section name at offset {offset} overruns the section")
            try:
                section.name = data[name_start : name_start + name_len].decode("utf-8")
            except UnicodeDecodeError as e:
                raise ArtifactFormatError(f"custom section name is not UTF-8: {e}") from e
            if section.name == ABI_SECTION_NAME:
                payload_start = name_start + name_len
                if end - payload_start < 4:
                    raise ArtifactFormatError("ABI section payload shorter than 4 bytes")
                if info.abi_version is not None:
                    raise ArtifactFormatError("duplicate ABI section")
                (info.abi_version,) = struct.unpack_from("<I", data, payload_start)

        info.sections.append(section)
        offset = end

    return info
