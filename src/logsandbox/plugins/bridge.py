"""ABI bridge between the host and a guest module.

The bridge holds no state. It writes requests into buffers obtained from
the guest's ``alloc`` export, calls ``configure``/``parse`` and decodes
the length-prefixed output, releasing every buffer through the guest's
``dealloc`` export. All integers are little-endian.

Parse output at ``result_ptr``::

    u32 body_length
    body:
        u8  schema            (OUTPUT_SCHEMA_VERSION)
        u8  next_state        (0 ready, 1 need more input, 2 exhausted)
        u16 reserved
        u32 bytes_consumed
        u32 entry_count
        entry_count x entry:
            u8  flags         (FLAG_TIMESTAMP | FLAG_LEVEL | FLAG_TEXT)
            u8  level
            u16 tag_length
            u64 timestamp
            tag bytes
            u32 payload_length
            payload bytes
"""

import struct
from dataclasses import dataclass
from typing import Protocol

from logsandbox.core.errors import (
    MalformedOptionsError,
    MalformedOutputError,
    UnsupportedOptionError,
)
from logsandbox.models.entry import LogEntry, NextState, ParseResult, Severity

OUTPUT_SCHEMA_VERSION = 1

LENGTH_PREFIX = struct.Struct("<I")
RESULT_HEADER = struct.Struct("<BBHII")
ENTRY_HEADER = struct.Struct("<BBHQ")

FLAG_TIMESTAMP = 0x01
FLAG_LEVEL = 0x02
FLAG_TEXT = 0x04
KNOWN_FLAGS = FLAG_TIMESTAMP | FLAG_LEVEL | FLAG_TEXT

# Smallest possible encoded entry: header plus empty payload length
MIN_ENTRY_SIZE = ENTRY_HEADER.size + LENGTH_PREFIX.size

WIRE_STATES = {
    0: NextState.READY,
    1: NextState.NEED_MORE_INPUT,
    2: NextState.EXHAUSTED,
}

CONFIG_OK = 0
CONFIG_MALFORMED = 1
CONFIG_UNSUPPORTED = 2


class GuestInterface(Protocol):
    """What the bridge needs from a sandbox instance."""

    def invoke(self, function_name: str, *args: int) -> int | None: ...

    def alloc(self, length: int) -> int: ...

    def dealloc(self, ptr: int, length: int) -> None: ...

    def memory_size(self) -> int: ...

    def read_memory(self, ptr: int, length: int) -> bytes: ...

    def write_memory(self, ptr: int, data: bytes) -> None: ...


@dataclass(frozen=True)
class ParseRequest:
    """One chunk of input for a session."""

    input_chunk: bytes
    chunk_offset: int = 0
    session_id: int | None = None


def configure(guest: GuestInterface, blob: bytes, format_id: str | None = None) -> None:
    """Deliver an options blob through the guest's configure export.

    Raises:
        MalformedOptionsError: If the guest reports malformed options
        UnsupportedOptionError: If the guest reports an unsupported option
        MalformedOutputError: If the guest returns an unknown status
    """
    ptr = guest.alloc(len(blob))
    guest.write_memory(ptr, blob)
    status = guest.invoke("configure", ptr, len(blob))
    guest.dealloc(ptr, len(blob))

    if status == CONFIG_OK:
        return
    if status == CONFIG_MALFORMED:
        raise MalformedOptionsError("rejected by plugin", format_id)
    if status == CONFIG_UNSUPPORTED:
        raise UnsupportedOptionError("<reported by plugin>", format_id)
    raise MalformedOutputError(f"unknown configure status {status}", {"format_id": format_id})


def parse(guest: GuestInterface, request: ParseRequest) -> ParseResult:
    """Run one parse call and decode its output.

    Raises:
        AllocationFailedError: If the guest cannot allocate the input buffer
        MalformedOutputError: If the output fails validation
    """
    chunk = request.input_chunk
    if not chunk:
        return ParseResult(offset=request.chunk_offset)

    ptr = guest.alloc(len(chunk))
    guest.write_memory(ptr, chunk)
    result_ptr = guest.invoke("parse", ptr, len(chunk))

    body = read_output(guest, result_ptr)
    result = decode_output(body, len(chunk), request.chunk_offset)

    guest.dealloc(result_ptr, LENGTH_PREFIX.size + len(body))
    guest.dealloc(ptr, len(chunk))
    return result


def read_output(guest: GuestInterface, result_ptr: int | None) -> bytes:
    """Copy the output body out of guest memory after bounds checks.

    Nothing is read until the declared extent is known to lie inside
    the guest's memory.
    """
    if not result_ptr:
        raise MalformedOutputError("null result pointer")

    memory_size = guest.memory_size()
    if result_ptr + LENGTH_PREFIX.size > memory_size:
        raise MalformedOutputError(
            f"result pointer {result_ptr} outside guest memory of {memory_size} bytes",
            {"result_ptr": result_ptr, "memory_size": memory_size},
        )

    (body_length,) = LENGTH_PREFIX.unpack(guest.read_memory(result_ptr, LENGTH_PREFIX.size))
    end = result_ptr + LENGTH_PREFIX.size + body_length
    if end > memory_size:
        raise MalformedOutputError(
            f"declared output length {body_length} at {result_ptr} exceeds guest memory of {memory_size} bytes",
            {"result_ptr": result_ptr, "declared_length": body_length, "memory_size": memory_size},
        )

    return guest.read_memory(result_ptr + LENGTH_PREFIX.size, body_length)


def decode_output(body: bytes, chunk_length: int, chunk_offset: int = 0) -> ParseResult:
    """Decode an output body into a ParseResult.

    Args:
        body: Output body (without its length prefix)
        chunk_length: Length of the chunk the guest was given
        chunk_offset: Session offset the chunk started at

    Raises:
        MalformedOutputError: If the body violates the output format
    """
    if len(body) < RESULT_HEADER.size:
        raise MalformedOutputError(f"output body of {len(body)} bytes is shorter than its header")

    schema, state_code, _reserved, consumed, count = RESULT_HEADER.unpack_from(body)
    if schema != OUTPUT_SCHEMA_VERSION:
        raise MalformedOutputError(f"unsupported output schema {schema}")

    next_state = WIRE_STATES.get(state_code)
    if next_state is None:
        raise MalformedOutputError(f"unknown next state {state_code}")
    if consumed > chunk_length:
        raise MalformedOutputError(
            f"plugin consumed {consumed} bytes of a {chunk_length}-byte chunk",
            {"bytes_consumed": consumed, "chunk_length": chunk_length},
        )
    if next_state is NextState.READY and consumed != chunk_length:
        raise MalformedOutputError(
            f"plugin reported ready after consuming {consumed} of {chunk_length} bytes",
            {"bytes_consumed": consumed, "chunk_length": chunk_length},
        )
    if count * MIN_ENTRY_SIZE > len(body) - RESULT_HEADER.size:
        raise MalformedOutputError(f"entry count {count} cannot fit in {len(body)} bytes")

    entries = []
    pos = RESULT_HEADER.size
    for index in range(count):
        entry, pos = _decode_entry(body, pos, index)
        entries.append(entry)

    if pos != len(body):
        raise MalformedOutputError(f"{len(body) - pos} trailing bytes after {count} entries")

    return ParseResult(
        entries=tuple(entries),
        bytes_consumed=consumed,
        next_state=next_state,
        offset=chunk_offset,
    )


def _decode_entry(body: bytes, pos: int, index: int) -> tuple[LogEntry, int]:
    if pos + ENTRY_HEADER.size > len(body):
        raise MalformedOutputError(f"entry {index} header overruns the output")
    flags, level, tag_length, timestamp = ENTRY_HEADER.unpack_from(body, pos)
    pos += ENTRY_HEADER.size

    if flags & ~KNOWN_FLAGS:
        raise MalformedOutputError(f"entry {index} has unknown flags 0x{flags:02x}")

    if pos + tag_length + LENGTH_PREFIX.size > len(body):
        raise MalformedOutputError(f"entry {index} tag overruns the output")
    try:
        tag = body[pos : pos + tag_length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedOutputError(f"entry {index} tag is not UTF-8") from e
    pos += tag_length

    (payload_length,) = LENGTH_PREFIX.unpack_from(body, pos)
    pos += LENGTH_PREFIX.size
    if pos + payload_length > len(body):
        raise MalformedOutputError(f"entry {index} payload overruns the output")
    raw = body[pos : pos + payload_length]
    pos += payload_length

    payload: str | bytes = raw
    if flags & FLAG_TEXT:
        try:
            payload = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedOutputError(f"entry {index} text payload is not UTF-8") from e

    severity = None
    if flags & FLAG_LEVEL:
        try:
            severity = Severity(level)
        except ValueError as e:
            raise MalformedOutputError(f"entry {index} has unknown level {level}") from e

    return (
        LogEntry(
            timestamp=timestamp if flags & FLAG_TIMESTAMP else None,
            level=severity,
            payload=payload,
            source_tag=tag,
        ),
        pos,
    )


def encode_output(
    entries: list[LogEntry],
    bytes_consumed: int,
    next_state: NextState = NextState.READY,
) -> bytes:
    """Encode output in the guest wire format, length prefix included.

    The host never produces output itself; this is the reference encoder
    for plugin authors and fakes.
    """
    state_codes = {state: code for code, state in WIRE_STATES.items()}
    parts = [
        RESULT_HEADER.pack(
            OUTPUT_SCHEMA_VERSION, state_codes[next_state], 0, bytes_consumed, len(entries)
        )
    ]
    for entry in entries:
        flags = 0
        if entry.timestamp is not None:
            flags |= FLAG_TIMESTAMP
        if entry.level is not None:
            flags |= FLAG_LEVEL
        payload = entry.payload
        if isinstance(payload, str):
            flags |= FLAG_TEXT
            payload = payload.encode("utf-8")
        tag = entry.source_tag.encode("utf-8")
        parts.append(
            ENTRY_HEADER.pack(
                flags,
                int(entry.level) if entry.level is not None else 0,
                len(tag),
                entry.timestamp or 0,
            )
        )
        parts.append(tag)
        parts.append(LENGTH_PREFIX.pack(len(payload)))
        parts.append(payload)
    body = b"".join(parts)
    return LENGTH_PREFIX.pack(len(body)) + body
