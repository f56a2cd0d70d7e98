"""Tests for the ABI bridge against an in-memory fake guest."""

import struct

import pytest

from logsandbox.core.errors import (
    AllocationFailedError,
    MalformedOptionsError,
    MalformedOutputError,
    UnsupportedOptionError,
)
from logsandbox.models.entry import LogEntry, NextState, Severity
from logsandbox.plugins import bridge
from logsandbox.plugins.bridge import (
    ENTRY_HEADER,
    LENGTH_PREFIX,
    RESULT_HEADER,
    ParseRequest,
    decode_output,
    encode_output,
)

# ---------------------------------------------------------------------------
# Fake guest
# ---------------------------------------------------------------------------


class FakeGuest:
    """Bump-allocating guest whose parse export returns canned output."""

    def __init__(self, output: bytes = b"", status: int = 0, size: int = 64 * 1024) -> None:
        self.memory = bytearray(size)
        self.heap = 1024
        self.output = output
        self.status = status
        self.calls: list[tuple] = []
        self.freed: list[tuple[int, int]] = []
        self.received = b""

    def alloc(self, length: int) -> int:
        ptr = self.heap
        self.heap += length
        if self.heap > len(self.memory):
            raise AllocationFailedError(length, 0)
        return ptr

    def dealloc(self, ptr: int, length: int) -> None:
        self.freed.append((ptr, length))

    def memory_size(self) -> int:
        return len(self.memory)

    def read_memory(self, ptr: int, length: int) -> bytes:
        return bytes(self.memory[ptr : ptr + length])

    def write_memory(self, ptr: int, data: bytes) -> None:
        self.memory[ptr : ptr + len(data)] = data

    def invoke(self, function_name: str, *args: int) -> int | None:
        self.calls.append((function_name, *args))
        ptr, length = args
        self.received = self.read_memory(ptr, length)
        if function_name == "configure":
            return self.status
        result_ptr = self.alloc(len(self.output))
        self.write_memory(result_ptr, self.output)
        return result_ptr


def _entry(payload: str | bytes = "hello", level: Severity | None = Severity.INFO) -> LogEntry:
    return LogEntry(timestamp=1_700_000_000, level=level, payload=payload, source_tag="ecu1")


def _body(state: int = 0, consumed: int = 4, count: int = 0, entries: bytes = b"", schema: int = 1) -> bytes:
    return RESULT_HEADER.pack(schema, state, 0, consumed, count) + entries


# ---------------------------------------------------------------------------
# configure
# ---------------------------------------------------------------------------


class TestConfigure:
    def test_ok(self) -> None:
        guest = FakeGuest(status=0)
        bridge.configure(guest, b"\x01\x00\x00\x00\x00\x00\x00\x00")
        assert guest.received == b"\x01" + b"\x00" * 7
        assert len(guest.freed) == 1

    def test_malformed_status(self) -> None:
        with pytest.raises(MalformedOptionsError):
            bridge.configure(FakeGuest(status=1), b"x" * 8, "dlt")

    def test_unsupported_status(self) -> None:
        with pytest.raises(UnsupportedOptionError):
            bridge.configure(FakeGuest(status=2), b"x" * 8, "dlt")

    def test_unknown_status(self) -> None:
        with pytest.raises(MalformedOutputError, match="configure status"):
            bridge.configure(FakeGuest(status=42), b"x" * 8)


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------


class TestParse:
    def test_decodes_entries(self) -> None:
        entries = [_entry("first"), _entry(b"\x01\x02", level=None)]
        guest = FakeGuest(encode_output(entries, 5))
        result = bridge.parse(guest, ParseRequest(b"abcde", chunk_offset=100))

        assert list(result.entries) == entries
        assert result.bytes_consumed == 5
        assert result.next_state is NextState.READY
        assert result.offset == 100
        assert guest.received == b"abcde"

    def test_releases_result_then_input(self) -> None:
        output = encode_output([_entry()], 3)
        guest = FakeGuest(output)
        bridge.parse(guest, ParseRequest(b"abc"))
        input_ptr = guest.calls[0][1]
        result_ptr = input_ptr + 3
        assert guest.freed == [(result_ptr, len(output)), (input_ptr, 3)]

    def test_empty_chunk_skips_guest(self) -> None:
        guest = FakeGuest()
        result = bridge.parse(guest, ParseRequest(b"", chunk_offset=7))
        assert result.entries == ()
        assert result.bytes_consumed == 0
        assert result.offset == 7
        assert guest.calls == []

    def test_declared_length_past_memory(self) -> None:
        guest = FakeGuest(LENGTH_PREFIX.pack(0x7FFFFFF0) + _body())
        with pytest.raises(MalformedOutputError, match="exceeds guest memory") as exc_info:
            bridge.parse(guest, ParseRequest(b"abcd"))
        assert exc_info.value.error.context["declared_length"] == 0x7FFFFFF0

    def test_null_result_pointer(self) -> None:
        guest = FakeGuest()
        guest.invoke = lambda name, *args: 0  # type: ignore[method-assign]
        with pytest.raises(MalformedOutputError, match="null"):
            bridge.parse(guest, ParseRequest(b"abcd"))

    def test_result_pointer_outside_memory(self) -> None:
        guest = FakeGuest()
        guest.invoke = lambda name, *args: 10 * 1024 * 1024  # type: ignore[method-assign]
        with pytest.raises(MalformedOutputError, match="outside guest memory"):
            bridge.parse(guest, ParseRequest(b"abcd"))


# ---------------------------------------------------------------------------
# decode_output validation
# ---------------------------------------------------------------------------


class TestDecodeOutput:
    def test_need_more_input_partial(self) -> None:
        result = decode_output(_body(state=1, consumed=2), chunk_length=6)
        assert result.next_state is NextState.NEED_MORE_INPUT
        assert result.bytes_consumed == 2

    def test_exhausted(self) -> None:
        result = decode_output(_body(state=2, consumed=4), chunk_length=10)
        assert result.next_state is NextState.EXHAUSTED

    def test_consumed_more_than_chunk(self) -> None:
        with pytest.raises(MalformedOutputError, match="consumed 9"):
            decode_output(_body(state=1, consumed=9), chunk_length=4)

    def test_ready_must_consume_whole_chunk(self) -> None:
        with pytest.raises(MalformedOutputError, match="ready"):
            decode_output(_body(state=0, consumed=2), chunk_length=4)

    def test_short_body(self) -> None:
        with pytest.raises(MalformedOutputError, match="header"):
            decode_output(b"\x01\x00", chunk_length=4)

    def test_unknown_schema(self) -> None:
        with pytest.raises(MalformedOutputError, match="schema"):
            decode_output(_body(schema=3), chunk_length=4)

    def test_unknown_state(self) -> None:
        with pytest.raises(MalformedOutputError, match="next state"):
            decode_output(_body(state=5), chunk_length=4)

    def test_count_too_large(self) -> None:
        with pytest.raises(MalformedOutputError, match="entry count"):
            decode_output(_body(count=1000), chunk_length=4)

    def test_trailing_bytes(self) -> None:
        with pytest.raises(MalformedOutputError, match="trailing"):
            decode_output(_body() + b"\x00\x00", chunk_length=4)

    def test_payload_overrun(self) -> None:
        entry = ENTRY_HEADER.pack(0, 0, 0, 0) + LENGTH_PREFIX.pack(50) + b"abc"
        with pytest.raises(MalformedOutputError, match="payload overruns"):
            decode_output(_body(count=1, entries=entry), chunk_length=4)

    def test_tag_overrun(self) -> None:
        entry = ENTRY_HEADER.pack(0, 0, 200, 0) + LENGTH_PREFIX.pack(0)
        with pytest.raises(MalformedOutputError, match="tag overruns"):
            decode_output(_body(count=1, entries=entry), chunk_length=4)

    def test_invalid_utf8_text(self) -> None:
        entry = ENTRY_HEADER.pack(0x04, 0, 0, 0) + LENGTH_PREFIX.pack(2) + b"\xff\xfe"
        with pytest.raises(MalformedOutputError, match="UTF-8"):
            decode_output(_body(count=1, entries=entry), chunk_length=4)

    def test_binary_payload_not_decoded(self) -> None:
        entry = ENTRY_HEADER.pack(0, 0, 0, 0) + LENGTH_PREFIX.pack(2) + b"\xff\xfe"
        result = decode_output(_body(count=1, entries=entry), chunk_length=4)
        assert result.entries[0].payload == b"\xff\xfe"
        assert result.entries[0].timestamp is None
        assert result.entries[0].level is None

    def test_unknown_level(self) -> None:
        entry = ENTRY_HEADER.pack(0x02, 9, 0, 0) + LENGTH_PREFIX.pack(0)
        with pytest.raises(MalformedOutputError, match="level 9"):
            decode_output(_body(count=1, entries=entry), chunk_length=4)

    def test_unknown_flags(self) -> None:
        entry = ENTRY_HEADER.pack(0x80, 0, 0, 0) + LENGTH_PREFIX.pack(0)
        with pytest.raises(MalformedOutputError, match="flags"):
            decode_output(_body(count=1, entries=entry), chunk_length=4)

    def test_preserves_entry_order(self) -> None:
        entries = [_entry(f"line {i}") for i in range(20)]
        encoded = encode_output(entries, 4)
        (length,) = struct.unpack_from("<I", encoded)
        result = decode_output(encoded[4 : 4 + length], chunk_length=4)
        assert [e.payload for e in result.entries] == [f"line {i}" for i in range(20)]
